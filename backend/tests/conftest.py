import os
from types import SimpleNamespace

os.environ["PYTEST_RUN"] = "1"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from propchat.main import app
from propchat.database import build_engine, get_db
from propchat.api.auth import create_access_token
from propchat.models import BaseModel, Property, User, UserType
from propchat.realtime.gateway import RealtimeGateway
from propchat.realtime.presence import PresenceRegistry


def seed_people(Session) -> SimpleNamespace:
    """Two buyers, two sellers, an inactive seller and two listings."""
    db = Session()
    try:
        buyer = User(email="buyer@example.com", display_name="Bea Buyer", user_type=UserType.BUYER)
        other = User(email="other@example.com", display_name="Olu Other", user_type=UserType.BUYER)
        seller = User(
            email="seller@example.com",
            display_name="Sam Seller",
            user_type=UserType.SELLER,
            avatar_url="https://cdn.example.com/sam.png",
        )
        seller2 = User(email="seller2@example.com", display_name="Sue Second", user_type=UserType.SELLER)
        retired = User(
            email="retired@example.com",
            display_name="Ray Retired",
            user_type=UserType.SELLER,
            is_active=False,
        )
        db.add_all([buyer, other, seller, seller2, retired])
        db.commit()
        ids = SimpleNamespace(
            buyer=buyer.id,
            other=other.id,
            seller=seller.id,
            seller2=seller2.id,
            retired=retired.id,
        )
        db.add_all(
            [
                Property(id="P1", title="2 bed flat in Sea Point", owner_id=ids.seller),
                Property(id="P2", title="Farmhouse near Paarl", owner_id=ids.seller2),
            ]
        )
        db.commit()
    finally:
        db.close()
    ids.emails = {
        ids.buyer: "buyer@example.com",
        ids.other: "other@example.com",
        ids.seller: "seller@example.com",
        ids.seller2: "seller2@example.com",
        ids.retired: "retired@example.com",
    }
    return ids


@pytest.fixture
def chat_db():
    """In-memory database wired into the app's ``get_db`` dependency."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    BaseModel.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, expire_on_commit=False)

    def override_db():
        db = Session()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_db
    yield Session
    app.dependency_overrides.clear()
    engine.dispose()


@pytest.fixture
def file_db(tmp_path):
    """File-backed SQLite (WAL) for tests that hit the store from many threads."""
    engine = build_engine(f"sqlite:///{tmp_path / 'chat.db'}")
    BaseModel.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, autoflush=False)
    yield Session
    engine.dispose()


@pytest.fixture
def people(chat_db):
    return seed_people(chat_db)


@pytest.fixture
def file_people(file_db):
    return seed_people(file_db)


@pytest.fixture
def gateway(chat_db):
    """Fresh registry and gateway bound to the test database."""
    previous = (app.state.gateway, app.state.registry)
    registry = PresenceRegistry()
    gw = RealtimeGateway(registry, session_factory=chat_db)
    app.state.gateway = gw
    app.state.registry = registry
    yield gw
    gw.shutdown()
    app.state.gateway, app.state.registry = previous


@pytest.fixture
def token_for(people):
    def _token(user_id: int) -> str:
        return create_access_token({"sub": people.emails[user_id]})

    return _token


@pytest.fixture
def auth_headers(token_for):
    def _headers(user_id: int) -> dict[str, str]:
        return {"Authorization": f"Bearer {token_for(user_id)}"}

    return _headers
