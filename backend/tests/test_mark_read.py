import pytest

from propchat.core.config import settings
from propchat.core.errors import NotAParticipant, ThreadNotFound
from propchat.models import Thread
from propchat.services.chat_service import ChatService


def test_mark_read_resets_only_the_callers_counter(chat_db, people):
    db = chat_db()
    service = ChatService(db)
    thread = service.resolve_thread(people.buyer, people.seller, "P1")
    service.send_message(thread.id, people.buyer, "hi")
    service.send_message(thread.id, people.seller, "hello")
    service.send_message(thread.id, people.seller, "still there?")

    result = service.mark_read(thread.id, people.buyer)

    assert result.other_user_id == people.seller
    assert result.unread_count == 0
    db.expire_all()
    row = db.get(Thread, thread.id)
    assert row.buyer_unread_count == 0
    assert row.seller_unread_count == 1
    db.close()


def test_mark_read_is_idempotent(chat_db, people):
    db = chat_db()
    service = ChatService(db)
    thread = service.resolve_thread(people.buyer, people.seller)

    service.mark_read(thread.id, people.seller)
    service.mark_read(thread.id, people.seller)

    db.expire_all()
    row = db.get(Thread, thread.id)
    assert (row.buyer_unread_count, row.seller_unread_count) == (0, 0)
    db.close()


def test_mark_read_requires_participant(chat_db, people):
    db = chat_db()
    service = ChatService(db)
    thread = service.resolve_thread(people.buyer, people.seller)

    with pytest.raises(NotAParticipant):
        service.mark_read(thread.id, people.other)
    with pytest.raises(ThreadNotFound):
        service.mark_read(thread.id + 100, people.buyer)
    db.close()


def test_list_threads_orders_by_activity_and_enriches(chat_db, people):
    db = chat_db()
    service = ChatService(db)
    quiet = service.resolve_thread(people.buyer, people.seller)
    older = service.resolve_thread(people.buyer, people.seller, "P1")
    newer = service.resolve_thread(people.buyer, people.seller2, "P2")
    service.send_message(older.id, people.seller, "first")
    service.send_message(newer.id, people.buyer, "second")

    items = service.list_threads(people.buyer)

    assert [i.thread_id for i in items] == [newer.id, older.id, quiet.id]
    by_id = {i.thread_id: i for i in items}
    assert by_id[older.id].role == "buyer"
    assert by_id[older.id].unread_count == 1
    assert by_id[older.id].other_participant_name == "Sam Seller"
    assert by_id[older.id].other_participant_avatar_url == "https://cdn.example.com/sam.png"
    assert by_id[older.id].property_title == "2 bed flat in Sea Point"
    assert by_id[newer.id].unread_count == 0
    assert by_id[quiet.id].last_message_at is None
    assert by_id[quiet.id].property_title is None

    seller_view = service.list_threads(people.seller)
    assert [i.thread_id for i in seller_view] == [older.id, quiet.id]
    assert seller_view[0].role == "seller"
    assert seller_view[0].other_participant_name == "Bea Buyer"
    db.close()


def test_enrichment_failure_degrades_to_null(chat_db, people):
    class BrokenDirectory:
        def get_user(self, user_id):
            raise RuntimeError("directory down")

        def get_user_by_email(self, email):
            return None

    db = chat_db()
    thread = ChatService(db).resolve_thread(people.buyer, people.seller)

    items = ChatService(db, users=BrokenDirectory()).list_threads(people.buyer)

    assert items[0].thread_id == thread.id
    assert items[0].other_participant_name is None
    db.close()


def test_unread_total_sums_callers_side(chat_db, people):
    db = chat_db()
    service = ChatService(db)
    a = service.resolve_thread(people.buyer, people.seller)
    b = service.resolve_thread(people.buyer, people.seller2, "P2")
    service.send_message(a.id, people.seller, "one")
    service.send_message(b.id, people.seller2, "two")
    service.send_message(b.id, people.seller2, "three")
    service.send_message(b.id, people.buyer, "mine")

    assert service.unread_total(people.buyer) == 3
    assert service.unread_total(people.seller2) == 1
    assert service.unread_total(people.other) == 0
    db.close()


def test_get_thread_returns_history(chat_db, people):
    db = chat_db()
    service = ChatService(db)
    thread = service.resolve_thread(people.buyer, people.seller)
    service.send_message(thread.id, people.buyer, "a")
    service.send_message(thread.id, people.seller, "b")

    detail = service.get_thread(thread.id, people.seller)

    assert detail.thread.id == thread.id
    assert [m.content for m in detail.messages] == ["a", "b"]
    with pytest.raises(NotAParticipant):
        service.get_thread(thread.id, people.other)
    db.close()


def test_get_thread_returns_full_history_beyond_page_limit(chat_db, people, monkeypatch):
    monkeypatch.setattr(settings, "MESSAGE_PAGE_LIMIT", 3)
    db = chat_db()
    service = ChatService(db)
    thread = service.resolve_thread(people.buyer, people.seller)
    sent = [service.send_message(thread.id, people.buyer, f"offer {i}").message for i in range(5)]

    detail = service.get_thread(thread.id, people.seller)

    assert [m.id for m in detail.messages] == [m.id for m in sent]
    assert detail.messages[-1].content == "offer 4"
    # Paged reads stay capped
    assert len(service.get_messages(thread.id, people.seller)) == 3
    db.close()
