import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from propchat.core.config import settings
from propchat.core.errors import (
    ContentTooLong,
    EmptyContent,
    InvalidClientToken,
    NotAParticipant,
    StoreUnavailable,
    ThreadNotFound,
)
from propchat.models import Message, Thread, utcnow
from propchat.services.chat_service import ChatService


def _thread(db, people, property_id="P1"):
    return ChatService(db).resolve_thread(people.buyer, people.seller, property_id)


def test_send_increments_recipient_counter_only(chat_db, people):
    db = chat_db()
    thread = _thread(db, people)

    sent = ChatService(db).send_message(thread.id, people.buyer, "  Is this available?  ")

    assert sent.message.content == "Is this available?"
    assert sent.message.sender_id == people.buyer
    assert sent.participants == (people.buyer, people.seller)
    db.expire_all()
    row = db.get(Thread, thread.id)
    assert row.seller_unread_count == 1
    assert row.buyer_unread_count == 0
    assert row.last_message_at == sent.message.created_at
    db.close()


def test_client_token_is_echoed_but_not_stored(chat_db, people):
    db = chat_db()
    thread = _thread(db, people)

    sent = ChatService(db).send_message(thread.id, people.buyer, "hello", client_token="tmp-1")

    assert sent.message.client_token == "tmp-1"
    stored = db.query(Message).one()
    assert not hasattr(stored, "client_token")
    db.close()


@pytest.mark.parametrize(
    "sender, content, client_token, error",
    [
        ("other", "hi", None, NotAParticipant),
        ("buyer", "   ", None, EmptyContent),
        ("buyer", "", None, EmptyContent),
        ("buyer", "x" * (settings.MAX_MESSAGE_LENGTH + 1), None, ContentTooLong),
        ("buyer", "hi", "t" * (settings.MAX_CLIENT_TOKEN_LENGTH + 1), InvalidClientToken),
    ],
)
def test_rejected_sends_store_nothing(chat_db, people, sender, content, client_token, error):
    db = chat_db()
    thread = _thread(db, people)

    with pytest.raises(error):
        ChatService(db).send_message(thread.id, getattr(people, sender), content, client_token)

    assert db.query(Message).count() == 0
    db.expire_all()
    row = db.get(Thread, thread.id)
    assert (row.buyer_unread_count, row.seller_unread_count) == (0, 0)
    assert row.last_message_at is None
    db.close()


def test_send_to_unknown_thread(chat_db, people):
    db = chat_db()
    with pytest.raises(ThreadNotFound):
        ChatService(db).send_message(404, people.buyer, "hello?")
    db.close()


def test_messages_are_ordered_by_id_and_time(chat_db, people):
    db = chat_db()
    service = ChatService(db)
    thread = _thread(db, people)
    for i in range(5):
        sender = people.buyer if i % 2 == 0 else people.seller
        service.send_message(thread.id, sender, f"message {i}")

    messages = service.get_messages(thread.id, people.buyer)

    assert [m.content for m in messages] == [f"message {i}" for i in range(5)]
    ids = [m.id for m in messages]
    assert ids == sorted(ids)
    times = [m.created_at for m in messages]
    assert times == sorted(times)
    db.close()


def test_created_at_never_precedes_last_message(chat_db, people):
    db = chat_db()
    thread = _thread(db, people)
    ahead = utcnow() + timedelta(seconds=30)
    db.query(Thread).filter(Thread.id == thread.id).update({"last_message_at": ahead})
    db.commit()

    sent = ChatService(db).send_message(thread.id, people.seller, "clock skew")

    assert sent.message.created_at >= ahead
    db.close()


def test_after_id_returns_only_newer_messages(chat_db, people):
    db = chat_db()
    service = ChatService(db)
    thread = _thread(db, people)
    first = service.send_message(thread.id, people.buyer, "one").message
    service.send_message(thread.id, people.seller, "two")
    service.send_message(thread.id, people.buyer, "three")

    newer = service.get_messages(thread.id, people.seller, after_id=first.id)

    assert [m.content for m in newer] == ["two", "three"]
    with pytest.raises(NotAParticipant):
        service.get_messages(thread.id, people.other)
    db.close()


def test_store_failure_is_reported_as_unavailable(chat_db, people, monkeypatch):
    db = chat_db()
    thread = _thread(db, people)

    def broken(*args, **kwargs):
        raise OperationalError("INSERT INTO chat_messages", {}, Exception("database is locked"))

    monkeypatch.setattr("propchat.crud.append_message", broken)
    with pytest.raises(StoreUnavailable) as exc:
        ChatService(db).send_message(thread.id, people.buyer, "hello")

    assert exc.value.retryable is True
    assert db.query(Message).count() == 0
    db.close()


def test_concurrent_sends_never_lose_an_increment(file_db, file_people):
    setup = file_db()
    thread_id = ChatService(setup).resolve_thread(file_people.buyer, file_people.seller, "P1").id
    setup.close()

    sends = 12
    barrier = threading.Barrier(sends)

    def send(i):
        db = file_db()
        try:
            barrier.wait()
            return ChatService(db).send_message(thread_id, file_people.buyer, f"offer {i}").message
        finally:
            db.close()

    with ThreadPoolExecutor(max_workers=sends) as pool:
        results = list(pool.map(send, range(sends)))

    db = file_db()
    row = db.get(Thread, thread_id)
    assert row.seller_unread_count == sends
    assert row.buyer_unread_count == 0
    stored = db.query(Message).filter(Message.thread_id == thread_id).order_by(Message.id).all()
    assert len(stored) == sends
    assert [m.created_at for m in stored] == sorted(m.created_at for m in stored)
    assert row.last_message_at == stored[-1].created_at
    assert {m.id for m in results} == {m.id for m in stored}
    db.close()


def test_buyer_seller_scenario(file_db, file_people):
    """Two concurrent resolutions, a question, a read and a reply."""
    barrier = threading.Barrier(2)

    def resolve():
        db = file_db()
        try:
            barrier.wait()
            return ChatService(db).resolve_thread(file_people.buyer, file_people.seller, "P1").id
        finally:
            db.close()

    with ThreadPoolExecutor(max_workers=2) as pool:
        ids = list(pool.map(lambda _: resolve(), range(2)))
    assert ids[0] == ids[1]
    t1 = ids[0]

    db = file_db()
    service = ChatService(db)
    service.send_message(t1, file_people.buyer, "Is this available?")
    assert db.get(Thread, t1).seller_unread_count == 1

    service.mark_read(t1, file_people.seller)
    db.expire_all()
    assert db.get(Thread, t1).seller_unread_count == 0

    reply = service.send_message(t1, file_people.seller, "Yes").message
    db.expire_all()
    row = db.get(Thread, t1)
    assert row.buyer_unread_count == 1
    assert row.seller_unread_count == 0
    assert row.last_message_at == reply.created_at
    db.close()
