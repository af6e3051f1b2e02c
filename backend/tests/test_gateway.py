import asyncio

from propchat.realtime.envelope import Envelope
from propchat.realtime.gateway import Connection, RealtimeGateway
from propchat.realtime.presence import PresenceRegistry
from propchat.services.chat_service import ChatService


class FakeChannel:
    def __init__(self):
        self.events = []

    def offer(self, env):
        self.events.append(env)
        return True


def _types(channel):
    return [e.type for e in channel.events]


def _thread(Session, people):
    db = Session()
    try:
        return ChatService(db).resolve_thread(people.buyer, people.seller, "P1").id
    finally:
        db.close()


async def _connected(gateway, user_id, name):
    """Register a fake tab for ``user_id`` and return (connection, channel)."""
    channel = FakeChannel()
    await gateway.registry.register(user_id, name, channel.offer)
    return Connection(websocket=None, user_id=user_id, connection_id=name, channel=channel), channel


def test_chat_message_reaches_both_participants(chat_db, people):
    thread_id = _thread(chat_db, people)

    async def run():
        gateway = RealtimeGateway(PresenceRegistry(), session_factory=chat_db)
        buyer_conn, buyer_tab = await _connected(gateway, people.buyer, "b1")
        _, seller_tab = await _connected(gateway, people.seller, "s1")
        _, bystander_tab = await _connected(gateway, people.other, "o1")

        await gateway.handle_frame(
            buyer_conn,
            Envelope(
                type="chat_message",
                payload={"thread_id": thread_id, "content": "Is this available?", "client_token": "tmp-1"},
            ),
        )

        assert _types(buyer_tab) == ["new_message"]
        assert _types(seller_tab) == ["new_message"]
        assert bystander_tab.events == []
        payload = seller_tab.events[0].payload
        assert payload["thread_id"] == thread_id
        assert payload["client_token"] == "tmp-1"
        assert payload["message"]["content"] == "Is this available?"
        assert payload["message"]["sender_id"] == people.buyer

    asyncio.run(run())


def test_rejected_frame_reports_error_to_sender_only(chat_db, people):
    thread_id = _thread(chat_db, people)

    async def run():
        gateway = RealtimeGateway(PresenceRegistry(), session_factory=chat_db)
        intruder_conn, intruder_tab = await _connected(gateway, people.other, "o1")
        _, seller_tab = await _connected(gateway, people.seller, "s1")
        buyer_conn, buyer_tab = await _connected(gateway, people.buyer, "b1")

        await gateway.handle_frame(
            intruder_conn,
            Envelope(type="chat_message", payload={"thread_id": thread_id, "content": "hi", "client_token": "x"}),
        )
        await gateway.handle_frame(
            buyer_conn,
            Envelope(type="chat_message", payload={"thread_id": thread_id, "content": "   "}),
        )

        assert [e.payload["code"] for e in intruder_tab.events] == ["not_a_participant"]
        assert intruder_tab.events[0].payload["client_token"] == "x"
        assert [e.payload["code"] for e in buyer_tab.events] == ["empty_content"]
        assert seller_tab.events == []

    asyncio.run(run())


def test_malformed_and_unknown_frames_are_ignored(chat_db, people):
    async def run():
        gateway = RealtimeGateway(PresenceRegistry(), session_factory=chat_db)
        conn, tab = await _connected(gateway, people.buyer, "b1")

        await gateway.handle_frame(conn, Envelope(type="chat_message", payload={"content": "no thread"}))
        await gateway.handle_frame(conn, Envelope(type="typing", payload={"thread_id": "abc"}))
        await gateway.handle_frame(conn, Envelope(type="mystery", payload={"thread_id": 1}))
        await gateway.handle_frame(conn, Envelope())
        await gateway.handle_frame(conn, Envelope(type="ping"))

        assert _types(tab) == ["pong"]

    asyncio.run(run())


def test_typing_goes_to_other_participant_and_expires(chat_db, people):
    thread_id = _thread(chat_db, people)

    async def run():
        gateway = RealtimeGateway(PresenceRegistry(), session_factory=chat_db, typing_ttl=0.05)
        buyer_conn, buyer_tab = await _connected(gateway, people.buyer, "b1")
        _, seller_tab = await _connected(gateway, people.seller, "s1")

        await gateway.handle_frame(buyer_conn, Envelope(type="typing", payload={"thread_id": thread_id, "is_typing": True}))
        assert [e.payload["is_typing"] for e in seller_tab.events] == [True]
        assert gateway.typing.is_typing(thread_id, people.buyer)

        await asyncio.sleep(0.2)

        assert [e.payload["is_typing"] for e in seller_tab.events] == [True, False]
        assert seller_tab.events[-1].payload["user_id"] == people.buyer
        assert not gateway.typing.is_typing(thread_id, people.buyer)
        assert buyer_tab.events == []

    asyncio.run(run())


def test_renewed_typing_restarts_the_timer(chat_db, people):
    thread_id = _thread(chat_db, people)

    async def run():
        gateway = RealtimeGateway(PresenceRegistry(), session_factory=chat_db, typing_ttl=0.2)
        buyer_conn, _ = await _connected(gateway, people.buyer, "b1")
        _, seller_tab = await _connected(gateway, people.seller, "s1")
        frame = Envelope(type="typing", payload={"thread_id": thread_id, "is_typing": True})

        await gateway.handle_frame(buyer_conn, frame)
        await asyncio.sleep(0.12)
        await gateway.handle_frame(buyer_conn, frame)
        await asyncio.sleep(0.12)
        # The first signal alone would have expired by now
        assert [e.payload["is_typing"] for e in seller_tab.events] == [True, True]

        await asyncio.sleep(0.25)
        assert [e.payload["is_typing"] for e in seller_tab.events] == [True, True, False]

    asyncio.run(run())


def test_typing_false_cancels_pending_expiry(chat_db, people):
    thread_id = _thread(chat_db, people)

    async def run():
        gateway = RealtimeGateway(PresenceRegistry(), session_factory=chat_db, typing_ttl=0.05)
        seller_conn, _ = await _connected(gateway, people.seller, "s1")
        _, buyer_tab = await _connected(gateway, people.buyer, "b1")

        await gateway.handle_frame(seller_conn, Envelope(type="typing", payload={"thread_id": thread_id, "is_typing": True}))
        await gateway.handle_frame(seller_conn, Envelope(type="typing", payload={"thread_id": thread_id, "is_typing": False}))
        await asyncio.sleep(0.15)

        assert [e.payload["is_typing"] for e in buyer_tab.events] == [True, False]

    asyncio.run(run())


def test_typing_by_non_participant_is_rejected(chat_db, people):
    thread_id = _thread(chat_db, people)

    async def run():
        gateway = RealtimeGateway(PresenceRegistry(), session_factory=chat_db)
        conn, tab = await _connected(gateway, people.other, "o1")
        _, seller_tab = await _connected(gateway, people.seller, "s1")

        await gateway.handle_frame(conn, Envelope(type="typing", payload={"thread_id": thread_id, "is_typing": True}))

        assert [e.payload["code"] for e in tab.events] == ["not_a_participant"]
        assert seller_tab.events == []

    asyncio.run(run())


def test_mark_read_frame_notifies_reader_and_other_side(chat_db, people):
    thread_id = _thread(chat_db, people)

    async def run():
        gateway = RealtimeGateway(PresenceRegistry(), session_factory=chat_db)
        seller_conn, seller_tab = await _connected(gateway, people.seller, "s1")
        _, buyer_tab = await _connected(gateway, people.buyer, "b1")

        await gateway.handle_frame(seller_conn, Envelope(type="mark_read", payload={"thread_id": thread_id}))

        for tab in (buyer_tab, seller_tab):
            assert _types(tab) == ["messages_read"]
            assert tab.events[0].payload == {"thread_id": thread_id, "user_id": people.seller}

    asyncio.run(run())


def test_out_of_range_thread_ids_are_ignored(chat_db, people):
    thread_id = _thread(chat_db, people)

    async def run():
        gateway = RealtimeGateway(PresenceRegistry(), session_factory=chat_db)
        conn, tab = await _connected(gateway, people.buyer, "b1")
        _, seller_tab = await _connected(gateway, people.seller, "s1")

        for bad in (2**63, 2**64, 0, -thread_id):
            await gateway.handle_frame(conn, Envelope(type="mark_read", payload={"thread_id": bad}))
            await gateway.handle_frame(conn, Envelope(type="typing", payload={"thread_id": bad, "is_typing": True}))
            await gateway.handle_frame(
                conn, Envelope(type="chat_message", payload={"thread_id": bad, "content": "hi"})
            )
        await gateway.handle_frame(conn, Envelope(type="ping"))

        assert _types(tab) == ["pong"]
        assert seller_tab.events == []

    asyncio.run(run())
