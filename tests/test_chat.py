"""Tests for the room chat channel."""
import pytest

from conftest import ROOMS, participant
from roomsync.chat import RoomChatChannel, count_unread, order_messages
from roomsync.clock import to_iso
from roomsync.controller import RoomState, RoomView
from roomsync.membership import RoomService
from roomsync.normalizer import derive_user_status, normalize
from roomsync.store import chat_path, room_path

CHAT = chat_path(ROOMS, "r1")


def make_view(user_id, now_ms, **room_fields):
    entries = room_fields.pop("participants", [participant(user_id, now_ms)])
    room = normalize({"id": "r1", "participants": entries, **room_fields}, now_ms=now_ms)
    status = derive_user_status(user_id, room)
    return RoomView(
        state=RoomState.READY,
        room=room,
        is_host=status.is_host,
        is_participant=status.is_participant,
        user_info=status.participant,
    )


def make_channel(store, clock, notifier, alice, settings, view):
    holder = {"view": view}
    channel = RoomChatChannel(
        store,
        "r1",
        alice,
        lambda: holder["view"],
        clock,
        notifier,
        settings=settings,
        service=RoomService(store, ROOMS, clock),
    )
    return channel, holder


def message(sender_id, ts_ms, text="hi"):
    return {"text": text, "senderId": sender_id, "senderName": sender_id.capitalize(), "timestamp": to_iso(ts_ms)}


class TestOrdering:
    def test_messages_sorted_by_timestamp_with_keys(self):
        docs = [
            {"id": "m3", **message("bob", 3_000)},
            {"id": "m1", **message("bob", 1_000)},
            {"id": "m2", **message("bob", 2_000)},
        ]
        ordered = order_messages(docs)
        assert [m.id for m in ordered] == ["m1", "m2", "m3"]
        assert [m.key for m in ordered] == ["m1-0", "m2-1", "m3-2"]

    def test_unparseable_docs_are_skipped(self):
        assert order_messages([{"text": "no id"}, None]) == []

    def test_unread_counts_only_newer_messages_from_others(self):
        messages = order_messages(
            [
                {"id": "a", **message("bob", 500)},
                {"id": "b", **message("bob", 1_500)},
                {"id": "c", **message("alice", 2_000)},
            ]
        )
        assert count_unread(messages, "alice", 1_000) == 1


class TestChannel:
    @pytest.mark.asyncio
    async def test_unread_then_mark_read(self, store, clock, notifier, alice, settings):
        channel, _ = make_channel(store, clock, notifier, alice, settings, make_view("alice", clock.now_ms()))
        channel.start()
        assert channel.loading is False
        assert channel.messages == []

        for n in (3, 1, 2):
            await store.set_one(f"{CHAT}/m{n}", message("bob", clock.now_ms() + n * 1000))
        for n in (5, 4):
            await store.set_one(f"{CHAT}/m{n}", message("alice", clock.now_ms() + n * 1000))

        assert [m.id for m in channel.messages] == ["m1", "m2", "m3", "m4", "m5"]
        assert channel.unread_count == 3
        channel.mark_chat_as_read()
        assert channel.unread_count == 0

    @pytest.mark.asyncio
    async def test_new_incoming_message_notifies(self, store, clock, notifier, alice, settings):
        channel, _ = make_channel(store, clock, notifier, alice, settings, make_view("alice", clock.now_ms()))
        channel.start()
        clock.advance(1)
        await store.set_one(f"{CHAT}/m1", message("bob", clock.now_ms(), text="hello there"))

        assert [m.text for m in channel.messages] == ["hello there"]
        assert channel.unread_count == 1
        assert notifier.titles == ["New Message"]
        assert notifier.notifications[0].message == "Bob: hello there"

    def test_initial_load_does_not_notify(self, store, clock, notifier, alice, settings):
        clock.advance(1)
        store.seed(f"{CHAT}/m1", message("bob", clock.now_ms() + 5))
        channel, _ = make_channel(store, clock, notifier, alice, settings, make_view("alice", clock.now_ms()))
        channel.start()
        assert len(channel.messages) == 1
        assert notifier.notifications == []

    @pytest.mark.asyncio
    async def test_send_message_writes_and_touches_activity(self, store, clock, notifier, alice, settings):
        store.seed(room_path(ROOMS, "r1"), {"participants": [participant("alice", clock.now_ms())]})
        channel, _ = make_channel(store, clock, notifier, alice, settings, make_view("alice", clock.now_ms()))
        channel.start()

        assert await channel.send_message("  hello  ") is True
        assert len(channel.messages) == 1
        sent = channel.messages[0]
        assert sent.sender_id == "alice"
        assert sent.sender_name == "Alice"
        assert sent.text == "  hello  "
        assert "lastActivity" in store.peek(room_path(ROOMS, "r1"))
        assert notifier.notifications == []

    @pytest.mark.asyncio
    async def test_blank_message_is_ignored(self, store, clock, notifier, alice, settings):
        channel, _ = make_channel(store, clock, notifier, alice, settings, make_view("alice", clock.now_ms()))
        assert await channel.send_message("   ") is False
        assert notifier.notifications == []
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_non_participant_is_denied(self, store, clock, notifier, alice, settings):
        view = make_view("alice", clock.now_ms(), participants=[participant("bob", clock.now_ms())])
        channel, _ = make_channel(store, clock, notifier, alice, settings, view)
        assert await channel.send_message("hi") is False
        assert notifier.titles == ["Access Denied"]

    @pytest.mark.asyncio
    async def test_disabled_chat_blocks_guests_not_host(self, store, clock, notifier, alice, settings):
        now = clock.now_ms()
        view = make_view("alice", now, isChatDisabled=True)
        channel, holder = make_channel(store, clock, notifier, alice, settings, view)
        assert await channel.send_message("hi") is False
        assert notifier.titles == ["Chat Disabled"]

        holder["view"] = make_view("alice", now, isChatDisabled=True, participants=[participant("alice", now, isHost=True)])
        assert await channel.send_message("hi") is True

    @pytest.mark.asyncio
    async def test_muted_participant_cannot_send(self, store, clock, notifier, alice, settings):
        now = clock.now_ms()
        view = make_view("alice", now, participants=[participant("alice", now, muted=True)])
        channel, _ = make_channel(store, clock, notifier, alice, settings, view)
        assert await channel.send_message("hi") is False
        assert notifier.titles == ["Muted"]

    @pytest.mark.asyncio
    async def test_long_messages_are_truncated(self, store, clock, notifier, alice, settings):
        channel, _ = make_channel(store, clock, notifier, alice, settings, make_view("alice", clock.now_ms()))
        channel.start()
        await channel.send_message("x" * 5000)
        assert len(channel.messages[0].text) == settings.chat_message_max_length

    @pytest.mark.asyncio
    async def test_store_failure_notifies(self, store, clock, notifier, alice, settings):
        async def broken(path, data, merge=False):
            raise ConnectionError("offline")

        store.set_one = broken
        channel, _ = make_channel(store, clock, notifier, alice, settings, make_view("alice", clock.now_ms()))
        assert await channel.send_message("hi") is False
        assert notifier.titles == ["Error"]

    def test_listener_error_notifies(self, store, clock, notifier, alice, settings):
        channel, _ = make_channel(store, clock, notifier, alice, settings, make_view("alice", clock.now_ms()))
        channel.start()
        store.fail_next(CHAT, RuntimeError("denied"))
        assert notifier.titles == ["Chat Error"]

    def test_stop_unsubscribes(self, store, clock, notifier, alice, settings):
        channel, _ = make_channel(store, clock, notifier, alice, settings, make_view("alice", clock.now_ms()))
        channel.start()
        assert store.listener_count(CHAT) == 1
        channel.stop()
        assert store.listener_count(CHAT) == 0
