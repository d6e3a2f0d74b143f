"""Tests for the room data controller session lifecycle."""
import pytest

from conftest import ROOMS, drain, participant
from roomsync.controller import RoomDataController, RoomState
from roomsync.errors import NotFoundError, RoomPermissionError, TransientStoreError
from roomsync.membership import RoomService
from roomsync.models import AuthUser
from roomsync.store import MemoryDocumentStore, room_path

PATH = room_path(ROOMS, "r1")


class SilentStore(MemoryDocumentStore):
    """Registers listeners but never delivers the initial snapshot"""

    def subscribe(self, path, on_data, on_error):
        key = self._key(path)
        listener = (on_data, on_error)
        self._listeners[key].append(listener)

        def unsubscribe():
            if listener in self._listeners.get(key, []):
                self._listeners[key].remove(listener)

        return unsubscribe


def seed(store, clock, *entries, **fields):
    entries = list(entries) or [participant("alice", clock.now_ms(), isHost=True)]
    data = {"name": "Jam", "participants": entries, "participantIds": [p["id"] for p in entries]}
    data.update(fields)
    store.seed(PATH, data)


def make_controller(store, auth, clock, notifier, navigator, settings, room_id="r1"):
    return RoomDataController(store, auth, room_id, clock, notifier, navigator, settings=settings)


@pytest.mark.asyncio
async def test_loads_room_and_derives_user_status(store, auth, clock, notifier, navigator, settings):
    seed(store, clock)
    controller = make_controller(store, auth, clock, notifier, navigator, settings)
    views = []
    controller.add_listener(views.append)

    controller.start()
    await controller.flush()

    view = controller.view
    assert view.state == RoomState.READY
    assert view.room.id == "r1"
    assert view.is_participant and view.is_host
    assert view.user_info.id == "alice"
    assert views[0].state == RoomState.LOADING
    assert controller.heartbeat.active
    controller.stop()
    await drain()


def test_without_user_or_room_stays_idle(store, clock, notifier, navigator, settings):
    from roomsync.auth import StaticAuthProvider

    controller = make_controller(store, StaticAuthProvider(None), clock, notifier, navigator, settings)
    controller.start()
    assert controller.view.state == RoomState.IDLE
    assert store.calls == []


def test_load_timeout_fails_and_redirects(auth, clock, notifier, navigator, settings):
    store = SilentStore()
    controller = make_controller(store, auth, clock, notifier, navigator, settings)
    controller.start()
    assert controller.view.loading

    clock.advance(7.9)
    assert controller.view.loading
    clock.advance(0.1)

    assert controller.view.state == RoomState.ERROR
    assert controller.view.error == "Room could not be loaded. Please try again."
    assert notifier.titles == ["Room Unavailable"]
    assert navigator.redirects == [("/music-rooms", True)]
    assert store.listener_count(PATH) == 0


def test_missing_room_reports_closed(store, auth, clock, notifier, navigator, settings):
    controller = make_controller(store, auth, clock, notifier, navigator, settings)
    controller.start()

    assert controller.view.state == RoomState.ERROR
    assert notifier.titles == ["Room Closed"]
    assert notifier.notifications[0].message == "This room has been closed or no longer exists"
    assert navigator.redirects == [("/music-rooms", True)]
    assert store.listener_count(PATH) == 0
    assert clock.pending == 0


def test_transient_error_while_loading_keeps_waiting(auth, clock, notifier, navigator, settings):
    store = SilentStore()
    controller = make_controller(store, auth, clock, notifier, navigator, settings)
    controller.start()
    store.fail_next(PATH, TransientStoreError("unavailable"))

    assert controller.view.loading
    assert controller.view.error == "Loading room... Please wait"
    assert notifier.notifications == []
    assert store.listener_count(PATH) == 1


def test_permission_error_redirects_after_delay(auth, clock, notifier, navigator, settings):
    store = SilentStore()
    controller = make_controller(store, auth, clock, notifier, navigator, settings)
    controller.start()
    store.fail_next(PATH, RoomPermissionError("Missing or insufficient permissions"))

    assert controller.view.state == RoomState.ERROR
    assert notifier.titles == ["Access Denied"]
    assert navigator.redirects == []
    clock.advance(3)
    assert navigator.redirects == [("/music-rooms", True)]


def test_unknown_error_fails_room(auth, clock, notifier, navigator, settings):
    store = SilentStore()
    controller = make_controller(store, auth, clock, notifier, navigator, settings)
    controller.start()
    store.fail_next(PATH, RuntimeError("boom"))
    store.fail_next(PATH, RuntimeError("again"))

    assert controller.view.error == "Failed to load room data"
    assert notifier.titles == ["Error"]


def test_not_found_error_treated_as_closed(auth, clock, notifier, navigator, settings):
    store = SilentStore()
    controller = make_controller(store, auth, clock, notifier, navigator, settings)
    controller.start()
    store.fail_next(PATH, NotFoundError("gone"))
    assert notifier.titles == ["Room Closed"]


@pytest.mark.asyncio
async def test_stop_releases_everything(store, auth, clock, notifier, navigator, settings):
    seed(store, clock)
    controller = make_controller(store, auth, clock, notifier, navigator, settings)
    controller.start()
    await controller.flush()

    controller.stop()
    await controller.flush()

    assert store.listener_count(PATH) == 0
    assert clock.pending == 0
    assert not controller.heartbeat.active
    assert store.peek(PATH)["participants"][0]["isInRoom"] is False


@pytest.mark.asyncio
async def test_kicked_user_is_notified_once(store, auth, clock, notifier, navigator, settings):
    now = clock.now_ms()
    seed(store, clock, participant("host", now, isHost=True), participant("alice", now), hostId="host")
    controller = make_controller(store, auth, clock, notifier, navigator, settings)
    controller.start()
    await controller.flush()

    await RoomService(store, ROOMS, clock).remove_participant("r1", "host", "alice")
    await controller.flush()

    assert notifier.titles == ["Removed from Room"]
    assert not controller.view.is_participant
    assert not controller.heartbeat.active
    clock.advance(0.1)
    assert navigator.redirects == [("/music-rooms", True)]
    controller.stop()
    await drain()


@pytest.mark.asyncio
async def test_host_leaving_migrates_host_without_removal(store, auth, clock, notifier, navigator, settings):
    now = clock.now_ms()
    seed(store, clock, participant("alice", now, isHost=True), participant("bob", now), hostId="alice")
    controller = make_controller(store, auth, clock, notifier, navigator, settings)
    controller.start()
    await controller.flush()

    result = await controller.leave_room()
    await controller.flush()

    assert result.new_host_id == "bob"
    data = store.peek(PATH)
    assert data["hostId"] == "bob"
    assert data["participantIds"] == ["bob"]
    assert notifier.notifications == []
    assert navigator.redirects == [("/music-rooms", False)]
    assert controller.view.state == RoomState.IDLE
    assert store.listener_count(PATH) == 0


@pytest.mark.asyncio
async def test_last_participant_leaving_deletes_room_quietly(store, auth, clock, notifier, navigator, settings):
    seed(store, clock)
    controller = make_controller(store, auth, clock, notifier, navigator, settings)
    controller.start()
    await controller.flush()

    result = await controller.leave_room()

    assert result.room_deleted is True
    assert store.peek(PATH) is None
    assert notifier.notifications == []
    assert navigator.redirects == [("/music-rooms", False)]


@pytest.mark.asyncio
async def test_failed_leave_keeps_session(store, auth, clock, notifier, navigator, settings):
    seed(store, clock)
    controller = make_controller(store, auth, clock, notifier, navigator, settings)
    controller.start()
    await controller.flush()

    async def broken(room_id, user_id):
        raise ConnectionError("offline")

    controller.service.leave_room = broken
    assert await controller.leave_room() is None
    assert notifier.titles == ["Error"]
    assert controller.view.state == RoomState.READY
    assert store.listener_count(PATH) == 1
    controller.stop()
    await drain()


@pytest.mark.asyncio
async def test_abandoned_room_destroyed_with_single_notification(store, auth, clock, notifier, navigator, settings):
    # alice is listed in participants but the record declares nobody
    seed(store, clock, participant("alice", clock.now_ms()), participantIds=[])
    controller = make_controller(store, auth, clock, notifier, navigator, settings)
    controller.start()
    await controller.flush()
    assert controller.cleanup.armed

    clock.advance(15)
    await controller.flush()

    assert store.peek(PATH) is None
    assert notifier.titles == ["Room Closed"]
    assert notifier.notifications[0].message == "Room was automatically closed as all participants have left"
    assert navigator.redirects == [("/music-rooms", True)]
    assert controller.view.state == RoomState.ERROR


@pytest.mark.asyncio
async def test_auth_change_restarts_session(store, auth, clock, notifier, navigator, settings):
    seed(store, clock)
    controller = make_controller(store, auth, clock, notifier, navigator, settings)
    controller.start()
    await controller.flush()

    auth.set_user(AuthUser(id="bob"))
    await drain()
    await controller.flush()
    assert controller.view.state == RoomState.READY
    assert not controller.view.is_participant
    assert store.listener_count(PATH) == 1

    auth.set_user(None)
    assert controller.view.state == RoomState.IDLE
    assert store.listener_count(PATH) == 0
    controller.stop()
    await drain()


@pytest.mark.asyncio
async def test_change_room_moves_subscription(store, auth, clock, notifier, navigator, settings):
    seed(store, clock)
    store.seed(room_path(ROOMS, "r2"), {"participants": [participant("alice", clock.now_ms())]})
    controller = make_controller(store, auth, clock, notifier, navigator, settings)
    controller.start()
    await controller.flush()

    controller.change_room("r2")
    await drain()
    await controller.flush()

    assert store.listener_count(PATH) == 0
    assert store.listener_count(room_path(ROOMS, "r2")) == 1
    assert controller.view.room.id == "r2"
    controller.stop()
    await drain()


@pytest.mark.asyncio
async def test_record_instrument_play(store, auth, clock, notifier, navigator, settings):
    seed(store, clock)
    controller = make_controller(store, auth, clock, notifier, navigator, settings)
    controller.start()
    await controller.flush()

    await controller.record_instrument_play()

    assert controller.view.last_instrument_play_ms == clock.now_ms()
    assert store.peek(PATH)["lastInstrumentPlay"].startswith("2023-11-14")
    controller.stop()
    await drain()


@pytest.mark.asyncio
async def test_changing_room_after_cleanup_fired_stays_quiet(store, auth, clock, notifier, navigator, settings):
    seed(store, clock, participant("alice", clock.now_ms()), participantIds=[])
    store.seed(
        room_path(ROOMS, "r2"), {"participants": [participant("alice", clock.now_ms())], "participantIds": ["alice"]}
    )
    controller = make_controller(store, auth, clock, notifier, navigator, settings)
    controller.start()
    await controller.flush()
    assert controller.cleanup.armed

    clock.advance(15)
    controller.change_room("r2")
    await drain()
    await controller.flush()

    assert controller.view.room.id == "r2"
    assert navigator.redirects == []
    assert notifier.notifications == []
    assert store.peek(PATH) is not None
    controller.stop()
    await drain()
