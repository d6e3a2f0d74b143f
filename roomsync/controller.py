"""Client-side owner of one room session.

The controller subscribes to the room document, normalizes every snapshot
and fans it out to the heartbeat, the removal detector and the cleanup
scheduler. It exposes a single consistent ``RoomView`` to the rest of the
application.

States::

    IDLE -> LOADING -> READY
                    -> ERROR   (terminal for the room session)

Every timer and the store subscription belong to the current session and
are released on every exit path: stop(), room/user change and errors.
"""

import logging
from enum import Enum
from typing import Callable, List, Optional

from pydantic import BaseModel

from .auth import AuthProvider
from .cleanup_scheduler import RoomCleanupScheduler
from .clock import Clock, TimerHandle
from .config import Settings, settings as default_settings
from .errors import NotFoundError, RoomPermissionError, TransientStoreError
from .heartbeat import PresenceHeartbeat
from .membership import LeaveResult, RoomService
from .models import AuthUser, Participant, Room, Severity
from .normalizer import derive_user_status, normalize
from .notifications import Navigator, NotificationSink, safe_emit
from .removal import RemovalDetector
from .store import DocumentStore, room_path

logger = logging.getLogger(__name__)


class RoomState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


class RoomView(BaseModel):
    state: RoomState = RoomState.IDLE
    room: Optional[Room] = None
    is_host: bool = False
    is_participant: bool = False
    user_info: Optional[Participant] = None
    error: Optional[str] = None
    last_activity_ms: Optional[int] = None
    last_instrument_play_ms: Optional[int] = None

    @property
    def loading(self) -> bool:
        return self.state == RoomState.LOADING


class RoomDataController:
    def __init__(
        self,
        store: DocumentStore,
        auth: AuthProvider,
        room_id: Optional[str],
        clock: Clock,
        notifier: NotificationSink,
        navigator: Navigator,
        settings: Optional[Settings] = None,
        service: Optional[RoomService] = None,
    ):
        self.store = store
        self.auth = auth
        self.room_id = room_id
        self.clock = clock
        self.notifier = notifier
        self.navigator = navigator
        self.settings = settings or default_settings
        self.service = service or RoomService(store, self.settings.rooms_collection, clock)

        self._view = RoomView()
        self._listeners: List[Callable[[RoomView], None]] = []
        self._user: Optional[AuthUser] = None
        self._started = False
        self._leaving = False
        self._auth_unsubscribe: Optional[Callable[[], None]] = None

        # Per-session resources
        self._session = 0
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._load_timer: Optional[TimerHandle] = None
        self._redirect_timer: Optional[TimerHandle] = None
        self.heartbeat: Optional[PresenceHeartbeat] = None
        self.cleanup: Optional[RoomCleanupScheduler] = None
        self.removal: Optional[RemovalDetector] = None

    # -- public surface ------------------------------------------------------

    @property
    def view(self) -> RoomView:
        return self._view

    @property
    def path(self) -> str:
        return room_path(self.settings.rooms_collection, self.room_id or "")

    def add_listener(self, callback: Callable[[RoomView], None]) -> Callable[[], None]:
        """Register a view listener. Returns a function that removes it"""
        self._listeners.append(callback)

        def remove():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def start(self) -> None:
        """Mount: follow auth changes and open the room session"""
        if self._started:
            return
        self._started = True
        self._auth_unsubscribe = self.auth.subscribe(self._on_auth_change)
        self._open_session()

    def stop(self) -> None:
        """Unmount: release the subscription and every timer"""
        if not self._started:
            return
        self._started = False
        if self._auth_unsubscribe:
            self._auth_unsubscribe()
            self._auth_unsubscribe = None
        self._release_session(announce_offline=True)
        self._cancel_redirect()
        if self.removal:
            self.removal.shutdown()
        logger.info("Room data controller for %s stopped", self.room_id)

    def change_room(self, room_id: Optional[str]) -> None:
        """Tear down the current session and open one for another room"""
        if room_id == self.room_id:
            return
        self._release_session(announce_offline=True)
        self._cancel_redirect()
        self.room_id = room_id
        if self._started:
            self._open_session()

    async def flush(self) -> None:
        """Wait for background heartbeat and cleanup writes"""
        if self.heartbeat:
            await self.heartbeat.flush()
        if self.cleanup:
            await self.cleanup.flush()

    def on_visibility_change(self, visible: bool) -> None:
        """Forward page visibility to the heartbeat"""
        if self.heartbeat:
            self.heartbeat.on_visibility_change(visible)

    def on_unload(self) -> None:
        """Best-effort offline write when the page unloads"""
        if self.heartbeat:
            self.heartbeat.on_unload()

    async def leave_room(self) -> Optional[LeaveResult]:
        """Leave voluntarily. Returns None when the leave failed"""
        if not self._user or not self.room_id:
            return None
        self._leaving = True
        if self.removal:
            self.removal.mark_departing()
        if self.heartbeat:
            self.heartbeat.deactivate(announce_offline=False)
        try:
            result = await self.service.leave_room(self.room_id, self._user.id)
        except Exception as e:
            self._leaving = False
            if self.removal:
                self.removal.clear_departing()
            if self.heartbeat and self._view.is_participant:
                self.heartbeat.activate()
            logger.error("❌ Error leaving room %s: %s", self.room_id, e)
            safe_emit(self.notifier, "Error", "Failed to leave the room", Severity.ERROR)
            return None

        self._release_session(announce_offline=False)
        self._set_view(RoomView())
        self._leaving = False
        self.navigator.redirect(self.settings.rooms_home_path)
        return result

    async def record_instrument_play(self) -> None:
        """Record that the local user just played"""
        now = self.clock.now_ms()
        self._set_view(self._view.model_copy(update={"last_instrument_play_ms": now}))
        if not self.room_id:
            return
        try:
            await self.service.touch_activity(self.room_id, "lastInstrumentPlay")
        except Exception as e:
            logger.warning("Could not record instrument play for %s: %s", self.room_id, e)

    # -- session lifecycle ---------------------------------------------------

    def _open_session(self) -> None:
        user = self.auth.current_user()
        self._user = user
        if not self.room_id or user is None:
            logger.info("Missing requirements - room id: %s, user: %s", self.room_id, bool(user))
            self._set_view(RoomView())
            return

        logger.info("Setting up room data listener for room %s", self.room_id)
        self._session += 1
        session = self._session
        self._set_view(RoomView(state=RoomState.LOADING))

        s = self.settings
        self.heartbeat = PresenceHeartbeat(self.store, self.path, user.id, self.clock, s.heartbeat_interval_seconds)
        self.cleanup = RoomCleanupScheduler(
            self.store,
            self.room_id,
            self.clock,
            self.notifier,
            self.navigator,
            rooms_collection=s.rooms_collection,
            home_path=s.rooms_home_path,
            debounce=s.cleanup_debounce_seconds,
            grace_period=s.cleanup_grace_seconds,
            stale_after=s.heartbeat_stale_seconds,
            join_grace=s.join_grace_seconds,
        )
        if self.removal:
            self.removal.shutdown()
        self.removal = RemovalDetector(
            user.id,
            self.clock,
            self.notifier,
            self.navigator,
            home_path=s.rooms_home_path,
            redirect_delay=s.removal_redirect_delay_seconds,
        )
        self._load_timer = self.clock.call_later(s.room_load_timeout_seconds, lambda: self._on_load_timeout(session))

        unsubscribe = self.store.subscribe(
            self.path,
            lambda payload: self._on_data(session, payload),
            lambda error: self._on_error(session, error),
        )
        if session != self._session:
            # The session already ended while the initial snapshot was delivered
            unsubscribe()
        else:
            self._unsubscribe = unsubscribe

    def _release_session(self, announce_offline: bool, keep_cleanup: bool = False) -> None:
        self._session += 1
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self._load_timer:
            self._load_timer.cancel()
            self._load_timer = None
        if self.heartbeat:
            self.heartbeat.deactivate(announce_offline=announce_offline)
        if self.cleanup and not keep_cleanup:
            self.cleanup.shutdown()

    def _on_auth_change(self, user: Optional[AuthUser]) -> None:
        old_id = self._user.id if self._user else None
        new_id = user.id if user else None
        if old_id == new_id:
            return
        logger.info("User changed (%s -> %s), restarting room session", old_id, new_id)
        self._release_session(announce_offline=True)
        self._cancel_redirect()
        self._open_session()

    # -- snapshot handling ---------------------------------------------------

    def _on_data(self, session: int, payload) -> None:
        if session != self._session or self._view.state == RoomState.ERROR:
            return

        if payload is None:
            self._on_room_gone()
            return

        room = normalize(payload, now_ms=self.clock.now_ms())
        if not room.id:
            room = room.model_copy(update={"id": self.room_id})
        if self._load_timer:
            self._load_timer.cancel()
            self._load_timer = None

        status = derive_user_status(self._user.id, room)
        view = self._view
        self._set_view(
            RoomView(
                state=RoomState.READY,
                room=room,
                is_host=status.is_host,
                is_participant=status.is_participant,
                user_info=status.participant,
                last_activity_ms=room.last_activity or view.last_activity_ms,
                last_instrument_play_ms=room.last_instrument_play or view.last_instrument_play_ms,
            )
        )

        if status.is_participant and not self._leaving:
            self.heartbeat.activate()
        else:
            self.heartbeat.deactivate(announce_offline=False)

        self.removal.observe(room)
        self.cleanup.evaluate(room)

    def _on_room_gone(self) -> None:
        if self._leaving:
            return
        if self.cleanup and self.cleanup.destroying:
            # The scheduler notifies and redirects once its own delete finishes
            self._fail("Room closed", announce=False, keep_cleanup=True)
            return
        logger.warning("Room data is null, room %s may have been closed", self.room_id)
        safe_emit(self.notifier, "Room Closed", "This room has been closed or no longer exists", Severity.WARNING)
        self._fail("Room closed", redirect_after=0)

    def _on_error(self, session: int, error: Exception) -> None:
        if session != self._session or self._view.state == RoomState.ERROR:
            return

        if isinstance(error, TransientStoreError):
            if self._view.state == RoomState.LOADING:
                logger.warning("Transient error while loading room %s: %s", self.room_id, error)
                self._set_view(self._view.model_copy(update={"error": "Loading room... Please wait"}))
            else:
                logger.warning("Transient listener error for room %s: %s", self.room_id, error)
            return

        if isinstance(error, NotFoundError):
            self._on_room_gone()
            return

        logger.error("Room data listener error for %s: %s", self.room_id, error)
        if isinstance(error, RoomPermissionError):
            safe_emit(self.notifier, "Access Denied", str(error) or "You cannot access this room", Severity.ERROR)
            self._fail(str(error) or "Access denied", redirect_after=self.settings.error_redirect_delay_seconds)
        else:
            safe_emit(self.notifier, "Error", "Failed to load room data", Severity.ERROR)
            self._fail("Failed to load room data", redirect_after=self.settings.error_redirect_delay_seconds)

    def _on_load_timeout(self, session: int) -> None:
        if session != self._session or self._view.state != RoomState.LOADING:
            return
        logger.warning("Room %s did not load in %ss", self.room_id, self.settings.room_load_timeout_seconds)
        safe_emit(self.notifier, "Room Unavailable", "Room could not be loaded. Please try again.", Severity.ERROR)
        self._fail("Room could not be loaded. Please try again.", redirect_after=0)

    def _fail(
        self, message: str, redirect_after: Optional[float] = None, announce: bool = True, keep_cleanup: bool = False
    ) -> None:
        self._release_session(announce_offline=False, keep_cleanup=keep_cleanup)
        self._set_view(self._view.model_copy(update={"state": RoomState.ERROR, "error": message}))
        if not announce or redirect_after is None:
            return
        if redirect_after <= 0:
            self.navigator.redirect(self.settings.rooms_home_path, replace=True)
        else:
            self._cancel_redirect()
            self._redirect_timer = self.clock.call_later(
                redirect_after, lambda: self.navigator.redirect(self.settings.rooms_home_path, replace=True)
            )

    def _cancel_redirect(self) -> None:
        if self._redirect_timer:
            self._redirect_timer.cancel()
            self._redirect_timer = None

    def _set_view(self, view: RoomView) -> None:
        self._view = view
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception as e:
                logger.error("Room view listener failed: %s", e)
