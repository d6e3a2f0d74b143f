import logging
from typing import Optional

from .clock import Clock, TimerHandle
from .models import Room, Severity
from .notifications import Navigator, NotificationSink, safe_emit

logger = logging.getLogger(__name__)


class RemovalDetector:
    """Notices "I was a member, now I'm not, and I didn't leave" for the local user.

    The latch is one-shot per room session: after the first removal no
    further notification fires until the room id changes.
    """

    def __init__(
        self,
        user_id: str,
        clock: Clock,
        notifier: NotificationSink,
        navigator: Navigator,
        home_path: str = "/music-rooms",
        redirect_delay: float = 0.1,
    ):
        self.user_id = user_id
        self.clock = clock
        self.notifier = notifier
        self.navigator = navigator
        self.home_path = home_path
        self.redirect_delay = redirect_delay

        self.room_id: Optional[str] = None
        self.was_participant = False
        self.was_host = False
        self.has_been_removed = False
        self.departing = False
        self._redirect: Optional[TimerHandle] = None

    def mark_departing(self) -> None:
        """The local user is leaving on purpose; absences are not removals until cleared"""
        self.departing = True
        self.was_participant = False
        self.was_host = False

    def clear_departing(self) -> None:
        self.departing = False

    def observe(self, room: Room) -> bool:
        """Process a snapshot. Returns True if this snapshot latched a removal."""
        if room.id != self.room_id:
            self.room_id = room.id
            self.has_been_removed = False
            self.was_participant = False
            self.was_host = False
            self.departing = False

        me = next((p for p in room.participants if p.id == self.user_id), None)
        removed = (
            not self.has_been_removed
            and not self.departing
            and self.was_participant
            and me is None
            and len(room.participants) > 0
            and not self.was_host
        )

        self.was_participant = me is not None
        self.was_host = bool(me and me.is_host)

        if not removed:
            return False

        self.has_been_removed = True
        logger.warning("🚪 User %s was removed from room %s", self.user_id, room.id)
        safe_emit(
            self.notifier,
            "Removed from Room",
            "You have been removed from the room by the host.",
            Severity.WARNING,
        )
        self._redirect = self.clock.call_later(self.redirect_delay, self._go_home)
        return True

    def _go_home(self) -> None:
        self._redirect = None
        self.navigator.redirect(self.home_path, replace=True)

    def shutdown(self) -> None:
        if self._redirect is not None:
            self._redirect.cancel()
            self._redirect = None
