import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from .cleanup_scheduler import HEARTBEAT_STALE_MS, JOIN_GRACE_MS, is_abandoned
from .clock import Clock
from .membership import RoomService
from .models import Room
from .normalizer import normalize

logger = logging.getLogger(__name__)


class SweepReport(BaseModel):
    checked: int = 0
    destroyed: List[str] = Field(default_factory=list)
    idle_closed: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)


def is_idle(room: Room, now_ms: int) -> bool:
    """Auto-close rooms: idle longer than their inactivity timeout"""
    if not room.auto_close_after_inactivity:
        return False
    stamps = [t for t in (room.last_activity, room.last_instrument_play) if t]
    if not stamps:
        return False
    return now_ms - max(stamps) > room.inactivity_timeout_minutes * 60_000


async def sweep_rooms(
    service: RoomService,
    clock: Optional[Clock] = None,
    stale_ms: int = HEARTBEAT_STALE_MS,
    join_grace_ms: int = JOIN_GRACE_MS,
) -> SweepReport:
    """Destroy every abandoned or idle room in the collection. Per-room failures never stop the sweep."""
    clock = clock or service.clock
    report = SweepReport()
    docs = await service.store.get_collection(service.rooms_collection)
    now = clock.now_ms()

    for doc in docs:
        report.checked += 1
        room = normalize(doc, now_ms=now)
        if not room.id:
            continue
        if is_abandoned(room, now, stale_ms, join_grace_ms):
            bucket = report.destroyed
        elif is_idle(room, now):
            bucket = report.idle_closed
        else:
            continue
        try:
            await service.destroy_room(room.id)
            bucket.append(room.id)
            logger.info("🧹 Swept room %s", room.id)
        except Exception as e:
            logger.error("❌ Error sweeping room %s: %s", room.id, e)
            report.failed.append(room.id)

    logger.info(
        "Sweep finished: %d checked, %d abandoned, %d idle, %d failed",
        report.checked,
        len(report.destroyed),
        len(report.idle_closed),
        len(report.failed),
    )
    return report
