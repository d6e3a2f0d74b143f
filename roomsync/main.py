import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .cleanup_scheduler import is_abandoned, strictly_active_participants
from .clock import AsyncioClock
from .config import Settings, settings as default_settings
from .errors import JoinRejectedError, NotFoundError, RoomPermissionError, TransientStoreError
from .membership import RoomService
from .models import AuthUser
from .store import DocumentStore, MemoryDocumentStore
from .sweeper import sweep_rooms

logger = logging.getLogger(__name__)


# Data models
class UserRequest(BaseModel):
    user_id: str


class JoinRoomRequest(BaseModel):
    user_id: str
    display_name: str = "Anonymous"
    avatar_ref: str = ""
    join_code: Optional[str] = None


class JoinDecisionRequest(BaseModel):
    host_id: str
    approve: bool
    display_name: str = "Anonymous"


class KickRequest(BaseModel):
    host_id: str
    target_id: str


class MuteRequest(BaseModel):
    host_id: str
    target_id: str
    muted: bool = True


class SettingsRequest(BaseModel):
    user_id: str
    settings: Dict[str, Any]


def build_store(settings: Settings) -> DocumentStore:
    if settings.store_backend == "memory":
        logger.info("Using in-memory document store")
        return MemoryDocumentStore()
    from .firestore_store import FirestoreDocumentStore

    return FirestoreDocumentStore()


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e) or "Room not found")
    if isinstance(e, RoomPermissionError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, JoinRejectedError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, TransientStoreError):
        return HTTPException(status_code=503, detail="Store temporarily unavailable, try again")
    if isinstance(e, ValueError):
        return HTTPException(status_code=422, detail=str(e))
    logger.error("❌ Unexpected error: %s", e)
    return HTTPException(status_code=500, detail=str(e))


def create_app(store: Optional[DocumentStore] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or default_settings
    app = FastAPI(title="Room Sync API", version="1.0.0")
    app.state.settings = settings
    app.state.store = store
    app.state.service = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["*"],
        max_age=86400,
    )

    def service_for(state) -> RoomService:
        if state.service is None:
            if state.store is None:
                state.store = build_store(state.settings)
            state.service = RoomService(state.store, state.settings.rooms_collection, AsyncioClock())
        return state.service

    def get_service(request: Request) -> RoomService:
        return service_for(request.app.state)

    async def run_sweep(service: RoomService):
        return await sweep_rooms(
            service,
            stale_ms=int(settings.heartbeat_stale_seconds * 1000),
            join_grace_ms=int(settings.join_grace_seconds * 1000),
        )

    @app.on_event("startup")
    async def startup_event():
        """Start background cleanup task"""
        app.state.cleanup_task = asyncio.create_task(periodic_cleanup())

    @app.on_event("shutdown")
    async def shutdown_event():
        task = getattr(app.state, "cleanup_task", None)
        if task:
            task.cancel()

    async def periodic_cleanup():
        """Sweep abandoned rooms every CLEANUP_SCHEDULER_INTERVAL seconds"""
        interval = settings.cleanup_scheduler_interval
        while True:
            await asyncio.sleep(interval)
            try:
                logger.info("🕐 Running periodic cleanup check...")
                await run_sweep(service_for(app.state))
            except Exception as e:
                logger.error("Error in periodic cleanup: %s", e)

    @app.get("/")
    async def root():
        return {"message": "Room Sync API is running!"}

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    @app.get("/rooms/{room_id}")
    async def get_room(room_id: str, service: RoomService = Depends(get_service)):
        try:
            room = await service.get_room(room_id)
        except Exception as e:
            raise _http_error(e)
        return room.model_dump(mode="json")

    @app.get("/rooms/{room_id}/presence")
    async def get_room_presence(room_id: str, service: RoomService = Depends(get_service)):
        try:
            room = await service.get_room(room_id)
        except Exception as e:
            raise _http_error(e)
        now = service.clock.now_ms()
        stale_ms = int(settings.heartbeat_stale_seconds * 1000)
        join_grace_ms = int(settings.join_grace_seconds * 1000)
        active = strictly_active_participants(room, now, stale_ms, join_grace_ms)
        return {
            "room_id": room.id,
            "participant_count": len(room.participants),
            "declared_participant_ids": room.declared_participant_ids,
            "strictly_active": [p.id for p in active],
            "abandoned": is_abandoned(room, now, stale_ms, join_grace_ms),
        }

    @app.post("/rooms/{room_id}/join")
    async def join_room(room_id: str, request: JoinRoomRequest, service: RoomService = Depends(get_service)):
        user = AuthUser(id=request.user_id, display_name=request.display_name, avatar_ref=request.avatar_ref)
        try:
            room = await service.join_room(room_id, user, join_code=request.join_code)
        except Exception as e:
            raise _http_error(e)
        return {"success": True, "participant_ids": room.participant_ids}

    @app.post("/rooms/{room_id}/requests")
    async def request_to_join(room_id: str, request: UserRequest, service: RoomService = Depends(get_service)):
        try:
            await service.request_to_join(room_id, request.user_id)
        except Exception as e:
            raise _http_error(e)
        return {"success": True}

    @app.post("/rooms/{room_id}/requests/{user_id}")
    async def answer_join_request(
        room_id: str, user_id: str, request: JoinDecisionRequest, service: RoomService = Depends(get_service)
    ):
        try:
            await service.handle_join_request(
                room_id, request.host_id, user_id, request.approve, display_name=request.display_name
            )
        except Exception as e:
            raise _http_error(e)
        return {"success": True, "approved": request.approve}

    @app.post("/rooms/{room_id}/leave")
    async def leave_room(room_id: str, request: UserRequest, service: RoomService = Depends(get_service)):
        try:
            result = await service.leave_room(room_id, request.user_id)
        except Exception as e:
            raise _http_error(e)
        return {"success": True, **result.model_dump()}

    @app.post("/rooms/{room_id}/kick")
    async def kick_participant(room_id: str, request: KickRequest, service: RoomService = Depends(get_service)):
        try:
            await service.remove_participant(room_id, request.host_id, request.target_id)
        except Exception as e:
            raise _http_error(e)
        return {"success": True}

    @app.post("/rooms/{room_id}/mute")
    async def mute_participant(room_id: str, request: MuteRequest, service: RoomService = Depends(get_service)):
        try:
            updated = await service.set_participant_muted(room_id, request.host_id, request.target_id, request.muted)
        except Exception as e:
            raise _http_error(e)
        if not updated:
            raise HTTPException(status_code=404, detail="Participant not found")
        return {"success": True, "muted": request.muted}

    @app.patch("/rooms/{room_id}/settings")
    async def update_settings(room_id: str, request: SettingsRequest, service: RoomService = Depends(get_service)):
        try:
            update = await service.update_room_settings(room_id, request.user_id, request.settings)
        except Exception as e:
            raise _http_error(e)
        return {"success": True, "settings": update}

    @app.post("/rooms/{room_id}/close")
    async def close_room(room_id: str, request: UserRequest, service: RoomService = Depends(get_service)):
        try:
            await service.close_room(room_id, request.user_id)
        except Exception as e:
            raise _http_error(e)
        return {"success": True, "message": f"Room {room_id} closed"}

    @app.post("/cleanup")
    async def cleanup_rooms(service: RoomService = Depends(get_service)):
        """Sweep abandoned and idle rooms now"""
        try:
            report = await run_sweep(service)
        except Exception as e:
            raise _http_error(e)
        return {"success": True, **report.model_dump()}

    return app


logging.basicConfig(
    level=default_settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
app = create_app()
