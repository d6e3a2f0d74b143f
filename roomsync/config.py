import os
from typing import List

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


class Settings(BaseModel):
    """Runtime tunables, read from the environment (and a local .env file)"""

    store_backend: str = "firestore"
    rooms_collection: str = "musicRooms"
    rooms_home_path: str = "/music-rooms"

    heartbeat_interval_seconds: float = 30
    heartbeat_stale_seconds: float = 90
    join_grace_seconds: float = 30
    cleanup_debounce_seconds: float = 10
    cleanup_grace_seconds: float = 15
    room_load_timeout_seconds: float = 8
    error_redirect_delay_seconds: float = 3
    removal_redirect_delay_seconds: float = 0.1

    cleanup_scheduler_interval: int = 60
    chat_message_max_length: int = 2000
    allowed_origins: List[str] = ["*"]
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        allowed_origins_config = os.getenv("ALLOWED_ORIGINS", "*")
        if allowed_origins_config == "*":
            allowed_origins = ["*"]
        else:
            allowed_origins = allowed_origins_config.split(",")

        return cls(
            store_backend=os.getenv("ROOMSYNC_STORE", "firestore"),
            rooms_collection=os.getenv("ROOMS_COLLECTION", "musicRooms"),
            rooms_home_path=os.getenv("ROOMS_HOME_PATH", "/music-rooms"),
            heartbeat_interval_seconds=float(os.getenv("HEARTBEAT_INTERVAL_SECONDS", "30")),
            heartbeat_stale_seconds=float(os.getenv("HEARTBEAT_STALE_SECONDS", "90")),
            join_grace_seconds=float(os.getenv("JOIN_GRACE_SECONDS", "30")),
            cleanup_debounce_seconds=float(os.getenv("CLEANUP_DEBOUNCE_SECONDS", "10")),
            cleanup_grace_seconds=float(os.getenv("CLEANUP_GRACE_SECONDS", "15")),
            room_load_timeout_seconds=float(os.getenv("ROOM_LOAD_TIMEOUT_SECONDS", "8")),
            error_redirect_delay_seconds=float(os.getenv("ERROR_REDIRECT_DELAY_SECONDS", "3")),
            removal_redirect_delay_seconds=float(os.getenv("REMOVAL_REDIRECT_DELAY_SECONDS", "0.1")),
            cleanup_scheduler_interval=int(os.getenv("CLEANUP_SCHEDULER_INTERVAL", "60")),
            chat_message_max_length=int(os.getenv("CHAT_MESSAGE_MAX_LENGTH", "2000")),
            allowed_origins=allowed_origins,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


settings = Settings.from_env()
