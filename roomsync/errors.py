class StoreError(Exception):
    """Base class for document store failures"""


class TransientStoreError(StoreError):
    """Network or timeout failure. Safe to retry; the next tick usually heals it."""


class NotFoundError(StoreError):
    """The document does not exist. Definitive, never retried."""


class RoomPermissionError(StoreError):
    """The caller is not allowed to write these fields (e.g. non-host editing settings)."""


class JoinRejectedError(Exception):
    """A join attempt was refused (room full, private room without approval or code)."""
