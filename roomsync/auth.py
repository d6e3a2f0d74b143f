import logging
from typing import Callable, List, Optional

from .models import AuthUser

logger = logging.getLogger(__name__)

AuthListener = Callable[[Optional[AuthUser]], None]


class AuthProvider:
    """Exposes only a stable user identity and sign-in/out changes"""

    def current_user(self) -> Optional[AuthUser]:
        raise NotImplementedError

    def subscribe(self, callback: AuthListener) -> Callable[[], None]:
        raise NotImplementedError


class StaticAuthProvider(AuthProvider):
    """Holds the signed-in user in memory; ``set_user`` notifies listeners"""

    def __init__(self, user: Optional[AuthUser] = None):
        self._user = user
        self._listeners: List[AuthListener] = []

    def current_user(self) -> Optional[AuthUser]:
        return self._user

    def set_user(self, user: Optional[AuthUser]) -> None:
        self._user = user
        logger.info("Auth state changed: %s", user.id if user else "signed out")
        for listener in list(self._listeners):
            listener(user)

    def subscribe(self, callback: AuthListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe
