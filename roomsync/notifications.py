import logging

from .models import Notification, Severity

logger = logging.getLogger(__name__)


class NotificationSink:
    """Fire-and-forget user notifications. ``emit`` must never block or raise."""

    def emit(self, notification: Notification) -> None:
        raise NotImplementedError


class Navigator:
    def redirect(self, path: str, replace: bool = False) -> None:
        raise NotImplementedError


class LogNotificationSink(NotificationSink):
    def emit(self, notification: Notification) -> None:
        level = {
            Severity.INFO: logging.INFO,
            Severity.WARNING: logging.WARNING,
            Severity.ERROR: logging.ERROR,
        }.get(notification.severity, logging.INFO)
        logger.log(level, "🔔 %s: %s", notification.title, notification.message)


class LogNavigator(Navigator):
    def redirect(self, path: str, replace: bool = False) -> None:
        logger.info("➡️ Redirect to %s (replace=%s)", path, replace)


def safe_emit(sink: NotificationSink, title: str, message: str, severity: Severity = Severity.INFO) -> None:
    try:
        sink.emit(Notification(title=title, message=message, severity=severity))
    except Exception as e:
        logger.error("Notification sink failed for %r: %s", title, e)
