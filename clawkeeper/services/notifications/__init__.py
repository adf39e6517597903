from clawkeeper.services.notifications.notifier import (
    AlertNotification,
    ChannelResult,
    NotificationPayload,
    NotificationResult,
    notify,
    notify_alert,
    should_notify,
)
from clawkeeper.services.notifications.webhook import build_signature

__all__ = [
    "AlertNotification",
    "ChannelResult",
    "NotificationPayload",
    "NotificationResult",
    "build_signature",
    "notify",
    "notify_alert",
    "should_notify",
]
