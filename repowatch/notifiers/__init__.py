"""Job lifecycle notification delivery."""

from repowatch.notifiers.notifier import (
    CompositeNotifier,
    LogNotifier,
    Notifier,
    WebhookNotifier,
)

__all__ = [
    "CompositeNotifier",
    "LogNotifier",
    "Notifier",
    "WebhookNotifier",
]
