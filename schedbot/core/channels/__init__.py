"""Notification channels — email delivery and run outcome fan-out."""

from schedbot.core.channels.email import EmailClient
from schedbot.core.channels.notifier import NotificationDispatcher

__all__ = ["EmailClient", "NotificationDispatcher"]
