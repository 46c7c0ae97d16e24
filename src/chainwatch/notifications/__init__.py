"""Alert rendering and delivery channels."""

from chainwatch.notifications.dispatcher import LogDispatcher, NotificationDispatcher, TelegramDispatcher
from chainwatch.notifications.formatter import format_alert, shorten

__all__ = ["LogDispatcher", "NotificationDispatcher", "TelegramDispatcher", "format_alert", "shorten"]
