"""Outbound notifications to users.

Notifications are sent after the state they describe is committed. A failing
transport raises to the caller so its retry policy can pick the call up again;
the committed match state is never rolled back.
"""
import logging
from enum import Enum
from typing import Optional

import httpx

from config import Settings

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    NEW_MATCH = "new_match"
    PARTY_ACCEPTED = "party_accepted"
    MATCH_CONFIRMED = "match_confirmed"
    RESPONSE_REJECTED = "response_rejected"
    REASSIGNED = "reassigned"
    AUTO_REJECTED = "auto_rejected"


class Notifier:
    def notify(self, user_id: int, event: EventKind, payload: Optional[dict] = None):
        raise NotImplementedError


class LogNotifier(Notifier):
    def notify(self, user_id: int, event: EventKind, payload: Optional[dict] = None):
        logger.info("Notify user %s: %s %s", user_id, EventKind(event).value, payload or {})


class WebhookNotifier(Notifier):
    """POSTs ``{"user_id", "event", "payload"}`` as JSON to a configured URL."""

    def __init__(self, url: str, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        self.url = url
        self.client = client or httpx.Client(timeout=timeout)

    def notify(self, user_id: int, event: EventKind, payload: Optional[dict] = None):
        body = {"user_id": user_id, "event": EventKind(event).value, "payload": payload or {}}
        try:
            resp = self.client.post(self.url, json=body)
            resp.raise_for_status()
        except httpx.HTTPError:
            logger.exception("Notification %s to user %s failed", body["event"], user_id)
            raise
        logger.debug("Notification %s delivered to user %s", body["event"], user_id)


def get_notifier(settings: Settings) -> Notifier:
    if settings.notification_webhook_url:
        return WebhookNotifier(settings.notification_webhook_url, timeout=settings.notification_timeout_seconds)
    return LogNotifier()
