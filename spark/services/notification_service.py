"""
SPARK — Push notifications

``NotificationGateway`` is the transport boundary (FCM in production, a
logging stub when notifications are disabled).  ``NotificationService`` sits
in front of it and is what the engine calls: it composes the user-facing
copy and guarantees that delivery problems are logged and swallowed, never
propagated into the operation that triggered them.
"""

from __future__ import annotations

import abc
import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
import structlog

from spark.store.base import USERS, DocumentStore

logger = structlog.get_logger("spark.notification_service")


@dataclass(frozen=True)
class Notification:
    recipient_user_id: str
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)


# ──────────────────────────────────────────────────────────────────────────────
# Transports
# ──────────────────────────────────────────────────────────────────────────────


class NotificationGateway(abc.ABC):
    @abc.abstractmethod
    async def send(
        self,
        recipient_user_id: str,
        title: str,
        body: str,
        data: dict[str, Any],
    ) -> None:
        ...

    async def close(self) -> None:
        return None


class LoggingNotificationGateway(NotificationGateway):
    """Records notifications in the log instead of delivering them."""

    async def send(self, recipient_user_id, title, body, data) -> None:
        logger.info(
            "notification_suppressed",
            recipient=recipient_user_id,
            title=title,
            type=data.get("type"),
        )


class FcmNotificationGateway(NotificationGateway):
    """Delivers through the Firebase Cloud Messaging HTTP endpoint.

    The recipient's device token is read from their user document
    (``fcmToken``); users without a token are skipped silently.
    """

    def __init__(
        self,
        store: DocumentStore,
        endpoint: str,
        server_key: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.store = store
        self.endpoint = endpoint
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={
                "Authorization": f"key={server_key}",
                "Content-Type": "application/json",
            },
        )

    async def send(self, recipient_user_id, title, body, data) -> None:
        user_doc = await self.store.get(USERS, recipient_user_id)
        token = (user_doc.data if user_doc else {}).get("fcmToken")
        if not token:
            logger.debug("notification_no_token", recipient=recipient_user_id)
            return

        payload = {
            "to": token,
            "priority": "high",
            "notification": {"title": title, "body": body, "sound": "default"},
            "data": {k: str(v) for k, v in data.items()},
        }
        response = await self._client.post(self.endpoint, json=payload)
        response.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()


# ──────────────────────────────────────────────────────────────────────────────
# Dispatcher
# ──────────────────────────────────────────────────────────────────────────────


class NotificationService:
    """Fire-and-forget dispatch in front of a ``NotificationGateway``."""

    def __init__(self, gateway: NotificationGateway, timeout: float = 5.0) -> None:
        self.gateway = gateway
        self.timeout = timeout

    async def dispatch(self, notifications: list[Notification]) -> int:
        """Send each notification; return how many were handed off successfully."""
        delivered = 0
        for note in notifications:
            if await self._send_one(note):
                delivered += 1
        return delivered

    async def _send_one(self, note: Notification) -> bool:
        try:
            await asyncio.wait_for(
                self.gateway.send(note.recipient_user_id, note.title, note.body, note.data),
                timeout=self.timeout,
            )
            return True
        except Exception as exc:
            logger.warning(
                "notification_failed",
                recipient=note.recipient_user_id,
                type=note.data.get("type"),
                error=repr(exc),
            )
            return False

    # ── Copy ──────────────────────────────────────────────────────────────

    @staticmethod
    def new_matches(user_id: str, count: int) -> Notification:
        return Notification(
            user_id,
            "✨ New matches are here!",
            f"You have {count} new curated matches this week. Open SPARK to see them!",
            {"type": "new_matches", "count": count},
        )

    @staticmethod
    def match_celebration(user_id: str, room_id: str) -> Notification:
        return Notification(
            user_id,
            "🎉 It's a match!",
            "You both chose to connect! Start your journey together.",
            {"type": "mutual_match", "roomId": room_id},
        )

    @staticmethod
    def room_expired(user_id: str, room_id: str) -> Notification:
        return Notification(
            user_id,
            "⏰ Connection room expired",
            "Your 7-day connection room has ended. New matches await!",
            {"type": "expired", "roomId": room_id},
        )

    @staticmethod
    def decision_reminder(
        user_id: str, room_id: str, day_number: int, other_name: str
    ) -> Notification:
        if day_number >= 7:
            title = "⏰ Decision day!"
            body = f"Time to decide about {other_name}. Connect or pass?"
        else:
            title = "📅 1 day left to decide"
            body = f"Your room with {other_name} expires tomorrow. Make the most of today!"
        return Notification(
            user_id,
            title,
            body,
            {"type": "decision_reminder", "roomId": room_id, "dayNumber": day_number},
        )

    @staticmethod
    def new_message(
        user_id: str, room_id: str, sender_id: str, sender_name: str, preview: str
    ) -> Notification:
        return Notification(
            user_id,
            sender_name,
            preview,
            {"type": "chat", "roomId": room_id, "senderId": sender_id},
        )


def build_notification_service(settings, store: DocumentStore) -> NotificationService:
    """FCM delivery when enabled, otherwise log-only."""
    if settings.NOTIFICATIONS_ENABLED and settings.FCM_SERVER_KEY:
        gateway: NotificationGateway = FcmNotificationGateway(
            store,
            endpoint=settings.FCM_ENDPOINT,
            server_key=settings.FCM_SERVER_KEY,
            timeout=settings.NOTIFICATION_TIMEOUT_SECONDS,
        )
    else:
        gateway = LoggingNotificationGateway()
    return NotificationService(gateway, timeout=settings.NOTIFICATION_TIMEOUT_SECONDS)
