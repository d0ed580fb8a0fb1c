"""
SPARK — Request dependencies

Long-lived handles (document store, notification service) are created lazily
once per process and handed to the per-request services through FastAPI's
dependency injection, so tests can swap them with ``dependency_overrides``.
"""

from __future__ import annotations

import hmac
from typing import Optional

import structlog
from fastapi import Depends, Header

from spark.config import get_settings
from spark.errors import PermissionDeniedError, UnauthenticatedError
from spark.services.chat_service import ChatService
from spark.services.match_generation_service import MatchGenerationService
from spark.services.match_service import MatchService
from spark.services.notification_service import (
    NotificationService,
    build_notification_service,
)
from spark.services.room_service import RoomService
from spark.store.base import DocumentStore
from spark.store.factory import build_store

logger = structlog.get_logger("spark.api.deps")

# ── Process-wide handles ──────────────────────────────────────────────────────

_store: DocumentStore | None = None
_notifications: NotificationService | None = None


def get_store() -> DocumentStore:
    global _store
    if _store is None:
        _store = build_store(get_settings())
    return _store


def get_notification_service(
    store: DocumentStore = Depends(get_store),
) -> NotificationService:
    global _notifications
    if _notifications is None:
        _notifications = build_notification_service(get_settings(), store)
    return _notifications


async def close_resources() -> None:
    global _store, _notifications
    if _notifications is not None:
        await _notifications.gateway.close()
        _notifications = None
    if _store is not None:
        await _store.close()
        _store = None
    logger.info("resources_closed")


# ── Services ──────────────────────────────────────────────────────────────────


def get_room_service(
    store: DocumentStore = Depends(get_store),
    notifications: NotificationService = Depends(get_notification_service),
) -> RoomService:
    return RoomService(store, notifications, get_settings())


def get_match_service(
    store: DocumentStore = Depends(get_store),
    rooms: RoomService = Depends(get_room_service),
) -> MatchService:
    return MatchService(store, rooms, get_settings())


def get_chat_service(
    store: DocumentStore = Depends(get_store),
    rooms: RoomService = Depends(get_room_service),
    notifications: NotificationService = Depends(get_notification_service),
) -> ChatService:
    return ChatService(store, rooms, notifications, get_settings())


def get_match_generation_service(
    store: DocumentStore = Depends(get_store),
    notifications: NotificationService = Depends(get_notification_service),
) -> MatchGenerationService:
    return MatchGenerationService(store, notifications, get_settings())


# ── Caller identity ───────────────────────────────────────────────────────────


async def get_current_user_id(
    x_user_id: Optional[str] = Header(default=None),
) -> str:
    """The authenticated caller, as forwarded by the API gateway."""
    if not x_user_id:
        raise UnauthenticatedError("Must be logged in")
    return x_user_id


async def require_admin(
    x_admin_token: Optional[str] = Header(default=None),
) -> None:
    expected = get_settings().ADMIN_TOKEN
    if not expected or not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise PermissionDeniedError("Admin token required")
