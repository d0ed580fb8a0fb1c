"""Read-only access to profiles and preferences owned by the profile service."""

from __future__ import annotations

from typing import Optional

import structlog
from pydantic import ValidationError

from spark.errors import NotFoundError, StoreUnavailableError
from spark.schemas.user import Preferences, UserProfile
from spark.store.base import PREFERENCES, USERS, Document, DocumentStore

logger = structlog.get_logger("spark.user_directory")


class UserDirectory:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    @staticmethod
    def profile_from(doc: Document) -> UserProfile:
        return UserProfile.from_document({"id": doc.id, **doc.data})

    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        doc = await self.store.get(USERS, user_id)
        if doc is None:
            return None
        return self.profile_from(doc)

    async def require_user(self, user_id: str) -> UserProfile:
        user = await self.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    async def get_preferences(self, user_id: str) -> Optional[Preferences]:
        doc = await self.store.get(PREFERENCES, user_id)
        if doc is None:
            return None
        return Preferences.from_document({"userId": user_id, **doc.data})

    async def display_name(self, user_id: str, default: str = "Someone") -> str:
        """Name for notification copy; ``default`` when the profile can't be read."""
        try:
            user = await self.get_user(user_id)
        except (ValidationError, StoreUnavailableError) as exc:
            logger.warning("display_name_unavailable", user_id=user_id, error=str(exc))
            return default
        return user.name if user and user.name else default
