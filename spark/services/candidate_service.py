"""
SPARK — Candidate filtering

Narrows the user population to the people a given user may be matched with
in a cycle.  The store query applies the cheap one-sided constraints (active,
profile completeness, the acting user's gender and age preferences); the
reciprocal constraints need each candidate's own preferences and are checked
in Python afterwards.
"""

from __future__ import annotations

from typing import Optional

import structlog
from pydantic import ValidationError

from spark.schemas.user import LookingFor, Preferences, UserProfile
from spark.store.base import MATCHES, PREFERENCES, USERS, DocumentStore, Filter

logger = structlog.get_logger("spark.candidate_service")


class CandidateService:
    """Hard-constraint candidate filter.

    ``scan_limit`` bounds how many user documents are pulled per call; users
    beyond it are simply not considered this time.
    """

    def __init__(
        self,
        store: DocumentStore,
        scan_limit: int = 200,
        min_completeness: int = 50,
    ) -> None:
        self.store = store
        self.scan_limit = scan_limit
        self.min_completeness = min_completeness

    async def find_candidates(
        self,
        user: UserProfile,
        prefs: Preferences,
        week_number: int,
        year: int,
    ) -> list[UserProfile]:
        """Return every eligible candidate for ``user`` in cycle ``(week_number, year)``."""
        log = logger.bind(user_id=user.id, week_number=week_number, year=year)

        filters = [
            Filter("isActive", "==", True),
            Filter("profileCompleteness", ">=", self.min_completeness),
            Filter("age", ">=", prefs.age_range.min),
            Filter("age", "<=", prefs.age_range.max),
        ]
        if prefs.looking_for is not LookingFor.BOTH:
            filters.append(Filter("gender", "==", prefs.looking_for.value))

        docs = await self.store.query(USERS, filters, limit=self.scan_limit)
        excluded = await self.already_matched(user.id, week_number, year)
        excluded.add(user.id)

        pool = []
        for doc in docs:
            if doc.id in excluded:
                continue
            try:
                pool.append(UserProfile.from_document({"id": doc.id, **doc.data}))
            except ValidationError as exc:
                log.warning("candidate_invalid", candidate_id=doc.id, error=str(exc))
        their_prefs = await self._load_preferences([c.id for c in pool])

        candidates: list[UserProfile] = []
        for candidate in pool:
            if self.is_compatible(user, prefs, candidate, their_prefs.get(candidate.id)):
                candidates.append(candidate)

        log.debug(
            "candidates_filtered",
            scanned=len(docs),
            excluded=len(excluded) - 1,
            eligible=len(candidates),
        )
        return candidates

    def is_compatible(
        self,
        user: UserProfile,
        prefs: Preferences,
        candidate: UserProfile,
        candidate_prefs: Optional[Preferences],
    ) -> bool:
        """Apply every hard constraint between ``user`` and ``candidate``.

        Candidates without stored preferences are never eligible: nothing
        says they would accept the acting user.
        """
        if candidate.id == user.id or candidate_prefs is None:
            return False
        if not candidate.is_active or candidate.profile_completeness < self.min_completeness:
            return False
        if not prefs.accepts_gender(candidate.gender):
            return False
        if not candidate_prefs.accepts_gender(user.gender):
            return False
        if not prefs.age_range.contains(candidate.age):
            return False
        if not candidate_prefs.age_range.contains(user.age):
            return False
        return True

    async def already_matched(self, user_id: str, week_number: int, year: int) -> set[str]:
        """Users paired with ``user_id`` this cycle, in either direction."""
        cycle = [Filter("weekNumber", "==", week_number), Filter("year", "==", year)]
        outgoing = await self.store.query(MATCHES, [Filter("userId", "==", user_id), *cycle])
        incoming = await self.store.query(
            MATCHES, [Filter("matchedUserId", "==", user_id), *cycle]
        )
        return {d.data["matchedUserId"] for d in outgoing} | {
            d.data["userId"] for d in incoming
        }

    async def _load_preferences(self, user_ids: list[str]) -> dict[str, Preferences]:
        docs = await self.store.get_many(PREFERENCES, user_ids)
        loaded: dict[str, Preferences] = {}
        for uid, doc in docs.items():
            try:
                loaded[uid] = Preferences.from_document({"userId": uid, **doc.data})
            except ValidationError as exc:
                # Treated like missing preferences: the candidate is not eligible.
                logger.warning("candidate_preferences_invalid", candidate_id=uid, error=str(exc))
        return loaded
