"""
SPARK — Weekly match generation

Runs once per cycle.  For every active, profile-complete user, independently:

  1. resolve preferences (users without preferences are skipped);
  2. filter candidates under the hard constraints;
  3. full-score each candidate and drop those under ``MATCH_MIN_SCORE``;
  4. rank by score desc, then candidate id asc;
  5. cap at the user's quota (pro 10, premium 7, free 5), counting records
     already created for the user earlier in the same cycle;
  6. persist ``pending`` match records;
  7. tell the user new matches are waiting.

Match record ids are derived from ``(user, matched user, year, week)`` and
written with create-if-absent, so re-running a cycle never duplicates a pair.
Each user is processed inside its own error boundary with bounded
concurrency; only a failure to list the user pool aborts the run.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from spark.config import Settings, get_settings
from spark.schemas.jobs import WeeklyRunSummary
from spark.schemas.match import MatchRecord, MatchStatus, ScoredCandidate
from spark.schemas.user import UserProfile
from spark.services.candidate_service import CandidateService
from spark.services.compatibility_service import CompatibilityService
from spark.services.notification_service import NotificationService
from spark.services.user_directory import UserDirectory
from spark.store.base import MATCHES, USERS, DocumentStore, Filter
from spark.utils.timeutils import get_cycle, utcnow

logger = structlog.get_logger("spark.match_generation_service")

_MATCH_NAMESPACE = uuid.UUID("6f1c2a52-8d0e-4b8e-9a57-3f0d2b9c5e11")


def match_record_id(user_id: str, matched_user_id: str, week_number: int, year: int) -> str:
    """Deterministic id for the directed pair in a cycle."""
    return str(uuid.uuid5(_MATCH_NAMESPACE, f"{user_id}:{matched_user_id}:{year}:{week_number}"))


def weekly_quota(user: UserProfile, settings: Settings) -> int:
    """Matches per cycle: pro 10, premium 7, free 5 by default."""
    if user.is_premium and user.premium_tier == "pro":
        return settings.MATCH_QUOTA_PRO
    if user.is_premium:
        return settings.MATCH_QUOTA_PREMIUM
    return settings.MATCH_QUOTA_FREE


@dataclass
class UserOutcome:
    status: str  # "processed" | "skipped" | "failed"
    created: int = 0


class MatchGenerationService:
    """Weekly match generator."""

    def __init__(
        self,
        store: DocumentStore,
        notifications: NotificationService,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        candidate_service: Optional[CandidateService] = None,
        compatibility_service: Optional[CompatibilityService] = None,
    ) -> None:
        self.store = store
        self.notifications = notifications
        self.settings = settings or get_settings()
        self.clock = clock
        self.directory = UserDirectory(store)
        self.candidates = candidate_service or CandidateService(
            store,
            scan_limit=self.settings.CANDIDATE_SCAN_LIMIT,
            min_completeness=self.settings.MIN_PROFILE_COMPLETENESS,
        )
        self.scorer = compatibility_service or CompatibilityService()

    # ── Public API ────────────────────────────────────────────────────────

    async def run(self) -> WeeklyRunSummary:
        """Generate this cycle's matches for every eligible user.

        Raises
        ------
        StoreUnavailableError
            If the user pool itself cannot be listed.  Safe to re-invoke.
        """
        now = self.clock()
        week_number, year = get_cycle(now, self.settings.MATCH_TIMEZONE)
        log = logger.bind(week_number=week_number, year=year)
        log.info("weekly_generation_start")

        user_docs = await self.store.query(
            USERS,
            [
                Filter("isActive", "==", True),
                Filter("profileCompleteness", ">=", self.settings.MIN_PROFILE_COMPLETENESS),
            ],
        )
        log.info("weekly_generation_pool", users=len(user_docs))

        semaphore = asyncio.Semaphore(self.settings.MATCH_GENERATION_CONCURRENCY)

        async def _bounded(doc_id: str, data: dict) -> UserOutcome:
            async with semaphore:
                return await self._process_isolated(doc_id, data, week_number, year, now)

        outcomes = await asyncio.gather(*(_bounded(d.id, d.data) for d in user_docs))

        summary = WeeklyRunSummary(
            week_number=week_number,
            year=year,
            users_considered=len(user_docs),
            users_processed=sum(1 for o in outcomes if o.status == "processed"),
            users_skipped=sum(1 for o in outcomes if o.status == "skipped"),
            users_failed=sum(1 for o in outcomes if o.status == "failed"),
            matches_created=sum(o.created for o in outcomes),
        )
        log.info("weekly_generation_complete", **summary.model_dump(exclude={"week_number", "year"}))
        return summary

    async def generate_for_user(
        self,
        user: UserProfile,
        week_number: int,
        year: int,
        now: datetime,
    ) -> UserOutcome:
        log = logger.bind(user_id=user.id)

        prefs = await self.directory.get_preferences(user.id)
        if prefs is None:
            log.info("user_skipped", reason="no_preferences")
            return UserOutcome("skipped")

        remaining = self.quota_for(user) - await self._existing_count(user.id, week_number, year)
        if remaining <= 0:
            log.info("user_quota_filled", week_number=week_number)
            return UserOutcome("processed")

        candidates = await self.candidates.find_candidates(user, prefs, week_number, year)
        ranked = self.rank_candidates(user, candidates)[:remaining]

        expires_at = now + timedelta(days=self.settings.MATCH_EXPIRY_DAYS)
        created = 0
        for candidate in ranked:
            record = MatchRecord(
                id=match_record_id(user.id, candidate.user_id, week_number, year),
                user_id=user.id,
                matched_user_id=candidate.user_id,
                compatibility_score=candidate.score,
                week_number=week_number,
                year=year,
                status=MatchStatus.PENDING,
                is_mutual_match=False,
                created_at=now,
                expires_at=expires_at,
            )
            if await self.store.create_if_absent(MATCHES, record.id, record.to_document()):
                created += 1

        log.info(
            "user_matches_generated",
            candidates=len(candidates),
            selected=len(ranked),
            created=created,
        )

        if created:
            await self.notifications.dispatch(
                [NotificationService.new_matches(user.id, created)]
            )
        return UserOutcome("processed", created)

    def rank_candidates(
        self, user: UserProfile, candidates: list[UserProfile]
    ) -> list[ScoredCandidate]:
        """Full-score, threshold and order candidates (score desc, id asc)."""
        scored = [
            ScoredCandidate(user_id=c.id, score=self.scorer.full_score(user, c))
            for c in candidates
        ]
        kept = [s for s in scored if s.score >= self.settings.MATCH_MIN_SCORE]
        kept.sort(key=lambda s: (-s.score, s.user_id))
        return kept

    def quota_for(self, user: UserProfile) -> int:
        return weekly_quota(user, self.settings)

    # ── Internals ─────────────────────────────────────────────────────────

    async def _process_isolated(
        self,
        doc_id: str,
        data: dict,
        week_number: int,
        year: int,
        now: datetime,
    ) -> UserOutcome:
        try:
            user = UserProfile.from_document({"id": doc_id, **data})
            return await self.generate_for_user(user, week_number, year, now)
        except Exception:
            logger.exception("user_generation_failed", user_id=doc_id)
            return UserOutcome("failed")

    async def _existing_count(self, user_id: str, week_number: int, year: int) -> int:
        docs = await self.store.query(
            MATCHES,
            [
                Filter("userId", "==", user_id),
                Filter("weekNumber", "==", week_number),
                Filter("year", "==", year),
            ],
        )
        return len(docs)
