"""
SPARK — Match decisions and weekly match views

``record_action`` is the match decision resolver: a user connects with or
passes on one of their weekly matches.  The side update and the mutual check
happen in one compare-and-set on the match record, so two users acting at the
same moment always see each other's action, and the room id is derived from
the match id, so retries never open a second room.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

import structlog

from spark.config import Settings, get_settings
from spark.errors import (
    FailedPreconditionError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
)
from spark.schemas.match import (
    CompatibilityResponse,
    MatchAction,
    MatchActionResult,
    MatchRecord,
    MatchStatus,
    PotentialMatchesResponse,
    ScoredCandidate,
    WeeklyMatchesResponse,
    WeeklyMatchItem,
)
from spark.services.candidate_service import CandidateService
from spark.services.compatibility_service import CompatibilityService
from spark.services.match_generation_service import weekly_quota
from spark.services.room_service import RoomService, room_id_for_match
from spark.services.user_directory import UserDirectory
from spark.store.base import MATCHES, USERS, DocumentStore, Filter, atomic_update
from spark.utils.timeutils import get_cycle, utcnow

logger = structlog.get_logger("spark.match_service")


class MatchService:
    def __init__(
        self,
        store: DocumentStore,
        room_service: RoomService,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        candidate_service: Optional[CandidateService] = None,
        compatibility_service: Optional[CompatibilityService] = None,
    ) -> None:
        self.store = store
        self.rooms = room_service
        self.settings = settings or get_settings()
        self.clock = clock
        self.directory = UserDirectory(store)
        self.candidates = candidate_service or CandidateService(
            store,
            scan_limit=self.settings.CANDIDATE_SCAN_LIMIT,
            min_completeness=self.settings.MIN_PROFILE_COMPLETENESS,
        )
        self.scorer = compatibility_service or CompatibilityService()

    # ── Decision resolver ─────────────────────────────────────────────────

    async def record_action(
        self, match_id: str, acting_user_id: str, action: str
    ) -> MatchActionResult:
        """Record a connect/pass action; open the room on mutual connect.

        Raises
        ------
        InvalidArgumentError
            Unknown action or missing match id.
        NotFoundError
            No such match record.
        PermissionDeniedError
            The caller is neither side of the match.
        FailedPreconditionError
            The match is already mutual and the caller now tries to pass.
        """
        if not match_id:
            raise InvalidArgumentError("matchId is required")
        try:
            choice = MatchAction(action)
        except ValueError:
            raise InvalidArgumentError(f"Invalid action {action!r}") from None

        now = self.clock()
        log = logger.bind(match_id=match_id, user_id=acting_user_id, action=choice.value)

        def _mutate(doc) -> tuple[Optional[dict], MatchRecord]:
            record = MatchRecord.from_document({"id": doc.id, **doc.data})
            side = record.side_of(acting_user_id)
            if side is None:
                raise PermissionDeniedError("Not your match")

            if record.is_mutual_match:
                if choice is MatchAction.CONNECT:
                    return None, record
                raise FailedPreconditionError("Match is already mutual")

            if side == "user":
                record.user_action = choice
            else:
                record.match_action = choice
            record.status = (
                MatchStatus.CONNECTED if choice is MatchAction.CONNECT else MatchStatus.PASSED
            )
            record.decided_at = now

            if record.both_connected:
                record.is_mutual_match = True
                record.room_id = room_id_for_match(record.id)
            return record.to_document(), record

        doc, record = await atomic_update(
            self.store, MATCHES, match_id, _mutate,
            max_attempts=self.settings.CAS_MAX_ATTEMPTS,
        )
        if doc is None:
            raise NotFoundError("Match not found")

        if not record.is_mutual_match:
            log.info("match_action_recorded", mutual=False)
            return MatchActionResult(mutual_match=False)

        # Idempotent: an earlier call may already have opened the room.
        room = await self.rooms.create_room(record.user_id, record.matched_user_id, record.id)
        log.info("match_action_recorded", mutual=True, room_id=room.id)
        return MatchActionResult(mutual_match=True, room_id=room.id)

    async def mark_viewed(self, match_id: str, user_id: str) -> bool:
        """Move the owner's ``pending`` record to ``viewed``; True if it changed."""
        def _mutate(doc) -> tuple[Optional[dict], bool]:
            record = MatchRecord.from_document({"id": doc.id, **doc.data})
            if record.side_of(user_id) is None:
                raise PermissionDeniedError("Not your match")
            if record.user_id != user_id or record.status is not MatchStatus.PENDING:
                return None, False
            record.status = MatchStatus.VIEWED
            return record.to_document(), True

        doc, changed = await atomic_update(
            self.store, MATCHES, match_id, _mutate,
            max_attempts=self.settings.CAS_MAX_ATTEMPTS,
        )
        if doc is None:
            raise NotFoundError("Match not found")
        return changed

    # ── Read views ────────────────────────────────────────────────────────

    async def get_weekly_matches(self, user_id: str) -> WeeklyMatchesResponse:
        """This cycle's matches involving ``user_id``, best score first."""
        week_number, year = get_cycle(self.clock(), self.settings.MATCH_TIMEZONE)
        cycle = [Filter("weekNumber", "==", week_number), Filter("year", "==", year)]

        outgoing = await self.store.query(MATCHES, [Filter("userId", "==", user_id), *cycle])
        incoming = await self.store.query(
            MATCHES, [Filter("matchedUserId", "==", user_id), *cycle]
        )
        records = [
            MatchRecord.from_document({"id": d.id, **d.data}) for d in (*outgoing, *incoming)
        ]
        records.sort(key=lambda r: (-r.compatibility_score, r.id))

        others = await self.store.get_many(USERS, [r.other_user(user_id) for r in records])

        items = []
        for record in records:
            other_id = record.other_user(user_id)
            other_doc = others.get(other_id)
            if other_doc is not None:
                card = self.directory.profile_from(other_doc).public_card()
            else:
                card = {"id": other_id}
            items.append(
                WeeklyMatchItem(
                    id=record.id,
                    compatibility_score=record.compatibility_score,
                    status=record.status,
                    is_mutual_match=record.is_mutual_match,
                    my_action=(
                        record.user_action
                        if record.side_of(user_id) == "user"
                        else record.match_action
                    ),
                    room_id=record.room_id,
                    expires_at=record.expires_at,
                    matched_user=card,
                )
            )
        return WeeklyMatchesResponse(week_number=week_number, year=year, matches=items)

    async def find_potential_matches(self, user_id: str) -> PotentialMatchesResponse:
        """Quick-scored preview of who ``user_id`` could be matched with.

        Nothing is persisted.
        """
        user = await self.directory.require_user(user_id)
        prefs = await self.directory.get_preferences(user_id)
        if prefs is None:
            raise NotFoundError("Preferences not found")

        week_number, year = get_cycle(self.clock(), self.settings.MATCH_TIMEZONE)
        candidates = await self.candidates.find_candidates(user, prefs, week_number, year)
        if prefs.cities:
            candidates = [c for c in candidates if c.city in prefs.cities]

        scored = [
            ScoredCandidate(user_id=c.id, score=self.scorer.quick_score(user, c))
            for c in candidates
        ]
        kept = [s for s in scored if s.score >= self.settings.MATCH_MIN_SCORE]
        kept.sort(key=lambda s: (-s.score, s.user_id))
        kept = kept[: weekly_quota(user, self.settings)]

        logger.info(
            "potential_matches_found",
            user_id=user_id,
            candidates=len(candidates),
            returned=len(kept),
        )
        return PotentialMatchesResponse(week_number=week_number, year=year, matches=kept)

    async def calculate_compatibility(self, user_id_1: str, user_id_2: str) -> CompatibilityResponse:
        if not user_id_1 or not user_id_2:
            raise InvalidArgumentError("Both user ids are required")
        user_a = await self.directory.require_user(user_id_1)
        user_b = await self.directory.require_user(user_id_2)
        return CompatibilityResponse(compatibility_score=self.scorer.full_score(user_a, user_b))
