"""
SPARK — Room state machine

A room is the 7-day chat opened by a mutual match::

    active ──► connected   both participants chose connect
           ├─► passed      both decided, at least one pass
           └─► expired     window closed with a decision missing

Terminal states are never left.  Every transition is a compare-and-set on the
room document (see ``spark.store.base.atomic_update``) so a user decision and
the expiry sweep can race on the same room without double resolution, and
notifications are dispatched only after the winning write, by the caller that
made it.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from spark.config import Settings, get_settings
from spark.errors import (
    FailedPreconditionError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
)
from spark.schemas.jobs import ArchiveSweepSummary, DayAdvanceSummary, ExpirySweepSummary
from spark.schemas.room import (
    MessageType,
    Room,
    RoomDecision,
    RoomDecisionResult,
    RoomStatus,
)
from spark.services.notification_service import Notification, NotificationService
from spark.services.user_directory import UserDirectory
from spark.store.base import ROOMS, ROOMS_ARCHIVE, DocumentStore, Filter, atomic_update
from spark.utils.timeutils import ONE_DAY, format_ts, utcnow

logger = structlog.get_logger("spark.room_service")

_ROOM_NAMESPACE = uuid.UUID("0b8f6c1e-52d4-4f3a-a1c7-9e2d7b4a6f30")


def room_id_for_match(match_id: str) -> str:
    """Every match maps to exactly one possible room id."""
    return str(uuid.uuid5(_ROOM_NAMESPACE, match_id))


@dataclass
class _Resolution:
    status: RoomStatus
    transitioned: bool
    room: Room


class RoomService:
    """Owns room creation, time-driven transitions and participant decisions."""

    def __init__(
        self,
        store: DocumentStore,
        notifications: NotificationService,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.notifications = notifications
        self.settings = settings or get_settings()
        self.clock = clock
        self.directory = UserDirectory(store)

    # ── Creation ──────────────────────────────────────────────────────────

    async def create_room(self, user_a_id: str, user_b_id: str, match_id: str) -> Room:
        """Open the room for ``match_id``; return the existing one if already opened.

        The room id is derived from the match id and written with
        create-if-absent, and the archive is checked first, so a match can
        never produce a second room, even after its first was archived.
        """
        room_id = room_id_for_match(match_id)
        log = logger.bind(room_id=room_id, match_id=match_id)

        archived = await self.store.get(ROOMS_ARCHIVE, room_id)
        if archived is not None:
            log.info("room_already_archived")
            return Room.from_document(archived.data)

        now = self.clock()
        room = Room(
            id=room_id,
            match_id=match_id,
            participants=[user_a_id, user_b_id],
            day_number=1,
            started_at=now,
            expires_at=now + timedelta(days=self.settings.ROOM_DURATION_DAYS),
            last_message_at=now,
            message_count=0,
            status=RoomStatus.ACTIVE,
            decisions={},
            extensions_used=0,
            created_at=now,
        )
        if await self.store.create_if_absent(ROOMS, room_id, room.to_document()):
            log.info("room_created", participants=room.participants)
            return room

        existing = await self.store.get(ROOMS, room_id)
        log.info("room_already_exists")
        return Room.from_document(existing.data) if existing else room

    # ── Access checks ─────────────────────────────────────────────────────

    async def get_room_for(self, room_id: str, user_id: str) -> Room:
        """Load a room the caller participates in."""
        if not room_id:
            raise InvalidArgumentError("roomId is required")
        doc = await self.store.get(ROOMS, room_id)
        if doc is None:
            raise NotFoundError("Room not found")
        room = Room.from_document(doc.data)
        if user_id not in room.participants:
            raise PermissionDeniedError("Not a participant")
        return room

    def check_can_send(self, room: Room, message_type: MessageType) -> None:
        """Raise ``FailedPreconditionError`` if ``message_type`` is not allowed yet."""
        if room.status not in (RoomStatus.ACTIVE, RoomStatus.CONNECTED):
            raise FailedPreconditionError("Room is not active")
        if message_type is MessageType.VOICE and room.day_number < self.settings.VOICE_UNLOCK_DAY:
            raise FailedPreconditionError(
                f"Voice notes unlock on Day {self.settings.VOICE_UNLOCK_DAY}"
            )
        if message_type is MessageType.IMAGE and room.day_number < self.settings.IMAGE_UNLOCK_DAY:
            raise FailedPreconditionError(
                f"Images unlock on Day {self.settings.IMAGE_UNLOCK_DAY}"
            )

    # ── Decisions ─────────────────────────────────────────────────────────

    async def decide(self, room_id: str, user_id: str, decision: str) -> RoomDecisionResult:
        """Record a participant's connect / pass / extend decision."""
        if not room_id:
            raise InvalidArgumentError("roomId is required")
        try:
            choice = RoomDecision(decision)
        except ValueError:
            raise InvalidArgumentError(f"Invalid decision {decision!r}") from None

        if choice is RoomDecision.EXTEND:
            return await self._extend(room_id, user_id)

        log = logger.bind(room_id=room_id, user_id=user_id, decision=choice.value)

        def _mutate(doc) -> tuple[Optional[dict], _Resolution]:
            room = Room.from_document(doc.data)
            if user_id not in room.participants:
                raise PermissionDeniedError("Not a participant")
            if room.status.is_terminal:
                if room.decisions.get(user_id) is choice:
                    return None, _Resolution(room.status, False, room)
                raise FailedPreconditionError("Room is no longer active")

            room.decisions[user_id] = choice
            transitioned = False
            if room.all_decided:
                room.status = self._resolve_status(room)
                transitioned = True
            return room.to_document(), _Resolution(room.status, transitioned, room)

        doc, resolution = await atomic_update(
            self.store, ROOMS, room_id, _mutate,
            max_attempts=self.settings.CAS_MAX_ATTEMPTS,
        )
        if doc is None:
            raise NotFoundError("Room not found")

        room = resolution.room
        if resolution.transitioned:
            log.info("room_resolved", status=room.status.value)
            if room.status is RoomStatus.CONNECTED:
                await self.notifications.dispatch(self._celebrations(room))
        else:
            log.info("room_decision_recorded", status=room.status.value)

        resolved = room.status is not RoomStatus.ACTIVE
        return RoomDecisionResult(
            status=room.status,
            mutual_match=(room.status is RoomStatus.CONNECTED) if resolved else None,
            awaiting_other=not resolved,
            day_number=room.day_number,
            expires_at=room.expires_at,
        )

    async def _extend(self, room_id: str, user_id: str) -> RoomDecisionResult:
        log = logger.bind(room_id=room_id, user_id=user_id)
        # Participant check before looking at the caller's plan.
        await self.get_room_for(room_id, user_id)

        user = await self.directory.get_user(user_id)
        if user is None or not user.is_premium:
            raise FailedPreconditionError("Premium required to extend")

        def _mutate(doc) -> tuple[dict, Room]:
            room = Room.from_document(doc.data)
            if room.status is not RoomStatus.ACTIVE:
                raise FailedPreconditionError("Room is not active")
            if room.extensions_used >= self.settings.ROOM_MAX_EXTENSIONS:
                raise FailedPreconditionError("Already extended once")
            extension = self.settings.ROOM_EXTENSION_DAYS
            room.expires_at = room.expires_at + timedelta(days=extension)
            room.day_number = max(1, room.day_number - extension)
            room.extensions_used += 1
            return room.to_document(), room

        doc, room = await atomic_update(
            self.store, ROOMS, room_id, _mutate,
            max_attempts=self.settings.CAS_MAX_ATTEMPTS,
        )
        if doc is None:
            raise NotFoundError("Room not found")

        log.info(
            "room_extended",
            day_number=room.day_number,
            expires_at=format_ts(room.expires_at),
        )
        return RoomDecisionResult(
            status=room.status,
            extended=True,
            day_number=room.day_number,
            expires_at=room.expires_at,
        )

    # ── Time-driven transitions ───────────────────────────────────────────

    async def advance_days(self) -> DayAdvanceSummary:
        """Daily: recompute ``day_number`` for active rooms and send reminders."""
        now = self.clock()
        docs = await self.store.query(ROOMS, [Filter("status", "==", RoomStatus.ACTIVE.value)])
        summary = DayAdvanceSummary(rooms_scanned=len(docs))

        for snapshot in docs:
            try:
                room = await self._advance_one(snapshot.id, now)
            except Exception:
                logger.exception("room_day_advance_failed", room_id=snapshot.id)
                summary.rooms_failed += 1
                continue
            if room is None:
                continue
            summary.rooms_updated += 1
            if room.day_number < self.settings.ROOM_MAX_DAY - 1:
                continue
            # Day is already written; reminder failures are only logged.
            try:
                summary.reminders_sent += await self.notifications.dispatch(
                    await self._reminders(room)
                )
            except Exception:
                logger.exception("room_reminder_failed", room_id=room.id)

        logger.info("room_days_advanced", **summary.model_dump())
        return summary

    def day_number_at(self, room: Room, now: datetime) -> int:
        """Day of the room window at ``now``, counted from ``started_at``."""
        elapsed_days = (now - room.started_at) // ONE_DAY + 1
        return max(1, min(int(elapsed_days), self.settings.ROOM_MAX_DAY))

    async def _advance_one(self, room_id: str, now: datetime) -> Optional[Room]:
        def _mutate(doc) -> tuple[Optional[dict], Optional[Room]]:
            room = Room.from_document(doc.data)
            if room.status is not RoomStatus.ACTIVE:
                return None, None
            day = self.day_number_at(room, now)
            if day == room.day_number:
                return None, None
            room.day_number = day
            return room.to_document(), room

        _, room = await atomic_update(
            self.store, ROOMS, room_id, _mutate,
            max_attempts=self.settings.CAS_MAX_ATTEMPTS,
        )
        return room

    async def sweep_expired(self) -> ExpirySweepSummary:
        """Daily: close active rooms whose window has ended."""
        now = self.clock()
        docs = await self.store.query(
            ROOMS,
            [
                Filter("status", "==", RoomStatus.ACTIVE.value),
                Filter("expiresAt", "<=", format_ts(now)),
            ],
        )
        summary = ExpirySweepSummary(rooms_scanned=len(docs))

        for snapshot in docs:
            try:
                resolution = await self._expire_one(snapshot.id, now)
            except Exception:
                logger.exception("room_expiry_failed", room_id=snapshot.id)
                summary.rooms_failed += 1
                continue

            if resolution is None or not resolution.transitioned:
                summary.rooms_skipped += 1
                continue

            room = resolution.room
            if room.status is RoomStatus.CONNECTED:
                summary.rooms_connected += 1
                await self.notifications.dispatch(self._celebrations(room))
            elif room.status is RoomStatus.PASSED:
                summary.rooms_passed += 1
            else:
                summary.rooms_expired += 1
                await self.notifications.dispatch(
                    [NotificationService.room_expired(p, room.id) for p in room.participants]
                )

        logger.info("room_expiry_sweep_complete", **summary.model_dump())
        return summary

    async def _expire_one(self, room_id: str, now: datetime) -> Optional[_Resolution]:
        def _mutate(doc) -> tuple[Optional[dict], _Resolution]:
            room = Room.from_document(doc.data)
            # A decision may have resolved the room after the sweep's query.
            if room.status is not RoomStatus.ACTIVE or room.expires_at > now:
                return None, _Resolution(room.status, False, room)
            if room.all_decided:
                room.status = self._resolve_status(room)
            else:
                room.status = RoomStatus.EXPIRED
            return room.to_document(), _Resolution(room.status, True, room)

        _, resolution = await atomic_update(
            self.store, ROOMS, room_id, _mutate,
            max_attempts=self.settings.CAS_MAX_ATTEMPTS,
        )
        return resolution

    async def archive_stale(self) -> ArchiveSweepSummary:
        """Weekly: move long-closed rooms to cold storage.

        Selects ``expired``/``passed`` rooms whose window ended more than
        ``ARCHIVE_AFTER_DAYS`` ago, copies each verbatim into the archive and
        deletes the original, committing every ``ARCHIVE_BATCH_WRITES`` writes.
        Archived rooms no longer match the query, so an interrupted run simply
        resumes on the next invocation.
        """
        now = self.clock()
        cutoff = now - timedelta(days=self.settings.ARCHIVE_AFTER_DAYS)
        filters = [
            Filter("status", "in", [RoomStatus.EXPIRED.value, RoomStatus.PASSED.value]),
            Filter("expiresAt", "<=", format_ts(cutoff)),
        ]
        page_size = self.settings.ARCHIVE_QUERY_LIMIT
        max_writes = self.settings.ARCHIVE_BATCH_WRITES
        summary = ArchiveSweepSummary()

        while True:
            docs = await self.store.query(ROOMS, filters, limit=page_size)
            if not docs:
                break

            batch = self.store.batch()
            for doc in docs:
                if len(batch) and len(batch) + 2 > max_writes:
                    await self.store.commit(batch)
                    summary.batches_committed += 1
                    logger.info("rooms_archive_batch_committed", writes=len(batch))
                    batch = self.store.batch()
                batch.set(ROOMS_ARCHIVE, doc.id, doc.data)
                batch.delete(ROOMS, doc.id)
                summary.rooms_archived += 1

            if len(batch):
                await self.store.commit(batch)
                summary.batches_committed += 1

            if len(docs) < page_size:
                break

        logger.info("room_archive_sweep_complete", **summary.model_dump())
        return summary

    # ── Helpers ───────────────────────────────────────────────────────────

    @staticmethod
    def _resolve_status(room: Room) -> RoomStatus:
        return RoomStatus.CONNECTED if room.mutual_connect else RoomStatus.PASSED

    @staticmethod
    def _celebrations(room: Room) -> list[Notification]:
        return [NotificationService.match_celebration(p, room.id) for p in room.participants]

    async def _reminders(self, room: Room) -> list[Notification]:
        notes = []
        for participant in room.participants:
            other_name = await self.directory.display_name(
                room.other_participant(participant), default="your match"
            )
            notes.append(
                NotificationService.decision_reminder(
                    participant, room.id, room.day_number, other_name
                )
            )
        return notes
