"""
SPARK — Scheduler triggers

Cloud Scheduler (or cron) hits these with the admin token.  Each job is
idempotent, so a retried trigger is harmless.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends

from spark.api.deps import get_match_generation_service, get_room_service, require_admin
from spark.schemas.jobs import (
    ArchiveSweepSummary,
    DayAdvanceSummary,
    ExpirySweepSummary,
    WeeklyRunSummary,
)
from spark.services.match_generation_service import MatchGenerationService
from spark.services.room_service import RoomService

logger = structlog.get_logger("spark.api.jobs")

router = APIRouter(dependencies=[Depends(require_admin)])


@router.post("/weekly-matches", response_model=WeeklyRunSummary)
async def run_weekly_matches(
    service: MatchGenerationService = Depends(get_match_generation_service),
) -> WeeklyRunSummary:
    return await service.run()


@router.post("/advance-days", response_model=DayAdvanceSummary)
async def run_advance_days(
    rooms: RoomService = Depends(get_room_service),
) -> DayAdvanceSummary:
    return await rooms.advance_days()


@router.post("/expire-rooms", response_model=ExpirySweepSummary)
async def run_expire_rooms(
    rooms: RoomService = Depends(get_room_service),
) -> ExpirySweepSummary:
    return await rooms.sweep_expired()


@router.post("/archive-rooms", response_model=ArchiveSweepSummary)
async def run_archive_rooms(
    rooms: RoomService = Depends(get_room_service),
) -> ArchiveSweepSummary:
    return await rooms.archive_stale()
