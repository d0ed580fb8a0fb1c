"""
SPARK — Matching API

Weekly match list, quick potential-match preview, on-demand compatibility and
the connect/pass action on a match record.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends

from spark.api.deps import get_current_user_id, get_match_service
from spark.schemas.match import (
    CompatibilityResponse,
    MatchActionRequest,
    MatchActionResult,
    PotentialMatchesResponse,
    WeeklyMatchesResponse,
)
from spark.services.match_service import MatchService

logger = structlog.get_logger("spark.api.matching")

router = APIRouter()


@router.get("/weekly", response_model=WeeklyMatchesResponse, summary="This week's matches")
async def get_weekly_matches(
    user_id: str = Depends(get_current_user_id),
    service: MatchService = Depends(get_match_service),
) -> WeeklyMatchesResponse:
    return await service.get_weekly_matches(user_id)


@router.get(
    "/potential",
    response_model=PotentialMatchesResponse,
    summary="Quick-scored preview of possible matches",
)
async def find_potential_matches(
    user_id: str = Depends(get_current_user_id),
    service: MatchService = Depends(get_match_service),
) -> PotentialMatchesResponse:
    return await service.find_potential_matches(user_id)


@router.get(
    "/compatibility/{other_user_id}",
    response_model=CompatibilityResponse,
    summary="Full compatibility score with another user",
)
async def calculate_compatibility(
    other_user_id: str,
    user_id: str = Depends(get_current_user_id),
    service: MatchService = Depends(get_match_service),
) -> CompatibilityResponse:
    return await service.calculate_compatibility(user_id, other_user_id)


@router.post("/{match_id}/view", summary="Mark a match as viewed")
async def mark_viewed(
    match_id: str,
    user_id: str = Depends(get_current_user_id),
    service: MatchService = Depends(get_match_service),
) -> dict:
    changed = await service.mark_viewed(match_id, user_id)
    return {"success": True, "changed": changed}


@router.post(
    "/{match_id}/action",
    response_model=MatchActionResult,
    summary="Connect with or pass on a match",
)
async def record_action(
    match_id: str,
    body: MatchActionRequest,
    user_id: str = Depends(get_current_user_id),
    service: MatchService = Depends(get_match_service),
) -> MatchActionResult:
    """Record the caller's action.

    When both sides have chosen ``connect`` the response carries the id of
    the room that was opened for them.
    """
    result = await service.record_action(match_id, user_id, body.action)
    logger.info(
        "match_action_api",
        match_id=match_id,
        user_id=user_id,
        mutual=result.mutual_match,
    )
    return result
