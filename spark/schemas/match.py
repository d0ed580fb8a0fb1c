"""Weekly match records and match-decision results."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import Field

from spark.schemas.common import ApiModel, DocumentModel, Timestamp


class MatchStatus(str, Enum):
    PENDING = "pending"
    VIEWED = "viewed"
    CONNECTED = "connected"
    PASSED = "passed"
    EXPIRED = "expired"


class MatchAction(str, Enum):
    CONNECT = "connect"
    PASS = "pass"


class MatchRecord(DocumentModel):
    id: str
    user_id: str
    matched_user_id: str
    compatibility_score: int = Field(ge=0, le=100)
    week_number: int
    year: int
    status: MatchStatus = MatchStatus.PENDING
    user_action: Optional[MatchAction] = None
    match_action: Optional[MatchAction] = None
    is_mutual_match: bool = False
    room_id: Optional[str] = None
    created_at: Timestamp
    expires_at: Timestamp
    decided_at: Optional[Timestamp] = None

    def side_of(self, user_id: str) -> Optional[str]:
        """Return ``"user"`` or ``"match"`` for a participant, else None."""
        if user_id == self.user_id:
            return "user"
        if user_id == self.matched_user_id:
            return "match"
        return None

    def other_user(self, user_id: str) -> str:
        return self.matched_user_id if user_id == self.user_id else self.user_id

    @property
    def both_connected(self) -> bool:
        return (
            self.user_action is MatchAction.CONNECT
            and self.match_action is MatchAction.CONNECT
        )


class ScoredCandidate(ApiModel):
    user_id: str
    score: int


class MatchActionResult(ApiModel):
    success: bool = True
    mutual_match: bool
    room_id: Optional[str] = None


class MatchActionRequest(ApiModel):
    action: str


class WeeklyMatchItem(ApiModel):
    id: str
    compatibility_score: int
    status: MatchStatus
    is_mutual_match: bool
    my_action: Optional[MatchAction] = None
    room_id: Optional[str] = None
    expires_at: Timestamp
    matched_user: dict


class WeeklyMatchesResponse(ApiModel):
    week_number: int
    year: int
    matches: list[WeeklyMatchItem]


class PotentialMatchesResponse(ApiModel):
    week_number: int
    year: int
    matches: list[ScoredCandidate]


class CompatibilityResponse(ApiModel):
    compatibility_score: int
