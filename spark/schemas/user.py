"""User profile and preference records (owned by the profile service; read-only here)."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from spark.schemas.common import DocumentModel, Timestamp

QuestionnaireAnswer = Annotated[int, Field(ge=1, le=5)]


class LookingFor(str, Enum):
    MALE = "male"
    FEMALE = "female"
    BOTH = "both"


class UserProfile(DocumentModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    age: int
    gender: str
    city: Optional[str] = None
    bio: Optional[str] = None
    photos: list[str] = Field(default_factory=list)
    interests: set[str] = Field(default_factory=set)
    questionnaire_answers: list[QuestionnaireAnswer] = Field(default_factory=list)
    profile_completeness: int = Field(default=0, ge=0, le=100)
    is_verified: bool = False
    is_premium: bool = False
    premium_tier: Optional[str] = None
    is_active: bool = True
    last_active_at: Optional[Timestamp] = None
    fcm_token: Optional[str] = None

    def public_card(self) -> dict:
        """Fields another user may see on a match or room card."""
        return {
            "id": self.id,
            "name": self.name,
            "age": self.age,
            "city": self.city,
            "photos": self.photos,
            "bio": self.bio,
            "isVerified": self.is_verified,
        }


class AgeRange(BaseModel):
    min: int = 18
    max: int = 50

    @model_validator(mode="after")
    def _ordered(self) -> "AgeRange":
        if self.min > self.max:
            raise ValueError(f"ageRange.min ({self.min}) exceeds max ({self.max})")
        return self

    def contains(self, age: int) -> bool:
        return self.min <= age <= self.max


class Preferences(DocumentModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str
    looking_for: LookingFor = LookingFor.BOTH
    age_range: AgeRange = Field(default_factory=AgeRange)
    cities: Optional[list[str]] = None

    def accepts_gender(self, gender: str) -> bool:
        return self.looking_for is LookingFor.BOTH or self.looking_for.value == gender
