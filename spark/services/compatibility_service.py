"""
SPARK — Compatibility scoring

Two named scoring variants are used by the engine and must stay distinct:

``full_score`` — final ranking and the number shown in the UI::

    interests      |A ∩ B| / max(|A|, |B|, 1) × 30
    questionnaire  mean((4 - |q1[i] - q2[i]|) / 4) × 50   (first min(len) answers)
                   flat 20 / 20 bucket when either side has no answers
    city           10 when both cities are set and equal (case-sensitive)
    completeness   mean(c1, c2) / 100 × 10

    score = round(raw / max_score × 100), max_score = sum of buckets applied

``quick_score`` — cheap pre-filter over large pools::

    50 + 5 per shared interest + 10 same city + 10 both verified, capped at 100

Both are pure, deterministic and symmetric in their arguments.
"""

from __future__ import annotations

from typing import Optional, Sequence

from spark.schemas.user import UserProfile

# ──────────────────────────────────────────────────────────────────────────────
# Weights
# ──────────────────────────────────────────────────────────────────────────────

INTEREST_WEIGHT = 30.0
QUESTIONNAIRE_WEIGHT = 50.0
QUESTIONNAIRE_DEFAULT = 20.0
CITY_WEIGHT = 10.0
COMPLETENESS_WEIGHT = 10.0

_MAX_ANSWER_DIFF = 4  # answers are on a 1-5 scale

QUICK_BASE = 50
QUICK_PER_SHARED_INTEREST = 5
QUICK_SAME_CITY = 10
QUICK_BOTH_VERIFIED = 10


def _same_city(city_a: Optional[str], city_b: Optional[str]) -> bool:
    return bool(city_a) and city_a == city_b


class CompatibilityService:
    """Scores a pair of user profiles on a 0-100 scale."""

    def full_score(
        self,
        user_a: UserProfile,
        user_b: UserProfile,
        answers_a: Optional[Sequence[int]] = None,
        answers_b: Optional[Sequence[int]] = None,
    ) -> int:
        """Full compatibility score used for weekly ranking.

        Parameters
        ----------
        user_a, user_b:
            The two profiles.  Argument order does not affect the result.
        answers_a, answers_b:
            Questionnaire answer vectors; default to each profile's own
            ``questionnaire_answers``.

        Returns
        -------
        int
            Score in ``[0, 100]``.
        """
        q1 = list(user_a.questionnaire_answers if answers_a is None else answers_a)
        q2 = list(user_b.questionnaire_answers if answers_b is None else answers_b)

        breakdown = self.full_breakdown(user_a, user_b, q1, q2)
        score = round(breakdown["raw"] / breakdown["max"] * 100)
        return max(0, min(100, score))

    def full_breakdown(
        self,
        user_a: UserProfile,
        user_b: UserProfile,
        q1: Sequence[int],
        q2: Sequence[int],
    ) -> dict:
        """Per-bucket contributions behind ``full_score``."""
        interests = self.interest_overlap(user_a.interests, user_b.interests) * INTEREST_WEIGHT

        if q1 and q2:
            questionnaire = self.questionnaire_similarity(q1, q2) * QUESTIONNAIRE_WEIGHT
            questionnaire_max = QUESTIONNAIRE_WEIGHT
        else:
            questionnaire = QUESTIONNAIRE_DEFAULT
            questionnaire_max = QUESTIONNAIRE_DEFAULT

        city = CITY_WEIGHT if _same_city(user_a.city, user_b.city) else 0.0

        avg_completeness = (
            _clamp_pct(user_a.profile_completeness) + _clamp_pct(user_b.profile_completeness)
        ) / 2.0
        completeness = avg_completeness / 100.0 * COMPLETENESS_WEIGHT

        raw = interests + questionnaire + city + completeness
        max_score = INTEREST_WEIGHT + questionnaire_max + CITY_WEIGHT + COMPLETENESS_WEIGHT

        return {
            "interests": interests,
            "questionnaire": questionnaire,
            "city": city,
            "completeness": completeness,
            "raw": raw,
            "max": max_score,
        }

    def quick_score(self, user_a: UserProfile, user_b: UserProfile) -> int:
        """Cheap pre-filter score; see module docstring."""
        score = QUICK_BASE
        score += len(set(user_a.interests) & set(user_b.interests)) * QUICK_PER_SHARED_INTEREST
        if _same_city(user_a.city, user_b.city):
            score += QUICK_SAME_CITY
        if user_a.is_verified and user_b.is_verified:
            score += QUICK_BOTH_VERIFIED
        return min(score, 100)

    # ── Components ───────────────────────────────────────────────────────

    @staticmethod
    def interest_overlap(a: set[str], b: set[str]) -> float:
        """Shared interests over the larger interest set, in ``[0, 1]``."""
        a, b = set(a), set(b)
        return len(a & b) / max(len(a), len(b), 1)

    @staticmethod
    def questionnaire_similarity(q1: Sequence[int], q2: Sequence[int]) -> float:
        """Mean per-question closeness over the shared prefix, in ``[0, 1]``."""
        min_len = min(len(q1), len(q2))
        if min_len == 0:
            return 0.0
        total = 0.0
        for i in range(min_len):
            diff = min(abs(q1[i] - q2[i]), _MAX_ANSWER_DIFF)
            total += (_MAX_ANSWER_DIFF - diff) / _MAX_ANSWER_DIFF
        return total / min_len


def _clamp_pct(value: int) -> float:
    return float(max(0, min(100, value)))
