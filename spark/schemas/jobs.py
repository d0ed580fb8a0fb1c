"""Summaries returned by the scheduled entry points."""

from __future__ import annotations

from pydantic import BaseModel


class WeeklyRunSummary(BaseModel):
    week_number: int
    year: int
    users_considered: int = 0
    users_processed: int = 0
    users_skipped: int = 0
    users_failed: int = 0
    matches_created: int = 0


class DayAdvanceSummary(BaseModel):
    rooms_scanned: int = 0
    rooms_updated: int = 0
    reminders_sent: int = 0
    rooms_failed: int = 0


class ExpirySweepSummary(BaseModel):
    rooms_scanned: int = 0
    rooms_connected: int = 0
    rooms_passed: int = 0
    rooms_expired: int = 0
    rooms_skipped: int = 0
    rooms_failed: int = 0


class ArchiveSweepSummary(BaseModel):
    rooms_archived: int = 0
    batches_committed: int = 0
