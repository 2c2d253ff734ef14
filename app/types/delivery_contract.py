"""Pydantic models exchanged between the scheduler services, the admin API
and the reply processor.

These classes are intentionally framework-agnostic so they can be reused by
workers, API responses, and tests without pulling in FastAPI or database
layers.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

OutcomeStatus = Literal["recorded", "no_open_interaction", "invalid_response"]
QueueStatus = Literal["pending", "sent", "failed"]


def _require_aware(v: Optional[datetime]) -> Optional[datetime]:
    if v is not None and (v.tzinfo is None or v.utcoffset() is None):
        raise ValueError("datetime must be timezone-aware")
    return v


class ResponseOutcome(BaseModel):
    """Result of closing (or failing to close) a recipient's open question."""

    status: OutcomeStatus
    recipient_id: int
    interaction_id: Optional[int] = None
    content_id: Optional[int] = None
    response: Optional[str] = None
    is_correct: bool = False
    correct_answer: Optional[str] = None
    explanation: Optional[str] = None
    points_earned: int = 0
    current_streak: int = 0
    total_score: int = 0
    message: str = ""


class QueueEntryView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    recipient_id: int
    scheduled_for: datetime
    status: QueueStatus
    attempts: int
    content_id: Optional[int] = None
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None


class QueueStatusReport(BaseModel):
    start: datetime
    end: datetime
    total: int
    counts: Dict[str, int] = Field(default_factory=dict)
    entries: List[QueueEntryView] = Field(default_factory=list)


class MaintenanceReport(BaseModel):
    stale_interactions_removed: int = 0
    stale_entries_removed: int = 0


# ──────────────────────────────
# Admin API request bodies
# ──────────────────────────────


class PopulateRequest(BaseModel):
    target_date: Optional[date] = None


class TickRequest(BaseModel):
    now: Optional[datetime] = None

    @field_validator("now")
    def _aware(cls, v):  # noqa: N805
        return _require_aware(v)


class MaintenanceRequest(BaseModel):
    now: Optional[datetime] = None

    @field_validator("now")
    def _aware(cls, v):  # noqa: N805
        return _require_aware(v)
