from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(UTC)


class Phase(str, Enum):
    PLAN = "PLAN"
    BUILD = "BUILD"
    REVIEW = "REVIEW"
    END = "END"


class EventType(str, Enum):
    START_BUILD = "START_BUILD"
    SKIP_TO_REVIEW = "SKIP_TO_REVIEW"
    NOTHING_TO_DO = "NOTHING_TO_DO"
    IMPLEMENTATION_DONE = "IMPLEMENTATION_DONE"
    BLOCKED = "BLOCKED"
    CONTINUE_BUILDING = "CONTINUE_BUILDING"
    APPROVED = "APPROVED"
    NEEDS_FIXES = "NEEDS_FIXES"
    REJECTED = "REJECTED"
    NEXT_ITERATION = "NEXT_ITERATION"
    MORE_REVIEW = "MORE_REVIEW"


class SnapshotModel(BaseModel):
    """Base for persisted models: camelCase on disk, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Plan(SnapshotModel):
    task: str = ""
    files: list[str] = Field(default_factory=list)
    steps: list[str] = Field(default_factory=list)
    acceptance_criteria: list[str] = Field(default_factory=list)


class BuildState(SnapshotModel):
    steps_completed: list[str] = Field(default_factory=list)
    blockers: list[str] = Field(default_factory=list)


class ReviewState(SnapshotModel):
    last_feedback: str | None = None
    issues: list[str] = Field(default_factory=list)


class HistoryEntry(SnapshotModel):
    """Immutable audit record of one applied transition."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    phase: Phase
    transition: Phase
    reason: str
    timestamp: datetime = Field(default_factory=utc_now)
    event: EventType | None = None
    fallback: bool = False


class Snapshot(SnapshotModel):
    """Complete durable state of the loop."""

    iteration: int = Field(default=1, ge=1)
    phase: Phase = Phase.PLAN
    timestamp: datetime = Field(default_factory=utc_now)
    plan: Plan | None = None
    build_state: BuildState = Field(default_factory=BuildState)
    review_state: ReviewState = Field(default_factory=ReviewState)
    history: list[HistoryEntry] = Field(default_factory=list)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)

    def without_timestamp(self) -> dict[str, Any]:
        """Dump used to compare snapshots irrespective of their write time."""
        return self.model_dump(mode="json", exclude={"timestamp"})


class Event(BaseModel):
    """A reason-carrying signal for the transition engine."""

    model_config = ConfigDict(frozen=True)

    type: EventType
    reason: str
    fallback: bool = False

    @field_validator("reason")
    @classmethod
    def _reason_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("event reason must be non-empty")
        return value.strip()


class TransitionDirective(BaseModel):
    """Decision extracted from agent text, explicit or fallback."""

    model_config = ConfigDict(frozen=True)

    event_type: EventType
    destination: Phase
    reason: str
    fallback: bool = False
    raw_target: str | None = None

    def to_event(self) -> Event:
        return Event(type=self.event_type, reason=self.reason, fallback=self.fallback)


class BuildReport(BaseModel):
    summary: str = ""
    steps_completed: list[str] = Field(default_factory=list)
    blockers: list[str] = Field(default_factory=list)


class ReviewReport(BaseModel):
    status: str = ""
    feedback: str = ""
    issues: list[str] = Field(default_factory=list)

    @property
    def approved(self) -> bool:
        return self.status == "PASS"


class PhaseResult(BaseModel):
    """Output of one phase execution: the event plus the fields it may set."""

    event: Event
    state_updates: dict[str, Any] = Field(default_factory=dict)
    session_id: str | None = None

    @property
    def reason(self) -> str:
        return self.event.reason
