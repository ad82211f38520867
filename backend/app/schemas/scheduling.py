from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from app.core.config import Settings, get_settings
from app.core.exceptions import ConfigurationError

SCHEDULABLE_STATUSES = frozenset({"approved", "scheduled"})

WarningType = Literal["conflict", "capacity", "feature", "duration", "unassigned", "overlap"]
WarningSeverity = Literal["low", "medium", "high"]
StopReason = Literal[
    "not_started",
    "target_reached",
    "stagnation",
    "max_iterations",
    "no_movable_sessions",
    "stop_requested",
]


class SchedulingModel(BaseModel):
    """Accepts snake_case rows from the store and camelCase payloads alike."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _first_row(value: Any) -> Any:
    # Joined one-to-one rows come back as a dict, a one-element list, or null.
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _clean_tags(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    tags = {str(item).strip() for item in value if item is not None and str(item).strip()}
    return sorted(tags)


def _optional_id(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class SessionInput(SchedulingModel):
    id: str = Field(min_length=1, max_length=64)
    title: str | None = Field(default=None, max_length=300)
    duration: int = Field(gt=0, le=24 * 60)
    status: str = "approved"
    is_locked: bool = False
    venue_id: str | None = None
    time_slot_id: str | None = None
    technical_requirements: list[str] = Field(default_factory=list)
    total_votes: int = Field(default=0, ge=0)
    total_voters: int = Field(default=0, ge=0)

    @model_validator(mode="before")
    @classmethod
    def flatten_pre_vote_stats(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        row = dict(data)
        stats = _first_row(row.pop("pre_vote_stats", None))
        camel_stats = _first_row(row.pop("preVoteStats", None))
        stats = stats if stats is not None else camel_stats
        if isinstance(stats, dict):
            for snake, camel in (("total_votes", "totalVotes"), ("total_voters", "totalVoters")):
                if row.get(snake) is None and row.get(camel) is None:
                    row[snake] = stats.get(snake, stats.get(camel))
        return row

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> Any:
        return str(value).strip() if value is not None else value

    @field_validator("venue_id", "time_slot_id", mode="before")
    @classmethod
    def coerce_reference(cls, value: Any) -> str | None:
        return _optional_id(value)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value: Any) -> str:
        if value is None:
            return "approved"
        return str(value).strip().lower()

    @field_validator("is_locked", mode="before")
    @classmethod
    def default_locked(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("technical_requirements", mode="before")
    @classmethod
    def normalize_requirements(cls, value: Any) -> list[str]:
        return _clean_tags(value)

    @field_validator("total_votes", "total_voters", mode="before")
    @classmethod
    def default_counts(cls, value: Any) -> Any:
        return 0 if value is None else value

    @property
    def is_schedulable(self) -> bool:
        return self.status in SCHEDULABLE_STATUSES


class VenueInput(SchedulingModel):
    id: str = Field(min_length=1, max_length=64)
    name: str | None = Field(default=None, max_length=200)
    capacity: int = Field(ge=1)
    features: list[str] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> Any:
        return str(value).strip() if value is not None else value

    @field_validator("features", mode="before")
    @classmethod
    def normalize_features(cls, value: Any) -> list[str]:
        return _clean_tags(value)


class TimeSlotInput(SchedulingModel):
    id: str = Field(min_length=1, max_length=64)
    start_time: datetime
    end_time: datetime
    is_available: bool = True
    label: str | None = Field(default=None, max_length=200)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> Any:
        return str(value).strip() if value is not None else value

    @field_validator("is_available", mode="before")
    @classmethod
    def default_available(cls, value: Any) -> Any:
        return True if value is None else value


class VoterOverlapInput(SchedulingModel):
    session_a_id: str = Field(min_length=1, max_length=64)
    session_b_id: str = Field(min_length=1, max_length=64)
    overlap_percentage: float = Field(default=0.0, ge=0.0, le=100.0)
    shared_voters: int = Field(default=0, ge=0)

    @field_validator("session_a_id", "session_b_id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> Any:
        return str(value).strip() if value is not None else value

    @field_validator("overlap_percentage", "shared_voters", mode="before")
    @classmethod
    def default_numbers(cls, value: Any) -> Any:
        return 0 if value is None else value


class ScheduleInput(SchedulingModel):
    event_id: str | None = None
    sessions: list[SessionInput] = Field(default_factory=list)
    venues: list[VenueInput] = Field(default_factory=list)
    time_slots: list[TimeSlotInput] = Field(default_factory=list)
    voter_overlap: list[VoterOverlapInput] = Field(default_factory=list)

    @field_validator("event_id", mode="before")
    @classmethod
    def coerce_event_id(cls, value: Any) -> str | None:
        return _optional_id(value)

    @field_validator("sessions", "venues", "time_slots", "voter_overlap", mode="before")
    @classmethod
    def default_rows(cls, value: Any) -> Any:
        return [] if value is None else value


class ScoringWeights(SchedulingModel):
    conflict: float = Field(default=40.0, ge=0.0, le=1000.0)
    capacity: float = Field(default=25.0, ge=0.0, le=1000.0)
    coverage: float = Field(default=20.0, ge=0.0, le=1000.0)
    balance: float = Field(default=10.0, ge=0.0, le=1000.0)
    duration: float = Field(default=5.0, ge=0.0, le=1000.0)

    @model_validator(mode="after")
    def validate_total(self) -> "ScoringWeights":
        if self.total <= 0:
            raise ValueError("at least one scoring weight must be positive")
        return self

    @property
    def total(self) -> float:
        return self.conflict + self.capacity + self.coverage + self.balance + self.duration


class SchedulerConfig(SchedulingModel):
    """Per-call tuning for schedule generation.

    ``conflict_threshold`` is the main behavioural lever: two sessions whose
    voter overlap is at or above it are never scheduled in the same time slot
    by the generator, while anything below it is allowed and only penalised in
    proportion to the overlap. Raising it lets more overlapping audiences run
    concurrently; lowering it leaves more sessions unassigned when rooms and
    slots are scarce.
    """

    conflict_threshold: float = Field(default=50.0, gt=0.0, le=100.0)
    max_iterations: int = Field(default=300, ge=0, le=100_000)
    target_quality_score: float = Field(default=95.0, ge=0.0, le=100.0)
    stagnation_limit: int = Field(default=60, ge=1, le=100_000)
    acceptance_tolerance: float = Field(default=0.0, ge=0.0, le=5.0)
    weights: ScoringWeights = Field(default_factory=ScoringWeights)

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **overrides: Any) -> "SchedulerConfig":
        settings = settings or get_settings()
        values: dict[str, Any] = {
            "conflict_threshold": settings.scheduler_conflict_threshold,
            "max_iterations": settings.scheduler_max_iterations,
            "target_quality_score": settings.scheduler_target_quality_score,
            "stagnation_limit": settings.scheduler_stagnation_limit,
            "acceptance_tolerance": settings.scheduler_acceptance_tolerance,
        }
        try:
            base = cls(**values)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid scheduler settings: {exc}") from exc

        # Callers pass through optional request fields; null means "use the default".
        field_names = {info.alias: name for name, info in cls.model_fields.items() if info.alias}
        provided = {
            field_names.get(key, key): value
            for key, value in overrides.items()
            if value is not None
        }
        if not provided:
            return base
        return cls.model_validate({**base.model_dump(), **provided})


class Assignment(SchedulingModel):
    session_id: str
    venue_id: str
    time_slot_id: str


class ScheduleWarning(SchedulingModel):
    type: WarningType
    severity: WarningSeverity
    session_ids: list[str] = Field(default_factory=list)
    message: str


class ScheduleMetrics(SchedulingModel):
    total_sessions: int = 0
    eligible_sessions: int = 0
    assigned_sessions: int = 0
    locked_sessions: int = 0
    unassignable_sessions: int = 0
    conflicted_sessions: int = 0
    hard_conflict_pairs: int = 0
    soft_conflict_pairs: int = 0
    oversubscribed_sessions: int = 0
    underutilized_assignments: int = 0
    avg_capacity_utilization: float = 0.0
    demand_balance_score: float = 0.0
    initial_quality_score: float = 0.0
    iterations: int = 0
    moves_accepted: int = 0
    moves_rejected: int = 0
    stopped_reason: StopReason = "not_started"


class ScheduleResult(SchedulingModel):
    success: bool
    assignments: list[Assignment] = Field(default_factory=list)
    quality_score: float = 0.0
    metrics: ScheduleMetrics = Field(default_factory=ScheduleMetrics)
    warnings: list[ScheduleWarning] = Field(default_factory=list)
    unassigned_sessions: list[str] = Field(default_factory=list)
    execution_time_ms: int = 0
    error: str | None = None
