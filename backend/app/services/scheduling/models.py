from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class Session:
    id: str
    title: str | None
    duration: int
    is_locked: bool
    venue_id: str | None
    time_slot_id: str | None
    requirements: frozenset[str]
    total_votes: int
    total_voters: int

    @property
    def display_name(self) -> str:
        return self.title or self.id


@dataclass(frozen=True)
class Venue:
    id: str
    name: str | None
    capacity: int
    features: frozenset[str]
    index: int

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class TimeSlot:
    id: str
    start: datetime
    end: datetime
    minutes: float
    is_available: bool
    label: str | None
    order: int


@dataclass(frozen=True)
class Placement:
    venue_id: str
    time_slot_id: str


@dataclass(frozen=True)
class OverlapEdge:
    session_a_id: str
    session_b_id: str
    percentage: float
    shared_voters: int


@dataclass(frozen=True, eq=False)
class NormalizedInput:
    """Validated snapshot of one generation call, indexed for O(1) lookups."""

    event_id: str | None
    sessions: tuple[Session, ...]
    venues: tuple[Venue, ...]
    time_slots: tuple[TimeSlot, ...]
    overlaps: tuple[OverlapEdge, ...]
    session_by_id: dict[str, Session] = field(default_factory=dict)
    venue_by_id: dict[str, Venue] = field(default_factory=dict)
    slot_by_id: dict[str, TimeSlot] = field(default_factory=dict)
    slot_minutes: dict[str, float] = field(default_factory=dict)

    @property
    def locked_sessions(self) -> tuple[Session, ...]:
        return tuple(session for session in self.sessions if session.is_locked)

    @property
    def unlocked_sessions(self) -> tuple[Session, ...]:
        return tuple(session for session in self.sessions if not session.is_locked)

    def placement_rank(self, placement: Placement) -> tuple[int, int]:
        return (
            self.slot_by_id[placement.time_slot_id].order,
            self.venue_by_id[placement.venue_id].index,
        )
