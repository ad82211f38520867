from __future__ import annotations

import math
from dataclasses import dataclass

from app.schemas.scheduling import SchedulerConfig
from app.services.scheduling.conflict_graph import ConflictGraph
from app.services.scheduling.models import NormalizedInput, Session, Venue
from app.services.scheduling.state import ScheduleState

HARD_CONFLICT_MULTIPLIER = 2.0
UNDERFILL_RATIO = 0.25
UNDERFILL_PENALTY = 0.3


def oversubscription_ratio(session: Session, venue: Venue) -> float:
    return max(0, session.total_voters - venue.capacity) / venue.capacity


def capacity_fit(session: Session, venue: Venue) -> float:
    ratio = session.total_voters / venue.capacity
    if ratio > 1:
        return max(0.0, 2.0 - ratio)
    if ratio < UNDERFILL_RATIO:
        return 1.0 - UNDERFILL_PENALTY * (UNDERFILL_RATIO - ratio) / UNDERFILL_RATIO
    return 1.0


def slot_fit(session: Session, slot_minutes: float) -> float:
    """Share of the slot the session actually uses; 1.0 for an exact fit."""
    return min(1.0, session.duration / slot_minutes)


def demand_balance(counts: list[int]) -> float:
    """One minus the coefficient of variation of sessions per slot, clamped to [0, 1]."""
    if len(counts) <= 1:
        return 1.0
    mean = sum(counts) / len(counts)
    if mean == 0:
        return 1.0
    variance = sum((count - mean) ** 2 for count in counts) / len(counts)
    return min(1.0, max(0.0, 1.0 - math.sqrt(variance) / mean))


@dataclass(frozen=True)
class ScoreBreakdown:
    total: float
    conflict_score: float
    capacity_score: float
    coverage_score: float
    balance_score: float
    duration_score: float
    placed: int
    conflicted_sessions: int
    hard_conflict_pairs: int
    soft_conflict_pairs: int
    oversubscribed_sessions: int
    underutilized_assignments: int
    avg_capacity_utilization: float

    @property
    def quality_score(self) -> float:
        return round(self.total, 2)


class ScheduleScorer:
    def __init__(
        self,
        normalized: NormalizedInput,
        graph: ConflictGraph,
        config: SchedulerConfig,
        eligible_sessions: int,
    ):
        self.normalized = normalized
        self.graph = graph
        self.weights = config.weights
        self.eligible_sessions = eligible_sessions

        locked_slots = {session.time_slot_id for session in normalized.locked_sessions}
        self._balance_slot_ids = [
            slot.id
            for slot in normalized.time_slots
            if slot.is_available or slot.id in locked_slots
        ]

    def score(self, state: ScheduleState) -> ScoreBreakdown:
        sessions = self.normalized.session_by_id
        venues = self.normalized.venue_by_id
        slot_minutes = self.normalized.slot_minutes

        penalty = 0.0
        hard_pairs = 0
        soft_pairs = 0
        conflicted: set[str] = set()
        for slot in self.normalized.time_slots:
            present = state.sessions_in_slot(slot.id)
            for i, session_a in enumerate(present):
                for session_b in present[i + 1:]:
                    weight = self.graph.weight(session_a, session_b)
                    if weight <= 0:
                        continue
                    if self.graph.is_hard(session_a, session_b):
                        penalty += (weight / 100) * HARD_CONFLICT_MULTIPLIER
                        hard_pairs += 1
                    else:
                        penalty += weight / 100
                        soft_pairs += 1
                    conflicted.add(session_a)
                    conflicted.add(session_b)

        placed = len(state)
        fit_total = 0.0
        slot_fit_total = 0.0
        utilization_total = 0.0
        oversubscribed = 0
        underutilized = 0
        for session_id, placement in state.items():
            session = sessions[session_id]
            venue = venues[placement.venue_id]
            fit_total += capacity_fit(session, venue)
            slot_fit_total += slot_fit(session, slot_minutes[placement.time_slot_id])
            utilization_total += min(1.0, session.total_voters / venue.capacity)
            if session.total_voters > venue.capacity:
                oversubscribed += 1
            if slot_minutes[placement.time_slot_id] > session.duration:
                underutilized += 1

        if placed:
            conflict_score = max(0.0, 1.0 - penalty / placed)
            capacity_score = fit_total / placed
            duration_score = slot_fit_total / placed
            avg_utilization = utilization_total / placed
        else:
            conflict_score = 1.0
            capacity_score = 1.0
            duration_score = 1.0
            avg_utilization = 0.0
        coverage_score = placed / self.eligible_sessions if self.eligible_sessions else 1.0

        counts = [len(state.sessions_in_slot(slot_id)) for slot_id in self._balance_slot_ids]
        balance_score = demand_balance(counts)

        weights = self.weights
        total = 100 * (
            weights.conflict * conflict_score
            + weights.capacity * capacity_score
            + weights.coverage * coverage_score
            + weights.balance * balance_score
            + weights.duration * duration_score
        ) / weights.total

        return ScoreBreakdown(
            total=total,
            conflict_score=conflict_score,
            capacity_score=capacity_score,
            coverage_score=coverage_score,
            balance_score=balance_score,
            duration_score=duration_score,
            placed=placed,
            conflicted_sessions=len(conflicted),
            hard_conflict_pairs=hard_pairs,
            soft_conflict_pairs=soft_pairs,
            oversubscribed_sessions=oversubscribed,
            underutilized_assignments=underutilized,
            avg_capacity_utilization=avg_utilization,
        )
