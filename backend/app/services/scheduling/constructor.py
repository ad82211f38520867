from __future__ import annotations

import logging
from dataclasses import dataclass, field

from app.services.scheduling.candidates import CandidateIndex
from app.services.scheduling.conflict_graph import ConflictGraph
from app.services.scheduling.models import NormalizedInput, Placement, Session
from app.services.scheduling.scoring import oversubscription_ratio, slot_fit
from app.services.scheduling.state import ScheduleState

logger = logging.getLogger(__name__)

OVERSUBSCRIPTION_COST = 100.0
SLACK_COST = 10.0


@dataclass
class ConstructionResult:
    state: ScheduleState
    unplaced: list[str] = field(default_factory=list)


class GreedyConstructor:
    """Single pass placement: locked sessions first, then highest demand first."""

    def __init__(self, normalized: NormalizedInput, graph: ConflictGraph, candidates: CandidateIndex):
        self.normalized = normalized
        self.graph = graph
        self.candidates = candidates

    def priority_order(self) -> list[Session]:
        sessions = [self.normalized.session_by_id[session_id] for session_id in self.candidates.session_ids]
        return sorted(sessions, key=lambda session: (-session.total_votes, -session.total_voters, session.id))

    def placement_cost(self, state: ScheduleState, session: Session, placement: Placement) -> float:
        venue = self.normalized.venue_by_id[placement.venue_id]
        ratio = oversubscription_ratio(session, venue)
        overlap = state.conflict_weight(session.id, placement.time_slot_id)
        slack = 1.0 - slot_fit(session, self.normalized.slot_minutes[placement.time_slot_id])
        return overlap * (1 + ratio) + OVERSUBSCRIPTION_COST * ratio + SLACK_COST * slack

    def seed_locked(self, state: ScheduleState) -> None:
        for session in self.normalized.locked_sessions:
            state.place(session.id, Placement(venue_id=session.venue_id, time_slot_id=session.time_slot_id))

    def build(self) -> ConstructionResult:
        state = ScheduleState(self.graph)
        self.seed_locked(state)

        unplaced: list[str] = []
        for session in self.priority_order():
            best: Placement | None = None
            best_cost = 0.0
            # Candidates are ordered by venue index then slot start, so the first minimum wins ties.
            for placement in self.candidates.candidates_for(session.id):
                if not state.is_free(placement):
                    continue
                if state.has_hard_conflict(session.id, placement.time_slot_id):
                    continue
                cost = self.placement_cost(state, session, placement)
                if best is None or cost < best_cost:
                    best = placement
                    best_cost = cost
            if best is None:
                unplaced.append(session.id)
                continue
            state.place(session.id, best)

        logger.debug(
            "Greedy construction placed=%s unplaced=%s",
            len(state),
            len(unplaced),
        )
        return ConstructionResult(state=state, unplaced=unplaced)
