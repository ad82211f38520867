from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass

from app.schemas.scheduling import SchedulerConfig
from app.services.scheduling.candidates import CandidateIndex
from app.services.scheduling.models import Placement
from app.services.scheduling.scoring import ScheduleScorer, ScoreBreakdown
from app.services.scheduling.state import ScheduleState

logger = logging.getLogger(__name__)

SCORE_EPSILON = 1e-9
SWAP_PROBABILITY = 0.35


@dataclass(frozen=True)
class BestSnapshot:
    placements: dict[str, Placement]
    score: ScoreBreakdown
    iteration: int


@dataclass(frozen=True)
class Relocate:
    session_id: str
    source: Placement | None
    target: Placement


@dataclass(frozen=True)
class Swap:
    session_a_id: str
    session_b_id: str
    placement_a: Placement
    placement_b: Placement


@dataclass
class OptimizationOutcome:
    best: BestSnapshot
    initial_score: ScoreBreakdown
    iterations: int = 0
    moves_accepted: int = 0
    moves_rejected: int = 0
    stopped_reason: str = "max_iterations"


class LocalSearchOptimizer:
    """Seeded hill climbing over relocate and swap moves.

    Sideways moves are accepted so the search can cross plateaus; the best
    assignment seen so far is kept in ``current_best`` after every improvement,
    so a host may stop the loop at any time and still read a usable schedule.
    """

    def __init__(
        self,
        candidates: CandidateIndex,
        scorer: ScheduleScorer,
        config: SchedulerConfig,
        *,
        seed: int,
    ):
        self.candidates = candidates
        self.scorer = scorer
        self.config = config
        self.random = random.Random(seed)
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._best: BestSnapshot | None = None
        self.movable = sorted(candidates.session_ids)

    @property
    def current_best(self) -> BestSnapshot | None:
        with self._lock:
            return self._best

    def request_stop(self) -> None:
        self._stop.set()

    def _record_best(self, state: ScheduleState, score: ScoreBreakdown, iteration: int) -> BestSnapshot:
        snapshot = BestSnapshot(placements=state.snapshot(), score=score, iteration=iteration)
        with self._lock:
            self._best = snapshot
        return snapshot

    def _feasible_targets(self, state: ScheduleState, session_id: str) -> list[Placement]:
        current = state.placement_of(session_id)
        return [
            placement
            for placement in self.candidates.candidates_for(session_id)
            if placement != current
            and state.is_free(placement)
            and not state.has_hard_conflict(session_id, placement.time_slot_id)
        ]

    def _propose_relocate(self, state: ScheduleState) -> Relocate | None:
        waiting = [session_id for session_id in self.movable if session_id not in state]
        if waiting and self.random.random() < 0.5:
            session_id = self.random.choice(waiting)
        else:
            session_id = self.random.choice(self.movable)
        targets = self._feasible_targets(state, session_id)
        if not targets:
            return None
        return Relocate(
            session_id=session_id,
            source=state.placement_of(session_id),
            target=self.random.choice(targets),
        )

    def _propose_swap(self, state: ScheduleState) -> Swap | None:
        placed = [session_id for session_id in self.movable if session_id in state]
        if len(placed) < 2:
            return None
        session_a, session_b = self.random.sample(placed, 2)
        placement_a = state.placement_of(session_a)
        placement_b = state.placement_of(session_b)
        if not self.candidates.is_candidate(session_a, placement_b):
            return None
        if not self.candidates.is_candidate(session_b, placement_a):
            return None
        if placement_a.time_slot_id != placement_b.time_slot_id:
            pair = (session_a, session_b)
            if state.has_hard_conflict(session_a, placement_b.time_slot_id, exclude=pair):
                return None
            if state.has_hard_conflict(session_b, placement_a.time_slot_id, exclude=pair):
                return None
        return Swap(
            session_a_id=session_a,
            session_b_id=session_b,
            placement_a=placement_a,
            placement_b=placement_b,
        )

    def _propose(self, state: ScheduleState) -> Relocate | Swap | None:
        if self.random.random() < SWAP_PROBABILITY:
            move = self._propose_swap(state)
            if move is not None:
                return move
        return self._propose_relocate(state)

    @staticmethod
    def _apply(state: ScheduleState, move: Relocate | Swap) -> None:
        if isinstance(move, Relocate):
            state.remove(move.session_id)
            state.place(move.session_id, move.target)
            return
        state.remove(move.session_a_id)
        state.remove(move.session_b_id)
        state.place(move.session_a_id, move.placement_b)
        state.place(move.session_b_id, move.placement_a)

    @staticmethod
    def _revert(state: ScheduleState, move: Relocate | Swap) -> None:
        if isinstance(move, Relocate):
            state.remove(move.session_id)
            if move.source is not None:
                state.place(move.session_id, move.source)
            return
        state.remove(move.session_a_id)
        state.remove(move.session_b_id)
        state.place(move.session_a_id, move.placement_a)
        state.place(move.session_b_id, move.placement_b)

    def optimize(self, state: ScheduleState) -> OptimizationOutcome:
        current = self.scorer.score(state)
        best = self._record_best(state, current, iteration=0)
        outcome = OptimizationOutcome(best=best, initial_score=current)
        tolerance = self.config.acceptance_tolerance
        stagnant = 0

        while True:
            if best.score.total >= self.config.target_quality_score:
                outcome.stopped_reason = "target_reached"
                break
            if not self.movable:
                outcome.stopped_reason = "no_movable_sessions"
                break
            if self._stop.is_set():
                outcome.stopped_reason = "stop_requested"
                break
            if outcome.iterations >= self.config.max_iterations:
                outcome.stopped_reason = "max_iterations"
                break
            if stagnant >= self.config.stagnation_limit:
                outcome.stopped_reason = "stagnation"
                break

            outcome.iterations += 1
            move = self._propose(state)
            if move is None:
                outcome.moves_rejected += 1
                stagnant += 1
                continue

            self._apply(state, move)
            candidate = self.scorer.score(state)
            if candidate.total + tolerance + SCORE_EPSILON < current.total:
                self._revert(state, move)
                outcome.moves_rejected += 1
                stagnant += 1
                continue

            outcome.moves_accepted += 1
            current = candidate
            if candidate.total > best.score.total + SCORE_EPSILON:
                best = self._record_best(state, candidate, iteration=outcome.iterations)
                stagnant = 0
                logger.debug(
                    "Local search improved iteration=%s score=%.2f",
                    outcome.iterations,
                    candidate.total,
                )
            else:
                stagnant += 1

        outcome.best = best
        return outcome
