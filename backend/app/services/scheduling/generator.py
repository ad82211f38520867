from __future__ import annotations

import hashlib
import logging
import threading
from time import perf_counter
from typing import Any, Mapping

from pydantic import ValidationError

from app.core.exceptions import SchedulerError
from app.schemas.scheduling import (
    Assignment,
    ScheduleInput,
    ScheduleMetrics,
    ScheduleResult,
    ScheduleWarning,
    SchedulerConfig,
)
from app.services.scheduling.candidates import CandidateIndex, enumerate_candidates
from app.services.scheduling.conflict_graph import ConflictGraphBuild, build_conflict_graph
from app.services.scheduling.constructor import GreedyConstructor
from app.services.scheduling.models import NormalizedInput
from app.services.scheduling.normalizer import normalize_input
from app.services.scheduling.optimizer import LocalSearchOptimizer, OptimizationOutcome
from app.services.scheduling.scoring import ScheduleScorer, ScoreBreakdown
from app.services.scheduling.state import ScheduleState

logger = logging.getLogger(__name__)

SEVERE_OVERLAP = 80.0


def input_seed(normalized: NormalizedInput) -> int:
    digest = hashlib.sha256()
    for ids in (
        [session.id for session in normalized.sessions],
        sorted(venue.id for venue in normalized.venues),
        sorted(slot.id for slot in normalized.time_slots),
    ):
        digest.update("\x1f".join(ids).encode("utf-8"))
        digest.update(b"\x1e")
    return int.from_bytes(digest.digest()[:8], "big")


def _describe_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors()[:5]:
        location = ".".join(str(part) for part in error.get("loc", ()))
        problems.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "Invalid schedule request: " + "; ".join(problems)


class ScheduleGenerator:
    def __init__(
        self,
        schedule_input: ScheduleInput | Mapping[str, Any],
        config: SchedulerConfig | Mapping[str, Any] | None = None,
    ):
        self.raw_input = schedule_input
        self.raw_config = config
        self._stop_requested = threading.Event()
        self._optimizer: LocalSearchOptimizer | None = None

    def request_stop(self) -> None:
        """Ask a running generation to return its best schedule so far."""
        self._stop_requested.set()
        optimizer = self._optimizer
        if optimizer is not None:
            optimizer.request_stop()

    def _resolve_input(self) -> ScheduleInput:
        if isinstance(self.raw_input, ScheduleInput):
            return self.raw_input
        return ScheduleInput.model_validate(self.raw_input)

    def _resolve_config(self) -> SchedulerConfig:
        if isinstance(self.raw_config, SchedulerConfig):
            return self.raw_config
        if self.raw_config is None:
            return SchedulerConfig.from_settings()
        return SchedulerConfig.from_settings(**dict(self.raw_config))

    def generate(self) -> ScheduleResult:
        start = perf_counter()
        schedule_input: ScheduleInput | None = None
        try:
            schedule_input = self._resolve_input()
            config = self._resolve_config()
            normalized = normalize_input(schedule_input)
            return self._run(normalized, config, start)
        except SchedulerError as exc:
            logger.warning("Schedule generation failed error=%s details=%s", exc.message, exc.details)
            return self._failure(exc.message, schedule_input, start)
        except ValidationError as exc:
            message = _describe_validation_error(exc)
            logger.warning("Schedule generation rejected request error=%s", message)
            return self._failure(message, schedule_input, start)

    def _run(self, normalized: NormalizedInput, config: SchedulerConfig, start: float) -> ScheduleResult:
        logger.info(
            "Schedule generation started event_id=%s sessions=%s venues=%s time_slots=%s overlaps=%s",
            normalized.event_id,
            len(normalized.sessions),
            len(normalized.venues),
            len(normalized.time_slots),
            len(normalized.overlaps),
        )
        graph_build = build_conflict_graph(normalized.overlaps, config.conflict_threshold)
        candidates = enumerate_candidates(normalized)
        eligible = len(normalized.locked_sessions) + len(candidates.by_session)
        scorer = ScheduleScorer(normalized, graph_build.graph, config, eligible_sessions=eligible)

        construction = GreedyConstructor(normalized, graph_build.graph, candidates).build()

        optimizer = LocalSearchOptimizer(candidates, scorer, config, seed=input_seed(normalized))
        self._optimizer = optimizer
        if self._stop_requested.is_set():
            optimizer.request_stop()
        try:
            outcome = optimizer.optimize(construction.state)
        finally:
            self._optimizer = None

        final_state = ScheduleState.from_placements(graph_build.graph, outcome.best.placements)
        self._verify(normalized, candidates, final_state)

        result = self._assemble(
            normalized=normalized,
            graph_build=graph_build,
            candidates=candidates,
            state=final_state,
            score=outcome.best.score,
            outcome=outcome,
            eligible=eligible,
            start=start,
        )
        logger.info(
            "Schedule generation finished event_id=%s assigned=%s unassigned=%s score=%.2f "
            "initial_score=%.2f iterations=%s stopped=%s runtime_ms=%s",
            normalized.event_id,
            len(result.assignments),
            len(result.unassigned_sessions),
            result.quality_score,
            result.metrics.initial_quality_score,
            outcome.iterations,
            outcome.stopped_reason,
            result.execution_time_ms,
        )
        return result

    @staticmethod
    def _verify(normalized: NormalizedInput, candidates: CandidateIndex, state: ScheduleState) -> None:
        violations: list[str] = []
        occupied: dict[tuple[str, str], str] = {}
        for session_id, placement in state.items():
            session = normalized.session_by_id[session_id]
            venue = normalized.venue_by_id[placement.venue_id]
            key = (placement.venue_id, placement.time_slot_id)
            if key in occupied:
                violations.append(f"{occupied[key]} and {session_id} share venue {key[0]} in slot {key[1]}")
            occupied[key] = session_id
            if session.is_locked and (session.venue_id, session.time_slot_id) != key:
                violations.append(f"locked session {session_id} moved")
            if normalized.slot_minutes[placement.time_slot_id] < session.duration:
                violations.append(f"session {session_id} does not fit slot {placement.time_slot_id}")
            if not session.is_locked and not session.requirements <= venue.features:
                violations.append(f"venue {venue.id} lacks features for session {session_id}")
            if not session.is_locked and not candidates.is_candidate(session_id, placement):
                violations.append(f"session {session_id} placed outside its candidates")
        for session in normalized.locked_sessions:
            if session.id not in state:
                violations.append(f"locked session {session.id} missing from schedule")
        if violations:
            raise SchedulerError(
                "Generated schedule violates hard constraints",
                details={"violations": violations},
            )

    def _assemble(
        self,
        *,
        normalized: NormalizedInput,
        graph_build: ConflictGraphBuild,
        candidates: CandidateIndex,
        state: ScheduleState,
        score: ScoreBreakdown,
        outcome: OptimizationOutcome,
        eligible: int,
        start: float,
    ) -> ScheduleResult:
        ordered = sorted(state.items(), key=lambda item: normalized.placement_rank(item[1]))
        assignments = [
            Assignment(
                session_id=session_id,
                venue_id=placement.venue_id,
                time_slot_id=placement.time_slot_id,
            )
            for session_id, placement in ordered
        ]
        unassigned = sorted(session.id for session in normalized.sessions if session.id not in state)

        metrics = ScheduleMetrics(
            total_sessions=len(normalized.sessions),
            eligible_sessions=eligible,
            assigned_sessions=len(assignments),
            locked_sessions=len(normalized.locked_sessions),
            unassignable_sessions=len(candidates.unassignable),
            conflicted_sessions=score.conflicted_sessions,
            hard_conflict_pairs=score.hard_conflict_pairs,
            soft_conflict_pairs=score.soft_conflict_pairs,
            oversubscribed_sessions=score.oversubscribed_sessions,
            underutilized_assignments=score.underutilized_assignments,
            avg_capacity_utilization=round(score.avg_capacity_utilization, 4),
            demand_balance_score=round(score.balance_score, 4),
            initial_quality_score=outcome.initial_score.quality_score,
            iterations=outcome.iterations,
            moves_accepted=outcome.moves_accepted,
            moves_rejected=outcome.moves_rejected,
            stopped_reason=outcome.stopped_reason,
        )
        return ScheduleResult(
            success=True,
            assignments=assignments,
            quality_score=score.quality_score,
            metrics=metrics,
            warnings=self._warnings(normalized, graph_build, candidates, state),
            unassigned_sessions=unassigned,
            execution_time_ms=int((perf_counter() - start) * 1000),
        )

    @staticmethod
    def _warnings(
        normalized: NormalizedInput,
        graph_build: ConflictGraphBuild,
        candidates: CandidateIndex,
        state: ScheduleState,
    ) -> list[ScheduleWarning]:
        warnings: list[ScheduleWarning] = []
        for item in candidates.unassignable:
            warnings.append(
                ScheduleWarning(
                    type=item.reason,
                    severity="high",
                    session_ids=[item.session_id],
                    message=item.message,
                )
            )

        if graph_build.duplicate_pairs:
            warnings.append(
                ScheduleWarning(
                    type="overlap",
                    severity="low",
                    session_ids=sorted({session_id for pair in graph_build.duplicate_pairs for session_id in pair}),
                    message=(
                        f"{len(graph_build.duplicate_pairs)} session pair(s) had duplicate voter overlap rows; "
                        "the last row for each pair was used"
                    ),
                )
            )
        if graph_build.self_pairs:
            warnings.append(
                ScheduleWarning(
                    type="overlap",
                    severity="low",
                    session_ids=list(graph_build.self_pairs),
                    message="Voter overlap rows pairing a session with itself were ignored",
                )
            )

        graph = graph_build.graph
        for slot in normalized.time_slots:
            present = sorted(state.sessions_in_slot(slot.id))
            for i, session_a in enumerate(present):
                for session_b in present[i + 1:]:
                    if not graph.is_hard(session_a, session_b):
                        continue
                    # Only locked pairs can end up here; the generator never creates a hard conflict.
                    weight = graph.weight(session_a, session_b)
                    warnings.append(
                        ScheduleWarning(
                            type="conflict",
                            severity="high" if weight >= SEVERE_OVERLAP else "medium",
                            session_ids=[session_a, session_b],
                            message=(
                                f"Sessions {normalized.session_by_id[session_a].display_name} and "
                                f"{normalized.session_by_id[session_b].display_name} share {weight:g}% of "
                                f"their voters and both run in {slot.label or slot.id}"
                            ),
                        )
                    )

        ordered = sorted(state.items(), key=lambda item: normalized.placement_rank(item[1]))
        underused: list[str] = []
        for session_id, placement in ordered:
            session = normalized.session_by_id[session_id]
            venue = normalized.venue_by_id[placement.venue_id]
            missing = sorted(session.requirements - venue.features)
            if missing:
                warnings.append(
                    ScheduleWarning(
                        type="feature",
                        severity="medium",
                        session_ids=[session_id],
                        message=(
                            f"Locked session {session.display_name} sits in {venue.display_name}, "
                            f"which lacks {', '.join(missing)}"
                        ),
                    )
                )
            if session.total_voters > venue.capacity:
                warnings.append(
                    ScheduleWarning(
                        type="capacity",
                        severity="medium",
                        session_ids=[session_id],
                        message=(
                            f"Session {session.display_name} expects {session.total_voters} attendees "
                            f"but {venue.display_name} holds {venue.capacity}"
                        ),
                    )
                )
            if normalized.slot_minutes[placement.time_slot_id] > session.duration:
                underused.append(session_id)

        if underused:
            warnings.append(
                ScheduleWarning(
                    type="duration",
                    severity="low",
                    session_ids=underused,
                    message=f"{len(underused)} session(s) are shorter than their assigned time slot",
                )
            )
        return warnings

    @staticmethod
    def _failure(message: str, schedule_input: ScheduleInput | None, start: float) -> ScheduleResult:
        unassigned: list[str] = []
        if schedule_input is not None:
            unassigned = sorted(session.id for session in schedule_input.sessions if session.is_schedulable)
        return ScheduleResult(
            success=False,
            unassigned_sessions=unassigned,
            execution_time_ms=int((perf_counter() - start) * 1000),
            error=message,
        )


def generate(
    schedule_input: ScheduleInput | Mapping[str, Any],
    config: SchedulerConfig | Mapping[str, Any] | None = None,
) -> ScheduleResult:
    """Build a schedule for one event. Never persists anything; callers apply the result."""
    return ScheduleGenerator(schedule_input, config).generate()
