from __future__ import annotations

from collections import defaultdict
from typing import Iterable, Mapping

from app.core.exceptions import SchedulerError
from app.services.scheduling.conflict_graph import ConflictGraph
from app.services.scheduling.models import Placement


class ScheduleState:
    """Mutable working assignment with occupancy indexes kept in step.

    One session per (venue, time slot) pair is enforced on every ``place``.
    """

    def __init__(self, graph: ConflictGraph):
        self.graph = graph
        self._placements: dict[str, Placement] = {}
        self._occupant: dict[Placement, str] = {}
        self._slot_sessions: dict[str, list[str]] = defaultdict(list)

    @classmethod
    def from_placements(cls, graph: ConflictGraph, placements: Mapping[str, Placement]) -> "ScheduleState":
        state = cls(graph)
        for session_id, placement in placements.items():
            state.place(session_id, placement)
        return state

    def __len__(self) -> int:
        return len(self._placements)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._placements

    def items(self):
        return self._placements.items()

    def placement_of(self, session_id: str) -> Placement | None:
        return self._placements.get(session_id)

    def is_free(self, placement: Placement) -> bool:
        return placement not in self._occupant

    def sessions_in_slot(self, time_slot_id: str) -> tuple[str, ...]:
        return tuple(self._slot_sessions.get(time_slot_id, ()))

    def place(self, session_id: str, placement: Placement) -> None:
        if session_id in self._placements:
            raise SchedulerError(
                f"Session {session_id} is already placed",
                details={"session_id": session_id},
            )
        holder = self._occupant.get(placement)
        if holder is not None:
            raise SchedulerError(
                f"Venue {placement.venue_id} in time slot {placement.time_slot_id} is already held by {holder}",
                details={"session_id": session_id, "occupant": holder},
            )
        self._placements[session_id] = placement
        self._occupant[placement] = session_id
        self._slot_sessions[placement.time_slot_id].append(session_id)

    def remove(self, session_id: str) -> Placement | None:
        placement = self._placements.pop(session_id, None)
        if placement is None:
            return None
        del self._occupant[placement]
        self._slot_sessions[placement.time_slot_id].remove(session_id)
        return placement

    def conflict_weight(self, session_id: str, time_slot_id: str, exclude: Iterable[str] = ()) -> float:
        skip = set(exclude)
        skip.add(session_id)
        return sum(
            self.graph.weight(session_id, other)
            for other in self._slot_sessions.get(time_slot_id, ())
            if other not in skip
        )

    def has_hard_conflict(self, session_id: str, time_slot_id: str, exclude: Iterable[str] = ()) -> bool:
        skip = set(exclude)
        skip.add(session_id)
        return any(
            self.graph.is_hard(session_id, other)
            for other in self._slot_sessions.get(time_slot_id, ())
            if other not in skip
        )

    def snapshot(self) -> dict[str, Placement]:
        return dict(self._placements)
