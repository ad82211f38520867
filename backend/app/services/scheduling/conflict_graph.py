from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from app.services.scheduling.models import OverlapEdge

logger = logging.getLogger(__name__)


def pair_key(session_a_id: str, session_b_id: str) -> tuple[str, str]:
    return (session_a_id, session_b_id) if session_a_id <= session_b_id else (session_b_id, session_a_id)


class ConflictGraph:
    """Undirected weighted graph of shared audience between sessions.

    Edge weight is the overlap percentage (0-100). Missing pairs weigh zero.
    """

    def __init__(self, weights: dict[tuple[str, str], float], conflict_threshold: float):
        self.conflict_threshold = conflict_threshold
        self._weights = dict(weights)
        self._peers: dict[str, dict[str, float]] = {}
        for (session_a, session_b), weight in self._weights.items():
            self._peers.setdefault(session_a, {})[session_b] = weight
            self._peers.setdefault(session_b, {})[session_a] = weight

    def __len__(self) -> int:
        return len(self._weights)

    def weight(self, session_a_id: str, session_b_id: str) -> float:
        return self._peers.get(session_a_id, {}).get(session_b_id, 0.0)

    def is_hard(self, session_a_id: str, session_b_id: str) -> bool:
        weight = self.weight(session_a_id, session_b_id)
        return weight > 0 and weight >= self.conflict_threshold


@dataclass
class ConflictGraphBuild:
    graph: ConflictGraph
    duplicate_pairs: list[tuple[str, str]] = field(default_factory=list)
    self_pairs: list[str] = field(default_factory=list)


def build_conflict_graph(edges: Iterable[OverlapEdge], conflict_threshold: float) -> ConflictGraphBuild:
    weights: dict[tuple[str, str], float] = {}
    duplicates: set[tuple[str, str]] = set()
    self_pairs: set[str] = set()

    for edge in edges:
        if edge.session_a_id == edge.session_b_id:
            self_pairs.add(edge.session_a_id)
            continue
        key = pair_key(edge.session_a_id, edge.session_b_id)
        if key in weights:
            duplicates.add(key)
        # Later rows win; the store may hold a fresher recomputation after an older one.
        weights[key] = edge.percentage

    if self_pairs:
        logger.warning("Ignoring self-overlap rows for sessions=%s", sorted(self_pairs))
    if duplicates:
        logger.warning("Duplicate voter overlap rows collapsed pairs=%s", sorted(duplicates))

    graph = ConflictGraph(
        {key: weight for key, weight in weights.items() if weight > 0},
        conflict_threshold=conflict_threshold,
    )
    logger.debug(
        "Conflict graph built edges=%s hard_threshold=%s",
        len(graph),
        conflict_threshold,
    )
    return ConflictGraphBuild(
        graph=graph,
        duplicate_pairs=sorted(duplicates),
        self_pairs=sorted(self_pairs),
    )
