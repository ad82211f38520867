from datetime import datetime, timedelta

import pytest

from app.schemas.scheduling import ScheduleInput, SchedulerConfig
from app.services.scheduling.candidates import enumerate_candidates
from app.services.scheduling.conflict_graph import build_conflict_graph
from app.services.scheduling.normalizer import normalize_input

EVENT_START = datetime(2026, 3, 14, 9, 0)


def _session_row(
    session_id,
    *,
    duration=60,
    votes=0,
    voters=0,
    requirements=None,
    locked=False,
    venue_id=None,
    time_slot_id=None,
    status="approved",
    title=None,
):
    # Mirrors the row shape the loader hands over: snake_case with nested pre-vote stats.
    return {
        "id": session_id,
        "title": title,
        "duration": duration,
        "status": status,
        "is_locked": locked,
        "venue_id": venue_id,
        "time_slot_id": time_slot_id,
        "technical_requirements": requirements,
        "pre_vote_stats": {"total_votes": votes, "total_voters": voters},
    }


def _venue_row(venue_id, *, capacity=100, features=None, name=None):
    return {"id": venue_id, "name": name, "capacity": capacity, "features": features}


def _slot_row(slot_id, *, hour=0, minutes=60, available=True, label=None):
    start = EVENT_START + timedelta(hours=hour)
    return {
        "id": slot_id,
        "start_time": start.isoformat(),
        "end_time": (start + timedelta(minutes=minutes)).isoformat(),
        "is_available": available,
        "label": label,
    }


def _overlap_row(session_a_id, session_b_id, percentage, shared_voters=0):
    return {
        "session_a_id": session_a_id,
        "session_b_id": session_b_id,
        "overlap_percentage": percentage,
        "shared_voters": shared_voters,
    }


@pytest.fixture()
def session_row():
    return _session_row


@pytest.fixture()
def venue_row():
    return _venue_row


@pytest.fixture()
def slot_row():
    return _slot_row


@pytest.fixture()
def overlap_row():
    return _overlap_row


@pytest.fixture()
def make_input():
    def build(sessions=(), venues=(), slots=(), overlaps=(), event_id="event-1"):
        return ScheduleInput.model_validate(
            {
                "event_id": event_id,
                "sessions": list(sessions),
                "venues": list(venues),
                "time_slots": list(slots),
                "voter_overlap": list(overlaps),
            }
        )

    return build


@pytest.fixture()
def prepare(make_input):
    """Run the pre-placement stages and hand back (normalized, graph, candidates)."""

    def build(sessions=(), venues=(), slots=(), overlaps=(), conflict_threshold=50.0):
        normalized = normalize_input(make_input(sessions, venues, slots, overlaps))
        graph = build_conflict_graph(normalized.overlaps, conflict_threshold).graph
        return normalized, graph, enumerate_candidates(normalized)

    return build


@pytest.fixture()
def scheduler_config():
    return SchedulerConfig(max_iterations=200, stagnation_limit=40)
