import random

import pytest

from app.schemas.scheduling import ScheduleResult, SchedulerConfig
from app.services.scheduling.generator import ScheduleGenerator, generate


def _assert_hard_constraints(bundle, result: ScheduleResult):
    sessions = {row.id: row for row in bundle.sessions}
    venues = {row.id: row for row in bundle.venues}
    slots = {row.id: row for row in bundle.time_slots}

    pairs = [(item.venue_id, item.time_slot_id) for item in result.assignments]
    assert len(pairs) == len(set(pairs))

    placed = {item.session_id: item for item in result.assignments}
    for session in sessions.values():
        if session.is_locked and session.is_schedulable:
            assert (placed[session.id].venue_id, placed[session.id].time_slot_id) == (
                session.venue_id,
                session.time_slot_id,
            )
    for item in result.assignments:
        session = sessions[item.session_id]
        slot = slots[item.time_slot_id]
        assert session.duration <= (slot.end_time - slot.start_time).total_seconds() / 60
        if not session.is_locked:
            assert set(session.technical_requirements) <= set(venues[item.venue_id].features)


@pytest.fixture()
def festival(make_input, session_row, venue_row, slot_row, overlap_row):
    rng = random.Random(11)
    sessions = [
        session_row(
            f"s{i:02d}",
            duration=rng.choice([30, 45, 60, 60, 90]),
            votes=rng.randint(0, 40),
            voters=rng.randint(0, 120),
            requirements=rng.choice([[], [], ["projector"], ["mic"], ["projector", "mic"], ["stage"]]),
        )
        for i in range(1, 19)
    ]
    sessions.append(session_row("keynote", duration=60, locked=True, venue_id="hall", time_slot_id="t1", voters=180))
    sessions.append(session_row("draft", status="pending"))
    overlaps = []
    ids = [row["id"] for row in sessions]
    for _ in range(30):
        a, b = rng.sample(ids, 2)
        overlaps.append(overlap_row(a, b, rng.choice([5, 15, 30, 45, 55, 70, 90])))
    return make_input(
        sessions=sessions,
        venues=[
            venue_row("hall", capacity=200, features=["projector", "mic", "stage"]),
            venue_row("room-a", capacity=40, features=["projector"]),
            venue_row("room-b", capacity=25, features=["mic"]),
        ],
        slots=[
            slot_row("t1", hour=0),
            slot_row("t2", hour=1),
            slot_row("t3", hour=2, minutes=90),
            slot_row("t4", hour=4, minutes=30),
            slot_row("t5", hour=5, available=False),
        ],
        overlaps=overlaps,
    )


def test_capacity_shortfall_is_reported_without_warnings(make_input, session_row, venue_row, slot_row):
    bundle = make_input(
        sessions=[session_row("s1"), session_row("s2"), session_row("s3")],
        venues=[venue_row("v1", capacity=100)],
        slots=[slot_row("t1"), slot_row("t2", hour=1)],
    )

    result = generate(bundle, SchedulerConfig())

    assert result.success
    assert len(result.assignments) == 2
    assert len(result.unassigned_sessions) == 1
    assert result.warnings == []
    assert result.error is None


def test_hard_conflict_pair_is_split_across_slots(make_input, session_row, venue_row, slot_row, overlap_row):
    bundle = make_input(
        sessions=[session_row("s1"), session_row("s2")],
        venues=[venue_row("v1"), venue_row("v2")],
        slots=[slot_row("t1"), slot_row("t2", hour=1)],
        overlaps=[overlap_row("s1", "s2", 90)],
    )

    result = generate(bundle, SchedulerConfig(conflict_threshold=50))

    placed = {item.session_id: item.time_slot_id for item in result.assignments}
    assert set(placed) == {"s1", "s2"}
    assert placed["s1"] != placed["s2"]
    assert result.metrics.hard_conflict_pairs == 0


def test_hard_conflict_pair_with_one_slot_leaves_one_unassigned(
    make_input, session_row, venue_row, slot_row, overlap_row
):
    bundle = make_input(
        sessions=[session_row("s1"), session_row("s2")],
        venues=[venue_row("v1"), venue_row("v2")],
        slots=[slot_row("t1")],
        overlaps=[overlap_row("s1", "s2", 90)],
    )

    result = generate(bundle, SchedulerConfig(conflict_threshold=50))

    assert result.success
    assert len(result.assignments) == 1
    assert len(result.unassigned_sessions) == 1


def test_raising_the_threshold_allows_concurrent_sessions(
    make_input, session_row, venue_row, slot_row, overlap_row
):
    bundle = make_input(
        sessions=[session_row("s1"), session_row("s2")],
        venues=[venue_row("v1"), venue_row("v2")],
        slots=[slot_row("t1")],
        overlaps=[overlap_row("s1", "s2", 90)],
    )

    result = generate(bundle, SchedulerConfig(conflict_threshold=95))

    assert len(result.assignments) == 2
    assert result.metrics.soft_conflict_pairs == 1


def test_locked_session_keeps_its_room(make_input, session_row, venue_row, slot_row):
    bundle = make_input(
        sessions=[
            session_row("locked", locked=True, venue_id="A", time_slot_id="slot1"),
            session_row("new", votes=50),
        ],
        venues=[venue_row("A")],
        slots=[slot_row("slot1")],
    )

    result = generate(bundle, SchedulerConfig())

    assert result.success
    assert result.unassigned_sessions == ["new"]
    assert [(item.session_id, item.venue_id, item.time_slot_id) for item in result.assignments] == [
        ("locked", "A", "slot1")
    ]
    assert result.metrics.locked_sessions == 1


def test_hard_constraints_hold_on_a_busy_event(festival, scheduler_config):
    result = generate(festival, scheduler_config)

    assert result.success
    _assert_hard_constraints(festival, result)
    assert "draft" not in result.unassigned_sessions
    assert result.metrics.total_sessions == 19


def test_every_session_is_accounted_for(festival, scheduler_config):
    result = generate(festival, scheduler_config)

    assigned = {item.session_id for item in result.assignments}
    assert assigned.isdisjoint(result.unassigned_sessions)
    assert len(result.assignments) + len(result.unassigned_sessions) == result.metrics.total_sessions
    assert result.metrics.assigned_sessions == len(result.assignments)
    assert result.metrics.eligible_sessions == result.metrics.total_sessions - result.metrics.unassignable_sessions

    flagged = {
        session_id
        for warning in result.warnings
        if warning.severity == "high" and warning.type in {"duration", "feature", "unassigned"}
        for session_id in warning.session_ids
    }
    assert len(flagged) == result.metrics.unassignable_sessions
    assert flagged <= set(result.unassigned_sessions)


def test_identical_input_gives_identical_output(festival, scheduler_config):
    first = generate(festival, scheduler_config).model_dump(exclude={"execution_time_ms"})
    second = generate(festival, scheduler_config).model_dump(exclude={"execution_time_ms"})

    assert first == second


def test_optimizer_never_returns_worse_than_greedy(festival, scheduler_config):
    result = generate(festival, scheduler_config)

    assert result.quality_score >= result.metrics.initial_quality_score
    assert 0 <= result.quality_score <= 100
    assert result.metrics.stopped_reason in {"target_reached", "stagnation", "max_iterations"}


def test_assignments_follow_slot_then_venue_order(festival, scheduler_config):
    result = generate(festival, scheduler_config)

    slot_order = {"t1": 0, "t2": 1, "t3": 2, "t4": 3, "t5": 4}
    venue_order = {"hall": 0, "room-a": 1, "room-b": 2}
    keys = [(slot_order[item.time_slot_id], venue_order[item.venue_id]) for item in result.assignments]
    assert keys == sorted(keys)


def test_dangling_reference_fails_the_whole_call(make_input, session_row, venue_row, slot_row):
    bundle = make_input(
        sessions=[session_row("s1"), session_row("s2", time_slot_id="deleted-slot")],
        venues=[venue_row("v1")],
        slots=[slot_row("t1")],
    )

    result = generate(bundle, SchedulerConfig())

    assert result.success is False
    assert result.assignments == []
    assert "deleted-slot" in result.error
    assert result.unassigned_sessions == ["s1", "s2"]


def test_malformed_rows_fail_without_raising(session_row, venue_row, slot_row):
    payload = {
        "sessions": [session_row("s1")],
        "venues": [venue_row("v1", capacity=0)],
        "time_slots": [slot_row("t1")],
    }

    result = generate(payload, {"maxIterations": 10})

    assert result.success is False
    assert result.error.startswith("Invalid schedule request")
    assert "capacity" in result.error


def test_invalid_config_mapping_fails_without_raising(make_input, session_row, venue_row, slot_row):
    bundle = make_input(sessions=[session_row("s1")], venues=[venue_row("v1")], slots=[slot_row("t1")])

    result = generate(bundle, {"conflictThreshold": 150})

    assert result.success is False
    assert "less than or equal to 100" in result.error


def test_accepts_camel_case_payload():
    payload = {
        "eventId": "evt-9",
        "sessions": [
            {"id": "s1", "duration": 45, "totalVotes": 3, "totalVoters": 20, "technicalRequirements": ["mic"]},
        ],
        "venues": [{"id": "v1", "capacity": 30, "features": ["mic"]}],
        "timeSlots": [
            {"id": "t1", "startTime": "2026-03-14T09:00:00Z", "endTime": "2026-03-14T10:00:00Z", "isAvailable": True},
        ],
        "voterOverlap": [],
    }

    result = generate(payload, SchedulerConfig())
    dumped = result.model_dump(mode="json", by_alias=True)

    assert dumped["assignments"] == [{"sessionId": "s1", "venueId": "v1", "timeSlotId": "t1"}]
    assert dumped["metrics"]["assignedSessions"] == 1
    [warning] = dumped["warnings"]
    assert warning["type"] == "duration"
    assert warning["severity"] == "low"
    assert warning["sessionIds"] == ["s1"]


def test_short_session_lands_in_the_matching_slot(make_input, session_row, venue_row, slot_row):
    bundle = make_input(
        sessions=[session_row("lightning", duration=30)],
        venues=[venue_row("v1")],
        slots=[slot_row("long", hour=0, minutes=90), slot_row("exact", hour=2, minutes=30)],
    )

    result = generate(bundle, SchedulerConfig())

    [assignment] = result.assignments
    assert assignment.time_slot_id == "exact"
    assert result.warnings == []
    assert result.metrics.underutilized_assignments == 0


def test_session_shorter_than_its_only_slot_is_flagged(make_input, session_row, venue_row, slot_row):
    bundle = make_input(
        sessions=[session_row("workshop", duration=45)],
        venues=[venue_row("v1")],
        slots=[slot_row("t1", minutes=60)],
    )

    result = generate(bundle, SchedulerConfig())

    assert [item.session_id for item in result.assignments] == ["workshop"]
    [warning] = result.warnings
    assert warning.type == "duration"
    assert warning.severity == "low"
    assert warning.session_ids == ["workshop"]
    assert result.metrics.underutilized_assignments == 1


def test_structurally_unassignable_session_gets_a_warning(make_input, session_row, venue_row, slot_row):
    bundle = make_input(
        sessions=[session_row("s1"), session_row("bigdemo", requirements=["vr-rig"])],
        venues=[venue_row("v1")],
        slots=[slot_row("t1"), slot_row("t2", hour=1)],
    )

    result = generate(bundle, SchedulerConfig())

    assert result.unassigned_sessions == ["bigdemo"]
    [warning] = result.warnings
    assert warning.type == "feature"
    assert warning.severity == "high"
    assert warning.session_ids == ["bigdemo"]
    assert result.metrics.unassignable_sessions == 1


def test_oversubscribed_and_duplicate_overlap_warnings(make_input, session_row, venue_row, slot_row, overlap_row):
    bundle = make_input(
        sessions=[session_row("s1", voters=80), session_row("s2")],
        venues=[venue_row("v1", capacity=50)],
        slots=[slot_row("t1"), slot_row("t2", hour=1)],
        overlaps=[overlap_row("s1", "s2", 10), overlap_row("s2", "s1", 20)],
    )

    result = generate(bundle, SchedulerConfig())

    types = {(warning.type, warning.severity) for warning in result.warnings}
    assert ("capacity", "medium") in types
    assert ("overlap", "low") in types
    assert result.metrics.oversubscribed_sessions == 1


def test_locked_sessions_with_a_hard_conflict_are_flagged(make_input, session_row, venue_row, slot_row, overlap_row):
    bundle = make_input(
        sessions=[
            session_row("l1", locked=True, venue_id="v1", time_slot_id="t1"),
            session_row("l2", locked=True, venue_id="v2", time_slot_id="t1"),
        ],
        venues=[venue_row("v1"), venue_row("v2")],
        slots=[slot_row("t1")],
        overlaps=[overlap_row("l1", "l2", 85)],
    )

    result = generate(bundle, SchedulerConfig())

    assert len(result.assignments) == 2
    [warning] = result.warnings
    assert warning.type == "conflict"
    assert warning.severity == "high"
    assert warning.session_ids == ["l1", "l2"]
    assert result.metrics.stopped_reason == "no_movable_sessions"


def test_stop_requested_before_run_returns_greedy_schedule(make_input, session_row, venue_row, slot_row):
    bundle = make_input(
        sessions=[session_row("s1"), session_row("s2"), session_row("s3")],
        venues=[venue_row("v1")],
        slots=[slot_row("t1"), slot_row("t2", hour=1)],
    )
    generator = ScheduleGenerator(bundle, SchedulerConfig())

    generator.request_stop()
    result = generator.generate()

    assert result.success
    assert result.metrics.stopped_reason == "stop_requested"
    assert result.metrics.iterations == 0
    assert result.quality_score == result.metrics.initial_quality_score
    assert len(result.assignments) == 2


def test_empty_event_is_a_successful_no_op(make_input):
    result = generate(make_input(), SchedulerConfig())

    assert result.success
    assert result.assignments == []
    assert result.unassigned_sessions == []
    assert result.metrics.stopped_reason in {"target_reached", "no_movable_sessions"}
