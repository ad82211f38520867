from __future__ import annotations

import logging
from collections import Counter
from typing import Iterable

from app.core.exceptions import ScheduleInputError
from app.schemas.scheduling import ScheduleInput, TimeSlotInput
from app.services.scheduling.models import NormalizedInput, OverlapEdge, Session, TimeSlot, Venue

logger = logging.getLogger(__name__)


def _reject_duplicate_ids(kind: str, ids: Iterable[str]) -> None:
    duplicates = sorted(item for item, count in Counter(ids).items() if count > 1)
    if duplicates:
        raise ScheduleInputError(
            message=f"Duplicate {kind} ids in input: {', '.join(duplicates)}",
            details={"kind": kind, "ids": duplicates},
        )


def _slot_minutes(slot: TimeSlotInput) -> float:
    try:
        delta = slot.end_time - slot.start_time
    except TypeError as exc:
        raise ScheduleInputError(
            message=f"Time slot {slot.id} mixes timezone-aware and naive timestamps",
            details={"time_slot_id": slot.id},
        ) from exc
    minutes = delta.total_seconds() / 60
    if minutes <= 0:
        raise ScheduleInputError(
            message=f"Time slot {slot.id} has non-positive duration ({minutes:g} minutes)",
            details={"time_slot_id": slot.id, "duration_minutes": minutes},
        )
    return minutes


def _normalize_venues(schedule_input: ScheduleInput) -> tuple[Venue, ...]:
    _reject_duplicate_ids("venue", (venue.id for venue in schedule_input.venues))
    return tuple(
        Venue(
            id=venue.id,
            name=venue.name,
            capacity=venue.capacity,
            features=frozenset(venue.features),
            index=index,
        )
        for index, venue in enumerate(schedule_input.venues)
    )


def _normalize_time_slots(schedule_input: ScheduleInput) -> tuple[TimeSlot, ...]:
    _reject_duplicate_ids("time slot", (slot.id for slot in schedule_input.time_slots))
    measured = [(slot, _slot_minutes(slot)) for slot in schedule_input.time_slots]
    try:
        measured.sort(key=lambda item: (item[0].start_time, item[0].id))
    except TypeError as exc:
        raise ScheduleInputError(
            message="Time slots mix timezone-aware and naive timestamps",
        ) from exc
    return tuple(
        TimeSlot(
            id=slot.id,
            start=slot.start_time,
            end=slot.end_time,
            minutes=minutes,
            is_available=slot.is_available,
            label=slot.label,
            order=order,
        )
        for order, (slot, minutes) in enumerate(measured)
    )


def _normalize_sessions(
    schedule_input: ScheduleInput,
    venue_by_id: dict[str, Venue],
    slot_by_id: dict[str, TimeSlot],
) -> tuple[Session, ...]:
    _reject_duplicate_ids("session", (session.id for session in schedule_input.sessions))

    skipped = [session.id for session in schedule_input.sessions if not session.is_schedulable]
    if skipped:
        logger.info("Skipping sessions outside schedulable statuses count=%s ids=%s", len(skipped), skipped)

    sessions: list[Session] = []
    locked_by_placement: dict[tuple[str, str], str] = {}
    for row in sorted(schedule_input.sessions, key=lambda item: item.id):
        if not row.is_schedulable:
            continue
        if row.venue_id is not None and row.venue_id not in venue_by_id:
            raise ScheduleInputError(
                message=f"Session {row.id} references unknown venue {row.venue_id}",
                details={"session_id": row.id, "venue_id": row.venue_id},
            )
        if row.time_slot_id is not None and row.time_slot_id not in slot_by_id:
            raise ScheduleInputError(
                message=f"Session {row.id} references unknown time slot {row.time_slot_id}",
                details={"session_id": row.id, "time_slot_id": row.time_slot_id},
            )

        if row.is_locked:
            if row.venue_id is None or row.time_slot_id is None:
                raise ScheduleInputError(
                    message=f"Locked session {row.id} has no venue or time slot assigned",
                    details={"session_id": row.id},
                )
            slot = slot_by_id[row.time_slot_id]
            if row.duration > slot.minutes:
                raise ScheduleInputError(
                    message=(
                        f"Locked session {row.id} lasts {row.duration} minutes but its time slot "
                        f"{slot.id} is only {slot.minutes:g} minutes"
                    ),
                    details={"session_id": row.id, "time_slot_id": slot.id},
                )
            key = (row.venue_id, row.time_slot_id)
            if key in locked_by_placement:
                raise ScheduleInputError(
                    message=(
                        f"Locked sessions {locked_by_placement[key]} and {row.id} share venue "
                        f"{row.venue_id} in time slot {row.time_slot_id}"
                    ),
                    details={"session_ids": [locked_by_placement[key], row.id]},
                )
            locked_by_placement[key] = row.id

        sessions.append(
            Session(
                id=row.id,
                title=row.title,
                duration=row.duration,
                is_locked=row.is_locked,
                venue_id=row.venue_id,
                time_slot_id=row.time_slot_id,
                requirements=frozenset(row.technical_requirements),
                total_votes=row.total_votes,
                total_voters=row.total_voters,
            )
        )
    return tuple(sessions)


def _normalize_overlaps(schedule_input: ScheduleInput, session_ids: set[str]) -> tuple[OverlapEdge, ...]:
    edges: list[OverlapEdge] = []
    unknown = 0
    for row in schedule_input.voter_overlap:
        if row.session_a_id not in session_ids or row.session_b_id not in session_ids:
            unknown += 1
            continue
        edges.append(
            OverlapEdge(
                session_a_id=row.session_a_id,
                session_b_id=row.session_b_id,
                percentage=row.overlap_percentage,
                shared_voters=row.shared_voters,
            )
        )
    if unknown:
        logger.debug("Ignoring voter overlap rows for sessions outside this run count=%s", unknown)
    return tuple(edges)


def normalize_input(schedule_input: ScheduleInput) -> NormalizedInput:
    """Validate cross-record integrity and build the lookup tables later stages rely on.

    Raises ScheduleInputError for stale or dangling data: duplicate ids, references to
    unknown venues or slots, empty time slots, and locked sessions that cannot stand
    where they were locked.
    """
    venues = _normalize_venues(schedule_input)
    time_slots = _normalize_time_slots(schedule_input)
    venue_by_id = {venue.id: venue for venue in venues}
    slot_by_id = {slot.id: slot for slot in time_slots}

    sessions = _normalize_sessions(schedule_input, venue_by_id, slot_by_id)
    session_by_id = {session.id: session for session in sessions}
    overlaps = _normalize_overlaps(schedule_input, set(session_by_id))

    return NormalizedInput(
        event_id=schedule_input.event_id,
        sessions=sessions,
        venues=venues,
        time_slots=time_slots,
        overlaps=overlaps,
        session_by_id=session_by_id,
        venue_by_id=venue_by_id,
        slot_by_id=slot_by_id,
        slot_minutes={slot.id: slot.minutes for slot in time_slots},
    )
