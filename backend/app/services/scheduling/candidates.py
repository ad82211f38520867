from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from app.services.scheduling.models import NormalizedInput, Placement, Session

UnassignableReason = Literal["duration", "feature", "unassigned"]


@dataclass(frozen=True)
class UnassignableSession:
    session_id: str
    reason: UnassignableReason
    message: str


@dataclass
class CandidateIndex:
    """Feasible placements per unlocked session, ordered by venue index then slot start."""

    by_session: dict[str, tuple[Placement, ...]] = field(default_factory=dict)
    unassignable: list[UnassignableSession] = field(default_factory=list)
    _lookup: dict[str, frozenset[Placement]] = field(default_factory=dict, repr=False)

    def candidates_for(self, session_id: str) -> tuple[Placement, ...]:
        return self.by_session.get(session_id, ())

    def is_candidate(self, session_id: str, placement: Placement) -> bool:
        return placement in self._lookup.get(session_id, frozenset())

    @property
    def session_ids(self) -> list[str]:
        return list(self.by_session)

    @property
    def unassignable_ids(self) -> list[str]:
        return [item.session_id for item in self.unassignable]


def _unassignable(
    session: Session,
    fits_time: bool,
    fits_room: bool,
    any_slot: bool,
    any_venue: bool,
) -> UnassignableSession:
    if not any_slot:
        return UnassignableSession(
            session_id=session.id,
            reason="duration",
            message=f"Session {session.display_name} cannot be placed: no time slot is available",
        )
    if not any_venue:
        return UnassignableSession(
            session_id=session.id,
            reason="unassigned",
            message=f"Session {session.display_name} cannot be placed: no venue is available",
        )
    if not fits_time and not fits_room:
        return UnassignableSession(
            session_id=session.id,
            reason="unassigned",
            message=(
                f"Session {session.display_name} cannot be placed: no available time slot is "
                f"{session.duration} minutes long and no venue offers "
                f"{', '.join(sorted(session.requirements))}"
            ),
        )
    if not fits_time:
        return UnassignableSession(
            session_id=session.id,
            reason="duration",
            message=(
                f"Session {session.display_name} needs {session.duration} minutes "
                "but every available time slot is shorter"
            ),
        )
    return UnassignableSession(
        session_id=session.id,
        reason="feature",
        message=(
            f"Session {session.display_name} requires "
            f"{', '.join(sorted(session.requirements))} and no venue offers all of them"
        ),
    )


def enumerate_candidates(normalized: NormalizedInput) -> CandidateIndex:
    available_slots = [slot for slot in normalized.time_slots if slot.is_available]
    index = CandidateIndex()

    for session in normalized.unlocked_sessions:
        fitting_slots = [slot for slot in available_slots if slot.minutes >= session.duration]
        fitting_venues = [venue for venue in normalized.venues if session.requirements <= venue.features]
        placements = tuple(
            Placement(venue_id=venue.id, time_slot_id=slot.id)
            for venue in fitting_venues
            for slot in fitting_slots
        )
        if not placements:
            index.unassignable.append(
                _unassignable(
                    session,
                    fits_time=bool(fitting_slots),
                    fits_room=bool(fitting_venues),
                    any_slot=bool(available_slots),
                    any_venue=bool(normalized.venues),
                )
            )
            continue
        index.by_session[session.id] = placements
        index._lookup[session.id] = frozenset(placements)

    return index
