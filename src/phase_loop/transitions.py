"""Closed transition table for the PLAN -> BUILD -> REVIEW cycle.

The table is the only definition of what can happen next. Phase executors
never decide a destination on their own: they name a target and
:func:`resolve_event` maps it onto a row of this table for the current phase.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from .errors import InvalidTransitionError
from .models import Event, EventType, HistoryEntry, Phase, Snapshot, utc_now

logger = logging.getLogger(__name__)

TRANSITIONS: dict[tuple[Phase, EventType], Phase] = {
    (Phase.PLAN, EventType.START_BUILD): Phase.BUILD,
    (Phase.PLAN, EventType.SKIP_TO_REVIEW): Phase.REVIEW,
    (Phase.PLAN, EventType.NOTHING_TO_DO): Phase.END,
    (Phase.BUILD, EventType.IMPLEMENTATION_DONE): Phase.REVIEW,
    (Phase.BUILD, EventType.BLOCKED): Phase.PLAN,
    (Phase.BUILD, EventType.CONTINUE_BUILDING): Phase.BUILD,
    (Phase.REVIEW, EventType.APPROVED): Phase.END,
    (Phase.REVIEW, EventType.NEEDS_FIXES): Phase.BUILD,
    (Phase.REVIEW, EventType.REJECTED): Phase.PLAN,
    (Phase.REVIEW, EventType.NEXT_ITERATION): Phase.PLAN,
    (Phase.REVIEW, EventType.MORE_REVIEW): Phase.REVIEW,
}

ITERATION_EVENTS = frozenset({EventType.NEXT_ITERATION})

# Fields each phase may overwrite on the snapshot before its event is applied.
PHASE_UPDATE_FIELDS: dict[Phase, frozenset[str]] = {
    Phase.PLAN: frozenset({"plan", "build_state", "review_state"}),
    Phase.BUILD: frozenset({"build_state"}),
    Phase.REVIEW: frozenset({"review_state"}),
    Phase.END: frozenset(),
}


def valid_events(phase: Phase) -> list[EventType]:
    return [event_type for (source, event_type) in TRANSITIONS if source == phase]


def can_transition(phase: Phase, event_type: EventType) -> bool:
    return (phase, event_type) in TRANSITIONS


def destination_of(phase: Phase, event_type: EventType) -> Phase:
    """Return the destination for a table row.

    Raises:
        InvalidTransitionError: If ``(phase, event_type)`` is not in the table.
    """
    try:
        return TRANSITIONS[(phase, event_type)]
    except KeyError:
        raise InvalidTransitionError(phase, event_type) from None


def resolve_event(phase: Phase, target: str, *, approved: bool = False) -> EventType | None:
    """Map an agent-supplied target onto an event valid from ``phase``.

    ``target`` is either an event name or a destination phase name. REVIEW -> PLAN
    is ambiguous in the table; an approved review starts the next iteration,
    anything else is a rejection of the approach.

    Returns ``None`` when the target is unknown or unreachable from ``phase``.
    """
    token = target.strip().upper()
    if token in EventType.__members__:
        event_type = EventType[token]
        return event_type if can_transition(phase, event_type) else None
    if token not in Phase.__members__:
        return None

    destination = Phase[token]
    if phase == Phase.REVIEW and destination == Phase.PLAN:
        return EventType.NEXT_ITERATION if approved else EventType.REJECTED
    for (source, event_type), dest in TRANSITIONS.items():
        if source == phase and dest == destination:
            return event_type
    return None


def apply_event(snapshot: Snapshot, event: Event, *, now: datetime | None = None) -> Snapshot:
    """Validate ``event`` against the table and return the resulting snapshot.

    The input snapshot is left untouched, whether or not the event is valid.

    Args:
        snapshot: Current state.
        event: Event to apply.
        now: Timestamp for the history entry; defaults to the current UTC time.

    Returns:
        A new Snapshot with the destination phase and one extra history entry.

    Raises:
        InvalidTransitionError: If the event is not defined for the current phase.
    """
    destination = destination_of(snapshot.phase, event.type)
    stamp = now if now is not None else utc_now()
    entry = HistoryEntry(
        phase=snapshot.phase,
        transition=destination,
        reason=event.reason,
        timestamp=stamp,
        event=event.type,
        fallback=event.fallback,
    )
    iteration = snapshot.iteration + 1 if event.type in ITERATION_EVENTS else snapshot.iteration
    logger.info(
        "Transition %s -> %s via %s (iteration %d): %s",
        snapshot.phase.value,
        destination.value,
        event.type.value,
        iteration,
        event.reason,
    )
    return snapshot.model_copy(
        update={
            "phase": destination,
            "iteration": iteration,
            "history": [*snapshot.history, entry],
        }
    )


def apply_state_updates(snapshot: Snapshot, phase: Phase, updates: dict[str, Any]) -> Snapshot:
    """Merge phase-authorised field updates into a copy of ``snapshot``.

    Raises:
        ValueError: If ``updates`` names a field ``phase`` may not set.
    """
    allowed = PHASE_UPDATE_FIELDS[phase]
    forbidden = sorted(set(updates) - allowed)
    if forbidden:
        raise ValueError(f"Phase {phase.value} may not update snapshot fields: {', '.join(forbidden)}")
    if not updates:
        return snapshot
    return snapshot.model_copy(deep=True, update=updates)
