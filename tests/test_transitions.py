from datetime import UTC, datetime

import pytest

from phase_loop.errors import InvalidTransitionError
from phase_loop.models import BuildState, Event, EventType, Phase, Plan, ReviewState, Snapshot
from phase_loop.transitions import (
    TRANSITIONS,
    apply_event,
    apply_state_updates,
    can_transition,
    destination_of,
    resolve_event,
    valid_events,
)

EXPECTED_TABLE = {
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


def _event(event_type: EventType, reason: str = "because") -> Event:
    return Event(type=event_type, reason=reason)


def test_transition_table_is_exactly_the_documented_one() -> None:
    assert TRANSITIONS == EXPECTED_TABLE


@pytest.mark.parametrize("phase", list(Phase))
@pytest.mark.parametrize("event_type", list(EventType))
def test_can_transition_matches_table(phase: Phase, event_type: EventType) -> None:
    assert can_transition(phase, event_type) == ((phase, event_type) in EXPECTED_TABLE)


@pytest.mark.parametrize("event_type", list(EventType))
def test_end_is_terminal(event_type: EventType) -> None:
    snapshot = Snapshot(phase=Phase.END)
    with pytest.raises(InvalidTransitionError):
        apply_event(snapshot, _event(event_type))
    assert valid_events(Phase.END) == []


def test_valid_events_per_phase() -> None:
    assert set(valid_events(Phase.PLAN)) == {EventType.START_BUILD, EventType.SKIP_TO_REVIEW, EventType.NOTHING_TO_DO}
    assert set(valid_events(Phase.BUILD)) == {
        EventType.IMPLEMENTATION_DONE,
        EventType.BLOCKED,
        EventType.CONTINUE_BUILDING,
    }
    assert len(valid_events(Phase.REVIEW)) == 5


def test_invalid_transition_error_names_event_and_phase() -> None:
    with pytest.raises(InvalidTransitionError) as excinfo:
        destination_of(Phase.PLAN, EventType.APPROVED)
    assert str(excinfo.value) == "Invalid transition: event APPROVED not allowed from PLAN"
    assert excinfo.value.phase == Phase.PLAN
    assert excinfo.value.event_type == EventType.APPROVED


def test_invalid_transition_leaves_snapshot_untouched() -> None:
    snapshot = Snapshot(phase=Phase.BUILD)
    before = snapshot.model_dump()
    with pytest.raises(InvalidTransitionError):
        apply_event(snapshot, _event(EventType.START_BUILD))
    assert snapshot.model_dump() == before


def test_apply_event_appends_history_without_mutating_input() -> None:
    stamp = datetime(2024, 1, 1, tzinfo=UTC)
    snapshot = Snapshot()
    advanced = apply_event(snapshot, _event(EventType.START_BUILD, "Plan is ready"), now=stamp)

    assert snapshot.phase == Phase.PLAN
    assert snapshot.history == []
    assert advanced.phase == Phase.BUILD
    assert advanced.iteration == 1
    assert len(advanced.history) == 1
    entry = advanced.history[0]
    assert (entry.phase, entry.transition, entry.reason, entry.timestamp) == (
        Phase.PLAN,
        Phase.BUILD,
        "Plan is ready",
        stamp,
    )
    assert entry.event == EventType.START_BUILD
    assert entry.fallback is False


def test_next_iteration_is_the_only_event_that_increments_iteration() -> None:
    for (phase, event_type), _destination in EXPECTED_TABLE.items():
        advanced = apply_event(Snapshot(phase=phase, iteration=3), _event(event_type))
        expected = 4 if event_type == EventType.NEXT_ITERATION else 3
        assert advanced.iteration == expected, event_type


@pytest.mark.parametrize(
    ("phase", "event_type"),
    [(Phase.BUILD, EventType.CONTINUE_BUILDING), (Phase.REVIEW, EventType.MORE_REVIEW)],
)
def test_self_transitions_record_history(phase: Phase, event_type: EventType) -> None:
    advanced = apply_event(Snapshot(phase=phase), _event(event_type))
    assert advanced.phase == phase
    assert advanced.history[-1].phase == phase
    assert advanced.history[-1].transition == phase


def test_happy_path_ends_after_one_iteration() -> None:
    snapshot = Snapshot()
    for event_type in (EventType.START_BUILD, EventType.IMPLEMENTATION_DONE, EventType.APPROVED):
        snapshot = apply_event(snapshot, _event(event_type))
    assert snapshot.phase == Phase.END
    assert snapshot.iteration == 1
    assert [(entry.phase, entry.transition) for entry in snapshot.history] == [
        (Phase.PLAN, Phase.BUILD),
        (Phase.BUILD, Phase.REVIEW),
        (Phase.REVIEW, Phase.END),
    ]


def test_fix_loop_then_next_iteration() -> None:
    snapshot = Snapshot()
    for event_type in (
        EventType.START_BUILD,
        EventType.IMPLEMENTATION_DONE,
        EventType.NEEDS_FIXES,
        EventType.IMPLEMENTATION_DONE,
        EventType.NEXT_ITERATION,
    ):
        snapshot = apply_event(snapshot, _event(event_type))
    assert snapshot.phase == Phase.PLAN
    assert snapshot.iteration == 2
    assert len(snapshot.history) == 5


def test_history_entries_preserve_order_and_earlier_entries() -> None:
    first = apply_event(Snapshot(), _event(EventType.START_BUILD, "one"))
    second = apply_event(first, _event(EventType.BLOCKED, "two"))
    assert second.history[0] == first.history[0]
    assert [entry.reason for entry in second.history] == ["one", "two"]
    assert len(first.history) == 1


def test_fallback_flag_is_recorded_in_history() -> None:
    event = Event(type=EventType.CONTINUE_BUILDING, reason="defaulted", fallback=True)
    advanced = apply_event(Snapshot(phase=Phase.BUILD), event)
    assert advanced.history[-1].fallback is True


def test_event_reason_must_not_be_blank() -> None:
    with pytest.raises(ValueError):
        Event(type=EventType.START_BUILD, reason="   ")


@pytest.mark.parametrize(
    ("phase", "target", "approved", "expected"),
    [
        (Phase.PLAN, "BUILD", False, EventType.START_BUILD),
        (Phase.PLAN, "review", False, EventType.SKIP_TO_REVIEW),
        (Phase.PLAN, "END", False, EventType.NOTHING_TO_DO),
        (Phase.BUILD, "REVIEW", False, EventType.IMPLEMENTATION_DONE),
        (Phase.BUILD, "PLAN", False, EventType.BLOCKED),
        (Phase.BUILD, "BUILD", False, EventType.CONTINUE_BUILDING),
        (Phase.REVIEW, "END", False, EventType.APPROVED),
        (Phase.REVIEW, "BUILD", False, EventType.NEEDS_FIXES),
        (Phase.REVIEW, "REVIEW", False, EventType.MORE_REVIEW),
        (Phase.REVIEW, "PLAN", False, EventType.REJECTED),
        (Phase.REVIEW, "PLAN", True, EventType.NEXT_ITERATION),
        (Phase.REVIEW, "NEXT_ITERATION", False, EventType.NEXT_ITERATION),
        (Phase.BUILD, "blocked", False, EventType.BLOCKED),
    ],
)
def test_resolve_event(phase: Phase, target: str, approved: bool, expected: EventType) -> None:
    assert resolve_event(phase, target, approved=approved) == expected


@pytest.mark.parametrize(
    ("phase", "target"),
    [
        (Phase.PLAN, "PLAN"),
        (Phase.BUILD, "END"),
        (Phase.PLAN, "APPROVED"),
        (Phase.REVIEW, "SHIP_IT"),
        (Phase.END, "PLAN"),
    ],
)
def test_resolve_event_rejects_unreachable_targets(phase: Phase, target: str) -> None:
    assert resolve_event(phase, target) is None


def test_apply_state_updates_plan_phase_replaces_context() -> None:
    snapshot = Snapshot(
        build_state=BuildState(steps_completed=["old step"]),
        review_state=ReviewState(last_feedback="old feedback"),
    )
    plan = Plan(task="Add login", steps=["write form"])
    updated = apply_state_updates(
        snapshot,
        Phase.PLAN,
        {"plan": plan, "build_state": BuildState(), "review_state": ReviewState()},
    )
    assert updated.plan == plan
    assert updated.build_state.steps_completed == []
    assert updated.review_state.last_feedback is None
    assert snapshot.build_state.steps_completed == ["old step"]


def test_apply_state_updates_rejects_fields_outside_the_phase() -> None:
    with pytest.raises(ValueError, match="plan"):
        apply_state_updates(Snapshot(phase=Phase.BUILD), Phase.BUILD, {"plan": Plan(task="x")})
    with pytest.raises(ValueError, match="iteration"):
        apply_state_updates(Snapshot(phase=Phase.REVIEW), Phase.REVIEW, {"iteration": 7})


def test_apply_state_updates_with_no_updates_is_identity() -> None:
    snapshot = Snapshot(phase=Phase.BUILD)
    assert apply_state_updates(snapshot, Phase.BUILD, {}) is snapshot
