from importlib.metadata import version

from .agent_runtime import (
    AgentEvent,
    AgentEventKind,
    AgentOptions,
    AgentRunner,
    AgentTranscript,
    ClaudeCodeRunner,
    DeepAgentRunner,
    build_runner,
    collect_agent_output,
)
from .errors import AgentInvocationError, InvalidTransitionError, PersistenceError
from .loops import DriverLoop, LoopResult, LoopStatus
from .models import (
    BuildReport,
    BuildState,
    Event,
    EventType,
    HistoryEntry,
    Phase,
    PhaseResult,
    Plan,
    ReviewReport,
    ReviewState,
    Snapshot,
    TransitionDirective,
)
from .parsing import parse_build_report, parse_plan, parse_review_report, parse_transition
from .phases import BuildPhase, PhaseExecutor, PlanPhase, ReviewPhase, executor_for
from .settings import RuntimeSettings
from .state_store import SnapshotStore, default_snapshot
from .transitions import TRANSITIONS, apply_event, apply_state_updates, can_transition, resolve_event, valid_events
from .vcs import GitContext, VcsContext


def get_version() -> str:
    try:
        return version("phase-loop")
    except Exception:
        return "0.0.0"


__all__ = [
    "AgentEvent",
    "AgentEventKind",
    "AgentInvocationError",
    "AgentOptions",
    "AgentRunner",
    "AgentTranscript",
    "BuildPhase",
    "BuildReport",
    "BuildState",
    "ClaudeCodeRunner",
    "DeepAgentRunner",
    "DriverLoop",
    "Event",
    "EventType",
    "GitContext",
    "HistoryEntry",
    "InvalidTransitionError",
    "LoopResult",
    "LoopStatus",
    "PersistenceError",
    "Phase",
    "PhaseExecutor",
    "PhaseResult",
    "Plan",
    "PlanPhase",
    "ReviewPhase",
    "ReviewReport",
    "ReviewState",
    "RuntimeSettings",
    "Snapshot",
    "SnapshotStore",
    "TRANSITIONS",
    "TransitionDirective",
    "VcsContext",
    "apply_event",
    "apply_state_updates",
    "build_runner",
    "can_transition",
    "collect_agent_output",
    "default_snapshot",
    "executor_for",
    "parse_build_report",
    "parse_plan",
    "parse_review_report",
    "parse_transition",
    "resolve_event",
    "valid_events",
]
