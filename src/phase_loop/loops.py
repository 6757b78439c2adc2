from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, TypedDict

from langgraph.graph import END, START, StateGraph

from .agent_runtime import AgentRunner
from .errors import AgentInvocationError
from .models import Phase, PhaseResult, Snapshot
from .phases import PhaseExecutor, executor_for
from .settings import RuntimeSettings
from .state_store import SnapshotStore
from .transitions import apply_event, apply_state_updates
from .vcs import VcsContext

logger = logging.getLogger(__name__)

_PHASE_NODES = {
    Phase.PLAN: "plan",
    Phase.BUILD: "build",
    Phase.REVIEW: "review",
}


class LoopStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    BUDGET_EXHAUSTED = "budget_exhausted"


class DriverState(TypedDict, total=False):
    phase: str
    attempts: int
    failures: int
    status: str
    last_error: str | None
    pending: PhaseResult | None


@dataclass
class LoopResult:
    status: LoopStatus
    snapshot: Snapshot
    attempts: int
    failures: int
    last_error: str | None = None

    @property
    def completed(self) -> bool:
        return self.status == LoopStatus.COMPLETED


class DriverLoop:
    """Driver loop as a LangGraph StateGraph dispatch cycle.

    load -> dispatch -> {plan | build | review} -> transition -> dispatch -> ... -> END

    The snapshot file is the single source of truth: ``dispatch`` re-reads it
    on every pass and ``transition`` writes it before the next phase starts.
    Each phase attempt, successful or not, counts against ``max_retries``.
    ``InvalidTransitionError`` and ``PersistenceError`` are never caught here.
    """

    def __init__(
        self,
        *,
        store: SnapshotStore,
        runner: AgentRunner,
        vcs: VcsContext,
        settings: RuntimeSettings | None = None,
        on_text: Callable[[str], None] | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.store = store
        self.vcs = vcs
        self.executors: dict[Phase, PhaseExecutor] = {
            phase: executor_for(phase, runner=runner, vcs=vcs, settings=self.settings, on_text=on_text)
            for phase in _PHASE_NODES
        }
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(DriverState)
        graph.add_node("load", self._load_node)
        graph.add_node("dispatch", self._dispatch_node)
        for phase, node in _PHASE_NODES.items():
            graph.add_node(node, self._phase_node(phase))
        graph.add_node("transition", self._transition_node)

        graph.add_edge(START, "load")
        graph.add_edge("load", "dispatch")
        graph.add_conditional_edges(
            "dispatch",
            self._dispatch_route,
            {
                "plan": "plan",
                "build": "build",
                "review": "review",
                "end": END,
            },
        )
        for node in _PHASE_NODES.values():
            graph.add_conditional_edges(
                node,
                self._phase_route,
                {
                    "transition": "transition",
                    "dispatch": "dispatch",
                },
            )
        graph.add_edge("transition", "dispatch")
        return graph

    def _load_node(self, _state: DriverState) -> dict[str, Any]:
        snapshot = self.store.read()
        start_phase = self.settings.start_phase
        if start_phase and snapshot.phase.value != start_phase:
            logger.warning(
                "Overriding persisted phase %s with start phase %s",
                snapshot.phase.value,
                start_phase,
            )
            snapshot = self.store.write(snapshot.model_copy(update={"phase": Phase(start_phase)}))
        logger.info(
            "Loaded snapshot from %s: phase=%s iteration=%d transitions=%d",
            self.store.path,
            snapshot.phase.value,
            snapshot.iteration,
            len(snapshot.history),
        )
        return {"phase": snapshot.phase.value}

    def _dispatch_node(self, state: DriverState) -> dict[str, Any]:
        snapshot = self.store.read()
        if snapshot.phase == Phase.END:
            return {"phase": snapshot.phase.value, "status": LoopStatus.COMPLETED.value, "pending": None}
        attempts = int(state.get("attempts", 0))
        if attempts >= self.settings.max_retries:
            logger.warning(
                "Attempt budget of %d exhausted in %s (iteration %d)",
                self.settings.max_retries,
                snapshot.phase.value,
                snapshot.iteration,
            )
            return {"phase": snapshot.phase.value, "status": LoopStatus.BUDGET_EXHAUSTED.value, "pending": None}
        return {"phase": snapshot.phase.value, "status": LoopStatus.RUNNING.value, "pending": None}

    def _dispatch_route(self, state: DriverState) -> str:
        if state.get("status") != LoopStatus.RUNNING.value:
            return "end"
        return _PHASE_NODES[Phase(state["phase"])]

    def _phase_node(self, phase: Phase) -> Callable[[DriverState], dict[str, Any]]:
        executor = self.executors[phase]

        def run_phase(state: DriverState) -> dict[str, Any]:
            attempts = int(state.get("attempts", 0)) + 1
            snapshot = self.store.read()
            try:
                result = executor.run(snapshot)
            except AgentInvocationError as exc:
                failures = int(state.get("failures", 0)) + 1
                logger.warning(
                    "%s attempt %d/%d failed: %s",
                    phase.value,
                    attempts,
                    self.settings.max_retries,
                    exc,
                )
                return {"attempts": attempts, "failures": failures, "last_error": str(exc), "pending": None}
            return {"attempts": attempts, "pending": result}

        return run_phase

    def _phase_route(self, state: DriverState) -> str:
        return "transition" if state.get("pending") is not None else "dispatch"

    def _transition_node(self, state: DriverState) -> dict[str, Any]:
        result = state.get("pending")
        if result is None:
            raise RuntimeError("transition node reached without a pending phase result")
        current = self.store.read()
        updated = apply_state_updates(current, current.phase, result.state_updates)
        advanced = apply_event(updated, result.event)
        if result.event.fallback:
            logger.warning(
                "Applied fallback transition %s -> %s (%s)",
                current.phase.value,
                advanced.phase.value,
                result.event.type.value,
            )
        written = self.store.write(advanced)
        if self.settings.auto_commit and not self.settings.dry_run:
            self.vcs.commit_transition(current.phase, written.phase, result.reason)
        return {"phase": written.phase.value, "pending": None}

    def run(self) -> LoopResult:
        """Drive the loop until END or until the attempt budget runs out.

        Raises:
            InvalidTransitionError: If a phase produced an event the table rejects.
            PersistenceError: If the snapshot cannot be read or written.
        """
        initial: DriverState = {
            "attempts": 0,
            "failures": 0,
            "status": LoopStatus.RUNNING.value,
            "last_error": None,
            "pending": None,
        }
        final = self.graph.invoke(
            initial,
            config={"recursion_limit": self.settings.max_retries * 3 + 5},
        )
        return LoopResult(
            status=LoopStatus(final.get("status", LoopStatus.RUNNING.value)),
            snapshot=self.store.read(),
            attempts=int(final.get("attempts", 0)),
            failures=int(final.get("failures", 0)),
            last_error=final.get("last_error"),
        )
