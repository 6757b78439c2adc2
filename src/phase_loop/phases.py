from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, ClassVar

from .agent_runtime import AgentOptions, AgentRunner, AgentTranscript, collect_agent_output
from .models import BuildState, Event, Phase, PhaseResult, ReviewState, Snapshot
from .parsing import parse_build_report, parse_plan, parse_review_report, parse_transition
from .prompts import build_build_brief, build_plan_brief, build_review_brief
from .settings import RuntimeSettings
from .vcs import VcsContext

logger = logging.getLogger(__name__)


class PhaseExecutor(ABC):
    """Brief -> agent session -> parsed event for one phase.

    Executors never apply transitions or write snapshots; they only describe
    what the Driver Loop should do next.
    """

    phase: ClassVar[Phase]

    def __init__(
        self,
        *,
        runner: AgentRunner,
        vcs: VcsContext,
        settings: RuntimeSettings,
        on_text: Callable[[str], None] | None = None,
    ) -> None:
        self.runner = runner
        self.vcs = vcs
        self.settings = settings
        self.on_text = on_text

    @abstractmethod
    def build_brief(self, snapshot: Snapshot, recent_commits: list[str]) -> str:
        """Render the agent brief for this phase."""

    @abstractmethod
    def interpret(self, snapshot: Snapshot, transcript: AgentTranscript) -> tuple[Event, dict[str, Any]]:
        """Turn the agent transcript into an event and authorised state updates."""

    def agent_options(self) -> AgentOptions:
        return AgentOptions(
            max_turns=self.settings.max_turns,
            working_directory=self.vcs.root(),
            permission_mode=self.settings.effective_permission_mode,
            model=self.settings.model or None,
        )

    def run(self, snapshot: Snapshot) -> PhaseResult:
        """Execute this phase once against ``snapshot``.

        Raises:
            ValueError: If ``snapshot`` is not in this executor's phase.
            AgentInvocationError: If the agent session fails.
        """
        if snapshot.phase != self.phase:
            raise ValueError(f"{type(self).__name__} cannot run while the loop is in {snapshot.phase.value}")

        recent_commits = self.vcs.recent_commits(self.settings.recent_commit_count)
        brief = self.build_brief(snapshot, recent_commits)
        logger.info("Starting %s phase (iteration %d)", self.phase.value, snapshot.iteration)
        transcript = collect_agent_output(
            self.runner.stream(brief, self.agent_options()),
            on_text=self.on_text,
        )
        if transcript.session_id:
            logger.info("%s session %s finished", self.phase.value, transcript.session_id)
        event, updates = self.interpret(snapshot, transcript)
        return PhaseResult(event=event, state_updates=updates, session_id=transcript.session_id)


class PlanPhase(PhaseExecutor):
    phase = Phase.PLAN

    def build_brief(self, snapshot: Snapshot, recent_commits: list[str]) -> str:
        return build_plan_brief(
            snapshot,
            target_doc=self.settings.target_doc,
            recent_commits=recent_commits,
            dry_run=self.settings.dry_run,
        )

    def interpret(self, snapshot: Snapshot, transcript: AgentTranscript) -> tuple[Event, dict[str, Any]]:
        plan = parse_plan(transcript.text)
        if plan is None:
            logger.warning("PLAN output contained no <plan> block")
        directive = parse_transition(transcript.text, Phase.PLAN)
        # A new plan invalidates the build and review context of the previous one.
        updates = {
            "plan": plan,
            "build_state": BuildState(),
            "review_state": ReviewState(),
        }
        return directive.to_event(), updates


class BuildPhase(PhaseExecutor):
    phase = Phase.BUILD

    def build_brief(self, snapshot: Snapshot, recent_commits: list[str]) -> str:
        return build_build_brief(
            snapshot,
            target_doc=self.settings.target_doc,
            recent_commits=recent_commits,
            dry_run=self.settings.dry_run,
        )

    def interpret(self, snapshot: Snapshot, transcript: AgentTranscript) -> tuple[Event, dict[str, Any]]:
        report = parse_build_report(transcript.text)
        directive = parse_transition(transcript.text, Phase.BUILD)
        if report is None:
            return directive.to_event(), {}

        steps = list(snapshot.build_state.steps_completed)
        for step in report.steps_completed:
            if step not in steps:
                steps.append(step)
        updates = {"build_state": BuildState(steps_completed=steps, blockers=report.blockers)}
        return directive.to_event(), updates


class ReviewPhase(PhaseExecutor):
    phase = Phase.REVIEW

    def build_brief(self, snapshot: Snapshot, recent_commits: list[str]) -> str:
        return build_review_brief(
            snapshot,
            target_doc=self.settings.target_doc,
            recent_commits=recent_commits,
            diff=self.vcs.diff_since_last_transition(),
            max_diff_chars=self.settings.max_diff_chars,
            dry_run=self.settings.dry_run,
        )

    def interpret(self, snapshot: Snapshot, transcript: AgentTranscript) -> tuple[Event, dict[str, Any]]:
        report = parse_review_report(transcript.text)
        approved = report.approved if report is not None else False
        directive = parse_transition(transcript.text, Phase.REVIEW, approved=approved)
        if report is None:
            return directive.to_event(), {}
        updates = {
            "review_state": ReviewState(last_feedback=report.feedback or None, issues=report.issues),
        }
        return directive.to_event(), updates


EXECUTORS: dict[Phase, type[PhaseExecutor]] = {
    Phase.PLAN: PlanPhase,
    Phase.BUILD: BuildPhase,
    Phase.REVIEW: ReviewPhase,
}


def executor_for(
    phase: Phase,
    *,
    runner: AgentRunner,
    vcs: VcsContext,
    settings: RuntimeSettings,
    on_text: Callable[[str], None] | None = None,
) -> PhaseExecutor:
    """Instantiate the executor registered for ``phase``.

    Raises:
        ValueError: For END, which has no executor.
    """
    try:
        executor_cls = EXECUTORS[phase]
    except KeyError:
        raise ValueError(f"No executor for phase {phase.value}") from None
    return executor_cls(runner=runner, vcs=vcs, settings=settings, on_text=on_text)
