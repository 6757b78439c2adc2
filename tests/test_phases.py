import pytest

from conftest import ScriptedRunner, StubVcs
from phase_loop.errors import AgentInvocationError
from phase_loop.models import BuildState, EventType, Phase, Plan, ReviewState, Snapshot
from phase_loop.phases import BuildPhase, PlanPhase, ReviewPhase, executor_for
from phase_loop.settings import RuntimeSettings

PLAN_TEXT = """<plan>
<task>Add login</task>
<files>
- src/login.py
</files>
<steps>
- write the form
- wire the handler
</steps>
<acceptance-criteria>
- tests pass
</acceptance-criteria>
</plan>
<transition to="BUILD" reason="Plan is ready">"""


def test_plan_phase_produces_plan_and_resets_context(vcs: StubVcs, settings: RuntimeSettings) -> None:
    runner = ScriptedRunner([PLAN_TEXT])
    snapshot = Snapshot(
        build_state=BuildState(steps_completed=["stale"]),
        review_state=ReviewState(last_feedback="Needs tests", issues=["missing tests"]),
    )
    result = PlanPhase(runner=runner, vcs=vcs, settings=settings).run(snapshot)

    assert result.event.type == EventType.START_BUILD
    assert result.reason == "Plan is ready"
    assert result.session_id == "session-1"
    assert result.state_updates["plan"] == Plan(
        task="Add login",
        files=["src/login.py"],
        steps=["write the form", "wire the handler"],
        acceptance_criteria=["tests pass"],
    )
    assert result.state_updates["build_state"] == BuildState()
    assert result.state_updates["review_state"] == ReviewState()


def test_plan_brief_carries_feedback_history_and_target_doc(vcs: StubVcs, settings: RuntimeSettings) -> None:
    runner = ScriptedRunner([PLAN_TEXT])
    snapshot = Snapshot(review_state=ReviewState(last_feedback="Needs tests"))
    PlanPhase(runner=runner, vcs=vcs, settings=settings).run(snapshot)

    brief = runner.briefs[0]
    assert f"Read and understand: {settings.target_doc}" in brief
    assert "abc1234 Initial commit" in brief
    assert "Last review feedback: Needs tests" in brief
    assert '<transition to="BUILD|REVIEW|END"' in brief


def test_plan_brief_on_fresh_start(tmp_path, settings: RuntimeSettings) -> None:
    runner = ScriptedRunner([PLAN_TEXT])
    PlanPhase(runner=runner, vcs=StubVcs(repo_root=tmp_path, commits=[]), settings=settings).run(Snapshot())
    assert "Fresh start - no previous feedback." in runner.briefs[0]
    assert "No recent commits." in runner.briefs[0]


def test_agent_options_follow_settings(vcs: StubVcs) -> None:
    settings = RuntimeSettings(max_turns=9, model="opus", dry_run=True).normalized()
    runner = ScriptedRunner([PLAN_TEXT])
    PlanPhase(runner=runner, vcs=vcs, settings=settings).run(Snapshot())

    options = runner.options[0]
    assert options.max_turns == 9
    assert options.model == "opus"
    assert options.permission_mode == "plan"
    assert options.working_directory == vcs.root()
    assert "This is a dry run" in runner.briefs[0]


def test_plan_phase_without_plan_block_still_transitions(vcs: StubVcs, settings: RuntimeSettings) -> None:
    runner = ScriptedRunner(['Nothing left to do.\n<transition to="END" reason="Project complete">'])
    result = PlanPhase(runner=runner, vcs=vcs, settings=settings).run(Snapshot())
    assert result.event.type == EventType.NOTHING_TO_DO
    assert result.state_updates["plan"] is None


def test_build_phase_accumulates_steps_and_replaces_blockers(vcs: StubVcs, settings: RuntimeSettings) -> None:
    text = """<build>
<summary>Form done</summary>
<steps-completed>
- write the form
- wire the handler
</steps-completed>
<blockers>
- database missing
</blockers>
</build>
<transition to="BUILD" reason="More to do">"""
    snapshot = Snapshot(
        phase=Phase.BUILD,
        plan=Plan(task="Add login"),
        build_state=BuildState(steps_completed=["write the form"], blockers=["old blocker"]),
    )
    result = BuildPhase(runner=ScriptedRunner([text]), vcs=vcs, settings=settings).run(snapshot)

    assert result.event.type == EventType.CONTINUE_BUILDING
    assert result.state_updates == {
        "build_state": BuildState(
            steps_completed=["write the form", "wire the handler"],
            blockers=["database missing"],
        )
    }


def test_build_phase_without_report_changes_nothing(vcs: StubVcs, settings: RuntimeSettings) -> None:
    snapshot = Snapshot(phase=Phase.BUILD)
    result = BuildPhase(runner=ScriptedRunner(["I wrote code."]), vcs=vcs, settings=settings).run(snapshot)
    assert result.state_updates == {}
    assert result.event.type == EventType.CONTINUE_BUILDING
    assert result.event.fallback is True


def test_build_brief_lists_plan_and_progress(vcs: StubVcs, settings: RuntimeSettings) -> None:
    runner = ScriptedRunner(['<transition to="REVIEW" reason="done">'])
    snapshot = Snapshot(
        phase=Phase.BUILD,
        plan=Plan(task="Add login", steps=["write the form"]),
        build_state=BuildState(steps_completed=["write the form"]),
    )
    BuildPhase(runner=runner, vcs=vcs, settings=settings).run(snapshot)
    brief = runner.briefs[0]
    assert "**Task:** Add login" in brief
    assert "- write the form" in brief
    assert "<steps-completed>" in brief


def test_review_phase_pass_with_plan_directive_starts_next_iteration(
    vcs: StubVcs, settings: RuntimeSettings
) -> None:
    text = """<review>
<status>PASS</status>
<feedback>Solid work</feedback>
<issues>
</issues>
</review>
<transition to="PLAN" reason="Task complete, next task">"""
    snapshot = Snapshot(phase=Phase.REVIEW, plan=Plan(task="Add login"))
    result = ReviewPhase(runner=ScriptedRunner([text]), vcs=vcs, settings=settings).run(snapshot)

    assert result.event.type == EventType.NEXT_ITERATION
    assert result.state_updates == {"review_state": ReviewState(last_feedback="Solid work", issues=[])}


def test_review_phase_fail_with_plan_directive_rejects(vcs: StubVcs, settings: RuntimeSettings) -> None:
    text = """<review><status>FAIL</status><feedback>Wrong approach</feedback>
<issues>
- uses globals
</issues></review>
<transition to="PLAN" reason="Rethink the design">"""
    result = ReviewPhase(runner=ScriptedRunner([text]), vcs=vcs, settings=settings).run(Snapshot(phase=Phase.REVIEW))
    assert result.event.type == EventType.REJECTED
    assert result.state_updates["review_state"].issues == ["uses globals"]


def test_review_brief_includes_diff(tmp_path, settings: RuntimeSettings) -> None:
    vcs = StubVcs(repo_root=tmp_path, diff="+print('hello')\n")
    runner = ScriptedRunner(['<transition to="END" reason="done">'])
    result = ReviewPhase(runner=runner, vcs=vcs, settings=settings).run(Snapshot(phase=Phase.REVIEW))
    assert "+print('hello')" in runner.briefs[0]
    assert result.event.type == EventType.APPROVED
    assert result.state_updates == {}


def test_executor_rejects_snapshot_in_other_phase(vcs: StubVcs, settings: RuntimeSettings) -> None:
    executor = BuildPhase(runner=ScriptedRunner([]), vcs=vcs, settings=settings)
    with pytest.raises(ValueError):
        executor.run(Snapshot(phase=Phase.PLAN))


def test_agent_failure_propagates(vcs: StubVcs, settings: RuntimeSettings) -> None:
    runner = ScriptedRunner([AgentInvocationError("boom")])
    with pytest.raises(AgentInvocationError):
        PlanPhase(runner=runner, vcs=vcs, settings=settings).run(Snapshot())


def test_executor_for_end_is_an_error(vcs: StubVcs, settings: RuntimeSettings) -> None:
    assert isinstance(executor_for(Phase.REVIEW, runner=ScriptedRunner([]), vcs=vcs, settings=settings), ReviewPhase)
    with pytest.raises(ValueError):
        executor_for(Phase.END, runner=ScriptedRunner([]), vcs=vcs, settings=settings)
