"""Phase briefs sent to the agent.

Each brief has the same skeleton: target document, recent history, context
carried over from earlier phases, the task, and the output protocol that
:mod:`phase_loop.parsing` understands.
"""

from __future__ import annotations

from .models import Phase, Snapshot

DRY_RUN_NOTICE = (
    "## Dry Run\n"
    "This is a dry run. Do NOT create, modify, or delete any files and do not commit. "
    "Describe what you would do instead, then produce the output blocks as usual."
)


def _bullets(items: list[str], *, empty: str) -> str:
    if not items:
        return empty
    return "\n".join(f"- {item}" for item in items)


def _header(phase: Phase, snapshot: Snapshot, summary: str) -> str:
    return f"# Phase Loop - {phase.value} Phase (Iteration {snapshot.iteration})\n\n{summary}"


def _common_sections(target_doc: str, recent_commits: list[str]) -> str:
    return (
        "## Target Document\n"
        f"Read and understand: {target_doc}\n\n"
        "## Recent Git History\n"
        f"{chr(10).join(recent_commits) if recent_commits else 'No recent commits.'}"
    )


def _transition_instructions(targets: str, guidance: list[str]) -> str:
    return (
        "Then output your transition decision on its own line:\n"
        f'<transition to="{targets}" reason="Your reasoning">\n\n'
        + "\n".join(f"- {line}" for line in guidance)
    )


def _truncate(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit] + f"\n... [diff truncated, {len(text) - limit} more characters]"


def build_plan_brief(
    snapshot: Snapshot,
    *,
    target_doc: str,
    recent_commits: list[str],
    dry_run: bool = False,
) -> str:
    feedback = snapshot.review_state.last_feedback
    previous = [
        f"Last review feedback: {feedback}" if feedback else "Fresh start - no previous feedback.",
    ]
    if snapshot.review_state.issues:
        previous.append("Open review issues:\n" + _bullets(snapshot.review_state.issues, empty=""))
    if snapshot.build_state.blockers:
        previous.append("Previous blockers:\n" + _bullets(snapshot.build_state.blockers, empty=""))

    sections = [
        _header(Phase.PLAN, snapshot, "You are analyzing the project to identify and plan the next task."),
        _common_sections(target_doc, recent_commits),
        "## Previous Context\n" + "\n".join(previous),
        "## Your Task\n\n"
        f"1. Read {target_doc} to understand the project state and priorities\n"
        "2. Review recent git history to understand what has been done\n"
        "3. Identify the single most important next task\n"
        "4. Create a structured plan",
        "## Output Format\n\n"
        "You MUST output a plan in this exact format:\n"
        "<plan>\n"
        "<task>One-line description of what to implement</task>\n"
        "<files>\n- path/to/file1\n- path/to/file2\n</files>\n"
        "<steps>\n- Step 1: What to do first\n- Step 2: What to do next\n</steps>\n"
        "<acceptance-criteria>\n- Criterion 1: How to verify success\n- Criterion 2: Another verification\n"
        "</acceptance-criteria>\n"
        "</plan>\n\n"
        + _transition_instructions(
            "BUILD|REVIEW|END",
            [
                "Use BUILD if there is work to do.",
                "Use REVIEW if the work already exists and only needs reviewing.",
                "Use END if the project is complete or nothing is actionable.",
            ],
        ),
    ]
    if dry_run:
        sections.append(DRY_RUN_NOTICE)
    return "\n\n".join(sections) + "\n"


def build_build_brief(
    snapshot: Snapshot,
    *,
    target_doc: str,
    recent_commits: list[str],
    dry_run: bool = False,
) -> str:
    plan = snapshot.plan
    if plan is not None:
        plan_text = (
            f"**Task:** {plan.task or 'Unspecified task'}\n\n"
            f"**Files:**\n{_bullets(plan.files, empty='- (none listed)')}\n\n"
            f"**Steps:**\n{_bullets(plan.steps, empty='- (none listed)')}\n\n"
            f"**Acceptance Criteria:**\n{_bullets(plan.acceptance_criteria, empty='- (none listed)')}"
        )
    else:
        plan_text = f"No plan available - pick up the next task from {target_doc}."

    sections = [
        _header(Phase.BUILD, snapshot, "You are implementing the current plan."),
        _common_sections(target_doc, recent_commits),
        "## The Plan\n" + plan_text,
        "## Progress So Far\n"
        f"Steps completed:\n{_bullets(snapshot.build_state.steps_completed, empty='- none yet')}\n\n"
        f"Unresolved blockers:\n{_bullets(snapshot.build_state.blockers, empty='- none')}",
    ]
    review = snapshot.review_state
    if review.last_feedback or review.issues:
        sections.append(
            "## Review Feedback To Address\n"
            f"{review.last_feedback or 'No summary given.'}\n\n"
            f"{_bullets(review.issues, empty='- no specific issues listed')}"
        )
    sections += [
        "## Your Task\n\n"
        "1. Implement the remaining plan steps\n"
        f"2. Keep {target_doc} up to date with your progress\n"
        "3. Run the relevant builds and tests\n"
        "4. Record what you completed and anything blocking you",
        "## Output Format\n\n"
        "Report your progress in this exact format:\n"
        "<build>\n"
        "<summary>One paragraph describing what changed</summary>\n"
        "<steps-completed>\n- Step you finished\n</steps-completed>\n"
        "<blockers>\n- Blocker (if any)\n</blockers>\n"
        "</build>\n\n"
        + _transition_instructions(
            "REVIEW|BUILD|PLAN",
            [
                "Use REVIEW when the implementation is complete.",
                "Use BUILD if more implementation work remains.",
                "Use PLAN if you are blocked and the plan must change.",
            ],
        ),
    ]
    if dry_run:
        sections.append(DRY_RUN_NOTICE)
    return "\n\n".join(sections) + "\n"


def build_review_brief(
    snapshot: Snapshot,
    *,
    target_doc: str,
    recent_commits: list[str],
    diff: str = "",
    max_diff_chars: int = 20_000,
    dry_run: bool = False,
) -> str:
    plan = snapshot.plan
    if plan is not None:
        plan_text = (
            f"**Task:** {plan.task or 'Unspecified task'}\n\n"
            f"**Acceptance Criteria:**\n{_bullets(plan.acceptance_criteria, empty='- (none listed)')}"
        )
    else:
        plan_text = "No plan available - reviewing existing changes."
    diff_text = _truncate(diff, max_diff_chars) if diff.strip() else "No changes detected."

    sections = [
        _header(Phase.REVIEW, snapshot, "You are reviewing the implementation against the plan."),
        _common_sections(target_doc, recent_commits),
        "## The Plan\n" + plan_text,
        "## Steps Completed\n" + _bullets(snapshot.build_state.steps_completed, empty="- none recorded"),
        f"## Changes Made\n```diff\n{diff_text}\n```",
        "## Your Task\n\n"
        "1. Review the changes against the acceptance criteria\n"
        f"2. Check that {target_doc} is updated appropriately\n"
        "3. Run tests and builds to verify everything works\n"
        "4. Identify any issues or improvements needed",
        "## Output Format\n\n"
        "Provide your review assessment:\n"
        "<review>\n"
        "<status>PASS|FAIL|PARTIAL</status>\n"
        "<feedback>Your detailed feedback</feedback>\n"
        "<issues>\n- Issue 1 (if any)\n</issues>\n"
        "</review>\n\n"
        + _transition_instructions(
            "END|BUILD|PLAN|REVIEW",
            [
                "Use END if the task is complete and the whole project is done.",
                "Use BUILD if fixes are needed.",
                "Use PLAN with status PASS to start the next iteration, "
                "or with FAIL if the approach must change.",
                "Use REVIEW if you need another review pass.",
            ],
        ),
    ]
    if dry_run:
        sections.append(DRY_RUN_NOTICE)
    return "\n\n".join(sections) + "\n"
