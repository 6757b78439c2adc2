"""Best-effort extraction of artifacts and transition directives from agent text.

Agent output is untrusted free text that is asked to follow a tag protocol::

    <plan>
    <task>One-line description</task>
    <files>
    - src/app.py
    </files>
    ...
    </plan>
    <transition to="BUILD" reason="Plan is ready">

Nothing in this module raises on malformed agent text. Missing blocks yield
``None``, missing sub-tags yield empty values, and a missing directive yields
an explicit fallback decision that is marked as such.
"""

from __future__ import annotations

import logging
import re

from .models import BuildReport, Phase, Plan, ReviewReport, TransitionDirective
from .transitions import destination_of, resolve_event

logger = logging.getLogger(__name__)

FALLBACK_DESTINATION = Phase.BUILD
FALLBACK_REASON = "No explicit transition found, defaulting to BUILD"
BLANK_REASON = "No reason given"

# At most one bullet marker, which must be followed by whitespace.
_BULLET_RE = re.compile(r"^\s*(?:[-*+•]\s+)?")
# Reasons never span lines or tags.
_TRANSITION_RE = re.compile(
    r"""<transition\s+to\s*=\s*(?P<q1>["'])(?P<target>[A-Za-z_]+)(?P=q1)"""
    r"""\s+reason\s*=\s*(?P<q2>["'])(?P<reason>(?:(?!(?P=q2))[^<>\n])*)(?P=q2)\s*/?>"""
)


def extract_block(text: str, tag: str) -> str | None:
    """Return the inner text of the last ``<tag>...</tag>`` block, or None."""
    pattern = re.compile(rf"<{re.escape(tag)}>(.*?)</{re.escape(tag)}>", re.DOTALL)
    matches = pattern.findall(text or "")
    if not matches:
        return None
    return matches[-1]


def parse_list(inner: str | None) -> list[str]:
    """Split a list block into non-empty items with bullet markers removed."""
    if not inner:
        return []
    items: list[str] = []
    for line in inner.splitlines():
        item = _BULLET_RE.sub("", line).strip()
        if item:
            items.append(item)
    return items


def _scalar(block: str, tag: str) -> str:
    value = extract_block(block, tag)
    return value.strip() if value is not None else ""


def parse_plan(text: str) -> Plan | None:
    block = extract_block(text, "plan")
    if block is None:
        return None
    return Plan(
        task=_scalar(block, "task"),
        files=parse_list(extract_block(block, "files")),
        steps=parse_list(extract_block(block, "steps")),
        acceptance_criteria=parse_list(extract_block(block, "acceptance-criteria")),
    )


def parse_build_report(text: str) -> BuildReport | None:
    block = extract_block(text, "build")
    if block is None:
        return None
    return BuildReport(
        summary=_scalar(block, "summary"),
        steps_completed=parse_list(extract_block(block, "steps-completed")),
        blockers=parse_list(extract_block(block, "blockers")),
    )


def parse_review_report(text: str) -> ReviewReport | None:
    block = extract_block(text, "review")
    if block is None:
        return None
    return ReviewReport(
        status=_scalar(block, "status").upper(),
        feedback=_scalar(block, "feedback"),
        issues=parse_list(extract_block(block, "issues")),
    )


def fallback_directive(phase: Phase) -> TransitionDirective:
    """Decision used when the agent named no usable transition."""
    event_type = resolve_event(phase, FALLBACK_DESTINATION.value)
    if event_type is None:
        raise ValueError(f"No fallback transition exists from {phase.value}")
    return TransitionDirective(
        event_type=event_type,
        destination=FALLBACK_DESTINATION,
        reason=FALLBACK_REASON,
        fallback=True,
    )


def parse_transition(text: str, phase: Phase, *, approved: bool = False) -> TransitionDirective:
    """Extract the transition decision for ``phase`` from agent text.

    The last directive whose target is reachable from ``phase`` wins. Targets
    may be destination phases (``BUILD``) or event names (``NEXT_ITERATION``).

    Args:
        text: Full agent output.
        phase: Phase the agent was running in.
        approved: Whether the review artifact approved the work; decides
            between NEXT_ITERATION and REJECTED for a REVIEW -> PLAN directive.

    Returns:
        The explicit directive, or the fallback directive when none is usable.

    Raises:
        ValueError: If called for END, where no agent runs.
    """
    if phase == Phase.END:
        raise ValueError("END accepts no transitions")

    candidates = list(_TRANSITION_RE.finditer(text or ""))
    resolved: list[TransitionDirective] = []
    for match in candidates:
        target = match.group("target")
        event_type = resolve_event(phase, target, approved=approved)
        if event_type is None:
            logger.warning("Ignoring transition to %r: not reachable from %s", target, phase.value)
            continue
        reason = match.group("reason").strip() or BLANK_REASON
        resolved.append(
            TransitionDirective(
                event_type=event_type,
                destination=destination_of(phase, event_type),
                reason=reason,
                raw_target=target,
            )
        )

    if len(resolved) > 1:
        logger.warning("Agent emitted %d transition directives; using the last one", len(resolved))
    if resolved:
        return resolved[-1]

    directive = fallback_directive(phase)
    logger.warning(
        "No usable transition directive in %s output (%d candidates); falling back to %s via %s",
        phase.value,
        len(candidates),
        directive.destination.value,
        directive.event_type.value,
    )
    return directive
