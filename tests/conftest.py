from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

import pytest

from phase_loop.agent_runtime import AgentEvent, AgentEventKind, AgentOptions
from phase_loop.models import Phase
from phase_loop.settings import RuntimeSettings
from phase_loop.state_store import SnapshotStore


class ScriptedRunner:
    """Agent runner that replays canned outputs, one per session."""

    def __init__(self, outputs: list[str | Exception]) -> None:
        self.outputs = list(outputs)
        self.briefs: list[str] = []
        self.options: list[AgentOptions] = []

    def stream(self, brief: str, options: AgentOptions) -> Iterator[AgentEvent]:
        self.briefs.append(brief)
        self.options.append(options)
        if not self.outputs:
            raise AssertionError("ScriptedRunner ran out of outputs")
        output = self.outputs.pop(0)
        session_id = f"session-{len(self.briefs)}"
        yield AgentEvent(kind=AgentEventKind.SESSION, session_id=session_id)
        if isinstance(output, Exception):
            raise output
        yield AgentEvent(kind=AgentEventKind.TEXT_DELTA, text=output, session_id=session_id)
        yield AgentEvent(kind=AgentEventKind.ASSISTANT_TEXT, text=output, session_id=session_id)
        yield AgentEvent(kind=AgentEventKind.RESULT, text="done", session_id=session_id)


@dataclass
class StubVcs:
    repo_root: Path
    commits: list[str] = field(default_factory=lambda: ["abc1234 Initial commit"])
    diff: str = ""
    committed: list[tuple[Phase, Phase, str]] = field(default_factory=list)

    def root(self) -> Path:
        return self.repo_root

    def recent_commits(self, count: int) -> list[str]:
        return self.commits[:count]

    def diff_since_last_transition(self) -> str:
        return self.diff

    def has_uncommitted_changes(self) -> bool:
        return True

    def commit_transition(self, from_phase: Phase, to_phase: Phase, reason: str) -> bool:
        self.committed.append((from_phase, to_phase, reason))
        return True


@pytest.fixture
def settings() -> RuntimeSettings:
    return RuntimeSettings(max_retries=20, max_turns=5, echo_agent_output=False).normalized()


@pytest.fixture
def store(tmp_path: Path) -> SnapshotStore:
    return SnapshotStore(tmp_path / ".phase-loop" / "state.json")


@pytest.fixture
def vcs(tmp_path: Path) -> StubVcs:
    return StubVcs(repo_root=tmp_path)
