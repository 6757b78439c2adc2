from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

AGENT_BACKENDS = frozenset({"claude", "deepagent"})
PERMISSION_MODES = frozenset({"default", "acceptEdits", "bypassPermissions", "plan"})
START_PHASES = frozenset({"PLAN", "BUILD", "REVIEW", "END"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    max_retries: int = 20
    max_turns: int = 50
    target_doc: str = "docs/PROJECT_MANAGEMENT.md"
    dry_run: bool = False
    start_phase: str = ""
    state_path: str = ".phase-loop/state.json"
    recent_commit_count: int = 10
    max_diff_chars: int = 20_000
    agent_backend: str = "claude"
    agent_executable: str = "claude"
    model: str = ""
    permission_mode: str = "bypassPermissions"
    auto_commit: bool = False
    echo_agent_output: bool = True

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            max_retries=_get_env_int("LOOP_MAX_RETRIES", default=20, minimum=1),
            max_turns=_get_env_int("LOOP_MAX_TURNS", default=50, minimum=1),
            target_doc=os.getenv("LOOP_TARGET_DOC", "docs/PROJECT_MANAGEMENT.md"),
            dry_run=_get_env_bool("LOOP_DRY_RUN", default=False),
            start_phase=os.getenv("LOOP_START_PHASE", ""),
            state_path=os.getenv("LOOP_STATE_PATH", ".phase-loop/state.json"),
            recent_commit_count=_get_env_int("LOOP_RECENT_COMMITS", default=10, minimum=0, maximum=500),
            max_diff_chars=_get_env_int("LOOP_MAX_DIFF_CHARS", default=20_000, minimum=0),
            agent_backend=os.getenv("LOOP_AGENT_BACKEND", "claude"),
            agent_executable=os.getenv("LOOP_AGENT_EXECUTABLE", "claude"),
            model=os.getenv("LOOP_MODEL", ""),
            permission_mode=os.getenv("LOOP_PERMISSION_MODE", "bypassPermissions"),
            auto_commit=_get_env_bool("LOOP_AUTO_COMMIT", default=False),
            echo_agent_output=_get_env_bool("LOOP_ECHO_AGENT_OUTPUT", default=True),
        ).normalized()

    def with_overrides(self, **changes: Any) -> "RuntimeSettings":
        """Return a validated copy with ``changes`` applied; ``None`` values are ignored."""
        applied = {key: value for key, value in changes.items() if value is not None}
        return dataclasses.replace(self, **applied).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if self.max_retries < 1:
            raise ValueError(f"LOOP_MAX_RETRIES must be >= 1, got: {self.max_retries}")
        if self.max_turns < 1:
            raise ValueError(f"LOOP_MAX_TURNS must be >= 1, got: {self.max_turns}")

        target_doc = self.target_doc.strip()
        if not target_doc:
            raise ValueError("LOOP_TARGET_DOC must be non-empty")
        state_path = self.state_path.strip()
        if not state_path:
            raise ValueError("LOOP_STATE_PATH must be non-empty")

        start_phase = self.start_phase.strip().upper()
        if start_phase and start_phase not in START_PHASES:
            raise ValueError(f"LOOP_START_PHASE must be one of: {', '.join(sorted(START_PHASES))}")

        agent_backend = self.agent_backend.strip().lower()
        if agent_backend not in AGENT_BACKENDS:
            raise ValueError(f"LOOP_AGENT_BACKEND must be one of: {', '.join(sorted(AGENT_BACKENDS))}")
        agent_executable = self.agent_executable.strip()
        if not agent_executable:
            raise ValueError("LOOP_AGENT_EXECUTABLE must be non-empty")

        permission_mode = self.permission_mode.strip()
        if permission_mode not in PERMISSION_MODES:
            raise ValueError(f"LOOP_PERMISSION_MODE must be one of: {', '.join(sorted(PERMISSION_MODES))}")

        return dataclasses.replace(
            self,
            target_doc=target_doc,
            state_path=state_path,
            start_phase=start_phase,
            agent_backend=agent_backend,
            agent_executable=agent_executable,
            model=self.model.strip(),
            permission_mode=permission_mode,
        )

    @property
    def effective_permission_mode(self) -> str:
        """Dry runs ask the agent for a read-only session."""
        return "plan" if self.dry_run else self.permission_mode

    def state_file(self, repo_root: Path) -> Path:
        path = Path(self.state_path)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean (1/0, true/false), got: {raw!r}")
