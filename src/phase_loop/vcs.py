from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Protocol

from .models import Phase

logger = logging.getLogger(__name__)

COMMIT_PREFIX = "phase-loop:"
_GIT_TIMEOUT_SECONDS = 60


class VcsContext(Protocol):
    """Read-mostly view of the repository the agent works in."""

    def root(self) -> Path: ...

    def recent_commits(self, count: int) -> list[str]: ...

    def diff_since_last_transition(self) -> str: ...

    def has_uncommitted_changes(self) -> bool: ...

    def commit_transition(self, from_phase: Phase, to_phase: Phase, reason: str) -> bool: ...


class GitContext:
    """``git`` subprocess collaborator.

    Only :meth:`root` can fail; history queries degrade to empty results
    because a repository without history is valid input for the loop.
    """

    def __init__(
        self,
        cwd: Path | None = None,
        *,
        executable: str = "git",
        exclude_paths: tuple[str | Path, ...] = (),
    ) -> None:
        self.cwd = cwd if cwd is not None else Path.cwd()
        self.executable = executable
        self.exclude_paths = exclude_paths
        self._root: Path | None = None

    def _run(self, *args: str, cwd: Path | None = None) -> str:
        completed = subprocess.run(
            [self.executable, *args],
            cwd=str(cwd if cwd is not None else self.root()),
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            check=True,
            timeout=_GIT_TIMEOUT_SECONDS,
        )
        return completed.stdout

    def root(self) -> Path:
        """Return the repository top-level directory.

        Raises:
            RuntimeError: If ``cwd`` is not inside a git work tree.
        """
        if self._root is None:
            try:
                output = self._run("rev-parse", "--show-toplevel", cwd=self.cwd)
            except (OSError, subprocess.SubprocessError) as exc:
                raise RuntimeError(f"Not inside a git repository: {self.cwd}") from exc
            self._root = Path(output.strip())
        return self._root

    def recent_commits(self, count: int) -> list[str]:
        """Return up to ``count`` one-line summaries, newest first."""
        if count <= 0:
            return []
        try:
            output = self._run("log", f"-{count}", "--format=%h %s")
        except (OSError, subprocess.SubprocessError, RuntimeError) as exc:
            logger.debug("git log unavailable: %s", exc)
            return []
        return [line.strip() for line in output.splitlines() if line.strip()]

    def _exclude_pathspecs(self) -> list[str]:
        """Pathspecs for ``exclude_paths`` that live inside the repository."""
        root = self.root().resolve()
        specs: list[str] = []
        for entry in self.exclude_paths:
            path = Path(entry)
            if path.is_absolute():
                try:
                    path = path.resolve().relative_to(root)
                except ValueError:
                    continue
            specs.append(f":(exclude){path.as_posix()}")
        return specs

    def diff(self, base_ref: str = "HEAD~1") -> str:
        """Diff of the working tree against ``base_ref``, minus ``exclude_paths``."""
        try:
            specs = self._exclude_pathspecs()
            args = ["diff", base_ref, "--", ".", *specs] if specs else ["diff", base_ref]
            return self._run(*args)
        except (OSError, subprocess.SubprocessError, RuntimeError) as exc:
            logger.debug("git diff %s unavailable: %s", base_ref, exc)
            return ""

    def last_transition_commit(self) -> str | None:
        try:
            output = self._run("log", f"--grep=^{COMMIT_PREFIX}", "-1", "--format=%H")
        except (OSError, subprocess.SubprocessError, RuntimeError):
            return None
        return output.strip() or None

    def diff_since_last_transition(self) -> str:
        """Diff of the working tree against the last loop commit, or HEAD~1."""
        last = self.last_transition_commit()
        return self.diff(last if last is not None else "HEAD~1")

    def has_uncommitted_changes(self) -> bool:
        try:
            return bool(self._run("status", "--porcelain").strip())
        except (OSError, subprocess.SubprocessError, RuntimeError):
            return False

    def commit_transition(self, from_phase: Phase, to_phase: Phase, reason: str) -> bool:
        """Stage everything and commit it as a loop transition.

        Returns:
            True when a commit was created, False when there was nothing to
            commit or git refused.
        """
        if not self.has_uncommitted_changes():
            return False
        message = f"{COMMIT_PREFIX} {from_phase.value} -> {to_phase.value}\n\n{reason}"
        try:
            self._run("add", "-A")
            self._run("commit", "-m", message)
        except subprocess.CalledProcessError as exc:
            logger.warning("git commit failed for %s -> %s: %s", from_phase.value, to_phase.value, exc.stderr)
            return False
        logger.info("Committed %s -> %s", from_phase.value, to_phase.value)
        return True
