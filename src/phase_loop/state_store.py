from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from .errors import PersistenceError
from .models import Snapshot, utc_now
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)


def default_snapshot() -> Snapshot:
    """Return the initial state: iteration 1, PLAN, no plan, empty history."""
    return Snapshot()


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place so a concurrent reader sees either the old
    or the new file, never a partial one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path) -> str:
    """Read the snapshot text, rejecting empty or non-UTF-8 files.

    Raises:
        PersistenceError: If the file cannot be read or is empty.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise PersistenceError(f"snapshot at {path} contains invalid UTF-8 data", path=path) from exc
    except OSError as exc:
        raise PersistenceError(f"unable to read snapshot at {path}: {exc}", path=path) from exc
    if not text.strip():
        raise PersistenceError(f"snapshot at {path} is empty", path=path)
    return text


class SnapshotStore:
    """Single-file JSON persistence for the loop snapshot.

    The file is the only shared mutable resource of the loop. Every write is
    a full atomic replace; there is no locking, one loop per repository is
    assumed.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    @classmethod
    def for_repo(cls, repo_root: Path, settings: RuntimeSettings) -> "SnapshotStore":
        return cls(settings.state_file(repo_root))

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.is_file()

    def read(self) -> Snapshot:
        """Return the persisted snapshot, or the default one when none exists.

        The default is returned without creating the file.

        Raises:
            PersistenceError: If the file exists but is unreadable or invalid.
        """
        if not self.exists():
            logger.debug("No snapshot at %s, starting from defaults", self._path)
            return default_snapshot()
        text = _safe_read_json(self._path)
        try:
            return Snapshot.model_validate_json(text)
        except ValidationError as exc:
            raise PersistenceError(f"snapshot at {self._path} failed validation: {exc}", path=self._path) from exc

    def write(self, snapshot: Snapshot) -> Snapshot:
        """Persist ``snapshot`` with a refreshed timestamp and return what was written.

        Raises:
            PersistenceError: If the directory or file cannot be written.
        """
        updated = snapshot.model_copy(update={"timestamp": utc_now()})
        try:
            _atomic_write_text(self._path, updated.to_json() + "\n")
        except OSError as exc:
            raise PersistenceError(f"unable to write snapshot to {self._path}: {exc}", path=self._path) from exc
        logger.debug(
            "Wrote snapshot to %s (phase=%s iteration=%d history=%d)",
            self._path,
            updated.phase.value,
            updated.iteration,
            len(updated.history),
        )
        return updated

    def reset(self) -> Snapshot:
        """Overwrite the snapshot with defaults, discarding all history."""
        logger.info("Resetting snapshot at %s", self._path)
        return self.write(default_snapshot())
