from __future__ import annotations

from pathlib import Path

from .models import EventType, Phase


class InvalidTransitionError(ValueError):
    """An event was sent from a phase whose table row does not define it."""

    def __init__(self, phase: Phase, event_type: EventType) -> None:
        self.phase = phase
        self.event_type = event_type
        super().__init__(f"Invalid transition: event {event_type.value} not allowed from {phase.value}")


class PersistenceError(RuntimeError):
    """Reading or writing the snapshot file failed at the storage layer."""

    def __init__(self, message: str, *, path: Path | None = None) -> None:
        self.path = path
        super().__init__(message)


class AgentInvocationError(RuntimeError):
    """The external agent failed or was aborted mid-session."""

    def __init__(self, message: str, *, session_id: str | None = None) -> None:
        self.session_id = session_id
        super().__init__(message)
