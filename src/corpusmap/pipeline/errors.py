"""Orchestrator error types."""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for orchestrator errors."""


class SessionNotFoundError(PipelineError):
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class PipelineAlreadyRunningError(PipelineError):
    def __init__(self, session_id: str, status: str) -> None:
        self.session_id = session_id
        self.status = status
        super().__init__(f"Session {session_id} is already in progress (status {status})")


class InvalidTransitionError(PipelineError):
    def __init__(self, current: str, target: str, detail: str = "") -> None:
        self.current = current
        self.target = target
        message = f"Cannot move pipeline status from {current} to {target}"
        super().__init__(f"{message}: {detail}" if detail else message)


class ReassignmentError(PipelineError):
    """A manual cluster reassignment was refused."""
