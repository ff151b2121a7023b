"""Application-level error types."""

from __future__ import annotations


class GsdError(Exception):
    """Base error for the task runner."""


class ConfigError(GsdError):
    """Raised when runner configuration is invalid."""


class WorkflowError(GsdError):
    """Raised when workflow loading/validation fails."""


class DuplicateStepError(WorkflowError):
    def __init__(self, step_id: str) -> None:
        super().__init__(f"duplicate step id: '{step_id}'")
        self.step_id = step_id


class UnknownDependencyError(WorkflowError):
    def __init__(self, step_id: str, dependency: str) -> None:
        super().__init__(f"step '{step_id}' depends on unknown step '{dependency}'")
        self.step_id = step_id
        self.dependency = dependency


class CycleError(WorkflowError):
    def __init__(self, step_id: str, cycle: list[str]) -> None:
        path = " -> ".join(cycle)
        super().__init__(f"workflow has cyclic dependencies at step '{step_id}': {path}")
        self.step_id = step_id
        self.cycle = cycle


class StateError(GsdError):
    """Raised when persisted state cannot be read or is malformed."""


class RunConflictError(GsdError):
    """Raised when another process holds the run lock."""


class CompletionError(GsdError):
    """Raised when the completion service rejects or fails a call."""

    def __init__(self, message: str, *, diagnostics: str = "") -> None:
        super().__init__(message)
        self.diagnostics = diagnostics


class NotificationError(GsdError):
    """Raised when a notification cannot be delivered."""
