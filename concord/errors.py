"""Error taxonomy shared by the routing, execution and synthesis layers.

Classification never raises and routing fallbacks are carried as a flag on
the decision, so neither has an exception type here.
"""
from __future__ import annotations

from typing import Optional


class ConcordError(Exception):
    """Base class for everything raised by concord."""


class ConfigError(ConcordError, ValueError):
    pass


class NotInitializedError(ConcordError, RuntimeError):
    pass


class SubsystemUnavailable(ConcordError):
    """The target subsystem is not registered or its transport is down."""

    def __init__(self, target: str, detail: str = "") -> None:
        self.target = target
        self.detail = detail
        message = f"Subsystem unavailable: {target}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class SubsystemTimeout(ConcordError):
    def __init__(self, target: str, timeout: float) -> None:
        self.target = target
        self.timeout = timeout
        super().__init__(f"Subsystem {target} timed out after {timeout:.2f}s")


class WorkflowStepFailure(ConcordError):
    """Raised when a workflow step fails; remaining steps are skipped."""

    def __init__(self, step_number: int, system: str, cause: Optional[BaseException] = None) -> None:
        self.step_number = step_number
        self.system = system
        self.cause = cause
        super().__init__(f"Workflow step {step_number} ({system}) failed: {cause}")


class UnknownWorkflowError(ConcordError, KeyError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown workflow: {name}")

    def __str__(self) -> str:
        return self.args[0]


class UnknownStrategyError(ConcordError, ValueError):
    pass


class TaskCancelledError(ConcordError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task {task_id} was cancelled")


class ConsensusFailure(ConcordError):
    """No usable result was returned by any consensus target."""


class SynthesisFailure(ConcordError):
    """A merge strategy produced nothing usable.

    ``total_sources`` is set when every source fell below the weight floor;
    those sources must not reappear through a fallback merge.
    """

    def __init__(self, message: str, total_sources: Optional[int] = None) -> None:
        self.total_sources = total_sources
        super().__init__(message)


class InvalidTransitionError(ConcordError, RuntimeError):
    """A task was moved backwards or out of a terminal status."""
