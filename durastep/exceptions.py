"""Exception types raised by the durastep engine."""

from __future__ import annotations

from typing import Optional


class WorkflowEngineError(Exception):
    """Base class for engine failures."""


class AuthError(WorkflowEngineError):
    """Request signature or shared secret did not verify."""


class RunNotFoundError(WorkflowEngineError):
    """A resume delivery referenced a run that does not exist."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"workflow run {run_id} not found")


class DeterminismViolationError(WorkflowEngineError):
    """Workflow code visited steps in a different order than the ledger."""

    def __init__(self, run_id: str, index: int, expected: str, found: str) -> None:
        self.run_id = run_id
        self.index = index
        super().__init__(
            f"run {run_id} step {index}: ledger holds {expected} but workflow produced {found}"
        )


class DuplicateStepError(WorkflowEngineError):
    """A different record already exists at this ledger index."""

    def __init__(self, run_id: str, index: int) -> None:
        self.run_id = run_id
        self.index = index
        super().__init__(f"run {run_id} already has a different record at step {index}")


class TransportError(WorkflowEngineError):
    """An outbound call failed below the HTTP layer after all retries."""

    def __init__(self, step_name: str, message: str) -> None:
        self.step_name = step_name
        super().__init__(f"call step '{step_name}' failed: {message}")


class StepExecutionError(WorkflowEngineError):
    """User workflow code raised while executing a step."""

    def __init__(self, message: str, step_index: Optional[int] = None) -> None:
        self.step_index = step_index
        super().__init__(message)


class SuspendWorkflow(BaseException):
    """Unwinds workflow code when the invocation has to stop and resume later.

    Derives from ``BaseException`` so ``except Exception`` in workflow code
    does not intercept it.
    """

    def __init__(self, delay: float, reason: str, step_index: int) -> None:
        self.delay = max(0.0, delay)
        self.reason = reason
        self.step_index = step_index
        super().__init__(reason)


class WorkflowCancelled(BaseException):
    """Unwinds workflow code once the run has been cancelled."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"workflow run {run_id} cancelled")


class LeaseLost(BaseException):
    """Unwinds workflow code when another replay has taken over the run lease."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"lease on workflow run {run_id} was taken over")
