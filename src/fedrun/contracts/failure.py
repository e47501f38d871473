"""Centralized failure taxonomy for run lifecycles.

Every failure a run can hit maps to one exception type below. The
orchestrator catches them at its boundary and turns them into a structured
``RunError`` payload; nothing is re-raised out of a run's lifecycle.
"""

from typing import Any, Optional


class ContractViolation(RuntimeError):
    """Raised when a run lifecycle invariant is violated.

    This indicates a bug in controller logic, not bad user input or a
    failing collaborator.

    Key distinction:
    - ValueError / ValidationError: config or payload error (handled by Pydantic)
    - FedrunError subclasses: expected failures of a run
    - ContractViolation: controller bug (programmer error)
    """
    pass


class FedrunError(Exception):
    """Base class for expected run failures.

    Parameters
    ----------
    message : str
        Human readable message, surfaced to the user as-is.
    inner_error : Any, optional
        The collaborator's own error value (exception, status payload, ...).
    """

    def __init__(self, message: str, inner_error: Any = None):
        super().__init__(message)
        self.message = message
        self.inner_error = inner_error


class MappingIncompleteError(FedrunError):
    """A ``file`` sourced input has no local collection mapped to it.

    User-fixable. Blocks a run from starting.
    """

    def __init__(self, consortium_name: str):
        super().__init__(
            f"Mapping incomplete for new run from {consortium_name}. "
            "Please complete variable mapping before continuing."
        )
        self.consortium_name = consortium_name


class ImageAcquisitionError(FedrunError):
    """A computation image could not be pulled (registry, auth, network)."""

    def __init__(self, image: Optional[str], inner_error: Any = None):
        target = image or "computation images"
        detail = str(inner_error) if inner_error is not None else "pull failed"
        super().__init__(f"Failed to pull {target}: {detail}", inner_error)
        self.image = image


class ExecutionError(FedrunError):
    """The execution engine reported a failure for a run.

    Carries whatever partial input the engine attached to its error.
    """

    def __init__(self, message: str, inner_error: Any = None, partial_input: Any = None):
        super().__init__(message, inner_error)
        self.partial_input = partial_input


class StagingError(FedrunError):
    """Filesystem failure while staging or writing run artifacts."""
    pass


class RemoteFetchError(FedrunError):
    """Run asset download or extraction failed."""
    pass


class EngineNotInitializedError(FedrunError):
    """A control request arrived before login created the engine session."""

    def __init__(self, operation: str):
        super().__init__(f"Cannot {operation}: execution engine is not initialized (log in first)")
        self.operation = operation


class RunAlreadyActiveError(FedrunError):
    """Another process or task holds the lease for this consortium run."""

    def __init__(self, consortium_id: str, run_id: str):
        super().__init__(f"Run {run_id} of consortium {consortium_id} is already active")
        self.consortium_id = consortium_id
        self.run_id = run_id
