"""Run records, structured run errors and provenance."""

import time
import traceback
from enum import Enum
from typing import Any, Optional

from pydantic import Field, model_validator

from fedrun.models.base import FedrunModel
from fedrun.models.consortium import Consortium, PipelineSnapshot

__all__ = ['RunStatus', 'RunError', 'Run', 'ProvenanceRecord', 'now_ms', 'TRANSIENT_RUN_FIELDS']

# Dropped from a run when it becomes a provenance record
TRANSIENT_RUN_FIELDS = ("clients", "consortiumId", "__typename")


def now_ms() -> int:
    """Current time as epoch milliseconds (the remote API's date format)."""
    return int(time.time() * 1000)


class RunStatus(str, Enum):
    """Lifecycle states of a run."""
    QUEUED = "queued"
    DOWNLOADING_IMAGES = "downloading-images"
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETE = "complete"
    ERROR = "error"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETE, RunStatus.ERROR, RunStatus.STOPPED)


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool, list, dict)):
        return value
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}"
    return str(value)


class RunError(FedrunModel):
    """Structured error attached to a failed run: ``{message, stack, innerError}``."""
    message: str = ""
    stack: Optional[str] = None
    inner_error: Any = None
    partial_input: Any = None

    @classmethod
    def from_exception(cls, exc: BaseException, partial_input: Any = None) -> "RunError":
        """Build the structured payload from any exception.

        ``inner_error`` is the collaborator's own error value when the
        exception carries one, otherwise its cause.
        """
        inner = getattr(exc, "inner_error", None)
        if inner is None:
            inner = exc.__cause__
        if partial_input is None:
            partial_input = getattr(exc, "partial_input", None)
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return cls(
            message=str(exc) or type(exc).__name__,
            stack=stack,
            inner_error=_jsonable(inner),
            partial_input=_jsonable(partial_input),
        )


class Run(FedrunModel):
    """One run of a consortium pipeline, as seen by this client."""
    id: str
    consortium_id: Optional[str] = None
    pipeline_snapshot: PipelineSnapshot = Field(default_factory=PipelineSnapshot)
    clients: dict[str, str] = Field(default_factory=dict)
    type: Optional[str] = None
    status: RunStatus = RunStatus.QUEUED
    results: Any = None
    error: Optional[RunError] = None
    start_date: Optional[int] = None
    end_date: Optional[int] = None
    pipeline_steps: Any = None

    @model_validator(mode="before")
    @classmethod
    def drop_typename(cls, data):
        if isinstance(data, dict) and "__typename" in data:
            data = {k: v for k, v in data.items() if k != "__typename"}
        return data

    @model_validator(mode="after")
    def results_and_error_are_exclusive(self):
        if self.results is not None and self.error is not None:
            raise ValueError(f"Run {self.id} cannot carry both results and an error")
        return self

    @property
    def is_local(self) -> bool:
        """True for runs this client initiated, False for runs it joined."""
        return self.type == "local"

    @property
    def is_finished(self) -> bool:
        return self.results is not None or self.error is not None


class ProvenanceRecord(FedrunModel):
    """Immutable audit record of a completed run."""
    id: str
    consortium: dict[str, Any]
    clients: list[dict[str, str]] = Field(default_factory=list)

    @classmethod
    def from_run(cls, run: Run, consortium: Consortium) -> "ProvenanceRecord":
        """Strip transient fields from ``run`` and attach consortium and clients."""
        document = run.to_document()
        for key in TRANSIENT_RUN_FIELDS:
            document.pop(key, None)
        document["consortium"] = {"id": consortium.id, "name": consortium.name}
        document["clients"] = [
            {"id": client_id, "username": username}
            for client_id, username in run.clients.items()
        ]
        return cls.model_validate(document)
