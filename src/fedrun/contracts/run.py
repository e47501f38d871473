"""Run lifecycle contracts.

Enforce the guarantees a run must hold at each state transition.
"""

from fedrun.contracts.base import require
from fedrun.contracts.invariants import ALLOWED_TRANSITIONS
from fedrun.models.run import Run, RunStatus


def assert_transition(current: str, target: str) -> None:
    """Enforce that ``current -> target`` is a legal status transition.

    Raises
    ------
    ContractViolation
        If the transition is not declared in ALLOWED_TRANSITIONS.
    """
    current = RunStatus(current).value
    target = RunStatus(target).value
    require(
        target in ALLOWED_TRANSITIONS.get(current, ()),
        f"Run contract violated: illegal transition {current} -> {target}"
    )


def assert_snapshot_unchanged(run: Run, digest: str) -> None:
    """Enforce that the pipeline snapshot is the one frozen at queue time."""
    require(
        run.pipeline_snapshot.digest() == digest,
        f"Run contract violated: pipelineSnapshot of run {run.id} changed after creation"
    )


def assert_terminal(run: Run) -> None:
    """Enforce the terminal-state guarantees of a run record."""
    require(
        RunStatus(run.status).is_terminal,
        f"Run contract violated: run {run.id} is '{run.status}', expected a terminal status"
    )
    require(
        run.end_date is not None,
        f"Run contract violated: terminal run {run.id} has no endDate"
    )
    if run.status == RunStatus.COMPLETE:
        require(
            run.error is None,
            f"Run contract violated: complete run {run.id} carries an error"
        )
    if run.status == RunStatus.ERROR:
        require(
            run.error is not None and run.results is None,
            f"Run contract violated: failed run {run.id} must carry an error and no results"
        )
