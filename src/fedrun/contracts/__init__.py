"""Run contracts: failure taxonomy and fail-fast lifecycle invariants.

Key principle:
- Pydantic validates config and record correctness
- Contracts validate run lifecycle correctness
- FedrunError subclasses describe expected run failures
"""

from fedrun.contracts.failure import (
    ContractViolation,
    FedrunError,
    MappingIncompleteError,
    ImageAcquisitionError,
    ExecutionError,
    StagingError,
    RemoteFetchError,
    EngineNotInitializedError,
    RunAlreadyActiveError,
)
from fedrun.contracts.base import require
from fedrun.contracts.run import assert_transition, assert_snapshot_unchanged, assert_terminal

__all__ = [
    "ContractViolation",
    "FedrunError",
    "MappingIncompleteError",
    "ImageAcquisitionError",
    "ExecutionError",
    "StagingError",
    "RemoteFetchError",
    "EngineNotInitializedError",
    "RunAlreadyActiveError",
    "require",
    "assert_transition",
    "assert_snapshot_unchanged",
    "assert_terminal",
]
