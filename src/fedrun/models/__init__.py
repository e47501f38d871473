"""Record models for consortia, collections and runs.

All records are Pydantic models that read and write the camelCase JSON used
by the remote API and the local store.
"""

from fedrun.models.base import FedrunModel
from fedrun.models.consortium import (
    OwnerMapping,
    InputSpec,
    Computation,
    PipelineStep,
    PipelineSnapshot,
    StepIOEntry,
    Consortium,
)
from fedrun.models.collection import FileGroup, Collection, DataMappings
from fedrun.models.run import RunStatus, RunError, Run, ProvenanceRecord, now_ms
from fedrun.models.mirror import MirrorRun, MirrorConsortium

__all__ = [
    'FedrunModel',
    'OwnerMapping',
    'InputSpec',
    'Computation',
    'PipelineStep',
    'PipelineSnapshot',
    'StepIOEntry',
    'Consortium',
    'FileGroup',
    'Collection',
    'DataMappings',
    'RunStatus',
    'RunError',
    'Run',
    'ProvenanceRecord',
    'now_ms',
    'MirrorRun',
    'MirrorConsortium',
]
