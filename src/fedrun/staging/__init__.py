"""Run-scoped filesystem work: staging, provenance, output mirror, asset download."""

from fedrun.staging.staging import StagingArea
from fedrun.staging.provenance import write_provenance, read_provenance
from fedrun.staging.mirror import mirror_outputs
from fedrun.staging.assets import download_run_assets

__all__ = [
    'StagingArea',
    'write_provenance',
    'read_provenance',
    'mirror_outputs',
    'download_run_assets',
]
