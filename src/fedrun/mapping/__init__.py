"""Variable mapping: resolve pipeline inputs against local collections."""

from fedrun.mapping.resolver import MappingResolution, resolve_mappings, is_mapped
from fedrun.mapping.collections import (
    RunInputs,
    collect_run_inputs,
    remove_collections_from_consortium,
    delete_collection,
    sync_remote_consortium,
    sync_remote_pipeline,
)

__all__ = [
    'MappingResolution',
    'resolve_mappings',
    'is_mapped',
    'RunInputs',
    'collect_run_inputs',
    'remove_collections_from_consortium',
    'delete_collection',
    'sync_remote_consortium',
    'sync_remote_pipeline',
]
