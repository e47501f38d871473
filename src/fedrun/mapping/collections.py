"""Collection bookkeeping around the mapping resolver.

Loads the collections a consortium's mapping points at, keeps the
``isMapped`` flag and collection back-references in step with it, and
unmaps consortia whose pipeline changed remotely.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from fedrun.contracts import MappingIncompleteError
from fedrun.mapping.resolver import resolve_mappings
from fedrun.models import Consortium, DataMappings, PipelineStep
from fedrun.storage.local_store import LocalStore

logger = logging.getLogger(__name__)


@dataclass
class RunInputs:
    """Everything a new run needs from the user's local data."""
    all_files: list = field(default_factory=list)
    files_by_group: dict = field(default_factory=dict)
    steps: list = field(default_factory=list)
    collections_used: list = field(default_factory=list)

    def data_mappings(self) -> DataMappings:
        return DataMappings(files_by_group=self.files_by_group, all_files=self.all_files)


def collect_run_inputs(store: LocalStore, consortium_id: str, consortium_name: str = "") -> RunInputs:
    """Gather the files and resolved steps for a new run of a consortium.

    Runs a validation pass first and records the outcome in the
    consortium's ``isMapped`` flag, then loads every collection the
    mapping uses and runs the materializing pass.

    Parameters
    ----------
    store : LocalStore
        Local document store.
    consortium_id : str
        Consortium to collect for.
    consortium_name : str, optional
        Display name used in the error when the consortium is not stored
        locally.

    Returns
    -------
    RunInputs

    Raises
    ------
    MappingIncompleteError
        If the consortium is unknown locally or its mapping is incomplete.
    """
    consortium = store.get_consortium(consortium_id)
    if consortium is None:
        logger.warning("Consortium %s is not in the local store", consortium_id)
        raise MappingIncompleteError(consortium_name or consortium_id)

    try:
        validation = resolve_mappings(consortium)
    except MappingIncompleteError:
        store.update("consortia", consortium.id, {"isMapped": False})
        raise

    store.update("consortia", consortium.id, {"isMapped": True})

    used_ids = validation.collection_ids()
    all_files = []
    files_by_group = {}

    for collection_id in used_ids:
        collection = store.get_collection(collection_id)
        if collection is None:
            logger.warning("Collection %s mapped by %s is missing", collection_id, consortium.name)
            continue
        for group_id, group in collection.file_groups.items():
            all_files.extend(group.files)
            files_by_group[group_id] = group.backing_data()

    materialized = resolve_mappings(consortium, files_by_group)
    logger.info(
        "Collected %d file(s) from %d collection(s) for %s",
        len(all_files), len(used_ids), consortium.name
    )
    return RunInputs(
        all_files=all_files,
        files_by_group=files_by_group,
        steps=materialized.steps,
        collections_used=materialized.collections_used,
    )


def remove_collections_from_consortium(store: LocalStore, consortium_id: str, delete_consortium: bool) -> list:
    """Detach a consortium from every collection its mapping references.

    Parameters
    ----------
    delete_consortium : bool
        Delete the consortium record afterwards; otherwise reset its
        ``activePipelineId``, ``isMapped`` and ``stepIO``.

    Returns
    -------
    list of str
        Ids of the collections that were referenced.
    """
    consortium = store.get_consortium(consortium_id)
    if consortium is None or not consortium.step_io:
        return []

    collection_ids = consortium.referenced_collection_ids()
    if not collection_ids:
        return []

    for collection_id in collection_ids:
        collection = store.get_collection(collection_id)
        if collection is None:
            continue
        if consortium_id in collection.associated_consortia:
            remaining = [c for c in collection.associated_consortia if c != consortium_id]
            store.update("collections", collection_id, {"associatedConsortia": remaining})

    if delete_consortium:
        store.delete("consortia", consortium_id)
        logger.info("Deleted consortium %s and detached %d collection(s)", consortium_id, len(collection_ids))
    else:
        store.update("consortia", consortium_id, {
            "activePipelineId": None, "isMapped": False, "stepIO": None,
        })
        logger.info("Unmapped consortium %s from %d collection(s)", consortium_id, len(collection_ids))

    return collection_ids


def delete_collection(store: LocalStore, collection_id: str) -> list:
    """Delete a collection and clear every ``stepIO`` entry pointing at it.

    Returns
    -------
    list of str
        Ids of the consortia whose mapping was touched. Their ``isMapped``
        flag is recomputed.
    """
    store.delete("collections", collection_id)
    touched = []

    for consortium in store.iter_consortia():
        if collection_id not in consortium.referenced_collection_ids():
            continue

        step_io = []
        for step in consortium.step_io or []:
            if step is None:
                step_io.append(None)
                continue
            step_io.append({
                key: [
                    None if entry is not None and entry.collection_id == collection_id
                    else (entry.to_document() if entry is not None else None)
                    for entry in entries or []
                ]
                for key, entries in step.items()
            })

        updated = consortium.model_copy(deep=True)
        updated.step_io = step_io
        try:
            resolve_mappings(updated)
            mapped = True
        except MappingIncompleteError:
            mapped = False

        store.update("consortia", consortium.id, {"stepIO": step_io, "isMapped": mapped})
        touched.append(consortium.id)

    if touched:
        logger.info("Collection %s removed from mapping of %s", collection_id, touched)
    return touched


def sync_remote_consortium(store: LocalStore, remote: Mapping[str, Any]) -> bool:
    """Unmap the local copy of a consortium whose active pipeline changed.

    Returns
    -------
    bool
        True if the local consortium was unmapped.
    """
    local = store.get_consortium(remote["id"])
    if local is None or local.active_pipeline_id == remote.get("activePipelineId"):
        return False

    logger.info(
        "Active pipeline of %s changed remotely (%s -> %s), unmapping",
        local.name, local.active_pipeline_id, remote.get("activePipelineId")
    )
    remove_collections_from_consortium(store, local.id, delete_consortium=False)
    return True


def sync_remote_pipeline(store: LocalStore, pipeline: Mapping[str, Any]) -> list:
    """Unmap every local consortium running ``pipeline`` whose steps changed.

    Returns
    -------
    list of str
        Ids of the consortia that were unmapped.
    """
    remote_steps = [
        PipelineStep.model_validate(step).to_document() for step in pipeline.get("steps") or []
    ]
    unmapped = []

    for local in store.iter_consortia():
        if local.active_pipeline_id != pipeline["id"]:
            continue
        local_steps = [step.to_document() for step in local.pipeline_steps]
        if local_steps == remote_steps:
            continue
        logger.info("Pipeline %s of %s changed remotely, unmapping", pipeline["id"], local.name)
        remove_collections_from_consortium(store, local.id, delete_consortium=False)
        unmapped.append(local.id)

    return unmapped
