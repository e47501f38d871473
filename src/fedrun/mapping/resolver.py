"""Variable mapping resolution.

Turns a consortium's declared pipeline steps plus the user's recorded
(collection, column) choices into concrete per-step input arrays.

Two modes share one walk over the steps:

- validation-only (``files_by_group`` is None): checks that every
  ``file`` sourced mapping is backed by a ``stepIO`` entry and lists the
  collections used, without touching file contents;
- materializing: also pushes each group's backing data and column label
  into the ``[values, labels, types]`` lanes handed to the engine.
"""

import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence, Union

from fedrun.contracts import MappingIncompleteError
from fedrun.models import Consortium, InputSpec, PipelineStep

logger = logging.getLogger(__name__)

FREESURFER_TYPE = "FreeSurfer"

FilesByGroup = Mapping[str, Union[str, list]]


@dataclass
class MappingResolution:
    """Result of a successful resolution.

    Attributes
    ----------
    steps : list of PipelineStep
        Steps with every ``ownerMappings`` spec replaced by
        ``{"value": [values, labels, types]}``.
    collections_used : list of dict
        Deduplicated ``{"groupId", "collectionId"}`` pairs, first-seen order.
    """
    steps: list = field(default_factory=list)
    collections_used: list = field(default_factory=list)

    def collection_ids(self) -> list:
        ids = []
        for used in self.collections_used:
            if used["collectionId"] not in ids:
                ids.append(used["collectionId"])
        return ids


def _resolve_key(consortium, step_index, key, spec, files_by_group, collections_used):
    """Build the three lanes for one variable key.

    Returns None when a ``file`` mapping has no collection behind it.
    """
    values, labels, types = [], [], []

    for mapping_index, mapping in enumerate(spec.owner_mappings):
        entry = consortium.step_io_entry(step_index, key, mapping_index)

        if mapping.source == "file":
            if entry is None or not entry.collection_id:
                logger.debug(
                    "Step %d key '%s' mapping %d has no collection",
                    step_index, key, mapping_index
                )
                return None

            used = {"groupId": entry.group_id, "collectionId": entry.collection_id}
            if used not in collections_used:
                collections_used.append(used)

            if files_by_group is not None:
                values.append(files_by_group.get(entry.group_id))
                labels.append(entry.column)
                if mapping.type is not None:
                    types.append(mapping.type)

        elif mapping.type == FREESURFER_TYPE and files_by_group is not None:
            # Pre-resolved inputs: addressed by group id alone
            group_id = entry.group_id if entry is not None else None
            values.append(files_by_group.get(group_id) if group_id else None)
            labels.append(mapping.value)
            types.append(mapping.type)

    return InputSpec(value=[values, labels, types])


def resolve_mappings(
    consortium: Consortium,
    files_by_group: Optional[FilesByGroup] = None,
    steps: Optional[Sequence[PipelineStep]] = None,
) -> MappingResolution:
    """Resolve a consortium's step inputs against its local mapping.

    Parameters
    ----------
    consortium : Consortium
        Consortium with ``pipeline_steps`` and ``step_io``.
    files_by_group : mapping, optional
        Group id to backing data (file list or meta file path). Omit for
        the validation-only pass.
    steps : sequence of PipelineStep, optional
        Steps to resolve instead of ``consortium.pipeline_steps``, e.g. a
        run's pipeline snapshot. ``stepIO`` is still read from the
        consortium.

    Returns
    -------
    MappingResolution

    Raises
    ------
    MappingIncompleteError
        If any ``file`` sourced mapping lacks a ``stepIO`` entry with a
        ``collectionId``. No partial step list is produced.
    """
    declared = consortium.pipeline_steps if steps is None else steps
    collections_used = []
    resolved_steps = []

    for step_index, step in enumerate(declared):
        input_map = dict(step.input_map)

        for key, spec in step.input_map.items():
            if spec.owner_mappings is None:
                continue
            resolved = _resolve_key(
                consortium, step_index, key, spec, files_by_group, collections_used
            )
            if resolved is None:
                raise MappingIncompleteError(consortium.name)
            input_map[key] = resolved

        resolved_steps.append(step.model_copy(update={"input_map": input_map}, deep=True))

    return MappingResolution(steps=resolved_steps, collections_used=collections_used)


def is_mapped(consortium: Consortium) -> bool:
    """Validation-only check of whether a consortium's mapping is complete."""
    try:
        resolve_mappings(consortium)
    except MappingIncompleteError:
        return False
    return True
