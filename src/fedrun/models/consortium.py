"""Consortium and pipeline step records."""

import hashlib
import json
from typing import Any, Literal, Optional

from pydantic import Field, model_validator

from fedrun.models.base import FedrunModel

__all__ = [
    'OwnerMapping',
    'InputSpec',
    'Computation',
    'PipelineStep',
    'PipelineSnapshot',
    'StepIOEntry',
    'Consortium',
]


class OwnerMapping(FedrunModel):
    """One declared source for a step input variable."""
    source: Literal["file", "owner", "literal"]
    type: Optional[str] = None
    value: Any = None


class InputSpec(FedrunModel):
    """Input specification for one variable key of a step.

    Unresolved specs carry ``owner_mappings``. Resolved specs carry
    ``value = [values, labels, types]``.
    """
    owner_mappings: Optional[list[OwnerMapping]] = None
    value: Any = None


class Computation(FedrunModel):
    """Computation image and its entry command."""
    docker_image: str
    command: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def flatten_remote_shape(cls, data):
        """Accept ``{"computation": {"dockerImage": ..., "command": ...}}``."""
        if isinstance(data, dict) and isinstance(data.get("computation"), dict):
            flat = {k: v for k, v in data.items() if k != "computation"}
            flat.update(data["computation"])
            return flat
        return data


class PipelineStep(FedrunModel):
    """One declared step of a consortium pipeline."""
    id: Optional[str] = None
    input_map: dict[str, InputSpec] = Field(default_factory=dict)
    computations: list[Computation] = Field(default_factory=list)


class PipelineSnapshot(FedrunModel):
    """Frozen, run-specific copy of a pipeline's steps and computations."""
    id: Optional[str] = None
    name: Optional[str] = None
    steps: list[PipelineStep] = Field(default_factory=list)

    def image_names(self) -> list[str]:
        """Deduplicated computation images, in first-seen order."""
        images = []
        for step in self.steps:
            for computation in step.computations:
                if computation.docker_image not in images:
                    images.append(computation.docker_image)
        return images

    def digest(self) -> str:
        """SHA-256 of the snapshot's canonical JSON form."""
        payload = json.dumps(self.to_document(), sort_keys=True, default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class StepIOEntry(FedrunModel):
    """A user's local choice for one owner mapping: which group and column."""
    group_id: Optional[str] = None
    collection_id: Optional[str] = None
    column: Optional[str] = None


class Consortium(FedrunModel):
    """A consortium the user has joined, with its local variable mapping."""
    id: str
    name: str = ""
    active_pipeline_id: Optional[str] = None
    pipeline_steps: list[PipelineStep] = Field(default_factory=list)
    step_io: Optional[list[Optional[dict[str, list[Optional[StepIOEntry]]]]]] = Field(
        default=None, alias="stepIO"
    )
    is_mapped: bool = False

    def step_io_entry(self, step_index: int, key: str, mapping_index: int) -> Optional[StepIOEntry]:
        """Return ``stepIO[step_index][key][mapping_index]`` or None when absent."""
        if not self.step_io or step_index >= len(self.step_io):
            return None
        step = self.step_io[step_index]
        if not step or key not in step:
            return None
        entries = step[key] or []
        if mapping_index >= len(entries):
            return None
        return entries[mapping_index]

    def referenced_collection_ids(self) -> list[str]:
        """Collection ids referenced anywhere in ``stepIO`` (deduplicated)."""
        ids = []
        for step in self.step_io or []:
            for entries in (step or {}).values():
                for entry in entries or []:
                    if entry and entry.collection_id and entry.collection_id not in ids:
                        ids.append(entry.collection_id)
        return ids
