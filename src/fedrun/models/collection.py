"""Locally held file collections."""

from typing import Any, Optional, Union

from pydantic import Field

from fedrun.models.base import FedrunModel

__all__ = ['FileGroup', 'Collection', 'DataMappings']


class FileGroup(FedrunModel):
    """A group of files inside a collection.

    ``meta_file`` groups (e.g. a covariates CSV) hand the meta file to the
    engine; plain groups hand their file list.
    """
    id: str
    files: list[str] = Field(default_factory=list)
    meta_file: Optional[str] = None
    extension: Optional[str] = None
    org: Optional[str] = None
    first_row: Any = None

    def backing_data(self) -> Union[str, list[str]]:
        return self.meta_file if self.meta_file is not None else list(self.files)


class Collection(FedrunModel):
    """A user's named set of file groups."""
    id: str
    name: str = ""
    file_groups: dict[str, FileGroup] = Field(default_factory=dict)
    associated_consortia: list[str] = Field(default_factory=list)


class DataMappings(FedrunModel):
    """Local data a run is fed with.

    ``files_by_group`` maps a group id to its backing data; ``all_files`` is
    the flat list of files the engine should see.
    """
    files_by_group: dict[str, Union[str, list[str]]] = Field(default_factory=dict)
    all_files: list[str] = Field(default_factory=list)

    def file_array(self) -> list[str]:
        """``all_files`` followed by any group path it does not already list."""
        files = list(self.all_files)
        for data in self.files_by_group.values():
            for path in ([data] if isinstance(data, str) else data):
                if path not in files:
                    files.append(path)
        return files
