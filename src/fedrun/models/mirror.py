"""Input records for the browsable run output mirror."""

from typing import Optional, Union

from pydantic import Field

from fedrun.models.base import FedrunModel

__all__ = ['MirrorRun', 'MirrorConsortium']


class MirrorRun(FedrunModel):
    """A finished run whose outputs should appear in the mirror.

    ``end_date`` is epoch milliseconds or an ISO-8601 string.
    """
    id: str
    pipeline_name: str = ""
    end_date: Optional[Union[int, float, str]] = None


class MirrorConsortium(FedrunModel):
    """A consortium and the runs to mirror under its sanitized name."""
    id: Optional[str] = None
    name: str
    runs: list[MirrorRun] = Field(default_factory=list)
