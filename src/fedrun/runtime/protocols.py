"""Contracts of the external collaborators the run controller drives.

The execution engine and the container runtime are not part of fedrun.
They are consumed through the protocols below; any object with matching
methods can be plugged in (see ``fedrun.pipeline.session``).
"""

import asyncio
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Optional, Protocol, Sequence, Union


# =============================================================================
# Container runtime
# =============================================================================

@dataclass
class PullStream:
    """A pull the runtime accepted; ``progress`` yields progress events.

    The iterator ending means the pull completed. Raising from it means the
    pull failed.
    """
    image: str
    progress: AsyncIterator[Any]


@dataclass
class PullFailure:
    """A pull the runtime rejected up front (unknown image, auth, ...)."""
    image: str
    error: Any


PullResult = Union[PullStream, PullFailure]


class ContainerRuntime(Protocol):
    """Image primitives of the local container runtime."""

    async def pull_images(self, images: Sequence[str]) -> list:
        """Start a pull per image; return one PullResult per image, same order."""
        ...

    async def prune_images(self) -> Any:
        ...

    async def remove_image(self, image_id: str) -> Any:
        ...

    async def list_images(self) -> list:
        ...


# =============================================================================
# Execution engine
# =============================================================================

@dataclass
class EngineRun:
    """Handle of a pipeline the engine accepted.

    Attributes
    ----------
    state_updates : asyncio.Queue
        Live state updates, in emission order, for as long as the run lives.
    result : awaitable
        Resolves with the run's results or raises the engine's error. The
        error may carry a ``partial_input`` (or ``input``) attribute.
    """
    state_updates: asyncio.Queue
    result: Awaitable[Any]


class Engine(Protocol):
    """The distributed execution engine."""

    async def start_pipeline(
        self,
        consortium_id: str,
        pipeline_snapshot: dict,
        file_array: list,
        run_id: str,
        per_step_config: Any,
        network_volume: Optional[str],
        run_state: Optional[dict],
    ) -> EngineRun:
        ...

    async def request_stop(self, pipeline_id: str, run_id: str) -> Any:
        ...

    async def suspend(self, run_id: str) -> Any:
        ...

    async def unlink_files(self, run_id: str) -> Any:
        ...

    async def set_remote_endpoint(self, url: str) -> Any:
        ...

    async def close(self) -> None:
        """Close the remote transport; returns once it is closed."""
        ...
