"""Image acquisition fan-in.

Requests a pull per computation image and joins them into one awaitable.
Progress of every pull is forwarded, tagged with its image. The join
fails on the first failed pull; the remaining pulls are not cancelled,
they simply stop being awaited.
"""

import asyncio
import logging
from typing import Any, Callable, Iterable, Optional

from fedrun.contracts import ImageAcquisitionError
from fedrun.runtime.protocols import ContainerRuntime, PullFailure, PullStream

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, dict], Any]


def dedupe_images(images: Iterable[str]) -> list:
    """Drop repeated image names, keeping first-seen order."""
    unique = []
    for image in images:
        if image not in unique:
            unique.append(image)
    return unique


class ImageAcquirer:
    """Pulls computation images through a container runtime.

    Parameters
    ----------
    runtime : ContainerRuntime
        The local container runtime.

    Examples
    --------
    >>> acquirer = ImageAcquirer(runtime)
    >>> await acquirer.acquire(["img-a", "img-b"], on_progress=print)
    >>> await acquirer.prune()
    """

    def __init__(self, runtime: ContainerRuntime):
        self.runtime = runtime

    async def _follow(self, pull: PullStream, emit: ProgressCallback) -> str:
        try:
            async for event in pull.progress:
                emit(pull.image, {"image": pull.image, "status": "progress", "data": event})
        except Exception as exc:
            logger.error("Pull of %s failed: %s", pull.image, exc)
            raise ImageAcquisitionError(pull.image, exc) from exc

        emit(pull.image, {"image": pull.image, "status": "complete"})
        logger.info("Pulled %s", pull.image)
        return pull.image

    async def acquire(self, images: Iterable[str],
                      on_progress: Optional[ProgressCallback] = None) -> list:
        """Pull every image; return once all pulls have completed.

        Parameters
        ----------
        images : iterable of str
            Image names, possibly repeated.
        on_progress : callable, optional
            ``on_progress(image, event)`` for every progress event and for
            the ``{"status": "complete"}`` event that ends each pull.
            Exceptions raised by the callback are logged and dropped.

        Returns
        -------
        list of str
            The deduplicated images, in order.

        Raises
        ------
        ImageAcquisitionError
            For the first pull that fails, carrying that pull's error.
        """
        unique = dedupe_images(images)
        if not unique:
            return []

        def emit(image, event):
            if on_progress is None:
                return
            try:
                on_progress(image, event)
            except Exception:
                logger.exception("Progress callback failed for %s", image)

        logger.info("Pulling %d image(s): %s", len(unique), ", ".join(unique))
        try:
            pulls = await self.runtime.pull_images(unique)
        except Exception as exc:
            raise ImageAcquisitionError(None, exc) from exc

        loop = asyncio.get_running_loop()
        waiters = []
        for pull in pulls:
            if isinstance(pull, PullFailure):
                # Rejected up front: joins the same way as a failed stream
                logger.error("Pull of %s rejected: %s", pull.image, pull.error)
                failed = loop.create_future()
                failed.set_exception(ImageAcquisitionError(pull.image, pull.error))
                waiters.append(failed)
            elif isinstance(pull, PullStream):
                waiters.append(asyncio.ensure_future(self._follow(pull, emit)))
            else:
                raise TypeError(f"Container runtime returned {type(pull).__name__}, "
                                "expected PullStream or PullFailure")

        await asyncio.gather(*waiters)
        return unique

    async def prune(self) -> bool:
        """Prune unused images. Failures are logged, never raised.

        Returns
        -------
        bool
            True if the prune succeeded.
        """
        try:
            await self.runtime.prune_images()
        except Exception:
            logger.warning("Image prune failed", exc_info=True)
            return False
        logger.debug("Pruned unused images")
        return True
