"""Run control surface.

The entry point the UI (or CLI) talks to. Each request is dispatched to
the current engine session; anything that goes wrong is reported as a
structured ``on_main_error`` event instead of escaping to the caller.
"""

import random
import asyncio
import logging
from typing import Any, Callable, Iterable, Optional

from fedrun.models import RunError, RunStatus
from fedrun.pipeline.events import RunEventHub
from fedrun.pipeline.run_tracker import RunTracker
from fedrun.pipeline.session import SessionManager
from fedrun.runtime import ImageAcquirer
from fedrun.schemas import InternalConfig
from fedrun.staging import StagingArea, download_run_assets, mirror_outputs

logger = logging.getLogger(__name__)


class RunControlSurface:
    """Dispatches start/stop/suspend and housekeeping requests.

    Parameters
    ----------
    sessions : SessionManager
        Owner of the engine session.
    config : InternalConfig
        Resolved runtime configuration (jitter, download settings).
    dirs : dict
        Directories from setup_app_directories().
    tracker : RunTracker, optional
        Run history; suspensions are recorded there.
    sleep : callable, optional
        Coroutine function used for the start delay (``asyncio.sleep``).
    jitter : callable, optional
        ``jitter(low, high)`` drawing the start delay (``random.uniform``).

    Notes
    -----
    The start delay spreads out local processes racing to start the same
    run. It is kept alongside the run lease, which is what actually
    prevents double starts.
    """

    def __init__(self, sessions: SessionManager, config: InternalConfig, dirs: dict,
                 tracker: Optional[RunTracker] = None,
                 sleep: Callable = asyncio.sleep,
                 jitter: Callable[[float, float], float] = random.uniform):
        self.sessions = sessions
        self.config = config
        self.dirs = dirs
        self.tracker = tracker
        self._sleep = sleep
        self._jitter = jitter
        self.suspended_ids = set()

    @property
    def hub(self) -> RunEventHub:
        return self.sessions.hub

    def _report(self, operation: str, exc: BaseException) -> None:
        logger.error("%s failed: %s", operation, exc, exc_info=(type(exc), exc, exc.__traceback__))
        self.hub.on_main_error(RunError.from_exception(exc).to_document())

    def start_delay(self) -> float:
        """Draw the delay before a run start, in seconds."""
        if not self.config.jitter.enabled or self.config.jitter.max_delay_sec <= 0:
            return 0.0
        return self._jitter(0, self.config.jitter.max_delay_sec)

    # ------------------------------------------------------------------
    # Run control
    # ------------------------------------------------------------------

    async def start_run(self, consortium, data_mappings, run,
                        network_volume: Optional[str] = None,
                        run_state: Optional[dict] = None):
        """Start a run after the jitter delay.

        Returns
        -------
        Run or None
            The terminal run, or None when it did not start or the request
            failed (reported through ``on_main_error``).
        """
        delay = self.start_delay()
        if delay > 0:
            logger.debug("Delaying run start by %.2fs", delay)
            await self._sleep(delay)

        try:
            session = self.sessions.require("start run")
            return await session.orchestrator.start(
                consortium, data_mappings, run, network_volume, run_state
            )
        except Exception as exc:
            self._report("start run", exc)
            return None

    async def stop_run(self, pipeline_id: str, run_id: str) -> Any:
        """Forward a stop request to the engine."""
        try:
            session = self.sessions.require("stop run")
            session.orchestrator.note_stop_requested(run_id)
            result = await session.engine.request_stop(pipeline_id, run_id)
        except Exception as exc:
            self._report("stop run", exc)
            return None
        logger.info("Stop requested for run %s", run_id)
        return result

    async def suspend_run(self, run_id: str) -> Any:
        """Forward a suspend request to the engine and record the suspension."""
        try:
            session = self.sessions.require("suspend run")
            result = await session.engine.suspend(run_id)
            self.suspended_ids.add(run_id)
            if self.tracker is not None and self.tracker.get_run_status(run_id) is not None:
                await asyncio.to_thread(self.tracker.mark_status, run_id, RunStatus.SUSPENDED.value)
        except Exception as exc:
            self._report("suspend run", exc)
            return None
        logger.info("Run %s suspended", run_id)
        return result

    async def set_remote_endpoint(self, url: str) -> bool:
        """Point the engine at another remote (client server) URL."""
        try:
            session = self.sessions.require("set remote endpoint")
            await session.engine.set_remote_endpoint(url)
        except Exception as exc:
            self._report("set remote endpoint", exc)
            return False
        logger.info("Remote endpoint set to %s", url)
        return True

    async def clean_remote_run(self, run_id: str) -> bool:
        """Drop the staged inputs of a run that finished remotely."""
        try:
            session = self.sessions.require("clean remote run")
            staging = StagingArea(self.dirs, self.config.staging.link_mode)
            await asyncio.to_thread(staging.unstage_files, run_id)
            await session.engine.unlink_files(run_id)
        except Exception as exc:
            self._report("clean remote run", exc)
            return False
        self.suspended_ids.discard(run_id)
        return True

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def list_images(self) -> list:
        try:
            session = self.sessions.require("list images")
            return await session.runtime.list_images()
        except Exception as exc:
            self._report("list images", exc)
            return []

    async def remove_image(self, image_id: str) -> bool:
        try:
            session = self.sessions.require("remove image")
            await session.runtime.remove_image(image_id)
        except Exception as exc:
            self._report("remove image", exc)
            return False
        logger.info("Removed image %s", image_id)
        return True

    async def download_computations(self, images: Iterable[str], consortium_id: str) -> bool:
        """Pull a consortium's computation images ahead of any run.

        Progress is reported through ``on_progress`` keyed by the consortium
        id; ``on_images_ready`` fires once every pull has completed.
        """
        try:
            session = self.sessions.require("download computations")
            acquirer = ImageAcquirer(session.runtime)
            pulled = await acquirer.acquire(
                images, on_progress=lambda image, event: self.hub.on_progress(consortium_id, event)
            )
        except Exception as exc:
            self._report("download computations", exc)
            return False
        self.hub.on_images_ready(consortium_id, pulled)
        return True

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    async def download_run_assets(self, run_id: str, auth_token: str, client_id: str,
                                  api_server_url: Optional[str] = None):
        """Fetch a remote run's results into ``output/<client_id>/<run_id>/``.

        Returns
        -------
        Path or None
            The output directory, or None on failure (reported).
        """
        api_url = api_server_url or self.config.api_server_url
        try:
            if not api_url:
                raise ValueError("No API server URL configured")
            return await asyncio.to_thread(
                download_run_assets, run_id, auth_token, client_id, api_url, self.dirs,
                self.config.download.timeout_sec, self.config.download.chunk_size,
            )
        except Exception as exc:
            self._report("download run assets", exc)
            return None

    async def mirror_outputs(self, user_id: str, consortia) -> list:
        """Build the browsable symlink mirror of finished runs."""
        try:
            return await asyncio.to_thread(mirror_outputs, self.dirs, user_id, consortia)
        except Exception as exc:
            self._report("mirror outputs", exc)
            return []
