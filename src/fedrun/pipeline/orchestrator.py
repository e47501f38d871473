"""Run execution orchestration.

Drives one consortium pipeline run end to end on the event loop:
resolve inputs, stage files, acquire images, hand the run to the
execution engine, relay its live state, then finalize or fail.
"""

import asyncio
import logging
from typing import Any, Optional, Union

from fedrun.contracts import (
    ContractViolation,
    ExecutionError,
    MappingIncompleteError,
    RunAlreadyActiveError,
    StagingError,
    assert_snapshot_unchanged,
    assert_terminal,
    assert_transition,
)
from fedrun.mapping import resolve_mappings
from fedrun.models import Consortium, DataMappings, Run, RunError, RunStatus, now_ms
from fedrun.pipeline.events import RunEventHub
from fedrun.pipeline.lease import RunLease
from fedrun.pipeline.run_tracker import RunTracker
from fedrun.runtime import ContainerRuntime, Engine, EngineRun, ImageAcquirer
from fedrun.schemas import InternalConfig
from fedrun.staging import StagingArea, write_provenance
from fedrun.storage import LocalStore

__all__ = ['RunOrchestrator']

logger = logging.getLogger(__name__)


def _engine_error(exc: BaseException) -> ExecutionError:
    """Wrap an engine failure, keeping whatever partial input it carries."""
    partial_input = getattr(exc, "partial_input", None)
    if partial_input is None:
        partial_input = getattr(exc, "input", None)
    inner = getattr(exc, "error", None)
    error = ExecutionError(
        str(exc) or type(exc).__name__,
        inner_error=inner if inner is not None else exc,
        partial_input=partial_input,
    )
    error.__cause__ = exc
    return error


class RunOrchestrator:
    """Drives consortium pipeline runs through their lifecycle.

    Every run goes ``queued → downloading-images → running`` and ends in
    ``complete``, ``error`` or ``stopped``. Runs are independent and keyed
    by run id; any number may be in flight on the same loop.

    **Phases:**

    1. **Queued**: inputs are resolved against the local mapping, with
       lanes pointing at the run's staged paths (an incomplete mapping
       aborts with a warning, nothing acquired). The run lease is taken; a
       run held elsewhere is skipped without being persisted or announced.
       Otherwise the run is persisted right away.

    2. **Downloading images**: input files are staged and every
       computation image is pulled. A failure here cleans up and fails the
       run without ever reaching the engine.

    3. **Running**: unused images are pruned (best effort), the engine is
       started and every state update it emits is relayed until its result
       settles.

    4. **Terminal**: on success the provenance record is written once and
       staging removed; only runs this client initiated (``type ==
       "local"``) announce completion, joined runs learn it through the
       remote channel. On failure staging is removed and a structured error
       is announced for every run.

    Any failure after the run is persisted, including a failure to record a
    status change, removes staging and ends the run in ``error``. Nothing is
    retried automatically. A retry is a new run.

    Example usage::

        orchestrator = RunOrchestrator(engine, runtime, config, dirs, hub=hub)
        run = await orchestrator.start(consortium, data_mappings, run)
    """

    def __init__(self, engine: Engine, runtime: ContainerRuntime,
                 config: InternalConfig, dirs: dict,
                 hub: Optional[RunEventHub] = None,
                 tracker: Optional[RunTracker] = None,
                 store: Optional[LocalStore] = None,
                 user_id: Optional[str] = None):
        """Initialize orchestrator.

        Parameters
        ----------
        engine : Engine
            Execution engine of the current session.
        runtime : ContainerRuntime
            Container runtime used to pull and prune images.
        config : InternalConfig
            Resolved runtime configuration.
        dirs : dict
            Directories from setup_app_directories().
        hub : RunEventHub, optional
            Where run events go. A private hub is created if omitted.
        tracker : RunTracker, optional
            Run history; every status change is recorded when given.
        store : LocalStore, optional
            Local store; the latest run document is kept in ``runs``.
        user_id : str, optional
            Local user id, defaults to ``config.user_id``.
        """
        self.engine = engine
        self.acquirer = ImageAcquirer(runtime)
        self.config = config
        self.dirs = dirs
        self.hub = hub if hub is not None else RunEventHub()
        self.tracker = tracker
        self.store = store
        self.user_id = user_id or config.user_id
        if not self.user_id:
            raise ValueError("RunOrchestrator needs a user id (argument or config.user_id)")

        self.staging = StagingArea(dirs, config.staging.link_mode)

        self._active = {}
        self._stop_requested = set()

    # ------------------------------------------------------------------
    # Introspection and external requests
    # ------------------------------------------------------------------

    @property
    def active_runs(self) -> dict:
        """Runs currently in flight, by run id."""
        return dict(self._active)

    def is_active(self, run_id: str) -> bool:
        return run_id in self._active

    def note_stop_requested(self, run_id: str) -> None:
        """Remember that a stop was requested, so an engine failure that
        follows ends the run as ``stopped`` rather than ``error``."""
        if run_id in self._active:
            self._stop_requested.add(run_id)

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    async def _register(self, run: Run):
        if self.tracker is not None:
            await asyncio.to_thread(self.tracker.register_run, run)
        if self.store is not None:
            await asyncio.to_thread(self.store.put, "runs", run.to_document())

    async def _record(self, run: Run):
        status = RunStatus(run.status).value
        error = run.error.message if run.error is not None else None
        if self.tracker is not None:
            await asyncio.to_thread(self.tracker.mark_status, run.id, status, error, run)
        if self.store is not None:
            await asyncio.to_thread(self.store.put, "runs", run.to_document())

    async def _transition(self, run: Run, status: RunStatus):
        """Move a live run on. A failure to record it fails the run."""
        assert_transition(run.status, status)
        run.status = status
        logger.info("Run %s: %s", run.id, status.value)
        await self._record(run)

    async def _settle(self, run: Run, status: RunStatus):
        """Move a run to its terminal status.

        The run is terminal whether or not the record can be written, so a
        persistence failure is logged and the terminal path carries on.
        """
        assert_transition(run.status, status)
        run.status = status
        logger.info("Run %s: %s", run.id, status.value)
        try:
            await self._record(run)
        except Exception:
            logger.exception("Failed to record %s status of run %s", status.value, run.id)

    async def _cleanup(self, run_id: str):
        """Remove the run's staged inputs on both sides. Never raises."""
        try:
            await asyncio.to_thread(self.staging.unstage_files, run_id)
        except Exception:
            logger.exception("Failed to remove staging for run %s", run_id)
        try:
            await self.engine.unlink_files(run_id)
        except Exception:
            logger.exception("Engine failed to unlink files of run %s", run_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, consortium: Union[Consortium, dict],
                    data_mappings: Union[DataMappings, dict],
                    run: Union[Run, dict],
                    network_volume: Optional[str] = None,
                    run_state: Optional[dict] = None) -> Optional[Run]:
        """Drive one run to a terminal state.

        Parameters
        ----------
        consortium : Consortium or dict
            Consortium the run belongs to, with its ``stepIO`` mapping.
        data_mappings : DataMappings or dict
            Local data feeding the run.
        run : Run or dict
            The run as created remotely (``pipelineSnapshot``, ``clients``,
            ``type``, ``pipelineSteps``, ...).
        network_volume : str, optional
            Engine network volume.
        run_state : dict, optional
            Saved state of a suspended run to resume from.

        Returns
        -------
        Run or None
            The terminal run, or None if the run never started (incomplete
            mapping, or the run is already active elsewhere).

        Raises
        ------
        ContractViolation
            Only on a controller bug. Run failures are reported as events.
        """
        consortium = Consortium.model_validate(consortium)
        data_mappings = DataMappings.model_validate(data_mappings)
        run = Run.model_validate(run)

        # Lanes point at the staged copies the engine is handed
        staged_mappings = self._staged_mappings(run.id, data_mappings)

        steps = run.pipeline_snapshot.steps or consortium.pipeline_steps
        try:
            resolution = resolve_mappings(consortium, staged_mappings.files_by_group, steps)
        except MappingIncompleteError as exc:
            logger.warning("Run %s not started: %s", run.id, exc.message)
            self.hub.on_warning(exc.message)
            return None

        snapshot = run.pipeline_snapshot.model_copy(update={"steps": resolution.steps})
        run = run.model_copy(update={
            "pipeline_snapshot": snapshot,
            "consortium_id": run.consortium_id or consortium.id,
            "status": RunStatus.QUEUED,
            "start_date": run.start_date or now_ms(),
        })
        digest = snapshot.digest()

        # Nothing is persisted or announced for a run someone else drives
        try:
            if run.id in self._active:
                raise RunAlreadyActiveError(consortium.id, run.id)
            lease = self._claim(consortium, run)
        except RunAlreadyActiveError as exc:
            logger.warning("%s, not starting", exc.message)
            return None

        self._active[run.id] = run
        try:
            return await self._drive(consortium, data_mappings, run, resolution.steps,
                                     network_volume, run_state)
        finally:
            self._active.pop(run.id, None)
            self._stop_requested.discard(run.id)
            lease.release()
            assert_snapshot_unchanged(run, digest)

    def _claim(self, consortium: Consortium, run: Run) -> RunLease:
        """Take the run lease or raise RunAlreadyActiveError."""
        lease = RunLease(self.dirs, consortium.id, run.id, enabled=self.config.lease.enabled)
        if not lease.acquire():
            raise RunAlreadyActiveError(consortium.id, run.id)
        return lease

    def _staged_mappings(self, run_id: str, data_mappings: DataMappings) -> DataMappings:
        """``data_mappings`` with every path replaced by its staged location."""
        def staged(path):
            return str(self.staging.staged_path(run_id, path))

        files_by_group = {
            group_id: staged(data) if isinstance(data, str) else [staged(p) for p in data]
            for group_id, data in data_mappings.files_by_group.items()
        }
        return DataMappings(
            files_by_group=files_by_group,
            all_files=[staged(p) for p in data_mappings.all_files],
        )

    async def _drive(self, consortium, data_mappings, run, steps, network_volume, run_state):
        try:
            await self._register(run)
            self.hub.on_queued(run, steps)
            results = await self._execute(consortium, data_mappings, run, network_volume, run_state)
        except ContractViolation:
            await self._cleanup(run.id)
            raise
        except Exception as exc:
            logger.error("Run %s failed: %s", run.id, exc)
            await self._cleanup(run.id)
            stopped = isinstance(exc, ExecutionError) and run.id in self._stop_requested
            return await self._fail(consortium, run, exc,
                                    RunStatus.STOPPED if stopped else RunStatus.ERROR)

        return await self._complete(consortium, run, results)

    async def _execute(self, consortium, data_mappings, run, network_volume, run_state) -> Any:
        """Stage, acquire and run on the engine; return the engine's results."""
        await self._transition(run, RunStatus.DOWNLOADING_IMAGES)

        def forward_progress(image, event):
            self.hub.on_progress(run.id, event)

        staged = await asyncio.to_thread(
            self.staging.stage_files, run.id, data_mappings.file_array()
        )
        await self.acquirer.acquire(
            run.pipeline_snapshot.image_names(), on_progress=forward_progress
        )

        if self.config.images.prune_after_pull:
            await self.acquirer.prune()

        await self._transition(run, RunStatus.RUNNING)
        logger.info("Starting pipeline %s of %s (run %s)",
                    run.pipeline_snapshot.name, consortium.name, run.id)

        try:
            engine_run = await self.engine.start_pipeline(
                consortium.id,
                run.pipeline_snapshot.to_document(),
                [str(path) for path in staged],
                run.id,
                run.pipeline_steps,
                network_volume,
                run_state,
            )
            return await self._relay(run.id, engine_run)
        except ContractViolation:
            raise
        except Exception as exc:
            raise _engine_error(exc) from exc

    async def _relay(self, run_id: str, engine_run: EngineRun) -> Any:
        """Relay state updates until the engine result settles; return it."""
        updates = engine_run.state_updates

        async def pump():
            while True:
                data = await updates.get()
                self.hub.on_state_update(run_id, data)

        relay = asyncio.create_task(pump())
        try:
            return await engine_run.result
        finally:
            relay.cancel()
            await asyncio.gather(relay, return_exceptions=True)
            # Updates emitted right before the result settled
            while not updates.empty():
                self.hub.on_state_update(run_id, updates.get_nowait())

    async def _complete(self, consortium: Consortium, run: Run, results: Any) -> Run:
        run.results = results
        run.end_date = now_ms()
        await self._settle(run, RunStatus.COMPLETE)

        try:
            await asyncio.to_thread(write_provenance, run, consortium, self.dirs, self.user_id)
        except StagingError:
            logger.exception("Provenance for run %s could not be written", run.id)

        await self._cleanup(run.id)
        assert_terminal(run)
        logger.info("Run %s complete", run.id)

        if run.is_local:
            self.hub.on_terminal(consortium.name, run)
        return run

    async def _fail(self, consortium: Consortium, run: Run, exc: BaseException,
                    status: RunStatus) -> Run:
        run.error = RunError.from_exception(exc)
        run.end_date = now_ms()
        await self._settle(run, status)

        assert_terminal(run)
        self.hub.on_terminal(consortium.name, run)
        return run
