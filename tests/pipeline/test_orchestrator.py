import asyncio

import pytest

from fedrun.models import RunStatus
from fedrun.pipeline import RunEventHub, RunLease, RunOrchestrator
from fedrun.schemas import resolve_config
from fedrun.setup_directories import get_provenance_path, get_staging_path
from fedrun.pipeline import RunTracker
from fedrun.staging import StagingArea, read_provenance

from tests.helpers.documents import make_consortium, make_data_mappings, make_run
from tests.helpers.fakes import EngineFailure, FakeEngine, FakeRuntime, RecordingObserver

pytestmark = [pytest.mark.unit, pytest.mark.pipeline]


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def observer():
    return RecordingObserver()


@pytest.fixture
def orchestrator(engine, runtime, observer, internal_config, app_dirs, tracker, store):
    hub = RunEventHub()
    hub.subscribe(observer)
    return RunOrchestrator(engine, runtime, internal_config, app_dirs,
                           hub=hub, tracker=tracker, store=store)


@pytest.fixture
def start(orchestrator, input_file):
    """Run the default local run to its end and return it."""
    def _start(run=None, consortium=None):
        return asyncio.run(orchestrator.start(
            consortium or make_consortium(),
            make_data_mappings(input_file),
            run or make_run(),
        ))
    return _start


def test_needs_a_user_id(engine, runtime, app_dirs):
    with pytest.raises(ValueError, match="user id"):
        RunOrchestrator(engine, runtime, resolve_config(), app_dirs)


class TestSuccessfulRun:

    def test_local_run_completes(self, start, engine, observer):
        run = start()

        assert run.status == RunStatus.COMPLETE.value
        assert run.results == engine.results
        assert run.error is None
        assert run.end_date is not None
        terminal = observer.named("on_terminal")
        assert len(terminal) == 1
        assert terminal[0] == ("Brain Study", run)

    def test_queued_event_carries_resolved_steps(self, start, observer, app_dirs, input_file):
        start()

        (run, steps), = observer.named("on_queued")
        assert run.id == "run-1"
        staged = str(StagingArea(app_dirs).staged_path("run-1", input_file))
        assert steps[0].input_map["covariates"].value == [[[staged]], ["age"], ["number"]]

    def test_engine_receives_staged_files_and_snapshot(self, start, engine, app_dirs, input_file):
        start()

        call, = engine.started
        assert call["consortium_id"] == "cons-1"
        assert call["run_id"] == "run-1"
        assert call["per_step_config"] == [{"lambda": 0.5}]
        staging = get_staging_path(app_dirs, "run-1")
        assert len(call["file_array"]) == 1
        assert call["file_array"][0].startswith(str(staging))
        covariates = call["pipeline_snapshot"]["steps"][0]["inputMap"]["covariates"]
        assert covariates == {"value": [[call["file_array"]], ["age"], ["number"]]}

    def test_every_lane_value_is_handed_to_the_engine(self, orchestrator, engine, tmp_path, input_file):
        meta = tmp_path / "data" / "meta.csv"
        meta.write_text("subject,age\n")
        mappings = {"filesByGroup": {"grp-1": str(meta)}, "allFiles": [str(input_file)]}

        run = asyncio.run(orchestrator.start(make_consortium(), mappings, make_run()))

        assert run.status == RunStatus.COMPLETE.value
        call, = engine.started
        values = call["pipeline_snapshot"]["steps"][0]["inputMap"]["covariates"]["value"][0]
        assert values and all(value in call["file_array"] for value in values)
        assert len(call["file_array"]) == 2

    def test_images_pulled_once_then_pruned(self, start, runtime):
        start()

        assert runtime.pull_requests == [["img-a:latest", "img-b:latest"]]
        assert runtime.prune_calls == 1

    def test_progress_is_forwarded_per_run(self, start, observer):
        start()

        progress = observer.named("on_progress")
        assert progress
        assert all(run_id == "run-1" for run_id, _ in progress)
        completed = {event["image"] for _, event in progress if event["status"] == "complete"}
        assert completed == {"img-a:latest", "img-b:latest"}

    def test_provenance_written_and_staging_removed(self, start, engine, app_dirs):
        start()

        record = read_provenance(app_dirs, "alice", "run-1")
        assert record["results"] == engine.results
        assert record["consortium"]["name"] == "Brain Study"
        assert not get_staging_path(app_dirs, "run-1").exists()
        assert engine.unlinked == ["run-1"]

    def test_history_and_store_follow_the_run(self, start, tracker, store):
        start()

        row = tracker.get_run_status("run-1")
        assert row["status"] == "complete"
        assert row["consortium_id"] == "cons-1"
        assert row["pipeline_name"] == "Regression"
        for column in ("queued_at", "downloading_at", "running_at", "ended_at"):
            assert row[column] is not None
        assert store.get("runs", "run-1")["status"] == "complete"

    def test_state_updates_relayed_in_order(self, orchestrator, observer, input_file):
        orchestrator.engine.updates = [{"step": 1}, {"step": 2}, {"step": 3}]

        asyncio.run(orchestrator.start(make_consortium(), make_data_mappings(input_file), make_run()))

        assert observer.named("on_state_update") == [
            ("run-1", {"step": 1}), ("run-1", {"step": 2}), ("run-1", {"step": 3}),
        ]

    def test_run_is_active_while_engine_works(self, orchestrator, engine, observer, input_file):
        async def scenario():
            engine.hold = asyncio.Event()
            task = asyncio.create_task(orchestrator.start(
                make_consortium(), make_data_mappings(input_file), make_run()
            ))
            while not engine.started:
                await asyncio.sleep(0.01)
            await asyncio.sleep(0.01)
            assert orchestrator.is_active("run-1")
            engine.hold.set()
            return await task

        run = asyncio.run(scenario())

        assert run.status == RunStatus.COMPLETE.value
        assert not orchestrator.is_active("run-1")

    def test_joined_run_emits_no_completion(self, start, observer, app_dirs):
        run = start(run=make_run(run_type="decentralized"))

        assert run.status == RunStatus.COMPLETE.value
        assert observer.named("on_terminal") == []
        assert not get_staging_path(app_dirs, "run-1").exists()

    def test_prune_can_be_disabled(self, make_config, engine, runtime, app_dirs, input_file):
        config = make_config(prune_after_pull=False)
        orchestrator = RunOrchestrator(engine, runtime, config, app_dirs)

        asyncio.run(orchestrator.start(make_consortium(), make_data_mappings(input_file), make_run()))

        assert runtime.prune_calls == 0

    def test_failed_prune_does_not_fail_the_run(self, orchestrator, runtime, input_file):
        runtime.prune_error = RuntimeError("prune already running")

        run = asyncio.run(orchestrator.start(make_consortium(), make_data_mappings(input_file), make_run()))

        assert run.status == RunStatus.COMPLETE.value

    def test_provenance_failure_keeps_run_complete(self, start, app_dirs):
        (app_dirs["output"] / "alice").write_text("not a directory")

        run = start()

        assert run.status == RunStatus.COMPLETE.value
        assert not get_provenance_path(app_dirs, "alice", "run-1").exists()


class TestRunNotStarted:

    def test_incomplete_mapping(self, start, engine, runtime, observer, tracker):
        assert start(consortium=make_consortium(mapped=False)) is None

        warning, = observer.named("on_warning")
        assert "Brain Study" in warning[0]
        assert engine.started == []
        assert runtime.pull_requests == []
        assert tracker.get_run_status("run-1") is None
        assert observer.named("on_terminal") == []

    def test_lease_held_elsewhere(self, start, engine, runtime, app_dirs, observer, store, tracker):
        store.put("runs", {"id": "run-1", "status": "running"})
        other = RunLease(app_dirs, "cons-1", "run-1")
        assert other.acquire()
        try:
            assert start() is None
        finally:
            other.release()

        assert engine.started == []
        assert runtime.pull_requests == []
        assert observer.named("on_queued") == []
        assert observer.named("on_terminal") == []
        assert store.get("runs", "run-1")["status"] == "running"
        assert tracker.get_run_status("run-1") is None

    def test_run_id_that_is_not_a_directory_name(self, orchestrator, engine, input_file, tracker):
        with pytest.raises(ValueError, match="run id"):
            asyncio.run(orchestrator.start(
                make_consortium(), make_data_mappings(input_file), make_run(run_id="../x")
            ))

        assert engine.started == []
        assert tracker.get_run_status("../x") is None

    def test_same_run_started_twice(self, orchestrator, engine, input_file):
        async def scenario():
            engine.hold = asyncio.Event()
            first = asyncio.create_task(orchestrator.start(
                make_consortium(), make_data_mappings(input_file), make_run()
            ))
            while not engine.started:
                await asyncio.sleep(0.01)
            second = await orchestrator.start(
                make_consortium(), make_data_mappings(input_file), make_run()
            )
            engine.hold.set()
            return await first, second

        first, second = asyncio.run(scenario())

        assert first.status == RunStatus.COMPLETE.value
        assert second is None
        assert len(engine.started) == 1


class TestFailedRun:

    @pytest.fixture
    def failing_record(self, monkeypatch, tracker):
        """Make the history refuse one status."""
        def _fail_on(status):
            mark_status = tracker.mark_status

            def refuse(run_id, new_status, *args, **kwargs):
                if new_status == status:
                    raise RuntimeError("database is locked")
                return mark_status(run_id, new_status, *args, **kwargs)

            monkeypatch.setattr(tracker, "mark_status", refuse)
        return _fail_on

    @pytest.mark.parametrize("status", ["downloading-images", "running"])
    def test_unrecorded_transition_fails_the_run(self, start, failing_record, engine, observer,
                                                 app_dirs, tracker, status):
        failing_record(status)

        run = start()

        assert run.status == RunStatus.ERROR.value
        assert "database is locked" in run.error.message
        assert engine.started == []
        assert not get_staging_path(app_dirs, "run-1").exists()
        assert engine.unlinked == ["run-1"]
        terminal, = observer.named("on_terminal")
        assert terminal[1] is run
        assert tracker.get_run_status("run-1")["status"] == "error"

    def test_unrecorded_registration_fails_the_run(self, start, monkeypatch, tracker, engine,
                                                   runtime, observer, app_dirs):
        def refuse(run):
            raise RuntimeError("database is locked")
        monkeypatch.setattr(tracker, "register_run", refuse)

        run = start()

        assert run.status == RunStatus.ERROR.value
        assert runtime.pull_requests == []
        assert engine.started == []
        assert observer.named("on_queued") == []
        assert len(observer.named("on_terminal")) == 1
        assert not get_staging_path(app_dirs, "run-1").exists()

    def test_unrecorded_completion_still_ends_the_run(self, start, failing_record, engine,
                                                      observer, app_dirs, store):
        failing_record("complete")

        run = start()

        assert run.status == RunStatus.COMPLETE.value
        assert run.results == engine.results
        assert not get_staging_path(app_dirs, "run-1").exists()
        assert len(observer.named("on_terminal")) == 1
        assert store.get("runs", "run-1")["status"] == "running"

    def test_unrecorded_failure_still_announced(self, start, failing_record, engine, observer,
                                                app_dirs):
        engine.error = EngineFailure("step 1 crashed")
        failing_record("error")

        run = start()

        assert run.status == RunStatus.ERROR.value
        assert run.error.message == "step 1 crashed"
        assert not get_staging_path(app_dirs, "run-1").exists()
        assert len(observer.named("on_terminal")) == 1

    def test_image_failure_never_reaches_engine(self, orchestrator, engine, runtime, observer,
                                                app_dirs, input_file):
        runtime.failures = {"img-b:latest": ConnectionError("registry unreachable")}

        run = asyncio.run(orchestrator.start(make_consortium(), make_data_mappings(input_file), make_run()))

        assert run.status == RunStatus.ERROR.value
        assert "img-b:latest" in run.error.message
        assert run.results is None
        assert engine.started == []
        assert runtime.prune_calls == 0
        assert not get_staging_path(app_dirs, "run-1").exists()
        assert engine.unlinked == ["run-1"]
        assert read_provenance(app_dirs, "alice", "run-1") is None
        terminal, = observer.named("on_terminal")
        assert terminal[1].error.message == run.error.message

    def test_missing_input_file(self, orchestrator, engine, tmp_path):
        mappings = make_data_mappings(tmp_path / "gone.csv")

        run = asyncio.run(orchestrator.start(make_consortium(), mappings, make_run()))

        assert run.status == RunStatus.ERROR.value
        assert "does not exist" in run.error.message
        assert engine.started == []

    def test_engine_error_keeps_partial_input(self, orchestrator, engine, app_dirs, input_file, tracker):
        engine.error = EngineFailure("step 2 crashed", input={"covariates": [1, 2]})

        run = asyncio.run(orchestrator.start(make_consortium(), make_data_mappings(input_file), make_run()))

        assert run.status == RunStatus.ERROR.value
        assert run.error.message == "step 2 crashed"
        assert run.error.partial_input == {"covariates": [1, 2]}
        assert "EngineFailure" in run.error.stack
        assert run.results is None
        assert not get_staging_path(app_dirs, "run-1").exists()
        assert read_provenance(app_dirs, "alice", "run-1") is None
        assert tracker.get_run_status("run-1")["error_message"] == "step 2 crashed"

    def test_engine_refusing_the_pipeline(self, orchestrator, engine, input_file):
        engine.start_error = RuntimeError("engine is shutting down")

        run = asyncio.run(orchestrator.start(make_consortium(), make_data_mappings(input_file), make_run()))

        assert run.status == RunStatus.ERROR.value
        assert "shutting down" in run.error.message

    def test_joined_run_failure_is_announced(self, start, engine, observer):
        engine.error = EngineFailure("remote site dropped")

        run = start(run=make_run(run_type="decentralized"))

        assert run.status == RunStatus.ERROR.value
        assert len(observer.named("on_terminal")) == 1

    def test_stop_request_ends_run_stopped(self, orchestrator, engine, input_file):
        async def scenario():
            engine.hold = asyncio.Event()
            task = asyncio.create_task(orchestrator.start(
                make_consortium(), make_data_mappings(input_file), make_run()
            ))
            while not engine.started:
                await asyncio.sleep(0.01)
            orchestrator.note_stop_requested("run-1")
            await engine.request_stop("pipe-1", "run-1")
            return await task

        run = asyncio.run(scenario())

        assert run.status == RunStatus.STOPPED.value
        assert run.error is not None
        assert engine.unlinked == ["run-1"]
