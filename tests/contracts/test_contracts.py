import pytest

from fedrun.contracts import (
    ContractViolation,
    EngineNotInitializedError,
    ImageAcquisitionError,
    MappingIncompleteError,
    require,
    assert_snapshot_unchanged,
    assert_terminal,
    assert_transition,
)
from fedrun.contracts.invariants import ALLOWED_TRANSITIONS, RUN_INVARIANTS
from fedrun.models import Run, RunError, RunStatus

from tests.helpers.documents import make_run

pytestmark = [pytest.mark.unit]


def test_require_passes():
    require(True, "should not fail")


def test_require_raises():
    with pytest.raises(ContractViolation, match="boom"):
        require(False, "boom")


def test_every_status_has_transitions():
    assert set(ALLOWED_TRANSITIONS) == {s.value for s in RunStatus}
    assert set(RUN_INVARIANTS) >= {"mapping", "queued", "terminal"}


class TestTransitions:

    @pytest.mark.parametrize("current,target", [
        ("queued", "downloading-images"),
        ("downloading-images", "running"),
        ("downloading-images", "error"),
        ("running", "complete"),
        ("running", "stopped"),
        (RunStatus.RUNNING, RunStatus.ERROR),
    ])
    def test_legal(self, current, target):
        assert_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        ("queued", "running"),
        ("queued", "complete"),
        ("complete", "error"),
        ("error", "running"),
    ])
    def test_illegal(self, current, target):
        with pytest.raises(ContractViolation, match="illegal transition"):
            assert_transition(current, target)

    def test_unknown_status(self):
        with pytest.raises(ValueError):
            assert_transition("queued", "teleported")


class TestRunGuarantees:

    def test_snapshot_unchanged(self):
        run = Run.model_validate(make_run())
        digest = run.pipeline_snapshot.digest()

        assert_snapshot_unchanged(run, digest)

        run.pipeline_snapshot.steps[0].computations[0].docker_image = "img-evil"
        with pytest.raises(ContractViolation, match="pipelineSnapshot"):
            assert_snapshot_unchanged(run, digest)

    def test_terminal_requires_end_date(self):
        run = Run.model_validate(dict(make_run(), status="complete", results={}))
        with pytest.raises(ContractViolation, match="endDate"):
            assert_terminal(run)

    def test_terminal_rejects_running(self):
        run = Run.model_validate(dict(make_run(), status="running", endDate=1))
        with pytest.raises(ContractViolation, match="expected a terminal status"):
            assert_terminal(run)

    def test_error_run_needs_error(self):
        run = Run.model_validate(dict(make_run(), status="error", endDate=1))
        with pytest.raises(ContractViolation):
            assert_terminal(run)

    def test_valid_terminal_runs(self):
        complete = Run.model_validate(dict(make_run(), status="complete", results={"a": 1}, endDate=1))
        failed = Run.model_validate(dict(make_run(), status="error", error={"message": "x"}, endDate=1))
        assert_terminal(complete)
        assert_terminal(failed)


class TestFailures:

    def test_mapping_message_names_consortium(self):
        exc = MappingIncompleteError("Brain Study")
        assert exc.message == (
            "Mapping incomplete for new run from Brain Study. "
            "Please complete variable mapping before continuing."
        )

    def test_image_error_without_image(self):
        exc = ImageAcquisitionError(None, OSError("socket closed"))
        assert exc.message == "Failed to pull computation images: socket closed"

    def test_run_error_from_exception(self):
        try:
            raise EngineNotInitializedError("stop run")
        except EngineNotInitializedError as exc:
            error = RunError.from_exception(exc)

        assert error.message.startswith("Cannot stop run")
        assert "EngineNotInitializedError" in error.stack
        assert error.inner_error is None

    def test_run_error_keeps_inner_error(self):
        exc = ImageAcquisitionError("img-a", {"code": 401})
        error = RunError.from_exception(exc)
        assert error.inner_error == {"code": 401}
        assert error.to_document()["innerError"] == {"code": 401}
