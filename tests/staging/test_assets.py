import io
import os
import random
import tarfile
from unittest.mock import MagicMock

import pytest
import requests

from fedrun.contracts import RemoteFetchError
from fedrun.setup_directories import get_run_output_path
from fedrun.staging import download_run_assets

pytestmark = [pytest.mark.unit, pytest.mark.staging]

API_URL = "https://api.example.org/"


def make_archive(members):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def fake_session(body=b"", status_error=None, post_error=None):
    response = MagicMock()
    response.iter_content.return_value = [body[i:i + 1024] for i in range(0, len(body), 1024)]
    if status_error is not None:
        response.raise_for_status.side_effect = status_error
    session = MagicMock()
    if post_error is not None:
        session.post.side_effect = post_error
    else:
        session.post.return_value = response
    return session, response


def download(app_dirs, session):
    return download_run_assets("run-1", "tok-123", "alice", API_URL, app_dirs, session=session)


def leftovers(run_dir):
    return sorted(p.name for p in run_dir.iterdir())


def assert_untouched(app_dirs):
    """No run directory and no work directory left under the user's outputs."""
    assert not get_run_output_path(app_dirs, "alice", "run-1").exists()
    assert leftovers(app_dirs["output"] / "alice") == []


def test_extracts_into_run_output(app_dirs):
    archive = make_archive({"global.json": b"{}", "plots/beta.png": b"\x89PNG"})
    session, response = fake_session(archive)

    run_dir = download(app_dirs, session)

    assert run_dir == get_run_output_path(app_dirs, "alice", "run-1")
    assert (run_dir / "global.json").read_bytes() == b"{}"
    assert (run_dir / "plots" / "beta.png").read_bytes() == b"\x89PNG"
    assert leftovers(run_dir) == ["global.json", "plots"]
    response.close.assert_called_once()


def test_request_shape(app_dirs):
    session, _ = fake_session(make_archive({"a.txt": b"a"}))

    download(app_dirs, session)

    args, kwargs = session.post.call_args
    assert args == ("https://api.example.org/downloadFiles",)
    assert kwargs["files"] == {"runId": (None, "run-1")}
    assert kwargs["headers"] == {"Authorization": "Bearer tok-123"}
    assert kwargs["stream"] is True
    assert kwargs["timeout"] == 60


def test_http_error(app_dirs):
    session, response = fake_session(status_error=requests.HTTPError("401 Unauthorized"))

    with pytest.raises(RemoteFetchError) as excinfo:
        download(app_dirs, session)

    assert "401" in excinfo.value.message
    assert_untouched(app_dirs)
    response.close.assert_called_once()


def test_connection_error(app_dirs):
    session, _ = fake_session(post_error=requests.ConnectionError("connection refused"))

    with pytest.raises(RemoteFetchError):
        download(app_dirs, session)

    assert_untouched(app_dirs)


def test_corrupt_archive_is_deleted(app_dirs):
    session, _ = fake_session(b"this is not a tarball" * 100)

    with pytest.raises(RemoteFetchError) as excinfo:
        download(app_dirs, session)

    assert isinstance(excinfo.value.inner_error, tarfile.TarError)
    assert_untouched(app_dirs)


def test_truncated_archive_leaves_no_partial_files(app_dirs):
    payload = random.Random(0).randbytes(256 * 1024)
    archive = make_archive({"small.txt": b"ok", "large.bin": payload})
    session, _ = fake_session(archive[: len(archive) * 2 // 3])

    with pytest.raises(RemoteFetchError):
        download(app_dirs, session)

    assert_untouched(app_dirs)


def test_member_escaping_the_run_dir_is_refused(app_dirs):
    session, _ = fake_session(make_archive({"../escape.txt": b"x"}))

    with pytest.raises(RemoteFetchError):
        download(app_dirs, session)

    assert not (app_dirs["output"] / "alice" / "escape.txt").exists()
    assert_untouched(app_dirs)


def test_success_leaves_no_work_files(app_dirs):
    session, _ = fake_session(make_archive({"global.json": b"{}"}))

    download(app_dirs, session)

    assert leftovers(app_dirs["output"] / "alice") == ["run-1"]


@pytest.fixture
def failing_move(monkeypatch):
    """Make the move of any file named ``z.txt`` into place fail."""
    real_replace = os.replace

    def replace(src, dst):
        if os.path.basename(src) == "z.txt" and "extract" in str(src):
            raise OSError(28, "No space left on device")
        return real_replace(src, dst)

    monkeypatch.setattr("fedrun.staging.assets.os.replace", replace)


def test_failed_move_removes_new_run_dir(app_dirs, failing_move):
    session, _ = fake_session(make_archive({"a.txt": b"a", "sub/b.txt": b"b", "z.txt": b"z"}))

    with pytest.raises(RemoteFetchError) as excinfo:
        download(app_dirs, session)

    assert "No space left" in excinfo.value.message
    assert_untouched(app_dirs)


def test_failed_move_restores_existing_outputs(app_dirs, failing_move):
    run_dir = get_run_output_path(app_dirs, "alice", "run-1")
    run_dir.mkdir(parents=True)
    (run_dir / "global.json").write_text("old")
    session, _ = fake_session(make_archive({"a.txt": b"a", "global.json": b"new", "z.txt": b"z"}))

    with pytest.raises(RemoteFetchError):
        download(app_dirs, session)

    assert leftovers(run_dir) == ["global.json"]
    assert (run_dir / "global.json").read_text() == "old"
    assert leftovers(app_dirs["output"] / "alice") == ["run-1"]
