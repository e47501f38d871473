"""Download of a remote run's result bundle.

The bundle is a gzipped tar streamed from ``<api>/downloadFiles``. It is
written to a work directory beside the run's outputs, extracted there in
streaming mode and only then moved into place, so a failed download or
extraction leaves no run directory and no partial files behind. A move that
fails half way is undone. The archive never outlives the call.
"""

import os
import shutil
import logging
import tarfile
import tempfile
from pathlib import Path
from typing import Optional

import requests

from fedrun.contracts import RemoteFetchError
from fedrun.setup_directories import get_run_output_path

logger = logging.getLogger(__name__)


def _fetch_archive(http, url, run_id, auth_token, archive_path, timeout, chunk_size):
    response = http.post(
        url,
        files={"runId": (None, run_id)},
        headers={"Authorization": f"Bearer {auth_token}"},
        stream=True,
        timeout=timeout,
    )
    try:
        response.raise_for_status()
        with open(archive_path, "wb") as f:
            for chunk in response.iter_content(chunk_size=chunk_size):
                if chunk:
                    f.write(chunk)
    finally:
        response.close()


def _extract_archive(archive_path: Path, scratch: Path):
    scratch.mkdir()
    with open(archive_path, "rb") as f:
        with tarfile.open(fileobj=f, mode="r|*") as tar:
            tar.extractall(scratch, filter="data")


def _undo_moves(placed: list):
    """Take moved files back out, restoring whatever they replaced."""
    for target, saved, moved in reversed(placed):
        try:
            if moved:
                target.unlink(missing_ok=True)
            if saved is not None:
                os.replace(saved, target)
        except OSError:
            logger.exception("Could not undo extraction of %s", target)


def _move_into_place(scratch: Path, run_dir: Path, backup: Path) -> int:
    """Move extracted files into ``run_dir``; all of them or none.

    Files already in ``run_dir`` are replaced. Until every file is in place
    they are kept in ``backup`` so a failure can put them back.
    """
    created = not run_dir.exists()
    placed = []
    try:
        run_dir.mkdir(parents=True, exist_ok=True)
        for source in sorted(scratch.rglob("*")):
            if source.is_dir() and not source.is_symlink():
                continue
            relative = source.relative_to(scratch)
            target = run_dir / relative

            saved = None
            if os.path.lexists(target):
                saved = backup / relative
                saved.parent.mkdir(parents=True, exist_ok=True)
                os.replace(target, saved)
            entry = [target, saved, False]
            placed.append(entry)

            target.parent.mkdir(parents=True, exist_ok=True)
            os.replace(source, target)
            entry[2] = True
    except OSError:
        if created:
            shutil.rmtree(run_dir, ignore_errors=True)
        else:
            _undo_moves(placed)
        raise
    return len(placed)


def download_run_assets(run_id: str, auth_token: str, client_id: str, api_url: str,
                        dirs: dict, timeout: int = 60, chunk_size: int = 1024 * 1024,
                        session: Optional[requests.Session] = None) -> Path:
    """Fetch and extract a remote run's results into its output directory.

    Parameters
    ----------
    run_id : str
        Run to fetch.
    auth_token : str
        Bearer token for the API server.
    client_id : str
        Local user id; results land in ``output/<client_id>/<run_id>/``.
    api_url : str
        API server base URL.
    dirs : dict
        Directories from setup_app_directories().
    timeout : int
        Connect/read timeout in seconds.
    chunk_size : int
        Streaming chunk size in bytes.
    session : requests.Session, optional
        Session to issue the request with.

    Returns
    -------
    Path
        The run's output directory.

    Raises
    ------
    RemoteFetchError
        If the download, the extraction or the final move fails. The run
        directory is then left as it was before the call.
    ValueError
        If ``run_id`` or ``client_id`` cannot name a directory.

    Notes
    -----
    Blocking; async callers run it with ``asyncio.to_thread``. Single
    attempt, no retries.
    """
    http = session if session is not None else requests
    run_dir = get_run_output_path(dirs, client_id, run_id)
    url = f"{api_url.rstrip('/')}/downloadFiles"

    # Same filesystem as run_dir, so the final moves are renames
    run_dir.parent.mkdir(parents=True, exist_ok=True)
    work = Path(tempfile.mkdtemp(prefix=f".{run_id}-", dir=run_dir.parent))
    archive_path = work / f"{run_id}.tar.gz"

    logger.info("Downloading assets of run %s from %s", run_id, url)
    try:
        _fetch_archive(http, url, run_id, auth_token, archive_path, timeout, chunk_size)
        _extract_archive(archive_path, work / "extract")
        archive_path.unlink()
        moved = _move_into_place(work / "extract", run_dir, work / "replaced")
    except (requests.RequestException, tarfile.TarError, OSError, EOFError) as exc:
        logger.error("Asset download for run %s failed: %s", run_id, exc)
        raise RemoteFetchError(f"Failed to download assets of run {run_id}: {exc}", exc) from exc
    finally:
        shutil.rmtree(work, ignore_errors=True)

    logger.info("Extracted %d file(s) for run %s into %s", moved, run_id, run_dir)
    return run_dir
