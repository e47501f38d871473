"""
Directory setup for the run controller.

Everything lives under one application directory:
- output/<user>/<run>/      run results and provenance.json
- runs/<user>/<consortium>/ browsable symlink mirror of outputs
- staging/<run>/            input files linked in for the engine
- locks/                    run lease files
- logs/                     log files
"""

import re
import hashlib
from pathlib import Path
from datetime import datetime, timezone
from typing import Optional, Union


def setup_app_directories(app_directory):
    """
    Set up the application directory structure.

    Parameters
    ----------
    app_directory : str or Path
        Base application directory (``~`` is expanded).

    Returns
    -------
    dict
        Dictionary with paths: 'base', 'output', 'runs', 'staging', 'locks', 'logs'
    """
    base = Path(app_directory).expanduser().resolve()

    directories = {
        "base": base,
        "output": base / "output",
        "runs": base / "runs",
        "staging": base / "staging",
        "locks": base / "locks",
        "logs": base / "logs",
    }

    for path in directories.values():
        path.mkdir(parents=True, exist_ok=True)

    return directories


def sanitize_name(name):
    """Replace every non-alphanumeric character with ``_`` and lower-case.

    Example
    -------
    >>> sanitize_name("My Study (2024)")
    'my_study__2024_'
    """
    return re.sub(r"[^a-z0-9]", "_", name, flags=re.IGNORECASE).lower()


def check_path_component(value, what="id"):
    """Return ``value`` if it can name a single directory entry.

    Ids arrive from the remote API and end up in paths that are later
    removed recursively, so they must not climb out of their parent.

    Raises
    ------
    ValueError
        If ``value`` is empty, ``.`` or ``..``, or contains a path separator
        or a NUL byte.
    """
    value = str(value)
    if value in ("", ".", "..") or any(c in value for c in ("/", "\\", "\0")):
        raise ValueError(f"Invalid {what} for a path: {value!r}")
    return value


def parse_end_date(end_date: Optional[Union[int, float, str]]) -> datetime:
    """Parse a run end date given as epoch milliseconds or ISO-8601.

    Missing dates fall back to the current UTC time.
    """
    if end_date is None or end_date == "":
        return datetime.now(timezone.utc)
    if isinstance(end_date, str):
        if end_date.strip().isdigit():
            end_date = int(end_date.strip())
        else:
            return datetime.fromisoformat(end_date.replace('Z', '+00:00'))
    return datetime.fromtimestamp(end_date / 1000, tz=timezone.utc)


def get_run_output_path(dirs, user_id, run_id):
    """
    Get the output directory of a run.

    Returns
    -------
    Path
        Full path: output/<user_id>/<run_id>

    Raises
    ------
    ValueError
        If either id cannot name a single directory.
    """
    user_dir = dirs["output"] / check_path_component(user_id, "user id")
    return user_dir / check_path_component(run_id, "run id")


def get_provenance_path(dirs, user_id, run_id):
    """
    Get the provenance record path of a run.

    Returns
    -------
    Path
        Full path: output/<user_id>/<run_id>/provenance.json
    """
    return get_run_output_path(dirs, user_id, run_id) / "provenance.json"


def get_mirror_run_path(dirs, user_id, consortium_name, pipeline_name, run_id, end_date=None):
    """
    Get the mirror directory of a run (not created).

    Parameters
    ----------
    dirs : dict
        Directories from setup_app_directories()
    user_id : str
        Local user id
    consortium_name : str
        Consortium display name, sanitized for the path
    pipeline_name : str
        Pipeline display name
    run_id : str
        Run id
    end_date : int or str, optional
        Epoch milliseconds or ISO-8601 string

    Returns
    -------
    Path
        Full path: runs/<user>/<sanitized consortium>/<pipeline> - <run> - <YYYY-MM-DD>

    Example
    -------
    >>> get_mirror_run_path(dirs, 'u1', 'My Study', 'Regression', 'r1', 1700000000000)
    Path('.../runs/u1/my_study/Regression - r1 - 2023-11-14')
    """
    date_str = parse_end_date(end_date).strftime("%Y-%m-%d")
    return (
        dirs["runs"] / check_path_component(user_id, "user id") / sanitize_name(consortium_name)
        / f"{pipeline_name} - {check_path_component(run_id, 'run id')} - {date_str}"
    )


def get_staging_path(dirs, run_id):
    """
    Get the staging directory of a run (not created).

    Returns
    -------
    Path
        Full path: staging/<run_id>

    Raises
    ------
    ValueError
        If ``run_id`` cannot name a single directory.
    """
    return dirs["staging"] / check_path_component(run_id, "run id")


def get_lock_path(dirs, consortium_id, run_id):
    """
    Get the lease file of a (consortium, run) pair.

    Returns
    -------
    Path
        Full path: locks/<consortium>__<run>-<digest>.lock, where the
        readable part is sanitized and the digest is taken over the exact
        ids, so ids that sanitize alike still get their own lease.
    """
    digest = hashlib.sha256(f"{consortium_id}\0{run_id}".encode("utf-8")).hexdigest()[:16]
    return dirs["locks"] / f"{sanitize_name(consortium_id)}__{sanitize_name(run_id)}-{digest}.lock"


def get_log_path(dirs, user_id=None):
    """
    Get organized log file path.

    Parameters
    ----------
    dirs : dict
        Directories from setup_app_directories()
    user_id : str, optional
        Local user id

    Returns
    -------
    Path
        Full path to log file
    """
    log_dir = dirs["logs"]
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")

    if user_id:
        filename = f"fedrun_{user_id}_{timestamp}.log"
    else:
        filename = "fedrun_latest.log"

    return log_dir / filename
