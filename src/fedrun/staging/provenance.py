"""Provenance records of completed runs."""

import json
import logging
from pathlib import Path
from typing import Optional

from fedrun.contracts import StagingError
from fedrun.models import Consortium, ProvenanceRecord, Run
from fedrun.setup_directories import get_provenance_path

logger = logging.getLogger(__name__)


def write_provenance(run: Run, consortium: Consortium, dirs: dict, user_id: str) -> Optional[Path]:
    """Write ``output/<user>/<run>/provenance.json`` once per run id.

    The file is created exclusively, so a second call, from this process
    or another, leaves the first record untouched.

    Parameters
    ----------
    run : Run
        The completed run.
    consortium : Consortium
        Consortium the run belongs to.
    dirs : dict
        Directories from setup_app_directories().
    user_id : str
        Local user id.

    Returns
    -------
    Path or None
        Path of the record written, or None if one already existed.

    Raises
    ------
    StagingError
        If the record cannot be written.
    """
    record = ProvenanceRecord.from_run(run, consortium)
    path = get_provenance_path(dirs, user_id, run.id)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "x", encoding="utf-8") as f:
            json.dump(record.to_document(), f, indent=2, default=str)
    except FileExistsError:
        logger.debug("Provenance for run %s already written", run.id)
        return None
    except OSError as exc:
        raise StagingError(f"Failed to write provenance for run {run.id}: {exc}", exc) from exc

    logger.info("Provenance written: %s", path)
    return path


def read_provenance(dirs: dict, user_id: str, run_id: str) -> Optional[dict]:
    """Load a run's provenance record, or None if it has none."""
    path = get_provenance_path(dirs, user_id, run_id)
    if not path.exists():
        return None
    with open(path, encoding="utf-8") as f:
        return json.load(f)
