"""Browsable mirror of run outputs.

Builds ``runs/<user>/<consortium>/<pipeline> - <run> - <date>/`` trees of
symlinks pointing into each run's canonical ``output/<user>/<run>/``.
Nothing is ever copied.
"""

import os
import logging
from pathlib import Path
from typing import Iterable, Union

from fedrun.models import MirrorConsortium
from fedrun.setup_directories import get_mirror_run_path, get_run_output_path

logger = logging.getLogger(__name__)


def _output_files(output_dir: Path) -> list:
    return sorted(p for p in output_dir.rglob("*") if p.is_file())


def mirror_outputs(dirs: dict, user_id: str,
                   consortia: Iterable[Union[MirrorConsortium, dict]]) -> list:
    """Link every run's output files into the per-user mirror tree.

    Parent directories are created only when a file needs them; links that
    already exist are left as they are.

    Parameters
    ----------
    dirs : dict
        Directories from setup_app_directories().
    user_id : str
        Local user id.
    consortia : iterable of MirrorConsortium or dict
        Consortia with the runs to mirror.

    Returns
    -------
    list of str
        Mirrored paths relative to ``runs/<user_id>/``, whether created now
        or already present. Runs without an output directory, or whose id
        cannot name one, contribute nothing.
    """
    user_root = dirs["runs"] / user_id
    mirrored = []
    created = 0

    for consortium in consortia:
        consortium = MirrorConsortium.model_validate(consortium)

        for run in consortium.runs:
            try:
                output_dir = get_run_output_path(dirs, user_id, run.id)
            except ValueError as exc:
                logger.warning("Skipping run in mirror: %s", exc)
                continue
            if not output_dir.is_dir():
                logger.debug("No outputs for run %s", run.id)
                continue

            run_dir = get_mirror_run_path(
                dirs, user_id, consortium.name, run.pipeline_name, run.id, run.end_date
            )

            for source in _output_files(output_dir):
                link = run_dir / source.relative_to(output_dir)
                if not os.path.lexists(link):
                    link.parent.mkdir(parents=True, exist_ok=True)
                    os.symlink(source, link)
                    created += 1
                mirrored.append(str(link.relative_to(user_root)))

    logger.info("Mirror for %s: %d link(s), %d new", user_id, len(mirrored), created)
    return mirrored
