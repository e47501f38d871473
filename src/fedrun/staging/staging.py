"""Run-scoped staging of input files.

Each run gets ``staging/<run_id>/`` holding links to its input files, laid
out by the files' absolute paths so two inputs with the same name never
collide. Runs never share a staging directory.
"""

import os
import errno
import shutil
import logging
from pathlib import Path
from typing import Iterable

from fedrun.contracts import StagingError
from fedrun.setup_directories import get_staging_path

logger = logging.getLogger(__name__)


class StagingArea:
    """Builds and removes staging directories.

    Parameters
    ----------
    dirs : dict
        Directories from setup_app_directories().
    link_mode : {'hardlink', 'symlink'}
        How files are linked in. Hard links fall back to symlinks when the
        file lives on another device; directories are always symlinked.

    Notes
    -----
    Methods are blocking; async callers run them with ``asyncio.to_thread``.
    """

    def __init__(self, dirs: dict, link_mode: str = "hardlink"):
        if link_mode not in ("hardlink", "symlink"):
            raise ValueError(f"Invalid link_mode: {link_mode}")
        self.dirs = dirs
        self.link_mode = link_mode

    def path_for(self, run_id: str) -> Path:
        return get_staging_path(self.dirs, run_id)

    def staged_path(self, run_id: str, source) -> Path:
        """Where ``source`` appears inside the run's staging directory."""
        source = Path(source).expanduser().resolve()
        return self.path_for(run_id) / source.relative_to(source.anchor)

    def _link(self, source: Path, target: Path):
        if self.link_mode == "hardlink" and not source.is_dir():
            try:
                os.link(source, target)
                return
            except OSError as exc:
                if exc.errno not in (errno.EXDEV, errno.EPERM, errno.EMLINK):
                    raise
                logger.debug("Hard link of %s not possible (%s), using symlink", source, exc)
        os.symlink(source, target, target_is_directory=source.is_dir())

    def stage_files(self, run_id: str, files: Iterable) -> list:
        """Link ``files`` into the run's staging directory.

        Parameters
        ----------
        run_id : str
            Run the files belong to.
        files : iterable of str or Path
            Input files (or directories) to stage.

        Returns
        -------
        list of Path
            Staged paths, in input order. Files already staged are reused.

        Raises
        ------
        StagingError
            If a file is missing or cannot be linked.
        """
        staged = []
        run_dir = self.path_for(run_id)

        try:
            run_dir.mkdir(parents=True, exist_ok=True)
            for source in files:
                source = Path(source).expanduser().resolve()
                if not source.exists():
                    raise StagingError(f"Input file does not exist: {source}")
                target = self.staged_path(run_id, source)
                if not os.path.lexists(target):
                    target.parent.mkdir(parents=True, exist_ok=True)
                    self._link(source, target)
                staged.append(target)
        except OSError as exc:
            raise StagingError(f"Failed to stage files for run {run_id}: {exc}", exc) from exc

        logger.info("Staged %d file(s) for run %s", len(staged), run_id)
        return staged

    def unstage_files(self, run_id: str) -> bool:
        """Remove the run's staging directory.

        Succeeds when staging never happened or was only partial.

        Returns
        -------
        bool
            True if a directory was removed.
        """
        run_dir = self.path_for(run_id)
        if not os.path.lexists(run_dir):
            return False

        try:
            if run_dir.is_symlink() or not run_dir.is_dir():
                run_dir.unlink()
            else:
                shutil.rmtree(run_dir)
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StagingError(f"Failed to remove staging for run {run_id}: {exc}", exc) from exc

        logger.info("Removed staging for run %s", run_id)
        return True
