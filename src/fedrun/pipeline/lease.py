"""Per (consortium, run) single-flight lease.

A lease is an exclusive, non-blocking advisory lock on a file under
``locks/``. It is taken before images are downloaded and dropped when the
run reaches a terminal state, and its file is removed then. Whoever fails
to take it does not start the run. The operating system drops the lock
when its holder dies.
"""

import os
import logging

from fedrun.setup_directories import get_lock_path

logger = logging.getLogger(__name__)


def _try_lock(fh) -> bool:
    try:
        import fcntl
    except ImportError:
        fcntl = None

    if fcntl is not None:
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return False
        return True

    import msvcrt

    # Lock the first byte; every holder locks the same region
    fh.seek(0)
    try:
        msvcrt.locking(fh.fileno(), msvcrt.LK_NBLCK, 1)
    except OSError:
        return False
    return True


def _unlock(fh):
    try:
        import fcntl
    except ImportError:
        fcntl = None

    if fcntl is not None:
        fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        return

    import msvcrt
    fh.seek(0)
    msvcrt.locking(fh.fileno(), msvcrt.LK_UNLCK, 1)


def _still_linked(fh, path) -> bool:
    """True if ``path`` still names the file open as ``fh``."""
    try:
        current = os.stat(path)
    except FileNotFoundError:
        return False
    return os.path.samestat(os.fstat(fh.fileno()), current)


class RunLease:
    """Exclusive lease on one (consortium, run) pair.

    Parameters
    ----------
    dirs : dict
        Directories from setup_app_directories().
    consortium_id, run_id : str
        The pair the lease guards.
    enabled : bool
        When False, acquire() always succeeds without touching the disk.

    Examples
    --------
    >>> lease = RunLease(dirs, "c1", "r1")
    >>> if lease.acquire():
    ...     try:
    ...         ...
    ...     finally:
    ...         lease.release()
    """

    def __init__(self, dirs: dict, consortium_id: str, run_id: str, enabled: bool = True):
        self.path = get_lock_path(dirs, consortium_id, run_id)
        self.consortium_id = consortium_id
        self.run_id = run_id
        self.enabled = enabled
        self._fh = None
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> bool:
        """Try to take the lease without waiting.

        Returns
        -------
        bool
            True if this object now holds the lease.
        """
        if self._held:
            return True
        if not self.enabled:
            self._held = True
            return True

        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(3):
            fh = open(self.path, "a+")
            if not _try_lock(fh):
                fh.close()
                logger.debug("Lease %s is held elsewhere", self.path.name)
                return False
            if _still_linked(fh, self.path):
                break
            # The previous holder removed the file between our open and lock
            _unlock(fh)
            fh.close()
        else:
            logger.debug("Lease %s kept changing under us", self.path.name)
            return False

        fh.seek(0)
        fh.truncate()
        fh.write(f"{os.getpid()}\n")
        fh.flush()

        self._fh = fh
        self._held = True
        logger.debug("Lease acquired: %s", self.path.name)
        return True

    def release(self):
        """Drop the lease and remove its file. Safe to call when not held."""
        if not self._held:
            return
        self._held = False
        if self._fh is None:
            return

        fh, self._fh = self._fh, None
        if os.name == "posix":
            # Unlinked while still locked; a waiter that opened it rechecks
            self.path.unlink(missing_ok=True)
        try:
            _unlock(fh)
        finally:
            fh.close()
        if os.name != "posix":
            try:
                self.path.unlink(missing_ok=True)
            except PermissionError:
                logger.debug("Lease file %s is open elsewhere, left in place", self.path.name)
        logger.debug("Lease released: %s", self.path.name)
