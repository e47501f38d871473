"""Run event fan-out.

The orchestrator and control surface report through a RunEventHub; any
number of RunObserver subscribers (UI bridge, CLI printer, tests) listen.
A failing subscriber is logged and skipped, never allowed to break a run.
"""

import logging
import threading
from typing import Any

from fedrun.models import Run

logger = logging.getLogger(__name__)


class RunObserver:
    """Receiver of run events. Override the methods you care about.

    All methods are called on the event loop thread, in emission order
    per run.
    """

    def on_queued(self, run: Run, steps: list) -> None:
        """A run was accepted and persisted as queued."""

    def on_progress(self, run_id: str, event: dict) -> None:
        """Image pull progress, tagged with the image in ``event["image"]``."""

    def on_state_update(self, run_id: str, data: Any) -> None:
        """A live state update relayed from the execution engine."""

    def on_terminal(self, consortium_name: str, run: Run) -> None:
        """A run finished: ``run.results`` or ``run.error`` is set, with ``end_date``."""

    def on_warning(self, message: str) -> None:
        """A user-facing warning (e.g. incomplete mapping)."""

    def on_main_error(self, error: dict) -> None:
        """A structured ``{message, stack, innerError}`` error outside a run."""

    def on_images_ready(self, consortium_id: str, images: list) -> None:
        """Every computation image of a consortium finished pulling."""


class RunEventHub(RunObserver):
    """Fans every event out to the subscribed observers."""

    def __init__(self):
        self._observers = []
        self._lock = threading.Lock()

    def subscribe(self, observer: RunObserver) -> RunObserver:
        with self._lock:
            if observer not in self._observers:
                self._observers.append(observer)
        return observer

    def unsubscribe(self, observer: RunObserver) -> None:
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)

    def _dispatch(self, method: str, *args) -> None:
        with self._lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                getattr(observer, method)(*args)
            except Exception:
                logger.exception("Observer %r failed in %s", observer, method)

    def on_queued(self, run, steps):
        self._dispatch("on_queued", run, steps)

    def on_progress(self, run_id, event):
        self._dispatch("on_progress", run_id, event)

    def on_state_update(self, run_id, data):
        self._dispatch("on_state_update", run_id, data)

    def on_terminal(self, consortium_name, run):
        self._dispatch("on_terminal", consortium_name, run)

    def on_warning(self, message):
        self._dispatch("on_warning", message)

    def on_main_error(self, error):
        self._dispatch("on_main_error", error)

    def on_images_ready(self, consortium_id, images):
        self._dispatch("on_images_ready", consortium_id, images)
