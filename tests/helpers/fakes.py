"""In-memory stand-ins for the execution engine and container runtime."""

import asyncio

from fedrun.runtime import EngineRun, PullFailure, PullStream


class FakeRuntime:
    """Container runtime whose pulls are scripted per image.

    Parameters
    ----------
    events : dict, optional
        image -> progress events the pull yields (default: one event).
    failures : dict, optional
        image -> exception raised by the stream after its events.
    rejected : dict, optional
        image -> error value returned as an up-front PullFailure.
    """

    def __init__(self, events=None, failures=None, rejected=None, prune_error=None):
        self.events = events or {}
        self.failures = failures or {}
        self.rejected = rejected or {}
        self.prune_error = prune_error
        self.pull_requests = []
        self.prune_calls = 0
        self.removed = []
        self.images = ["img-a:latest", "img-b:latest"]

    async def _stream(self, image):
        for event in self.events.get(image, [{"status": "Downloading", "id": image}]):
            yield event
        if image in self.failures:
            raise self.failures[image]

    async def pull_images(self, images):
        self.pull_requests.append(list(images))
        pulls = []
        for image in images:
            if image in self.rejected:
                pulls.append(PullFailure(image, self.rejected[image]))
            else:
                pulls.append(PullStream(image, self._stream(image)))
        return pulls

    async def prune_images(self):
        self.prune_calls += 1
        if self.prune_error is not None:
            raise self.prune_error
        return {"SpaceReclaimed": 0}

    async def remove_image(self, image_id):
        self.removed.append(image_id)
        self.images = [i for i in self.images if i != image_id]

    async def list_images(self):
        return list(self.images)


class EngineFailure(Exception):
    """Engine error carrying the partial input of the failing step."""

    def __init__(self, message, input=None, error=None):
        super().__init__(message)
        self.input = input
        self.error = error


class FakeEngine:
    """Execution engine that replays scripted state updates and a result.

    Set ``hold`` to an asyncio.Event to keep the result pending until it
    is set.
    """

    def __init__(self, results=None, error=None, updates=(), start_error=None):
        self.results = {"global": {"beta": [1, 2]}} if results is None else results
        self.error = error
        self.start_error = start_error
        self.updates = list(updates)
        self.hold = None
        self.started = []
        self.unlinked = []
        self.stop_requests = []
        self.suspended = []
        self.endpoints = []
        self.closed = False

    async def start_pipeline(self, consortium_id, pipeline_snapshot, file_array, run_id,
                             per_step_config, network_volume, run_state):
        self.started.append({
            "consortium_id": consortium_id,
            "pipeline_snapshot": pipeline_snapshot,
            "file_array": list(file_array),
            "run_id": run_id,
            "per_step_config": per_step_config,
            "network_volume": network_volume,
            "run_state": run_state,
        })
        if self.start_error is not None:
            raise self.start_error

        updates = asyncio.Queue()
        for update in self.updates:
            updates.put_nowait(update)

        async def result():
            if self.hold is not None:
                await self.hold.wait()
            if self.error is not None:
                raise self.error
            return self.results

        return EngineRun(state_updates=updates, result=result())

    async def request_stop(self, pipeline_id, run_id):
        self.stop_requests.append((pipeline_id, run_id))
        if self.hold is not None:
            self.error = EngineFailure("Pipeline operation stopped")
            self.hold.set()

    async def suspend(self, run_id):
        self.suspended.append(run_id)
        return {"runId": run_id, "state": "suspended"}

    async def unlink_files(self, run_id):
        self.unlinked.append(run_id)

    async def set_remote_endpoint(self, url):
        self.endpoints.append(url)

    async def close(self):
        await asyncio.sleep(0)
        self.closed = True


class RecordingObserver:
    """Collects every run event as ``(name, args)`` tuples."""

    def __init__(self):
        self.events = []

    def __getattr__(self, name):
        if not name.startswith("on_"):
            raise AttributeError(name)

        def record(*args):
            self.events.append((name, args))
        return record

    def named(self, name):
        return [args for event, args in self.events if event == name]


def build_session(config=None, dirs=None, user_id=None, api_server_url=None, token=None):
    """Engine factory usable as ``engine.factory = "tests.helpers.fakes:build_session"``."""
    return FakeEngine(), FakeRuntime()
