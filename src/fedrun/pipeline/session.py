"""Engine session lifetime.

The execution engine handle is created by login and destroyed by logout.
Everything that needs it asks the SessionManager for the current session
instead of reaching for process-wide state.
"""

import asyncio
import inspect
import logging
import importlib
from typing import Any, Callable, Optional

from fedrun.contracts import EngineNotInitializedError
from fedrun.pipeline.events import RunEventHub
from fedrun.pipeline.orchestrator import RunOrchestrator
from fedrun.pipeline.run_tracker import RunTracker
from fedrun.schemas import InternalConfig
from fedrun.storage import LocalStore

logger = logging.getLogger(__name__)


def load_factory(path: str) -> Callable:
    """Import an engine factory given as ``"package.module:attr"``.

    Raises
    ------
    ValueError
        If the path is malformed or the attribute is not callable.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Engine factory must look like 'module:attr', got {path!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    if not callable(factory):
        raise ValueError(f"Engine factory {path!r} is not callable")
    return factory


class EngineSession:
    """An engine, its container runtime and the orchestrator bound to them."""

    def __init__(self, engine, runtime, orchestrator: RunOrchestrator,
                 user_id: str, api_server_url: Optional[str] = None):
        self.engine = engine
        self.runtime = runtime
        self.orchestrator = orchestrator
        self.user_id = user_id
        self.api_server_url = api_server_url

    async def close(self):
        """Close the engine's remote transport and wait until it is closed."""
        await self.engine.close()


class SessionManager:
    """Owns the single engine session of a logged-in user.

    Parameters
    ----------
    config : InternalConfig
        Resolved runtime configuration.
    dirs : dict
        Directories from setup_app_directories().
    hub : RunEventHub, optional
        Event hub shared by every session's orchestrator.
    tracker : RunTracker, optional
        Run history handed to the orchestrator.
    store : LocalStore, optional
        Local store handed to the orchestrator.
    factory : callable, optional
        Engine factory. Defaults to importing ``config.engine.factory``.
        Called with keyword arguments ``config``, ``dirs``, ``user_id``,
        ``api_server_url`` and ``token``; returns (or resolves to) an
        ``(engine, runtime)`` pair.

    Notes
    -----
    Login and logout are serialized. Logging in while a session exists
    returns that session; logout waits for the engine transport to close
    before the session is dropped, so a following login cannot race a
    reconnect of the old one.
    """

    def __init__(self, config: InternalConfig, dirs: dict,
                 hub: Optional[RunEventHub] = None,
                 tracker: Optional[RunTracker] = None,
                 store: Optional[LocalStore] = None,
                 factory: Optional[Callable[..., Any]] = None):
        self.config = config
        self.dirs = dirs
        self.hub = hub if hub is not None else RunEventHub()
        self.tracker = tracker
        self.store = store
        self._factory = factory
        self._session = None
        self._lock = asyncio.Lock()

    @property
    def session(self) -> Optional[EngineSession]:
        return self._session

    def require(self, operation: str) -> EngineSession:
        """Return the current session or raise EngineNotInitializedError."""
        if self._session is None:
            raise EngineNotInitializedError(operation)
        return self._session

    def _resolve_factory(self) -> Callable:
        if self._factory is not None:
            return self._factory
        if not self.config.engine.factory:
            raise ValueError("No engine factory configured (engine.factory / ENGINE_FACTORY)")
        return load_factory(self.config.engine.factory)

    async def login(self, user_id: Optional[str] = None, token: Optional[str] = None,
                    api_server_url: Optional[str] = None) -> EngineSession:
        """Create the engine session, or return the existing one."""
        async with self._lock:
            if self._session is not None:
                logger.debug("Already logged in as %s", self._session.user_id)
                return self._session

            user_id = user_id or self.config.user_id
            if not user_id:
                raise ValueError("Login needs a user id")
            api_server_url = api_server_url or self.config.api_server_url

            built = self._resolve_factory()(
                config=self.config,
                dirs=self.dirs,
                user_id=user_id,
                api_server_url=api_server_url,
                token=token,
            )
            if inspect.isawaitable(built):
                built = await built
            engine, runtime = built

            orchestrator = RunOrchestrator(
                engine, runtime, self.config, self.dirs,
                hub=self.hub, tracker=self.tracker, store=self.store, user_id=user_id,
            )
            self._session = EngineSession(engine, runtime, orchestrator, user_id, api_server_url)
            logger.info("Engine session opened for %s", user_id)
            return self._session

    async def logout(self):
        """Close the engine session, if any, and forget it."""
        async with self._lock:
            session = self._session
            if session is None:
                return
            try:
                await session.close()
            finally:
                self._session = None
            logger.info("Engine session closed for %s", session.user_id)
