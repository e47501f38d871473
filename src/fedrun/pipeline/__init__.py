"""Run lifecycle: orchestration, engine sessions, control surface and history."""

from fedrun.pipeline.events import RunObserver, RunEventHub
from fedrun.pipeline.lease import RunLease
from fedrun.pipeline.run_tracker import RunTracker
from fedrun.pipeline.orchestrator import RunOrchestrator
from fedrun.pipeline.session import EngineSession, SessionManager, load_factory
from fedrun.pipeline.control import RunControlSurface

__all__ = [
    'RunObserver',
    'RunEventHub',
    'RunLease',
    'RunTracker',
    'RunOrchestrator',
    'EngineSession',
    'SessionManager',
    'load_factory',
    'RunControlSurface',
]
