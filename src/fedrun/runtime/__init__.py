"""Collaborator contracts (engine, container runtime) and image acquisition."""

from fedrun.runtime.protocols import (
    PullStream,
    PullFailure,
    PullResult,
    ContainerRuntime,
    EngineRun,
    Engine,
)
from fedrun.runtime.images import ImageAcquirer, dedupe_images

__all__ = [
    'PullStream',
    'PullFailure',
    'PullResult',
    'ContainerRuntime',
    'EngineRun',
    'Engine',
    'ImageAcquirer',
    'dedupe_images',
]
