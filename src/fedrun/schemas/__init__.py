"""Pydantic configuration schemas for fedrun.

Exports
-------
resolve_config : function
    Single entrypoint for configuration resolution
InternalConfig : class
    Fully validated, authoritative runtime configuration
ParamConfig : class
    Expert defaults (complete)
UserConfig : class
    User-facing configuration (forgiving, minimal)
CLIConfig : class
    Command-line operational overrides
"""

from fedrun.schemas.resolve import resolve_config, deep_merge
from fedrun.schemas.internal import InternalConfig
from fedrun.schemas.param import ParamConfig
from fedrun.schemas.user import UserConfig
from fedrun.schemas.cli import CLIConfig

__all__ = [
    'resolve_config',
    'deep_merge',
    'InternalConfig',
    'ParamConfig',
    'UserConfig',
    'CLIConfig',
]
