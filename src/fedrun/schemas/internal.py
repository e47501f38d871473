"""InternalConfig: Authoritative runtime configuration.

This is the ONLY config schema that runtime code sees. It is fully validated,
normalized, and frozen.

All .get() calls, fallback defaults, and validation logic are FORBIDDEN in
runtime code - everything is explicit here.
"""

from pathlib import Path
from typing import Literal, Optional
from pydantic import ConfigDict, Field
from fedrun.schemas.base import FedrunConfigModel


# =============================================================================
# Nested Configuration Models (Runtime)
# =============================================================================

class InternalJitterConfig(FedrunConfigModel):
    """Runtime jitter configuration."""
    enabled: bool
    max_delay_sec: float = Field(ge=0, le=30)


class InternalImagesConfig(FedrunConfigModel):
    """Runtime image handling configuration."""
    prune_after_pull: bool


class InternalStagingConfig(FedrunConfigModel):
    """Runtime staging configuration."""
    link_mode: Literal["hardlink", "symlink"]


class InternalLeaseConfig(FedrunConfigModel):
    """Runtime lease configuration."""
    enabled: bool


class InternalDownloadConfig(FedrunConfigModel):
    """Runtime download configuration."""
    timeout_sec: int = Field(ge=1)
    chunk_size: int = Field(ge=1024)


class InternalEngineConfig(FedrunConfigModel):
    """Runtime engine wiring."""
    factory: Optional[str]


class InternalLoggingConfig(FedrunConfigModel):
    """Runtime logging configuration."""
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


# =============================================================================
# Main InternalConfig
# =============================================================================

class InternalConfig(FedrunConfigModel):
    """Authoritative runtime configuration.

    Usage
    -----
    Runtime modules receive InternalConfig and access fields directly:

        def __init__(self, config: InternalConfig):
            self.max_delay = config.jitter.max_delay_sec  # NOT .get()

    Rules
    -----
    - NO .get() calls
    - NO fallback defaults
    - NO validation

    All of that happens during config resolution, not in runtime code.
    """

    app_directory: str
    user_id: Optional[str]
    api_server_url: Optional[str]
    jitter: InternalJitterConfig
    images: InternalImagesConfig
    staging: InternalStagingConfig
    lease: InternalLeaseConfig
    download: InternalDownloadConfig
    engine: InternalEngineConfig
    logging: InternalLoggingConfig

    model_config = ConfigDict(
        extra='forbid',
        validate_assignment=True,
        use_enum_values=True,
        str_strip_whitespace=True,
        frozen=True,  # Immutable after construction
    )

    @property
    def app_path(self) -> Path:
        """``app_directory`` with ``~`` expanded."""
        return Path(self.app_directory).expanduser()
