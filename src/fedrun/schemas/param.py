"""ParamConfig: Expert defaults for the run controller.

ALL controller parameters must have defaults here. No runtime code should
define fallback values - this is the single source of truth for defaults.

Runtime code NEVER reads from ParamConfig directly - it only receives InternalConfig.
"""

from typing import Literal, Optional
from pydantic import Field, field_validator
from fedrun.schemas.base import FedrunConfigModel


# =============================================================================
# Nested Configuration Models
# =============================================================================

class JitterConfig(FedrunConfigModel):
    """Random delay before a run starts.

    Spreads out run starts of several local processes joined to the same
    consortium. The run lease is what actually guarantees single-flight.
    """
    enabled: bool = True
    max_delay_sec: float = Field(3.0, ge=0, le=30, description="Upper bound of the uniform delay")

    @field_validator("max_delay_sec", mode="before")
    @classmethod
    def coerce_delay_to_float(cls, v):
        """Allow int or float for the delay."""
        return float(v)


class ImagesConfig(FedrunConfigModel):
    """Computation image handling."""
    prune_after_pull: bool = True


class StagingConfig(FedrunConfigModel):
    """How input files are linked into a run's staging directory."""
    link_mode: Literal["hardlink", "symlink"] = "hardlink"


class LeaseConfig(FedrunConfigModel):
    """Per (consortium, run) cross-process lease."""
    enabled: bool = True


class DownloadConfig(FedrunConfigModel):
    """Run asset download settings."""
    timeout_sec: int = Field(60, ge=1, description="Connect/read timeout for the asset request")
    chunk_size: int = Field(1024 * 1024, ge=1024, description="Streaming chunk size in bytes")


class EngineConfig(FedrunConfigModel):
    """Execution engine wiring."""
    factory: Optional[str] = Field(None, description="'module:attr' of the engine session factory")


class LoggingConfig(FedrunConfigModel):
    """Logging configuration."""
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


# =============================================================================
# Main ParamConfig
# =============================================================================

class ParamConfig(FedrunConfigModel):
    """Complete expert configuration with all defaults.

    Usage
    -----
    This config is NOT used directly by runtime code. It serves as the
    base layer in config resolution:

        internal_cfg = resolve_config(param_cfg, user_cfg, cli_cfg)

    Runtime code only sees InternalConfig.
    """

    app_directory: str = "~/.fedrun"
    user_id: Optional[str] = None
    api_server_url: Optional[str] = None
    jitter: JitterConfig = Field(default_factory=JitterConfig)
    images: ImagesConfig = Field(default_factory=ImagesConfig)
    staging: StagingConfig = Field(default_factory=StagingConfig)
    lease: LeaseConfig = Field(default_factory=LeaseConfig)
    download: DownloadConfig = Field(default_factory=DownloadConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
