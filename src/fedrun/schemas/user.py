"""UserConfig: Forgiving, minimal user-facing configuration.

This schema accepts user inputs in a variety of formats, with aliases
for common naming patterns (e.g., APP_DIRECTORY → app_directory).

UserConfig is intentionally minimal - users only specify what they want
to override from the expert defaults.
"""

from typing import Literal, Optional
from pydantic import Field, field_validator
from fedrun.schemas.base import FedrunConfigModel


class UserJitterConfig(FedrunConfigModel):
    """User-facing jitter config."""
    enabled: Optional[bool] = None
    max_delay_sec: Optional[float] = None


class UserStagingConfig(FedrunConfigModel):
    """User-facing staging config."""
    link_mode: Optional[str] = None

    @field_validator("link_mode", mode="before")
    @classmethod
    def normalize_link_mode(cls, v):
        """Normalize link modes to lowercase ('HardLink' → 'hardlink')."""
        if isinstance(v, str):
            return v.lower().strip().replace("_", "").replace("-", "")
        return v


class UserDownloadConfig(FedrunConfigModel):
    """User-facing download config."""
    timeout_sec: Optional[int] = None
    chunk_size: Optional[int] = None


class UserConfig(FedrunConfigModel):
    """User-facing configuration schema.

    Usage
    -----
        user_cfg = UserConfig(
            app_directory="/data/fedrun",
            user_id="alice",
            jitter_max_sec=5,
        )

        internal = resolve_config(param_cfg, user_cfg, cli_cfg)
    """

    # Top-level operational settings
    app_directory: Optional[str] = Field(None, alias="APP_DIRECTORY")
    user_id: Optional[str] = Field(None, alias="USER_ID")
    api_server_url: Optional[str] = Field(None, alias="API_SERVER_URL")
    engine_factory: Optional[str] = Field(None, alias="ENGINE_FACTORY")
    log_level: Optional[Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]] = Field(None, alias="LOG_LEVEL")

    # Flat aliases for common knobs
    jitter_max_sec: Optional[float] = Field(None, alias="JITTER_MAX_SEC")
    prune_after_pull: Optional[bool] = Field(None, alias="PRUNE_AFTER_PULL")
    use_lease: Optional[bool] = Field(None, alias="USE_LEASE")

    # Nested overrides (advanced users)
    jitter: Optional[UserJitterConfig] = None
    staging: Optional[UserStagingConfig] = None
    download: Optional[UserDownloadConfig] = None

    model_config = FedrunConfigModel.model_config.copy()
    # Allow forgiving input dictionaries (ignore unknown legacy keys)
    model_config.update({"populate_by_name": True, "extra": "ignore"})

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        """Accept 'debug' as well as 'DEBUG'."""
        if isinstance(v, str):
            return v.upper().strip()
        return v

    @field_validator("jitter_max_sec", mode="before")
    @classmethod
    def coerce_numeric_fields(cls, v):
        """Accept int or float for numeric fields."""
        if v is not None:
            return float(v)
        return v

    def to_internal_overrides(self) -> dict:
        """Convert flat UserConfig to nested InternalConfig structure.

        Returns
        -------
        dict
            Nested dictionary matching InternalConfig structure
        """
        overrides = {}

        if self.app_directory is not None:
            overrides["app_directory"] = str(self.app_directory)
        if self.user_id is not None:
            overrides["user_id"] = self.user_id
        if self.api_server_url is not None:
            overrides["api_server_url"] = self.api_server_url
        if self.engine_factory is not None:
            overrides["engine"] = {"factory": self.engine_factory}
        if self.log_level is not None:
            overrides["logging"] = {"level": self.log_level}
        if self.prune_after_pull is not None:
            overrides["images"] = {"prune_after_pull": self.prune_after_pull}
        if self.use_lease is not None:
            overrides["lease"] = {"enabled": self.use_lease}

        # Jitter section
        jitter = {}
        if self.jitter_max_sec is not None:
            jitter["max_delay_sec"] = self.jitter_max_sec
        if self.jitter is not None:
            jitter.update(self.jitter.model_dump(exclude_none=True))
        if jitter:
            overrides["jitter"] = jitter

        if self.staging is not None:
            staging = self.staging.model_dump(exclude_none=True)
            if staging:
                overrides["staging"] = staging

        if self.download is not None:
            download = self.download.model_dump(exclude_none=True)
            if download:
                overrides["download"] = download

        return overrides
