"""CLIConfig: Command-line operational overrides.

Minimal configuration for operational parameters that commonly change
between invocations: app directory, user, API endpoint, verbosity.
"""

from typing import Literal, Optional
from fedrun.schemas.base import FedrunConfigModel


class CLIConfig(FedrunConfigModel):
    """Command-line configuration overrides.

    Highest priority in config resolution.

    Usage
    -----
        cli_cfg = CLIConfig(app_directory="/scratch/fedrun", no_jitter=True)
        internal = resolve_config(param_cfg, user_cfg, cli_cfg)
    """

    app_directory: Optional[str] = None
    user_id: Optional[str] = None
    api_server_url: Optional[str] = None
    log_level: Optional[Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]] = None
    no_jitter: bool = False

    def to_internal_overrides(self) -> dict:
        """Convert CLI config to internal config structure.

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
        if self.log_level is not None:
            overrides["logging"] = {"level": self.log_level}
        if self.no_jitter:
            overrides["jitter"] = {"enabled": False}

        return overrides
