"""Root-level pytest fixtures for the fedrun test suite.

Provides shared configuration fixtures following the Pydantic-based config
layers. Tests use these fixtures instead of building raw config dicts.
"""

import pytest

from fedrun.pipeline import RunTracker
from fedrun.schemas import ParamConfig, UserConfig, CLIConfig, resolve_config
from fedrun.setup_directories import setup_app_directories
from fedrun.storage import LocalStore


# =============================================================================
# Configuration Fixtures (Pydantic-based)
# =============================================================================

@pytest.fixture
def param_config():
    """Expert configuration with all defaults."""
    return ParamConfig()


@pytest.fixture
def app_root(tmp_path):
    return tmp_path / "app"


@pytest.fixture
def internal_config(param_config, app_root):
    """Runtime configuration for user ``alice`` under a temporary app directory.

    Jitter is disabled so runs start immediately.
    """
    user = UserConfig(app_directory=str(app_root), user_id="alice")
    return resolve_config(param_config, user, CLIConfig(no_jitter=True))


@pytest.fixture
def make_config(param_config, app_root):
    """Factory fixture for configs with UserConfig overrides.

    Examples
    --------
    >>> def test_symlink_staging(make_config):
    ...     config = make_config(staging={"link_mode": "symlink"})
    ...     assert config.staging.link_mode == "symlink"
    """
    def _make(**user_overrides):
        overrides = {"app_directory": str(app_root), "user_id": "alice"}
        overrides.update(user_overrides)
        return resolve_config(param_config, UserConfig(**overrides), CLIConfig(no_jitter=True))

    return _make


# =============================================================================
# Directory and storage fixtures
# =============================================================================

@pytest.fixture
def app_dirs(internal_config):
    """Application directory tree (output, runs, staging, locks, logs)."""
    return setup_app_directories(internal_config.app_directory)


@pytest.fixture
def store():
    """Throwaway in-memory local store."""
    with LocalStore(":memory:") as s:
        yield s


@pytest.fixture
def tracker(tmp_path):
    with RunTracker(tmp_path / "run_history.db") as t:
        yield t


@pytest.fixture
def input_file(tmp_path):
    """A covariates CSV living outside the app directory."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    path = data_dir / "covariates.csv"
    path.write_text("subject,age\ns01,34\ns02,51\n")
    return path
