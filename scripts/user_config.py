"""fedrun User Configuration.

This is the user-facing configuration file. Modify settings here to customize
the run controller. Advanced settings are in src/fedrun/schemas/param.py

Usage:
    fedrun --config scripts/user_config.py validate consortium.json
    fedrun --config scripts/user_config.py run consortium.json run.json mappings.json
    fedrun --config scripts/user_config.py --no-jitter run consortium.json run.json mappings.json
"""

CONFIG = {
    # ========================================================================
    # IDENTITY & LOCATIONS
    # ========================================================================
    "USER_ID": None,                  # Local user id (output/<user>/..., runs/<user>/...)
    "APP_DIRECTORY": "~/.fedrun",     # output/, runs/, staging/, locks/, logs/ live here
    "API_SERVER_URL": None,           # e.g. "https://api.example.org"

    # ========================================================================
    # EXECUTION ENGINE
    # ========================================================================
    "ENGINE_FACTORY": None,           # "package.module:attr" returning (engine, runtime)

    # ========================================================================
    # RUN START
    # ========================================================================
    "JITTER_MAX_SEC": 3,              # Random delay before a run starts (0-30 s)
    "USE_LEASE": True,                # One process per (consortium, run)

    # ========================================================================
    # IMAGES & STAGING
    # ========================================================================
    "PRUNE_AFTER_PULL": True,         # Prune unused images once a run's images are pulled
    "staging": {
        "link_mode": "hardlink",      # "hardlink" (falls back to symlink) or "symlink"
    },

    # ========================================================================
    # LOGGING
    # ========================================================================
    "LOG_LEVEL": "INFO",
}
