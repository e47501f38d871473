"""Command-line interface for fedrun.

Holds the real command implementations so scripts stay thin wrappers.
"""

from fedrun.cli.main import main, load_user_config_dict

__all__ = ['main', 'load_user_config_dict']
