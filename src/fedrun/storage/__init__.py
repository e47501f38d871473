"""Local persistence."""

from fedrun.storage.local_store import LocalStore

__all__ = ['LocalStore']
