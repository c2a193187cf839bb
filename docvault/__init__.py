"""
DocVault: Document repository engine.

A tree of files and folders with per-node visibility, a soft-delete trash
lifecycle, archive-then-swap file versioning, pinning and change fan-out to
open views. Callers use ``docvault.repository.RepositoryService``.
"""

__version__ = "1.0.0"
__all__ = ["engine", "db", "repository", "process"]
