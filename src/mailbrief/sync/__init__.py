"""Incremental mailbox synchronization."""

from .engine import SyncEngine, SyncResult

__all__ = ["SyncEngine", "SyncResult"]
