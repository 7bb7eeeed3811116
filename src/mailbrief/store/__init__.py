"""Persistent state: messages, the sync cursor and loop checkpoints."""

from .kv import PipelineState
from .messages import MessageStore

__all__ = ["MessageStore", "PipelineState"]
