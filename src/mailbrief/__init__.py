"""mailbrief - mailbox knowledge base with hybrid search and weekly digests.

This package keeps a deduplicated local copy of a Gmail mailbox, indexes it
for keyword and semantic search, and compiles weekly per-subscriber digests
using a local Ollama model.
"""

__version__ = "0.1.0"

from mailbrief.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__"]
