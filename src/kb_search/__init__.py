"""Multi-tenant knowledge-base search package."""

from .config import ChunkingConfig, SearchConfig, Settings

__all__ = ["ChunkingConfig", "SearchConfig", "Settings"]
