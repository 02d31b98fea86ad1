"""School-district assistant package."""

from .config import AssistantSettings, ChunkingConfig, RetrievalConfig

__all__ = ["AssistantSettings", "ChunkingConfig", "RetrievalConfig"]
