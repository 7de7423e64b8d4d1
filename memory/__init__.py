"""Episodic memory, experience extraction and episode stores."""

from memory.episodic import EpisodicMemory
from memory.store import EpisodeStore, InMemoryEpisodeStore, SQLiteEpisodeStore

__all__ = ["EpisodicMemory", "EpisodeStore", "InMemoryEpisodeStore", "SQLiteEpisodeStore"]
