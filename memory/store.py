"""
Episode persistence contract and implementations.

Design goals:
- Blob-style `load()` / `save(episodes)` contract, the whole history at once
- Optional experience blob next to the episodes
- Callers treat any exception from a store as non-fatal
"""

from __future__ import annotations

import json
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from pydantic import TypeAdapter

from shared.models import Episode, ReusableExperience

_EPISODES = TypeAdapter(list[Episode])
_EXPERIENCES = TypeAdapter(list[ReusableExperience])


class EpisodeStore(ABC):
    """Persistence used by EpisodicMemory."""

    @abstractmethod
    def load(self) -> list[Episode]:
        """Return every persisted episode, oldest first."""

    @abstractmethod
    def save(self, episodes: list[Episode]) -> None:
        """Replace the persisted episode history."""

    def load_experiences(self) -> list[ReusableExperience]:
        return []

    def save_experiences(self, experiences: list[ReusableExperience]) -> None:
        return None


class InMemoryEpisodeStore(EpisodeStore):
    """Process-local store; keeps copies so callers cannot mutate what was saved."""

    def __init__(self) -> None:
        self._episodes: list[Episode] = []
        self._experiences: list[ReusableExperience] = []

    def load(self) -> list[Episode]:
        return list(self._episodes)

    def save(self, episodes: list[Episode]) -> None:
        self._episodes = list(episodes)

    def load_experiences(self) -> list[ReusableExperience]:
        return [experience.model_copy(deep=True) for experience in self._experiences]

    def save_experiences(self, experiences: list[ReusableExperience]) -> None:
        self._experiences = [experience.model_copy(deep=True) for experience in experiences]


class SQLiteEpisodeStore(EpisodeStore):
    """SQLite-backed key-value blob store for episodes and experiences."""

    EPISODES_KEY = "episodes"
    EXPERIENCES_KEY = "experiences"

    def __init__(self, db_path: str = "memory.db", namespace: str = "episodic"):
        self.db_path = db_path
        self.namespace = (namespace or "episodic").strip()
        self._conn = sqlite3.connect(
            db_path,
            check_same_thread=False,
            isolation_level="DEFERRED",
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._init_db()

    def _init_db(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS memory_blobs (
                namespace TEXT NOT NULL,
                key TEXT NOT NULL,
                value_json TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY(namespace, key)
            )
            """
        )
        self._conn.commit()

    def _read(self, key: str) -> str | None:
        row = self._conn.execute(
            """
            SELECT value_json
            FROM memory_blobs
            WHERE namespace = ? AND key = ?
            LIMIT 1
            """,
            (self.namespace, key),
        ).fetchone()
        return row["value_json"] if row else None

    def _write(self, key: str, value_json: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self._conn.execute(
            """
            INSERT INTO memory_blobs(namespace, key, value_json, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(namespace, key) DO UPDATE SET
                value_json = excluded.value_json,
                updated_at = excluded.updated_at
            """,
            (self.namespace, key, value_json, now),
        )
        self._conn.commit()

    def load(self) -> list[Episode]:
        raw = self._read(self.EPISODES_KEY)
        if not raw:
            return []
        return _EPISODES.validate_json(raw)

    def save(self, episodes: list[Episode]) -> None:
        payload = [episode.model_dump(mode="json") for episode in episodes]
        self._write(self.EPISODES_KEY, json.dumps(payload, ensure_ascii=False))

    def load_experiences(self) -> list[ReusableExperience]:
        raw = self._read(self.EXPERIENCES_KEY)
        if not raw:
            return []
        return _EXPERIENCES.validate_json(raw)

    def save_experiences(self, experiences: list[ReusableExperience]) -> None:
        payload = [experience.model_dump(mode="json") for experience in experiences]
        self._write(self.EXPERIENCES_KEY, json.dumps(payload, ensure_ascii=False))

    def close(self) -> None:
        self._conn.close()
