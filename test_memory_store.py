from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from memory.store import InMemoryEpisodeStore, SQLiteEpisodeStore
from shared.models import Episode, EpisodeStep, ReusableExperience, TaskPattern


def _episode(episode_id: str) -> Episode:
    now = datetime(2025, 6, 1, 8, 0, tzinfo=timezone.utc)
    return Episode(
        id=episode_id,
        user_request="按金额排序",
        tags=["sort"],
        steps=[EpisodeStep(step_number=1, tool_name="excel_sort_range", parameters={"range": "A1:B9"}, result="success")],
        outcome="success",
        start_time=now,
        end_time=now,
        success_rate=1.0,
    )


def _experience() -> ReusableExperience:
    now = datetime(2025, 6, 1, 8, 0, tzinfo=timezone.utc)
    return ReusableExperience(
        id="task_pattern_1",
        type="task_pattern",
        created_at=now,
        last_used_at=now,
        content=TaskPattern(task_type="sort", keywords=["sort"]),
    )


def test_sqlite_episode_store_roundtrip(tmp_path: Path):
    db_path = tmp_path / "memory_test.db"
    store = SQLiteEpisodeStore(db_path=str(db_path))

    try:
        assert store.load() == []
        assert store.load_experiences() == []

        store.save([_episode("ep_1"), _episode("ep_2")])
        store.save([_episode("ep_2")])
        store.save_experiences([_experience()])

        episodes = store.load()
        assert [episode.id for episode in episodes] == ["ep_2"]
        assert episodes[0].steps[0].parameters == {"range": "A1:B9"}
        experiences = store.load_experiences()
        assert isinstance(experiences[0].content, TaskPattern)
        assert experiences[0].content.keywords == ["sort"]
    finally:
        store.close()


def test_sqlite_episode_store_namespaces_are_isolated(tmp_path: Path):
    db_path = str(tmp_path / "memory_test.db")
    first = SQLiteEpisodeStore(db_path=db_path, namespace="workbook-a")
    second = SQLiteEpisodeStore(db_path=db_path, namespace="workbook-b")

    try:
        first.save([_episode("ep_a")])
        assert second.load() == []
        assert [episode.id for episode in first.load()] == ["ep_a"]
    finally:
        first.close()
        second.close()


def test_in_memory_store_copies_experiences():
    store = InMemoryEpisodeStore()
    experience = _experience()
    store.save_experiences([experience])

    experience.usage_count = 9
    loaded = store.load_experiences()
    loaded[0].usage_count = 7

    assert store.load_experiences()[0].usage_count == 1
