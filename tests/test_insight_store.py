"""
Insight Store Tests
===================

Deduplication, watch time accounting and knowledge file persistence.
"""

import asyncio
import json

import pytest

from watcher_agent.config import InsightsConfig
from watcher_agent.insights import Insight, InsightSource, InsightStore
from watcher_agent.insights.store import KNOWLEDGE_FILE


@pytest.fixture
def store(tmp_path):
    store = InsightStore(InsightsConfig(data_dir=str(tmp_path), dedupe_window_seconds=10))
    store.load()
    return store


def make_insight(content="Safety car deployed", video_id="v1", frame_time=30.0, **kwargs):
    return Insight(
        content=content,
        source=InsightSource(video_id=video_id, video_title="Race", frame_time=frame_time),
        **kwargs,
    )


class TestDeduplication:

    def test_same_content_within_window_is_duplicate(self, store):
        assert store.add_insight(make_insight(frame_time=30.0))
        assert not store.add_insight(make_insight(frame_time=35.0))
        assert len(store.insights) == 1

    def test_outside_window_or_other_video_is_kept(self, store):
        assert store.add_insight(make_insight(frame_time=30.0))
        assert store.add_insight(make_insight(frame_time=45.0))
        assert store.add_insight(make_insight(video_id="v2", frame_time=30.0))
        assert store.add_insight(make_insight(content="Pit stop", frame_time=30.0))
        assert len(store.insights) == 4


class TestAccounting:

    def test_category_stats(self, store):
        store.add_insight(make_insight(category="F1", type="incident"))
        store.add_insight(make_insight(content="Pit stop", category="F1", type="strategy"))
        store.update_watch_time("F1", 0.25)
        store.update_watch_time("F1", 0.25)
        store.update_watch_time("WEC", 0.0)

        stats = store.get_stats()
        assert stats["totalInsights"] == 2
        assert stats["categoryStats"]["F1"] == {"insightsCount": 2, "hoursWatched": 0.5}
        assert "WEC" not in stats["categoryStats"]
        assert [i.type for i in store.get_insights_by_category("F1")] == ["incident", "strategy"]
        assert len(store.get_insights_by_type("strategy")) == 1


class TestPersistence:

    def test_save_only_when_dirty(self, store):
        assert store.save() is False
        store.add_insight(make_insight())
        assert store.dirty
        assert store.save() is True
        assert not store.dirty
        assert store.save() is False

    def test_round_trip_through_file(self, store, tmp_path):
        store.add_insight(make_insight(category="F1", tags=["safety-car"]))
        store.update_watch_time("F1", 1.5)
        store.save()

        raw = json.loads((tmp_path / KNOWLEDGE_FILE).read_text())
        assert raw["metadata"]["totalInsights"] == 1
        assert raw["insights"][0]["source"]["frameTime"] == 30.0

        reloaded = InsightStore(store.config)
        reloaded.load()
        assert reloaded.insights[0].tags == ["safety-car"]
        assert reloaded.get_stats()["categoryStats"]["F1"]["hoursWatched"] == 1.5
        assert not reloaded.add_insight(make_insight(category="F1"))

    def test_corrupt_file_starts_empty(self, tmp_path):
        (tmp_path / KNOWLEDGE_FILE).write_text("{not json")
        store = InsightStore(InsightsConfig(data_dir=str(tmp_path)))
        store.load()
        assert store.insights == []
        assert store.get_stats()["totalInsights"] == 0

    def test_shutdown_writes_pending_changes(self, tmp_path):
        async def scenario():
            store = InsightStore(InsightsConfig(data_dir=str(tmp_path), save_interval_seconds=60))
            store.load()
            store.start_autosave()
            store.add_insight(make_insight())
            await store.shutdown()
            return store

        store = asyncio.run(scenario())
        assert not store.dirty
        assert (tmp_path / KNOWLEDGE_FILE).exists()

    def test_autosave_writes_periodically(self, tmp_path):
        async def scenario():
            store = InsightStore(InsightsConfig(data_dir=str(tmp_path), save_interval_seconds=0.05))
            store.load()
            store.start_autosave()
            store.add_insight(make_insight())
            for _ in range(100):
                if not store.dirty:
                    break
                await asyncio.sleep(0.01)
            assert not store.dirty
            await store.shutdown()

        asyncio.run(scenario())
