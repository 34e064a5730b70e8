"""
Insight Store
=============

Knowledge file of insights derived from watched video.

Layout of {data_dir}/knowledge.json (camelCase, like the uplink wire):
    {
        "metadata": {"version": "1.0.0", "lastUpdated": "...", "totalInsights": 3},
        "insights": [...],
        "categoryStats": {"F1": {"insightsCount": 3, "hoursWatched": 1.5}}
    }

Design Rules:
    - Duplicate insights are dropped: same video, same content, frame time
      within dedupe_window_seconds
    - Saves only when something changed, via a temp file and rename
    - A corrupt file is logged and replaced by an empty knowledge base
"""

import asyncio
import json
import logging
import os
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import Field, ValidationError

from watcher_agent.config import InsightsConfig
from watcher_agent.models.observation import WireModel, utc_now


logger = logging.getLogger(__name__)


KNOWLEDGE_FILE = "knowledge.json"
KNOWLEDGE_VERSION = "1.0.0"


class InsightSource(WireModel):
    """Where in which video an insight was observed."""

    video_id: str = ""
    video_title: str = ""
    frame_time: float = 0.0


class Insight(WireModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=utc_now)
    category: str = "general"
    source: InsightSource = Field(default_factory=InsightSource)
    type: str = "observation"
    content: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    tags: List[str] = Field(default_factory=list)


class CategoryStats(WireModel):
    model_config = WireModel.model_config | {"frozen": False}

    insights_count: int = 0
    hours_watched: float = 0.0


class KnowledgeMetadata(WireModel):
    model_config = WireModel.model_config | {"frozen": False}

    version: str = KNOWLEDGE_VERSION
    last_updated: datetime = Field(default_factory=utc_now)
    total_insights: int = 0


class KnowledgeBase(WireModel):
    model_config = WireModel.model_config | {"frozen": False}

    metadata: KnowledgeMetadata = Field(default_factory=KnowledgeMetadata)
    insights: List[Insight] = Field(default_factory=list)
    category_stats: Dict[str, CategoryStats] = Field(default_factory=dict)


class InsightStore:
    """
    Deduplicating, periodically saved insight collection.

    Example:
        store = InsightStore(settings.insights)
        store.load()
        store.start_autosave()

        store.add_insight(Insight(content="Safety car deployed", category="F1"))
        store.update_watch_time("F1", 0.5)

        await store.shutdown()
    """

    def __init__(self, config: InsightsConfig) -> None:
        self.config = config
        self.path = Path(config.data_dir) / KNOWLEDGE_FILE

        self._knowledge = KnowledgeBase()
        self._dirty: bool = False
        self._autosave_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def insights(self) -> List[Insight]:
        return list(self._knowledge.insights)

    def load(self) -> None:
        """Create the data directory and load an existing knowledge file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        if not self.path.exists():
            logger.info("Starting with empty knowledge base")
            return

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            self._knowledge = KnowledgeBase.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.error(f"Failed to load {self.path}, starting empty: {e}")
            self._knowledge = KnowledgeBase()
            return

        logger.info(
            f"Loaded knowledge base: {self._knowledge.metadata.total_insights} insights"
        )

    # -------------------------------------------------------------------------
    # Updates
    # -------------------------------------------------------------------------

    def add_insight(self, insight: Insight) -> bool:
        """
        Add an insight unless an equivalent one is already stored.

        Returns:
            True if the insight was added
        """
        if self._is_duplicate(insight):
            logger.debug(f"Duplicate insight skipped: {insight.content[:50]}")
            return False

        self._knowledge.insights.append(insight)
        self._knowledge.metadata.total_insights += 1
        self._category(insight.category).insights_count += 1
        self._dirty = True

        logger.debug(f"Added insight: {insight.type} - {insight.content[:50]}")
        return True

    def _is_duplicate(self, insight: Insight) -> bool:
        window = self.config.dedupe_window_seconds
        return any(
            existing.source.video_id == insight.source.video_id
            and abs(existing.source.frame_time - insight.source.frame_time) < window
            and existing.content == insight.content
            for existing in self._knowledge.insights
        )

    def update_watch_time(self, category: str, hours: float) -> None:
        """Credit watched hours to a category."""
        if hours <= 0:
            return
        self._category(category).hours_watched += hours
        self._dirty = True

    def _category(self, category: str) -> CategoryStats:
        stats = self._knowledge.category_stats.get(category)
        if stats is None:
            stats = CategoryStats()
            self._knowledge.category_stats[category] = stats
        return stats

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def save(self) -> bool:
        """
        Write the knowledge file if anything changed.

        Returns:
            True if the file was written
        """
        if not self._dirty:
            return False

        self._knowledge.metadata.last_updated = utc_now()
        tmp_path = self.path.with_suffix(".json.tmp")

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(self._knowledge.to_wire(), f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Failed to save knowledge base: {e}")
            return False

        self._dirty = False
        logger.debug("Knowledge base saved")
        return True

    def start_autosave(self) -> None:
        if self._autosave_task is not None:
            return
        self._stop_event.clear()
        self._autosave_task = asyncio.create_task(
            self._autosave_loop(),
            name="insight_autosave",
        )

    async def _autosave_loop(self) -> None:
        interval = self.config.save_interval_seconds
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
            self.save()

    async def shutdown(self) -> None:
        """Stop autosaving and write pending changes."""
        self._stop_event.set()
        if self._autosave_task is not None:
            await asyncio.gather(self._autosave_task, return_exceptions=True)
            self._autosave_task = None
        self.save()
        logger.info("Insight store shut down")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_insights_by_category(self, category: str) -> List[Insight]:
        return [i for i in self._knowledge.insights if i.category == category]

    def get_insights_by_type(self, insight_type: str) -> List[Insight]:
        return [i for i in self._knowledge.insights if i.type == insight_type]

    def get_stats(self) -> Dict[str, Any]:
        metadata = self._knowledge.metadata.to_wire()
        metadata["categoryStats"] = {
            name: stats.to_wire()
            for name, stats in self._knowledge.category_stats.items()
        }
        return metadata
