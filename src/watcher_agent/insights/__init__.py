"""
Insights Module
===============

Persistent knowledge derived from frame analysis.

Components:
    - InsightStore: Deduplicating JSON knowledge file
    - Insight: One derived fact about a moment in a video
"""

from watcher_agent.insights.store import Insight, InsightSource, InsightStore

__all__ = [
    "InsightStore",
    "Insight",
    "InsightSource",
]
