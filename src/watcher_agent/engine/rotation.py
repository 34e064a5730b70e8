"""
Source Rotation
===============

Ordering policy and circular cursor over the configured sources.

The order is fixed once at construction. Only the cursor moves, and it
wraps forever: after the last source comes the first again.

Example:
    queue = SourceQueue(sources, RotationMode.PRIORITY)
    first = queue.next_source()
    second = queue.next_source()
"""

import logging
import random
from typing import List, Optional, Sequence

from watcher_agent.models.source import RotationMode, Source


logger = logging.getLogger(__name__)


def build_queue_order(
    sources: Sequence[Source],
    mode: RotationMode,
    seed: Optional[int] = None,
) -> List[Source]:
    """
    Order sources for rotation.

    Args:
        sources: Sources in configuration order
        mode: sequential, random or priority
        seed: Seed for random mode

    Returns:
        New list in rotation order

    Raises:
        ValueError: If sources is empty
    """
    if not sources:
        raise ValueError("At least one source must be configured")

    ordered = list(sources)
    if mode == RotationMode.PRIORITY:
        # sorted() is stable, ties keep configuration order
        ordered = sorted(ordered, key=lambda source: source.priority)
    elif mode == RotationMode.RANDOM:
        random.Random(seed).shuffle(ordered)
    return ordered


class SourceQueue:
    """Fixed rotation order with a wrapping cursor."""

    def __init__(
        self,
        sources: Sequence[Source],
        mode: RotationMode = RotationMode.PRIORITY,
        seed: Optional[int] = None,
    ) -> None:
        self.mode = mode
        self._order = build_queue_order(sources, mode, seed)
        self._index = 0

        logger.info(
            f"Source queue built: {len(self._order)} sources, mode={mode.value}"
        )

    def __len__(self) -> int:
        return len(self._order)

    @property
    def order(self) -> List[Source]:
        """Rotation order (copy)."""
        return list(self._order)

    @property
    def position(self) -> int:
        """Index of the source the next call returns."""
        return self._index

    def next_source(self) -> Source:
        source = self._order[self._index]
        self._index = (self._index + 1) % len(self._order)
        return source

    def peek(self) -> Source:
        """Source the next call to next_source() returns."""
        return self._order[self._index]
