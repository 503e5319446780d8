"""Overlap partitioning for highlights inside one container.

Overlapping highlights cannot be painted as nested markers without
interleaving tags, so a container's highlight spans are first reduced to a
flat list of non-overlapping segments, each carrying every highlight active
over it (event-sweep algorithm). Each segment becomes one set of markers.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from chatmarks.marker_constants import OPACITY_CLASS_TEMPLATE
from chatmarks.models import OverlapSegment

if TYPE_CHECKING:
    from collections.abc import Iterable

    from chatmarks.models import HighlightSpan

logger = logging.getLogger(__name__)

BASE_OPACITY = 0.9
OPACITY_STEP = 0.15
MIN_OPACITY = 0.3
PRIORITY_BONUS_STEP = 0.1
MAX_PRIORITY_BONUS = 0.2

# End events sort before start events at the same position, so a highlight
# ending exactly where another starts never shares a segment with it.
_END = 0
_START = 1


class OverlapManager:
    """Computes segment partitions and overlap styling.

    Stateless; one instance may serve every container.
    """

    # ------------------------------------------------------------------
    # Partition (event-sweep)
    # ------------------------------------------------------------------

    def partition(self, spans: Iterable[HighlightSpan]) -> list[OverlapSegment]:
        """Reduce ``spans`` to the minimal ordered list of disjoint segments.

        Builds an event list of ``(position, kind, id)`` tuples, sorts it by
        position and sweeps through, emitting a segment wherever the active
        set is non-empty. Adjacent segments with identical active sets are
        merged; zero-length spans contribute nothing.

        Raises:
            ValueError: Two spans share an id.
        """
        by_id: dict[str, HighlightSpan] = {}
        for span in spans:
            if span.id in by_id:
                msg = f"duplicate highlight id {span.id!r} in partition input"
                raise ValueError(msg)
            by_id[span.id] = span

        events: list[tuple[int, int, str]] = []
        for span in by_id.values():
            if span.end <= span.start:
                continue
            events.append((span.start, _START, span.id))
            events.append((span.end, _END, span.id))
        if not events:
            return []
        events.sort()

        active: set[str] = set()
        segments: list[OverlapSegment] = []
        prev_pos: int | None = None

        for pos, kind, span_id in events:
            if prev_pos is not None and pos > prev_pos and active:
                ids = self.order_ids(by_id[i] for i in active)
                last = segments[-1] if segments else None
                if (
                    last is not None
                    and last.end == prev_pos
                    and last.contributing_ids == ids
                ):
                    segments[-1] = OverlapSegment(last.start, pos, ids)
                else:
                    segments.append(OverlapSegment(prev_pos, pos, ids))
            if kind == _START:
                active.add(span_id)
            else:
                active.discard(span_id)
            prev_pos = pos

        logger.debug(
            "Partitioned %d spans into %d segments", len(by_id), len(segments)
        )
        return segments

    @staticmethod
    def order_ids(spans: Iterable[HighlightSpan]) -> tuple[str, ...]:
        """Ids ordered by priority (highest first), then creation order."""
        ordered = sorted(spans, key=lambda s: (-s.priority, s.sequence, s.id))
        return tuple(s.id for s in ordered)

    # ------------------------------------------------------------------
    # Styling
    # ------------------------------------------------------------------

    @staticmethod
    def calculate_opacity(overlap_count: int, priority: int = 0) -> float:
        """Opacity for a segment painted by ``overlap_count`` highlights.

        Each extra overlapping highlight lowers opacity so stacked colours
        stay readable; high-priority highlights get a small boost back.
        """
        base = max(MIN_OPACITY, BASE_OPACITY - OPACITY_STEP * max(0, overlap_count - 1))
        bonus = min(max(0, priority) * PRIORITY_BONUS_STEP, MAX_PRIORITY_BONUS)
        return round(min(BASE_OPACITY, base + bonus), 2)

    @staticmethod
    def opacity_class(opacity: float) -> str:
        """CSS class for an opacity value, e.g. ``chatmarks-opacity-75``."""
        return OPACITY_CLASS_TEMPLATE.format(round(opacity * 100))
