"""Async highlight renderer: the façade the bookmark coordinator talks to.

Composes anchor resolution, overlap partitioning, and text wrapping. Every
container owns an ``asyncio.Lock`` that serialises operations on it; the
critical sections never await, so each render/remove/update is applied
atomically with respect to other coroutines. Bulk restore is the only
operation that yields, and only between items.
"""

from __future__ import annotations

import asyncio
import dataclasses
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from chatmarks.anchoring.resolver import AnchorResolver
from chatmarks.anchoring.text_index import TextIndex
from chatmarks.config import RenderConfig, get_settings
from chatmarks.errors import ContainerNotFoundError
from chatmarks.highlights.overlap import OverlapManager
from chatmarks.highlights.wrapper import TextWrapper, find_markers, marker_ids
from chatmarks.models import (
    HighlightRecord,
    HighlightSpan,
    HighlightStyle,
    RendererMetrics,
    RenderResult,
    RestoreResult,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

    from bs4 import Tag

    from chatmarks.models import HighlightRequest, OverlapSegment

logger = logging.getLogger(__name__)


@dataclass
class _ContainerState:
    """Everything the renderer tracks for one container."""

    container: Tag
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    spans: dict[str, HighlightSpan] = field(default_factory=dict)
    requests: dict[str, HighlightRequest] = field(default_factory=dict)
    texts: dict[str, str] = field(default_factory=dict)  # id -> resolved text
    segments: list[OverlapSegment] = field(default_factory=list)
    flashing: set[str] = field(default_factory=set)


class HighlightRenderer:
    """Paints, updates, and removes highlights in a parsed document.

    Args:
        document: Root of the parsed document (usually a ``BeautifulSoup``).
        container_lookup: Maps a container id to its ``Tag``. Defaults to
            finding the element whose ``container_attribute`` equals the id.
        resolver, wrapper, overlap_manager: Injected collaborators;
            defaults are built from ``config``.
        config: Renderer configuration; defaults to ``get_settings().render``.
    """

    def __init__(
        self,
        document: Tag,
        *,
        container_lookup: Callable[[str], Tag | None] | None = None,
        resolver: AnchorResolver | None = None,
        wrapper: TextWrapper | None = None,
        overlap_manager: OverlapManager | None = None,
        config: RenderConfig | None = None,
    ) -> None:
        self.document = document
        self.config = config or get_settings().render
        self.resolver = resolver or AnchorResolver()
        self.wrapper = wrapper or TextWrapper(self.config)
        self.overlap = overlap_manager or OverlapManager()
        self._lookup = container_lookup or self._find_container

        self._containers: dict[str, _ContainerState] = {}
        self._records: dict[str, HighlightRecord] = {}
        self._flash_timers: dict[str, asyncio.TimerHandle] = {}
        self._sequence = itertools.count()

        self._render_times: deque[float] = deque(maxlen=self.config.metrics_history)
        self._restore_times: deque[float] = deque(maxlen=self.config.metrics_history)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def render_highlight(
        self, request: HighlightRequest, *, flash: bool = False
    ) -> RenderResult:
        """Resolve ``request.anchor`` and paint it.

        Re-rendering an active id replaces its span but keeps its creation
        order. When the anchor cannot be resolved the container is left
        painted exactly as before.

        Raises:
            ContainerNotFoundError: ``request.container_id`` matches no
                element in the document.
        """
        started = time.perf_counter()
        container = self._lookup(request.container_id)
        if container is None:
            raise ContainerNotFoundError(request.container_id)

        previous = self._records.get(request.id)
        if previous is not None and previous.container_id != request.container_id:
            await self.remove_highlight(request.id)

        state = self._state_for(request.container_id, container)
        async with state.lock:
            result = self._render_locked(state, request, flash=flash)

        self._render_times.append((time.perf_counter() - started) * 1000)
        return result

    async def remove_highlight(self, highlight_id: str) -> bool:
        """Remove a highlight and repaint the rest of its container.

        Returns False when the id is not active.
        """
        record = self._records.get(highlight_id)
        if record is None:
            return False
        state = self._containers[record.container_id]
        async with state.lock:
            self.wrapper.unwrap_all(state.container)
            self._forget(state, highlight_id)
            errors = self._mount(state)
        for error in errors:
            logger.warning("Repaint after removing %s: %s", highlight_id, error)
        logger.debug("Removed highlight %s", highlight_id)
        return True

    async def update_highlight(
        self, highlight_id: str, style_delta: Mapping[str, Any]
    ) -> bool:
        """Apply a partial style change to an active highlight.

        Accepted keys are the ``HighlightStyle`` fields (``color``,
        ``priority``, ``class_name``, ``css_properties``). Only the segments
        the highlight paints are unwrapped and rewrapped; a priority change
        also reorders the ids of those segments.

        Raises:
            TypeError: ``style_delta`` has a key that is not a style field.
        """
        record = self._records.get(highlight_id)
        if record is None:
            return False
        new_style = dataclasses.replace(record.style, **style_delta)
        state = self._containers[record.container_id]

        async with state.lock:
            span = state.spans.get(highlight_id)
            if span is None:
                return False
            record.style = new_style
            if span.priority != new_style.priority:
                state.spans[highlight_id] = dataclasses.replace(
                    span, priority=new_style.priority
                )
            self.wrapper.unwrap(find_markers(state.container, highlight_id))
            state.segments = self.overlap.partition(state.spans.values())
            errors: list[str] = []
            for segment in state.segments:
                if highlight_id in segment.contributing_ids:
                    errors.extend(self._wrap(state, segment))
            self._sync_records(state)

        for error in errors:
            logger.warning("Repaint after updating %s: %s", highlight_id, error)
        return True

    async def restore_highlights(
        self,
        requests: Iterable[HighlightRequest],
        cancel_event: asyncio.Event | None = None,
    ) -> RestoreResult:
        """Render many highlights in order, tolerating individual failures.

        Yields to the event loop between items. Setting ``cancel_event``
        stops the pass before the next item; already restored highlights
        stay painted.
        """
        started = time.perf_counter()
        processed = 0
        errors: list[str] = []
        restored: list[str] = []
        failed: list[str] = []
        cancelled = False

        for request in requests:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                break
            processed += 1
            try:
                result = await self.render_highlight(request)
            except ContainerNotFoundError as exc:
                failed.append(request.id)
                errors.append(f"{request.id}: {exc}")
            else:
                if result.success:
                    restored.append(request.id)
                else:
                    failed.append(request.id)
                    errors.extend(f"{request.id}: {e}" for e in result.errors)
            await asyncio.sleep(0)

        self._restore_times.append((time.perf_counter() - started) * 1000)
        logger.info(
            "Restored %d/%d highlights%s",
            len(restored),
            processed,
            " (cancelled)" if cancelled else "",
        )
        return RestoreResult(
            total_processed=processed,
            successfully_restored=len(restored),
            failed_to_restore=len(failed),
            errors=errors,
            restored_ids=restored,
            failed_ids=failed,
            cancelled=cancelled,
        )

    async def clear_all_highlights(self) -> int:
        """Unwrap every highlight in every container. Returns how many were active."""
        removed = 0
        for state in list(self._containers.values()):
            async with state.lock:
                self.wrapper.unwrap_all(state.container)
                for highlight_id in list(state.spans):
                    self._forget(state, highlight_id)
                    removed += 1
                state.segments = []
        logger.debug("Cleared %d highlights", removed)
        return removed

    async def cleanup(self) -> int:
        """Clear everything and reset metrics and container state."""
        removed = await self.clear_all_highlights()
        for handle in self._flash_timers.values():
            handle.cancel()
        self._flash_timers.clear()
        self._containers.clear()
        self._records.clear()
        self._render_times.clear()
        self._restore_times.clear()
        return removed

    def get_metrics(self) -> RendererMetrics:
        # Overlap markers are shared between records; count each once
        elements = {
            id(marker)
            for record in self._records.values()
            for marker in record.mounted_elements
        }
        return RendererMetrics(
            total_highlights=len(self._records),
            total_elements=len(elements),
            average_render_time=_mean(self._render_times),
            average_restore_time=_mean(self._restore_times),
            last_render_time=self._render_times[-1] if self._render_times else 0.0,
            last_restore_time=self._restore_times[-1] if self._restore_times else 0.0,
        )

    def get_record(self, highlight_id: str) -> HighlightRecord | None:
        return self._records.get(highlight_id)

    def has_active_highlight(self, highlight_id: str) -> bool:
        record = self._records.get(highlight_id)
        return record is not None and record.state == "mounted"

    # ------------------------------------------------------------------
    # Locked internals (no awaits below this line)
    # ------------------------------------------------------------------

    def _render_locked(
        self, state: _ContainerState, request: HighlightRequest, *, flash: bool
    ) -> RenderResult:
        self.wrapper.unwrap_all(state.container)
        errors = self._refresh_spans(state)

        resolution = self.resolver.resolve(request.anchor, state.container)
        if not resolution.success or resolution.range is None:
            errors.extend(self._mount(state))
            message = str(resolution.error) if resolution.error else "unresolved"
            logger.info("Highlight %s not rendered: %s", request.id, message)
            return RenderResult(
                success=False, errors=[message, *errors], resolution=None
            )

        rng = resolution.range
        existing = state.spans.get(request.id)
        sequence = existing.sequence if existing else next(self._sequence)
        state.spans[request.id] = HighlightSpan(
            request.id, rng.start_offset, rng.end_offset, request.priority, sequence
        )
        state.requests[request.id] = request
        state.texts[request.id] = rng.text

        old = self._records.get(request.id)
        style = HighlightStyle(
            color=request.color or self.config.default_color,
            priority=request.priority,
            class_name=old.style.class_name if old else None,
            css_properties=dict(old.style.css_properties) if old else {},
        )
        self._records[request.id] = HighlightRecord(
            id=request.id, container_id=request.container_id, style=style
        )

        if flash and self.config.flash_duration > 0:
            self._start_flash(state, request.id)
        errors.extend(self._mount(state))

        mounted = len(self._records[request.id].mounted_elements)
        logger.debug(
            "Rendered %s via %s (%d elements, confidence %.3f)",
            request.id,
            rng.strategy_used,
            mounted,
            rng.achieved_confidence,
        )
        return RenderResult(
            success=mounted > 0,
            mounted_count=mounted,
            errors=errors,
            resolution=rng,
        )

    def _refresh_spans(self, state: _ContainerState) -> list[str]:
        """Re-resolve active spans whose text moved; drop those that are gone."""
        if not state.spans:
            return []
        text = TextIndex(state.container).text
        errors: list[str] = []
        for highlight_id, span in list(state.spans.items()):
            if text[span.start : span.end] == state.texts[highlight_id]:
                continue
            request = state.requests[highlight_id]
            resolution = self.resolver.resolve(request.anchor, state.container)
            if resolution.success and resolution.range is not None:
                rng = resolution.range
                state.spans[highlight_id] = dataclasses.replace(
                    span, start=rng.start_offset, end=rng.end_offset
                )
                state.texts[highlight_id] = rng.text
                logger.debug("Highlight %s drifted; re-anchored", highlight_id)
                continue
            errors.append(f"Highlight {highlight_id!r} dropped: {resolution.error}")
            logger.info("Dropping drifted highlight %s", highlight_id)
            self._forget(state, highlight_id)
        return errors

    def _mount(self, state: _ContainerState) -> list[str]:
        """Partition the container's spans and wrap every segment."""
        state.segments = self.overlap.partition(state.spans.values())
        errors: list[str] = []
        for segment in state.segments:
            errors.extend(self._wrap(state, segment))
        self._sync_records(state)
        return errors

    def _wrap(self, state: _ContainerState, segment: OverlapSegment) -> list[str]:
        primary = self._records[segment.primary_id]
        expected = self._expected_text(state, segment)
        result = self.wrapper.wrap_segment(
            state.container,
            segment,
            primary.style,
            expected_text=expected,
            flash=not state.flashing.isdisjoint(segment.contributing_ids),
        )
        return [str(failure) for failure in result.failures]

    @staticmethod
    def _expected_text(state: _ContainerState, segment: OverlapSegment) -> str:
        # Any contributing span covers the segment entirely
        span = state.spans[segment.primary_id]
        text = state.texts[segment.primary_id]
        return text[segment.start - span.start : segment.end - span.start]

    def _sync_records(self, state: _ContainerState) -> None:
        """Point each record at the markers currently painting it."""
        markers = find_markers(state.container)
        for highlight_id in state.spans:
            record = self._records[highlight_id]
            record.mounted_elements = [
                m for m in markers if highlight_id in marker_ids(m)
            ]
            record.state = "mounted"

    def _forget(self, state: _ContainerState, highlight_id: str) -> None:
        self._cancel_flash(highlight_id)
        state.flashing.discard(highlight_id)
        state.spans.pop(highlight_id, None)
        state.requests.pop(highlight_id, None)
        state.texts.pop(highlight_id, None)
        record = self._records.pop(highlight_id, None)
        if record is not None:
            record.mounted_elements = []
            record.state = "unmounted"

    # ------------------------------------------------------------------
    # Flash
    # ------------------------------------------------------------------

    def _start_flash(self, state: _ContainerState, highlight_id: str) -> None:
        self._cancel_flash(highlight_id)
        state.flashing.add(highlight_id)
        loop = asyncio.get_running_loop()
        self._flash_timers[highlight_id] = loop.call_later(
            self.config.flash_duration, self._end_flash, state, highlight_id
        )

    def _end_flash(self, state: _ContainerState, highlight_id: str) -> None:
        self._flash_timers.pop(highlight_id, None)
        state.flashing.discard(highlight_id)
        record = self._records.get(highlight_id)
        if record is None:
            return
        fading = [
            m
            for m in record.mounted_elements
            if state.flashing.isdisjoint(marker_ids(m))
        ]
        self.wrapper.set_flash(fading, enabled=False)

    def _cancel_flash(self, highlight_id: str) -> None:
        handle = self._flash_timers.pop(highlight_id, None)
        if handle is not None:
            handle.cancel()

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    def _find_container(self, container_id: str) -> Tag | None:
        return self.document.find(attrs={self.config.container_attribute: container_id})

    def _state_for(self, container_id: str, container: Tag) -> _ContainerState:
        state = self._containers.get(container_id)
        if state is None:
            state = _ContainerState(container)
            self._containers[container_id] = state
        elif state.container is not container:
            # The page re-rendered the message; markers left on the old
            # element are gone with it.
            state.container = container
        return state


def _mean(values: Iterable[float]) -> float:
    values = list(values)
    return sum(values) / len(values) if values else 0.0
