"""Anchor resolution: locate a stored TextAnchor in the current document.

Strategies run cheapest and most precise first:

1. structural  - follow the recorded child-index path
2. offset      - trust the recorded character offsets
3. fuzzy       - whitespace-normalized context search, then bounded
                 approximate matching of the selected text

The resolver never raises for "not found"; the outcome is a
``ResolutionResult`` the caller branches on.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING

from chatmarks.anchoring.capture import checksum_of_normalized
from chatmarks.anchoring.fuzzy import find_best_match
from chatmarks.anchoring.text_index import (
    NormalizedText,
    TextIndex,
    clean_view,
    collapse_whitespace,
    is_text_node,
    normalize_whitespace,
    walk_path,
)
from chatmarks.config import AnchorConfig, get_settings
from chatmarks.errors import AnchorResolutionFailure
from chatmarks.models import (
    STRATEGIES,
    AnchorMetrics,
    ResolutionResult,
    ResolvedRange,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from bs4 import Tag

    from chatmarks.models import AnchorStrategy, TextAnchor

    _Attempt = Callable[[TextAnchor, "_Document"], "_Match | None"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Match:
    """Raw-offset candidate produced by a strategy, before node mapping."""

    start: int
    end: int
    confidence: float
    strategy: AnchorStrategy
    low_confidence: bool = False
    # Normalized span of the match; None for structural matches
    norm_span: tuple[int, int] | None = None


@dataclass(frozen=True)
class _Sample:
    duration: float  # milliseconds
    strategy: AnchorStrategy | None  # None when resolution failed


class _Document:
    """Views of one container shared by every strategy in a single resolve."""

    def __init__(self, container: Tag) -> None:
        self.container = container
        self.view = clean_view(container)
        self.index = TextIndex(self.view)
        self.text = self.index.text
        self._normalized: NormalizedText | None = None

    @property
    def normalized(self) -> NormalizedText:
        if self._normalized is None:
            self._normalized = normalize_whitespace(self.text)
        return self._normalized

    def live_index(self) -> TextIndex:
        """Index over the live container (the view may be a marker-free copy)."""
        if self.view is self.container:
            return self.index
        return TextIndex(self.container)


class AnchorResolver:
    """Runs the structural -> offset -> fuzzy cascade against a container.

    Keeps a bounded history of recent resolutions for ``get_metrics``.
    """

    def __init__(self, config: AnchorConfig | None = None) -> None:
        self.config = config or get_settings().anchor
        self._history: deque[_Sample] = deque(maxlen=self.config.metrics_history)

    def resolve(self, anchor: TextAnchor, container: Tag) -> ResolutionResult:
        """Locate ``anchor`` inside ``container``.

        Returns a successful result with a live ``ResolvedRange`` for the first
        strategy that matches, or a failed result listing every strategy that
        was attempted. Strategies not started before ``max_resolution_time``
        ran out are skipped.
        """
        started = time.perf_counter()
        result = self._resolve(anchor, container, started)
        self._history.append(
            _Sample(
                (time.perf_counter() - started) * 1000,
                result.range.strategy_used if result.range else None,
            )
        )
        return result

    def validate_anchor(self, anchor: TextAnchor) -> bool:
        """Whether ``anchor`` is internally consistent enough to resolve.

        Anchors built through ``TextAnchor`` always pass; records loaded
        without validation (``model_construct``) may not.
        """
        return (
            bool(anchor.selected_text and anchor.selected_text.strip())
            and 0 <= anchor.start_offset < anchor.end_offset
            and 0.0 <= anchor.confidence <= 1.0
            and anchor.strategy in STRATEGIES
            and all(step >= 0 for step in anchor.structural_path)
        )

    def get_metrics(self) -> AnchorMetrics:
        samples = list(self._history)
        distribution: dict[AnchorStrategy, int] = dict.fromkeys(STRATEGIES, 0)
        for sample in samples:
            if sample.strategy is not None:
                distribution[sample.strategy] += 1
        if not samples:
            return AnchorMetrics(0, 0.0, 0.0, 0.0, distribution)
        succeeded = sum(1 for s in samples if s.strategy is not None)
        return AnchorMetrics(
            total_operations=len(samples),
            success_rate=succeeded / len(samples),
            average_resolution_time=sum(s.duration for s in samples) / len(samples),
            last_resolution_time=samples[-1].duration,
            strategy_distribution=distribution,
        )

    def clear_metrics(self) -> None:
        self._history.clear()

    def _resolve(
        self, anchor: TextAnchor, container: Tag, started: float
    ) -> ResolutionResult:
        if not self.validate_anchor(anchor):
            return _failure("Anchor record is inconsistent; not resolving", [])

        doc = _Document(container)
        attempted: list[AnchorStrategy] = []
        match = None
        for strategy, attempt in self._cascade(anchor):
            if self._out_of_time(started):
                return _failure(
                    f"Resolution time budget spent locating "
                    f"{_preview(anchor.selected_text)!r}",
                    attempted,
                )
            attempted.append(strategy)
            match = attempt(anchor, doc)
            if match is not None:
                break

        if match is None:
            return _failure(
                f"Could not locate {_preview(anchor.selected_text)!r}", attempted
            )

        resolved = self._to_range(anchor, doc, match)
        if resolved is None:
            return _failure(
                "Matched text has no corresponding live text nodes", attempted
            )

        logger.debug(
            "Resolved anchor via %s at [%d, %d) confidence=%.3f",
            resolved.strategy_used,
            resolved.start_offset,
            resolved.end_offset,
            resolved.achieved_confidence,
        )
        return ResolutionResult(
            success=True, range=resolved, attempted=tuple(attempted)
        )

    def _cascade(self, anchor: TextAnchor) -> list[tuple[AnchorStrategy, _Attempt]]:
        steps: list[tuple[AnchorStrategy, _Attempt]] = []
        if anchor.structural_path:
            steps.append(("structural", self._try_structural))
        steps.append(("offset", self._try_offset))
        steps.append(("fuzzy", self._try_fuzzy))
        return steps

    def _out_of_time(self, started: float) -> bool:
        budget = self.config.max_resolution_time
        return budget is not None and time.perf_counter() - started > budget

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _try_structural(self, anchor: TextAnchor, doc: _Document) -> _Match | None:
        node = walk_path(doc.view, anchor.structural_path)
        if node is None or not is_text_node(node):
            return None
        info = doc.index.info_for(node)
        if info is None:
            return None
        if not info.char_start <= anchor.start_offset < info.char_end:
            return None
        actual = doc.text[anchor.start_offset : anchor.end_offset]
        # Capture records a path for whitespace-only differences too
        if actual != anchor.selected_text and (
            _squash(actual) != _squash(anchor.selected_text)
        ):
            return None
        return _Match(
            anchor.start_offset, anchor.end_offset, anchor.confidence, "structural"
        )

    def _try_offset(self, anchor: TextAnchor, doc: _Document) -> _Match | None:
        start, end = anchor.start_offset, anchor.end_offset
        if end > len(doc.text):
            return None
        actual = doc.text[start:end]
        confidence = anchor.confidence * self.config.offset_factor
        if actual != anchor.selected_text:
            if _squash(actual) != _squash(anchor.selected_text):
                return None
            confidence *= self.config.whitespace_factor
        norm = doc.normalized
        return _Match(
            start,
            end,
            confidence,
            "offset",
            norm_span=(norm.from_raw(start), norm.from_raw(end)),
        )

    def _try_fuzzy(self, anchor: TextAnchor, doc: _Document) -> _Match | None:
        return self._try_context(anchor, doc) or self._try_approximate(anchor, doc)

    def _try_context(self, anchor: TextAnchor, doc: _Document) -> _Match | None:
        """Search for the normalized context + selection; nearest hit wins."""
        if not (anchor.context_before or anchor.context_after):
            return None
        pattern = collapse_whitespace(
            anchor.context_before + anchor.selected_text + anchor.context_after
        )
        norm = doc.normalized
        hint = norm.from_raw(anchor.start_offset)
        prefix = len(collapse_whitespace(anchor.context_before))
        through = len(
            collapse_whitespace(anchor.context_before + anchor.selected_text)
        )

        best: int | None = None
        pos = norm.text.find(pattern)
        while pos != -1:
            if best is None or abs(pos + prefix - hint) < abs(best + prefix - hint):
                best = pos
            pos = norm.text.find(pattern, pos + 1)
        if best is None:
            return None

        ns, ne = best + prefix, best + through
        if ne <= ns:
            return None
        return _Match(
            norm.to_raw(ns),
            norm.to_raw_end(ne),
            anchor.confidence * self.config.context_factor,
            "fuzzy",
            norm_span=(ns, ne),
        )

    def _try_approximate(self, anchor: TextAnchor, doc: _Document) -> _Match | None:
        """Bounded edit-distance search for the selection near its old offset."""
        cfg = self.config
        full = collapse_whitespace(anchor.selected_text)
        pattern = full[: cfg.max_pattern_length]
        norm = doc.normalized
        hint = norm.from_raw(anchor.start_offset)
        lo = max(0, hint - cfg.search_window)
        hi = min(len(norm.text), hint + len(full) + cfg.search_window)
        if lo >= hi:
            return None

        found = find_best_match(
            pattern, norm.text[lo:hi], threshold=cfg.fuzzy_threshold, hint=hint - lo
        )
        if found is None:
            return None

        ns = lo + found.start
        # A capped pattern only locates the head of the selection
        ne = min(len(norm.text), lo + found.end + (len(full) - len(pattern)))
        return _Match(
            norm.to_raw(ns),
            norm.to_raw_end(ne),
            anchor.confidence * cfg.approximate_factor * found.similarity,
            "fuzzy",
            low_confidence=True,
            norm_span=(ns, ne),
        )

    # ------------------------------------------------------------------
    # Finishing
    # ------------------------------------------------------------------

    def _checksum_matches(
        self, anchor: TextAnchor, doc: _Document, norm_span: tuple[int, int]
    ) -> bool:
        """Recompute the checksum over the context window around the match."""
        before = len(collapse_whitespace(anchor.context_before))
        after = len(collapse_whitespace(anchor.context_after))
        ns, ne = norm_span
        text = doc.normalized.text
        window = text[max(0, ns - before) : ne + after]
        return checksum_of_normalized(window) == anchor.checksum

    def _to_range(
        self, anchor: TextAnchor, doc: _Document, match: _Match
    ) -> ResolvedRange | None:
        confidence = match.confidence
        checksum_matched = True
        if match.norm_span is not None and anchor.checksum:
            checksum_matched = self._checksum_matches(anchor, doc, match.norm_span)
            if not checksum_matched:
                logger.debug("Checksum mismatch for %s match", match.strategy)
                confidence *= self.config.checksum_penalty

        index = doc.live_index()
        start = index.position_at(match.start)
        end = index.position_at(match.end, is_end=True)
        if start is None or end is None:
            return None
        return ResolvedRange(
            start=start,
            end=end,
            start_offset=match.start,
            end_offset=match.end,
            text=index.text[match.start : match.end],
            achieved_confidence=round(min(1.0, max(0.0, confidence)), 4),
            strategy_used=match.strategy,
            low_confidence=match.low_confidence,
            checksum_matched=checksum_matched,
        )


def _squash(text: str) -> str:
    return collapse_whitespace(text).strip()


def _preview(text: str, limit: int = 40) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _failure(message: str, attempted: list[AnchorStrategy]) -> ResolutionResult:
    error = AnchorResolutionFailure(message, tuple(attempted))
    logger.info("Anchor resolution failed: %s", error)
    return ResolutionResult(success=False, error=error, attempted=tuple(attempted))


def resolve_anchor(
    anchor: TextAnchor, container: Tag, config: AnchorConfig | None = None
) -> ResolutionResult:
    """Convenience wrapper around ``AnchorResolver(config).resolve``."""
    return AnchorResolver(config).resolve(anchor, container)
