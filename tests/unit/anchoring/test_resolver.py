"""Tests for the anchor resolution cascade.

Covers each strategy in isolation, the order in which they are tried, and
graceful degradation when the document no longer contains the anchor.
"""

from __future__ import annotations

import itertools

import pytest

import chatmarks.anchoring.resolver as resolver_module
from chatmarks.anchoring.capture import capture_anchor
from chatmarks.anchoring.resolver import AnchorResolver, resolve_anchor
from chatmarks.config import AnchorConfig
from chatmarks.errors import AnchorResolutionFailure
from chatmarks.highlights.wrapper import TextWrapper
from chatmarks.models import (
    HighlightStyle,
    OverlapSegment,
    SelectionDescriptor,
    TextAnchor,
)
from tests.helpers.dom import message, select


def _is_inside(node: object, container: object) -> bool:
    return any(d is node for d in container.descendants)  # type: ignore[attr-defined]


class TestStructural:
    """Unchanged documents resolve structurally at full confidence."""

    def test_round_trip(self, anchor_config: AnchorConfig) -> None:
        """Resolving against the unchanged document reproduces the capture."""
        container = message("<p>The quick brown fox jumps over the lazy dog.</p>")
        anchor = capture_anchor(select(container, "brown fox"), anchor_config)

        result = AnchorResolver(anchor_config).resolve(anchor, container)

        assert result.success
        assert result.range is not None
        assert result.range.strategy_used == "structural"
        assert result.range.text == "brown fox"
        assert result.range.achieved_confidence == anchor.confidence
        assert (result.range.start_offset, result.range.end_offset) == (10, 19)
        assert result.attempted == ("structural",)
        assert not result.range.low_confidence

    def test_round_trip_across_nested_formatting(
        self, anchor_config: AnchorConfig
    ) -> None:
        """Start and end positions land in the right nested text nodes."""
        container = message("<p>Hello <b>bold</b> world</p>")
        anchor = capture_anchor(select(container, "bold world"), anchor_config)

        result = resolve_anchor(anchor, container, anchor_config)

        assert result.range is not None
        assert result.range.strategy_used == "structural"
        assert str(result.range.start.node) == "bold"
        assert result.range.start.offset == 0
        assert str(result.range.end.node) == " world"
        assert result.range.end.offset == 6

    def test_round_trip_with_reflowed_selection(
        self, anchor_config: AnchorConfig
    ) -> None:
        """Selection text with collapsed whitespace still resolves structurally."""
        container = message("<p>alpha one\n  two three omega</p>")
        selection = SelectionDescriptor("one two three", container, 6, 21)
        anchor = capture_anchor(selection, anchor_config)
        assert anchor.structural_path == (0, 0)
        assert anchor.strategy == "structural"

        result = resolve_anchor(anchor, container, anchor_config)

        assert result.range is not None
        assert result.range.strategy_used == "structural"
        assert result.range.achieved_confidence == anchor.confidence
        assert result.range.text == "one\n  two three"
        assert result.attempted == ("structural",)

    def test_resolves_through_existing_markers(
        self, anchor_config: AnchorConfig, render_config
    ) -> None:
        """Markers from other highlights do not break the recorded path."""
        container = message("<p>Hello bold world</p>")
        anchor = capture_anchor(select(container, "world"), anchor_config)
        TextWrapper(render_config).wrap_segment(
            container, OverlapSegment(6, 10, ("other",)), HighlightStyle()
        )

        result = resolve_anchor(anchor, container, anchor_config)

        assert result.range is not None
        assert result.range.strategy_used == "structural"
        assert result.range.text == "world"
        # Positions point into the live tree, not the marker-free copy
        assert _is_inside(result.range.start.node, container)
        assert _is_inside(result.range.end.node, container)


class TestOffset:
    """Offsets still address the text even though the structure moved."""

    def test_restructured_document(self, anchor_config: AnchorConfig) -> None:
        """Wrapped in a new element, the text is found by offset at 0.85x."""
        before = message("<p>Hello <b>bold</b> world</p>")
        anchor = capture_anchor(select(before, "world"), anchor_config)
        after = message("<section><p>Hello <b>bold</b> world</p></section>")

        result = resolve_anchor(anchor, after, anchor_config)

        assert result.range is not None
        assert result.range.strategy_used == "offset"
        assert result.range.text == "world"
        assert result.range.achieved_confidence == pytest.approx(
            anchor.confidence * 0.85, abs=1e-4
        )
        assert result.range.checksum_matched
        assert result.attempted == ("structural", "offset")

    def test_whitespace_only_difference(self, anchor_config: AnchorConfig) -> None:
        """Reflowed text at the same offsets costs the whitespace factor."""
        anchor = capture_anchor(
            select(message("<p>one two three</p>"), "two three"), anchor_config
        )
        changed = message("<section><p>one two\nthree</p></section>")

        result = resolve_anchor(anchor, changed, anchor_config)

        assert result.range is not None
        assert result.range.strategy_used == "offset"
        assert result.range.text == "two\nthree"
        assert result.range.achieved_confidence == pytest.approx(
            anchor.confidence * 0.85 * 0.95, abs=1e-4
        )

    def test_anchor_without_path_skips_structural(
        self, anchor_config: AnchorConfig
    ) -> None:
        """Anchors without a path start at the offset strategy."""
        container = message("<p>alpha beta gamma</p>")
        anchor = TextAnchor(
            selected_text="beta", start_offset=6, end_offset=10, confidence=0.7
        )
        result = resolve_anchor(anchor, container, anchor_config)
        assert result.range is not None
        assert result.range.strategy_used == "offset"
        assert result.attempted == ("offset",)


class TestFuzzy:
    """Context search and approximate matching."""

    def test_whitespace_normalized_context_match(
        self, anchor_config: AnchorConfig
    ) -> None:
        """Extra whitespace and trailing text: found via context at ~0.62."""
        original = message("<p>Remember the capital of France is Paris.</p>")
        anchor = capture_anchor(
            select(
                original,
                "capital of France",
                context_before="the ",
                context_after=" is Paris",
            ),
            anchor_config,
        )
        assert anchor.confidence == pytest.approx(0.95)
        changed = message(
            "<p>Remember the   capital  of France is Paris, the City of Light.</p>"
        )

        result = resolve_anchor(anchor, changed, anchor_config)

        assert result.success
        assert result.range is not None
        assert result.range.strategy_used == "fuzzy"
        assert result.range.text == "capital  of France"
        assert result.range.start_offset == 15
        assert result.range.achieved_confidence == pytest.approx(0.6175, abs=1e-4)
        assert result.range.checksum_matched
        assert not result.range.low_confidence
        assert result.attempted == ("structural", "offset", "fuzzy")

    def test_context_match_nearest_to_old_offset(
        self, anchor_config: AnchorConfig
    ) -> None:
        """Repeated context resolves to the occurrence nearest the old offset."""
        original = message("<p>see the cat. see the cat.</p>")
        first = capture_anchor(
            select(original, "cat", 0, context_before="the ", context_after="."),
            anchor_config,
        )
        second = capture_anchor(
            select(original, "cat", 1, context_before="the ", context_after="."),
            anchor_config,
        )
        shifted = message("<p>Now: see the cat. see the cat.</p>")

        first_result = resolve_anchor(first, shifted, anchor_config)
        second_result = resolve_anchor(second, shifted, anchor_config)

        assert first_result.range is not None
        assert second_result.range is not None
        assert first_result.range.start_offset == 13
        assert second_result.range.start_offset == 26
        assert second_result.range.achieved_confidence == pytest.approx(
            0.75 * 0.65, abs=1e-4
        )

    def test_approximate_match_is_low_confidence(
        self, anchor_config: AnchorConfig
    ) -> None:
        """An edited word is found approximately and flagged low confidence."""
        anchor = capture_anchor(
            select(message("<p>The quick brown fox jumps.</p>"), "The quick brown fox"),
            anchor_config,
        )
        edited = message("<p>The quick brown fax jumps.</p>")

        result = resolve_anchor(anchor, edited, anchor_config)

        assert result.range is not None
        assert result.range.strategy_used == "fuzzy"
        assert result.range.text == "The quick brown fax"
        assert result.range.low_confidence
        # Context changed too, so the checksum no longer matches
        assert not result.range.checksum_matched
        assert result.range.achieved_confidence == pytest.approx(
            anchor.confidence * 0.5 * (18 / 19) * 0.9, abs=1e-4
        )

    def test_threshold_is_configurable(self) -> None:
        """A stricter threshold rejects the same near miss."""
        strict = AnchorConfig(fuzzy_threshold=0.99)
        anchor = capture_anchor(
            select(message("<p>The quick brown fox jumps.</p>"), "The quick brown fox"),
            strict,
        )
        result = resolve_anchor(
            anchor, message("<p>The quick brown fax jumps.</p>"), strict
        )
        assert not result.success

    def test_search_window_bounds_approximate_search(self) -> None:
        """Text beyond search_window is not considered."""
        narrow = AnchorConfig(search_window=5)
        anchor = TextAnchor(
            selected_text="distant phrase",
            start_offset=0,
            end_offset=14,
            confidence=0.9,
        )
        far_away = message("<p>" + "x" * 200 + " distant phrasf</p>")
        assert not resolve_anchor(anchor, far_away, narrow).success
        assert resolve_anchor(anchor, far_away, AnchorConfig()).success


class TestGracefulDegradation:
    """Missing anchors are reported, never raised."""

    def test_unrelated_content(self, anchor_config: AnchorConfig) -> None:
        """A failed resolution lists every strategy it tried."""
        anchor = capture_anchor(
            select(message("<p>The quick brown fox jumps.</p>"), "brown fox"),
            anchor_config,
        )
        result = resolve_anchor(
            anchor, message("<p>Completely different content here.</p>"), anchor_config
        )

        assert not result.success
        assert result.range is None
        assert isinstance(result.error, AnchorResolutionFailure)
        assert result.attempted == ("structural", "offset", "fuzzy")
        assert result.error.attempted == result.attempted
        assert "tried: structural, offset, fuzzy" in str(result.error)

    def test_offsets_beyond_text(self, anchor_config: AnchorConfig) -> None:
        """Offsets past the end fail instead of raising."""
        anchor = TextAnchor(
            selected_text="nothing", start_offset=100, end_offset=107, confidence=0.5
        )
        result = resolve_anchor(anchor, message("<p>Short.</p>"), anchor_config)
        assert not result.success

    def test_empty_container(self, anchor_config: AnchorConfig) -> None:
        """An empty container resolves nothing."""
        anchor = TextAnchor(
            selected_text="gone", start_offset=0, end_offset=4, confidence=0.9
        )
        result = resolve_anchor(anchor, message(""), anchor_config)
        assert not result.success


class TestTimeBudget:
    """max_resolution_time stops the cascade between strategies."""

    def test_budget_skips_remaining_strategies(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Each clock read advances one second; only structural fits in 1.5s."""
        config = AnchorConfig(max_resolution_time=1.5)
        anchor = capture_anchor(
            select(message("<p>Hello <b>bold</b> world</p>"), "world"), config
        )
        moved = message("<section><p>Hello <b>bold</b> world</p></section>")
        ticks = itertools.count()
        monkeypatch.setattr(
            resolver_module.time, "perf_counter", lambda: float(next(ticks))
        )

        result = AnchorResolver(config).resolve(anchor, moved)

        assert not result.success
        assert result.attempted == ("structural",)
        assert "time budget" in str(result.error)

    def test_budget_can_be_disabled(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """With no budget a slow clock never cuts the cascade short."""
        config = AnchorConfig(max_resolution_time=None)
        anchor = capture_anchor(
            select(message("<p>Hello <b>bold</b> world</p>"), "world"), config
        )
        moved = message("<section><p>Hello <b>bold</b> world</p></section>")
        ticks = itertools.count(step=100)
        monkeypatch.setattr(
            resolver_module.time, "perf_counter", lambda: float(next(ticks))
        )

        result = AnchorResolver(config).resolve(anchor, moved)

        assert result.range is not None
        assert result.range.strategy_used == "offset"


class TestValidateAnchor:
    """Inconsistent records are rejected before any strategy runs."""

    def test_valid_anchor_passes(self, anchor_config: AnchorConfig) -> None:
        """Anchors built through the model always validate."""
        anchor = capture_anchor(
            select(message("<p>alpha beta</p>"), "beta"), anchor_config
        )
        assert AnchorResolver(anchor_config).validate_anchor(anchor)

    @pytest.mark.parametrize(
        "fields",
        [
            {"selected_text": "   "},
            {"start_offset": 8, "end_offset": 4},
            {"start_offset": -1},
            {"confidence": 1.5},
            {"strategy": "xpath"},
            {"structural_path": (0, -2)},
        ],
        ids=["blank", "reversed", "negative", "confidence", "strategy", "path"],
    )
    def test_inconsistent_record_fails_without_attempts(
        self, anchor_config: AnchorConfig, fields: dict[str, object]
    ) -> None:
        """model_construct skips validation, so the resolver checks again."""
        values: dict[str, object] = {
            "selected_text": "beta",
            "start_offset": 6,
            "end_offset": 10,
            "confidence": 0.9,
        }
        anchor = TextAnchor.model_construct(**(values | fields))
        resolver = AnchorResolver(anchor_config)

        assert not resolver.validate_anchor(anchor)
        result = resolver.resolve(anchor, message("<p>alpha beta</p>"))
        assert not result.success
        assert result.attempted == ()
        assert "inconsistent" in str(result.error)


class TestMetrics:
    """get_metrics() / clear_metrics()"""

    def test_empty_metrics(self, anchor_config: AnchorConfig) -> None:
        """A fresh resolver reports zeros for every strategy."""
        metrics = AnchorResolver(anchor_config).get_metrics()
        assert metrics.total_operations == 0
        assert metrics.success_rate == 0.0
        assert metrics.average_resolution_time == 0.0
        assert metrics.strategy_distribution == {
            "structural": 0,
            "offset": 0,
            "fuzzy": 0,
        }

    def test_records_outcomes_and_strategies(
        self, anchor_config: AnchorConfig
    ) -> None:
        """Successes count towards their strategy; failures only lower the rate."""
        original = message("<p>Hello <b>bold</b> world</p>")
        anchor = capture_anchor(select(original, "world"), anchor_config)
        resolver = AnchorResolver(anchor_config)

        resolver.resolve(anchor, original)
        resolver.resolve(
            anchor, message("<section><p>Hello <b>bold</b> world</p></section>")
        )
        resolver.resolve(anchor, message("<p>Nothing alike.</p>"))
        metrics = resolver.get_metrics()

        assert metrics.total_operations == 3
        assert metrics.success_rate == pytest.approx(2 / 3)
        assert metrics.strategy_distribution == {
            "structural": 1,
            "offset": 1,
            "fuzzy": 0,
        }
        assert metrics.average_resolution_time >= 0
        assert metrics.last_resolution_time >= 0

        resolver.clear_metrics()
        assert resolver.get_metrics().total_operations == 0

    def test_history_is_bounded(self) -> None:
        """Only the most recent metrics_history resolutions are kept."""
        config = AnchorConfig(metrics_history=2)
        container = message("<p>alpha beta</p>")
        anchor = capture_anchor(select(container, "beta"), config)
        resolver = AnchorResolver(config)

        resolver.resolve(anchor, message("<p>Nothing alike.</p>"))
        resolver.resolve(anchor, container)
        resolver.resolve(anchor, container)

        metrics = resolver.get_metrics()
        assert metrics.total_operations == 2
        assert metrics.success_rate == 1.0
