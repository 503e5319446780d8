"""Tests for the character-offset index and whitespace normalization."""

from __future__ import annotations

from bs4 import NavigableString

from chatmarks.anchoring.text_index import (
    TextIndex,
    child_index,
    clean_view,
    collapse_whitespace,
    has_markers,
    is_blank,
    normalize_whitespace,
    structural_path,
    walk_path,
)
from tests.helpers.dom import message, parse


class TestTextIndex:
    """TextIndex offsets and position lookup."""

    def test_concatenates_text_nodes_in_document_order(self) -> None:
        """Offsets run continuously across nested text nodes."""
        container = message("<p>Hello <b>bold</b> world</p>")
        index = TextIndex(container)
        assert index.text == "Hello bold world"
        assert [(n.char_start, n.char_end) for n in index.nodes] == [
            (0, 6),
            (6, 10),
            (10, 16),
        ]
        assert len(index) == 16

    def test_skips_script_style_and_comments(self) -> None:
        """Non-visible text never contributes offsets."""
        container = message(
            "<p>a<script>var x = 1;</script>b<!-- note -->c<style>p{}</style>d</p>"
        )
        assert TextIndex(container).text == "abcd"

    def test_start_position_at_boundary_uses_later_node(self) -> None:
        """A start offset on a node boundary lands at the head of the next node."""
        container = message("<p>Hello <b>bold</b> world</p>")
        position = TextIndex(container).position_at(6)
        assert position is not None
        assert str(position.node) == "bold"
        assert position.offset == 0

    def test_end_position_at_boundary_uses_earlier_node(self) -> None:
        """An end offset on a node boundary lands at the tail of the previous node."""
        container = message("<p>Hello <b>bold</b> world</p>")
        position = TextIndex(container).position_at(6, is_end=True)
        assert position is not None
        assert str(position.node) == "Hello "
        assert position.offset == 6

    def test_position_out_of_range(self) -> None:
        """Offsets outside the text, or with no node to land in, give None."""
        index = TextIndex(message("<p>Hello</p>"))
        assert index.position_at(5) is None
        assert index.position_at(-1) is None
        assert index.position_at(0, is_end=True) is None
        end = index.position_at(5, is_end=True)
        assert end is not None
        assert end.offset == 5

    def test_empty_container(self) -> None:
        """A container without text has an empty index."""
        index = TextIndex(message(""))
        assert index.text == ""
        assert index.position_at(0) is None

    def test_info_for_uses_identity(self) -> None:
        """Two equal strings are still distinct index entries."""
        container = message("<p>same<br/>same</p>")
        index = TextIndex(container)
        first, second = index.nodes
        assert index.info_for(second.node) is second
        assert index.info_for(first.node) is first
        assert index.info_for(NavigableString("same")) is None


class TestNormalizeWhitespace:
    """normalize_whitespace() and its index map."""

    def test_collapses_runs(self) -> None:
        """Whitespace runs become one space and index_map records their origin."""
        norm = normalize_whitespace("a  b\n c")
        assert norm.text == "a b c"
        assert norm.index_map == (0, 1, 3, 4, 6)

    def test_maps_back_to_raw_offsets(self) -> None:
        """Normalized offsets convert to raw offsets and back."""
        norm = normalize_whitespace("a  b\n c")
        assert norm.to_raw(2) == 3
        assert norm.to_raw_end(3) == 4
        assert norm.to_raw(5) == 7
        assert norm.from_raw(3) == 2
        assert norm.from_raw(2) == 2

    def test_nbsp_counts_as_whitespace(self) -> None:
        """Non-breaking spaces collapse like ordinary whitespace."""
        assert normalize_whitespace("a\u00a0\u00a0b").text == "a b"
        assert collapse_whitespace("x \u00a0\t y") == "x y"

    def test_is_blank(self) -> None:
        """Only non-empty whitespace strings are blank."""
        assert is_blank(" \n\t")
        assert is_blank("\u00a0")
        assert not is_blank(" a ")
        assert not is_blank("")


class TestStructuralPaths:
    """Paths, walking, and marker-free views."""

    def test_path_round_trip(self) -> None:
        """walk_path() returns the node structural_path() was computed for."""
        container = message("<p>Hello <b>bold</b> world</p>")
        bold_text = TextIndex(container).nodes[1].node
        path = structural_path(container, bold_text)
        assert path == (0, 1, 0)
        assert walk_path(container, path) is bold_text

    def test_walk_path_out_of_range(self) -> None:
        """Paths through missing children or into text nodes give None."""
        container = message("<p>Hello</p>")
        assert walk_path(container, (0, 5)) is None
        assert walk_path(container, (0, 0, 0)) is None

    def test_path_of_foreign_node_is_none(self) -> None:
        """Nodes outside the container have no path."""
        container = message("<p>Hello</p>")
        other = parse("<p>Elsewhere</p>").p
        assert other is not None
        assert structural_path(container, other.contents[0]) is None

    def test_child_index_by_identity(self) -> None:
        """Equal sibling strings are told apart by identity."""
        container = message("<p>x<br/>x</p>")
        p = container.p
        assert p is not None
        assert child_index(p, p.contents[2]) == 2

    def test_clean_view_without_markers_is_identity(self) -> None:
        """Marker-free containers are used as is, without copying."""
        container = message("<p>Hello</p>")
        assert not has_markers(container)
        assert clean_view(container) is container

    def test_clean_view_unwraps_markers_in_a_copy(self) -> None:
        """Markers are unwrapped in a copy and the live container is untouched."""
        container = message(
            '<p>Hello <mark data-chatmarks-highlight="true">bold</mark> world</p>'
        )
        view = clean_view(container)
        assert view is not container
        assert has_markers(container)
        assert not has_markers(view)
        assert view.p is not None
        assert view.p.contents == ["Hello bold world"]
        assert TextIndex(view).text == TextIndex(container).text
