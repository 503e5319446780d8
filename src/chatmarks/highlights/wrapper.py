"""DOM mutation: wrap text ranges in highlight markers and remove them again.

A range inside one text node is split into before/target/after and the
target wrapped. A range crossing nodes is wrapped fragment by fragment, so a
marker never straddles an element boundary and nested formatting such as
``<b>`` or ``<code>`` stays intact around (not inside) the marker.

Wrapping only ever splits text nodes and inserts markers; unwrapping
re-inlines marker contents and re-merges adjacent strings, so a
wrap/unwrap cycle leaves the container's text content unchanged.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from bs4 import BeautifulSoup, Tag

from chatmarks.anchoring.text_index import (
    BLOCK_TAGS,
    TextIndex,
    is_blank,
    is_text_node,
)
from chatmarks.config import RenderConfig, get_settings
from chatmarks.errors import PartialWrapFailure
from chatmarks.highlights.overlap import OverlapManager
from chatmarks.marker_constants import (
    DEPTH_CLASS_TEMPLATE,
    IDS_ATTR,
    MARKER_ATTR,
    PRIMARY_ID_ATTR,
    SEGMENT_ATTR,
)
from chatmarks.models import WrapResult

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from bs4 import NavigableString

    from chatmarks.models import HighlightStyle, OverlapSegment, TextPosition

logger = logging.getLogger(__name__)


class TextWrapper:
    """Creates and removes highlight markers inside a parsed document."""

    def __init__(self, config: RenderConfig | None = None) -> None:
        self.config = config or get_settings().render

    # ------------------------------------------------------------------
    # Wrapping
    # ------------------------------------------------------------------

    def wrap_segment(
        self,
        container: Tag,
        segment: OverlapSegment,
        style: HighlightStyle,
        *,
        expected_text: str | None = None,
        flash: bool = False,
    ) -> WrapResult:
        """Wrap one overlap segment, addressed by absolute offsets.

        Offsets are mapped through a fresh ``TextIndex`` because earlier
        wraps split text nodes. When ``expected_text`` is given and the
        container no longer holds it at the segment's offsets, nothing is
        wrapped and the failure is reported in the result.
        """
        index = TextIndex(container)
        if segment.end > len(index.text):
            return _failed(
                f"Segment lies beyond the container text (length {len(index.text)})",
                segment,
            )
        actual = index.text[segment.start : segment.end]
        if expected_text is not None and actual != expected_text:
            return _failed("Container text changed before wrapping", segment)
        start = index.position_at(segment.start)
        end = index.position_at(segment.end, is_end=True)
        if start is None or end is None:
            return _failed("Segment offsets do not map to text nodes", segment)
        return self.wrap_range(
            start,
            end,
            segment.contributing_ids,
            style,
            segment_span=(segment.start, segment.end),
            flash=flash,
        )

    def wrap_range(
        self,
        start: TextPosition,
        end: TextPosition,
        ids: Sequence[str],
        style: HighlightStyle,
        *,
        segment_span: tuple[int, int] | None = None,
        flash: bool = False,
    ) -> WrapResult:
        """Wrap the text between two live positions.

        ``ids`` lists every highlight painting the range, primary first.
        Whitespace-only fragments sitting directly inside block containers
        (table rows, lists, divs) are left alone: wrapping them would
        inject inline elements between block children.
        """
        if not ids:
            return _failed("No highlight ids to wrap", None, segment_span)
        if start.node.parent is None or end.node.parent is None:
            return _failed(
                "Text node is detached from the document", None, segment_span
            )

        nodes = _nodes_between(start.node, end.node)
        if nodes is None:
            return _failed(
                "End node is not reachable from start node", None, segment_span
            )

        # Resolve every fragment before touching the tree
        fragments: list[tuple[NavigableString, int, int]] = []
        last = len(nodes) - 1
        for i, node in enumerate(nodes):
            text = str(node)
            lo = start.offset if i == 0 else 0
            hi = end.offset if i == last else len(text)
            if not 0 <= lo < hi <= len(text):
                continue
            parent = node.parent
            if (
                parent is not None
                and parent.name in BLOCK_TAGS
                and is_blank(text[lo:hi])
            ):
                continue
            fragments.append((node, lo, hi))

        if not fragments:
            return _failed("Range contains no wrappable text", None, segment_span)

        elements = [
            self._wrap_fragment(node, lo, hi, ids, style, segment_span, flash)
            for node, lo, hi in fragments
        ]
        logger.debug(
            "Wrapped %d fragment(s) for %s", len(elements), ",".join(ids)
        )
        return WrapResult(elements=elements)

    def _wrap_fragment(
        self,
        node: NavigableString,
        lo: int,
        hi: int,
        ids: Sequence[str],
        style: HighlightStyle,
        segment_span: tuple[int, int] | None,
        flash: bool,
    ) -> Tag:
        text = str(node)
        string_type = type(node)
        marker = self.build_marker(
            node, ids, style, segment_span=segment_span, flash=flash
        )
        marker.append(string_type(text[lo:hi]))
        pieces: list[NavigableString | Tag] = []
        if lo > 0:
            pieces.append(string_type(text[:lo]))
        pieces.append(marker)
        if hi < len(text):
            pieces.append(string_type(text[hi:]))
        node.replace_with(*pieces)
        return marker

    def build_marker(
        self,
        near: NavigableString | Tag,
        ids: Sequence[str],
        style: HighlightStyle,
        *,
        segment_span: tuple[int, int] | None = None,
        flash: bool = False,
    ) -> Tag:
        """Create an empty marker element styled for ``ids``.

        ``near`` is any node of the target document; the marker is created
        through its ``BeautifulSoup`` object when one is reachable.
        """
        opacity = OverlapManager.calculate_opacity(len(ids), style.priority)
        classes = [
            self.config.base_class,
            DEPTH_CLASS_TEMPLATE.format(len(ids)),
            OverlapManager.opacity_class(opacity),
        ]
        if style.class_name:
            classes.append(style.class_name)
        if flash:
            classes.append(self.config.flash_class)

        attrs: dict[str, str | list[str]] = {
            MARKER_ATTR: "true",
            PRIMARY_ID_ATTR: ids[0],
            IDS_ATTR: ",".join(ids),
            "class": classes,
            "style": self.inline_style(style),
        }
        if segment_span is not None:
            attrs[SEGMENT_ATTR] = f"{segment_span[0]}-{segment_span[1]}"

        soup = _soup_of(near)
        if soup is not None:
            return soup.new_tag(self.config.marker_tag, attrs=attrs)
        return Tag(name=self.config.marker_tag, attrs=attrs)

    def inline_style(self, style: HighlightStyle) -> str:
        """Inline CSS for a marker: translucent background plus underline."""
        color = style.color or self.config.default_color
        parts = [
            f"background-color: {color}40",
            f"border-bottom: 2px solid {color}",
        ]
        parts.extend(f"{name}: {value}" for name, value in style.css_properties.items())
        return "; ".join(parts)

    # ------------------------------------------------------------------
    # Flash
    # ------------------------------------------------------------------

    def set_flash(self, markers: Iterable[Tag], *, enabled: bool) -> None:
        """Add or remove the transient "just created" class."""
        flash_class = self.config.flash_class
        for marker in markers:
            classes = list(marker.get("class") or [])
            if enabled and flash_class not in classes:
                classes.append(flash_class)
            elif not enabled and flash_class in classes:
                classes.remove(flash_class)
            marker["class"] = classes

    # ------------------------------------------------------------------
    # Unwrapping
    # ------------------------------------------------------------------

    def unwrap(self, markers: Iterable[Tag]) -> int:
        """Replace each marker with its contents and re-merge split text.

        Markers already detached from the tree are ignored. Returns the
        number of markers removed.
        """
        parents: dict[int, Tag] = {}
        removed = 0
        for marker in markers:
            parent = marker.parent
            if parent is None:
                continue
            marker.unwrap()
            parents[id(parent)] = parent
            removed += 1
        for parent in parents.values():
            parent.smooth()
        return removed

    def unwrap_all(self, container: Tag) -> int:
        """Remove every highlight marker below ``container``."""
        return self.unwrap(find_markers(container))


def find_markers(container: Tag, highlight_id: str | None = None) -> list[Tag]:
    """Markers below ``container``; only those painting ``highlight_id`` if given."""
    markers = container.find_all(attrs={MARKER_ATTR: True})
    if highlight_id is None:
        return markers
    return [m for m in markers if highlight_id in marker_ids(m)]


def marker_ids(marker: Tag) -> tuple[str, ...]:
    """All highlight ids a marker paints, primary first."""
    value = marker.get(IDS_ATTR) or marker.get(PRIMARY_ID_ATTR) or ""
    return tuple(part for part in str(value).split(",") if part)


def _soup_of(node: NavigableString | Tag) -> BeautifulSoup | None:
    top = node
    while top.parent is not None:
        top = top.parent
    return top if isinstance(top, BeautifulSoup) else None


def _nodes_between(
    first: NavigableString, last: NavigableString
) -> list[NavigableString] | None:
    """Text nodes from ``first`` to ``last`` inclusive, in document order."""
    if first is last:
        return [first]
    nodes = [first]
    for element in first.next_elements:
        if element is last:
            nodes.append(last)
            return nodes
        if is_text_node(element):
            nodes.append(element)
    return None


def _failed(
    message: str,
    segment: OverlapSegment | None,
    span: tuple[int, int] | None = None,
) -> WrapResult:
    if segment is not None:
        span = (segment.start, segment.end)
    failure = (
        PartialWrapFailure(message, *span) if span else PartialWrapFailure(message)
    )
    logger.warning("Wrap failed: %s", failure)
    return WrapResult(failures=[failure])
