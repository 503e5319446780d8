"""Character-offset index over a container's text nodes.

Every component addresses text through absolute offsets into the
container's concatenated text. ``TextIndex`` records where each text node's
characters fall in that stream (the same walk-and-map approach as a
marker-insertion pass), and ``normalize_whitespace`` provides the collapsed
view used by the tolerant matching strategies together with an index map
back to raw offsets.
"""

# Pattern: Functional Core (pure functions over a parsed tree, no mutation
# except in clean_view's private copy)

from __future__ import annotations

import copy
import re
from bisect import bisect_left, bisect_right
from dataclasses import dataclass
from typing import TYPE_CHECKING

from bs4 import NavigableString, Tag
from bs4.element import PreformattedString

from chatmarks.marker_constants import MARKER_ATTR
from chatmarks.models import TextPosition

if TYPE_CHECKING:
    from collections.abc import Iterator

    from bs4.element import PageElement

# Tags whose text never counts towards the container's visible text
SKIP_TAGS = frozenset(("script", "style", "noscript", "template"))

# Block-level elements where whitespace-only text nodes are formatting
# artefacts (indentation between tags) and are never wrapped.
BLOCK_TAGS = frozenset(
    (
        "table",
        "tbody",
        "thead",
        "tfoot",
        "tr",
        "td",
        "th",
        "ul",
        "ol",
        "li",
        "dl",
        "dt",
        "dd",
        "div",
        "section",
        "article",
        "aside",
        "header",
        "footer",
        "nav",
        "main",
        "figure",
        "figcaption",
        "blockquote",
    )
)

# Whitespace runs; \s already covers \u00a0 (nbsp) for str patterns
_WHITESPACE_RUN = re.compile(r"[\s\u00a0]+")


def is_text_node(node: PageElement) -> bool:
    """True for visible text nodes (not comments, CDATA, doctype, or script text)."""
    if not isinstance(node, NavigableString) or isinstance(node, PreformattedString):
        return False
    parent = node.parent
    return parent is None or parent.name not in SKIP_TAGS


@dataclass(frozen=True)
class TextNodeInfo:
    """A text node's contribution to the character stream."""

    node: NavigableString
    char_start: int  # Starting char index in the stream
    char_end: int  # Ending char index (exclusive)

    @property
    def text(self) -> str:
        return str(self.node)


class TextIndex:
    """Offsets of every text node in ``container``, in document order.

    The index is a snapshot: any DOM mutation (including wrapping) makes it
    stale, so callers rebuild it after changing the tree.
    """

    __slots__ = ("_by_identity", "_starts", "container", "nodes", "text")

    def __init__(self, container: Tag) -> None:
        self.container = container
        self.nodes: list[TextNodeInfo] = []
        chunks: list[str] = []
        pos = 0
        for node in iter_text_nodes(container):
            text = str(node)
            if not text:
                continue
            self.nodes.append(TextNodeInfo(node, pos, pos + len(text)))
            chunks.append(text)
            pos += len(text)
        self.text = "".join(chunks)
        self._starts = [info.char_start for info in self.nodes]
        self._by_identity = {id(info.node): info for info in self.nodes}

    def __len__(self) -> int:
        return len(self.text)

    def info_for(self, node: PageElement) -> TextNodeInfo | None:
        """Return the entry for ``node`` (by identity), if it is indexed."""
        return self._by_identity.get(id(node))

    def position_at(self, offset: int, *, is_end: bool = False) -> TextPosition | None:
        """Map an absolute character offset to a (text node, offset) position.

        At a boundary shared by two nodes, a start position lands at the
        beginning of the later node and an end position at the end of the
        earlier node, so a range never begins or ends in a node it does not
        cover.
        """
        if not self.nodes or offset < 0 or offset > len(self.text):
            return None
        if is_end:
            if offset == 0:
                return None
            i = bisect_left(self._starts, offset) - 1
        else:
            if offset == len(self.text):
                return None
            i = bisect_right(self._starts, offset) - 1
        info = self.nodes[i]
        return TextPosition(info.node, offset - info.char_start)


def iter_text_nodes(container: Tag) -> Iterator[NavigableString]:
    """Yield visible text nodes below ``container`` in document order."""
    for child in container.contents:
        if isinstance(child, Tag):
            if child.name in SKIP_TAGS:
                continue
            yield from iter_text_nodes(child)
        elif is_text_node(child):
            yield child


# ---------------------------------------------------------------------------
# Whitespace normalization
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NormalizedText:
    """Whitespace-collapsed text with a map back to raw offsets.

    ``index_map[i]`` is the raw offset of normalized character ``i``.
    """

    text: str
    index_map: tuple[int, ...]
    raw_length: int

    def to_raw(self, norm_offset: int) -> int:
        """Raw offset of a normalized start offset."""
        if norm_offset >= len(self.index_map):
            return self.raw_length
        return self.index_map[norm_offset]

    def to_raw_end(self, norm_end: int) -> int:
        """Raw exclusive end for a normalized exclusive end."""
        if norm_end <= 0:
            return 0
        return self.index_map[norm_end - 1] + 1

    def from_raw(self, raw_offset: int) -> int:
        """Normalized offset of the first character at or after ``raw_offset``."""
        return bisect_left(self.index_map, raw_offset)


def is_blank(text: str) -> bool:
    """True for text made only of whitespace (including nbsp)."""
    return _WHITESPACE_RUN.fullmatch(text) is not None


def collapse_whitespace(text: str) -> str:
    """Collapse whitespace runs (including nbsp) to single spaces."""
    return _WHITESPACE_RUN.sub(" ", text)


def normalize_whitespace(text: str) -> NormalizedText:
    """Collapse whitespace runs and keep the normalized-to-raw index map."""
    chars: list[str] = []
    index_map: list[int] = []
    pos = 0
    for match in _WHITESPACE_RUN.finditer(text):
        for i in range(pos, match.start()):
            chars.append(text[i])
            index_map.append(i)
        chars.append(" ")
        index_map.append(match.start())
        pos = match.end()
    for i in range(pos, len(text)):
        chars.append(text[i])
        index_map.append(i)
    return NormalizedText("".join(chars), tuple(index_map), len(text))


# ---------------------------------------------------------------------------
# Structural paths
# ---------------------------------------------------------------------------


def has_markers(container: Tag) -> bool:
    return container.find(attrs={MARKER_ATTR: True}) is not None


def clean_view(container: Tag) -> Tag:
    """Return ``container`` with highlight markers removed.

    When the container carries no markers it is returned unchanged;
    otherwise a deep copy is unwrapped and re-merged so structural paths are
    computed against the structure the page itself rendered. Text content is
    identical either way, so offsets remain valid on the live tree.
    """
    if not has_markers(container):
        return container
    view = copy.copy(container)
    for marker in view.find_all(attrs={MARKER_ATTR: True}):
        marker.unwrap()
    view.smooth()
    return view


def child_index(parent: Tag, node: PageElement) -> int:
    """Index of ``node`` in ``parent.contents`` by identity.

    ``list.index`` cannot be used: bs4 compares strings by value and tags
    by structure, so equal siblings would collide.
    """
    for i, child in enumerate(parent.contents):
        if child is node:
            return i
    msg = "node is not a child of parent"
    raise ValueError(msg)


def structural_path(root: Tag, node: PageElement) -> tuple[int, ...] | None:
    """Child-index path from ``root`` down to ``node``; None if not a descendant."""
    path: list[int] = []
    current = node
    while current is not root:
        parent = current.parent
        if parent is None:
            return None
        path.append(child_index(parent, current))
        current = parent
    path.reverse()
    return tuple(path)


def walk_path(root: Tag, path: tuple[int, ...]) -> PageElement | None:
    """Follow ``path`` from ``root``; None when any step is out of range."""
    node: PageElement = root
    for idx in path:
        if not isinstance(node, Tag) or not 0 <= idx < len(node.contents):
            return None
        node = node.contents[idx]
    return node
