"""Overlap-aware highlight rendering."""

from chatmarks.highlights.overlap import OverlapManager
from chatmarks.highlights.renderer import HighlightRenderer
from chatmarks.highlights.wrapper import TextWrapper, find_markers, marker_ids

__all__ = [
    "HighlightRenderer",
    "OverlapManager",
    "TextWrapper",
    "find_markers",
    "marker_ids",
]
