"""Text anchoring: capture selections as anchors and find them again."""

from chatmarks.anchoring.capture import (
    AnchorCapture,
    capture_anchor,
    content_checksum,
)
from chatmarks.anchoring.fuzzy import FuzzyMatch, find_best_match
from chatmarks.anchoring.resolver import AnchorResolver, resolve_anchor
from chatmarks.anchoring.text_index import (
    NormalizedText,
    TextIndex,
    clean_view,
    normalize_whitespace,
    structural_path,
    walk_path,
)

__all__ = [
    "AnchorCapture",
    "AnchorResolver",
    "FuzzyMatch",
    "NormalizedText",
    "TextIndex",
    "capture_anchor",
    "clean_view",
    "content_checksum",
    "find_best_match",
    "normalize_whitespace",
    "resolve_anchor",
    "structural_path",
    "walk_path",
]
