"""Anchor capture: turn a live selection into a persistable TextAnchor.

Every strategy field is computed eagerly, not just the preferred one, so that
resolution can later fall back to whichever strategy still works.
"""

from __future__ import annotations

import hashlib
import logging
from typing import TYPE_CHECKING

from chatmarks.anchoring.text_index import (
    TextIndex,
    clean_view,
    collapse_whitespace,
    structural_path,
)
from chatmarks.config import AnchorConfig, get_settings
from chatmarks.errors import InvalidSelectionError
from chatmarks.models import TextAnchor

if TYPE_CHECKING:
    from bs4 import Tag

    from chatmarks.models import SelectionDescriptor

logger = logging.getLogger(__name__)

CHECKSUM_LENGTH = 16


def content_checksum(
    context_before: str, selected_text: str, context_after: str
) -> str:
    """Fingerprint of the whitespace-normalized context plus selected text.

    Covers both context and selection, so drift on either side of the span
    is detected. Whitespace is collapsed first so that reflowed text does not
    count as drift.
    """
    content = collapse_whitespace(context_before + selected_text + context_after)
    return checksum_of_normalized(content)


def checksum_of_normalized(content: str) -> str:
    """Checksum of text that is already whitespace-collapsed."""
    digest = hashlib.sha256(content.strip().encode("utf-8")).hexdigest()
    return digest[:CHECKSUM_LENGTH]


class AnchorCapture:
    """Builds ``TextAnchor`` records from selection descriptors."""

    def __init__(self, config: AnchorConfig | None = None) -> None:
        self.config = config or get_settings().anchor

    def capture(self, selection: SelectionDescriptor) -> TextAnchor:
        """Create an anchor for ``selection``.

        Raises:
            InvalidSelectionError: The text is empty or whitespace-only, the
                span is collapsed or negative, or the offsets fall outside
                the container's text.
        """
        text = selection.selected_text
        start, end = selection.start_offset, selection.end_offset
        if not text or not text.strip():
            msg = "Selection must contain non-whitespace text"
            raise InvalidSelectionError(msg)
        if start < 0 or end < 0:
            msg = f"Selection offsets must be non-negative (got {start}, {end})"
            raise InvalidSelectionError(msg)
        if end <= start:
            msg = f"Selection is collapsed (start={start}, end={end})"
            raise InvalidSelectionError(msg)

        view = clean_view(selection.container_root)
        index = TextIndex(view)
        if end > len(index.text):
            msg = (
                f"Selection [{start}, {end}) lies outside the container text "
                f"(length {len(index.text)})"
            )
            raise InvalidSelectionError(msg)

        context_before, context_after = self._contexts(selection, index.text)
        path = self._structural_path(view, index, selection)

        confidence = self._confidence(text, path, context_before, context_after)
        anchor = TextAnchor(
            selected_text=text,
            start_offset=start,
            end_offset=end,
            structural_path=path or (),
            context_before=context_before,
            context_after=context_after,
            checksum=content_checksum(context_before, text, context_after),
            confidence=confidence,
            strategy="structural" if path else "offset",
        )
        logger.debug(
            "Captured anchor [%d, %d) path=%s confidence=%.3f",
            start,
            end,
            anchor.structural_path,
            confidence,
        )
        return anchor

    def _contexts(self, selection: SelectionDescriptor, text: str) -> tuple[str, str]:
        """Clip provided contexts to ``context_length``; derive missing ones."""
        n = self.config.context_length
        before = selection.context_before
        after = selection.context_after
        if before is None:
            before = text[max(0, selection.start_offset - n) : selection.start_offset]
        if after is None:
            after = text[selection.end_offset : selection.end_offset + n]
        before = before[-n:] if n else ""
        after = after[:n]
        return before, after

    def _structural_path(
        self,
        view: Tag,
        index: TextIndex,
        selection: SelectionDescriptor,
    ) -> tuple[int, ...] | None:
        """Path to the text node owning the span start, when the offsets agree.

        Offsets that do not address the selected text (even allowing for
        whitespace differences) give no trustworthy node, so no path is
        recorded and the anchor relies on its other strategies.
        """
        actual = index.text[selection.start_offset : selection.end_offset]
        expected = selection.selected_text
        if actual != expected and (
            collapse_whitespace(actual).strip() != collapse_whitespace(expected).strip()
        ):
            logger.debug("Selection text does not match container offsets; no path")
            return None
        position = index.position_at(selection.start_offset)
        if position is None:
            return None
        return structural_path(view, position.node)

    def _confidence(
        self,
        text: str,
        path: tuple[int, ...] | None,
        context_before: str,
        context_after: str,
    ) -> float:
        cfg = self.config
        confidence = 1.0
        length = len(text.strip())
        if length < cfg.tiny_selection_length:
            confidence -= cfg.tiny_selection_penalty
        elif length < cfg.short_selection_length:
            confidence -= cfg.short_selection_penalty
        elif length > cfg.long_selection_length:
            confidence -= cfg.long_selection_penalty
        if not path:
            confidence -= cfg.missing_path_penalty
        if not context_before.strip():
            confidence -= cfg.missing_context_penalty
        if not context_after.strip():
            confidence -= cfg.missing_context_penalty
        return round(min(1.0, max(0.0, confidence)), 4)


def capture_anchor(
    selection: SelectionDescriptor, config: AnchorConfig | None = None
) -> TextAnchor:
    """Convenience wrapper around ``AnchorCapture(config).capture``."""
    return AnchorCapture(config).capture(selection)
