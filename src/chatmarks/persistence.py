"""Boundary to the persistence collaborator.

Chatmarks does not persist anything itself. Anchors cross this boundary as
plain dict records in their stable camelCase shape::

    {
        "selectedText": "...",
        "startOffset": 12,
        "endOffset": 29,
        "structuralPath": [0, 1],
        "contextBefore": "...",
        "contextAfter": "...",
        "checksum": "9f86d081884c7d65",
        "confidence": 0.95,
        "strategy": "structural",
    }

Storage backends implement ``AnchorStore``; ``InMemoryAnchorStore`` is the
reference implementation used by tests and embedders without a backend.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from chatmarks.models import TextAnchor

logger = logging.getLogger(__name__)


def anchor_to_record(anchor: TextAnchor) -> dict[str, Any]:
    """Serialise an anchor to its camelCase record (JSON-compatible)."""
    return anchor.model_dump(mode="json", by_alias=True)


def anchor_from_record(record: dict[str, Any]) -> TextAnchor:
    """Rebuild an anchor from a stored record.

    Raises:
        pydantic.ValidationError: The record violates an anchor invariant.
    """
    return TextAnchor.model_validate(record)


class AnchorStore(Protocol):
    """Key-value store of anchors, keyed by bookmark id."""

    async def get(self, bookmark_id: str) -> TextAnchor | None:
        """Return the anchor stored for ``bookmark_id``, if any."""
        ...

    async def set(self, bookmark_id: str, anchor: TextAnchor) -> None:
        """Store (or replace) the anchor for ``bookmark_id``."""
        ...

    async def delete(self, bookmark_id: str) -> bool:
        """Remove the anchor; returns False when nothing was stored."""
        ...

    async def all(self) -> dict[str, TextAnchor]:
        """Every stored anchor, keyed by bookmark id."""
        ...


class InMemoryAnchorStore:
    """``AnchorStore`` backed by a dict of serialised records.

    Records are stored in wire form rather than as model instances so that
    every read exercises the same validation a real backend would.
    """

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}

    async def get(self, bookmark_id: str) -> TextAnchor | None:
        record = self._records.get(bookmark_id)
        return anchor_from_record(record) if record is not None else None

    async def set(self, bookmark_id: str, anchor: TextAnchor) -> None:
        self._records[bookmark_id] = anchor_to_record(anchor)
        logger.debug("Stored anchor for %s", bookmark_id)

    async def delete(self, bookmark_id: str) -> bool:
        return self._records.pop(bookmark_id, None) is not None

    async def all(self) -> dict[str, TextAnchor]:
        return {
            bookmark_id: anchor_from_record(record)
            for bookmark_id, record in self._records.items()
        }

    def __len__(self) -> int:
        return len(self._records)
