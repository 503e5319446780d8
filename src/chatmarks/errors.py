"""Error taxonomy for anchoring and highlight rendering.

Only ``InvalidSelectionError`` and ``ContainerNotFoundError`` are raised.
``AnchorResolutionFailure`` and ``PartialWrapFailure`` describe expected,
data-related outcomes and travel inside result objects instead.
"""

from __future__ import annotations


class ChatmarksError(Exception):
    """Base class for all chatmarks errors."""


class InvalidSelectionError(ChatmarksError):
    """Selection is empty, collapsed, whitespace-only, or out of range."""


class ContainerNotFoundError(ChatmarksError):
    """No container matches the requested id."""

    def __init__(self, container_id: str) -> None:
        self.container_id = container_id
        super().__init__(f"container {container_id!r} not found in document")


class AnchorResolutionFailure(ChatmarksError):
    """No strategy located the anchor above the acceptance threshold."""

    def __init__(self, message: str, attempted: tuple[str, ...] = ()) -> None:
        self.attempted = attempted
        super().__init__(message)

    def __str__(self) -> str:
        if not self.attempted:
            return self.args[0]
        return f"{self.args[0]} (tried: {', '.join(self.attempted)})"


class PartialWrapFailure(ChatmarksError):
    """Document changed between resolution and wrapping for one segment."""

    def __init__(
        self, message: str, start: int | None = None, end: int | None = None
    ) -> None:
        self.start = start
        self.end = end
        super().__init__(message)

    def __str__(self) -> str:
        if self.start is None or self.end is None:
            return self.args[0]
        return f"{self.args[0]} [{self.start}, {self.end})"
