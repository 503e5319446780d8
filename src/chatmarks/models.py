"""Data models for anchors, resolved ranges, and highlight state.

``TextAnchor`` is the only persisted shape: it is a frozen pydantic model whose
camelCase aliases form the stable wire format. Everything else is ephemeral
and lives in plain dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

if TYPE_CHECKING:
    from bs4 import NavigableString, Tag

    from chatmarks.errors import AnchorResolutionFailure, PartialWrapFailure

AnchorStrategy = Literal["structural", "offset", "fuzzy"]
STRATEGIES: tuple[AnchorStrategy, ...] = ("structural", "offset", "fuzzy")

HighlightState = Literal["unmounted", "mounted"]


# ---------------------------------------------------------------------------
# Persisted anchor
# ---------------------------------------------------------------------------
class TextAnchor(BaseModel):
    """Multi-strategy description of a text span inside one container.

    Attributes:
        selected_text: The original text (non-empty, not whitespace-only).
        start_offset: Start offset in the container's concatenated text.
        end_offset: End offset (exclusive).
        structural_path: Child indices from the container root to the text
            node holding the span start. Empty when it could not be computed.
        context_before: Up to N characters preceding the span.
        context_after: Up to N characters following the span.
        checksum: Fingerprint of the normalized context + selected text.
        confidence: Capture-time estimate in [0, 1].
        strategy: Strategy considered authoritative at capture (advisory).
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    selected_text: str
    start_offset: int = Field(ge=0)
    end_offset: int = Field(ge=0)
    structural_path: tuple[int, ...] = ()
    context_before: str = ""
    context_after: str = ""
    checksum: str = ""
    confidence: float = Field(ge=0.0, le=1.0)
    strategy: AnchorStrategy = "structural"

    @field_validator("selected_text")
    @classmethod
    def _selected_text_not_blank(cls, value: str) -> str:
        if not value.strip():
            msg = "selected_text must contain non-whitespace characters"
            raise ValueError(msg)
        return value

    @model_validator(mode="after")
    def _offsets_ordered(self) -> TextAnchor:
        if self.start_offset >= self.end_offset:
            msg = "start_offset must be less than end_offset"
            raise ValueError(msg)
        return self


# ---------------------------------------------------------------------------
# Capture input
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class SelectionDescriptor:
    """Selection handed over by the capture collaborator.

    ``context_before``/``context_after`` may be ``None``; capture then derives
    them from the container text.
    """

    selected_text: str
    container_root: Tag
    start_offset: int
    end_offset: int
    context_before: str | None = None
    context_after: str | None = None


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class TextPosition:
    """A (text node, character offset) position in the live document."""

    node: NavigableString
    offset: int


@dataclass(frozen=True)
class ResolvedRange:
    """Live location of an anchor, recomputed on every render pass."""

    start: TextPosition
    end: TextPosition
    start_offset: int
    end_offset: int
    text: str
    achieved_confidence: float
    strategy_used: AnchorStrategy
    low_confidence: bool = False
    checksum_matched: bool = True


@dataclass(frozen=True)
class ResolutionResult:
    """Outcome of running the resolution cascade."""

    success: bool
    range: ResolvedRange | None = None
    error: AnchorResolutionFailure | None = None
    attempted: tuple[AnchorStrategy, ...] = ()


# ---------------------------------------------------------------------------
# Highlight requests and overlap partition
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class HighlightRequest:
    """One active bookmark to paint inside a container."""

    id: str
    container_id: str
    anchor: TextAnchor
    color: str | None = None  # None uses RenderConfig.default_color
    priority: int = 0


@dataclass(frozen=True)
class HighlightSpan:
    """A highlight's absolute span within its container.

    ``sequence`` is the creation order; lower values were created earlier.
    """

    id: str
    start: int
    end: int
    priority: int = 0
    sequence: int = 0


@dataclass(frozen=True)
class OverlapSegment:
    """Maximal sub-range of a container sharing the same active id set.

    ``contributing_ids`` is ordered by priority (highest first), ties broken
    by creation order.
    """

    start: int
    end: int
    contributing_ids: tuple[str, ...]

    @property
    def primary_id(self) -> str:
        return self.contributing_ids[0]

    @property
    def overlap_count(self) -> int:
        return len(self.contributing_ids)

    def __len__(self) -> int:
        return self.end - self.start


# ---------------------------------------------------------------------------
# Rendering state and results
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class HighlightStyle:
    """Visual treatment of one highlight.

    A ``color`` of None is painted with ``RenderConfig.default_color``.
    """

    color: str | None = None
    priority: int = 0
    class_name: str | None = None
    css_properties: dict[str, str] = field(default_factory=dict)


@dataclass
class HighlightRecord:
    """Renderer-owned bookkeeping for a mounted highlight."""

    id: str
    container_id: str
    style: HighlightStyle
    mounted_elements: list[Tag] = field(default_factory=list)
    mounted_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    state: HighlightState = "mounted"


@dataclass(frozen=True)
class WrapResult:
    """Markers created by one wrap call and the segments that could not be painted."""

    elements: list[Tag] = field(default_factory=list)
    failures: list[PartialWrapFailure] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failures


@dataclass(frozen=True)
class RenderResult:
    """Result of ``HighlightRenderer.render_highlight``."""

    success: bool
    mounted_count: int = 0
    errors: list[str] = field(default_factory=list)
    resolution: ResolvedRange | None = None


@dataclass(frozen=True)
class RestoreResult:
    """Result of a bulk ``restore_highlights`` pass."""

    total_processed: int
    successfully_restored: int
    failed_to_restore: int
    errors: list[str] = field(default_factory=list)
    restored_ids: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)
    cancelled: bool = False


@dataclass(frozen=True)
class RendererMetrics:
    """Snapshot of renderer activity. Durations are in milliseconds."""

    total_highlights: int
    total_elements: int
    average_render_time: float
    average_restore_time: float
    last_render_time: float
    last_restore_time: float


@dataclass(frozen=True)
class AnchorMetrics:
    """Snapshot of recent resolutions. Durations are in milliseconds.

    ``strategy_distribution`` counts successful resolutions per strategy.
    """

    total_operations: int
    success_rate: float
    average_resolution_time: float
    last_resolution_time: float
    strategy_distribution: dict[AnchorStrategy, int]
