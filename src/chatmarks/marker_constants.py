"""Highlight marker attribute names and class templates.

Shared between:
- anchoring/text_index.py (clean_view marker detection)
- highlights/wrapper.py (marker creation and unwrap)
- highlights/overlap.py (opacity class names)
"""

from __future__ import annotations

MARKER_ATTR = "data-chatmarks-highlight"
PRIMARY_ID_ATTR = "data-bookmark-id"
IDS_ATTR = "data-bookmark-ids"
SEGMENT_ATTR = "data-segment"

DEPTH_CLASS_TEMPLATE = "chatmarks-depth-{}"
OPACITY_CLASS_TEMPLATE = "chatmarks-opacity-{}"
