"""Bounded approximate substring matching.

Locates the substring of a (windowed) text with the smallest edit distance
to a pattern. The search is a semi-global Levenshtein alignment: the pattern
must be consumed entirely, but may start and end anywhere in the text.

Cost is bounded three ways so resolution stays fast on long documents:
callers cap the text window and the pattern length, and the DP aborts as
soon as every cell of a row exceeds the distance budget (row minima never
decrease, so no later row can recover).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FuzzyMatch:
    """Best approximate occurrence of a pattern.

    Attributes:
        start: Start offset in the searched text (inclusive).
        end: End offset (exclusive).
        distance: Levenshtein distance between pattern and ``text[start:end]``.
        similarity: ``1 - distance / max(len(pattern), end - start)``.
    """

    start: int
    end: int
    distance: int
    similarity: float


def max_distance_for(pattern_length: int, threshold: float) -> int:
    """Largest edit distance that can still reach ``threshold`` similarity.

    A match may be longer than the pattern by at most ``distance`` characters,
    so ``d <= (1 - t) * (m + d)``, i.e. ``d <= (1 - t) * m / t``.
    """
    if threshold >= 1.0:
        return 0
    return int((1.0 - threshold) * pattern_length / threshold)


def similarity_for(pattern_length: int, match_length: int, distance: int) -> float:
    longest = max(pattern_length, match_length)
    if longest == 0:
        return 1.0
    return 1.0 - distance / longest


def find_best_match(
    pattern: str,
    text: str,
    *,
    threshold: float,
    hint: int = 0,
) -> FuzzyMatch | None:
    """Find the closest approximate occurrence of ``pattern`` in ``text``.

    Args:
        pattern: Text to look for.
        text: Text to search (already windowed by the caller).
        threshold: Minimum similarity in (0, 1].
        hint: Expected start offset in ``text``; breaks ties between
            equally good matches in favour of the nearest one.

    Returns:
        The best match with similarity >= ``threshold``, or None.
    """
    m = len(pattern)
    n = len(text)
    if m == 0 or n == 0:
        return None

    exact = _nearest_exact(pattern, text, hint)
    if exact is not None:
        return FuzzyMatch(exact, exact + m, 0, 1.0)

    budget = max_distance_for(m, threshold)
    if budget == 0:
        return None

    # Row 0: the pattern may start anywhere, so every column costs nothing and
    # its path starts at that column.
    prev_cost = [0] * (n + 1)
    prev_start = list(range(n + 1))

    for i in range(1, m + 1):
        pc = pattern[i - 1]
        cur_cost = [i] + [0] * n
        cur_start = [0] * (n + 1)
        row_min = i
        for j in range(1, n + 1):
            best = prev_cost[j - 1] + (pc != text[j - 1])
            start = prev_start[j - 1]
            cost = prev_cost[j] + 1
            if cost < best:
                best = cost
                start = prev_start[j]
            cost = cur_cost[j - 1] + 1
            if cost < best:
                best = cost
                start = cur_start[j - 1]
            cur_cost[j] = best
            cur_start[j] = start
            if best < row_min:
                row_min = best
        if row_min > budget:
            return None
        prev_cost = cur_cost
        prev_start = cur_start

    best_match: FuzzyMatch | None = None
    for j in range(1, n + 1):
        distance = prev_cost[j]
        if distance > budget:
            continue
        start = prev_start[j]
        score = similarity_for(m, j - start, distance)
        if score < threshold:
            continue
        candidate = FuzzyMatch(start, j, distance, score)
        if best_match is None or _better(candidate, best_match, hint):
            best_match = candidate

    if best_match is not None:
        logger.debug(
            "Approximate match at [%d, %d) distance=%d similarity=%.3f",
            best_match.start,
            best_match.end,
            best_match.distance,
            best_match.similarity,
        )
    return best_match


def _nearest_exact(pattern: str, text: str, hint: int) -> int | None:
    best: int | None = None
    pos = text.find(pattern)
    while pos != -1:
        if best is None or abs(pos - hint) < abs(best - hint):
            best = pos
        pos = text.find(pattern, pos + 1)
    return best


def _better(candidate: FuzzyMatch, current: FuzzyMatch, hint: int) -> bool:
    if candidate.similarity != current.similarity:
        return candidate.similarity > current.similarity
    return abs(candidate.start - hint) < abs(current.start - hint)
