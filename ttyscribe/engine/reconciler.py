"""Fuzzy message matching for snapshot reconciliation.

Every trigger re-extracts the whole visible conversation, not a delta.
Terminal re-renders (line-wrap reflow, partial redraws, animation frames)
make exact comparison unreliable, so two messages count as the same turn
when their normalized contents are equal, nearly equal, or one contains
the other at a similar length.
"""
from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass

from ttyscribe.shared.models.message import ConversationMessage

DEFAULT_LENGTH_RATIO = 0.9
DEFAULT_SIMILARITY_THRESHOLD = 0.95

_WHITESPACE_RE = re.compile(r"\s+")


def normalize(text: str) -> str:
    """Drop carriage returns, collapse whitespace runs, trim."""
    return _WHITESPACE_RE.sub(" ", text.replace("\r", "")).strip()


def levenshtein_distance(a: str, b: str, *, max_distance: int | None = None) -> int:
    """Edit distance between *a* and *b*.

    Uses the bit-parallel algorithm of Myers/Hyyrö with one column of
    the DP table packed into a Python int, so the inner loop over the
    shorter string runs in C. Common prefixes and suffixes are trimmed
    first. When *max_distance* is given the scan stops as soon as the
    result is known to exceed it, and ``max_distance + 1`` is returned.
    """
    if a == b:
        return 0
    if len(a) > len(b):
        a, b = b, a

    start = 0
    end_a, end_b = len(a), len(b)
    while start < end_a and a[start] == b[start]:
        start += 1
    while end_a > start and a[end_a - 1] == b[end_b - 1]:
        end_a -= 1
        end_b -= 1
    a = a[start:end_a]
    b = b[start:end_b]

    m, n = len(a), len(b)
    if max_distance is not None and n - m > max_distance:
        return max_distance + 1
    if not m:
        return n

    peq: dict[str, int] = {}
    for i, char in enumerate(a):
        peq[char] = peq.get(char, 0) | (1 << i)

    full = (1 << m) - 1
    last = 1 << (m - 1)
    pv, mv = full, 0
    score = m
    for j, char in enumerate(b, start=1):
        eq = peq.get(char, 0)
        xv = eq | mv
        xh = (((eq & pv) + pv) ^ pv) | eq
        ph = (mv | ~(xh | pv)) & full
        mh = pv & xh
        if ph & last:
            score += 1
        elif mh & last:
            score -= 1
        # Row 0 of the table grows by one per column.
        ph = ((ph << 1) | 1) & full
        mh = (mh << 1) & full
        pv = (mh | ~(xv | ph)) & full
        mv = ph & xv
        if max_distance is not None and score - (n - j) > max_distance:
            return max_distance + 1
    return score


def similarity_score(a: str, b: str) -> float:
    if a == b:
        return 1.0
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein_distance(a, b) / longest


def are_similar(
    existing: ConversationMessage,
    candidate: ConversationMessage,
    *,
    length_ratio: float = DEFAULT_LENGTH_RATIO,
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> bool:
    """True when *candidate* is a re-render of the same turn as *existing*."""
    if existing.role is not candidate.role:
        return False

    left = normalize(existing.content)
    right = normalize(candidate.content)
    if left == right:
        return True
    if not left or not right:
        return False

    shorter, longer = (left, right) if len(left) <= len(right) else (right, left)
    ratio = len(shorter) / len(longer)

    if ratio >= length_ratio and shorter in longer:
        return True

    # similarity >= t requires distance <= (1 - t) * len(longer), which in
    # turn bounds the length ratio from below.
    if ratio < similarity_threshold:
        return False
    longest = len(longer)
    cutoff = int((1.0 - similarity_threshold) * longest) + 1
    distance = levenshtein_distance(left, right, max_distance=cutoff)
    return 1.0 - distance / longest >= similarity_threshold


def is_continuation(existing: ConversationMessage, candidate: ConversationMessage) -> bool:
    """True when *candidate* extends *existing* (same turn, still rendering)."""
    if existing.role is not candidate.role:
        return False
    head = normalize(existing.content)
    return bool(head) and normalize(candidate.content).startswith(head)


def find_similar_index(
    candidate: ConversationMessage,
    messages: Sequence[ConversationMessage],
    start: int = 0,
    **thresholds: float,
) -> int:
    """Index of the first message at or after *start* similar to *candidate*, or -1."""
    for index in range(max(start, 0), len(messages)):
        if are_similar(messages[index], candidate, **thresholds):
            return index
    return -1


@dataclass(frozen=True)
class Reconciler:
    """Matching policy with configured thresholds."""

    length_ratio: float = DEFAULT_LENGTH_RATIO
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD

    def are_similar(self, existing: ConversationMessage, candidate: ConversationMessage) -> bool:
        return are_similar(
            existing,
            candidate,
            length_ratio=self.length_ratio,
            similarity_threshold=self.similarity_threshold,
        )

    def matches_last(self, last: ConversationMessage, candidate: ConversationMessage) -> bool:
        """Last-message rule: similar, or a growing re-render of it."""
        return self.are_similar(last, candidate) or is_continuation(last, candidate)

    def find_similar_index(
        self,
        candidate: ConversationMessage,
        messages: Sequence[ConversationMessage],
        start: int = 0,
    ) -> int:
        return find_similar_index(
            candidate,
            messages,
            start,
            length_ratio=self.length_ratio,
            similarity_threshold=self.similarity_threshold,
        )
