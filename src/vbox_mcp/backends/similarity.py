"""Edit-distance helpers for "did you mean" suggestions."""

from __future__ import annotations

from typing import Iterable


def levenshtein(left: str, right: str) -> int:
    if left == right:
        return 0
    if not left:
        return len(right)
    if not right:
        return len(left)

    previous = list(range(len(right) + 1))
    for i, left_char in enumerate(left, start=1):
        current = [i]
        for j, right_char in enumerate(right, start=1):
            cost = 0 if left_char == right_char else 1
            current.append(min(current[j - 1] + 1, previous[j] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def closest_match(target: str, candidates: Iterable[str]) -> str | None:
    """Return the nearest candidate, or ``None`` when every match is too distant.

    A match is rejected when its distance exceeds 3 and also exceeds 40% of
    the target's length.
    """

    best: str | None = None
    best_distance: int | None = None
    for candidate in candidates:
        distance = levenshtein(target.lower(), candidate.lower())
        if best_distance is None or distance < best_distance:
            best, best_distance = candidate, distance

    if best is None or best_distance is None:
        return None
    if best_distance > 3 and best_distance > len(target) * 0.4:
        return None
    return best


__all__ = ["levenshtein", "closest_match"]
