"""Normalisation of provider evaluations onto one centipawn scale.

Lichess reports each analysed ply either as ``{"eval": <cp>}`` or, when a
forced mate was found, as ``{"mate": <n>}`` (positive = White mates).  Mate
scores collapse to ``±MATE_SCORE`` so both kinds compare on a single axis.
"""

from __future__ import annotations

from typing import Any, Iterable

MATE_SCORE = 99_999


def _sign(value: int) -> int:
    return (value > 0) - (value < 0)


def normalize_eval(raw: dict[str, Any]) -> int:
    """Return the centipawn value of one provider evaluation entry.

    A ``mate`` key wins over ``eval``.  Entries carrying neither (the
    provider sometimes emits bare judgment objects) count as 0.
    """
    mate = raw.get("mate")
    if mate is not None:
        return _sign(int(mate)) * MATE_SCORE
    return int(raw.get("eval", 0))


def clamp(value: int, limit: int) -> int:
    """Cap ``|value|`` at *limit*, keeping the sign."""
    if value > limit:
        return limit
    if value < -limit:
        return -limit
    return value


def normalize_series(raw: Iterable[dict[str, Any]]) -> list[int]:
    return [normalize_eval(entry) for entry in raw]


def clamp_series(values: Iterable[int], limit: int) -> list[int]:
    return [clamp(v, limit) for v in values]
