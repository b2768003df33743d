"""Missed-tactic detection over a game's evaluation series.

``ev[k]`` is the (clamped) evaluation after the k-th analysed ply, always
from White's perspective.  An index ``i`` is flagged when:

1. The eval after ``i+1`` favours the side that moves at ``i+2``:
   positive when ``i`` is even (White to move next), negative when odd.
2. ``|ev[i+1]| >= threshold`` – the position really is winning.
3. ``delta = ev[i+1] - ev[i]`` with ``|delta| >= threshold`` – it only just
   became winning, i.e. the opponent blundered.
4. ``delta2 = ev[i+2] - ev[i+1]`` with ``|delta2| >= 0.66 × |delta|`` – the
   reply gave most of it back.
5. ``2 × |delta| > |ev[i+1]|`` – the swing is a large share of the result,
   which filters cosmetic changes in already-won games.
6. ``sign(delta) != sign(delta2)`` – surge then reversal.

The puzzle position is the one *after* ply ``i+1``; see :func:`anchor_ply`.
Clamping the series to ``winning`` first stops mate scores and crushing
evals from inflating the deltas.
"""

from __future__ import annotations

from typing import Sequence

from .evals import clamp_series

BLUNDER_THRESHOLD: int = 250    # centipawns
WINNING_THRESHOLD: int = 800    # clamp applied before detection
_FOLLOW_UP_RATIO: float = 0.66  # fraction of the swing the reply must undo


def _sign(value: int) -> int:
    return (value > 0) - (value < 0)


def expected_sign(index: int) -> int:
    """Sign ``ev[index+1]`` must have for *index* to be a candidate."""
    return 1 if index % 2 == 0 else -1


def find_missed_tactics(
    evals: Sequence[int],
    threshold: int = BLUNDER_THRESHOLD,
    winning: int | None = WINNING_THRESHOLD,
) -> list[int]:
    """Return the ascending list of flagged indices in *evals*.

    *evals* are raw normalised values; they are clamped to *winning* here
    (pass ``None`` when the series is already clamped).
    """
    ev = clamp_series(evals, winning) if winning is not None else list(evals)
    flagged: list[int] = []
    for i in range(len(ev) - 2):
        swing_to = ev[i + 1]
        delta = swing_to - ev[i]
        delta2 = ev[i + 2] - swing_to
        if (
            _sign(swing_to) == expected_sign(i)
            and abs(swing_to) >= threshold
            and abs(delta) >= threshold
            and abs(delta2) >= _FOLLOW_UP_RATIO * abs(delta)
            and abs(delta) * 2 > abs(swing_to)
            and _sign(delta) != _sign(delta2)
        ):
            flagged.append(i)
    return flagged


def anchor_ply(flagged_index: int) -> int:
    """Map a flagged eval index to the 0-based move index of the puzzle.

    The puzzle shows the board right after move ``flagged_index + 1`` was
    played, with the side that missed the tactic to move.
    """
    return flagged_index + 1
