"""Turn analysed games into stored missed-tactic puzzles.

For each game:

1. Skip unanalysed games and games outside the configured speeds.
2. Skip games already in the processed set; this is what makes
   re-ingesting the same games a no-op.
3. Run the detector over the clamped evaluations.
4. Record the game as processed *before* replaying it, so a game with no
   tactics, or one whose replay fails, is never fetched and analysed again.
5. Replay the moves once and build a :class:`Puzzle` at every anchor ply.
6. Insert each puzzle; an id clash means it already exists and is ignored.

A failure inside one game is logged and counted; the batch carries on.
Puzzles inserted for that game before the failure are kept.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from .config import DEFAULT_SPEEDS
from .detector import BLUNDER_THRESHOLD, WINNING_THRESHOLD, anchor_ply, find_missed_tactics
from .models import GameRecord, InsertResult, Puzzle, SynthesisReport
from .replay import ChessRules, ReplayedPly, replay

logger = logging.getLogger(__name__)

_GAME_URL = "https://lichess.org/{game_id}/{color}#{ply}"


@dataclass(frozen=True)
class SynthesisPolicy:
    blunder_threshold: int = BLUNDER_THRESHOLD
    winning_threshold: int = WINNING_THRESHOLD
    speeds: tuple[str, ...] = DEFAULT_SPEEDS


# ---------------------------------------------------------------------------
# Puzzle construction helpers
# ---------------------------------------------------------------------------


def puzzle_id(game_id: str, ply: int) -> str:
    return f"{game_id}_{ply}"


def move_display(ply: int, san: str) -> str:
    """Human move label: ``"12. Nf3"`` for White, ``"12. ... Nf6"`` for Black."""
    dots = "... " if ply % 2 == 1 else ""
    return f"{ply // 2 + 1}. {dots}{san}"


def game_url(game_id: str, color: str, ply: int) -> str:
    """Deep link to the game viewed from *color*, positioned after move *ply*.

    The site counts plies from 1, so move index ``ply`` is ``#ply+1``.
    """
    return _GAME_URL.format(game_id=game_id, color=color, ply=ply + 1)


def build_puzzle(game: GameRecord, snap: ReplayedPly) -> Puzzle:
    return Puzzle(
        id=puzzle_id(game.id, snap.ply),
        game_id=game.id,
        user_id_white=game.white_id or "",
        user_id_black=game.black_id or "",
        fen=snap.fen,
        orientation=snap.side_to_move,
        url=game_url(game.id, snap.side_to_move, snap.ply),
        move_number=snap.ply,
        move_display=move_display(snap.ply, snap.san),
        move_source=snap.source,
        move_destination=snap.destination,
        created=game.created_at,
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def synthesize(
    games: Iterable[GameRecord],
    store,
    rules: ChessRules,
    policy: SynthesisPolicy = SynthesisPolicy(),
) -> SynthesisReport:
    """Process a batch of games into *store*; return the batch counters.

    Every flagged position is stored whichever side is to move: the game
    is shared by both players and is only ever processed once.
    """
    report = SynthesisReport()
    for game in games:
        report.games += 1
        if not game.analysed:
            report.skipped_unanalysed += 1
            continue
        report.analysed += 1
        if game.speed not in policy.speeds:
            report.skipped_speed += 1
            continue
        if store.has_game(game.id):
            report.skipped_known += 1
            continue

        try:
            created, duplicates = _process_game(game, store, rules, policy)
        except Exception:  # noqa: BLE001
            logger.exception("failed to synthesize puzzles for game %s", game.id)
            report.failed += 1
            report.failed_game_ids.append(game.id)
            continue
        report.processed += 1
        report.puzzles_created += created
        report.puzzles_duplicate += duplicates

    logger.info("synthesis: %s", report.summary())
    return report


def _process_game(
    game: GameRecord,
    store,
    rules: ChessRules,
    policy: SynthesisPolicy,
) -> tuple[int, int]:
    flagged = find_missed_tactics(
        game.evals or (),
        threshold=policy.blunder_threshold,
        winning=policy.winning_threshold,
    )

    if store.insert_game(game.id, game.created_at) is InsertResult.DUPLICATE:
        logger.debug("game %s recorded concurrently by another ingestion", game.id)

    anchors = {anchor_ply(i) for i in flagged}
    if not anchors:
        return 0, 0

    created = duplicates = 0
    for snap in replay(game.moves, rules, anchors, game_id=game.id):
        result = store.insert_puzzle(build_puzzle(game, snap))
        if result is InsertResult.INSERTED:
            created += 1
        else:
            duplicates += 1
            logger.debug("puzzle %s already stored", puzzle_id(game.id, snap.ply))
    return created, duplicates
