"""Shared data-model types used across all modules."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


# ---------------------------------------------------------------------------
# Provider games
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GameRecord:
    """One game as delivered by the provider."""

    id: str
    created_at: datetime
    speed: str
    white_id: str | None
    black_id: str | None
    moves: tuple[str, ...]          # SAN tokens in play order
    evals: tuple[int, ...] | None   # normalised, one per analysed ply; None = unanalysed

    @property
    def analysed(self) -> bool:
        return self.evals is not None


# ---------------------------------------------------------------------------
# Puzzles
# ---------------------------------------------------------------------------


@dataclass
class Puzzle:
    """A missed-tactic position, persisted once per ``{game_id}_{ply}``."""

    id: str
    game_id: str
    user_id_white: str
    user_id_black: str
    fen: str
    orientation: str      # side to move: 'white' | 'black'
    url: str
    move_number: int      # 0-based ply index of the move just played
    move_display: str     # e.g. "14. ... Qxd5"
    move_source: str      # square name, e.g. "d8"
    move_destination: str
    created: datetime
    votes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id":              self.id,
            "gameId":          self.game_id,
            "fen":             self.fen,
            "fenLink":         self.fen.replace(" ", "_"),
            "orientation":     self.orientation,
            "url":             self.url,
            "moveNumber":      self.move_number,
            "moveDisplay":     self.move_display,
            "moveSource":      self.move_source,
            "moveDestination": self.move_destination,
            "votes":           self.votes,
        }


# ---------------------------------------------------------------------------
# Users / votes
# ---------------------------------------------------------------------------


@dataclass
class User:
    id: str
    fetching: bool = False
    last_fetched: datetime = EPOCH
    last_error: str | None = None


@dataclass(frozen=True)
class Vote:
    puzzle_id: str
    user_id: str
    up: bool


class InsertResult(enum.Enum):
    """Outcome of an insert-if-absent against a unique key."""

    INSERTED = "inserted"
    DUPLICATE = "duplicate"


# ---------------------------------------------------------------------------
# Batch reporting
# ---------------------------------------------------------------------------


@dataclass
class SynthesisReport:
    """Counters for one :func:`~missedtactics.synthesizer.synthesize` run."""

    games: int = 0
    analysed: int = 0
    skipped_unanalysed: int = 0
    skipped_speed: int = 0
    skipped_known: int = 0
    processed: int = 0
    failed: int = 0
    puzzles_created: int = 0
    puzzles_duplicate: int = 0
    failed_game_ids: list[str] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"{self.games} games, {self.analysed} analysed, "
            f"{self.processed} processed, {self.skipped_known} already known, "
            f"{self.failed} failed, {self.puzzles_created} new puzzles"
        )
