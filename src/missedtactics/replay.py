"""Sequential move replay on top of python-chess.

:class:`ChessRules` is the rules capability: it knows the start position,
how to apply a SAN token and how to serialise a board.  It holds no state
of its own, so one instance can be shared by every thread; callers build
it once and pass it to :func:`replay`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Collection, Iterator, Sequence

import chess

from .errors import ReplayError


class ChessRules:
    """Stateless move-application capability backed by ``chess.Board``."""

    def __init__(self, starting_fen: str = chess.STARTING_FEN) -> None:
        self._starting_fen = starting_fen

    def initial_position(self) -> chess.Board:
        return chess.Board(self._starting_fen)

    def apply(self, board: chess.Board, san: str) -> tuple[chess.Board, str, str]:
        """Play *san* on a copy of *board*.

        Returns ``(new_board, source_square, destination_square)``.  Raises
        ``ValueError`` (python-chess' illegal/invalid/ambiguous move errors)
        when the token cannot be played.
        """
        move = board.parse_san(san)
        after = board.copy(stack=False)
        after.push(move)
        return after, chess.square_name(move.from_square), chess.square_name(move.to_square)

    @staticmethod
    def serialize(board: chess.Board) -> str:
        return board.fen()

    @staticmethod
    def side_to_move(board: chess.Board) -> str:
        return "white" if board.turn == chess.WHITE else "black"


@dataclass(frozen=True)
class ReplayedPly:
    """Board state right after the move at index ``ply`` was played."""

    ply: int
    board: chess.Board
    fen: str
    side_to_move: str
    san: str
    source: str
    destination: str


def replay(
    moves: Sequence[str],
    rules: ChessRules,
    plies: Collection[int] | None = None,
    game_id: str | None = None,
) -> Iterator[ReplayedPly]:
    """Replay *moves* from the start, yielding a snapshot for each wanted ply.

    With *plies* ``None`` every ply is yielded.  Replay stops after the last
    wanted ply.  An unplayable token raises :class:`ReplayError`; snapshots
    already yielded remain valid, nothing past the failure is produced.
    """
    last_wanted = max(plies) if plies else None
    if plies is not None and last_wanted is None:
        return

    board = rules.initial_position()
    for ply, san in enumerate(moves):
        try:
            board, source, destination = rules.apply(board, san)
        except ValueError as exc:
            raise ReplayError(game_id, ply, san, str(exc)) from exc

        if plies is None or ply in plies:
            yield ReplayedPly(
                ply=ply,
                board=board,
                fen=rules.serialize(board),
                side_to_move=rules.side_to_move(board),
                san=san,
                source=source,
                destination=destination,
            )
        if last_wanted is not None and ply >= last_wanted:
            return


def split_moves(moves: str) -> tuple[str, ...]:
    """Split the provider's space-separated move string into SAN tokens."""
    return tuple(moves.split())
