"""SQLite-backed puzzle store.

Holds the four long-lived record kinds: users (fetch gate), games (the
processed set), puzzles and votes.  Inserts against a unique key never raise
on a clash; they report :attr:`InsertResult.DUPLICATE` instead.

Thread-safe: a threading.Lock serialises all connection access so the
single sqlite3.Connection can be shared between request threads and
background fetches.
"""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path

from .models import EPOCH, InsertResult, Puzzle, User

_DDL = """
CREATE TABLE IF NOT EXISTS users (
    id           TEXT    PRIMARY KEY,
    fetching     INTEGER NOT NULL DEFAULT 0,
    last_fetched REAL    NOT NULL DEFAULT 0,
    last_error   TEXT
);

CREATE TABLE IF NOT EXISTS games (
    id      TEXT PRIMARY KEY,
    created REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS puzzles (
    id               TEXT    PRIMARY KEY,
    user_id_white    TEXT    NOT NULL,
    user_id_black    TEXT    NOT NULL,
    game_id          TEXT    NOT NULL,
    fen              TEXT    NOT NULL,
    orientation      TEXT    NOT NULL,
    url              TEXT    NOT NULL,
    move_number      INTEGER NOT NULL,
    move_display     TEXT    NOT NULL,
    move_source      TEXT    NOT NULL,
    move_destination TEXT    NOT NULL,
    votes            INTEGER NOT NULL DEFAULT 0,
    created          REAL    NOT NULL
);

CREATE INDEX IF NOT EXISTS puzzles_white_idx ON puzzles (user_id_white, orientation);
CREATE INDEX IF NOT EXISTS puzzles_black_idx ON puzzles (user_id_black, orientation);

CREATE TABLE IF NOT EXISTS votes (
    puzzle_id TEXT    NOT NULL,
    user_id   TEXT    NOT NULL,
    up        INTEGER NOT NULL,
    PRIMARY KEY (puzzle_id, user_id)
);
"""

_PUZZLE_COLUMNS = (
    "id, user_id_white, user_id_black, game_id, fen, orientation, url, "
    "move_number, move_display, move_source, move_destination, votes, created"
)

# Positions where the user is to move, i.e. the tactics they missed.
_BY_USER_OWN = """
    (user_id_white = ? AND orientation = 'white')
    OR (user_id_black = ? AND orientation = 'black')
"""
# Every puzzle from the user's games.
_BY_USER_ALL = "(user_id_white = ? OR user_id_black = ?)"


def _ts(dt: datetime) -> float:
    return dt.timestamp()


def _dt(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _row_to_puzzle(row: tuple) -> Puzzle:
    return Puzzle(
        id=row[0],
        user_id_white=row[1],
        user_id_black=row[2],
        game_id=row[3],
        fen=row[4],
        orientation=row[5],
        url=row[6],
        move_number=row[7],
        move_display=row[8],
        move_source=row[9],
        move_destination=row[10],
        votes=row[11],
        created=_dt(row[12]),
    )


def vote_delta(previous: bool | None, up: bool) -> int:
    """Change in a puzzle's count when a vote moves from *previous* to *up*.

    ``previous`` is ``None`` when the user had not voted yet.
    """
    if previous is None:
        return 1 if up else -1
    if previous == up:
        return 0
    return 2 if up else -2


class PuzzleStore:
    """Persistent users / games / puzzles / votes."""

    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            str(db_path),
            check_same_thread=False,
        )
        self._lock = threading.Lock()
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    def _create_tables(self) -> None:
        with self._lock:
            self._conn.executescript(_DDL)
            self._conn.commit()

    # ------------------------------------------------------------------
    # Users and the fetch gate
    # ------------------------------------------------------------------

    def ensure_user(self, user_id: str) -> User:
        """Return the user, creating it idle with ``last_fetched = epoch``."""
        with self._lock:
            self._conn.execute(
                "INSERT OR IGNORE INTO users (id, fetching, last_fetched) VALUES (?, 0, ?)",
                (user_id, _ts(EPOCH)),
            )
            self._conn.commit()
        return self.get_user(user_id) or User(id=user_id)

    def get_user(self, user_id: str) -> User | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT id, fetching, last_fetched, last_error FROM users WHERE id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return User(id=row[0], fetching=bool(row[1]), last_fetched=_dt(row[2]), last_error=row[3])

    def try_begin_fetch(self, user_id: str, stale_before: datetime) -> bool:
        """Flip the user to fetching iff idle and last fetched before *stale_before*.

        A single conditional UPDATE: of several concurrent callers at most one
        sees ``True``.
        """
        with self._lock:
            cur = self._conn.execute(
                """
                UPDATE users SET fetching = 1
                WHERE id = ? AND fetching = 0 AND last_fetched <= ?
                """,
                (user_id, _ts(stale_before)),
            )
            self._conn.commit()
            return cur.rowcount == 1

    def finish_fetch(self, user_id: str, finished_at: datetime, error: str | None = None) -> None:
        """Return the user to idle, stamping the fetch time and outcome."""
        with self._lock:
            self._conn.execute(
                """
                UPDATE users SET fetching = 0, last_fetched = ?, last_error = ?
                WHERE id = ?
                """,
                (_ts(finished_at), error, user_id),
            )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Processed games
    # ------------------------------------------------------------------

    def has_game(self, game_id: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM games WHERE id = ?", (game_id,)
            ).fetchone()
        return bool(row[0])

    def insert_game(self, game_id: str, created: datetime) -> InsertResult:
        with self._lock:
            cur = self._conn.execute(
                "INSERT OR IGNORE INTO games (id, created) VALUES (?, ?)",
                (game_id, _ts(created)),
            )
            self._conn.commit()
        return InsertResult.INSERTED if cur.rowcount == 1 else InsertResult.DUPLICATE

    # ------------------------------------------------------------------
    # Puzzles
    # ------------------------------------------------------------------

    def insert_puzzle(self, puzzle: Puzzle) -> InsertResult:
        with self._lock:
            cur = self._conn.execute(
                f"""
                INSERT OR IGNORE INTO puzzles ({_PUZZLE_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    puzzle.id,
                    puzzle.user_id_white,
                    puzzle.user_id_black,
                    puzzle.game_id,
                    puzzle.fen,
                    puzzle.orientation,
                    puzzle.url,
                    puzzle.move_number,
                    puzzle.move_display,
                    puzzle.move_source,
                    puzzle.move_destination,
                    puzzle.votes,
                    _ts(puzzle.created),
                ),
            )
            self._conn.commit()
        return InsertResult.INSERTED if cur.rowcount == 1 else InsertResult.DUPLICATE

    def get_puzzle(self, puzzle_id: str) -> Puzzle | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_PUZZLE_COLUMNS} FROM puzzles WHERE id = ?", (puzzle_id,)
            ).fetchone()
        return _row_to_puzzle(row) if row else None

    def list_by_user(
        self,
        user_id: str,
        limit: int = 10,
        offset: int = 0,
        own_only: bool = True,
    ) -> list[Puzzle]:
        """Puzzles from *user_id*'s games, oldest first.

        With *own_only* only positions where the user is the side to move.
        """
        where = _BY_USER_OWN if own_only else _BY_USER_ALL
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT {_PUZZLE_COLUMNS} FROM puzzles
                WHERE {where}
                ORDER BY created, id
                LIMIT ? OFFSET ?
                """,
                (user_id, user_id, limit, offset),
            ).fetchall()
        return [_row_to_puzzle(r) for r in rows]

    def count_by_user(self, user_id: str, own_only: bool = True) -> int:
        where = _BY_USER_OWN if own_only else _BY_USER_ALL
        with self._lock:
            row = self._conn.execute(
                f"SELECT COUNT(*) FROM puzzles WHERE {where}",
                (user_id, user_id),
            ).fetchone()
        return int(row[0])

    def list_recent(self, limit: int = 10) -> list[Puzzle]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_PUZZLE_COLUMNS} FROM puzzles ORDER BY created DESC, id LIMIT ?",
                (limit,),
            ).fetchall()
        return [_row_to_puzzle(r) for r in rows]

    # ------------------------------------------------------------------
    # Votes
    # ------------------------------------------------------------------

    def record_vote(self, puzzle_id: str, user_id: str, up: bool) -> int | None:
        """Apply a vote and return the puzzle's new count (None if unknown puzzle).

        Read, upsert and count adjustment happen in one transaction under
        the store lock.
        """
        with self._lock:
            try:
                exists = self._conn.execute(
                    "SELECT votes FROM puzzles WHERE id = ?", (puzzle_id,)
                ).fetchone()
                if exists is None:
                    return None
                row = self._conn.execute(
                    "SELECT up FROM votes WHERE puzzle_id = ? AND user_id = ?",
                    (puzzle_id, user_id),
                ).fetchone()
                delta = vote_delta(None if row is None else bool(row[0]), up)
                if delta:
                    self._conn.execute(
                        """
                        INSERT INTO votes (puzzle_id, user_id, up) VALUES (?, ?, ?)
                        ON CONFLICT (puzzle_id, user_id) DO UPDATE SET up = excluded.up
                        """,
                        (puzzle_id, user_id, int(up)),
                    )
                    self._conn.execute(
                        "UPDATE puzzles SET votes = votes + ? WHERE id = ?",
                        (delta, puzzle_id),
                    )
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
            return exists[0] + delta

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "PuzzleStore":
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
