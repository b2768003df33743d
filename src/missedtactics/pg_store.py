"""PostgreSQL implementation of the puzzle store.

Same public surface as :class:`~missedtactics.store.PuzzleStore`; selected
when ``DATABASE_URL`` points at a PostgreSQL server.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime

import psycopg2
import psycopg2.pool

from .models import EPOCH, InsertResult, Puzzle, User
from .store import vote_delta

_DDL = """
CREATE TABLE IF NOT EXISTS users (
    id           TEXT PRIMARY KEY,
    fetching     BOOLEAN NOT NULL DEFAULT FALSE,
    last_fetched TIMESTAMPTZ NOT NULL DEFAULT 'epoch',
    last_error   TEXT
);

CREATE TABLE IF NOT EXISTS games (
    id      TEXT PRIMARY KEY,
    created TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS puzzles (
    id               TEXT PRIMARY KEY,
    user_id_white    TEXT NOT NULL,
    user_id_black    TEXT NOT NULL,
    game_id          TEXT NOT NULL,
    fen              TEXT NOT NULL,
    orientation      TEXT NOT NULL,
    url              TEXT NOT NULL,
    move_number      INTEGER NOT NULL,
    move_display     TEXT NOT NULL,
    move_source      TEXT NOT NULL,
    move_destination TEXT NOT NULL,
    votes            INTEGER NOT NULL DEFAULT 0,
    created          TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS puzzles_white_idx ON puzzles (user_id_white, orientation);
CREATE INDEX IF NOT EXISTS puzzles_black_idx ON puzzles (user_id_black, orientation);

CREATE TABLE IF NOT EXISTS votes (
    puzzle_id TEXT    NOT NULL,
    user_id   TEXT    NOT NULL,
    up        BOOLEAN NOT NULL,
    PRIMARY KEY (puzzle_id, user_id)
);
"""

_PUZZLE_COLUMNS = (
    "id, user_id_white, user_id_black, game_id, fen, orientation, url, "
    "move_number, move_display, move_source, move_destination, votes, created"
)

_BY_USER_OWN = """
    (user_id_white = %s AND orientation = 'white')
    OR (user_id_black = %s AND orientation = 'black')
"""
_BY_USER_ALL = "(user_id_white = %s OR user_id_black = %s)"


def _row_to_puzzle(row: tuple) -> Puzzle:
    (pid, white, black, game_id, fen, orientation, url,
     move_number, move_display, source, destination, votes, created) = row
    return Puzzle(
        id=pid,
        user_id_white=white,
        user_id_black=black,
        game_id=game_id,
        fen=fen,
        orientation=orientation,
        url=url,
        move_number=move_number,
        move_display=move_display,
        move_source=source,
        move_destination=destination,
        votes=votes,
        created=created,
    )


class PgPuzzleStore:
    """Thread-safe store over a psycopg2 connection pool."""

    def __init__(self, database_url: str) -> None:
        self._pool = psycopg2.pool.ThreadedConnectionPool(1, 10, database_url)
        self._init_db()

    @contextmanager
    def _conn(self):
        conn = self._pool.getconn()
        try:
            yield conn
        except Exception:
            conn.rollback()
            raise
        finally:
            self._pool.putconn(conn)

    def _init_db(self) -> None:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(_DDL)
            conn.commit()

    # ------------------------------------------------------------------
    # Users and the fetch gate
    # ------------------------------------------------------------------

    def ensure_user(self, user_id: str) -> User:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO users (id, fetching, last_fetched) VALUES (%s, FALSE, %s)
                ON CONFLICT (id) DO NOTHING
                """,
                (user_id, EPOCH),
            )
            conn.commit()
        return self.get_user(user_id) or User(id=user_id)

    def get_user(self, user_id: str) -> User | None:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                "SELECT id, fetching, last_fetched, last_error FROM users WHERE id = %s",
                (user_id,),
            )
            row = cur.fetchone()
        if row is None:
            return None
        return User(id=row[0], fetching=row[1], last_fetched=row[2], last_error=row[3])

    def try_begin_fetch(self, user_id: str, stale_before: datetime) -> bool:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                """
                UPDATE users SET fetching = TRUE
                WHERE id = %s AND fetching = FALSE AND last_fetched <= %s
                """,
                (user_id, stale_before),
            )
            acquired = cur.rowcount == 1
            conn.commit()
        return acquired

    def finish_fetch(self, user_id: str, finished_at: datetime, error: str | None = None) -> None:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                """
                UPDATE users SET fetching = FALSE, last_fetched = %s, last_error = %s
                WHERE id = %s
                """,
                (finished_at, error, user_id),
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Processed games
    # ------------------------------------------------------------------

    def has_game(self, game_id: str) -> bool:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM games WHERE id = %s", (game_id,))
            row = cur.fetchone()
        return bool(row[0])

    def insert_game(self, game_id: str, created: datetime) -> InsertResult:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                "INSERT INTO games (id, created) VALUES (%s, %s) ON CONFLICT (id) DO NOTHING",
                (game_id, created),
            )
            inserted = cur.rowcount == 1
            conn.commit()
        return InsertResult.INSERTED if inserted else InsertResult.DUPLICATE

    # ------------------------------------------------------------------
    # Puzzles
    # ------------------------------------------------------------------

    def insert_puzzle(self, puzzle: Puzzle) -> InsertResult:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO puzzles ({_PUZZLE_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO NOTHING
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
                    puzzle.created,
                ),
            )
            inserted = cur.rowcount == 1
            conn.commit()
        return InsertResult.INSERTED if inserted else InsertResult.DUPLICATE

    def get_puzzle(self, puzzle_id: str) -> Puzzle | None:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(f"SELECT {_PUZZLE_COLUMNS} FROM puzzles WHERE id = %s", (puzzle_id,))
            row = cur.fetchone()
        return _row_to_puzzle(row) if row else None

    def list_by_user(
        self,
        user_id: str,
        limit: int = 10,
        offset: int = 0,
        own_only: bool = True,
    ) -> list[Puzzle]:
        where = _BY_USER_OWN if own_only else _BY_USER_ALL
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {_PUZZLE_COLUMNS} FROM puzzles
                WHERE {where}
                ORDER BY created, id
                LIMIT %s OFFSET %s
                """,
                (user_id, user_id, limit, offset),
            )
            rows = cur.fetchall()
        return [_row_to_puzzle(r) for r in rows]

    def count_by_user(self, user_id: str, own_only: bool = True) -> int:
        where = _BY_USER_OWN if own_only else _BY_USER_ALL
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(f"SELECT COUNT(*) FROM puzzles WHERE {where}", (user_id, user_id))
            row = cur.fetchone()
        return int(row[0])

    def list_recent(self, limit: int = 10) -> list[Puzzle]:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                f"SELECT {_PUZZLE_COLUMNS} FROM puzzles ORDER BY created DESC, id LIMIT %s",
                (limit,),
            )
            rows = cur.fetchall()
        return [_row_to_puzzle(r) for r in rows]

    # ------------------------------------------------------------------
    # Votes
    # ------------------------------------------------------------------

    def record_vote(self, puzzle_id: str, user_id: str, up: bool) -> int | None:
        """Apply a vote; the puzzle row lock serialises voters on one puzzle."""
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute("SELECT votes FROM puzzles WHERE id = %s FOR UPDATE", (puzzle_id,))
            row = cur.fetchone()
            if row is None:
                conn.rollback()
                return None
            votes = row[0]
            cur.execute(
                "SELECT up FROM votes WHERE puzzle_id = %s AND user_id = %s",
                (puzzle_id, user_id),
            )
            prev = cur.fetchone()
            delta = vote_delta(None if prev is None else prev[0], up)
            if delta:
                cur.execute(
                    """
                    INSERT INTO votes (puzzle_id, user_id, up) VALUES (%s, %s, %s)
                    ON CONFLICT (puzzle_id, user_id) DO UPDATE SET up = EXCLUDED.up
                    """,
                    (puzzle_id, user_id, up),
                )
                cur.execute(
                    "UPDATE puzzles SET votes = votes + %s WHERE id = %s",
                    (delta, puzzle_id),
                )
            conn.commit()
        return votes + delta

    def close(self) -> None:
        self._pool.closeall()

    def __enter__(self) -> "PgPuzzleStore":
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
