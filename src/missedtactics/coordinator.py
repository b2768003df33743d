"""Per-user fetch gate: decide whether a search fetches or serves.

Each user is either idle or fetching.  A search for a user who is idle and
whose last fetch is older than the TTL claims the gate with one conditional
update in the store, then fetches and synthesizes in a background thread.
The search itself returns straight away with a ``fetching`` status; a later
search sees the result.  Whatever happens in the background (success,
provider error, timeout, crash) the user is set back to idle with a fresh
``last_fetched``.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from .config import Settings
from .errors import ProviderError
from .lichess import fetch_recent_games
from .models import GameRecord, Puzzle
from .replay import ChessRules
from .synthesizer import SynthesisPolicy, synthesize

logger = logging.getLogger(__name__)

FETCHING = "fetching"
READY = "ready"

FetchGames = Callable[[str], list[GameRecord]]
Spawn = Callable[[Callable[[], None]], None]


@dataclass
class SearchResult:
    status: str                 # FETCHING | READY
    user_id: str
    puzzles: list[Puzzle] = field(default_factory=list)
    total: int = 0
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "status":  self.status,
            "user":    self.user_id,
            "puzzles": [p.to_dict() for p in self.puzzles],
            "total":   self.total,
            "error":   self.error,
        }


def _spawn_thread(target: Callable[[], None]) -> None:
    threading.Thread(target=target, daemon=True).start()


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class FetchCoordinator:
    """Single-flight fetch-and-synthesize per user id."""

    def __init__(
        self,
        store,
        rules: ChessRules,
        settings: Settings,
        fetch_games: FetchGames | None = None,
        spawn: Spawn = _spawn_thread,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._rules = rules
        self._settings = settings
        self._fetch_games = fetch_games or self._fetch_from_lichess
        self._spawn = spawn
        self._clock = clock
        self._policy = SynthesisPolicy(
            blunder_threshold=settings.blunder_threshold,
            winning_threshold=settings.winning_threshold,
            speeds=settings.speeds,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def search(self, user_id: str, limit: int = 10, offset: int = 0) -> SearchResult:
        """Handle one search request; never blocks on provider I/O."""
        user_id = user_id.strip().lower()
        self._store.ensure_user(user_id)

        stale_before = self._clock() - timedelta(seconds=self._settings.fetch_ttl)
        if self._store.try_begin_fetch(user_id, stale_before):
            logger.info("starting background fetch for %s", user_id)
            self._spawn(lambda: self.run_fetch(user_id))
            return SearchResult(status=FETCHING, user_id=user_id)

        return self.current(user_id, limit=limit, offset=offset)

    def current(self, user_id: str, limit: int = 10, offset: int = 0) -> SearchResult:
        """The user's state as stored, without touching the fetch gate."""
        user_id = user_id.strip().lower()
        user = self._store.get_user(user_id)
        if user is not None and user.fetching:
            return SearchResult(status=FETCHING, user_id=user_id)

        own_only = self._settings.own_misses_only
        return SearchResult(
            status=READY,
            user_id=user_id,
            puzzles=self._store.list_by_user(user_id, limit=limit, offset=offset, own_only=own_only),
            total=self._store.count_by_user(user_id, own_only=own_only),
            error=user.last_error if user else None,
        )

    def run_fetch(self, user_id: str) -> None:
        """Background body: fetch, synthesize, always release the gate."""
        error: str | None = None
        try:
            games = self._fetch_games(user_id)
            report = synthesize(games, self._store, self._rules, self._policy)
            logger.info("fetch for %s done: %s", user_id, report.summary())
        except ProviderError as exc:
            logger.warning("fetch for %s failed: %s", user_id, exc)
            error = str(exc)
        except Exception:  # noqa: BLE001
            logger.exception("unexpected error while fetching for %s", user_id)
            error = "There was an error while analysing your games."
        finally:
            self._store.finish_fetch(user_id, self._clock(), error)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _fetch_from_lichess(self, user_id: str) -> list[GameRecord]:
        return fetch_recent_games(
            user_id,
            nb=self._settings.games_per_fetch,
            timeout=self._settings.fetch_timeout,
            token=self._settings.lichess_token,
        )
