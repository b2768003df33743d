"""Tests for the per-user fetch gate."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

import pytest

from missedtactics.config import Settings
from missedtactics.coordinator import FETCHING, READY, FetchCoordinator
from missedtactics.errors import ProviderError
from missedtactics.models import GameRecord
from missedtactics.replay import ChessRules, split_moves
from missedtactics.store import PuzzleStore

_T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _Clock:
    def __init__(self) -> None:
        self.now = _T0

    def __call__(self) -> datetime:
        return self.now


class _Deferred:
    """Collects spawned tasks instead of starting threads."""

    def __init__(self) -> None:
        self.tasks: list[Callable[[], None]] = []

    def __call__(self, fn: Callable[[], None]) -> None:
        self.tasks.append(fn)

    def run_all(self) -> None:
        tasks, self.tasks = self.tasks, []
        for fn in tasks:
            fn()


def _game() -> GameRecord:
    return GameRecord(
        id="g1",
        created_at=_T0,
        speed="rapid",
        white_id="alice",
        black_id="bob",
        moves=split_moves("e4 e5 Nf3 Nc6 Bc4 Bc5 O-O Nf6"),
        evals=(20, 30, 25, 400, 0, 10, -400, 200),
    )


@pytest.fixture
def store(tmp_path: Path):
    with PuzzleStore(tmp_path / "puzzles.sqlite") as s:
        yield s


def _coordinator(store, fetch, spawn, clock, ttl: int = 3600) -> FetchCoordinator:
    return FetchCoordinator(
        store,
        ChessRules(),
        Settings(fetch_ttl=ttl),
        fetch_games=fetch,
        spawn=spawn,
        clock=clock,
    )


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


def test_first_search_starts_a_fetch_and_returns_immediately(store: PuzzleStore) -> None:
    spawn, clock = _Deferred(), _Clock()
    calls: list[str] = []
    coord = _coordinator(store, lambda u: calls.append(u) or [_game()], spawn, clock)

    result = coord.search("Alice")

    assert result.status == FETCHING
    assert result.user_id == "alice"
    assert len(spawn.tasks) == 1
    assert calls == []  # nothing ran on the request path
    assert store.get_user("alice").fetching is True


def test_search_while_fetching_starts_nothing(store: PuzzleStore) -> None:
    spawn, clock = _Deferred(), _Clock()
    coord = _coordinator(store, lambda u: [_game()], spawn, clock)

    coord.search("alice")
    second = coord.search("alice")

    assert second.status == FETCHING
    assert len(spawn.tasks) == 1


def test_completed_fetch_serves_puzzles_until_stale(store: PuzzleStore) -> None:
    spawn, clock = _Deferred(), _Clock()
    calls: list[str] = []
    coord = _coordinator(store, lambda u: calls.append(u) or [_game()], spawn, clock)

    coord.search("alice")
    spawn.run_all()
    user = store.get_user("alice")
    assert user.fetching is False
    assert user.last_fetched == _T0

    clock.now = _T0 + timedelta(minutes=30)
    result = coord.search("alice")
    assert result.status == READY
    assert [p.id for p in result.puzzles] == ["g1_3"]
    assert result.total == 1
    assert result.error is None
    assert spawn.tasks == []

    clock.now = _T0 + timedelta(hours=2)
    assert coord.search("alice").status == FETCHING
    assert len(spawn.tasks) == 1
    spawn.run_all()
    assert calls == ["alice", "alice"]
    # Re-fetching the same games adds nothing.
    assert coord.search("alice").total == 1


def test_provider_error_releases_gate_and_surfaces_message(store: PuzzleStore) -> None:
    spawn, clock = _Deferred(), _Clock()

    def failing(_: str) -> list[GameRecord]:
        raise ProviderError("Lichess timed out after 60s for alice")

    coord = _coordinator(store, failing, spawn, clock)
    coord.search("alice")
    spawn.run_all()

    user = store.get_user("alice")
    assert user.fetching is False
    assert user.last_fetched == _T0

    result = coord.search("alice")
    assert result.status == READY
    assert result.error == "Lichess timed out after 60s for alice"
    assert result.puzzles == []


def test_unexpected_error_still_releases_gate(store: PuzzleStore) -> None:
    spawn, clock = _Deferred(), _Clock()

    def crashing(_: str) -> list[GameRecord]:
        raise KeyError("players")

    coord = _coordinator(store, crashing, spawn, clock)
    coord.search("alice")
    spawn.run_all()

    user = store.get_user("alice")
    assert user.fetching is False
    assert user.last_error


def test_success_clears_previous_error(store: PuzzleStore) -> None:
    spawn, clock = _Deferred(), _Clock()
    outcomes = [ProviderError("down"), [_game()]]

    def flaky(_: str) -> list[GameRecord]:
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    coord = _coordinator(store, flaky, spawn, clock, ttl=0)
    coord.search("alice")
    spawn.run_all()
    coord.search("alice")
    spawn.run_all()
    assert store.get_user("alice").last_error is None


def test_inline_spawn_runs_to_completion(store: PuzzleStore) -> None:
    coord = _coordinator(store, lambda u: [_game()], lambda fn: fn(), _Clock())
    assert coord.search("bob").status == FETCHING
    result = coord.search("bob")
    assert result.status == READY
    assert [p.id for p in result.puzzles] == ["g1_6"]


def test_opponent_search_after_shared_game_was_processed(store: PuzzleStore) -> None:
    inline = lambda fn: fn()  # noqa: E731
    coord = _coordinator(store, lambda u: [_game()], inline, _Clock())
    coord.search("alice")
    coord.search("bob")  # starts bob's fetch; the game is already known

    assert [p.id for p in coord.current("alice").puzzles] == ["g1_3"]
    assert [p.id for p in coord.current("bob").puzzles] == ["g1_6"]


def test_current_honours_all_misses_setting(store: PuzzleStore) -> None:
    coord = FetchCoordinator(
        store, ChessRules(), Settings(own_misses_only=False),
        fetch_games=lambda u: [_game()], spawn=lambda fn: fn(), clock=_Clock(),
    )
    coord.search("bob")
    result = coord.current("Bob")
    assert result.status == READY
    assert result.total == 2


def test_current_does_not_start_a_fetch(store: PuzzleStore) -> None:
    spawn = _Deferred()
    coord = _coordinator(store, lambda u: [_game()], spawn, _Clock())
    store.ensure_user("alice")
    assert coord.current("alice").status == READY
    assert spawn.tasks == []


def test_real_thread_spawn(store: PuzzleStore) -> None:
    import threading

    done = threading.Event()

    def fetch(_: str) -> list[GameRecord]:
        return [_game()]

    coord = FetchCoordinator(store, ChessRules(), Settings(), fetch_games=fetch)
    original = coord.run_fetch

    def run_and_signal(user_id: str) -> None:
        original(user_id)
        done.set()

    coord.run_fetch = run_and_signal  # type: ignore[method-assign]
    assert coord.search("alice").status == FETCHING
    assert done.wait(timeout=10)
    assert store.get_user("alice").fetching is False
