"""Tests for the Flask JSON API."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from missedtactics.config import Settings
from missedtactics.coordinator import FetchCoordinator
from missedtactics.models import GameRecord
from missedtactics.replay import ChessRules, split_moves
from missedtactics.store import PuzzleStore
from missedtactics.web import create_app

_T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _game() -> GameRecord:
    return GameRecord(
        id="g1",
        created_at=_T0,
        speed="classical",
        white_id="alice",
        black_id="bob",
        moves=split_moves("e4 e5 Nf3 Nc6 Bc4 Bc5 O-O Nf6"),
        evals=(20, 30, 25, 400, 0, 10, -400, 200),
    )


@pytest.fixture
def store(tmp_path: Path):
    with PuzzleStore(tmp_path / "puzzles.sqlite") as s:
        yield s


@pytest.fixture
def client(store: PuzzleStore):
    settings = Settings(db_path=Path("unused"))
    coordinator = FetchCoordinator(
        store, ChessRules(), settings,
        fetch_games=lambda u: [_game()],
        spawn=lambda fn: fn(),
    )
    app = create_app(settings, store=store, coordinator=coordinator)
    return app.test_client()


def test_search_requires_query(client) -> None:
    assert client.get("/api/search").status_code == 400


def test_search_fetches_then_serves(client) -> None:
    first = client.get("/api/search?q=alice")
    assert first.status_code == 202
    assert first.get_json()["status"] == "fetching"

    second = client.get("/api/search?q=alice")
    body = second.get_json()
    assert second.status_code == 200
    assert body["status"] == "ready"
    assert body["total"] == 1
    puzzle = body["puzzles"][0]
    assert puzzle["id"] == "g1_3"
    assert puzzle["fenLink"] == puzzle["fen"].replace(" ", "_")
    assert puzzle["moveDisplay"] == "2. ... Nc6"


def test_get_puzzle(client) -> None:
    client.get("/api/search?q=alice")
    assert client.get("/api/puzzles/g1_6").get_json()["orientation"] == "black"
    assert client.get("/api/puzzles/zzz_1").status_code == 404
    assert len(client.get("/api/puzzles").get_json()) == 2


def test_vote_toggle(client) -> None:
    client.get("/api/search?q=alice")
    url = "/api/puzzles/g1_3/vote"
    assert client.post(url, json={"user": "carol", "direction": "up"}).get_json()["votes"] == 1
    assert client.post(url, json={"user": "carol", "direction": "down"}).get_json()["votes"] == -1
    assert client.post(url, json={"user": "carol", "direction": "up"}).get_json()["votes"] == 1


def test_vote_validation(client) -> None:
    assert client.post("/api/puzzles/g1_3/vote", json={"user": "carol"}).status_code == 400
    resp = client.post("/api/puzzles/none_1/vote", json={"user": "carol", "direction": "up"})
    assert resp.status_code == 404


@pytest.mark.parametrize("nb", ["-1", "-50", "0"])
def test_page_size_never_drops_below_one(client, nb: str) -> None:
    client.get("/api/search?q=alice")
    resp = client.get(f"/api/puzzles?nb={nb}")
    assert resp.status_code == 200
    assert 1 <= len(resp.get_json()) <= 2

    resp = client.get(f"/api/search?q=alice&nb={nb}")
    assert resp.status_code == 200
    assert len(resp.get_json()["puzzles"]) == 1
