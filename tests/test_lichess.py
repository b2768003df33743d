"""Tests for the Lichess games download and parsing."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from missedtactics.errors import ProviderError
from missedtactics.evals import MATE_SCORE
from missedtactics.lichess import fetch_recent_games, parse_game, parse_games


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _raw_game(**overrides) -> dict:
    raw = {
        "id": "AbCd1234",
        "speed": "blitz",
        "moves": "e4 e5 Nf3 Nc6",
        "createdAt": 1709294400000,
        "players": {
            "white": {"userId": "alice"},
            "black": {"user": {"id": "Bob"}},
        },
        "analysis": [{"eval": 20}, {"eval": 30}, {"mate": -3}, {"eval": -50}],
    }
    raw.update(overrides)
    return raw


def _mock_session(resp: MagicMock | None = None, exc: Exception | None = None) -> MagicMock:
    session = MagicMock()
    session.headers = {}
    if exc is not None:
        session.get.side_effect = exc
    else:
        session.get.return_value = resp
    return session


def _ok(payload) -> MagicMock:
    resp = MagicMock()
    resp.status_code = 200
    resp.json.return_value = payload
    resp.raise_for_status = MagicMock()
    return resp


# ---------------------------------------------------------------------------
# parse_game
# ---------------------------------------------------------------------------


def test_parse_game_fields() -> None:
    game = parse_game(_raw_game())
    assert game.id == "AbCd1234"
    assert game.speed == "blitz"
    assert game.moves == ("e4", "e5", "Nf3", "Nc6")
    assert game.white_id == "alice"
    assert game.black_id == "bob"
    assert game.created_at == datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert game.evals == (20, 30, -MATE_SCORE, -50)


def test_parse_game_without_analysis() -> None:
    game = parse_game(_raw_game(analysis=None))
    assert game.evals is None
    assert game.analysed is False


def test_parse_game_anonymous_player() -> None:
    game = parse_game(_raw_game(players={"white": {"aiLevel": 3}, "black": {"userId": "bob"}}))
    assert game.white_id is None
    assert game.black_id == "bob"


def test_parse_games_skips_non_object_entries() -> None:
    games = parse_games([None, "AbCd1234", 42, _raw_game()])
    assert [g.id for g in games] == ["AbCd1234"]


def test_parse_games_drops_malformed_entries() -> None:
    games = parse_games([_raw_game(), {"speed": "blitz"}, _raw_game(id="x2")])
    assert [g.id for g in games] == ["AbCd1234", "x2"]


# ---------------------------------------------------------------------------
# fetch_recent_games (mocked HTTP)
# ---------------------------------------------------------------------------


def test_fetch_recent_games_parses_page() -> None:
    session = _mock_session(_ok({"currentPageResults": [_raw_game()]}))
    with patch("missedtactics.lichess.requests.Session", return_value=session):
        games = fetch_recent_games("Alice", nb=10, timeout=5)

    assert [g.id for g in games] == ["AbCd1234"]
    url = session.get.call_args.args[0]
    assert url == "https://lichess.org/api/user/Alice/games"
    kwargs = session.get.call_args.kwargs
    assert kwargs["params"]["nb"] == 10
    assert kwargs["params"]["with_analysis"] == 1
    assert kwargs["timeout"] == 5
    session.close.assert_called_once()


def test_fetch_sends_token_when_given() -> None:
    session = _mock_session(_ok({"currentPageResults": []}))
    with patch("missedtactics.lichess.requests.Session", return_value=session):
        fetch_recent_games("alice", token="secret")
    assert session.headers["Authorization"] == "Bearer secret"


def test_fetch_unknown_user_raises() -> None:
    resp = MagicMock()
    resp.status_code = 404
    with patch("missedtactics.lichess.requests.Session", return_value=_mock_session(resp)):
        with pytest.raises(ProviderError, match="not found"):
            fetch_recent_games("ghost")


def test_fetch_timeout_raises_provider_error() -> None:
    session = _mock_session(exc=requests.Timeout("slow"))
    with patch("missedtactics.lichess.requests.Session", return_value=session):
        with pytest.raises(ProviderError, match="timed out"):
            fetch_recent_games("alice", timeout=3)
    session.close.assert_called_once()


def test_fetch_http_error_raises_provider_error() -> None:
    session = _mock_session(exc=requests.ConnectionError("refused"))
    with patch("missedtactics.lichess.requests.Session", return_value=session):
        with pytest.raises(ProviderError, match="Failed to download"):
            fetch_recent_games("alice")


def test_fetch_invalid_json_raises_provider_error() -> None:
    resp = _ok(None)
    resp.json.side_effect = ValueError("no json")
    with patch("missedtactics.lichess.requests.Session", return_value=_mock_session(resp)):
        with pytest.raises(ProviderError, match="invalid JSON"):
            fetch_recent_games("alice")


def test_fetch_unexpected_payload_raises_provider_error() -> None:
    with patch("missedtactics.lichess.requests.Session", return_value=_mock_session(_ok([1, 2]))):
        with pytest.raises(ProviderError, match="Unexpected"):
            fetch_recent_games("alice")
