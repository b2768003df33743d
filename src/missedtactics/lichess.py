"""Download a player's recent analysed games from Lichess.

The games endpoint is asked for the moves and the server-side computer
analysis of each game::

    GET /api/user/{username}/games?nb=25&page=1&with_analysis=1&with_moves=1

and answers with a page object whose ``currentPageResults`` list holds one
JSON object per game.  Each game is converted into a
:class:`~missedtactics.models.GameRecord`; evaluations are normalised with
:func:`~missedtactics.evals.normalize_eval` on the way in.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable
from urllib.parse import quote

import requests

from .errors import ProviderError
from .evals import normalize_series
from .models import GameRecord
from .replay import split_moves

logger = logging.getLogger(__name__)

_LICHESS_GAMES_URL = "https://lichess.org/api/user/{username}/games"
_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "missedtactics/0.1.0",
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def fetch_recent_games(
    username: str,
    nb: int = 25,
    timeout: float = 60,
    token: str | None = None,
) -> list[GameRecord]:
    """Return the *nb* most recent games of *username*.

    Raises :class:`ProviderError` on network failure, timeout, a non-2xx
    status or a payload that is not the expected page object.
    """
    session = requests.Session()
    session.headers.update(_HEADERS)
    if token:
        session.headers["Authorization"] = f"Bearer {token}"

    params = {"nb": nb, "page": 1, "with_analysis": 1, "with_moves": 1}
    url = _LICHESS_GAMES_URL.format(username=quote(username.strip(), safe=""))
    try:
        resp = session.get(url, params=params, timeout=timeout)
        if resp.status_code == 404:
            raise ProviderError(
                f"Lichess user '{username}' not found. "
                "Make sure you typed the username correctly."
            )
        resp.raise_for_status()
        payload = resp.json()
    except requests.Timeout as exc:
        raise ProviderError(f"Lichess timed out after {timeout}s for {username}") from exc
    except requests.RequestException as exc:
        raise ProviderError(f"Failed to download games for {username}: {exc}") from exc
    except ValueError as exc:
        raise ProviderError(f"Lichess returned invalid JSON for {username}") from exc
    finally:
        session.close()

    if not isinstance(payload, dict) or not isinstance(payload.get("currentPageResults"), list):
        raise ProviderError(f"Unexpected Lichess response for {username}")

    games = parse_games(payload["currentPageResults"])
    logger.info("fetched %d games for %s", len(games), username)
    return games


def parse_games(raw_games: Iterable[dict[str, Any]]) -> list[GameRecord]:
    """Convert provider game objects, dropping (and logging) malformed ones."""
    games: list[GameRecord] = []
    for raw in raw_games:
        if not isinstance(raw, dict):
            logger.warning("skipping malformed game entry of type %s", type(raw).__name__)
            continue
        try:
            games.append(parse_game(raw))
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("skipping malformed game %s: %s", raw.get("id", "?"), exc)
    return games


def parse_game(raw: dict[str, Any]) -> GameRecord:
    analysis = raw.get("analysis")
    players = raw.get("players") or {}
    return GameRecord(
        id=raw["id"],
        created_at=datetime.fromtimestamp(int(raw.get("createdAt", 0)) / 1000, tz=timezone.utc),
        speed=str(raw.get("speed", "")).lower(),
        white_id=_player_id(players.get("white")),
        black_id=_player_id(players.get("black")),
        moves=split_moves(raw.get("moves", "")),
        evals=tuple(normalize_series(analysis)) if analysis is not None else None,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _player_id(player: dict[str, Any] | None) -> str | None:
    """Lichess has used both ``{"userId": ..}`` and ``{"user": {"id": ..}}``."""
    if not player:
        return None
    if player.get("userId"):
        return str(player["userId"]).lower()
    user = player.get("user")
    if isinstance(user, dict) and user.get("id"):
        return str(user["id"]).lower()
    return None  # anonymous or AI opponent
