"""Command-line entry-point for missedtactics.

Usage
-----
  missedtactics fetch   --username <U>           (fetch + synthesize now)
  missedtactics analyze games.json               (synthesize a saved export)
  missedtactics list    --username <U>           (print stored puzzles)
  missedtactics serve   --port 7000              (JSON API)

Settings come from the environment (see ``missedtactics.config``); ``--db``
overrides the SQLite path.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import sys
from pathlib import Path

import click

from .config import Settings, open_store
from .coordinator import FETCHING, FetchCoordinator
from .errors import ConfigurationError
from .lichess import parse_games
from .replay import ChessRules
from .synthesizer import SynthesisPolicy, synthesize

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=_LOG_FORMAT,
        stream=sys.stderr,
    )


def _load_settings(db: Path | None) -> Settings:
    try:
        settings = Settings.from_env()
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc
    if db is not None:
        settings = dataclasses.replace(settings, db_path=db, database_url=None)
    return settings


def _print_puzzles(puzzles, total: int) -> None:
    for p in puzzles:
        click.echo(f"{p.id:<16} {p.move_display:<16} {p.orientation:<6} {p.fen}")
        click.echo(f"{'':<16} {p.url}  votes={p.votes}")
    click.echo(f"[list] {len(puzzles)} of {total} puzzles shown.")


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Debug logging.")
def main(verbose: bool) -> None:
    """missedtactics – puzzles from the tactics you missed in your own games.

    \b
    Commands:
      fetch    Download recent analysed games and build puzzles.
      analyze  Build puzzles from a saved Lichess games JSON file.
      list     Show stored puzzles for a user.
      serve    Run the JSON API.
    """
    configure_logging(verbose)


# ---------------------------------------------------------------------------
# fetch
# ---------------------------------------------------------------------------


@main.command("fetch")
@click.option("--username", required=True, help="Lichess username.")
@click.option("--db", type=click.Path(path_type=Path), default=None, help="SQLite database path.")
@click.option("--limit", default=10, show_default=True, help="Puzzles to print afterwards.")
def fetch_cmd(username: str, db: Path | None, limit: int) -> None:
    """Fetch and synthesize in the foreground, then list the user's puzzles."""
    settings = _load_settings(db)
    with open_store(settings) as store:
        coordinator = FetchCoordinator(store, ChessRules(), settings, spawn=lambda fn: fn())
        click.echo(f"[fetch] Checking {username} …")
        result = coordinator.search(username, limit=limit)
        if result.status == FETCHING:
            # The inline spawn has already run the fetch unless another
            # process holds the gate; read back what is stored.
            result = coordinator.current(username, limit=limit)
        if result.status == FETCHING:
            raise click.ClickException(f"A fetch for {username} is already running.")
        if result.error:
            click.echo(f"[fetch] Error: {result.error}", err=True)
        _print_puzzles(result.puzzles, result.total)


# ---------------------------------------------------------------------------
# analyze
# ---------------------------------------------------------------------------


@main.command("analyze")
@click.argument("games_json", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--db", type=click.Path(path_type=Path), default=None, help="SQLite database path.")
def analyze_cmd(games_json: Path, db: Path | None) -> None:
    """Synthesize puzzles from GAMES_JSON (a page object or a list of games)."""
    settings = _load_settings(db)
    try:
        payload = json.loads(games_json.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"{games_json} is not valid JSON: {exc}") from exc
    raw_games = payload.get("currentPageResults", []) if isinstance(payload, dict) else payload
    games = parse_games(raw_games)

    policy = SynthesisPolicy(
        blunder_threshold=settings.blunder_threshold,
        winning_threshold=settings.winning_threshold,
        speeds=settings.speeds,
    )
    click.echo(f"[analyze] {len(games)} games read from {games_json.name} …")
    with open_store(settings) as store:
        report = synthesize(games, store, ChessRules(), policy)
    click.echo(f"[analyze] Done. {report.summary()}.")
    if report.failed_game_ids:
        click.echo(f"[analyze] Failed games: {', '.join(report.failed_game_ids)}", err=True)


# ---------------------------------------------------------------------------
# list
# ---------------------------------------------------------------------------


@main.command("list")
@click.option("--username", required=True, help="Lichess username.")
@click.option("--limit", default=10, show_default=True)
@click.option("--offset", default=0, show_default=True)
@click.option("--own-misses-only/--all-misses", default=None,
              help="Only positions where USERNAME is to move (default from settings).")
@click.option("--db", type=click.Path(path_type=Path), default=None, help="SQLite database path.")
def list_cmd(username: str, limit: int, offset: int, own_misses_only: bool | None, db: Path | None) -> None:
    """Print stored puzzles from USERNAME's games."""
    settings = _load_settings(db)
    own_only = settings.own_misses_only if own_misses_only is None else own_misses_only
    user_id = username.strip().lower()
    with open_store(settings) as store:
        puzzles = store.list_by_user(user_id, limit=limit, offset=offset, own_only=own_only)
        total = store.count_by_user(user_id, own_only=own_only)
    _print_puzzles(puzzles, total)


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@main.command("serve")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=7000, show_default=True)
@click.option("--db", type=click.Path(path_type=Path), default=None, help="SQLite database path.")
def serve_cmd(host: str, port: int, db: Path | None) -> None:
    """Run the JSON API with Flask's development server."""
    from .web import create_app

    app = create_app(_load_settings(db))
    app.run(host=host, port=port, threaded=True)
