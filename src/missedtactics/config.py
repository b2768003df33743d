"""Runtime settings read from the environment.

Every value has a default, so an empty environment yields a working local
setup backed by ``data/puzzles.sqlite``.  Malformed values raise
:class:`~missedtactics.errors.ConfigurationError` at start-up.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .detector import BLUNDER_THRESHOLD, WINNING_THRESHOLD
from .errors import ConfigurationError

DEFAULT_DB = Path("data/puzzles.sqlite")
DEFAULT_SPEEDS = ("blitz", "rapid", "classical", "correspondence")
MAX_GAMES_PER_FETCH = 100


@dataclass(frozen=True)
class Settings:
    db_path: Path = DEFAULT_DB
    database_url: str | None = None      # postgresql://... overrides db_path
    fetch_ttl: int = 3600                 # seconds a completed fetch stays fresh
    fetch_timeout: int = 60               # provider request timeout, seconds
    games_per_fetch: int = 25
    speeds: tuple[str, ...] = DEFAULT_SPEEDS
    blunder_threshold: int = BLUNDER_THRESHOLD
    winning_threshold: int = WINNING_THRESHOLD
    own_misses_only: bool = True          # list only positions where the user is to move
    lichess_token: str | None = None

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None, env_file: Path | None = Path(".env")) -> "Settings":
        """Build settings from *env* (default ``os.environ``).

        Keys from *env_file* fill in whatever the environment leaves unset.
        """
        values = dict(os.environ if env is None else env)
        if env_file is not None and env_file.exists():
            for key, val in _read_env_file(env_file).items():
                values.setdefault(key, val)

        database_url = values.get("DATABASE_URL") or None
        if database_url and not database_url.startswith(("postgres://", "postgresql://")):
            raise ConfigurationError(
                f"DATABASE_URL must be a postgresql:// URL, got {database_url!r}"
            )

        games = _int(values, "MISSEDTACTICS_GAMES_PER_FETCH", 25, minimum=1)
        speeds = tuple(
            s.strip().lower()
            for s in values.get("MISSEDTACTICS_SPEEDS", ",".join(DEFAULT_SPEEDS)).split(",")
            if s.strip()
        )
        if not speeds:
            raise ConfigurationError("MISSEDTACTICS_SPEEDS must name at least one speed")

        return cls(
            db_path=Path(values.get("MISSEDTACTICS_DB", str(DEFAULT_DB))),
            database_url=database_url,
            fetch_ttl=_int(values, "MISSEDTACTICS_FETCH_TTL", 3600, minimum=0),
            fetch_timeout=_int(values, "MISSEDTACTICS_FETCH_TIMEOUT", 60, minimum=1),
            games_per_fetch=min(games, MAX_GAMES_PER_FETCH),
            speeds=speeds,
            blunder_threshold=_int(values, "MISSEDTACTICS_BLUNDER_THRESHOLD", BLUNDER_THRESHOLD, minimum=1),
            winning_threshold=_int(values, "MISSEDTACTICS_WINNING_THRESHOLD", WINNING_THRESHOLD, minimum=1),
            own_misses_only=_bool(values, "MISSEDTACTICS_OWN_MISSES_ONLY", True),
            lichess_token=values.get("LICHESS_TOKEN") or None,
        )


def _int(values: dict[str, str], key: str, default: int, minimum: int) -> int:
    raw = values.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{key}={raw!r} is not an integer") from None
    if value < minimum:
        raise ConfigurationError(f"{key}={value} must be >= {minimum}")
    return value


def _bool(values: dict[str, str], key: str, default: bool) -> bool:
    raw = values.get(key, "").strip().lower()
    if raw == "":
        return default
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"{key}={raw!r} is not a boolean")


def _read_env_file(path: Path) -> dict[str, str]:
    out: dict[str, str] = {}
    for line in path.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            k, v = line.split("=", 1)
            out[k.strip()] = v.strip()
    return out


def open_store(settings: Settings):
    """Return the store backend selected by *settings*."""
    if settings.database_url:
        from .pg_store import PgPuzzleStore

        return PgPuzzleStore(settings.database_url)
    from .store import PuzzleStore

    return PuzzleStore(settings.db_path)
