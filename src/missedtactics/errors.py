"""Exception types shared across the pipeline."""

from __future__ import annotations


class ProviderError(RuntimeError):
    """The game provider could not be reached or returned an unusable reply."""


class ReplayError(ValueError):
    """A move token could not be parsed or applied while replaying a game."""

    def __init__(self, game_id: str | None, ply: int, token: str, reason: str) -> None:
        self.game_id = game_id
        self.ply = ply
        self.token = token
        where = f"game {game_id} " if game_id else ""
        super().__init__(f"{where}ply {ply}: cannot play {token!r} ({reason})")


class ConfigurationError(RuntimeError):
    """Invalid or missing settings detected at start-up."""
