"""Flask JSON API for searching and voting on missed-tactic puzzles."""

from __future__ import annotations

import logging

from flask import Flask, jsonify, request

from .config import Settings, open_store
from .coordinator import FetchCoordinator
from .replay import ChessRules

logger = logging.getLogger(__name__)

_MAX_PAGE = 100


def _page_size() -> int:
    nb = request.args.get("nb", 10, type=int) or 10
    return max(min(nb, _MAX_PAGE), 1)


def create_app(
    settings: Settings | None = None,
    store=None,
    coordinator: FetchCoordinator | None = None,
) -> Flask:
    settings = settings or Settings.from_env()
    store = store or open_store(settings)
    coordinator = coordinator or FetchCoordinator(store, ChessRules(), settings)

    app = Flask(__name__)
    app.config["STORE"] = store
    app.config["COORDINATOR"] = coordinator

    # -----------------------------------------------------------------------
    # Routes
    # -----------------------------------------------------------------------

    @app.get("/api/search")
    def api_search():
        q = (request.args.get("q") or "").strip()
        if not q:
            return jsonify({"error": "q is required"}), 400
        limit = _page_size()
        offset = max(request.args.get("offset", 0, type=int) or 0, 0)
        result = coordinator.search(q, limit=limit, offset=offset)
        status = 202 if result.status == "fetching" else 200
        return jsonify(result.to_dict()), status

    @app.get("/api/puzzles")
    def api_puzzles():
        limit = _page_size()
        return jsonify([p.to_dict() for p in store.list_recent(limit)])

    @app.get("/api/puzzles/<puzzle_id>")
    def api_puzzle(puzzle_id: str):
        puzzle = store.get_puzzle(puzzle_id)
        if puzzle is None:
            return jsonify({"error": "not found"}), 404
        return jsonify(puzzle.to_dict())

    @app.post("/api/puzzles/<puzzle_id>/vote")
    def api_vote(puzzle_id: str):
        params = request.get_json(force=True, silent=True) or {}
        user_id = str(params.get("user") or "").strip().lower()
        direction = params.get("direction")
        if not user_id or direction not in ("up", "down"):
            return jsonify({"error": "user and direction ('up' or 'down') are required"}), 400
        votes = store.record_vote(puzzle_id, user_id, direction == "up")
        if votes is None:
            return jsonify({"error": "not found"}), 404
        logger.debug("vote %s on %s by %s -> %d", direction, puzzle_id, user_id, votes)
        return jsonify({"id": puzzle_id, "votes": votes})

    return app
