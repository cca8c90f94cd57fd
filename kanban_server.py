#!/usr/bin/env python3
"""
Team Task Board Server
----------------------
JSON API for the Kanban board plus a websocket channel that tells every
connected client when tasks or comments change.

Usage:
    python kanban_server.py --config taskboard.yaml
    python kanban_server.py --seed-admin alice     # create an approved admin

Access:
    http://localhost:3000/api/...   (X-User-Id header identifies the caller)
    ws://localhost:3000/ws          (?userId=... for browsers)

API:
    GET    /api/tasks?projectId&assigneeId&status   → [task]
    GET    /api/tasks/<id>                          → task | 404
    POST   /api/tasks                               → 201 task      (task_created)
    PATCH  /api/tasks/<id>                          → task | 404    (task_updated)
    DELETE /api/tasks/<id>                          → 204           (task_deleted)
    GET    /api/tasks/<id>/comments                 → [comment]
    POST   /api/tasks/<id>/comments                 → 201 comment   (comment_created)
    DELETE /api/comments/<id>                       → 204
    GET/POST /api/projects, GET/PATCH/DELETE /api/projects/<id>
    GET    /api/users, /api/auth/user, /api/leaderboard
    GET    /health

Dependencies: flask, flask-sock, pyyaml
"""

import logging
import sys
from functools import wraps

from flask import Flask, g, jsonify, request
from flask_sock import Sock
from werkzeug.exceptions import HTTPException

from pkg.taskboard.auth import API_KEY_HEADER, USER_HEADER, authenticate
from pkg.taskboard.config import Config
from pkg.taskboard.errors import BoardError, InternalError, InvalidInput
from pkg.taskboard.events import EventHub
from pkg.taskboard.mutations import BoardService
from pkg.taskboard.schema import User
from pkg.taskboard.store import TaskStore
from pkg.taskboard.validation import MAX_INT

logger = logging.getLogger("kanban_server")


def _listing(items) -> list:
    return [item.to_dict() for item in items]


def create_app(config: Config = None, store: TaskStore = None, hub: EventHub = None) -> Flask:
    """
    Build the Flask app. The store and the event hub are owned by the
    caller when passed in, otherwise created from config.
    """
    config = config or Config.load()
    store = store or TaskStore(config.db_path)
    hub = hub or EventHub()
    service = BoardService(store, hub, config)

    app = Flask(__name__)
    app.extensions["taskboard"] = service
    sock = Sock(app)

    # ── Auth ─────────────────────────────────────────────────────────────

    def require_user(f):
        """Decorator: resolve the caller or fail with 401/403."""
        @wraps(f)
        def decorated(*args, **kwargs):
            g.identity = authenticate(store, request.headers, config.api_secret)
            return f(*args, **kwargs)
        return decorated

    # ── Errors ───────────────────────────────────────────────────────────

    @app.errorhandler(BoardError)
    def handle_board_error(e: BoardError):
        return jsonify(e.to_dict()), e.status

    @app.errorhandler(HTTPException)
    def handle_http_error(e: HTTPException):
        return jsonify({"error": e.name.lower().replace(" ", "_"), "message": e.description}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        app.logger.exception(f"Unhandled error on {request.method} {request.path}")
        return jsonify(InternalError("Internal server error").to_dict()), 500

    def body():
        return request.get_json(force=True, silent=True)

    # ── Tasks ────────────────────────────────────────────────────────────

    @app.route("/api/tasks", methods=["GET"])
    @require_user
    def api_tasks():
        return jsonify(service.list_tasks(request.args.to_dict()))

    @app.route("/api/tasks/<int:task_id>", methods=["GET"])
    @require_user
    def api_task(task_id):
        return jsonify(service.get_task(task_id).to_dict())

    @app.route("/api/tasks", methods=["POST"])
    @require_user
    def api_create_task():
        task = service.create_task(g.identity, body())
        return jsonify(task.to_dict()), 201

    @app.route("/api/tasks/<int:task_id>", methods=["PATCH"])
    @require_user
    def api_update_task(task_id):
        return jsonify(service.update_task(task_id, body()).to_dict())

    @app.route("/api/tasks/<int:task_id>", methods=["DELETE"])
    @require_user
    def api_delete_task(task_id):
        service.delete_task(task_id)
        return "", 204

    # ── Comments ─────────────────────────────────────────────────────────

    @app.route("/api/tasks/<int:task_id>/comments", methods=["GET"])
    @require_user
    def api_task_comments(task_id):
        return jsonify(service.list_comments(task_id))

    @app.route("/api/comments", methods=["GET"])
    @require_user
    def api_comments():
        task_id = request.args.get("taskId", "")
        if not task_id.isdigit() or int(task_id) > MAX_INT:
            raise InvalidInput("taskId is required")
        return jsonify(service.list_comments(int(task_id)))

    @app.route("/api/tasks/<int:task_id>/comments", methods=["POST"])
    @require_user
    def api_create_comment(task_id):
        comment = service.add_comment(g.identity, task_id, body())
        return jsonify(comment.to_dict()), 201

    @app.route("/api/comments/<int:comment_id>", methods=["DELETE"])
    @require_user
    def api_delete_comment(comment_id):
        service.delete_comment(comment_id)
        return "", 204

    # ── Projects ─────────────────────────────────────────────────────────

    @app.route("/api/projects", methods=["GET"])
    @require_user
    def api_projects():
        return jsonify(_listing(service.list_projects(g.identity)))

    @app.route("/api/projects/<int:project_id>", methods=["GET"])
    @require_user
    def api_project(project_id):
        return jsonify(service.get_project(project_id).to_dict())

    @app.route("/api/projects", methods=["POST"])
    @require_user
    def api_create_project():
        return jsonify(service.create_project(g.identity, body()).to_dict()), 201

    @app.route("/api/projects/<int:project_id>", methods=["PATCH"])
    @require_user
    def api_update_project(project_id):
        return jsonify(service.update_project(g.identity, project_id, body()).to_dict())

    @app.route("/api/projects/<int:project_id>", methods=["DELETE"])
    @require_user
    def api_delete_project(project_id):
        service.delete_project(g.identity, project_id)
        return "", 204

    # ── Users ────────────────────────────────────────────────────────────

    @app.route("/api/auth/user")
    @require_user
    def api_current_user():
        return jsonify(service.get_user(g.identity.id).to_dict())

    @app.route("/api/users")
    @require_user
    def api_users():
        return jsonify(_listing(service.list_users()))

    @app.route("/api/leaderboard")
    @require_user
    def api_leaderboard():
        return jsonify(_listing(service.leaderboard()))

    @app.route("/health")
    def health():
        return jsonify({
            "status": "ok",
            "db": store.db_path,
            "clients": hub.connection_count(),
        })

    # ── Broadcast channel ────────────────────────────────────────────────

    @sock.route("/ws")
    def ws_channel(ws):
        # Browsers cannot set headers on a websocket handshake
        headers = {
            USER_HEADER: request.headers.get(USER_HEADER) or request.args.get("userId", ""),
            API_KEY_HEADER: request.headers.get(API_KEY_HEADER) or request.args.get("apiKey", ""),
        }
        try:
            authenticate(store, headers, config.api_secret)
        except BoardError as e:
            logger.info(f"Rejected websocket connection: {e.message}")
            ws.close(reason=1008, message=e.message)
            return
        hub.serve(ws)

    return app


def seed_admin(store: TaskStore, user_id: str) -> User:
    """Create (or promote) an approved admin account."""
    existing = store.get_user(user_id)
    user = existing or User(id=user_id, first_name=user_id)
    user.is_admin = True
    user.is_approved = True
    return store.upsert_user(user)


# ── Main ─────────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Team Task Board Server")
    parser.add_argument("--config", help="Path to taskboard.yaml (overrides TASKBOARD_CONFIG)")
    parser.add_argument("--host", help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int)
    parser.add_argument("--db", help="Path to the SQLite database (overrides TASKBOARD_DB)")
    parser.add_argument("--seed-admin", metavar="USER_ID",
                        help="Create an approved admin user and exit")
    args = parser.parse_args()

    config = Config.load(args.config)
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.db:
        config.db_path = args.db

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [taskboard] %(levelname)s %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    store = TaskStore(config.db_path)
    if args.seed_admin:
        admin = seed_admin(store, args.seed_admin)
        print(f"Admin user ready: {admin.id}")
        sys.exit(0)

    hub = EventHub()
    app = create_app(config, store=store, hub=hub)

    print(f"""
╔═══════════════════════════════════════╗
║  Team Task Board Server               ║
╠═══════════════════════════════════════╣
║  URL:  http://{config.host}:{config.port:<20}║
║  DB:   {config.db_path:<31}║
║  Move: {config.position_mode:<31}║
╚═══════════════════════════════════════╝
""")

    try:
        app.run(host=config.host, port=config.port, debug=False, threaded=True)
    finally:
        hub.close()
