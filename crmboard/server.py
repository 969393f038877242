#!/usr/bin/env python3
"""
crmboard API server
-------------------
JSON API over the contact/task query layer and the kanban board controller.

Usage:
    crmboard-server                 # reads ./crmboard.yaml or $CRMBOARD_CONFIG
    python -m crmboard.server

API:
    GET    /api/contacts                 ?search=&sort_by=&sort_order=
    POST   /api/contacts
    GET    /api/contacts/<id>
    PUT    /api/contacts/<id>
    DELETE /api/contacts/<id>
    POST   /api/contacts/<id>/attachments   multipart "files"
    DELETE /api/contacts/<id>/attachments   ?url=
    GET    /api/tasks                    ?search=&status=&priority=&assigned_to=
                                          &contact_id=&due_date_from=&due_date_to=
                                          &sort_by=&sort_order=
    POST   /api/tasks
    GET    /api/tasks/<id>
    PUT    /api/tasks/<id>
    DELETE /api/tasks/<id>
    POST   /api/tasks/<id>/toggle
    GET    /api/board
    POST   /api/board/layout             { threshold, targets: [{id, status, rect, task_id}] }
    POST   /api/board/events             { type, task_id, x, y, card }
    GET    /api/preferences/task-view
    POST   /api/preferences/task-view    { view: "list"|"kanban" }
    GET    /api/notifications

Write endpoints require an X-API-Key header matching $CRMBOARD_API_SECRET.
"""

import asyncio
import hmac
import logging
import threading
from functools import wraps
from typing import Optional

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from .attachments import UploadFile
from .board import (
    COLUMNS,
    BoardLayout,
    Cancel,
    DropTarget,
    Point,
    PointerDown,
    PointerMove,
    PointerUp,
    Rect,
    board_stats,
    group_by_status,
    highlighted_column,
)
from .config import CRMConfig, Services, build_services, setup_logging
from .query import MutationResult, QueryResult
from .schema import ContactFilters, TaskFilters, TaskStatus, to_iso

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "ValidationFailed": 400,
    "NotFound": 404,
    "RemoteOperationFailed": 502,
    "UploadFailed": 502,
    "DeleteAttachmentFailed": 502,
}


class LoopThread:
    """
    One event loop on a daemon thread, shared by every request.

    Flask handles requests on worker threads; the query cache and board
    controller hold asyncio state, so all of their coroutines run here.
    """

    def __init__(self, name: str = "crmboard-loop"):
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._serve, name=name, daemon=True)
        self._thread.start()

    def _serve(self):
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def run(self, coro, timeout: Optional[float] = None):
        """Run a coroutine on the loop and block until it finishes."""
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout)

    def stop(self):
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=5)


def _error_response(error, payload=None):
    body = {"error": error.message, **error.to_dict()}
    if payload is not None:
        # Echo the submitted data so the client can keep its form open
        body["input"] = payload
    return jsonify(body), ERROR_STATUS.get(error.kind, 500)


def _read_result(result: QueryResult, serialize):
    if result.status == "idle":
        return jsonify({"error": "id is required"}), 400
    if not result.ok:
        return _error_response(result.error)
    return jsonify(serialize(result.data))


def _mutation_result(result: MutationResult, serialize, payload=None, status: int = 200):
    if not result.ok:
        return _error_response(result.error, payload)
    return jsonify(serialize(result.data)), status


def _contact_filters(args) -> ContactFilters:
    return ContactFilters(
        search=args.get("search"),
        sort_by=args.get("sort_by"),
        sort_order=args.get("sort_order"),
    )


def _filter_date(args, name: str):
    value = (args.get(name) or "").strip()
    if not value:
        return None
    try:
        return to_iso(value)
    except ValueError:
        raise ValueError(f"Invalid {name}: {value}") from None


def _task_filters(args) -> TaskFilters:
    return TaskFilters(
        search=args.get("search"),
        status=args.get("status"),
        priority=args.get("priority"),
        assigned_to=args.get("assigned_to"),
        contact_id=args.get("contact_id"),
        due_date_from=_filter_date(args, "due_date_from"),
        due_date_to=_filter_date(args, "due_date_to"),
        sort_by=args.get("sort_by"),
        sort_order=args.get("sort_order"),
    )


def _board_event(data: dict):
    kind = (data.get("type") or "").strip().lower()
    point = None
    if "x" in data and "y" in data:
        point = Point(float(data["x"]), float(data["y"]))
    if kind == "pointer_down":
        if not data.get("task_id") or point is None or not data.get("card"):
            raise ValueError("pointer_down requires task_id, x, y and card")
        return PointerDown(data["task_id"], point, Rect.from_dict(data["card"]))
    if kind == "pointer_move":
        if point is None:
            raise ValueError("pointer_move requires x and y")
        return PointerMove(point)
    if kind == "pointer_up":
        return PointerUp(point)
    if kind == "cancel":
        return Cancel(data.get("reason", ""))
    raise ValueError(f"Unknown board event: {kind or '(missing)'}")


def create_app(services: Services, loop_thread: Optional[LoopThread] = None) -> Flask:
    app = Flask(__name__)
    app.config["SERVICES"] = services
    runner = loop_thread or LoopThread()
    app.extensions["crmboard_loop"] = runner
    run = runner.run
    contacts = services.contacts
    tasks = services.tasks
    board = services.board

    def require_api_key(f):
        """Decorator: reject requests without a valid X-API-Key header."""
        @wraps(f)
        def decorated(*args, **kwargs):
            secret = services.config.api_secret
            if not secret:
                return jsonify({"error": "API secret not set"}), 503
            provided = request.headers.get("X-API-Key", "").strip()
            if not hmac.compare_digest(provided, secret):
                code = 401 if not provided else 403
                return jsonify({"error": "Unauthorized"}), code
            return f(*args, **kwargs)
        return decorated

    def contact_json(contact):
        return {"contact": contact.to_dict()}

    def task_json(task):
        data = task.to_dict()
        data["overdue"] = task.is_overdue()
        return {"task": data}

    # ── Contacts ─────────────────────────────────────────────────────────────

    @app.route("/api/contacts", methods=["GET"])
    def api_contacts():
        result = run(contacts.list(_contact_filters(request.args)))
        return _read_result(result, lambda items: {
            "contacts": [c.to_dict() for c in items],
            "count": len(items),
        })

    @app.route("/api/contacts", methods=["POST"])
    @require_api_key
    def api_create_contact():
        data = request.get_json(force=True, silent=True) or {}
        result = run(contacts.create(data))
        return _mutation_result(result, contact_json, payload=data, status=201)

    @app.route("/api/contacts/<contact_id>", methods=["GET"])
    def api_contact(contact_id):
        return _read_result(run(contacts.get(contact_id)), contact_json)

    @app.route("/api/contacts/<contact_id>", methods=["PUT"])
    @require_api_key
    def api_update_contact(contact_id):
        data = request.get_json(force=True, silent=True) or {}
        result = run(contacts.update(contact_id, data))
        return _mutation_result(result, contact_json, payload=data)

    @app.route("/api/contacts/<contact_id>", methods=["DELETE"])
    @require_api_key
    def api_delete_contact(contact_id):
        result = run(contacts.delete(contact_id))
        return _mutation_result(result, lambda _: {"deleted": contact_id})

    @app.route("/api/contacts/<contact_id>/attachments", methods=["POST"])
    @require_api_key
    def api_upload_attachments(contact_id):
        found = run(contacts.get(contact_id))
        if not found.ok:
            return _error_response(found.error)
        files = [
            UploadFile(name=f.filename or "file", data=f.read(), content_type=f.mimetype or "")
            for f in request.files.getlist("files")
        ]
        if not files:
            return jsonify({"error": "no files provided"}), 400
        batch, mutation = run(services.attachments.attach(found.data, files))
        body = {
            "uploaded": [a.to_dict() for a in batch.attachments],
            "failed": [{"name": f.file_name, "error": f.message} for f in batch.failures],
        }
        if mutation is not None and not mutation.ok:
            return _error_response(mutation.error, body)
        if mutation is not None:
            body.update(contact_json(mutation.data))
        return jsonify(body), 201 if batch.attachments else 422

    @app.route("/api/contacts/<contact_id>/attachments", methods=["DELETE"])
    @require_api_key
    def api_delete_attachment(contact_id):
        url = request.args.get("url", "").strip()
        if not url:
            return jsonify({"error": "url is required"}), 400
        found = run(contacts.get(contact_id))
        if not found.ok:
            return _error_response(found.error)
        result = run(services.attachments.detach(found.data, url))
        return _mutation_result(result, contact_json)

    # ── Tasks ────────────────────────────────────────────────────────────────

    @app.route("/api/tasks", methods=["GET"])
    def api_tasks():
        try:
            filters = _task_filters(request.args)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        result = run(tasks.list(filters))

        def serialize(items):
            return {
                "tasks": [task_json(t)["task"] for t in items],
                "count": len(items),
            }
        return _read_result(result, serialize)

    @app.route("/api/tasks", methods=["POST"])
    @require_api_key
    def api_create_task():
        data = request.get_json(force=True, silent=True) or {}
        result = run(tasks.create(data))
        return _mutation_result(result, task_json, payload=data, status=201)

    @app.route("/api/tasks/<task_id>", methods=["GET"])
    def api_task(task_id):
        return _read_result(run(tasks.get(task_id)), task_json)

    @app.route("/api/tasks/<task_id>", methods=["PUT"])
    @require_api_key
    def api_update_task(task_id):
        data = request.get_json(force=True, silent=True) or {}
        result = run(tasks.update(task_id, data))
        return _mutation_result(result, task_json, payload=data)

    @app.route("/api/tasks/<task_id>", methods=["DELETE"])
    @require_api_key
    def api_delete_task(task_id):
        result = run(tasks.delete(task_id))
        return _mutation_result(result, lambda _: {"deleted": task_id})

    @app.route("/api/tasks/<task_id>/toggle", methods=["POST"])
    @require_api_key
    def api_toggle_task(task_id):
        found = run(tasks.get(task_id))
        if not found.ok:
            return _error_response(found.error)
        return _mutation_result(run(tasks.toggle_complete(found.data)), task_json)

    # ── Board ────────────────────────────────────────────────────────────────

    def board_state():
        state = board.state
        highlighted = highlighted_column(state)
        return {
            "state": type(state).__name__.lower(),
            "overlay_task_id": board.overlay_task_id,
            "highlighted_column": highlighted.value if highlighted else None,
            "editing_task_id": board.editing_task_id,
        }

    async def load_board(filters):
        result = await tasks.list(filters)
        if result.ok:
            board.load(result.data)
        return result

    @app.route("/api/board")
    def api_board():
        try:
            filters = _task_filters(request.args)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        result = run(load_board(filters))
        if not result.ok:
            return _error_response(result.error)
        grouped = group_by_status(result.data)
        return jsonify({
            "columns": [
                {
                    "status": status.value,
                    "label": label,
                    "tasks": [task_json(t)["task"] for t in grouped[status]],
                }
                for status, label in COLUMNS
            ],
            "stats": board_stats(result.data),
            "view": services.preferences.get_task_view(),
            **board_state(),
        })

    @app.route("/api/board/layout", methods=["POST"])
    @require_api_key
    def api_board_layout():
        data = request.get_json(force=True, silent=True) or {}
        try:
            targets = tuple(
                DropTarget(
                    id=str(t["id"]),
                    status=TaskStatus(t["status"]),
                    rect=Rect.from_dict(t["rect"]),
                    task_id=t.get("task_id"),
                )
                for t in data.get("targets", [])
            )
            threshold = float(data.get("threshold", board.layout.threshold))
        except (KeyError, TypeError, ValueError) as e:
            return jsonify({"error": f"Invalid layout: {e}"}), 400
        board.layout = BoardLayout(targets=targets, threshold=threshold)
        return jsonify({"targets": len(targets), "threshold": threshold})

    @app.route("/api/board/events", methods=["POST"])
    @require_api_key
    def api_board_event():
        data = request.get_json(force=True, silent=True) or {}
        try:
            event = _board_event(data)
        except (KeyError, TypeError, ValueError) as e:
            return jsonify({"error": str(e)}), 400

        async def handle():
            if isinstance(event, PointerDown):
                await board.refresh()
            return await board.dispatch(event)

        outcome = run(handle())

        body = board_state()
        effect = outcome.step.effect
        body["effect"] = None
        if effect is not None:
            body["effect"] = {"type": type(effect).__name__, "task_id": effect.task_id}
            if hasattr(effect, "status"):
                body["effect"]["status"] = effect.status.value
        body["mutation"] = None
        if outcome.mutation is not None:
            body["mutation"] = (
                {"ok": True, **task_json(outcome.mutation.data)}
                if outcome.mutation.ok
                else {"ok": False, **outcome.mutation.error.to_dict()}
            )
        return jsonify(body)

    # ── Preferences & notifications ──────────────────────────────────────────

    @app.route("/api/preferences/task-view", methods=["GET"])
    def api_task_view_get():
        return jsonify({"view": services.preferences.get_task_view()})

    @app.route("/api/preferences/task-view", methods=["POST"])
    @require_api_key
    def api_task_view_set():
        data = request.get_json(force=True, silent=True) or {}
        view = (data.get("view") or "").strip().lower()
        try:
            services.preferences.set_task_view(view)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        return jsonify({"view": view})

    @app.route("/api/notifications")
    def api_notifications():
        return jsonify({"notifications": [n.to_dict() for n in services.notifier.drain()]})

    @app.errorhandler(Exception)
    def handle_error(e):
        if isinstance(e, HTTPException):
            return jsonify({"error": e.description}), e.code
        logger.exception(f"Unhandled error on {request.path}")
        return jsonify({"error": str(e)}), 500

    return app


def main():
    cfg = CRMConfig.load()
    setup_logging(cfg.log_level)
    services = build_services(cfg)
    app = create_app(services)
    logger.info(f"crmboard API on http://{cfg.host}:{cfg.port}")
    app.run(host=cfg.host, port=cfg.port)


if __name__ == "__main__":
    main()
