#!/usr/bin/env python3
"""
Taskboard Server
----------------
JSON API over the taskboard data layer: authentication, the dashboard views
(overview, projects, tasks, calendar, analytics), project/task mutations,
profile and settings.

Usage:
    pip install -e .
    python taskboard_server.py --port 3000

Auth:
    POST /api/auth/signup    {email, password, name}       → {user, access_token}
    POST /api/auth/login     {email, password}             → {user, access_token, redirect}
    POST /api/auth/oauth     {provider}                    → {url}
    POST /api/auth/logout                                  → {redirect}
    POST /api/auth/password  {password, confirm}
    POST /api/auth/recover   {email}                       (reset link goes to Telegram)
    POST /api/auth/recover/verify {token}                  → {access_token, redirect}

Dashboard (Authorization: Bearer <access_token>):
    GET  /api/dashboard/overview
    GET  /api/dashboard/projects?status=<status|all>
    GET  /api/dashboard/tasks?filter=all|upcoming|completed
    GET  /api/dashboard/calendar?month=YYYY-MM[&day=YYYY-MM-DD]
    GET  /api/dashboard/analytics?range=7|30|90|180
    POST/PUT/DELETE /api/projects[/<id>]   (DELETE needs ?confirm=<id>)
    POST/PUT/DELETE /api/tasks[/<id>]      (DELETE needs ?confirm=<id>)
    GET/PUT /api/profile, GET/PUT /api/settings, POST /api/profile/avatar

Every JSON response carries the toasts raised while handling it under
"notifications".
"""

import asyncio
import logging
import os
from datetime import date
from functools import wraps
from typing import Optional
from urllib.parse import urlencode

from flask import Flask, g, jsonify, redirect, request, send_file

from pkg.taskboard.aggregators import TaskFilter, utc_today
from pkg.taskboard.config import Config, ConfigError
from pkg.taskboard.gateway import DataGateway, GatewayError
from pkg.taskboard.identity import AuthError, IdentityProvider
from pkg.taskboard.mutations import (
    ConfirmationRequiredError,
    MutationInProgressError,
    NoBoardFoundError,
    ProjectMutations,
    TaskMutations,
)
from pkg.taskboard.notifications import Notifier, TelegramNotifier, send_due_reminders, send_recovery_link
from pkg.taskboard.profiles import load_profile, upload_avatar
from pkg.taskboard.schema import PREFERENCE_FIELDS, ValidationError
from pkg.taskboard.session import RESET_PASSWORD_PATH, SessionStore
from pkg.taskboard.storage import FileStorage, StorageError
from pkg.taskboard.views import (
    AnalyticsView,
    CalendarView,
    OverviewView,
    ProjectsView,
    TasksView,
)

logger = logging.getLogger("taskboard.server")

app = Flask(__name__)

# ── Services ─────────────────────────────────────────────────────────────────


class Services:
    """Process-wide collaborators, built once from config."""

    def __init__(self, config: Config):
        self.config = config
        self.gateway = DataGateway(config.db_path)
        self.storage = FileStorage(config.storage_dir, config.public_base_url)
        self.telegram_bot = None
        token = config.telegram_token
        if token and config.telegram_chat_id:
            from telegram import Bot

            self.telegram_bot = Bot(token)

    def notifier(self) -> Notifier:
        if self.telegram_bot is not None:
            return TelegramNotifier(self.telegram_bot, self.config.telegram_chat_id)
        return Notifier()

    def session_store(self, access_token: Optional[str] = None) -> SessionStore:
        provider = IdentityProvider(
            self.config.db_path,
            access_token=access_token,
            session_ttl_hours=self.config.session_ttl_hours,
            site_url=self.config.public_base_url,
        )
        return SessionStore(provider, self.gateway, self.notifier())


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = Services(Config.load(os.environ.get("TASKBOARD_CONFIG")))
    return _services


def reset_services() -> None:
    """Drop cached services (config or DB location changed)."""
    global _services
    _services = None


# ── Auth ─────────────────────────────────────────────────────────────────────


def _bearer_token() -> Optional[str]:
    header = request.headers.get("Authorization", "").strip()
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


def require_session(f):
    """Decorator: resolve the bearer token into a SessionStore or answer 401."""
    @wraps(f)
    async def decorated(*args, **kwargs):
        store = get_services().session_store(_bearer_token())
        await store.initialize()
        if store.identity is None:
            requested = request.full_path.rstrip("?")
            return jsonify({
                "error": "Unauthorized",
                "redirect": "/login?" + urlencode({"next": requested}),
            }), 401
        g.store = store
        return await f(*args, **kwargs)
    return decorated


def _json_body() -> dict:
    data = request.get_json(force=True, silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


async def respond(payload: dict, status: int = 200, settle: bool = True):
    """JSON response with the toasts raised during this request.

    ``settle`` waits for background profile syncs first. Error handlers run
    on their own event loop and skip it.
    """
    store = g.get("store")
    notes = []
    if store is not None:
        if settle:
            await store.wait_background()
        if isinstance(store.notifier, TelegramNotifier):
            await store.notifier.flush()
        notes = [n.to_dict() for n in store.notifier.drain()]
    payload["notifications"] = notes
    return jsonify(payload), status


def _parse_day(value: Optional[str], name: str) -> Optional[date]:
    if not value:
        return None
    try:
        if len(value) == 7:
            return date.fromisoformat(value + "-01")
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"Invalid {name}: '{value}'")


# ── Error mapping ────────────────────────────────────────────────────────────


@app.errorhandler(ValidationError)
async def handle_validation(e):
    return await respond({"error": str(e)}, 400, settle=False)


@app.errorhandler(AuthError)
async def handle_auth(e):
    return await respond({"error": e.message}, e.status, settle=False)


@app.errorhandler(GatewayError)
async def handle_gateway(e):
    status = 404 if e.is_not_found else 502
    return await respond({"error": e.message, "code": e.code}, status, settle=False)


@app.errorhandler(NoBoardFoundError)
async def handle_no_board(e):
    return await respond({"error": str(e)}, 409, settle=False)


@app.errorhandler(MutationInProgressError)
async def handle_in_progress(e):
    return await respond({"error": str(e)}, 409, settle=False)


@app.errorhandler(ConfirmationRequiredError)
async def handle_confirmation(e):
    return await respond({"error": str(e)}, 428, settle=False)


@app.errorhandler(StorageError)
async def handle_storage(e):
    return await respond({"error": e.message}, e.status, settle=False)


@app.errorhandler(404)
def handle_not_found(e):
    return jsonify({"error": "Not found", "path": request.path}), 404


# ── Routes: auth ─────────────────────────────────────────────────────────────


@app.route("/api/auth/signup", methods=["POST"])
async def api_signup():
    data = _json_body()
    g.store = store = get_services().session_store()
    session = await store.register(
        data.get("email", ""), data.get("password", ""), data.get("name", "")
    )
    return await respond({"user": session.identity.to_dict(), "access_token": session.access_token}, 201)


@app.route("/api/auth/login", methods=["POST"])
async def api_login():
    data = _json_body()
    g.store = store = get_services().session_store()
    session = await store.authenticate(data.get("email", ""), data.get("password", ""))
    return await respond({
        "user": session.identity.to_dict(),
        "access_token": session.access_token,
        "redirect": store.navigator.current,
    })


@app.route("/api/auth/oauth", methods=["POST"])
async def api_oauth():
    data = _json_body()
    g.store = store = get_services().session_store()
    result = await store.authenticate_with_provider(data.get("provider", "google"))
    return await respond(result)


@app.route("/api/auth/logout", methods=["POST"])
@require_session
async def api_logout():
    await g.store.end_session()
    return await respond({"redirect": g.store.navigator.current})


@app.route("/api/auth/password", methods=["POST"])
@require_session
async def api_change_password():
    data = _json_body()
    await g.store.change_password(data.get("password", ""), data.get("confirm", ""))
    return await respond({"status": "ok"})


async def deliver_recovery_token(services: Services, email: str, token: str) -> bool:
    """Send the reset link through the configured chat channel."""
    link = f"{services.config.public_base_url}{RESET_PASSWORD_PATH}?{urlencode({'token': token})}"
    bot = services.telegram_bot
    if bot is None:
        logger.warning(f"Recovery link for {email} not delivered: no Telegram channel configured")
        return False
    async with bot:
        return await send_recovery_link(bot, services.config.telegram_chat_id, email, link)


@app.route("/api/auth/recover", methods=["POST"])
async def api_recover():
    data = _json_body()
    services = get_services()
    g.store = store = services.session_store()
    email = data.get("email", "")
    token = await store.request_password_reset(email)
    if token:
        await deliver_recovery_token(services, email, token)
    return await respond({"status": "sent"}, 202)


@app.route("/api/auth/recover/verify", methods=["POST"])
async def api_recover_verify():
    data = _json_body()
    g.store = store = get_services().session_store()
    await store.initialize()
    session = await store.provider.verify_recovery(data.get("token", ""))
    return await respond({"access_token": session.access_token, "redirect": store.navigator.current})


# ── Routes: dashboard views ──────────────────────────────────────────────────


async def _load(view, **params):
    data = await view.load(g.store.context(), **params)
    return data, view.error


@app.route("/api/dashboard/overview")
@require_session
async def api_overview():
    view = OverviewView(get_services().gateway, g.store.notifier)
    data, error = await _load(view, today=utc_today())
    return await respond({"overview": data, "error": error}, 502 if error else 200)


@app.route("/api/dashboard/projects")
@require_session
async def api_projects():
    view = ProjectsView(get_services().gateway, g.store.notifier)
    _, error = await _load(view)
    projects = view.filtered(request.args.get("status", "all"))
    return await respond({"projects": projects, "count": len(projects), "error": error}, 502 if error else 200)


@app.route("/api/dashboard/tasks")
@require_session
async def api_tasks():
    view = TasksView(get_services().gateway, g.store.notifier)
    _, error = await _load(view)
    mode = TaskFilter.from_str(request.args.get("filter"))
    rows = view.rows(mode, utc_today())
    return await respond({"tasks": rows, "filter": mode.value, "count": len(rows), "error": error},
                         502 if error else 200)


@app.route("/api/dashboard/calendar")
@require_session
async def api_calendar():
    month = _parse_day(request.args.get("month"), "month") or utc_today()
    day = _parse_day(request.args.get("day"), "day")
    view = CalendarView(get_services().gateway, g.store.notifier)
    tasks, error = await _load(view, month=month)
    payload = {
        "month": view.month.isoformat() if view.month else None,
        "tasks": [t.to_dict() for t in tasks],
        "busy_days": [d.isoformat() for d in view.busy_days()],
        "error": error,
    }
    if day is not None:
        payload["day"] = day.isoformat()
        payload["day_tasks"] = [t.to_dict() for t in view.select_day(day)]
    return await respond(payload, 502 if error else 200)


@app.route("/api/dashboard/analytics")
@require_session
async def api_analytics():
    try:
        days = int(request.args.get("range", "30"))
    except ValueError:
        raise ValidationError(f"Invalid range: '{request.args.get('range')}'")
    view = AnalyticsView(get_services().gateway, g.store.notifier)
    data, error = await _load(view, days=days)
    return await respond({"range": days, "analytics": data.to_dict(), "error": error}, 502 if error else 200)


# ── Routes: projects ─────────────────────────────────────────────────────────


def _project_mutations() -> ProjectMutations:
    view = ProjectsView(get_services().gateway, g.store.notifier)
    return ProjectMutations(get_services().gateway, g.store.notifier, view)


@app.route("/api/projects", methods=["POST"])
@require_session
async def api_create_project():
    mutations = _project_mutations()
    project = await mutations.create(g.store.context(), **_json_body())
    return await respond({"project": project.to_dict(), "projects": mutations.view.data}, 201)


@app.route("/api/projects/<project_id>", methods=["PUT"])
@require_session
async def api_update_project(project_id):
    mutations = _project_mutations()
    project = await mutations.update(g.store.context(), project_id, **_json_body())
    return await respond({"project": project.to_dict()})


@app.route("/api/projects/<project_id>", methods=["DELETE"])
@require_session
async def api_delete_project(project_id):
    mutations = _project_mutations()
    if request.args.get("confirm") == project_id:
        mutations.request_delete(project_id)
    await mutations.confirm_delete(g.store.context(), project_id)
    return await respond({"deleted": project_id})


# ── Routes: tasks ────────────────────────────────────────────────────────────


def _task_mutations() -> TaskMutations:
    view = TasksView(get_services().gateway, g.store.notifier)
    return TaskMutations(get_services().gateway, g.store.notifier, view)


@app.route("/api/tasks", methods=["POST"])
@require_session
async def api_create_task():
    mutations = _task_mutations()
    task = await mutations.create(g.store.context(), **_json_body())
    return await respond({"task": task.to_dict()}, 201)


@app.route("/api/tasks/<task_id>", methods=["PUT"])
@require_session
async def api_update_task(task_id):
    mutations = _task_mutations()
    task = await mutations.update(g.store.context(), task_id, **_json_body())
    return await respond({"task": task.to_dict()})


@app.route("/api/tasks/<task_id>", methods=["DELETE"])
@require_session
async def api_delete_task(task_id):
    mutations = _task_mutations()
    if request.args.get("confirm") == task_id:
        mutations.request_delete(task_id)
    await mutations.confirm_delete(g.store.context(), task_id)
    return await respond({"deleted": task_id})


# ── Routes: profile & settings ───────────────────────────────────────────────


@app.route("/api/profile", methods=["GET"])
@require_session
async def api_profile():
    profile = await load_profile(get_services().gateway, g.store.identity.id)
    return await respond({"profile": profile.to_dict(), "email": g.store.identity.email})


@app.route("/api/profile", methods=["PUT"])
@require_session
async def api_update_profile():
    profile = await g.store.update_preferences(_json_body())
    return await respond({"profile": profile.to_dict()})


@app.route("/api/settings", methods=["GET"])
@require_session
async def api_settings():
    profile = (await load_profile(get_services().gateway, g.store.identity.id)).to_dict()
    return await respond({"settings": {k: profile[k] for k in PREFERENCE_FIELDS}})


@app.route("/api/settings", methods=["PUT"])
@require_session
async def api_update_settings():
    data = _json_body()
    unknown = set(data) - set(PREFERENCE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown settings: {', '.join(sorted(unknown))}")
    profile = (await g.store.update_preferences(data)).to_dict()
    return await respond({"settings": {k: profile[k] for k in PREFERENCE_FIELDS}})


@app.route("/api/profile/avatar", methods=["POST"])
@require_session
async def api_upload_avatar():
    upload = request.files.get("file")
    if upload is None:
        raise ValidationError("file is required")
    services = get_services()
    try:
        profile = await upload_avatar(
            services.gateway,
            services.storage,
            g.store.identity.id,
            upload.filename or "",
            upload.read(),
            size_limit=services.config.avatar_size_limit,
        )
    except (ValidationError, StorageError) as e:
        g.store.notifier.error(str(e))
        raise
    g.store.notifier.success("Avatar updated successfully!")
    return await respond({"profile": profile.to_dict()})


@app.route("/storage/<bucket>/<path:path>")
def storage_object(bucket, path):
    try:
        target = get_services().storage.open_public(bucket, path)
    except StorageError as e:
        return jsonify({"error": e.message}), e.status
    return send_file(target)


# ── Misc ─────────────────────────────────────────────────────────────────────


@app.route("/logout")
def logout_redirect():
    return redirect("/login")


@app.route("/health")
def health():
    cfg = get_services().config
    return jsonify({"status": "ok", "db": cfg.db_path})


async def send_all_reminders(services: Services) -> int:
    """Send the due-date digest for every profile. Returns how many were sent."""
    bot = services.telegram_bot
    if bot is None:
        raise ConfigError("Reminders need a Telegram token and telegram_chat_id")
    sent = 0
    rows = await services.gateway.select("profiles")
    async with bot:
        for row in rows:
            try:
                if await send_due_reminders(services.gateway, bot, services.config.telegram_chat_id, row["id"]):
                    sent += 1
            except GatewayError as e:
                logger.error(f"Reminder for {row['id']} failed ({e.code}): {e.message}")
    return sent


# ── Main ─────────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Taskboard Server")
    parser.add_argument("--host", help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int)
    parser.add_argument("--db", help="Path to taskboard.db (overrides TASKBOARD_DB_PATH)")
    parser.add_argument("--config", help="Path to taskboard.yaml")
    parser.add_argument("--remind", action="store_true", help="Send due-date reminders to Telegram and exit")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    if args.db:
        os.environ["TASKBOARD_DB_PATH"] = args.db
    if args.config:
        os.environ["TASKBOARD_CONFIG"] = args.config

    try:
        services = get_services()
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        raise SystemExit(1)

    if args.remind:
        try:
            count = asyncio.run(send_all_reminders(services))
        except ConfigError as e:
            logger.error(str(e))
            raise SystemExit(1)
        logger.info(f"Sent {count} reminder digest(s)")
        raise SystemExit(0)

    host = args.host or services.config.host
    port = args.port or services.config.port
    logger.info(f"Taskboard server on http://{host}:{port} (db {services.config.db_path})")
    app.run(host=host, port=port, debug=False, threaded=True)
