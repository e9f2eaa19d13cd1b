#!/usr/bin/env python3
import logging
import mimetypes
import os
import pathlib
import re
import secrets
import uuid
from datetime import datetime, timezone
from urllib.parse import quote

import redis
import requests
from dotenv import load_dotenv
from flask import Blueprint, Flask, Response, current_app, g, jsonify, redirect, request, url_for
from markupsafe import escape
from werkzeug.exceptions import RequestEntityTooLarge
from werkzeug.utils import secure_filename

from log_helpers import debug_event, token_preview
from session_store import SESSION_TTL, FileSessionStore, RedisSessionStore, sign_sid, unsign_sid
from workdrive import WorkDriveAuthError, WorkDriveClient, WorkDriveError, WorkDriveNotFound, describe_file
from zoho_tokens import TokenRefreshError, ZohoOAuthError, ZohoTokenCache, authorize_url, exchange_code

# ── Config ────────────────────────────────────────────────────────────────────
ENV_FILE = os.getenv("ENV_FILE", "env/dev.env")
if os.path.exists(ENV_FILE):
    load_dotenv(ENV_FILE)


def _truthy(v):
    return (v or "").strip().lower() in ("1", "true", "yes", "on")


PORT = int(os.getenv("PORT") or os.getenv("APP_PORT") or "8000")
TESTING = _truthy(os.getenv("UNIT_TESTING"))

DEFAULT_SESSION_SECRET = "default_secret_key"
SESSION_SECRET = os.getenv("SESSION_SECRET") or DEFAULT_SESSION_SECRET
SESSION_STORE = os.getenv("SESSION_STORE", "file").strip().lower()
SESSION_DIR = os.getenv("SESSION_DIR", "./sessions")
SESSION_COOKIE_SECURE = _truthy(os.getenv("SESSION_COOKIE_SECURE"))
SID_COOKIE = "sid"

# Redis via individual env vars, only used with SESSION_STORE=redis
REDIS_HOST = os.getenv("REDIS_HOST")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_DB = int(os.getenv("REDIS_DB", "0"))
REDIS_USERNAME = os.getenv("REDIS_USERNAME") or None
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD") or None
REDIS_SSL = _truthy(os.getenv("REDIS_SSL"))

# (api_base, accounts_base, download_base, web_base)
REGION_ENDPOINTS = {
    "us": ("https://www.zohoapis.com/workdrive/api/v1", "https://accounts.zoho.com", "https://download.zoho.com/v1/workdrive", "https://workdrive.zoho.com"),
    "eu": ("https://www.zohoapis.eu/workdrive/api/v1", "https://accounts.zoho.eu", "https://download.zoho.eu/v1/workdrive", "https://workdrive.zoho.eu"),
    "in": ("https://www.zohoapis.in/workdrive/api/v1", "https://accounts.zoho.in", "https://download.zoho.in/v1/workdrive", "https://workdrive.zoho.in"),
    "au": ("https://www.zohoapis.com.au/workdrive/api/v1", "https://accounts.zoho.com.au", "https://download.zoho.com.au/v1/workdrive", "https://workdrive.zoho.com.au"),
    "jp": ("https://www.zohoapis.jp/workdrive/api/v1", "https://accounts.zoho.jp", "https://download.zoho.jp/v1/workdrive", "https://workdrive.zoho.jp"),
    "cn": ("https://www.zohoapis.com.cn/workdrive/api/v1", "https://accounts.zoho.com.cn", "https://download.zoho.com.cn/v1/workdrive", "https://workdrive.zoho.com.cn"),
}
ZOHO_REGION = os.getenv("ZOHO_REGION", "us").strip().lower()
_region = REGION_ENDPOINTS.get(ZOHO_REGION, REGION_ENDPOINTS["us"])
ZOHO_API_BASE = (os.getenv("ZOHO_API_BASE") or _region[0]).rstrip("/")
ZOHO_ACCOUNTS_BASE = (os.getenv("ZOHO_ACCOUNTS_BASE") or _region[1]).rstrip("/")
ZOHO_DOWNLOAD_BASE = (os.getenv("ZOHO_DOWNLOAD_BASE") or _region[2]).rstrip("/")
ZOHO_WEB_BASE = (os.getenv("ZOHO_WEB_BASE") or _region[3]).rstrip("/")

ZOHO_CLIENT_ID = os.getenv("ZOHO_CLIENT_ID")
ZOHO_CLIENT_SECRET = os.getenv("ZOHO_CLIENT_SECRET")
ZOHO_REDIRECT_URI = os.getenv("ZOHO_REDIRECT_URI", f"http://localhost:{PORT}/callback")
ZOHO_REFRESH_TOKEN = os.getenv("ZOHO_REFRESH_TOKEN")
ZOHO_FOLDER_ID = os.getenv("ZOHO_FOLDER_ID")
ZOHO_SCOPES = os.getenv("ZOHO_SCOPES", "WorkDrive.files.ALL,WorkDrive.team.READ,ZohoFiles.files.ALL")

UPLOAD_DIR = os.getenv("UPLOAD_DIR", "./uploads")
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "100"))
UPSTREAM_TIMEOUT = float(os.getenv("UPSTREAM_TIMEOUT", "30"))
UPLOAD_TIMEOUT = float(os.getenv("UPLOAD_TIMEOUT", "600"))
MAX_AUTH_RETRIES = int(os.getenv("MAX_AUTH_RETRIES", "2"))

# ── Logging ───────────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO), format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger("workdrive_bridge")

bp = Blueprint("bridge", __name__)


def _redis_client():
    if not REDIS_HOST:
        raise SystemExit("Set REDIS_HOST (and optionally REDIS_PORT/DB/USERNAME/PASSWORD/SSL) to use SESSION_STORE=redis.")
    client = redis.Redis(
        host=REDIS_HOST,
        port=REDIS_PORT,
        db=REDIS_DB,
        username=REDIS_USERNAME,
        password=REDIS_PASSWORD,
        ssl=REDIS_SSL,
        decode_responses=False,
        socket_timeout=5,
        socket_connect_timeout=5,
    )
    # Test connection early (fail fast)
    try:
        client.ping()
    except redis.RedisError as e:
        raise SystemExit(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT} db={REDIS_DB} ssl={REDIS_SSL}: {e}")
    return client


def _default_session_store():
    if SESSION_STORE == "redis":
        return RedisSessionStore(_redis_client(), ttl=SESSION_TTL)
    if SESSION_STORE != "file":
        raise SystemExit(f"Unknown SESSION_STORE: {SESSION_STORE} (expected file or redis)")
    return FileSessionStore(SESSION_DIR, ttl=SESSION_TTL)


def create_app(token_cache=None, workdrive=None, session_store=None, **overrides):
    """Build the Flask app; collaborators not passed in are built from the environment."""
    app = Flask(__name__)
    app.config.update(
        MAX_CONTENT_LENGTH=MAX_UPLOAD_MB * 1024 * 1024,
        SESSION_SECRET=SESSION_SECRET,
        SID_COOKIE_SECURE=SESSION_COOKIE_SECURE,
        UPLOAD_DIR=UPLOAD_DIR,
        ZOHO_CLIENT_ID=ZOHO_CLIENT_ID,
        ZOHO_CLIENT_SECRET=ZOHO_CLIENT_SECRET,
        ZOHO_REDIRECT_URI=ZOHO_REDIRECT_URI,
        ZOHO_REFRESH_TOKEN=ZOHO_REFRESH_TOKEN,
        ZOHO_FOLDER_ID=ZOHO_FOLDER_ID,
        ZOHO_SCOPES=ZOHO_SCOPES,
        ZOHO_ACCOUNTS_BASE=ZOHO_ACCOUNTS_BASE,
    )
    app.config.update(overrides)

    if token_cache is None:
        token_cache = ZohoTokenCache(
            app.config["ZOHO_CLIENT_ID"],
            app.config["ZOHO_CLIENT_SECRET"],
            app.config["ZOHO_REFRESH_TOKEN"],
            accounts_base=app.config["ZOHO_ACCOUNTS_BASE"],
        )
    if workdrive is None:
        workdrive = WorkDriveClient(
            token_cache,
            api_base=ZOHO_API_BASE,
            download_base=ZOHO_DOWNLOAD_BASE,
            web_base=ZOHO_WEB_BASE,
            timeout=UPSTREAM_TIMEOUT,
            upload_timeout=UPLOAD_TIMEOUT,
            max_auth_retries=MAX_AUTH_RETRIES,
        )
    if session_store is None:
        session_store = _default_session_store()
    session_store.reap()

    app.extensions["token_cache"] = token_cache
    app.extensions["workdrive"] = workdrive
    app.extensions["session_store"] = session_store

    pathlib.Path(app.config["UPLOAD_DIR"]).mkdir(parents=True, exist_ok=True)
    if app.config["SESSION_SECRET"] == DEFAULT_SESSION_SECRET and not TESTING:
        logger.warning("SESSION_SECRET is not set; session cookies are signed with the built-in default")

    app.register_blueprint(bp)
    app.register_error_handler(WorkDriveNotFound, _not_found)
    app.register_error_handler(WorkDriveAuthError, _auth_exhausted)
    app.register_error_handler(WorkDriveError, _upstream_failed)
    app.register_error_handler(TokenRefreshError, _token_failed)
    app.register_error_handler(requests.Timeout, _upstream_timeout)
    app.register_error_handler(requests.RequestException, _upstream_unreachable)
    app.register_error_handler(RequestEntityTooLarge, _too_large)
    logger.info(
        "app ready: region=%s api=%s session_store=%s upload_dir=%s",
        ZOHO_REGION,
        ZOHO_API_BASE,
        type(session_store).__name__,
        app.config["UPLOAD_DIR"],
    )
    return app


def _tokens():
    return current_app.extensions["token_cache"]


def _drive():
    return current_app.extensions["workdrive"]


def _fail(status, error, **extra):
    return jsonify({"success": False, "error": error, **extra}), status


# ── Error mapping ─────────────────────────────────────────────────────────────
def _not_found(e):
    return _fail(404, "File not found", details=e.detail)


def _auth_exhausted(e):
    logger.error("giving up after repeated 401s: %s", e)
    return _fail(500, "Zoho rejected the access token after retrying", details=str(e))


def _upstream_failed(e):
    logger.error("workdrive call failed: %s", e)
    return _fail(500, str(e), details=e.detail)


def _token_failed(e):
    logger.error("access token refresh failed: %s detail=%s", e, e.detail)
    return _fail(500, "Failed to obtain Zoho access token", details=e.detail or str(e))


def _upstream_timeout(e):
    logger.error("workdrive call timed out: %s", e)
    return _fail(504, "upstream_timeout")


def _upstream_unreachable(e):
    logger.exception("workdrive call failed in transport")
    return _fail(500, "upstream_unreachable", details=str(e))


def _too_large(e):
    return _fail(413, "File too large", limit_bytes=current_app.config["MAX_CONTENT_LENGTH"])


# ── Sessions ──────────────────────────────────────────────────────────────────
@bp.before_app_request
def _load_session():
    store = current_app.extensions["session_store"]
    sid = unsign_sid(request.cookies.get(SID_COOKIE), current_app.config["SESSION_SECRET"])
    data = store.load(sid) if sid else None
    if data is None:
        sid = secrets.token_urlsafe(32)
        data = {}
        debug_event(logger, "sid_generated", sid=token_preview(sid))
    g.sid = sid
    g.session = data


@bp.after_app_request
def _save_session(resp):
    sid = g.get("sid")
    if not sid:
        return resp
    try:
        current_app.extensions["session_store"].save(sid, g.session)
    except (OSError, redis.RedisError):
        logger.exception("session save failed: sid=%s", token_preview(sid))
        return resp
    resp.set_cookie(
        SID_COOKIE,
        sign_sid(sid, current_app.config["SESSION_SECRET"]),
        max_age=SESSION_TTL,
        httponly=True,
        samesite="Lax",
        secure=current_app.config["SID_COOKIE_SECURE"],
        path="/",
    )
    return resp


# ── UI ────────────────────────────────────────────────────────────────────────
def _page(title, body):
    return (
        "<!doctype html><html><head><meta charset='utf-8'>"
        f"<title>{escape(title)}</title></head><body><h1>{escape(title)}</h1>{body}</body></html>"
    )


@bp.get("/")
def index():
    cfg = current_app.config
    checks = [
        ("ZOHO_CLIENT_ID", bool(cfg["ZOHO_CLIENT_ID"])),
        ("ZOHO_CLIENT_SECRET", bool(cfg["ZOHO_CLIENT_SECRET"])),
        ("ZOHO_REDIRECT_URI", bool(cfg["ZOHO_REDIRECT_URI"])),
        ("ZOHO_REFRESH_TOKEN", bool(cfg["ZOHO_REFRESH_TOKEN"])),
        ("ZOHO_FOLDER_ID", bool(cfg["ZOHO_FOLDER_ID"])),
    ]
    rows = "".join(f"<li>{escape(name)}: {'set' if ok else '<b>missing</b>'}</li>" for name, ok in checks)
    cached = "yes" if _tokens().is_cached() else "no"
    body = (
        f"<ul>{rows}</ul>"
        f"<p>Access token cached: {cached}</p>"
        f"<p><a href='{url_for('.oauth_start')}'>Authorize with Zoho</a> to obtain a refresh token, "
        "then put it in ZOHO_REFRESH_TOKEN and restart.</p>"
        f"<p><a href='{url_for('.list_folders')}'>Browse folders</a> | <a href='{url_for('.health')}'>Health</a></p>"
    )
    return _page("WorkDrive bridge", body)


# ── Auth & status ─────────────────────────────────────────────────────────────
@bp.get("/auth")
def oauth_start():
    cfg = current_app.config
    if not cfg["ZOHO_CLIENT_ID"] or not cfg["ZOHO_REDIRECT_URI"]:
        return _fail(400, "ZOHO_CLIENT_ID and ZOHO_REDIRECT_URI must be set")
    state = secrets.token_urlsafe(24)
    g.session["oauthState"] = state
    url = authorize_url(
        client_id=cfg["ZOHO_CLIENT_ID"],
        redirect_uri=cfg["ZOHO_REDIRECT_URI"],
        scopes=cfg["ZOHO_SCOPES"],
        state=state,
        accounts_base=cfg["ZOHO_ACCOUNTS_BASE"],
    )
    debug_event(logger, "oauth_start", sid=token_preview(g.sid), state=token_preview(state), url=url)
    return redirect(url, 302)


@bp.get("/callback")
def oauth_callback():
    cfg = current_app.config
    if request.args.get("error"):
        return _fail(400, "Authorization denied", details=request.args.get("error"))
    code = request.args.get("code")
    if not code:
        return _fail(400, "Authorization code missing")
    expected = g.session.pop("oauthState", None)
    if expected and request.args.get("state") != expected:
        return _fail(400, "Invalid state")
    try:
        tok = exchange_code(
            code,
            client_id=cfg["ZOHO_CLIENT_ID"],
            client_secret=cfg["ZOHO_CLIENT_SECRET"],
            redirect_uri=cfg["ZOHO_REDIRECT_URI"],
            accounts_base=cfg["ZOHO_ACCOUNTS_BASE"],
        )
    except ZohoOAuthError as e:
        logger.warning("oauth code exchange failed: %s detail=%s", e, e.detail)
        return _fail(500, "Token exchange failed", details=e.detail or str(e))
    g.session["accessToken"] = tok["access_token"]
    g.session["refreshToken"] = tok.get("refresh_token")
    logger.info("oauth code exchanged: sid=%s refresh=%s", token_preview(g.sid), bool(tok.get("refresh_token")))
    refresh = tok.get("refresh_token") or "(none returned; revoke the grant and authorize again with prompt=consent)"
    body = (
        "<p>Authorized. Copy the refresh token into ZOHO_REFRESH_TOKEN and restart the server.</p>"
        f"<p>Access token:</p><pre>{escape(tok['access_token'])}</pre>"
        f"<p>Refresh token:</p><pre>{escape(refresh)}</pre>"
    )
    return _page("Zoho authorization complete", body)


@bp.get("/health")
def health():
    cfg = current_app.config
    return jsonify({
        "status": "ok",
        "tokenCached": _tokens().is_cached(),
        "env": {
            "clientId": bool(cfg["ZOHO_CLIENT_ID"]),
            "clientSecret": bool(cfg["ZOHO_CLIENT_SECRET"]),
            "redirectUri": bool(cfg["ZOHO_REDIRECT_URI"]),
            "refreshToken": bool(cfg["ZOHO_REFRESH_TOKEN"]),
            "folderId": bool(cfg["ZOHO_FOLDER_ID"]),
            "sessionSecret": cfg["SESSION_SECRET"] != DEFAULT_SESSION_SECRET,
        },
    })


# ── WorkDrive proxy ───────────────────────────────────────────────────────────
def _discard(path):
    try:
        path.unlink(missing_ok=True)
        debug_event(logger, "staged_file_removed", path=str(path))
    except OSError:
        logger.exception("staged file cleanup failed: %s", path)


def _page_arg(name, default, maximum=None):
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    v = int(raw)
    if v < 1:
        raise ValueError(f"{name} must be >= 1")
    return min(v, maximum) if maximum else v


def _attachment(filename):
    fallback = re.sub(r'[\x00-\x1f\x7f"\\]', "", filename.encode("ascii", "ignore").decode("ascii")) or "download"
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


@bp.get("/api/folders")
def list_folders():
    folder_id = request.args.get("folder_id") or current_app.config["ZOHO_FOLDER_ID"]
    if not folder_id:
        return _fail(400, "folder_id is required")
    items, _ = _drive().list_files(folder_id, page=1, per_page=50, kind="folder")
    folders = [describe_file(it) for it in items]
    rows = "".join(
        f"<tr><td>{escape(f['name'] or '')}</td><td><code>{escape(f['id'] or '')}</code></td>"
        f"<td><a href='{url_for('.list_folders', folder_id=f['id'])}'>open</a></td></tr>"
        for f in folders
    )
    body = (
        f"<p>Parent folder: <code>{escape(folder_id)}</code> ({len(folders)} folders)</p>"
        f"<table><tr><th>Name</th><th>ID</th><th></th></tr>{rows}</table>"
    )
    return _page("Folders", body)


@bp.post("/api/upload")
def upload():
    f = request.files.get("file")
    if f is None or not f.filename:
        return _fail(400, "No file uploaded")
    parent_id = request.form.get("folder_id") or current_app.config["ZOHO_FOLDER_ID"]
    if not parent_id:
        return _fail(400, "folder_id is required")
    name = os.path.basename(f.filename.replace("\\", "/")) or "upload.bin"
    staged = pathlib.Path(current_app.config["UPLOAD_DIR"]) / f"{uuid.uuid4().hex}-{secure_filename(name) or 'upload.bin'}"
    try:
        f.save(staged)
        logger.info("upload in: sid=%s name=%s parent=%s staged=%s", token_preview(g.sid), name, parent_id, staged)
        size = staged.stat().st_size
        item = _drive().upload(staged, name, parent_id, override=_truthy(request.form.get("override")))
    finally:
        _discard(staged)
    attrs = item.get("attributes") or {}
    return jsonify({
        "success": True,
        "fileId": attrs.get("resource_id") or item.get("id"),
        "fileName": attrs.get("FileName") or name,
        "fileSize": size,
        "uploadedAt": datetime.now(timezone.utc).isoformat(),
    })


@bp.get("/api/preview/<file_id>")
def preview(file_id):
    info = describe_file(_drive().file_info(file_id))
    name = info["name"] or file_id
    mime = mimetypes.guess_type(name)[0] or "application/octet-stream"
    web = _drive().preview_url(file_id)
    return jsonify({
        "success": True,
        "fileId": info["id"] or file_id,
        "fileName": name,
        "preview_url": web,
        "web_url": info["permalink"] or web,
        "thumbnail_url": info["thumbnailUrl"],
        "download_url": url_for(".download", file_id=file_id, filename=name),
        "mimeType": mime,
        "size": info["size"],
        "modifiedAt": info["modifiedAt"],
    })


@bp.get("/api/download/<file_id>")
def download(file_id):
    upstream = _drive().download(file_id)
    filename = request.args.get("filename") or file_id
    h = {
        "Content-Type": upstream.headers.get("Content-Type") or "application/octet-stream",
        "Content-Disposition": _attachment(filename),
    }
    debug_event(logger, "download_ready", file_id=file_id, headers=h)

    def stream():
        try:
            for chunk in upstream.iter_content(chunk_size=512 * 1024):
                if chunk:
                    yield chunk
        finally:
            # Also runs when the client goes away mid-stream.
            upstream.close()
            debug_event(logger, "download_closed", file_id=file_id)

    return Response(stream(), headers=h)


@bp.delete("/api/file/<file_id>")
def delete_file(file_id):
    _drive().trash(file_id)
    return jsonify({"success": True, "message": f"File {file_id} deleted"})


@bp.get("/api/files")
def list_files():
    folder_id = request.args.get("folder_id") or current_app.config["ZOHO_FOLDER_ID"]
    if not folder_id:
        return _fail(400, "folder_id is required")
    try:
        page = _page_arg("page", 1)
        per_page = _page_arg("per_page", 20, maximum=50)
    except ValueError:
        return _fail(400, "page and per_page must be positive integers")
    items, has_more = _drive().list_files(folder_id, page=page, per_page=per_page)
    files = [describe_file(it) for it in items]
    return jsonify({
        "success": True,
        "files": files,
        "pagination": {"page": page, "per_page": per_page, "count": len(files), "has_more": has_more},
    })


app = create_app()

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=PORT)
