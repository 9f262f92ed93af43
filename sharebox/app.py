import atexit
import logging
import os
import re
import secrets
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from secrets import compare_digest
from typing import Any, Dict, Iterator, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from flask import (
    Flask,
    Response,
    flash,
    g,
    has_request_context,
    jsonify,
    make_response,
    redirect,
    render_template,
    request,
    send_file,
    url_for,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_wtf.csrf import CSRFError, CSRFProtect
from werkzeug.datastructures import FileStorage
from werkzeug.security import check_password_hash

from .admin import AdminViewAssembler, LogTailReader
from .counters import ActivityCounters, SQLiteActivityCounters
from .errors import (
    InvalidName,
    NameCollision,
    NotFound,
    PersistenceFailure,
    QuotaExceeded,
    ShareBoxError,
)
from .links import direct_link, file_path_link
from .settings import (
    COUNTERS_DB_PATH,
    DATA_DIR,
    LOGS_DIR,
    UPLOADS_DIR,
    _safe_int_env,
    apply_env_overrides,
    ensure_directories,
    get_config_mtime,
    load_config,
    max_upload_bytes,
    storage_quota_bytes,
)
from .storage import FileStore, StoredFile

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3
MULTIPART_OVERHEAD_BYTES = 64 * 1024
ADMIN_REALM = "ShareBox Admin"

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f]")


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(self._with_request(msg), *args, **kwargs)


def _configure_file_logging() -> Path:
    """Attach a rotating file handler; its tail is shown on the admin page."""

    ensure_directories()
    log_path = LOGS_DIR / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


APP_LOG_PATH = _configure_file_logging()
logging.getLogger("sharebox").setLevel(numeric_level)


def _load_secret_key() -> str:
    env_secret = os.environ.get("SECRET_KEY")
    if env_secret:
        return env_secret

    secret_path = DATA_DIR / ".secret_key"
    config_logger = logging.getLogger("sharebox.config")
    try:
        # Exclusive creation so concurrent workers agree on one key.
        fd = os.open(secret_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError:
        existing = secret_path.read_text(encoding="utf-8").strip()
        if existing:
            return existing
        config_logger.warning("Secret key file %s is empty, using an in-memory key", secret_path)
        return secrets.token_hex(32)
    except OSError as error:
        config_logger.critical(
            "Using in-memory secret key; sessions will not survive restarts. "
            "Set SECRET_KEY for production use. Error: %s",
            error,
        )
        return secrets.token_hex(32)

    generated = secrets.token_hex(32)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(generated)
        handle.flush()
        os.fsync(handle.fileno())
    config_logger.warning("Generated new secret key - stored in %s", secret_path)
    return generated


_CONFIG_CACHE: Dict[str, Any] = apply_env_overrides(load_config())
_CONFIG_CACHE_MTIME: float = get_config_mtime()
_config_lock = threading.RLock()


def get_config(refresh: bool = False) -> Dict[str, Any]:
    global _CONFIG_CACHE, _CONFIG_CACHE_MTIME
    with _config_lock:
        current_mtime = get_config_mtime()
        if refresh or current_mtime > _CONFIG_CACHE_MTIME:
            _CONFIG_CACHE = apply_env_overrides(load_config())
            _CONFIG_CACHE_MTIME = current_mtime
            _apply_runtime_settings(_CONFIG_CACHE)
        return _CONFIG_CACHE.copy()


def _build_counters(config: Dict[str, Any]):
    if config.get("counters_persistent"):
        return SQLiteActivityCounters(COUNTERS_DB_PATH)
    return ActivityCounters()


store = FileStore(UPLOADS_DIR)
counters = _build_counters(_CONFIG_CACHE)
log_reader = LogTailReader(APP_LOG_PATH, int(_CONFIG_CACHE["log_tail_lines"]))
assembler = AdminViewAssembler(store, counters, log_reader)

app = Flask(__name__)
app.config["SECRET_KEY"] = _load_secret_key()
app.logger.setLevel(numeric_level)
csrf = CSRFProtect(app)


def _apply_upload_limit(config: Dict[str, Any]) -> None:
    limit_bytes = max_upload_bytes(config)
    store.configure_limits(limit_bytes, storage_quota_bytes(config))
    # Leave room for the multipart envelope around the file itself.
    app.config["MAX_CONTENT_LENGTH"] = limit_bytes + MULTIPART_OVERHEAD_BYTES


def _apply_runtime_settings(config: Dict[str, Any]) -> None:
    _apply_upload_limit(config)
    log_reader.max_lines = max(1, int(config["log_tail_lines"]))


_apply_runtime_settings(_CONFIG_CACHE)

limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    storage_uri=os.environ.get("SHAREBOX_RATE_LIMIT_STORAGE", "memory://"),
)

lifecycle_logger = RequestAwareLogger(logging.getLogger("sharebox.lifecycle"))


def upload_rate_limit_string() -> str:
    return f"{int(get_config()['upload_rate_limit_per_hour'])} per hour"


def download_rate_limit_string() -> str:
    return f"{int(get_config()['download_rate_limit_per_minute'])} per minute"


def cleanup_stale_uploads() -> int:
    removed = store.cleanup_temp_files()
    if removed:
        logging.getLogger("sharebox.scheduler").info("temp_cleanup_completed removed=%d", removed)
    return removed


scheduler: Optional[BackgroundScheduler] = None
if os.environ.get("SHAREBOX_DISABLE_SCHEDULER", "").lower() not in {"1", "true", "yes"}:
    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        func=cleanup_stale_uploads,
        trigger="interval",
        minutes=int(_CONFIG_CACHE["cleanup_interval_minutes"]),
        id="cleanup_temp_files",
        name="Remove abandoned upload temp files",
        replace_existing=True,
    )
    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))


def wants_json() -> bool:
    accept = request.accept_mimetypes
    return accept.accept_json and not accept.accept_html


def link_scheme() -> str:
    return get_config()["link_scheme"] or request.scheme


def file_payload(stored: StoredFile) -> Dict[str, Any]:
    return {
        "name": stored.name,
        "size": stored.size_bytes,
        "created_at": stored.created_at,
        "url": file_path_link(stored),
        "direct_link": direct_link(request.host, stored, link_scheme()),
    }


def record_activity(kind: str) -> None:
    """Bump the daily counter for *kind*; failures are logged, never raised."""

    try:
        if kind == "upload":
            counters.record_upload()
        else:
            counters.record_download()
    except PersistenceFailure as error:
        lifecycle_logger.warning(
            "activity_record_failed kind=%s error=%s", kind, sanitize_log_value(str(error))
        )


def counts_as_download(response: Response) -> bool:
    """Full responses count; revalidations and resumed ranges do not."""

    if response.status_code == 200:
        return True
    if response.status_code == 206:
        content_range = response.content_range
        return content_range is not None and content_range.start == 0
    return False


def error_status(error: ShareBoxError) -> int:
    if isinstance(error, (InvalidName, NameCollision)):
        return 400
    if isinstance(error, NotFound):
        return 404
    if isinstance(error, QuotaExceeded):
        return 413 if error.reason == QuotaExceeded.FILE_TOO_LARGE else 507
    return 500


def error_response(message: str, status: int) -> Response:
    if wants_json():
        return make_response(jsonify({"error": message}), status)
    return make_response(render_template("error.html", message=message, status=status), status)


@contextmanager
def upload_stream_handler(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Ensure uploaded file streams are always closed."""

    try:
        yield file_storage
    finally:
        try:
            file_storage.close()
        except OSError as error:
            lifecycle_logger.warning(
                "stream_close_failed filename=%s error=%s",
                sanitize_log_value(file_storage.filename or ""),
                error,
            )


def admin_authenticated() -> bool:
    auth = request.authorization
    if auth is None or (auth.type or "").lower() != "basic":
        return False
    config = get_config()
    username_ok = compare_digest(
        (auth.username or "").encode("utf-8"),
        config["admin_username"].encode("utf-8"),
    )
    password_ok = check_password_hash(config["admin_password_hash"], auth.password or "")
    return username_ok and password_ok


def admin_challenge() -> Response:
    response = make_response("Authentication required", 401)
    response.headers["WWW-Authenticate"] = f'Basic realm="{ADMIN_REALM}"'
    return response


def require_admin(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if admin_authenticated():
            return view(*args, **kwargs)
        lifecycle_logger.warning(
            "admin_auth_failed path=%s ip=%s",
            sanitize_log_value(request.path),
            request.remote_addr or "unknown",
        )
        return admin_challenge()

    return wrapped


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = sanitize_log_value(request.headers.get("X-Request-ID", uuid.uuid4().hex))


@app.after_request
def log_request_completion(response: Response):
    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if request.endpoint == "serve_upload":
        # Uploaded content is untrusted; never let it run as part of this origin.
        response.headers["Content-Security-Policy"] = "sandbox; default-src 'none'"
    else:
        response.headers["Content-Security-Policy"] = (
            "default-src 'self'; style-src 'self' 'unsafe-inline'; img-src 'self' data:"
        )
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(ShareBoxError)
def handle_storage_error(error: ShareBoxError):
    return error_response(str(error), error_status(error))


@app.errorhandler(413)
def handle_file_too_large(error):  # pragma: no cover - framework hook
    return error_response("The uploaded file exceeds the allowed size limit.", 413)


@app.errorhandler(429)
def handle_rate_limit(error):  # pragma: no cover - framework hook
    return error_response("Too many requests. Please try again later.", 429)


@app.errorhandler(CSRFError)
def handle_csrf_error(error):  # pragma: no cover - framework hook
    return error_response("The form has expired. Please reload the page and try again.", 400)


@app.template_filter("human_datetime")
def human_datetime(value: float) -> str:
    dt = datetime.fromtimestamp(value, tz=timezone.utc)
    return dt.strftime("%Y-%m-%d %H:%M:%S UTC")


@app.template_filter("human_filesize")
def human_filesize(num: int) -> str:
    if num < 1024:
        return f"{num} B"
    for unit in ["KB", "MB", "GB", "TB"]:
        num /= 1024.0
        if abs(num) < 1024.0:
            return f"{num:.2f} {unit}"
    return f"{num:.2f} PB"


@app.template_global("file_url")
def file_url(name: str) -> str:
    return file_path_link(name)


@app.route("/")
def index():
    lifecycle_logger.info("index_viewed ip=%s", request.remote_addr or "unknown")
    return render_template("index.html")


@csrf.exempt
@app.route("/upload", methods=["POST"])
@limiter.limit(lambda: upload_rate_limit_string())
def upload():
    # Pick up limit changes before the request body is parsed.
    get_config()
    upload_storage = request.files.get("file")
    if upload_storage is None or not upload_storage.filename:
        lifecycle_logger.warning("upload_failed reason=no_file")
        return error_response("No file selected", 400)

    with upload_stream_handler(upload_storage) as upload_file:
        try:
            stored = store.put(
                upload_file.filename,
                upload_file.stream,
                expected_size=upload_file.content_length or None,
            )
        except ShareBoxError as error:
            lifecycle_logger.warning(
                "upload_failed filename=%s reason=%s ip=%s",
                sanitize_log_value(upload_file.filename),
                type(error).__name__,
                request.remote_addr or "unknown",
            )
            raise

    record_activity("upload")
    lifecycle_logger.info(
        "file_uploaded name=%s size=%d ip=%s",
        sanitize_log_value(stored.name),
        stored.size_bytes,
        request.remote_addr or "unknown",
    )
    payload = file_payload(stored)
    if wants_json():
        return jsonify(payload), 201
    return render_template("upload_success.html", file=payload)


@app.route("/list")
def list_files():
    lifecycle_logger.info("list_viewed ip=%s", request.remote_addr or "unknown")
    files = store.list()
    if wants_json():
        return jsonify({"files": [file_payload(entry) for entry in files]})
    return render_template("list.html", files=files)


@app.route("/file/<name>")
def file_details(name: str):
    stored = store.get(name)
    payload = file_payload(stored)
    if wants_json():
        return jsonify(payload)
    return render_template("file.html", file=payload)


@app.route("/file/<name>/direct-link")
def file_direct_link(name: str):
    stored = store.get(name)
    response = make_response(direct_link(request.host, stored, link_scheme()), 200)
    response.mimetype = "text/plain"
    return response


@app.route("/uploads/<name>")
@limiter.limit(lambda: download_rate_limit_string())
def serve_upload(name: str):
    path = store.path_for(name)
    try:
        response = send_file(path, conditional=True)
    except FileNotFoundError:
        # Deleted between lookup and open.
        raise NotFound(name) from None
    if counts_as_download(response):
        record_activity("download")
        lifecycle_logger.info(
            "file_downloaded name=%s status=%d ip=%s",
            sanitize_log_value(name),
            response.status_code,
            request.remote_addr or "unknown",
        )
    return response


@app.route("/admin/")
@require_admin
def admin_dashboard():
    snapshot = assembler.snapshot()
    if wants_json():
        return jsonify(
            {
                "uploads_today": snapshot.uploads_today,
                "downloads_today": snapshot.downloads_today,
                "log_tail": snapshot.log_tail,
                "files": [file_payload(entry) for entry in snapshot.files],
                "degraded": snapshot.degraded,
            }
        )
    return render_template("admin.html", snapshot=snapshot)


@app.route("/admin/logout")
def admin_logout():
    return admin_challenge()


@app.route("/admin/file/<name>/delete", methods=["POST"])
@require_admin
def admin_delete(name: str):
    store.delete(name)
    lifecycle_logger.info(
        "file_deleted name=%s ip=%s",
        sanitize_log_value(name),
        request.remote_addr or "unknown",
    )
    if wants_json():
        return jsonify({"deleted": name})
    flash(f"Deleted {name}.", "success")
    return redirect(url_for("admin_dashboard"))


def main() -> None:
    host = os.environ.get("SHAREBOX_HOST", "0.0.0.0")
    port = _safe_int_env("SHAREBOX_PORT", 8080)
    app.run(host=host, port=port, threaded=True)


if __name__ == "__main__":
    main()
