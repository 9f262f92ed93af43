import json
import logging
import math
import os
from pathlib import Path
from typing import Any, Dict

from werkzeug.security import generate_password_hash

BASE_DIR = Path(__file__).resolve().parent


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


STORAGE_ROOT = _resolve_env_path("SHAREBOX_STORAGE_ROOT", BASE_DIR)
DATA_DIR = _resolve_env_path("SHAREBOX_DATA_DIR", STORAGE_ROOT / "data")
UPLOADS_DIR = _resolve_env_path("SHAREBOX_UPLOADS_DIR", STORAGE_ROOT / "uploads")
LOGS_DIR = _resolve_env_path("SHAREBOX_LOGS_DIR", STORAGE_ROOT / "logs")
CONFIG_PATH = DATA_DIR / "config.json"
COUNTERS_DB_PATH = DATA_DIR / "counters.db"

BYTES_PER_MB = 1024 * 1024
DEFAULT_ADMIN_PASSWORD = "sharebox"


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logging.getLogger("sharebox.config").warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


DEFAULT_MAX_UPLOAD_MB = _safe_int_env("MAX_UPLOAD_SIZE_MB", 500)
DEFAULT_LOG_TAIL_LINES = _safe_int_env("SHAREBOX_LOG_TAIL_LINES", 200)
DEFAULT_CLEANUP_INTERVAL_MINUTES = _safe_int_env("SHAREBOX_CLEANUP_INTERVAL_MINUTES", 30)
DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR = _safe_int_env("SHAREBOX_RATE_LIMIT_UPLOADS_PER_HOUR", 100)
DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE = _safe_int_env("SHAREBOX_RATE_LIMIT_DOWNLOADS_PER_MINUTE", 120)


DEFAULT_CONFIG: Dict[str, Any] = {
    "admin_username": "admin",
    "admin_password_hash": "",
    "max_upload_size_mb": float(DEFAULT_MAX_UPLOAD_MB),
    "storage_quota_mb": 0.0,
    "log_tail_lines": float(DEFAULT_LOG_TAIL_LINES),
    "cleanup_interval_minutes": float(DEFAULT_CLEANUP_INTERVAL_MINUTES),
    "upload_rate_limit_per_hour": float(DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR),
    "download_rate_limit_per_minute": float(DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE),
    "link_scheme": "",
    "counters_persistent": False,
}

# Keys that must be at least 1; storage_quota_mb may be 0 (unlimited).
CONFIG_POSITIVE_KEYS = {
    "max_upload_size_mb",
    "log_tail_lines",
    "cleanup_interval_minutes",
    "upload_rate_limit_per_hour",
    "download_rate_limit_per_minute",
}

CONFIG_NUMERIC_KEYS = CONFIG_POSITIVE_KEYS | {"storage_quota_mb"}

CONFIG_BOOLEAN_KEYS = {"counters_persistent"}

CONFIG_STRING_KEYS = {"admin_username", "admin_password_hash", "link_scheme"}

LINK_SCHEMES = {"", "http", "https"}


def ensure_directories() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


def get_config_mtime() -> float:
    """Return the last modified timestamp for the persisted config file."""

    try:
        return CONFIG_PATH.stat().st_mtime
    except OSError:
        return 0.0


def _coerce_numeric(value, default):
    """Coerce a value to float, rejecting NaN and infinity."""
    try:
        coerced = float(value)
        if math.isnan(coerced) or math.isinf(coerced):
            return float(default)
    except (TypeError, ValueError):
        return float(default)
    return float(coerced)


def _normalize_config(raw_config: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(raw_config, dict):
        raw_config = {}

    config = DEFAULT_CONFIG.copy()
    for key in CONFIG_NUMERIC_KEYS:
        if key in raw_config:
            config[key] = _coerce_numeric(raw_config.get(key), config[key])

    for key in CONFIG_POSITIVE_KEYS:
        if config[key] < 1:
            config[key] = float(DEFAULT_CONFIG[key])

    if config["storage_quota_mb"] < 0:
        config["storage_quota_mb"] = 0.0

    for key in CONFIG_BOOLEAN_KEYS:
        if key in raw_config:
            value = raw_config.get(key)
            if isinstance(value, str):
                config[key] = value.strip().lower() in {"1", "true", "yes", "on"}
            else:
                config[key] = bool(value)

    for key in CONFIG_STRING_KEYS:
        if key in raw_config and isinstance(raw_config.get(key), str):
            config[key] = raw_config.get(key).strip()

    if not config["admin_username"]:
        config["admin_username"] = DEFAULT_CONFIG["admin_username"]

    config["link_scheme"] = config["link_scheme"].lower()
    if config["link_scheme"] not in LINK_SCHEMES:
        config["link_scheme"] = ""

    if not config["admin_password_hash"]:
        config["admin_password_hash"] = generate_password_hash(DEFAULT_ADMIN_PASSWORD)

    return config


def load_config() -> Dict[str, Any]:
    ensure_directories()
    if CONFIG_PATH.exists():
        with CONFIG_PATH.open("r", encoding="utf-8") as config_file:
            try:
                raw = json.load(config_file)
            except json.JSONDecodeError:
                logging.getLogger("sharebox.config").warning(
                    "config_invalid_json path=%s - using defaults", CONFIG_PATH
                )
                raw = DEFAULT_CONFIG.copy()
    else:
        raw = DEFAULT_CONFIG.copy()

    data = _normalize_config(raw)
    if raw != data:
        save_config(data)
    return data


def save_config(config: Dict[str, Any]) -> None:
    ensure_directories()
    normalized = _normalize_config(config)

    # Write to temporary file first for atomic update
    temp_path = CONFIG_PATH.with_suffix(".tmp")
    try:
        with temp_path.open("w", encoding="utf-8") as config_file:
            json.dump(normalized, config_file, indent=2)
            config_file.flush()
            os.fsync(config_file.fileno())
        temp_path.replace(CONFIG_PATH)
    except OSError:
        temp_path.unlink(missing_ok=True)
        raise


def apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of *config* with credentials from the environment applied."""

    updated = dict(config)
    username = os.environ.get("SHAREBOX_ADMIN_USERNAME", "").strip()
    if username:
        updated["admin_username"] = username
    password = os.environ.get("SHAREBOX_ADMIN_PASSWORD")
    if password:
        updated["admin_password_hash"] = generate_password_hash(password)
    return updated


def max_upload_bytes(config: Dict[str, Any]) -> int:
    return int(config["max_upload_size_mb"] * BYTES_PER_MB)


def storage_quota_bytes(config: Dict[str, Any]) -> int:
    return int(config["storage_quota_mb"] * BYTES_PER_MB)
