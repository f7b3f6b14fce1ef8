# /auditvault/config.py
"""
Centralized configuration for the ingestion pipeline.
Includes storage endpoints, credentials, upload limits and paths.
"""
import os
from pathlib import Path

from dotenv import load_dotenv
from rich.console import Console

from .observability import configure_logging

# ==============================================================================
# CONSOLE & ENVIRONMENT
# ==============================================================================
console = Console()
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        return float(default)
    return max(float(minimum), value)


def _env_str(*names: str, default: str = "") -> str:
    for name in names:
        raw = os.getenv(name)
        if raw is not None and str(raw).strip():
            return str(raw).strip()
    return default


# ==============================================================================
# GLOBAL CONFIGURATION
# ==============================================================================
# --- Path Configuration ---
# Data directory is at ../../data relative to this file (src/auditvault/config.py)
_BASE_DIR = Path(__file__).resolve().parent.parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(_BASE_DIR / "data")))

DB_PATH = Path(os.getenv("DB_PATH", str(DATA_DIR / "catalog.sqlite")))
STORAGE_DIR = Path(os.getenv("STORAGE_DIR", str(DATA_DIR / "blob_store")))
CACHE_DIR = Path(os.getenv("CACHE_DIR", str(DATA_DIR / "runtime_cache")))

# --- Blob Store ---
STORAGE_BUCKET = _env_str("STORAGE_BUCKET", default="documents")
SUPABASE_URL = _env_str("SUPABASE_URL").rstrip("/")
SERVICE_ROLE_KEY = _env_str("SERVICE_ROLE_KEY", "SUPABASE_SERVICE_ROLE_KEY")
SUPABASE_ANON_KEY = _env_str("SUPABASE_ANON_KEY")
SIGNED_URL_TTL_S = _env_int("SIGNED_URL_TTL_S", 3600, minimum=60)

# --- External Content Provider ---
GOOGLE_API_KEY = _env_str("GOOGLE_API_KEY")
DRIVE_API_URL = _env_str("DRIVE_API_URL", default="https://www.googleapis.com/drive/v3").rstrip("/")
HTTP_TIMEOUT_S = _env_float("HTTP_TIMEOUT_S", 30.0, minimum=1.0)

# --- Upload Limits ---
MAX_FILE_SIZE = _env_int("MAX_FILE_SIZE", 100 * 1024 * 1024, minimum=1)
MAX_FILES_PER_DOC = _env_int("MAX_FILES_PER_DOC", 100, minimum=1)
UPLOAD_BATCH_SIZE = _env_int("UPLOAD_BATCH_SIZE", 3, minimum=1)

# --- Import Diagnostics ---
IMPORT_TRACE_LIMIT = _env_int("IMPORT_TRACE_LIMIT", 80, minimum=10)
IMPORT_SKIP_SAMPLE_LIMIT = _env_int("IMPORT_SKIP_SAMPLE_LIMIT", 20, minimum=1)

# --- Versioning ---
VERSIONING_ENABLED = _env_bool("VERSIONING_ENABLED", True)
# Set to false to run against a catalog without the versions table (degraded mode).
PROVISION_VERSION_TABLE = _env_bool("PROVISION_VERSION_TABLE", True)

# --- Create necessary directories ---
DATA_DIR.mkdir(parents=True, exist_ok=True)
STORAGE_DIR.mkdir(parents=True, exist_ok=True)
CACHE_DIR.mkdir(parents=True, exist_ok=True)
LOG_PATH = Path(os.getenv("LOG_PATH", str(CACHE_DIR / "app.log")))
LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
configure_logging(LOG_PATH)
