"""
Safe naming for stored blobs.

Storage keys are built from a random identifier plus an allow-listed
extension and never from the caller-supplied filename. The readable
normalizer exists for diagnostics (trace lines, skip samples) only.
"""
from __future__ import annotations

import re
import time
import unicodedata
import uuid
from datetime import datetime, timezone

ALLOWED_EXTENSIONS: tuple[str, ...] = ("pdf", "doc", "docx", "xls", "xlsx", "txt", "csv")
FALLBACK_EXTENSION = "bin"

ALLOWED_MIME_TYPES: frozenset[str] = frozenset(
    {
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "text/plain",
        "text/csv",
    }
)

_MAX_NAME_LEN = 140
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")
_DISPLAY_UNSAFE_RE = re.compile(r'[\\/:*?"<>|]')
_NON_WORD_RE = re.compile(r"[^\w.\- ]+")
_WHITESPACE_RE = re.compile(r"\s+")
_UNDERSCORES_RE = re.compile(r"_+")
_STORAGE_PATH_RE = re.compile(r"^[a-zA-Z0-9\-_./]+$")


def file_extension(name: str) -> str:
    """Lower-cased, alphanumeric-only suffix after the last dot ('' if none)."""
    raw = str(name or "").strip()
    idx = raw.rfind(".")
    if idx <= 0 or idx >= len(raw) - 1:
        return ""
    return _NON_ALNUM_RE.sub("", raw[idx + 1:].lower())


def is_allowed_extension(ext: str) -> bool:
    return str(ext or "").lower() in ALLOWED_EXTENSIONS


def type_rejection(name: str, content_type: str) -> str | None:
    """Reason a file may not be stored, or None when its extension or MIME type is allowed."""
    ext = file_extension(name)
    mime = str(content_type or "").split(";")[0].strip().lower()
    if is_allowed_extension(ext) or mime in ALLOWED_MIME_TYPES:
        return None
    return f"file_type_not_allowed: extension={ext or '-'} mime={mime or '-'}"


def safe_storage_name(original_name: str) -> str:
    ext = file_extension(original_name)
    if not is_allowed_extension(ext):
        ext = FALLBACK_EXTENSION
    return f"{uuid.uuid4()}.{ext}"


def detect_file_type(name: str) -> str:
    return file_extension(name) or FALLBACK_EXTENSION


def sanitize_display_name(name: str) -> str:
    return _DISPLAY_UNSAFE_RE.sub("-", str(name or "").strip())[:_MAX_NAME_LEN].strip()


def readable_storage_name(name: str) -> str:
    """Diacritic-free, word-character-only rendition of a filename for display in diagnostics."""
    decomposed = unicodedata.normalize("NFKD", str(name or "file"))
    base = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    base = _NON_WORD_RE.sub("_", base)
    base = _WHITESPACE_RE.sub("_", base)
    base = _UNDERSCORES_RE.sub("_", base).strip("_")[:_MAX_NAME_LEN]
    return base or f"file-{int(time.time() * 1000)}"


def document_storage_key(document_id: str, safe_name: str) -> str:
    return f"{document_id}/{safe_name}"


def version_timestamp(moment: datetime | None = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")


def version_storage_key(
    document_id: str,
    file_id: str,
    safe_name: str,
    timestamp: str | None = None,
) -> str:
    stamp = timestamp or version_timestamp()
    return f"versions/{document_id}/{file_id}/{stamp}-{safe_name}"


def is_valid_storage_path(path: str) -> bool:
    if not path or not isinstance(path, str):
        return False
    if ".." in path or "//" in path or path.startswith("/"):
        return False
    return bool(_STORAGE_PATH_RE.match(path))
