# /auditvault/metadata_store.py
"""
SQLite-backed catalog for sections, documents, file records, version
records and the audit log.

Errors are translated into the pipeline taxonomy: missing tables/columns
raise MissingSchemaError (the versioning degraded-mode trigger), a closed or
unreachable database raises MetadataUnavailableError, everything else raises
MetadataStoreError.
"""
from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .config import DB_PATH, PROVISION_VERSION_TABLE
from .db_migrations import migrate_catalog
from .errors import MetadataStoreError, MetadataUnavailableError, MissingSchemaError
from .observability import get_logger

logger = get_logger(__name__)

_MISSING_SCHEMA_MARKERS = ("no such table", "no such column", "has no column named")
_UNAVAILABLE_MARKERS = ("unable to open", "disk i/o error", "closed database", "database is locked")

_FILE_UPDATABLE_FIELDS = ("file_name", "file_size", "file_type", "mime_type")


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _new_id() -> str:
    return str(uuid.uuid4())


def translate_sqlite_error(exc: sqlite3.Error) -> MetadataStoreError | MetadataUnavailableError:
    message = str(exc)
    lowered = message.lower()
    if any(marker in lowered for marker in _MISSING_SCHEMA_MARKERS):
        return MissingSchemaError(message)
    if isinstance(exc, sqlite3.ProgrammingError) and "closed" in lowered:
        return MetadataUnavailableError(message)
    if any(marker in lowered for marker in _UNAVAILABLE_MARKERS):
        return MetadataUnavailableError(message)
    return MetadataStoreError(message)


@dataclass(frozen=True)
class SectionRecord:
    id: str
    company_id: str
    parent_section_id: str | None
    code: str
    name_pl: str
    name_uk: str
    order_index: int
    created_by: str | None
    created_at: str


@dataclass(frozen=True)
class DocumentRecord:
    id: str
    section_id: str
    code: str
    name_pl: str
    name_uk: str
    status: str
    order_index: int
    created_by: str | None
    created_at: str


@dataclass(frozen=True)
class FileRecord:
    id: str
    document_id: str
    file_name: str
    file_path: str
    file_size: int
    file_type: str
    mime_type: str
    uploaded_by: str | None
    created_at: str

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class VersionRecord:
    id: str
    file_id: str
    document_id: str
    version_number: int
    file_path: str
    file_name: str
    file_size: int
    file_type: str
    mime_type: str
    reason: str
    created_by: str | None
    created_at: str

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class MetadataStore:
    """Catalog rows the ingestion pipeline reads and writes."""

    def __init__(self, db_path: Path | None = None, *, provision_versions: bool = PROVISION_VERSION_TABLE):
        self.db_path = Path(db_path) if db_path else Path(DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.provision_versions = bool(provision_versions)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = self._connect()
        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.Error:
            pass
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        except sqlite3.Error as exc:
            raise MetadataUnavailableError(f"catalog database unavailable: {exc}") from exc
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise MetadataUnavailableError("catalog connection is closed")
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise translate_sqlite_error(exc) from exc
            except Exception:
                self._conn.rollback()
                raise

    def close(self):
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.commit()
            except sqlite3.Error:
                pass
            self._conn.close()
            self._conn = None

    def __del__(self):
        try:
            self.close()
        except Exception:
            pass

    # --- Schema ---

    def _ensure_schema(self):
        with self._connection() as conn:
            migrate_catalog(conn, provision_versions=self.provision_versions)

    # --- Sections & documents ---

    @staticmethod
    def _row_to_section(row: sqlite3.Row) -> SectionRecord:
        return SectionRecord(
            id=str(row["id"]),
            company_id=str(row["company_id"]),
            parent_section_id=row["parent_section_id"],
            code=str(row["code"] or ""),
            name_pl=str(row["name_pl"] or ""),
            name_uk=str(row["name_uk"] or ""),
            order_index=int(row["order_index"] or 0),
            created_by=row["created_by"],
            created_at=str(row["created_at"]),
        )

    @staticmethod
    def _row_to_document(row: sqlite3.Row) -> DocumentRecord:
        return DocumentRecord(
            id=str(row["id"]),
            section_id=str(row["section_id"]),
            code=str(row["code"] or ""),
            name_pl=str(row["name_pl"] or ""),
            name_uk=str(row["name_uk"] or ""),
            status=str(row["status"] or "pending"),
            order_index=int(row["order_index"] or 0),
            created_by=row["created_by"],
            created_at=str(row["created_at"]),
        )

    def create_section(
        self,
        company_id: str,
        *,
        code: str = "",
        name_pl: str = "",
        name_uk: str = "",
        parent_section_id: str | None = None,
        order_index: int = 0,
        created_by: str | None = None,
        section_id: str | None = None,
    ) -> SectionRecord:
        record = SectionRecord(
            id=section_id or _new_id(),
            company_id=str(company_id),
            parent_section_id=parent_section_id,
            code=str(code or ""),
            name_pl=str(name_pl or ""),
            name_uk=str(name_uk or ""),
            order_index=int(order_index or 0),
            created_by=created_by,
            created_at=_utcnow_iso(),
        )
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO document_sections (id, company_id, parent_section_id, code, name_pl, name_uk, order_index, created_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.company_id,
                    record.parent_section_id,
                    record.code,
                    record.name_pl,
                    record.name_uk,
                    record.order_index,
                    record.created_by,
                    record.created_at,
                ),
            )
        return record

    def get_section(self, section_id: str) -> SectionRecord | None:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM document_sections WHERE id = ?", (str(section_id),)).fetchone()
        return self._row_to_section(row) if row else None

    def create_document(
        self,
        section_id: str,
        *,
        code: str = "",
        name_pl: str = "",
        name_uk: str = "",
        status: str = "pending",
        order_index: int = 0,
        created_by: str | None = None,
        document_id: str | None = None,
    ) -> DocumentRecord:
        record = DocumentRecord(
            id=document_id or _new_id(),
            section_id=str(section_id),
            code=str(code or ""),
            name_pl=str(name_pl or ""),
            name_uk=str(name_uk or ""),
            status=str(status or "pending"),
            order_index=int(order_index or 0),
            created_by=created_by,
            created_at=_utcnow_iso(),
        )
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO documents (id, section_id, code, name_pl, name_uk, status, order_index, created_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.section_id,
                    record.code,
                    record.name_pl,
                    record.name_uk,
                    record.status,
                    record.order_index,
                    record.created_by,
                    record.created_at,
                ),
            )
        return record

    def get_document(self, document_id: str) -> DocumentRecord | None:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM documents WHERE id = ?", (str(document_id),)).fetchone()
        return self._row_to_document(row) if row else None

    def list_documents(self, section_id: str) -> list[DocumentRecord]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM documents WHERE section_id = ? ORDER BY order_index ASC, created_at ASC",
                (str(section_id),),
            ).fetchall()
        return [self._row_to_document(row) for row in rows]

    def delete_document(self, document_id: str) -> bool:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM documents WHERE id = ?", (str(document_id),))
        return cursor.rowcount > 0

    # --- File records ---

    @staticmethod
    def _row_to_file(row: sqlite3.Row) -> FileRecord:
        return FileRecord(
            id=str(row["id"]),
            document_id=str(row["document_id"]),
            file_name=str(row["file_name"]),
            file_path=str(row["file_path"]),
            file_size=int(row["file_size"] or 0),
            file_type=str(row["file_type"] or ""),
            mime_type=str(row["mime_type"] or ""),
            uploaded_by=row["uploaded_by"],
            created_at=str(row["created_at"]),
        )

    def count_files(self, document_id: str) -> int:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS cnt FROM document_files WHERE document_id = ?",
                (str(document_id),),
            ).fetchone()
        return int(row["cnt"]) if row else 0

    def insert_file(
        self,
        document_id: str,
        *,
        file_name: str,
        file_path: str,
        file_size: int,
        file_type: str,
        mime_type: str,
        uploaded_by: str | None,
    ) -> FileRecord:
        record = FileRecord(
            id=_new_id(),
            document_id=str(document_id),
            file_name=str(file_name),
            file_path=str(file_path),
            file_size=int(file_size or 0),
            file_type=str(file_type or ""),
            mime_type=str(mime_type or ""),
            uploaded_by=uploaded_by,
            created_at=_utcnow_iso(),
        )
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO document_files (id, document_id, file_name, file_path, file_size, file_type, mime_type, uploaded_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.document_id,
                    record.file_name,
                    record.file_path,
                    record.file_size,
                    record.file_type,
                    record.mime_type,
                    record.uploaded_by,
                    record.created_at,
                ),
            )
        return record

    def get_file(self, file_id: str) -> FileRecord | None:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM document_files WHERE id = ?", (str(file_id),)).fetchone()
        return self._row_to_file(row) if row else None

    def list_files(self, document_id: str) -> list[FileRecord]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM document_files WHERE document_id = ? ORDER BY created_at ASC, id ASC",
                (str(document_id),),
            ).fetchall()
        return [self._row_to_file(row) for row in rows]

    def update_file(self, file_id: str, **fields: Any) -> FileRecord:
        updates = {key: value for key, value in fields.items() if key in _FILE_UPDATABLE_FIELDS}
        if not updates:
            raise MetadataStoreError("no updatable file fields supplied")
        assignments = ", ".join(f"{key} = ?" for key in updates)
        with self._connection() as conn:
            cursor = conn.execute(
                f"UPDATE document_files SET {assignments} WHERE id = ?",
                (*updates.values(), str(file_id)),
            )
            if cursor.rowcount == 0:
                raise MetadataStoreError(f"file {file_id} not found")
            row = conn.execute("SELECT * FROM document_files WHERE id = ?", (str(file_id),)).fetchone()
        return self._row_to_file(row)

    def delete_file(self, file_id: str) -> bool:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM document_files WHERE id = ?", (str(file_id),))
        return cursor.rowcount > 0

    # --- Version records ---

    @staticmethod
    def _row_to_version(row: sqlite3.Row) -> VersionRecord:
        return VersionRecord(
            id=str(row["id"]),
            file_id=str(row["file_id"]),
            document_id=str(row["document_id"]),
            version_number=int(row["version_number"]),
            file_path=str(row["file_path"]),
            file_name=str(row["file_name"]),
            file_size=int(row["file_size"] or 0),
            file_type=str(row["file_type"] or ""),
            mime_type=str(row["mime_type"] or ""),
            reason=str(row["reason"]),
            created_by=row["created_by"],
            created_at=str(row["created_at"]),
        )

    def next_version_number(self, file_id: str) -> int:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT MAX(version_number) AS latest FROM document_file_versions WHERE file_id = ?",
                (str(file_id),),
            ).fetchone()
        latest = row["latest"] if row else None
        return int(latest or 0) + 1

    def insert_version(
        self,
        file: FileRecord,
        *,
        version_number: int,
        file_path: str,
        reason: str,
        created_by: str | None,
    ) -> VersionRecord:
        record = VersionRecord(
            id=_new_id(),
            file_id=file.id,
            document_id=file.document_id,
            version_number=int(version_number),
            file_path=str(file_path),
            file_name=file.file_name,
            file_size=int(file.file_size),
            file_type=file.file_type,
            mime_type=file.mime_type,
            reason=str(reason),
            created_by=created_by,
            created_at=_utcnow_iso(),
        )
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO document_file_versions (
                    id, file_id, document_id, version_number, file_path, file_name, file_size, file_type, mime_type, reason, created_by, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.file_id,
                    record.document_id,
                    record.version_number,
                    record.file_path,
                    record.file_name,
                    record.file_size,
                    record.file_type,
                    record.mime_type,
                    record.reason,
                    record.created_by,
                    record.created_at,
                ),
            )
        return record

    def get_version(self, file_id: str, version_number: int) -> VersionRecord | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM document_file_versions WHERE file_id = ? AND version_number = ?",
                (str(file_id), int(version_number)),
            ).fetchone()
        return self._row_to_version(row) if row else None

    def list_versions(self, file_id: str) -> list[VersionRecord]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM document_file_versions WHERE file_id = ? ORDER BY version_number DESC",
                (str(file_id),),
            ).fetchall()
        return [self._row_to_version(row) for row in rows]

    def delete_versions(self, file_id: str) -> int:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM document_file_versions WHERE file_id = ?", (str(file_id),))
        return int(cursor.rowcount or 0)

    # --- Audit log ---

    def append_audit(
        self,
        *,
        user_id: str | None,
        action: str,
        entity_type: str,
        entity_id: str | None,
        details: dict[str, Any] | None = None,
    ):
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (user_id, action, entity_type, entity_id, details, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    str(action),
                    str(entity_type),
                    entity_id,
                    json.dumps(details, ensure_ascii=False, default=str) if details is not None else None,
                    _utcnow_iso(),
                ),
            )

    def list_audit(self, action: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        sql = "SELECT user_id, action, entity_type, entity_id, details, created_at FROM audit_log"
        params: list[Any] = []
        if action:
            sql += " WHERE action = ?"
            params.append(str(action))
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(max(1, int(limit)))
        with self._connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        entries = []
        for row in rows:
            entry = dict(row)
            entry["details"] = json.loads(entry["details"]) if entry.get("details") else None
            entries.append(entry)
        return entries
