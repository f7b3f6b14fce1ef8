"""
Catalog schema and its versioned SQLite migrations.

The catalog (sections, documents, files, audit log) and the file-version
history are separate components, so a deployment can run without version
history and exercise the degraded snapshot path.
"""
from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone

from .observability import get_logger

logger = get_logger(__name__)

CATALOG_COMPONENT = "catalog"
FILE_VERSIONS_COMPONENT = "file_versions"


@dataclass(frozen=True)
class SqliteMigration:
    version: int
    name: str
    statements: tuple[str, ...]


CATALOG_MIGRATIONS: tuple[SqliteMigration, ...] = (
    SqliteMigration(
        version=1,
        name="create_catalog_tables",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS document_sections (
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL,
                parent_section_id TEXT,
                code TEXT NOT NULL DEFAULT '',
                name_pl TEXT NOT NULL DEFAULT '',
                name_uk TEXT NOT NULL DEFAULT '',
                order_index INTEGER NOT NULL DEFAULT 0,
                created_by TEXT,
                created_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS documents (
                id TEXT PRIMARY KEY,
                section_id TEXT NOT NULL REFERENCES document_sections(id),
                code TEXT NOT NULL DEFAULT '',
                name_pl TEXT NOT NULL DEFAULT '',
                name_uk TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL DEFAULT 'pending',
                order_index INTEGER NOT NULL DEFAULT 0,
                created_by TEXT,
                created_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS document_files (
                id TEXT PRIMARY KEY,
                document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
                file_name TEXT NOT NULL,
                file_path TEXT NOT NULL UNIQUE,
                file_size INTEGER NOT NULL DEFAULT 0,
                file_type TEXT NOT NULL DEFAULT '',
                mime_type TEXT NOT NULL DEFAULT '',
                uploaded_by TEXT,
                created_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_document_files_document ON document_files(document_id, created_at)",
            "CREATE INDEX IF NOT EXISTS idx_documents_section ON documents(section_id)",
            """
            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT,
                action TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT,
                details TEXT,
                created_at TEXT NOT NULL
            )
            """,
        ),
    ),
    SqliteMigration(
        version=2,
        name="index_audit_log_by_action",
        statements=("CREATE INDEX IF NOT EXISTS idx_audit_log_action ON audit_log(action, created_at)",),
    ),
)

FILE_VERSION_MIGRATIONS: tuple[SqliteMigration, ...] = (
    SqliteMigration(
        version=1,
        name="create_document_file_versions_table",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS document_file_versions (
                id TEXT PRIMARY KEY,
                file_id TEXT NOT NULL REFERENCES document_files(id) ON DELETE CASCADE,
                document_id TEXT NOT NULL,
                version_number INTEGER NOT NULL,
                file_path TEXT NOT NULL,
                file_name TEXT NOT NULL,
                file_size INTEGER NOT NULL DEFAULT 0,
                file_type TEXT NOT NULL DEFAULT '',
                mime_type TEXT NOT NULL DEFAULT '',
                reason TEXT NOT NULL,
                created_by TEXT,
                created_at TEXT NOT NULL,
                UNIQUE(file_id, version_number)
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_file_versions_file ON document_file_versions(file_id, version_number)",
        ),
    ),
)


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def applied_versions(conn: sqlite3.Connection, component: str) -> set[int]:
    try:
        rows = conn.execute(
            "SELECT version FROM schema_migrations WHERE component = ?",
            (component,),
        ).fetchall()
    except sqlite3.OperationalError:
        return set()
    return {int(row[0]) for row in rows}


def apply_sqlite_migrations(
    conn: sqlite3.Connection,
    *,
    component: str,
    migrations: tuple[SqliteMigration, ...] | list[SqliteMigration],
) -> list[int]:
    """Applies pending migrations of one component in version order; returns the versions applied."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            component TEXT NOT NULL,
            version INTEGER NOT NULL,
            name TEXT NOT NULL,
            applied_at TEXT NOT NULL,
            PRIMARY KEY(component, version)
        )
        """
    )

    done = applied_versions(conn, component)
    newly_applied: list[int] = []
    for migration in sorted(migrations, key=lambda m: int(m.version)):
        version = int(migration.version)
        if version in done:
            continue
        for statement in migration.statements:
            sql = str(statement or "").strip()
            if sql:
                conn.execute(sql)
        conn.execute(
            "INSERT INTO schema_migrations (component, version, name, applied_at) VALUES (?, ?, ?, ?)",
            (component, version, migration.name, _utcnow_iso()),
        )
        newly_applied.append(version)
        logger.info("db_migration_applied", component=component, version=version, name=migration.name)
    return newly_applied


def migrate_catalog(conn: sqlite3.Connection, *, provision_versions: bool = True) -> dict[str, list[int]]:
    """Brings the catalog up to date; version history only when provision_versions is set."""
    applied = {CATALOG_COMPONENT: apply_sqlite_migrations(conn, component=CATALOG_COMPONENT, migrations=CATALOG_MIGRATIONS)}
    if provision_versions:
        applied[FILE_VERSIONS_COMPONENT] = apply_sqlite_migrations(
            conn,
            component=FILE_VERSIONS_COMPONENT,
            migrations=FILE_VERSION_MIGRATIONS,
        )
    else:
        logger.warning("file_versions_not_provisioned", component=FILE_VERSIONS_COMPONENT)
    return applied
