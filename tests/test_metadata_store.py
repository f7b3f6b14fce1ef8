import sqlite3
import tempfile
import unittest
from pathlib import Path

from auditvault.db_migrations import migrate_catalog
from auditvault.errors import MetadataStoreError, MetadataUnavailableError, MissingSchemaError
from auditvault.metadata_store import MetadataStore, translate_sqlite_error


class TestMetadataStore(unittest.TestCase):
    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.db_path = Path(self._td.name) / "catalog.sqlite"
        self.store = MetadataStore(self.db_path)
        section = self.store.create_section("company-1", code="A.1", name_pl="Sekcja", name_uk="Розділ")
        self.document = self.store.create_document(section.id, code="D-1", name_pl="Dok", name_uk="Док")

    def tearDown(self):
        self.store.close()
        self._td.cleanup()

    def _insert(self, path="doc/a.pdf"):
        return self.store.insert_file(
            self.document.id,
            file_name="a.pdf",
            file_path=path,
            file_size=4,
            file_type="pdf",
            mime_type="application/pdf",
            uploaded_by="user-1",
        )

    def test_migrations_are_recorded_per_component(self):
        with self.store._connection() as conn:
            rows = conn.execute("SELECT component, version FROM schema_migrations ORDER BY component, version").fetchall()
        self.assertEqual([(row[0], row[1]) for row in rows], [("catalog", 1), ("catalog", 2), ("file_versions", 1)])

        reopened = MetadataStore(self.db_path)
        try:
            with reopened._connection() as conn:
                count = conn.execute("SELECT COUNT(*) FROM schema_migrations").fetchone()[0]
            self.assertEqual(count, 3)
        finally:
            reopened.close()

    def test_file_crud_and_counts(self):
        record = self._insert()
        self.assertEqual(self.store.count_files(self.document.id), 1)
        self.assertEqual(self.store.get_file(record.id), record)

        updated = self.store.update_file(record.id, file_size=9, mime_type="text/plain", uploaded_by="ignored")
        self.assertEqual(updated.file_size, 9)
        self.assertEqual(updated.mime_type, "text/plain")
        self.assertEqual(updated.uploaded_by, "user-1")

        self.assertTrue(self.store.delete_file(record.id))
        self.assertFalse(self.store.delete_file(record.id))
        self.assertIsNone(self.store.get_file(record.id))

    def test_duplicate_storage_path_is_rejected(self):
        self._insert("doc/same.pdf")
        with self.assertRaises(MetadataStoreError) as ctx:
            self._insert("doc/same.pdf")
        self.assertNotIsInstance(ctx.exception, MissingSchemaError)

    def test_update_of_missing_file_raises(self):
        with self.assertRaises(MetadataStoreError):
            self.store.update_file("missing", file_size=1)
        with self.assertRaises(MetadataStoreError):
            self.store.update_file("missing")

    def test_version_numbers_increase(self):
        record = self._insert()
        self.assertEqual(self.store.next_version_number(record.id), 1)
        self.store.insert_version(record, version_number=1, file_path="versions/x/1.pdf", reason="manual", created_by=None)
        self.store.insert_version(record, version_number=2, file_path="versions/x/2.pdf", reason="manual", created_by=None)
        self.assertEqual(self.store.next_version_number(record.id), 3)
        self.assertEqual([v.version_number for v in self.store.list_versions(record.id)], [2, 1])
        with self.assertRaises(MetadataStoreError):
            self.store.insert_version(record, version_number=2, file_path="versions/x/2b.pdf", reason="manual", created_by=None)

    def test_deleting_file_cascades_versions(self):
        record = self._insert()
        self.store.insert_version(record, version_number=1, file_path="versions/x/1.pdf", reason="manual", created_by=None)
        self.store.delete_file(record.id)
        self.assertEqual(self.store.list_versions(record.id), [])

    def test_audit_details_round_trip(self):
        self.store.append_audit(
            user_id="user-1",
            action="upload_file",
            entity_type="document_file",
            entity_id=self.document.id,
            details={"file_name": "Звіт.pdf"},
        )
        entries = self.store.list_audit(action="upload_file")
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0]["details"], {"file_name": "Звіт.pdf"})


class TestMetadataStoreFailures(unittest.TestCase):
    def test_unprovisioned_versions_table_raises_missing_schema(self):
        with tempfile.TemporaryDirectory() as td:
            store = MetadataStore(Path(td) / "catalog.sqlite", provision_versions=False)
            try:
                with self.assertRaises(MissingSchemaError):
                    store.next_version_number("file-1")
                with self.assertRaises(MissingSchemaError):
                    store.list_versions("file-1")
            finally:
                store.close()

    def test_closed_store_is_unavailable(self):
        with tempfile.TemporaryDirectory() as td:
            store = MetadataStore(Path(td) / "catalog.sqlite")
            store.close()
            with self.assertRaises(MetadataUnavailableError):
                store.get_file("file-1")

    def test_error_translation(self):
        self.assertIsInstance(
            translate_sqlite_error(sqlite3.OperationalError("no such column: reason")),
            MissingSchemaError,
        )
        self.assertIsInstance(
            translate_sqlite_error(sqlite3.OperationalError("table x has no column named file_type")),
            MissingSchemaError,
        )
        self.assertIsInstance(
            translate_sqlite_error(sqlite3.OperationalError("database is locked")),
            MetadataUnavailableError,
        )
        generic = translate_sqlite_error(sqlite3.IntegrityError("UNIQUE constraint failed"))
        self.assertIs(type(generic), MetadataStoreError)


class TestCatalogMigrations(unittest.TestCase):
    def test_migrations_apply_once(self):
        conn = sqlite3.connect(":memory:")
        try:
            first = migrate_catalog(conn)
            second = migrate_catalog(conn)
        finally:
            conn.close()
        self.assertEqual(first, {"catalog": [1, 2], "file_versions": [1]})
        self.assertEqual(second, {"catalog": [], "file_versions": []})

    def test_version_history_can_be_left_out(self):
        conn = sqlite3.connect(":memory:")
        try:
            applied = migrate_catalog(conn, provision_versions=False)
            tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
        finally:
            conn.close()
        self.assertEqual(applied, {"catalog": [1, 2]})
        self.assertIn("document_files", tables)
        self.assertNotIn("document_file_versions", tables)


if __name__ == "__main__":
    unittest.main()
