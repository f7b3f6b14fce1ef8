import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from auditvault.errors import InputValidationError, MetadataStoreError, NotFoundError, StorageError
from auditvault.file_service import FileService
from auditvault.metadata_store import MetadataStore
from auditvault.naming import document_storage_key, safe_storage_name
from auditvault.upload_strategies import UploadChain, build_upload_chain
from auditvault.versioning import VersionEngine, VersioningCapability

from fakes import CountingBlobStore, RecordingStrategy


class _FileServiceFixture(unittest.TestCase):
    provision_versions = True

    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        root = Path(self._td.name)
        self.store = MetadataStore(root / "catalog.sqlite", provision_versions=self.provision_versions)
        self.storage = CountingBlobStore(root / "blobs")
        self.chain = build_upload_chain(self.storage)
        self.engine = VersionEngine(self.store, self.storage, self.chain, VersioningCapability())
        self.service = FileService(self.store, self.storage, self.chain, self.engine, max_file_size=64)
        section = self.store.create_section("company-1", code="A")
        self.document = self.store.create_document(section.id, code="D")

    def tearDown(self):
        self.store.close()
        self._td.cleanup()

    def _create_file(self, data=b"original", name="notes.txt", mime_type="text/plain"):
        key = document_storage_key(self.document.id, safe_storage_name(name))
        self.storage.upload(key, data, mime_type)
        return self.store.insert_file(
            self.document.id,
            file_name=name,
            file_path=key,
            file_size=len(data),
            file_type="txt",
            mime_type=mime_type,
            uploaded_by="user-1",
        )


class TestFileService(_FileServiceFixture):
    def test_delete_snapshots_then_removes_everything(self):
        file = self._create_file()
        older = self.service.create_manual_snapshot(file.id, "user-1")
        self.assertTrue(older.created)

        result = self.service.delete_file(file.id, "user-1")

        self.assertTrue(result.deleted)
        self.assertTrue(result.snapshot.created)
        self.assertEqual(result.snapshot.version.reason, "before_delete")
        self.assertIsNone(result.storage_error)
        self.assertEqual(result.cleanup_warnings, [])
        self.assertIsNone(self.store.get_file(file.id))
        self.assertFalse(self.storage.exists(file.file_path))
        self.assertFalse(self.storage.exists(older.version.file_path))
        self.assertFalse(self.storage.exists(result.snapshot.version.file_path))
        self.assertEqual(self.store.list_audit(action="delete_file")[0]["entity_id"], file.id)

    def test_delete_ignores_already_missing_blob(self):
        file = self._create_file()
        self.storage.remove([file.file_path])
        result = self.service.delete_file(file.id, None)
        self.assertTrue(result.deleted)
        self.assertIsNone(result.storage_error)
        self.assertTrue(result.snapshot.warning.startswith("snapshot_download_failed"))

    def test_delete_reports_storage_error(self):
        file = self._create_file()
        self.storage.fail_remove = True
        result = self.service.delete_file(file.id, None)
        self.assertTrue(result.deleted)
        self.assertIn("remove rejected", result.storage_error)
        self.assertTrue(any(w.startswith("version_blobs=") for w in result.cleanup_warnings))

    def test_delete_of_unknown_file(self):
        with self.assertRaises(NotFoundError):
            self.service.delete_file("missing", None)

    def test_inline_edit_snapshots_previous_content(self):
        file = self._create_file(b"before")
        result = self.service.replace_content(file.id, b"after edit", "text/plain", "user-1")

        self.assertEqual(self.storage.download(file.file_path), b"after edit")
        self.assertEqual(result.file.file_size, len(b"after edit"))
        self.assertEqual(result.file.file_path, file.file_path)
        self.assertEqual(result.snapshot.version.reason, "before_inline_edit")
        self.assertEqual(self.storage.download(result.snapshot.version.file_path), b"before")
        self.assertEqual(result.strategy_used, "signed_service_role")

    def test_inline_edit_rejects_oversized_content(self):
        file = self._create_file()
        with self.assertRaises(InputValidationError):
            self.service.replace_content(file.id, b"x" * 65, "text/plain", None)
        self.assertEqual(self.storage.download(file.file_path), b"original")

    def test_inline_edit_rejects_disallowed_type(self):
        file = self._create_file()
        self.storage.calls.clear()
        with self.assertRaises(InputValidationError) as ctx:
            self.service.replace_content(file.id, b"MZ\x90\x00", "application/x-msdownload", None, file_name="payload.exe")

        self.assertEqual(str(ctx.exception), "file_type_not_allowed: extension=exe mime=application/x-msdownload")
        self.assertEqual(self.storage.calls, [])
        self.assertEqual(self.storage.download(file.file_path), b"original")
        record = self.store.get_file(file.id)
        self.assertEqual((record.file_name, record.mime_type), ("notes.txt", "text/plain"))
        self.assertEqual(self.engine.list_versions(file.id), [])

    def test_inline_edit_accepts_allowed_mime_under_new_name(self):
        file = self._create_file()
        result = self.service.replace_content(file.id, b"a,b", "text/csv", None, file_name="export")
        self.assertEqual(result.file.file_name, "export")
        self.assertEqual(result.file.mime_type, "text/csv")

    def test_inline_edit_metadata_failure_restores_blob(self):
        file = self._create_file(b"before")
        with patch.object(self.store, "update_file", side_effect=MetadataStoreError("write failed")):
            with self.assertRaises(MetadataStoreError):
                self.service.replace_content(file.id, b"after", "text/plain", None)
        self.assertEqual(self.storage.download(file.file_path), b"before")

    def test_signed_download_url_is_audited(self):
        file = self._create_file()
        url = self.service.signed_download_url(file.id, "user-1")
        self.assertIn(file.file_path.rsplit("/", 1)[-1], url)
        entry = self.store.list_audit(action="view_file")[0]
        self.assertEqual(entry["user_id"], "user-1")
        self.assertEqual(entry["details"], {"file_path": file.file_path})

    def test_rollback_is_audited(self):
        file = self._create_file(b"first")
        self.service.create_manual_snapshot(file.id, None)
        self.service.replace_content(file.id, b"second", "text/plain", None)
        result = self.service.rollback(file.id, 1, "user-1")
        self.assertEqual(self.storage.download(file.file_path), b"first")
        entry = self.store.list_audit(action="rollback_file")[0]
        self.assertEqual(entry["details"]["restored_version"], 1)
        self.assertEqual(entry["details"]["snapshot_version"], result.snapshot.version.version_number)


class TestFileServiceDegraded(_FileServiceFixture):
    provision_versions = False

    def test_delete_succeeds_without_versioning(self):
        file = self._create_file()
        result = self.service.delete_file(file.id, None)
        self.assertTrue(result.deleted)
        self.assertFalse(result.snapshot.created)
        self.assertIn("versioning_unavailable", result.snapshot.warning)
        self.assertEqual(result.cleanup_warnings, [])
        self.assertFalse(self.engine.capability.enabled)

    def test_inline_edit_proceeds_without_versioning(self):
        file = self._create_file(b"before")
        result = self.service.replace_content(file.id, b"after", "text/plain", None)
        self.assertFalse(result.snapshot.created)
        self.assertEqual(self.storage.download(file.file_path), b"after")


class TestChainExhaustionOnEdit(unittest.TestCase):
    def test_failed_upload_leaves_record_untouched(self):
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            store = MetadataStore(root / "catalog.sqlite")
            storage = CountingBlobStore(root / "blobs")
            try:
                section = store.create_section("c")
                document = store.create_document(section.id)
                storage.upload(f"{document.id}/a.txt", b"old", "text/plain")
                file = store.insert_file(
                    document.id,
                    file_name="a.txt",
                    file_path=f"{document.id}/a.txt",
                    file_size=3,
                    file_type="txt",
                    mime_type="text/plain",
                    uploaded_by=None,
                )
                chain = UploadChain([RecordingStrategy("only", error="denied")])
                engine = VersionEngine(store, storage, chain, VersioningCapability())
                service = FileService(store, storage, chain, engine)
                with self.assertRaises(StorageError) as ctx:
                    service.replace_content(file.id, b"new", "text/plain", None)
                self.assertIn("storage_upload_failed: only=denied", str(ctx.exception))
                self.assertEqual(store.get_file(file.id).file_size, 3)
                self.assertEqual(storage.download(file.file_path), b"old")
            finally:
                store.close()


if __name__ == "__main__":
    unittest.main()
