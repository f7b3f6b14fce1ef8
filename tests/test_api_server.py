import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

from auditvault import api_server
from auditvault.metadata_store import MetadataStore
from auditvault.runtime import Runtime

from fakes import CountingBlobStore, FakeDrive

_FOLDER_URL = "https://drive.google.com/drive/folders/1FolderAbcdefgh"
_HEADERS = {"X-Actor-Id": "user-1"}


class TestApiServer(unittest.TestCase):
    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        root = Path(self._td.name)
        self.store = MetadataStore(root / "catalog.sqlite")
        self.storage = CountingBlobStore(root / "blobs")
        self.drive = FakeDrive()
        api_server._state["runtime"] = Runtime(self.store, self.storage, drive=self.drive)
        self.section = self.store.create_section("company-1", code="A")
        self.document = self.store.create_document(self.section.id, code="D")
        self.client = TestClient(api_server.app)
        self.client.__enter__()

    def tearDown(self):
        self.client.__exit__(None, None, None)
        api_server._state.clear()
        self.store.close()
        self._td.cleanup()

    def _upload(self, name="notes.txt", data=b"first", content_type="text/plain"):
        response = self.client.post(
            f"/documents/{self.document.id}/files",
            files=[("files", (name, data, content_type))],
            headers=_HEADERS,
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["files"][0]

    def test_batch_upload(self):
        response = self.client.post(
            f"/documents/{self.document.id}/files",
            files=[
                ("files", ("a.pdf", b"%PDF", "application/pdf")),
                ("files", ("b.exe", b"MZ", "application/x-msdownload")),
            ],
            headers=_HEADERS,
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["outcome"], "partial")
        self.assertEqual(body["succeeded"], 1)
        self.assertTrue(body["failures"][0]["reason"].startswith("file_type_not_allowed"))
        self.assertEqual(body["files"][0]["uploaded_by"], "user-1")

        listing = self.client.get(f"/documents/{self.document.id}/files").json()
        self.assertEqual(len(listing["files"]), 1)

    def test_upload_to_unknown_document(self):
        response = self.client.post(
            "/documents/missing/files",
            files=[("files", ("a.pdf", b"%PDF", "application/pdf"))],
        )
        self.assertEqual(response.status_code, 404)

    def test_versions_edit_and_rollback(self):
        file = self._upload()
        self.assertEqual(self.client.get(f"/files/{file['id']}/versions").json()["versions"], [])

        snapshot = self.client.post(f"/files/{file['id']}/versions", headers=_HEADERS).json()
        self.assertTrue(snapshot["created"])
        self.assertEqual(snapshot["version"]["version_number"], 1)

        edit = self.client.put(
            f"/files/{file['id']}/content",
            files={"file": ("notes.txt", b"second", "text/plain")},
            headers=_HEADERS,
        )
        self.assertEqual(edit.status_code, 200, edit.text)
        self.assertEqual(edit.json()["snapshot"]["version"]["reason"], "before_inline_edit")
        self.assertEqual(self.storage.download(file["file_path"]), b"second")

        rollback = self.client.post(f"/files/{file['id']}/rollback", json={"version_number": 1}, headers=_HEADERS)
        self.assertEqual(rollback.status_code, 200, rollback.text)
        self.assertEqual(rollback.json()["snapshot"]["version"]["version_number"], 3)
        self.assertEqual(self.storage.download(file["file_path"]), b"first")

        versions = self.client.get(f"/files/{file['id']}/versions").json()
        self.assertTrue(versions["versioning_enabled"])
        self.assertEqual([v["version_number"] for v in versions["versions"]], [3, 2, 1])

    def test_rollback_to_unknown_version(self):
        file = self._upload()
        response = self.client.post(f"/files/{file['id']}/rollback", json={"version_number": 9})
        self.assertEqual(response.status_code, 404)
        invalid = self.client.post(f"/files/{file['id']}/rollback", json={"version_number": 0})
        self.assertEqual(invalid.status_code, 422)

    def test_delete_and_download_url(self):
        file = self._upload()
        url = self.client.get(f"/files/{file['id']}/download-url", headers=_HEADERS).json()["url"]
        self.assertIn(file["file_path"].rsplit("/", 1)[-1], url)

        deleted = self.client.delete(f"/files/{file['id']}", headers=_HEADERS)
        self.assertEqual(deleted.status_code, 200)
        self.assertTrue(deleted.json()["deleted"])
        self.assertEqual(deleted.json()["snapshot_version"], 1)
        self.assertEqual(self.client.delete(f"/files/{file['id']}").status_code, 404)

    def test_drive_import_validation_error_keeps_trace(self):
        response = self.client.post(
            "/imports/drive",
            json={"source_url": _FOLDER_URL, "section_id": self.section.id, "import_type": "file"},
            headers=_HEADERS,
        )
        self.assertEqual(response.status_code, 400)
        body = response.json()
        self.assertFalse(body["ok"])
        self.assertEqual(body["error_kind"], "validation")
        self.assertTrue(body["run_id"])
        self.assertTrue(body["trace"])
        self.assertEqual(self.drive.calls, [])

    def test_drive_import_folder(self):
        self.drive.add_file("1Item0000000000", "Umowa.pdf", b"%PDF", parent="1FolderAbcdefgh")
        response = self.client.post(
            "/imports/drive",
            json={"source_url": _FOLDER_URL, "section_id": self.section.id},
            headers=_HEADERS,
        )
        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertEqual((body["scanned"], body["imported"], body["skipped"]), (1, 1, 0))
        self.assertEqual(body["outcome"], "all_succeeded")

    def test_metrics(self):
        response = self.client.get("/metrics")
        self.assertEqual(response.status_code, 200)
        self.assertIn("operations", response.json())
        self.assertIn("memory", response.json())


class TestApiServerBeforeStartup(unittest.TestCase):
    def test_requests_before_startup_get_503(self):
        api_server._state.clear()
        client = TestClient(api_server.app)
        self.assertEqual(client.get("/documents/doc-1/files").status_code, 503)
        self.assertEqual(client.get("/files/file-1/versions").status_code, 503)


if __name__ == "__main__":
    unittest.main()
