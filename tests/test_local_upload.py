import tempfile
import threading
import unittest
from pathlib import Path
from unittest.mock import patch

from auditvault.errors import InputValidationError, MetadataStoreError, NotFoundError
from auditvault.local_upload import BatchOutcome, CandidateFile, LocalBatchUploader
from auditvault.metadata_store import MetadataStore
from auditvault.metrics import IngestMetrics
from auditvault.upload_strategies import UploadChain, build_upload_chain

from fakes import CountingBlobStore, RecordingStrategy


def _pdf(name, size=16):
    return CandidateFile(name=name, data=b"%" * size, content_type="application/pdf")


class TestLocalBatchUploader(unittest.TestCase):
    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        root = Path(self._td.name)
        self.store = MetadataStore(root / "catalog.sqlite")
        self.storage = CountingBlobStore(root / "blobs")
        self.metrics = IngestMetrics(log_dir=root / "metrics")
        self.chain = build_upload_chain(self.storage)
        self.uploader = self._uploader(self.chain)
        section = self.store.create_section("company-1", code="A")
        self.document = self.store.create_document(section.id, code="D")

    def tearDown(self):
        self.store.close()
        self._td.cleanup()

    def _uploader(self, chain, **overrides):
        options = {"max_file_size": 1024, "max_files_per_document": 100, "batch_size": 3, "metrics": self.metrics}
        options.update(overrides)
        return LocalBatchUploader(self.store, chain, self.storage, **options)

    def _seed_files(self, count):
        for index in range(count):
            self.store.insert_file(
                self.document.id,
                file_name=f"seed-{index}.pdf",
                file_path=f"{self.document.id}/seed-{index}.pdf",
                file_size=1,
                file_type="pdf",
                mime_type="application/pdf",
                uploaded_by=None,
            )

    def test_all_files_uploaded_under_safe_keys(self):
        files = [_pdf("Raport roczny.pdf"), _pdf("Звіт.PDF"), CandidateFile("notes.txt", b"hello", "text/plain")]
        result = self.uploader.upload_batch(self.document.id, files, "user-1")

        self.assertEqual(result.outcome, BatchOutcome.ALL_SUCCEEDED)
        self.assertEqual(result.succeeded, 3)
        self.assertEqual(self.store.count_files(self.document.id), 3)
        for record in result.uploaded:
            self.assertTrue(record.file_path.startswith(f"{self.document.id}/"))
            self.assertNotIn(" ", record.file_path)
            self.assertTrue(self.storage.exists(record.file_path))
        self.assertEqual(
            sorted(record.file_name for record in result.uploaded),
            ["Raport roczny.pdf", "notes.txt", "Звіт.PDF"],
        )
        self.assertEqual(len(self.store.list_audit(action="upload_file")), 3)

    def test_cap_rejects_whole_batch_before_any_upload(self):
        self._seed_files(98)
        self.storage.calls.clear()
        files = [_pdf(f"f{index}.pdf") for index in range(5)]
        with self.assertRaises(InputValidationError) as ctx:
            self.uploader.upload_batch(self.document.id, files, None)
        self.assertIn("max_files_per_document", str(ctx.exception))
        self.assertEqual(self.storage.calls, [])
        self.assertEqual(self.store.count_files(self.document.id), 98)

    def test_cap_allows_exact_fill(self):
        self._seed_files(98)
        result = self.uploader.upload_batch(self.document.id, [_pdf("a.pdf"), _pdf("b.pdf")], None)
        self.assertEqual(result.outcome, BatchOutcome.ALL_SUCCEEDED)
        self.assertEqual(self.store.count_files(self.document.id), 100)

    def test_empty_selection_and_unknown_document(self):
        with self.assertRaises(InputValidationError):
            self.uploader.upload_batch(self.document.id, [], None)
        with self.assertRaises(NotFoundError):
            self.uploader.upload_batch("missing-doc", [_pdf("a.pdf")], None)

    def test_invalid_files_fail_individually(self):
        files = [
            _pdf("ok.pdf"),
            _pdf("huge.pdf", size=2048),
            CandidateFile("script.exe", b"MZ", "application/x-msdownload"),
            CandidateFile("export", b"a,b", "text/csv"),
        ]
        result = self.uploader.upload_batch(self.document.id, files, None)

        self.assertEqual(result.outcome, BatchOutcome.PARTIAL)
        self.assertEqual(result.succeeded, 2)
        reasons = {failure.name: failure.reason for failure in result.failures}
        self.assertTrue(reasons["huge.pdf"].startswith("file_too_large"))
        self.assertTrue(reasons["script.exe"].startswith("file_type_not_allowed"))
        stored = {record.file_name: record for record in result.uploaded}
        self.assertTrue(stored["export"].file_path.endswith(".bin"))

    def test_insert_failure_removes_blob(self):
        original_insert = self.store.insert_file

        def flaky_insert(document_id, **fields):
            if fields["file_name"] == "bad.pdf":
                raise MetadataStoreError("insert rejected")
            return original_insert(document_id, **fields)

        with patch.object(self.store, "insert_file", side_effect=flaky_insert):
            result = self.uploader.upload_batch(self.document.id, [_pdf("good.pdf"), _pdf("bad.pdf")], None)

        self.assertEqual(result.outcome, BatchOutcome.PARTIAL)
        failure = result.failures[0]
        self.assertEqual(failure.name, "bad.pdf")
        self.assertTrue(failure.reason.startswith("document_file_insert_failed: insert rejected | path="))
        orphan_key = failure.reason.rsplit("path=", 1)[-1]
        self.assertFalse(self.storage.exists(orphan_key))
        self.assertIn(("remove", (orphan_key,)), self.storage.calls)

    def test_exhausted_chain_fails_every_file(self):
        uploader = self._uploader(UploadChain([RecordingStrategy("signed_service_role", error="denied")]))
        result = uploader.upload_batch(self.document.id, [_pdf("a.pdf"), _pdf("b.pdf")], None)
        self.assertEqual(result.outcome, BatchOutcome.ALL_FAILED)
        self.assertTrue(all("signed_service_role=denied" in failure.reason for failure in result.failures))
        self.assertEqual(self.store.count_files(self.document.id), 0)

    def test_concurrency_is_bounded_by_window(self):
        strategy = RecordingStrategy("slow", storage=self.storage, delay_s=0.05)
        uploader = self._uploader(UploadChain([strategy]))
        progress = []
        files = [_pdf(f"f{index}.pdf") for index in range(7)]
        result = uploader.upload_batch(
            self.document.id,
            files,
            None,
            on_progress=lambda done, total: progress.append((done, total)),
        )
        self.assertEqual(result.succeeded, 7)
        self.assertLessEqual(strategy.max_active, 3)
        self.assertEqual(progress, [(3, 7), (6, 7), (7, 7)])

    def test_cancellation_between_windows(self):
        cancel = threading.Event()
        progress = []

        def on_progress(done, total):
            progress.append(done)
            cancel.set()

        files = [_pdf(f"f{index}.pdf") for index in range(7)]
        result = self.uploader.upload_batch(self.document.id, files, None, cancel_event=cancel, on_progress=on_progress)

        self.assertTrue(result.cancelled)
        self.assertEqual(progress, [3])
        self.assertEqual(result.succeeded, 3)
        self.assertEqual([failure.reason for failure in result.failures], ["cancelled"] * 4)
        self.assertEqual(result.outcome, BatchOutcome.PARTIAL)
        self.assertEqual(self.store.count_files(self.document.id), 3)

    def test_metrics_record_batches(self):
        self.uploader.upload_batch(self.document.id, [_pdf("a.pdf")], None)
        summary = self.metrics.get_summary()
        self.assertEqual(summary["operations"]["local_upload"]["count"], 1)
        self.assertEqual(summary["operations"]["local_upload"]["failures"], 0)


if __name__ == "__main__":
    unittest.main()
