# /auditvault/local_upload.py
"""
Uploads a user-selected batch of files into one document.

Files are validated individually and written in small concurrent windows;
one file failing never stops the rest of the batch. Every written blob
either ends up with a catalog row or is removed again.
"""
from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from .config import MAX_FILE_SIZE, MAX_FILES_PER_DOC, UPLOAD_BATCH_SIZE
from .errors import InputValidationError, MetadataStoreError, NotFoundError, StorageError
from .metadata_store import FileRecord, MetadataStore
from .metrics import IngestMetrics
from .naming import (
    detect_file_type,
    document_storage_key,
    safe_storage_name,
    sanitize_display_name,
    type_rejection,
)
from .observability import get_logger
from .storage_provider import StorageClient
from .upload_strategies import UploadChain

logger = get_logger(__name__)

ProgressFn = Callable[[int, int], None]


class BatchOutcome(str, Enum):
    ALL_SUCCEEDED = "all_succeeded"
    PARTIAL = "partial"
    ALL_FAILED = "all_failed"


def classify_outcome(succeeded: int, failed: int) -> BatchOutcome:
    if failed == 0:
        return BatchOutcome.ALL_SUCCEEDED
    if succeeded == 0:
        return BatchOutcome.ALL_FAILED
    return BatchOutcome.PARTIAL


@dataclass(frozen=True)
class CandidateFile:
    name: str
    data: bytes
    content_type: str = ""

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class FileFailure:
    name: str
    reason: str


@dataclass
class BatchUploadResult:
    document_id: str
    total: int
    uploaded: list[FileRecord] = field(default_factory=list)
    failures: list[FileFailure] = field(default_factory=list)
    cancelled: bool = False

    @property
    def succeeded(self) -> int:
        return len(self.uploaded)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def outcome(self) -> BatchOutcome:
        return classify_outcome(self.succeeded, self.failed)

    def as_dict(self) -> dict:
        return {
            "ok": self.outcome is BatchOutcome.ALL_SUCCEEDED,
            "outcome": self.outcome.value,
            "document_id": self.document_id,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "files": [record.as_dict() for record in self.uploaded],
            "failures": [{"name": item.name, "reason": item.reason} for item in self.failures],
        }


class LocalBatchUploader:
    """Validates and uploads a batch of local files with bounded concurrency."""

    def __init__(
        self,
        store: MetadataStore,
        chain: UploadChain,
        storage: StorageClient,
        *,
        max_file_size: int = MAX_FILE_SIZE,
        max_files_per_document: int = MAX_FILES_PER_DOC,
        batch_size: int = UPLOAD_BATCH_SIZE,
        metrics: IngestMetrics | None = None,
    ):
        self.store = store
        self.chain = chain
        self.storage = storage
        self.max_file_size = int(max_file_size)
        self.max_files_per_document = int(max_files_per_document)
        self.batch_size = max(1, int(batch_size))
        self.metrics = metrics

    def validate_file(self, candidate: CandidateFile) -> str | None:
        """Returns a rejection reason, or None when the file may be uploaded."""
        if candidate.size > self.max_file_size:
            return f"file_too_large: {candidate.size} > {self.max_file_size} bytes"
        return type_rejection(candidate.name, candidate.content_type)

    def upload_batch(
        self,
        document_id: str,
        files: list[CandidateFile],
        actor_id: str | None,
        *,
        cancel_event: threading.Event | None = None,
        on_progress: ProgressFn | None = None,
    ) -> BatchUploadResult:
        if not files:
            raise InputValidationError("no files selected")
        if self.store.get_document(document_id) is None:
            raise NotFoundError(f"document {document_id} not found")
        existing = self.store.count_files(document_id)
        if existing + len(files) > self.max_files_per_document:
            raise InputValidationError(
                f"max_files_per_document exceeded: {existing} existing + {len(files)} selected > {self.max_files_per_document}"
            )

        start = time.perf_counter()
        result = BatchUploadResult(document_id=str(document_id), total=len(files))
        completed = 0
        windows = [files[i:i + self.batch_size] for i in range(0, len(files), self.batch_size)]

        with ThreadPoolExecutor(max_workers=self.batch_size) as pool:
            for window_index, window in enumerate(windows):
                if cancel_event is not None and cancel_event.is_set():
                    result.cancelled = True
                    for remaining in windows[window_index:]:
                        result.failures.extend(FileFailure(item.name, "cancelled") for item in remaining)
                    logger.info("local_upload_cancelled", document_id=document_id, completed=completed, total=len(files))
                    break

                futures = [pool.submit(self._upload_one, document_id, item, actor_id) for item in window]
                for item, future in zip(window, futures):
                    record, reason = future.result()
                    if record is not None:
                        result.uploaded.append(record)
                    else:
                        result.failures.append(FileFailure(item.name, reason or "upload_failed"))
                completed += len(window)
                if on_progress is not None:
                    on_progress(completed, len(files))

        latency_ms = (time.perf_counter() - start) * 1000.0
        logger.info(
            "local_upload_finished",
            document_id=document_id,
            outcome=result.outcome.value,
            succeeded=result.succeeded,
            failed=result.failed,
            cancelled=result.cancelled,
        )
        if self.metrics is not None:
            self.metrics.record_operation(
                "local_upload",
                latency_ms,
                success=result.outcome is BatchOutcome.ALL_SUCCEEDED,
                succeeded=result.succeeded,
                failed=result.failed,
            )
        return result

    def _upload_one(
        self,
        document_id: str,
        item: CandidateFile,
        actor_id: str | None,
    ) -> tuple[FileRecord | None, str | None]:
        rejection = self.validate_file(item)
        if rejection:
            logger.info("local_upload_rejected", document_id=document_id, name=item.name, reason=rejection)
            return None, rejection

        storage_key = document_storage_key(document_id, safe_storage_name(item.name))
        content_type = item.content_type or "application/octet-stream"
        upload = self.chain.upload(storage_key, item.data, content_type)
        if not upload.ok:
            return None, f"storage_upload_failed: {upload.error} | path={storage_key}"

        try:
            record = self.store.insert_file(
                document_id,
                file_name=sanitize_display_name(item.name) or storage_key.rsplit("/", 1)[-1],
                file_path=storage_key,
                file_size=item.size,
                file_type=detect_file_type(item.name),
                mime_type=content_type,
                uploaded_by=actor_id,
            )
        except MetadataStoreError as exc:
            self._remove_orphan(storage_key)
            return None, f"document_file_insert_failed: {exc} | path={storage_key}"
        except Exception:
            self._remove_orphan(storage_key)
            raise

        try:
            self.store.append_audit(
                user_id=actor_id,
                action="upload_file",
                entity_type="document_file",
                entity_id=document_id,
                details={"file_name": item.name, "file_id": record.id, "strategy": upload.strategy_used},
            )
        except MetadataStoreError as exc:
            logger.warning("audit_write_failed", action="upload_file", entity_id=document_id, error=str(exc))

        logger.info(
            "local_upload_file_stored",
            document_id=document_id,
            file_id=record.id,
            path=storage_key,
            strategy=upload.strategy_used,
            bytes=item.size,
        )
        return record, None

    def _remove_orphan(self, storage_key: str):
        try:
            self.storage.remove([storage_key])
        except (StorageError, OSError) as exc:
            logger.error("compensation_failed", action="remove_orphan_blob", key=storage_key, error=str(exc))
