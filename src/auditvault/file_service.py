"""
Mutating operations on existing file records.

Delete, inline edit and rollback take a version snapshot first when
versioning is available; snapshot problems are returned as warnings and
never stop the operation itself.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .config import MAX_FILE_SIZE, SIGNED_URL_TTL_S
from .errors import InputValidationError, MetadataStoreError, NotFoundError, StorageError
from .metadata_store import FileRecord, MetadataStore, VersionRecord
from .naming import detect_file_type, sanitize_display_name, type_rejection
from .observability import get_logger
from .storage_provider import StorageClient
from .upload_strategies import UploadChain
from .versioning import (
    REASON_BEFORE_DELETE,
    REASON_BEFORE_INLINE_EDIT,
    REASON_MANUAL,
    RollbackResult,
    SnapshotOutcome,
    VersionEngine,
)

logger = get_logger(__name__)


@dataclass
class DeleteResult:
    file_id: str
    deleted: bool
    snapshot: SnapshotOutcome
    storage_error: str | None = None
    cleanup_warnings: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "ok": self.deleted,
            "deleted": self.deleted,
            "file_id": self.file_id,
            "snapshot_version": self.snapshot.version.version_number if self.snapshot.version else None,
            "snapshot_warning": self.snapshot.warning,
            "storage_error": self.storage_error,
            "cleanup_warnings": list(self.cleanup_warnings),
        }


@dataclass
class EditResult:
    file: FileRecord
    snapshot: SnapshotOutcome
    strategy_used: str | None


class FileService:
    def __init__(
        self,
        store: MetadataStore,
        storage: StorageClient,
        chain: UploadChain,
        engine: VersionEngine,
        *,
        max_file_size: int = MAX_FILE_SIZE,
        signed_url_ttl_s: int = SIGNED_URL_TTL_S,
    ):
        self.store = store
        self.storage = storage
        self.chain = chain
        self.engine = engine
        self.max_file_size = int(max_file_size)
        self.signed_url_ttl_s = int(signed_url_ttl_s)

    def _require_file(self, file_id: str) -> FileRecord:
        file = self.store.get_file(file_id)
        if file is None:
            raise NotFoundError(f"file {file_id} not found")
        return file

    def _audit(self, actor_id: str | None, action: str, entity_id: str, details: dict[str, Any]):
        try:
            self.store.append_audit(
                user_id=actor_id,
                action=action,
                entity_type="document_file",
                entity_id=entity_id,
                details=details,
            )
        except MetadataStoreError as exc:
            logger.warning("audit_write_failed", action=action, entity_id=entity_id, error=str(exc))

    def list_versions(self, file_id: str) -> list[VersionRecord]:
        self._require_file(file_id)
        return self.engine.list_versions(file_id)

    def create_manual_snapshot(self, file_id: str, actor_id: str | None) -> SnapshotOutcome:
        file = self._require_file(file_id)
        outcome = self.engine.snapshot(file, REASON_MANUAL, actor_id)
        if outcome.created:
            self._audit(actor_id, "snapshot_file", file.id, {"version_number": outcome.version.version_number})
        return outcome

    def signed_download_url(self, file_id: str, actor_id: str | None = None) -> str:
        file = self._require_file(file_id)
        url = self.storage.create_signed_url(file.file_path, self.signed_url_ttl_s)
        self._audit(actor_id, "view_file", file.document_id, {"file_path": file.file_path})
        return url

    def delete_file(self, file_id: str, actor_id: str | None) -> DeleteResult:
        file = self._require_file(file_id)
        snapshot = self.engine.snapshot(file, REASON_BEFORE_DELETE, actor_id)

        version_keys, warnings = self.engine.version_keys(file)
        # The catalog row goes first so a failed delete keeps the before_delete snapshot.
        if not self.store.delete_file(file.id):
            raise NotFoundError(f"file {file_id} not found")
        warnings.extend(self.engine.purge_versions(file, version_keys))

        storage_error = None
        try:
            self.storage.remove([file.file_path])
        except StorageError as exc:
            if not exc.not_found:
                storage_error = str(exc)
        except OSError as exc:
            storage_error = str(exc)

        self._audit(actor_id, "delete_file", file.id, {"file_path": file.file_path, "storage_error": storage_error})
        logger.info(
            "file_deleted",
            file_id=file.id,
            document_id=file.document_id,
            snapshot_created=snapshot.created,
            storage_error=storage_error,
            cleanup_warnings=warnings,
        )
        return DeleteResult(
            file_id=file.id,
            deleted=True,
            snapshot=snapshot,
            storage_error=storage_error,
            cleanup_warnings=warnings,
        )

    def replace_content(
        self,
        file_id: str,
        data: bytes,
        content_type: str,
        actor_id: str | None,
        *,
        file_name: str | None = None,
    ) -> EditResult:
        """Inline edit: overwrites the current blob in place and refreshes size/type metadata."""
        file = self._require_file(file_id)
        if len(data) > self.max_file_size:
            raise InputValidationError(f"file exceeds {self.max_file_size} bytes")
        display_name = sanitize_display_name(file_name) if file_name else file.file_name
        rejection = type_rejection(display_name, content_type)
        if rejection:
            raise InputValidationError(rejection)

        try:
            previous_bytes = self.storage.download(file.file_path)
        except (StorageError, OSError) as exc:
            logger.warning("inline_edit_previous_download_failed", file_id=file.id, error=str(exc))
            previous_bytes = None

        snapshot = self.engine.snapshot(file, REASON_BEFORE_INLINE_EDIT, actor_id, current_bytes=previous_bytes)

        mime_type = content_type or file.mime_type or "application/octet-stream"
        upload = self.chain.upload(file.file_path, data, mime_type)
        if not upload.ok:
            raise StorageError(f"storage_upload_failed: {upload.error} | path={file.file_path}")

        try:
            updated = self.store.update_file(
                file.id,
                file_name=display_name,
                file_size=len(data),
                mime_type=mime_type,
                file_type=detect_file_type(display_name),
            )
        except MetadataStoreError:
            if previous_bytes is not None:
                restore = self.chain.upload(file.file_path, previous_bytes, file.mime_type)
                if not restore.ok:
                    logger.error("compensation_failed", action="restore_pre_edit_blob", file_id=file.id, error=restore.error)
            raise

        self._audit(actor_id, "edit_file", file.id, {"file_size": len(data), "strategy": upload.strategy_used})
        return EditResult(file=updated, snapshot=snapshot, strategy_used=upload.strategy_used)

    def rollback(self, file_id: str, version_number: int, actor_id: str | None) -> RollbackResult:
        result = self.engine.rollback(file_id, version_number, actor_id)
        self._audit(
            actor_id,
            "rollback_file",
            file_id,
            {
                "restored_version": result.restored_version,
                "snapshot_version": result.snapshot.version.version_number if result.snapshot.version else None,
            },
        )
        return result
