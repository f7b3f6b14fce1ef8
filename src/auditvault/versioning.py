"""
Version snapshots and rollback for stored files.

Before a destructive change to a file (delete, inline edit, rollback), the
current blob and its metadata are copied into an immutable version record.
Version history is optional: when the versions table or one of its columns
is missing, the engine's capability flips to degraded and every later
snapshot becomes a warning-only no-op, while the calling operation proceeds.
"""
from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass, field

from .errors import (
    MetadataStoreError,
    MissingSchemaError,
    NotFoundError,
    RollbackError,
    StorageError,
)
from .metadata_store import FileRecord, MetadataStore, VersionRecord
from .naming import version_storage_key
from .observability import get_logger
from .storage_provider import StorageClient
from .upload_strategies import UploadChain

logger = get_logger(__name__)

REASON_MANUAL = "manual"
REASON_BEFORE_DELETE = "before_delete"
REASON_BEFORE_INLINE_EDIT = "before_inline_edit"


def rollback_reason(version_number: int) -> str:
    return f"before_rollback_to_v{int(version_number)}"


class FileLocks:
    """Per-file re-entrant locks, shared by every engine working on one catalog."""

    def __init__(self):
        self._registry_lock = threading.Lock()
        self._locks: dict[str, threading.RLock] = defaultdict(threading.RLock)

    def for_file(self, file_id: str) -> threading.RLock:
        with self._registry_lock:
            return self._locks[str(file_id)]


class VersioningCapability:
    """Whether version snapshots can be taken; shared by the engines of one catalog."""

    def __init__(self, enabled: bool = True):
        self._lock = threading.Lock()
        self._degraded_reason: str | None = None if enabled else "versioning_disabled_by_config"

    @property
    def enabled(self) -> bool:
        with self._lock:
            return self._degraded_reason is None

    @property
    def degraded_reason(self) -> str | None:
        with self._lock:
            return self._degraded_reason

    def mark_degraded(self, reason: str) -> bool:
        """Returns True only for the call that performed the transition."""
        with self._lock:
            if self._degraded_reason is not None:
                return False
            self._degraded_reason = str(reason or "versioning_unavailable")
        logger.warning("versioning_degraded", reason=self._degraded_reason)
        return True


@dataclass
class SnapshotOutcome:
    version: VersionRecord | None = None
    warning: str | None = None

    @property
    def created(self) -> bool:
        return self.version is not None


@dataclass
class RollbackResult:
    file: FileRecord
    restored_version: int
    strategy_used: str | None
    snapshot: SnapshotOutcome
    warnings: list[str] = field(default_factory=list)


class VersionEngine:
    def __init__(
        self,
        store: MetadataStore,
        storage: StorageClient,
        chain: UploadChain,
        capability: VersioningCapability | None = None,
        file_locks: FileLocks | None = None,
    ):
        self.store = store
        self.storage = storage
        self.chain = chain
        self.capability = capability or VersioningCapability()
        self.file_locks = file_locks or FileLocks()

    def _lock_for(self, file_id: str) -> threading.RLock:
        return self.file_locks.for_file(file_id)

    def _degrade(self, exc: MissingSchemaError) -> str:
        self.capability.mark_degraded(f"version_schema_missing: {exc}")
        return f"versioning_unavailable: {exc}"

    # --- Snapshots ---

    def snapshot(
        self,
        file: FileRecord,
        reason: str,
        actor_id: str | None,
        *,
        current_bytes: bytes | None = None,
    ) -> SnapshotOutcome:
        """Copies the file's current blob into a new version; failures come back as warnings."""
        if not self.capability.enabled:
            warning = f"versioning_unavailable: {self.capability.degraded_reason}"
            logger.warning("version_snapshot_skipped", file_id=file.id, reason=reason, detail=warning)
            return SnapshotOutcome(warning=warning)

        with self._lock_for(file.id):
            return self._snapshot_locked(file, reason, actor_id, current_bytes)

    def _snapshot_locked(
        self,
        file: FileRecord,
        reason: str,
        actor_id: str | None,
        current_bytes: bytes | None,
    ) -> SnapshotOutcome:
        try:
            version_number = self.store.next_version_number(file.id)
        except MissingSchemaError as exc:
            return SnapshotOutcome(warning=self._degrade(exc))
        except MetadataStoreError as exc:
            logger.warning("version_snapshot_failed", file_id=file.id, stage="next_version", error=str(exc))
            return SnapshotOutcome(warning=f"snapshot_version_lookup_failed: {exc}")

        if current_bytes is None:
            try:
                current_bytes = self.storage.download(file.file_path)
            except (StorageError, OSError) as exc:
                logger.warning("version_snapshot_failed", file_id=file.id, stage="download", error=str(exc))
                return SnapshotOutcome(warning=f"snapshot_download_failed: {exc}")

        stored_name = file.file_path.rsplit("/", 1)[-1]
        version_key = version_storage_key(file.document_id, file.id, stored_name)
        upload = self.chain.upload(version_key, current_bytes, file.mime_type)
        if not upload.ok:
            logger.warning("version_snapshot_failed", file_id=file.id, stage="upload", errors=upload.errors)
            return SnapshotOutcome(warning=f"snapshot_upload_failed: {upload.error}")

        try:
            version = self.store.insert_version(
                file,
                version_number=version_number,
                file_path=version_key,
                reason=reason,
                created_by=actor_id,
            )
        except MetadataStoreError as exc:
            self._remove_orphan(version_key)
            if isinstance(exc, MissingSchemaError):
                return SnapshotOutcome(warning=self._degrade(exc))
            logger.warning("version_snapshot_failed", file_id=file.id, stage="insert", error=str(exc))
            return SnapshotOutcome(warning=f"snapshot_insert_failed: {exc}")

        logger.info(
            "version_snapshot_created",
            file_id=file.id,
            version_number=version.version_number,
            reason=reason,
            path=version_key,
        )
        return SnapshotOutcome(version=version)

    def _remove_orphan(self, key: str):
        try:
            self.storage.remove([key])
        except (StorageError, OSError) as exc:
            logger.error("compensation_failed", action="remove_version_blob", key=key, error=str(exc))

    # --- Queries ---

    def list_versions(self, file_id: str) -> list[VersionRecord]:
        if not self.capability.enabled:
            return []
        try:
            return self.store.list_versions(file_id)
        except MissingSchemaError as exc:
            self._degrade(exc)
            return []

    # --- Rollback ---

    def rollback(self, file_id: str, version_number: int, actor_id: str | None) -> RollbackResult:
        """Restores a prior version as the current blob, snapshotting the active content first."""
        file = self.store.get_file(file_id)
        if file is None:
            raise NotFoundError(f"file {file_id} not found")
        if not self.capability.enabled:
            raise RollbackError(f"versioning_unavailable: {self.capability.degraded_reason}")

        with self._lock_for(file.id):
            try:
                target = self.store.get_version(file.id, version_number)
            except MissingSchemaError as exc:
                raise RollbackError(self._degrade(exc)) from exc
            except MetadataStoreError as exc:
                raise RollbackError(f"version_lookup_failed: {exc}") from exc
            if target is None:
                raise NotFoundError(f"version {version_number} of file {file_id} not found")

            warnings: list[str] = []
            try:
                previous_bytes = self.storage.download(file.file_path)
            except (StorageError, OSError) as exc:
                previous_bytes = None
                warnings.append(f"current_download_failed: {exc}")

            snapshot = self.snapshot(file, rollback_reason(target.version_number), actor_id, current_bytes=previous_bytes)
            if snapshot.warning:
                warnings.append(snapshot.warning)

            try:
                restored_bytes = self.storage.download(target.file_path)
            except (StorageError, OSError) as exc:
                raise RollbackError(f"version_download_failed: {exc}") from exc

            upload = self.chain.upload(file.file_path, restored_bytes, target.mime_type)
            if not upload.ok:
                raise RollbackError(f"restore_upload_failed: {upload.error}")

            try:
                updated = self.store.update_file(
                    file.id,
                    file_size=target.file_size,
                    mime_type=target.mime_type,
                    file_type=target.file_type,
                )
            except MetadataStoreError as exc:
                self._restore_previous(file, previous_bytes)
                raise RollbackError(f"metadata_update_failed: {exc}") from exc

        logger.info(
            "version_rollback_completed",
            file_id=file.id,
            restored_version=target.version_number,
            snapshot_version=snapshot.version.version_number if snapshot.version else None,
            strategy=upload.strategy_used,
        )
        return RollbackResult(
            file=updated,
            restored_version=target.version_number,
            strategy_used=upload.strategy_used,
            snapshot=snapshot,
            warnings=warnings,
        )

    def _restore_previous(self, file: FileRecord, previous_bytes: bytes | None):
        if previous_bytes is None:
            logger.error("compensation_failed", action="restore_pre_rollback_blob", file_id=file.id, error="no_previous_bytes")
            return
        result = self.chain.upload(file.file_path, previous_bytes, file.mime_type)
        if not result.ok:
            logger.error("compensation_failed", action="restore_pre_rollback_blob", file_id=file.id, error=result.error)

    # --- Cleanup ---

    def version_keys(self, file: FileRecord) -> tuple[list[str], list[str]]:
        """Storage keys of every version blob of a file, plus lookup warnings."""
        try:
            versions = self.store.list_versions(file.id)
        except MissingSchemaError:
            return [], []
        except MetadataStoreError as exc:
            return [], [f"document_file_versions={exc}"]
        return [version.file_path for version in versions if version.file_path], []

    def purge_versions(self, file: FileRecord, keys: list[str]) -> list[str]:
        """Removes the given version blobs and every version row of a file; returns cleanup warnings."""
        warnings: list[str] = []
        if keys:
            try:
                self.storage.remove(keys)
            except (StorageError, OSError) as exc:
                warnings.append(f"version_blobs={exc}")

        try:
            self.store.delete_versions(file.id)
        except MissingSchemaError:
            pass
        except MetadataStoreError as exc:
            warnings.append(f"document_file_versions={exc}")
        return warnings
