# /auditvault/drive_import.py
"""
Bulk import of Google Drive files into the document catalog.

One run resolves a file or folder reference, then imports the listed items
one at a time: download, create (or reuse) the target document, write the
blob through the upload chain, insert the file record. Each mutating step
registers a compensating action, so a failing item is unwound on its own and
reported as skipped while the run continues. The blob store, the catalog and
the provider share no transaction; compensation is best effort and logged
when it fails.
"""
from __future__ import annotations

import random
import string
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from .config import IMPORT_SKIP_SAMPLE_LIMIT, IMPORT_TRACE_LIMIT
from .drive_client import DriveClient, DriveItem, is_folder_reference, parse_file_id, parse_folder_id
from .errors import (
    FatalIngestError,
    IngestError,
    InputValidationError,
    MetadataStoreError,
    ProviderError,
    StorageError,
)
from .local_upload import BatchOutcome, classify_outcome
from .metadata_store import MetadataStore
from .metrics import IngestMetrics
from .naming import (
    detect_file_type,
    document_storage_key,
    readable_storage_name,
    safe_storage_name,
    sanitize_display_name,
)
from .observability import bind_run_context, clear_run_context, get_logger
from .storage_provider import StorageClient
from .upload_strategies import UploadChain

logger = get_logger(__name__)

IMPORT_TYPE_FILE = "file"
IMPORT_TYPE_FOLDER = "folder"


@dataclass
class ImportRequest:
    source_url: str
    section_id: str
    import_type: str = ""
    company_id: str = ""
    target_document_id: str = ""
    create_subfolder: bool = False
    subfolder_name: str = ""


@dataclass(frozen=True)
class SkippedItem:
    id: str
    name: str
    reason: str


@dataclass
class ImportResult:
    ok: bool
    run_id: str
    trace: list[str] = field(default_factory=list)
    import_type: str | None = None
    scanned: int = 0
    imported: int = 0
    skipped: int = 0
    skipped_samples: list[SkippedItem] = field(default_factory=list)
    target_section_id: str | None = None
    target_document_id: str | None = None
    error: str | None = None
    error_kind: str | None = None

    @property
    def outcome(self) -> BatchOutcome:
        return classify_outcome(self.imported, self.skipped)

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "ok": self.ok,
            "run_id": self.run_id,
            "trace": list(self.trace),
            "import_type": self.import_type,
            "scanned": self.scanned,
            "imported": self.imported,
            "skipped": self.skipped,
            "skipped_samples": [
                {"id": item.id, "name": item.name, "reason": item.reason} for item in self.skipped_samples
            ],
            "target_section_id": self.target_section_id,
            "target_document_id": self.target_document_id,
        }
        if self.ok:
            payload["outcome"] = self.outcome.value
        else:
            payload["error"] = self.error
            payload["error_kind"] = self.error_kind
        return payload


class RunTrace:
    """Bounded, timestamped log of run milestones returned to the caller."""

    def __init__(self, limit: int = IMPORT_TRACE_LIMIT):
        self._lines: deque[str] = deque(maxlen=max(1, int(limit)))

    def push(self, message: str):
        stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
        self._lines.append(f"{stamp} | {message}")

    def lines(self) -> list[str]:
        return list(self._lines)


class Compensations:
    """Undo actions for one item, run newest first when the item fails."""

    def __init__(self):
        self._actions: list[tuple[str, Callable[[], Any]]] = []

    def add(self, label: str, action: Callable[[], Any]):
        self._actions.append((label, action))

    def run(self, trace: RunTrace | None = None):
        while self._actions:
            label, action = self._actions.pop()
            try:
                action()
            except (IngestError, OSError) as exc:
                logger.error("compensation_failed", action=label, error=str(exc))
                if trace is not None:
                    trace.push(f"compensation_failed={label} err={exc}")
            else:
                if trace is not None:
                    trace.push(f"compensated={label}")


class _ItemSkipped(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass
class _RunState:
    run_id: str
    trace: RunTrace
    actor_id: str | None
    target_section_id: str
    target_document_id: str
    imported: int = 0
    skipped: int = 0
    samples: list[SkippedItem] = field(default_factory=list)


def _short_code(prefix: str, digits: int) -> str:
    return f"{prefix}-{str(int(time.time() * 1000))[-digits:]}"


class DriveImporter:
    def __init__(
        self,
        store: MetadataStore,
        chain: UploadChain,
        storage: StorageClient,
        drive: DriveClient | None,
        *,
        trace_limit: int = IMPORT_TRACE_LIMIT,
        sample_limit: int = IMPORT_SKIP_SAMPLE_LIMIT,
        metrics: IngestMetrics | None = None,
    ):
        self.store = store
        self.chain = chain
        self.storage = storage
        self.drive = drive
        self.trace_limit = int(trace_limit)
        self.sample_limit = int(sample_limit)
        self.metrics = metrics

    def run(self, request: ImportRequest, actor_id: str | None) -> ImportResult:
        run_id = str(uuid.uuid4())
        trace = RunTrace(self.trace_limit)
        trace.push("start")
        bind_run_context(run_id=run_id)
        start = time.perf_counter()
        try:
            result = self._run(request, actor_id, run_id, trace)
        except InputValidationError as exc:
            result = self._failed(run_id, trace, str(exc), "validation")
        except ProviderError as exc:
            result = self._failed(run_id, trace, str(exc), "provider")
        except (FatalIngestError, MetadataStoreError) as exc:
            trace.push(f"fatal_error={exc}")
            logger.error("import_run_failed", error=str(exc))
            result = self._failed(run_id, trace, str(exc), "fatal")
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            trace.push(f"fatal_error={error}")
            logger.error("import_run_failed", error=error, error_type=type(exc).__name__)
            result = self._failed(run_id, trace, error, "fatal")
        finally:
            clear_run_context("run_id")

        if self.metrics is not None:
            self.metrics.record_operation(
                "drive_import",
                (time.perf_counter() - start) * 1000.0,
                success=result.ok and result.skipped == 0,
                run_id=run_id,
                scanned=result.scanned,
                imported=result.imported,
                skipped=result.skipped,
            )
        return result

    @staticmethod
    def _failed(run_id: str, trace: RunTrace, error: str, kind: str) -> ImportResult:
        return ImportResult(ok=False, run_id=run_id, trace=trace.lines(), error=error, error_kind=kind)

    # --- Input validation (no network calls) ---

    def _validate(self, request: ImportRequest) -> tuple[str, str, str]:
        source = str(request.source_url or "").strip()
        missing = []
        if not source:
            missing.append("source_url")
        if not str(request.section_id or "").strip():
            missing.append("section_id")
        if missing:
            raise InputValidationError(f"{', '.join(missing)} are required")

        raw_type = str(request.import_type or "").strip().lower()
        if raw_type in (IMPORT_TYPE_FILE, IMPORT_TYPE_FOLDER):
            import_type = raw_type
        else:
            import_type = IMPORT_TYPE_FILE if "/file/" in source else IMPORT_TYPE_FOLDER

        if import_type == IMPORT_TYPE_FILE and is_folder_reference(source):
            raise InputValidationError("Provided URL points to a folder. Choose import type 'folder'.")

        reference_id = parse_file_id(source) if import_type == IMPORT_TYPE_FILE else parse_folder_id(source)
        if not reference_id:
            if import_type == IMPORT_TYPE_FILE:
                raise InputValidationError("Invalid file URL/ID. Provide Google Drive file link (file/d/...) or file ID.")
            raise InputValidationError("Invalid folder URL/ID. Provide Google Drive folder link (drive/folders/...) or folder ID.")

        subfolder_name = sanitize_display_name(request.subfolder_name)
        if request.create_subfolder and not subfolder_name:
            raise InputValidationError("subfolder_name is required when create_subfolder=true")
        if request.target_document_id and request.create_subfolder:
            raise InputValidationError("target_document_id cannot be used with create_subfolder=true")
        return import_type, reference_id, subfolder_name

    # --- Run ---

    def _run(self, request: ImportRequest, actor_id: str | None, run_id: str, trace: RunTrace) -> ImportResult:
        import_type, reference_id, subfolder_name = self._validate(request)
        section_id = str(request.section_id).strip()
        target_document_id = str(request.target_document_id or "").strip()
        trace.push(f"input_ok import_type={import_type} section_id={section_id}")
        if self.drive is None:
            raise FatalIngestError("GOOGLE_API_KEY is not configured")

        section = self.store.get_section(section_id)
        if section is None:
            raise InputValidationError("section_id not found")
        company_id = str(request.company_id or "").strip() or section.company_id
        if not company_id:
            raise InputValidationError("company_id is required (or resolvable from section_id)")
        trace.push(f"company_ok={company_id}")

        if target_document_id:
            existing = self.store.get_document(target_document_id)
            if existing is None:
                raise InputValidationError("target_document_id not found")
            if existing.section_id != section_id:
                raise InputValidationError("target_document_id does not belong to section_id")
            trace.push(f"target_document_ok={target_document_id}")
        if request.create_subfolder and section.company_id != company_id:
            raise InputValidationError("Invalid parent section")

        try:
            self.storage.ensure_bucket()
        except (StorageError, OSError) as exc:
            raise FatalIngestError(str(exc)) from exc
        trace.push(f"bucket_{self.storage.bucket}_found")

        items = self._resolve_listing(import_type, reference_id)
        trace.push(f"allowed_files={len(items)}")

        target_section_id = section_id
        if request.create_subfolder:
            subsection = self.store.create_section(
                company_id,
                parent_section_id=section_id,
                code=_short_code("GD", 5),
                name_pl=subfolder_name,
                name_uk=subfolder_name,
                order_index=section.order_index + 1,
                created_by=actor_id,
            )
            target_section_id = subsection.id
            trace.push(f"subfolder_created={target_section_id}")

        state = _RunState(
            run_id=run_id,
            trace=trace,
            actor_id=actor_id,
            target_section_id=target_section_id,
            target_document_id=target_document_id,
        )
        for item in items:
            self._import_item(item, state)

        self._write_audit(request, import_type, reference_id, subfolder_name, len(items), state)
        logger.info(
            "import_run_finished",
            import_type=import_type,
            scanned=len(items),
            imported=state.imported,
            skipped=state.skipped,
        )
        return ImportResult(
            ok=True,
            run_id=run_id,
            trace=trace.lines(),
            import_type=import_type,
            scanned=len(items),
            imported=state.imported,
            skipped=state.skipped,
            skipped_samples=list(state.samples),
            target_section_id=target_section_id,
            target_document_id=target_document_id or None,
        )

    def _resolve_listing(self, import_type: str, reference_id: str) -> list[DriveItem]:
        if import_type == IMPORT_TYPE_FOLDER:
            return [item for item in self.drive.list_folder(reference_id) if not item.is_folder]
        item = self.drive.get_file(reference_id)
        if item.is_folder:
            raise InputValidationError("Provided URL points to a folder. Choose import type 'folder'.")
        return [item]

    # --- Items ---

    def _record_skip(self, state: _RunState, item_id: str, name: str, reason: str):
        state.skipped += 1
        if len(state.samples) < self.sample_limit:
            state.samples.append(SkippedItem(id=item_id, name=name, reason=reason))
        state.trace.push(f"item_skipped id={item_id or '-'} reason={reason}")
        logger.warning("import_item_skipped", item_id=item_id, name=name, reason=reason)

    def _import_item(self, item: DriveItem, state: _RunState):
        display_name = sanitize_display_name(item.name) or f"file-{int(time.time() * 1000)}"
        compensations = Compensations()
        try:
            self._import_item_steps(item, display_name, state, compensations)
        except _ItemSkipped as skip:
            compensations.run(state.trace)
            self._record_skip(state, item.id, display_name, skip.reason)
        except Exception:
            compensations.run(state.trace)
            raise

    def _import_item_steps(self, item: DriveItem, display_name: str, state: _RunState, compensations: Compensations):
        if not item.id:
            raise _ItemSkipped("missing_file_id")
        state.trace.push(f"item_start id={item.id} name={readable_storage_name(display_name)}")

        try:
            downloaded = self.drive.download(item.id)
        except ProviderError as exc:
            raise _ItemSkipped(f"google_download_failed: {exc}") from exc
        content_type = downloaded.content_type or "application/octet-stream"

        if state.target_document_id:
            document_id = state.target_document_id
        else:
            document_id = str(uuid.uuid4())
            suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
            try:
                self.store.create_document(
                    state.target_section_id,
                    document_id=document_id,
                    code=f"{_short_code('GD', 6)}-{suffix}",
                    name_pl=display_name,
                    name_uk=display_name,
                    status="pending",
                    order_index=state.imported + 1,
                    created_by=state.actor_id,
                )
            except MetadataStoreError as exc:
                raise _ItemSkipped(
                    f"document_insert_failed: {exc} | section_id={state.target_section_id}"
                ) from exc
            compensations.add("delete_document", lambda: self.store.delete_document(document_id))

        storage_key = document_storage_key(document_id, safe_storage_name(display_name))
        upload = self.chain.upload(storage_key, downloaded.data, content_type, trace=state.trace.push)
        if not upload.ok:
            raise _ItemSkipped(
                f"storage_upload_failed: {upload.error} | bucket={self.chain.bucket} | path={storage_key}"
            )
        state.trace.push(f"storage_uploaded strategy={upload.strategy_used} path={storage_key}")
        compensations.add("remove_blob", lambda: self.storage.remove([storage_key]))

        try:
            self.store.insert_file(
                document_id,
                file_name=display_name,
                file_path=storage_key,
                file_size=len(downloaded.data),
                file_type=detect_file_type(display_name),
                mime_type=content_type,
                uploaded_by=state.actor_id,
            )
        except MetadataStoreError as exc:
            raise _ItemSkipped(f"document_file_insert_failed: {exc} | path={storage_key}") from exc
        state.imported += 1

    # --- Audit ---

    def _write_audit(
        self,
        request: ImportRequest,
        import_type: str,
        reference_id: str,
        subfolder_name: str,
        scanned: int,
        state: _RunState,
    ):
        details = {
            "run_id": state.run_id,
            "import_type": import_type,
            "source_url": request.source_url,
            "folder_id": reference_id if import_type == IMPORT_TYPE_FOLDER else None,
            "file_id": reference_id if import_type == IMPORT_TYPE_FILE else None,
            "scanned": scanned,
            "imported": state.imported,
            "skipped": state.skipped,
            "skipped_samples": [
                {"id": item.id, "name": item.name, "reason": item.reason} for item in state.samples
            ],
            "target_document_id": state.target_document_id or None,
            "create_subfolder": bool(request.create_subfolder),
            "subfolder_name": subfolder_name or None,
        }
        try:
            self.store.append_audit(
                user_id=state.actor_id,
                action="gdrive_import",
                entity_type="section",
                entity_id=state.target_section_id,
                details=details,
            )
        except MetadataStoreError as exc:
            state.trace.push(f"audit_write_failed err={exc}")
            logger.warning("audit_write_failed", action="gdrive_import", error=str(exc))
