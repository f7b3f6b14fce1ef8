# /auditvault/runtime.py
"""
Wires the catalog, blob store clients and orchestrators from configuration.

Shared, long-lived pieces (the catalog connection, the elevated storage
client, the versioning capability, the per-file locks) live on `Runtime`;
the upload chain depends on the caller's token, so the services built on it
are assembled per actor with `Runtime.services(actor)`.
"""
from __future__ import annotations

from dataclasses import dataclass

import httpx

from .config import (
    DB_PATH,
    GOOGLE_API_KEY,
    HTTP_TIMEOUT_S,
    MAX_FILE_SIZE,
    MAX_FILES_PER_DOC,
    SERVICE_ROLE_KEY,
    SIGNED_URL_TTL_S,
    STORAGE_BUCKET,
    STORAGE_DIR,
    SUPABASE_ANON_KEY,
    SUPABASE_URL,
    UPLOAD_BATCH_SIZE,
    VERSIONING_ENABLED,
)
from .drive_client import DriveClient
from .drive_import import DriveImporter
from .file_service import FileService
from .local_upload import LocalBatchUploader
from .metadata_store import MetadataStore
from .metrics import IngestMetrics, metrics_collector
from .observability import get_logger
from .storage_provider import LocalBlobStore, StorageClient, SupabaseStorageClient
from .upload_strategies import UploadChain, build_upload_chain
from .versioning import FileLocks, VersionEngine, VersioningCapability

logger = get_logger(__name__)


@dataclass(frozen=True)
class Actor:
    user_id: str | None = None
    access_token: str = ""


@dataclass
class Services:
    actor: Actor
    chain: UploadChain
    engine: VersionEngine
    files: FileService
    uploader: LocalBatchUploader
    importer: DriveImporter | None


class Runtime:
    def __init__(
        self,
        store: MetadataStore,
        storage: StorageClient,
        *,
        capability: VersioningCapability | None = None,
        metrics: IngestMetrics | None = None,
        drive: DriveClient | None = None,
        http: httpx.Client | None = None,
        base_url: str = "",
        service_key: str = "",
        anon_key: str = "",
    ):
        self.store = store
        self.storage = storage
        self.capability = capability or VersioningCapability(VERSIONING_ENABLED)
        self.metrics = metrics
        self.drive = drive
        self.http = http
        self.base_url = base_url
        self.service_key = service_key
        self.anon_key = anon_key
        self.file_locks = FileLocks()

    def _user_client(self, actor: Actor) -> StorageClient | None:
        if not (self.base_url and self.anon_key and actor.access_token):
            return None
        return SupabaseStorageClient(
            self.base_url,
            self.anon_key,
            bearer_token=actor.access_token,
            bucket=self.storage.bucket,
            http_client=self.http,
        )

    def services(self, actor: Actor | None = None) -> Services:
        actor = actor or Actor()
        chain = build_upload_chain(
            self.storage,
            self._user_client(actor),
            base_url=self.base_url,
            service_key=self.service_key,
            anon_key=self.anon_key,
            access_token=actor.access_token,
            http=self.http,
            metrics=self.metrics,
        )
        engine = VersionEngine(self.store, self.storage, chain, self.capability, self.file_locks)
        files = FileService(
            self.store,
            self.storage,
            chain,
            engine,
            max_file_size=MAX_FILE_SIZE,
            signed_url_ttl_s=SIGNED_URL_TTL_S,
        )
        uploader = LocalBatchUploader(
            self.store,
            chain,
            self.storage,
            max_file_size=MAX_FILE_SIZE,
            max_files_per_document=MAX_FILES_PER_DOC,
            batch_size=UPLOAD_BATCH_SIZE,
            metrics=self.metrics,
        )
        importer = None
        if self.drive is not None:
            importer = DriveImporter(self.store, chain, self.storage, self.drive, metrics=self.metrics)
        return Services(actor=actor, chain=chain, engine=engine, files=files, uploader=uploader, importer=importer)

    def close(self):
        self.store.close()
        if self.drive is not None:
            self.drive.close()
        if self.http is not None:
            self.http.close()


def build_runtime(
    *,
    store: MetadataStore | None = None,
    storage: StorageClient | None = None,
    drive: DriveClient | None = None,
    metrics: IngestMetrics | None = metrics_collector,
) -> Runtime:
    """Builds a runtime from configuration; arguments override the configured pieces."""
    store = store or MetadataStore(DB_PATH)
    http = None
    base_url = ""
    if storage is None:
        if SUPABASE_URL and SERVICE_ROLE_KEY:
            http = httpx.Client(timeout=HTTP_TIMEOUT_S)
            storage = SupabaseStorageClient(
                SUPABASE_URL,
                SERVICE_ROLE_KEY,
                bucket=STORAGE_BUCKET,
                http_client=http,
            )
            base_url = SUPABASE_URL
        else:
            storage = LocalBlobStore(STORAGE_DIR, STORAGE_BUCKET)
    if drive is None and GOOGLE_API_KEY:
        drive = DriveClient(GOOGLE_API_KEY)

    logger.info(
        "runtime_ready",
        storage=type(storage).__name__,
        bucket=storage.bucket,
        drive_enabled=drive is not None,
        versioning_enabled=VERSIONING_ENABLED,
    )
    return Runtime(
        store,
        storage,
        metrics=metrics,
        drive=drive,
        http=http,
        base_url=base_url,
        service_key=SERVICE_ROLE_KEY if base_url else "",
        anon_key=SUPABASE_ANON_KEY if base_url else "",
    )
