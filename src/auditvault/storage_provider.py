"""
Blob storage abstraction for document files.

LocalBlobStore keeps objects on the local filesystem (development, tests).
SupabaseStorageClient talks to a hosted Storage REST API through httpx and
is constructed once under the service key and, optionally, once under the
caller's own session. rest_upload is the raw write path used when the
client-level calls are rejected.
"""
from __future__ import annotations

import os
import secrets
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from urllib.parse import parse_qs, quote, urlparse

import httpx

from .errors import StorageError
from .naming import is_valid_storage_path
from .observability import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SignedUpload:
    path: str
    token: str
    url: str


class StorageClient(Protocol):
    bucket: str

    def upload(self, key: str, data: bytes, content_type: str, *, upsert: bool = True) -> None:
        ...

    def download(self, key: str) -> bytes:
        ...

    def remove(self, keys: list[str]) -> None:
        ...

    def create_signed_upload_url(self, key: str, *, upsert: bool = True) -> SignedUpload:
        ...

    def upload_to_signed_url(self, key: str, token: str, data: bytes, content_type: str) -> None:
        ...

    def create_signed_url(self, key: str, expires_in: int) -> str:
        ...

    def ensure_bucket(self) -> None:
        ...


def _require_valid_key(key: str):
    if not is_valid_storage_path(key):
        raise StorageError(f"invalid storage key: {key!r}", status=400)


class LocalBlobStore:
    """Filesystem-backed bucket; every write is an overwrite of the object key."""

    def __init__(self, root: Path, bucket: str = "documents", *, signed_token_ttl_s: int = 7200):
        self._root = Path(root)
        self.bucket = str(bucket)
        self._signed_token_ttl_s = int(signed_token_ttl_s)
        self._tokens: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root / self.bucket

    def ensure_bucket(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def _object_path(self, key: str) -> Path:
        _require_valid_key(key)
        return self.root / key

    def exists(self, key: str) -> bool:
        return self._object_path(key).is_file()

    def upload(self, key: str, data: bytes, content_type: str, *, upsert: bool = True) -> None:
        destination = self._object_path(key)
        if not upsert and destination.exists():
            raise StorageError("The resource already exists", status=409)
        destination.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = destination.with_name(f".{destination.name}.{secrets.token_hex(4)}.tmp")
        tmp_path.write_bytes(bytes(data))
        os.replace(tmp_path, destination)

    def download(self, key: str) -> bytes:
        source = self._object_path(key)
        if not source.is_file():
            raise StorageError(f"Object not found: {key}", status=404, not_found=True)
        return source.read_bytes()

    def remove(self, keys: list[str]) -> None:
        for key in keys:
            target = self._object_path(key)
            try:
                target.unlink()
            except FileNotFoundError:
                continue

    def create_signed_upload_url(self, key: str, *, upsert: bool = True) -> SignedUpload:
        destination = self._object_path(key)
        if not upsert and destination.exists():
            raise StorageError("The resource already exists", status=409)
        token = secrets.token_urlsafe(24)
        with self._lock:
            self._tokens[token] = (key, time.time() + self._signed_token_ttl_s)
        return SignedUpload(path=key, token=token, url=f"{destination.as_uri()}?token={token}")

    def upload_to_signed_url(self, key: str, token: str, data: bytes, content_type: str) -> None:
        with self._lock:
            entry = self._tokens.pop(str(token), None)
        if entry is None:
            raise StorageError("invalid signed upload token", status=400)
        token_key, expires_at = entry
        if token_key != key:
            raise StorageError("signed upload token does not match object key", status=400)
        if expires_at < time.time():
            raise StorageError("signed upload token expired", status=400)
        self.upload(key, data, content_type, upsert=True)

    def create_signed_url(self, key: str, expires_in: int) -> str:
        source = self._object_path(key)
        if not source.is_file():
            raise StorageError(f"Object not found: {key}", status=404, not_found=True)
        return f"{source.as_uri()}?expires_in={int(expires_in)}"


# ---------------------------------------------------------------------------
# Hosted Storage REST API
# ---------------------------------------------------------------------------

def storage_object_url(base_url: str, bucket: str, object_path: str) -> str:
    safe_bucket = quote(str(bucket or "").strip(), safe="")
    safe_path = "/".join(quote(part, safe="") for part in str(object_path or "").split("/"))
    return f"{str(base_url).rstrip('/')}/storage/v1/object/{safe_bucket}/{safe_path}"


def extract_error_message(response: httpx.Response) -> str:
    """Pulls message/error/msg out of a JSON error body, falling back to raw text or the status code."""
    raw = response.text or ""
    parsed_message = ""
    try:
        parsed = response.json() if raw else None
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        parsed_message = str(parsed.get("message") or parsed.get("error") or parsed.get("msg") or "")
    return parsed_message or raw or f"status_{response.status_code}"


def _is_not_found(status: int, message: str) -> bool:
    return status == 404 or "not found" in str(message).lower()


def rest_upload(
    http: httpx.Client,
    *,
    base_url: str,
    bucket: str,
    object_path: str,
    data: bytes,
    content_type: str,
    bearer_token: str,
    api_key: str,
    upsert: bool = True,
) -> tuple[bool, str]:
    """Raw POST to the object endpoint; returns (ok, reason) and never raises for HTTP errors."""
    url = storage_object_url(base_url, bucket, object_path)
    try:
        response = http.post(
            url,
            content=bytes(data),
            headers={
                "Authorization": f"Bearer {bearer_token}",
                "apikey": api_key,
                "x-upsert": "true" if upsert else "false",
                "Content-Type": content_type or "application/octet-stream",
            },
        )
    except httpx.HTTPError as exc:
        return False, f"transport_error: {exc}"
    if response.is_success:
        return True, ""
    return False, extract_error_message(response)


class SupabaseStorageClient:
    """Client-level access to one bucket under one authority (service key or user session)."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        bearer_token: str | None = None,
        bucket: str = "documents",
        timeout: float = 30.0,
        http_client: httpx.Client | None = None,
    ):
        if not base_url or not api_key:
            raise StorageError("storage client requires base_url and api_key")
        self.base_url = str(base_url).rstrip("/")
        self.api_key = str(api_key)
        self.bearer_token = str(bearer_token or api_key)
        self.bucket = str(bucket)
        self._http = http_client or httpx.Client(timeout=timeout)

    @property
    def http(self) -> httpx.Client:
        return self._http

    def close(self):
        self._http.close()

    def _headers(self, **extra: str) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.bearer_token}",
            "apikey": self.api_key,
        }
        headers.update(extra)
        return headers

    def _endpoint(self, *parts: str) -> str:
        encoded = "/".join(quote(str(part), safe="/") for part in parts)
        return f"{self.base_url}/storage/v1/{encoded}"

    def _raise_for_error(self, response: httpx.Response, action: str):
        if response.is_success:
            return
        message = extract_error_message(response)
        raise StorageError(
            f"{action}: {message}",
            status=response.status_code,
            not_found=_is_not_found(response.status_code, message),
        )

    def _request(self, method: str, url: str, action: str, **kwargs) -> httpx.Response:
        try:
            response = self._http.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise StorageError(f"{action}: transport_error: {exc}") from exc
        self._raise_for_error(response, action)
        return response

    @staticmethod
    def _json(response: httpx.Response, action: str):
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise StorageError(f"{action}: invalid JSON response: {exc}", status=response.status_code) from exc

    # --- Buckets ---

    def list_buckets(self) -> list[str]:
        response = self._request("GET", self._endpoint("bucket"), "bucket_list_failed", headers=self._headers())
        payload = self._json(response, "bucket_list_failed")
        if not isinstance(payload, list):
            raise StorageError("bucket_list_failed: unexpected response shape")
        return [str(entry.get("id") or "") for entry in payload if isinstance(entry, dict)]

    def create_bucket(self, *, public: bool = False) -> None:
        try:
            self._request(
                "POST",
                self._endpoint("bucket"),
                "bucket_create_failed",
                json={"id": self.bucket, "name": self.bucket, "public": bool(public)},
                headers=self._headers(),
            )
        except StorageError as exc:
            if "already exists" not in str(exc).lower():
                raise

    def ensure_bucket(self) -> None:
        """Creates the bucket when it is missing; raises StorageError if it still cannot be found."""
        if self.bucket in self.list_buckets():
            return
        self.create_bucket(public=False)
        if self.bucket not in self.list_buckets():
            raise StorageError(f"Storage bucket '{self.bucket}' not found after recovery attempt")
        logger.info("storage_bucket_created", bucket=self.bucket)

    def upload(self, key: str, data: bytes, content_type: str, *, upsert: bool = True) -> None:
        _require_valid_key(key)
        self._request(
            "POST",
            self._endpoint("object", self.bucket, key),
            "upload_failed",
            content=bytes(data),
            headers=self._headers(**{
                "Content-Type": content_type or "application/octet-stream",
                "x-upsert": "true" if upsert else "false",
            }),
        )

    def download(self, key: str) -> bytes:
        _require_valid_key(key)
        response = self._request(
            "GET",
            self._endpoint("object", "authenticated", self.bucket, key),
            "download_failed",
            headers=self._headers(),
        )
        return response.content

    def remove(self, keys: list[str]) -> None:
        if not keys:
            return
        self._request(
            "DELETE",
            self._endpoint("object", self.bucket),
            "remove_failed",
            json={"prefixes": list(keys)},
            headers=self._headers(),
        )

    def create_signed_upload_url(self, key: str, *, upsert: bool = True) -> SignedUpload:
        _require_valid_key(key)
        response = self._request(
            "POST",
            self._endpoint("object", "upload", "sign", self.bucket, key),
            "token_create_failed",
            headers=self._headers(**{"x-upsert": "true" if upsert else "false"}),
        )
        payload = self._json(response, "token_create_failed")
        relative_url = str(payload.get("url") or "") if isinstance(payload, dict) else ""
        token = (parse_qs(urlparse(relative_url).query).get("token") or [""])[0]
        if not token:
            raise StorageError("token_create_failed: signed upload url has no token")
        return SignedUpload(path=key, token=token, url=f"{self.base_url}/storage/v1{relative_url}")

    def upload_to_signed_url(self, key: str, token: str, data: bytes, content_type: str) -> None:
        _require_valid_key(key)
        self._request(
            "PUT",
            self._endpoint("object", "upload", "sign", self.bucket, key),
            "signed_upload_failed",
            params={"token": token},
            content=bytes(data),
            headers={
                "Content-Type": content_type or "application/octet-stream",
                "x-upsert": "true",
            },
        )

    def create_signed_url(self, key: str, expires_in: int) -> str:
        _require_valid_key(key)
        response = self._request(
            "POST",
            self._endpoint("object", "sign", self.bucket, key),
            "signed_url_failed",
            json={"expiresIn": int(expires_in)},
            headers=self._headers(),
        )
        payload = self._json(response, "signed_url_failed")
        signed = str(payload.get("signedURL") or payload.get("signedUrl") or "") if isinstance(payload, dict) else ""
        if not signed:
            raise StorageError("signed_url_failed: response has no signed URL")
        return f"{self.base_url}/storage/v1{signed}"
