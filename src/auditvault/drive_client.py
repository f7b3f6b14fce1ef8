"""
Google Drive v3 client used by the bulk importer.

Authenticated with a static API key, independent of any end-user session.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import httpx

from .config import DRIVE_API_URL, HTTP_TIMEOUT_S
from .errors import ProviderError
from .observability import get_logger

logger = get_logger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"

_FOLDER_URL_RE = re.compile(r"/folders/([a-zA-Z0-9_-]+)")
_FILE_URL_RE = re.compile(r"/file/d/([a-zA-Z0-9_-]+)")
_ID_PARAM_RE = re.compile(r"[?&]id=([a-zA-Z0-9_-]+)")
_BARE_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{10,}$")


def parse_folder_id(reference: str) -> str:
    raw = str(reference or "").strip()
    for pattern in (_FOLDER_URL_RE, _ID_PARAM_RE):
        match = pattern.search(raw)
        if match:
            return match.group(1)
    return raw if _BARE_ID_RE.match(raw) else ""


def parse_file_id(reference: str) -> str:
    raw = str(reference or "").strip()
    for pattern in (_FILE_URL_RE, _ID_PARAM_RE):
        match = pattern.search(raw)
        if match:
            return match.group(1)
    return raw if _BARE_ID_RE.match(raw) else ""


def is_folder_reference(reference: str) -> bool:
    """Shape check only: true for folder links, never calls the provider."""
    return bool(_FOLDER_URL_RE.search(str(reference or "")))


@dataclass(frozen=True)
class DriveItem:
    id: str
    name: str
    mime_type: str
    size: int | None = None

    @property
    def is_folder(self) -> bool:
        return self.mime_type == FOLDER_MIME_TYPE

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "DriveItem":
        raw_size = payload.get("size")
        try:
            size = int(raw_size) if raw_size is not None else None
        except (TypeError, ValueError):
            size = None
        return cls(
            id=str(payload.get("id") or ""),
            name=str(payload.get("name") or ""),
            mime_type=str(payload.get("mimeType") or ""),
            size=size,
        )


@dataclass(frozen=True)
class DownloadedItem:
    data: bytes
    content_type: str


class DriveClient:
    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = DRIVE_API_URL,
        timeout: float = HTTP_TIMEOUT_S,
        http_client: httpx.Client | None = None,
    ):
        if not api_key:
            raise ProviderError("GOOGLE_API_KEY is not configured")
        self.api_key = api_key
        self.client = http_client or httpx.Client(base_url=base_url, timeout=timeout)

    def close(self):
        self.client.close()

    def _handle_response(self, response: httpx.Response, action: str) -> httpx.Response:
        if response.is_success:
            return response
        message = ""
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, dict):
                message = str(error.get("message") or "")
            elif error:
                message = str(error)
        raise ProviderError(message or f"{action}: status_{response.status_code}", status=response.status_code)

    def _get(self, path: str, params: dict[str, Any], action: str) -> httpx.Response:
        query = {**params, "key": self.api_key}
        try:
            response = self.client.get(path, params=query)
        except httpx.HTTPError as exc:
            raise ProviderError(f"{action}: transport_error: {exc}") from exc
        return self._handle_response(response, action)

    @staticmethod
    def _json(response: httpx.Response, action: str) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(f"{action}: invalid JSON response", status=response.status_code) from exc
        if not isinstance(payload, dict):
            raise ProviderError(f"{action}: unexpected response shape", status=response.status_code)
        return payload

    def get_file(self, file_id: str) -> DriveItem:
        response = self._get(
            f"/files/{file_id}",
            {"fields": "id,name,mimeType,size"},
            "file_lookup_failed",
        )
        return DriveItem.from_api(self._json(response, "file_lookup_failed"))

    def list_folder(self, folder_id: str) -> list[DriveItem]:
        """Lists the direct children of a folder, following page tokens."""
        items: list[DriveItem] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {
                "q": f"'{folder_id}' in parents and trashed=false",
                "fields": "nextPageToken,files(id,name,mimeType,size)",
                "pageSize": 1000,
            }
            if page_token:
                params["pageToken"] = page_token
            payload = self._json(self._get("/files", params, "folder_list_failed"), "folder_list_failed")
            files = payload.get("files")
            items.extend(DriveItem.from_api(entry) for entry in (files or []) if isinstance(entry, dict))
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
        logger.info("drive_folder_listed", folder_id=folder_id, items=len(items))
        return items

    def download(self, file_id: str) -> DownloadedItem:
        response = self._get(f"/files/{file_id}", {"alt": "media"}, "download_failed")
        content_type = response.headers.get("content-type") or "application/octet-stream"
        return DownloadedItem(data=response.content, content_type=content_type)
