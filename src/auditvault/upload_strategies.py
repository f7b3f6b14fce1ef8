"""
Ordered fallback chain of blob write strategies.

Storage access policy may reject some write paths depending on the bucket
and object-key prefix, so writes are attempted through several pathways in a
fixed order until one succeeds. Every pathway writes with upsert semantics,
so repeating an attempt on the same key never creates a second object.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Protocol

import httpx

from .errors import StorageError, StrategyUnavailable
from .metrics import IngestMetrics
from .observability import get_logger
from .storage_provider import StorageClient, rest_upload

logger = get_logger(__name__)

TraceFn = Callable[[str], None]


class SignedTokenError(StorageError):
    """The signed upload URL could not be issued (reported as '<name>_token')."""

    label_suffix = "_token"


@dataclass
class UploadResult:
    ok: bool
    strategy_used: str | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def error(self) -> str:
        return " ; ".join(self.errors)


class UploadStrategy(Protocol):
    name: str

    def attempt(self, key: str, data: bytes, content_type: str) -> None:
        """Writes the object or raises StorageError."""
        ...


class SignedUrlUpload:
    """Issues a signed upload URL under the client's authority, then uploads to it."""

    def __init__(self, client: StorageClient, name: str = "signed_service_role"):
        self.client = client
        self.name = name

    def attempt(self, key: str, data: bytes, content_type: str) -> None:
        try:
            signed = self.client.create_signed_upload_url(key, upsert=True)
        except StorageError as exc:
            raise SignedTokenError(str(exc) or "token_create_failed", status=exc.status) from exc
        self.client.upload_to_signed_url(key, signed.token, data, content_type)


class SdkUpload:
    """Client-level upload; disabled when the client could not be constructed."""

    def __init__(
        self,
        client: StorageClient | None,
        name: str,
        *,
        unavailable_reason: str = "disabled_missing_client",
    ):
        self.client = client
        self.name = name
        self.unavailable_reason = unavailable_reason

    def attempt(self, key: str, data: bytes, content_type: str) -> None:
        if self.client is None:
            raise StrategyUnavailable(self.unavailable_reason)
        self.client.upload(key, data, content_type, upsert=True)


class RestUpload:
    """Raw HTTP write to the storage object endpoint, bypassing the client layer."""

    def __init__(
        self,
        http: httpx.Client | None,
        name: str,
        *,
        base_url: str,
        bucket: str,
        bearer_token: str,
        api_key: str,
        unavailable_reason: str = "disabled_missing_credentials",
    ):
        self.http = http
        self.name = name
        self.base_url = base_url
        self.bucket = bucket
        self.bearer_token = bearer_token
        self.api_key = api_key
        self.unavailable_reason = unavailable_reason

    def attempt(self, key: str, data: bytes, content_type: str) -> None:
        if self.http is None or not self.base_url:
            raise StrategyUnavailable("disabled_missing_storage_url")
        if not self.bearer_token or not self.api_key:
            raise StrategyUnavailable(self.unavailable_reason)
        ok, reason = rest_upload(
            self.http,
            base_url=self.base_url,
            bucket=self.bucket,
            object_path=key,
            data=data,
            content_type=content_type,
            bearer_token=self.bearer_token,
            api_key=self.api_key,
            upsert=True,
        )
        if not ok:
            raise StorageError(reason or "upload_failed")


class UploadChain:
    """Tries each strategy in order and stops at the first success."""

    def __init__(
        self,
        strategies: list[UploadStrategy],
        *,
        bucket: str = "documents",
        metrics: IngestMetrics | None = None,
    ):
        if not strategies:
            raise ValueError("upload chain needs at least one strategy")
        self.strategies = list(strategies)
        self.bucket = bucket
        self.metrics = metrics

    @property
    def strategy_names(self) -> list[str]:
        return [strategy.name for strategy in self.strategies]

    def upload(
        self,
        key: str,
        data: bytes,
        content_type: str,
        *,
        trace: TraceFn | None = None,
    ) -> UploadResult:
        push = trace or (lambda _msg: None)
        errors: list[str] = []
        content_type = content_type or "application/octet-stream"

        for strategy in self.strategies:
            try:
                strategy.attempt(key, data, content_type)
            except StrategyUnavailable as exc:
                errors.append(f"{strategy.name}={exc}")
                push(f"upload_skip={strategy.name} reason={exc}")
                continue
            except Exception as exc:
                label = f"{strategy.name}{getattr(exc, 'label_suffix', '')}"
                reason = str(exc) or type(exc).__name__
                errors.append(f"{label}={reason}")
                push(f"upload_fail={label} path={key} err={reason}")
                logger.warning("upload_strategy_failed", strategy=label, key=key, reason=reason)
                if self.metrics is not None:
                    self.metrics.record_strategy(strategy.name, success=False)
                continue

            push(f"upload_ok={strategy.name} path={key}")
            logger.info("upload_strategy_succeeded", strategy=strategy.name, key=key, bytes=len(data))
            if self.metrics is not None:
                self.metrics.record_strategy(strategy.name, success=True)
            return UploadResult(ok=True, strategy_used=strategy.name, errors=errors)

        logger.error("upload_chain_exhausted", key=key, errors=errors)
        return UploadResult(ok=False, strategy_used=None, errors=errors)


def build_upload_chain(
    admin_client: StorageClient,
    user_client: StorageClient | None = None,
    *,
    base_url: str = "",
    service_key: str = "",
    anon_key: str = "",
    access_token: str = "",
    http: httpx.Client | None = None,
    metrics: IngestMetrics | None = None,
) -> UploadChain:
    """Default order: signed URL, client upload (service), client upload (user), raw REST (service), raw REST (user)."""
    bucket = getattr(admin_client, "bucket", "documents")
    strategies: list[UploadStrategy] = [
        SignedUrlUpload(admin_client, "signed_service_role"),
        SdkUpload(admin_client, "sdk_service_role"),
        SdkUpload(user_client, "sdk_user", unavailable_reason="disabled_missing_anon_key"),
        RestUpload(
            http,
            "rest_service_role",
            base_url=base_url,
            bucket=bucket,
            bearer_token=service_key,
            api_key=service_key,
            unavailable_reason="disabled_missing_service_key",
        ),
        RestUpload(
            http,
            "rest_user",
            base_url=base_url,
            bucket=bucket,
            bearer_token=access_token,
            api_key=anon_key,
            unavailable_reason="disabled_missing_anon_key",
        ),
    ]
    return UploadChain(strategies, bucket=bucket, metrics=metrics)
