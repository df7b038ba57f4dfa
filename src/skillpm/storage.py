"""Clients for the content-addressed permanent storage that holds skill bundles."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from .client import RetryPolicy, local_path_from_url, validate_remote_url
from .errors import ConfigurationError, FileSystemError, NetworkError, ValidationError
from .signer import Signer

logger = logging.getLogger(__name__)

CONTENT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{43}$")


@dataclass(frozen=True)
class UploadResult:
    content_id: str
    cost: int = 0  # smallest currency unit charged by the gateway


class StorageClient(Protocol):
    async def upload(self, data: bytes, *, tags: dict[str, str] | None = None) -> UploadResult:
        ...

    async def download(self, content_id: str) -> bytes:
        ...

    async def aclose(self) -> None:
        ...


def content_id_for(data: bytes) -> str:
    return base64.urlsafe_b64encode(hashlib.sha256(data).digest()).decode("ascii").rstrip("=")


def _check_content_id(content_id: str) -> None:
    if not CONTENT_ID_RE.match(content_id or ""):
        raise ValidationError(
            f"Invalid content id: {content_id!r}",
            field="contentId",
            value=content_id,
        )


class LocalStorage:
    """Directory-backed store: one file per content id, written once."""

    def __init__(self, root: Path) -> None:
        self.root = root

    async def aclose(self) -> None:
        return None

    def _path(self, content_id: str) -> Path:
        _check_content_id(content_id)
        return self.root / content_id

    def _write(self, content_id: str, data: bytes) -> None:
        path = self._path(content_id)
        if path.exists():
            return
        self.root.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_bytes(data)
        tmp.replace(path)

    async def upload(self, data: bytes, *, tags: dict[str, str] | None = None) -> UploadResult:
        content_id = content_id_for(data)
        try:
            await asyncio.to_thread(self._write, content_id, data)
        except OSError as e:
            raise FileSystemError(f"Cannot store bundle: {e}", path=str(self.root)) from e
        logger.debug("stored %d bytes as %s", len(data), content_id)
        return UploadResult(content_id=content_id, cost=0)

    async def download(self, content_id: str) -> bytes:
        path = self._path(content_id)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise NetworkError(f"Bundle {content_id} not found in storage", url=str(path), error_type="not_found") from e
        except OSError as e:
            raise FileSystemError(f"Cannot read bundle {content_id}: {e}", path=str(path)) from e


class HttpStorageClient:
    def __init__(
        self,
        gateway_url: str,
        *,
        signer: Signer | None = None,
        retry: RetryPolicy | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.gateway_url = gateway_url.rstrip("/")
        self.signer = signer
        self.retry = retry or RetryPolicy(multiplier=2.0)
        self._http = http or httpx.AsyncClient(timeout=self.retry.timeout_s, follow_redirects=True)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await self._http.request(method, url, timeout=self.retry.timeout_s, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Storage gateway timed out: {url}", url=url, error_type="timeout", retryable=True) from e
        except httpx.HTTPError as e:
            raise NetworkError(
                f"Storage gateway unreachable: {e}",
                url=url,
                error_type="connection_failure",
                retryable=True,
            ) from e
        if resp.status_code == 404:
            raise NetworkError(f"Content not found: {url}", url=url, error_type="not_found")
        if resp.status_code >= 400:
            raise NetworkError(
                f"Storage gateway error (HTTP {resp.status_code})",
                url=url,
                error_type="gateway_error",
                retryable=resp.status_code in (502, 503, 504),
            )
        return resp

    async def upload(self, data: bytes, *, tags: dict[str, str] | None = None) -> UploadResult:
        headers = {"content-type": "application/zip"}
        for key, value in (tags or {}).items():
            headers[f"x-tag-{key.lower()}"] = value
        if self.signer is not None:
            headers["x-skillpm-identity"] = self.signer.identity
            headers["x-skillpm-signature"] = self.signer.sign(data)
        url = f"{self.gateway_url}/tx"

        async def attempt() -> httpx.Response:
            return await self._send("POST", url, content=data, headers=headers)

        resp = await self.retry.run(attempt, label="upload")
        try:
            payload = resp.json()
        except ValueError as e:
            raise NetworkError("Storage gateway returned a malformed upload receipt", url=url, error_type="malformed_response") from e
        content_id = payload.get("id") if isinstance(payload, dict) else None
        if not isinstance(content_id, str) or not content_id:
            raise NetworkError("Upload receipt has no content id", url=url, error_type="malformed_response")
        cost = payload.get("winc", payload.get("cost", 0))
        try:
            cost_i = int(cost)
        except (TypeError, ValueError):
            cost_i = 0
        return UploadResult(content_id=content_id, cost=cost_i)

    async def download(self, content_id: str) -> bytes:
        url = f"{self.gateway_url}/{quote(content_id, safe='')}"

        async def attempt() -> bytes:
            resp = await self._send("GET", url)
            return resp.content

        return await self.retry.run(attempt, label=f"download {content_id}")


def make_storage_client(
    gateway_url: str | None,
    *,
    signer: Signer | None = None,
    retry: RetryPolicy | None = None,
) -> HttpStorageClient | LocalStorage:
    if not gateway_url:
        raise ConfigurationError(
            "Storage gateway is not configured",
            config_key="gateway_url",
            remedy="Pass --gateway, set gatewayUrl in .skillsrc, or export SKILLPM_GATEWAY_URL.",
        )
    if gateway_url.startswith(("http://", "https://")):
        validate_remote_url(gateway_url, field_name="gateway_url")
        return HttpStorageClient(gateway_url, signer=signer, retry=retry)
    return LocalStorage(local_path_from_url(gateway_url))
