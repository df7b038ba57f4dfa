from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Protocol, TypeVar
from urllib.parse import quote, unquote, urlsplit

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential, wait_fixed

from .config import DEFAULT_TIMEOUT_S
from .errors import AuthorizationError, ConfigurationError, NetworkError, SkillNotFoundError, ValidationError
from .manifest import DependencyRef
from .registry import BundledFileSummary, SkillPage, SkillRegistry, SkillVersionRecord
from .signer import Signer

logger = logging.getLogger(__name__)
T = TypeVar("T")

IDENTITY_HEADER = "x-skillpm-identity"
SIGNATURE_HEADER = "x-skillpm-signature"
RETRYABLE_STATUS = {502, 503, 504}
LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    backoff_s: float = 1.0
    multiplier: float = 1.0  # 1.0 keeps the backoff fixed
    timeout_s: float = DEFAULT_TIMEOUT_S
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, compare=False, repr=False)

    def _wait(self) -> Any:
        if self.multiplier == 1.0:
            return wait_fixed(self.backoff_s)
        return wait_exponential(multiplier=self.backoff_s, exp_base=self.multiplier)

    async def run(self, fn: Callable[[], Awaitable[T]], *, label: str = "request") -> T:
        def log_retry(state: RetryCallState) -> None:
            error = state.outcome.exception() if state.outcome else None
            logger.debug(
                "%s failed (%s), retrying in %.1fs",
                label,
                getattr(error, "error_type", error),
                state.next_action.sleep if state.next_action else 0.0,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.attempts)),
            wait=self._wait(),
            retry=retry_if_exception(_is_retryable),
            sleep=self.sleep,
            before_sleep=log_retry,
            reraise=True,
        )
        return await retrying(fn)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, NetworkError) and error.retryable


@dataclass(frozen=True)
class ParsedResponse:
    ok: bool
    data: Any = None
    error: str | None = None


def parse_registry_response(text: str) -> ParsedResponse:
    """Parse a registry body without letting decode errors escape.

    Gateways under load sometimes answer reads with an HTML error page; that
    comes back as a failed ``ParsedResponse`` rather than an exception.
    """
    stripped = text.lstrip()
    if not stripped:
        return ParsedResponse(ok=False, error="empty response body")
    if stripped.startswith("<"):
        return ParsedResponse(ok=False, error=f"non-JSON response: {stripped[:80]!r}")
    try:
        return ParsedResponse(ok=True, data=json.loads(stripped))
    except json.JSONDecodeError as e:
        return ParsedResponse(ok=False, error=f"invalid JSON: {e}")


def _unwrap_success_envelope(obj: Any) -> Any:
    """
    Supports registries that wrap responses as:
      {"success": true, "data": {...}}
      {"success": false, "error": {...}}
    """
    if not isinstance(obj, dict):
        return obj
    if obj.get("success") is True and "data" in obj:
        return obj.get("data")
    if obj.get("success") is False and "error" in obj:
        raise ValidationError(f"Registry error: {obj.get('error')}")
    return obj


def validate_remote_url(url: str, *, field_name: str) -> None:
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ValidationError(
            f"Invalid {field_name} format: {url}",
            field=field_name,
            value=url,
            remedy="Provide a complete URL such as https://registry.example.com.",
        )
    if parts.scheme == "http" and parts.hostname not in LOCAL_HOSTS:
        raise ValidationError(
            f"{field_name} must use HTTPS: {url}",
            field=field_name,
            value=url,
            remedy="Use https:// instead of http://.",
        )


def local_path_from_url(url: str) -> Path:
    if url.startswith("file://"):
        return Path(unquote(urlsplit(url).path))
    return Path(url).expanduser()


class RegistryClient(Protocol):
    async def info(self) -> dict[str, Any]:
        ...

    async def get_skill(self, name: str, version: str | None = None) -> SkillVersionRecord | None:
        ...

    async def get_skill_versions(self, name: str) -> dict[str, Any]:
        ...

    async def search_skills(self, query: str) -> list[SkillVersionRecord]:
        ...

    async def list_skills(
        self,
        *,
        limit: int = 10,
        offset: int = 0,
        author: str | None = None,
        tags: Iterable[str] | None = None,
        name: str | None = None,
    ) -> SkillPage:
        ...

    async def register_skill(self, **fields: Any) -> str:
        ...

    async def update_skill(self, *, name: str, version: str, **changes: Any) -> str:
        ...

    async def record_download(self, name: str, version: str) -> None:
        ...

    async def get_download_stats(self, name: str) -> dict[str, Any]:
        ...

    async def aclose(self) -> None:
        ...


def _jsonable_fields(fields: dict[str, Any]) -> dict[str, Any]:
    renames = {"content_id": "contentId", "bundled_files": "bundledFiles", "external_requirements": "externalRequirements"}
    out: dict[str, Any] = {}
    for key, value in fields.items():
        if key == "dependencies":
            value = [d.to_dict() if isinstance(d, DependencyRef) else d for d in value or ()]
        elif key == "bundled_files":
            value = [f.to_dict() if isinstance(f, BundledFileSummary) else f for f in value or ()]
        elif key in ("tags", "external_requirements"):
            value = list(value or ())
        out[renames.get(key, key)] = value
    return out


def _message_id(data: Any) -> str:
    if isinstance(data, dict):
        for key in ("messageId", "message_id", "id"):
            if isinstance(data.get(key), str) and data[key]:
                return data[key]
    return uuid.uuid4().hex


def _record_from_json(data: Any) -> SkillVersionRecord:
    if isinstance(data, dict) and isinstance(data.get("skill"), dict):
        data = data["skill"]
    return SkillVersionRecord.from_dict(data)


def _records_from_json(data: Any) -> list[SkillVersionRecord]:
    items = data.get("skills", []) if isinstance(data, dict) else data
    return [SkillVersionRecord.from_dict(s) for s in items or []]


def _page_from_json(data: Any) -> SkillPage:
    if not isinstance(data, dict) or not isinstance(data.get("skills"), list):
        raise TypeError("expected an object with a 'skills' list")
    pagination = data.get("pagination") or {}
    skills = [SkillVersionRecord.from_dict(s) for s in data["skills"]]
    return SkillPage(
        skills=skills,
        total=int(pagination.get("total", len(skills))),
        limit=int(pagination.get("limit", len(skills) or 1)),
        offset=int(pagination.get("offset", 0)),
    )


class HttpRegistryClient:
    def __init__(
        self,
        base_url: str,
        *,
        signer: Signer | None = None,
        retry: RetryPolicy | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.signer = signer
        self.retry = retry or RetryPolicy()
        self._http = http or httpx.AsyncClient(timeout=self.retry.timeout_s, follow_redirects=True)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "HttpRegistryClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _check_status(self, resp: httpx.Response, url: str) -> None:
        status = resp.status_code
        if status < 400:
            return
        body = resp.text[:200]
        if status == 404:
            raise NetworkError(f"Not found: {url}", url=url, error_type="not_found")
        if status in (401, 403):
            raise AuthorizationError(
                f"Registry rejected the request (HTTP {status}): {body}",
                identity=self.signer.identity if self.signer else None,
                remedy="Check that your wallet owns this skill and is authorized to publish.",
            )
        if status == 409:
            raise ValidationError(f"Registry conflict: {body}", remedy="Bump the version in SKILL.md.")
        if status in RETRYABLE_STATUS:
            raise NetworkError(f"Registry gateway error (HTTP {status})", url=url, error_type="gateway_error", retryable=True)
        raise NetworkError(
            f"Registry request failed (HTTP {status}): {body}",
            url=url,
            error_type="gateway_error",
            retryable=status >= 500,
        )

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = self._url(path)
        try:
            resp = await self._http.request(method, url, timeout=self.retry.timeout_s, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Registry request timed out: {url}", url=url, error_type="timeout", retryable=True) from e
        except httpx.HTTPError as e:
            raise NetworkError(
                f"Registry unreachable: {e}",
                url=url,
                error_type="connection_failure",
                retryable=True,
                remedy="Check your network connection and the registry URL.",
            ) from e
        self._check_status(resp, url)
        return resp

    async def _read(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        decode: Callable[[Any], Any] | None = None,
    ) -> Any:
        async def attempt() -> Any:
            resp = await self._send("GET", path, params=params)
            parsed = parse_registry_response(resp.text)
            if not parsed.ok:
                raise NetworkError(
                    f"Registry returned a malformed response ({parsed.error})",
                    url=self._url(path),
                    error_type="malformed_response",
                    retryable=True,
                )
            data = _unwrap_success_envelope(parsed.data)
            if decode is None:
                return data
            try:
                return decode(data)
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                raise NetworkError(
                    f"Registry returned an unexpected response shape ({type(e).__name__}: {e})",
                    url=self._url(path),
                    error_type="malformed_response",
                    retryable=True,
                ) from e

        return await self.retry.run(attempt, label=f"GET {path}")

    async def _write(self, method: str, path: str, body: dict[str, Any]) -> Any:
        if self.signer is None:
            raise ConfigurationError("A signer is required for registry writes", config_key="wallet")
        content = json.dumps(body, sort_keys=True).encode("utf-8")
        headers = {
            "content-type": "application/json",
            IDENTITY_HEADER: self.signer.identity,
            SIGNATURE_HEADER: self.signer.sign(content),
        }
        resp = await self._send(method, path, content=content, headers=headers)
        parsed = parse_registry_response(resp.text)
        return _unwrap_success_envelope(parsed.data) if parsed.ok else {}

    async def info(self) -> dict[str, Any]:
        return await self._read("/info")

    async def get_skill(self, name: str, version: str | None = None) -> SkillVersionRecord | None:
        params = {"version": version} if version else None
        try:
            return await self._read(f"/skills/{quote(name, safe='')}", params=params, decode=_record_from_json)
        except NetworkError as e:
            if e.error_type == "not_found":
                return None
            raise

    async def get_skill_versions(self, name: str) -> dict[str, Any]:
        return await self._read(f"/skills/{quote(name, safe='')}/versions")

    async def search_skills(self, query: str) -> list[SkillVersionRecord]:
        return await self._read("/skills", params={"query": query}, decode=_records_from_json)

    async def list_skills(
        self,
        *,
        limit: int = 10,
        offset: int = 0,
        author: str | None = None,
        tags: Iterable[str] | None = None,
        name: str | None = None,
    ) -> SkillPage:
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if author:
            params["author"] = author
        if tags:
            params["filterTags"] = json.dumps(list(tags))
        if name:
            params["filterName"] = name
        return await self._read("/skills/list", params=params, decode=_page_from_json)

    async def register_skill(self, **fields: Any) -> str:
        data = await self._write("POST", "/skills", _jsonable_fields(fields))
        return _message_id(data)

    async def update_skill(self, *, name: str, version: str, **changes: Any) -> str:
        path = f"/skills/{quote(name, safe='')}/{quote(version, safe='')}"
        data = await self._write("PATCH", path, _jsonable_fields(changes))
        return _message_id(data)

    async def record_download(self, name: str, version: str) -> None:
        await self._send("POST", f"/skills/{quote(name, safe='')}/{quote(version, safe='')}/downloads")

    async def get_download_stats(self, name: str) -> dict[str, Any]:
        return await self._read(f"/skills/{quote(name, safe='')}/downloads")


class LocalRegistryClient:
    """Registry client backed by an in-process SkillRegistry, optionally persisted to a JSON file."""

    def __init__(self, registry: SkillRegistry, *, path: Path | None = None, signer: Signer | None = None) -> None:
        self.registry = registry
        self.path = path
        self.signer = signer

    @classmethod
    def from_path(cls, path: Path, *, signer: Signer | None = None) -> "LocalRegistryClient":
        return cls(SkillRegistry.load(path), path=path, signer=signer)

    async def aclose(self) -> None:
        return None

    async def __aenter__(self) -> "LocalRegistryClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def _persist(self) -> None:
        if self.path is not None:
            await asyncio.to_thread(self.registry.save, self.path)

    def _identity(self) -> str:
        if self.signer is None:
            raise ConfigurationError("A signer is required for registry writes", config_key="wallet")
        return self.signer.identity

    async def info(self) -> dict[str, Any]:
        return self.registry.info()

    async def get_skill(self, name: str, version: str | None = None) -> SkillVersionRecord | None:
        try:
            return self.registry.get_skill(name, version)
        except SkillNotFoundError:
            return None

    async def get_skill_versions(self, name: str) -> dict[str, Any]:
        return self.registry.get_skill_versions(name)

    async def search_skills(self, query: str) -> list[SkillVersionRecord]:
        return self.registry.search_skills(query)

    async def list_skills(
        self,
        *,
        limit: int = 10,
        offset: int = 0,
        author: str | None = None,
        tags: Iterable[str] | None = None,
        name: str | None = None,
    ) -> SkillPage:
        return self.registry.list_skills(limit=limit, offset=offset, author=author, tags=tags, name=name)

    async def register_skill(self, **fields: Any) -> str:
        self.registry.register_skill(owner=self._identity(), **fields)
        await self._persist()
        return uuid.uuid4().hex

    async def update_skill(self, *, name: str, version: str, **changes: Any) -> str:
        self.registry.update_skill(name=name, version=version, caller=self._identity(), **changes)
        await self._persist()
        return uuid.uuid4().hex

    async def record_download(self, name: str, version: str) -> None:
        self.registry.record_download(name, version)
        await self._persist()

    async def get_download_stats(self, name: str) -> dict[str, Any]:
        return self.registry.get_download_stats(name)


def make_registry_client(
    registry_url: str | None,
    *,
    signer: Signer | None = None,
    retry: RetryPolicy | None = None,
) -> HttpRegistryClient | LocalRegistryClient:
    if not registry_url:
        raise ConfigurationError(
            "Registry endpoint is not configured",
            config_key="registry_url",
            remedy="Set registryUrl in .skillsrc or export SKILLPM_REGISTRY_URL.",
        )
    if registry_url.startswith(("http://", "https://")):
        validate_remote_url(registry_url, field_name="registry_url")
        return HttpRegistryClient(registry_url, signer=signer, retry=retry)
    return LocalRegistryClient.from_path(local_path_from_url(registry_url), signer=signer)
