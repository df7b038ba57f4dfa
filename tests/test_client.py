import json
import tempfile
import unittest
from pathlib import Path

import httpx

from skillpm.client import (
    HttpRegistryClient,
    LocalRegistryClient,
    RetryPolicy,
    make_registry_client,
    parse_registry_response,
    validate_remote_url,
)
from skillpm.errors import AuthorizationError, ConfigurationError, NetworkError, ValidationError
from skillpm.manifest import DependencyRef
from skillpm.registry import SkillRegistry
from skillpm.signer import Signer

CID = "C" * 43


def _skill_json(name: str = "ao", version: str = "1.0.0") -> dict:
    return {
        "name": name,
        "version": version,
        "description": "desc",
        "author": "alice",
        "owner": "owner-1",
        "contentId": CID,
        "tags": ["t"],
        "dependencies": ["dep-a", {"name": "dep-b", "version": "2.0.0"}],
    }


class _Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _client(handler, *, signer: Signer | None = None, sleeps: _Sleeps | None = None) -> HttpRegistryClient:
    retry = RetryPolicy(sleep=sleeps or _Sleeps())
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpRegistryClient("https://registry.example.com/", signer=signer, retry=retry, http=http)


class TestParseRegistryResponse(unittest.TestCase):
    def test_html_and_empty_bodies_are_failures(self) -> None:
        self.assertFalse(parse_registry_response("").ok)
        self.assertFalse(parse_registry_response("  <html>502 Bad Gateway</html>").ok)
        self.assertFalse(parse_registry_response("{broken").ok)

    def test_json_body(self) -> None:
        parsed = parse_registry_response('{"a": 1}')
        self.assertTrue(parsed.ok)
        self.assertEqual(parsed.data, {"a": 1})


class TestRetryPolicy(unittest.IsolatedAsyncioTestCase):
    async def test_exponential_backoff_between_attempts(self) -> None:
        sleeps = _Sleeps()
        policy = RetryPolicy(attempts=4, backoff_s=0.5, multiplier=2.0, sleep=sleeps)
        outcomes = [NetworkError("down", retryable=True)] * 3 + ["ok"]

        async def attempt() -> str:
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        self.assertEqual(await policy.run(attempt), "ok")
        self.assertEqual(sleeps.delays, [0.5, 1.0, 2.0])

    async def test_other_errors_propagate_immediately(self) -> None:
        sleeps = _Sleeps()
        policy = RetryPolicy(sleep=sleeps)

        async def attempt() -> None:
            raise ValidationError("bad")

        with self.assertRaises(ValidationError):
            await policy.run(attempt)
        self.assertEqual(sleeps.delays, [])


class TestHttpRegistryClient(unittest.IsolatedAsyncioTestCase):
    async def test_get_skill_parses_record(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"success": True, "data": {"skill": _skill_json()}})

        client = _client(handler)
        record = await client.get_skill("ao", "1.0.0")
        await client.aclose()

        self.assertEqual(record.name, "ao")
        self.assertEqual(record.content_id, CID)
        self.assertEqual(record.dependencies, (DependencyRef("dep-a"), DependencyRef("dep-b", "2.0.0")))
        self.assertEqual(seen[0].url.path, "/skills/ao")
        self.assertEqual(seen[0].url.params["version"], "1.0.0")

    async def test_html_response_is_retried(self) -> None:
        bodies = [httpx.Response(200, text="<html>busy</html>"), httpx.Response(200, json=_skill_json())]

        def handler(request: httpx.Request) -> httpx.Response:
            return bodies.pop(0)

        sleeps = _Sleeps()
        client = _client(handler, sleeps=sleeps)
        record = await client.get_skill("ao")
        await client.aclose()

        self.assertEqual(record.version, "1.0.0")
        self.assertEqual(sleeps.delays, [1.0])

    async def test_gives_up_after_configured_attempts(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(503, text="unavailable")

        sleeps = _Sleeps()
        client = _client(handler, sleeps=sleeps)
        with self.assertRaises(NetworkError) as ctx:
            await client.info()
        await client.aclose()

        self.assertEqual(ctx.exception.error_type, "gateway_error")
        self.assertEqual(len(calls), 3)
        self.assertEqual(len(sleeps.delays), 2)

    async def test_wrong_shape_is_retried_as_malformed_response(self) -> None:
        bodies = [
            httpx.Response(200, json={"error": "gateway hiccup"}),
            httpx.Response(200, json={"success": True, "data": None}),
            httpx.Response(200, json=_skill_json()),
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            return bodies.pop(0)

        sleeps = _Sleeps()
        client = _client(handler, sleeps=sleeps)
        record = await client.get_skill("ao")
        await client.aclose()

        self.assertEqual(record.name, "ao")
        self.assertEqual(sleeps.delays, [1.0, 1.0])

    async def test_persistent_wrong_shape_raises_network_error(self) -> None:
        client = _client(lambda request: httpx.Response(200, json={"success": True, "data": None}))
        with self.assertRaises(NetworkError) as ctx:
            await client.get_skill("ao")
        with self.assertRaises(NetworkError):
            await client.list_skills()
        with self.assertRaises(NetworkError):
            await client.search_skills("ao")
        await client.aclose()

        self.assertEqual(ctx.exception.error_type, "malformed_response")
        self.assertTrue(ctx.exception.retryable)

    async def test_non_retryable_errors_are_not_retried(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(400, text="bad request")

        sleeps = _Sleeps()
        client = _client(handler, sleeps=sleeps)
        with self.assertRaises(NetworkError):
            await client.info()
        await client.aclose()

        self.assertEqual(len(calls), 1)
        self.assertEqual(sleeps.delays, [])

    async def test_not_found_returns_none(self) -> None:
        client = _client(lambda request: httpx.Response(404, text="nope"))
        self.assertIsNone(await client.get_skill("missing"))
        await client.aclose()

    async def test_forbidden_is_authorization_error(self) -> None:
        client = _client(lambda request: httpx.Response(403, text="denied"), signer=Signer(b"k"))
        with self.assertRaises(AuthorizationError):
            await client.register_skill(name="ao", version="1.0.0")
        await client.aclose()

    async def test_writes_are_signed(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"messageId": "msg-1"})

        signer = Signer(b"secret")
        client = _client(handler, signer=signer)
        message_id = await client.register_skill(
            name="ao",
            version="1.0.0",
            content_id=CID,
            dependencies=(DependencyRef("dep", "1.0.0"),),
            external_requirements=("mcp__x",),
        )
        await client.aclose()

        self.assertEqual(message_id, "msg-1")
        request = seen[0]
        self.assertEqual(request.method, "POST")
        self.assertEqual(request.headers["x-skillpm-identity"], signer.identity)
        self.assertEqual(request.headers["x-skillpm-signature"], signer.sign(request.content))
        body = json.loads(request.content)
        self.assertEqual(body["contentId"], CID)
        self.assertEqual(body["dependencies"], [{"name": "dep", "version": "1.0.0"}])
        self.assertEqual(body["externalRequirements"], ["mcp__x"])

    async def test_write_without_signer_is_configuration_error(self) -> None:
        client = _client(lambda request: httpx.Response(200, json={}))
        with self.assertRaises(ConfigurationError):
            await client.update_skill(name="ao", version="1.0.0", description="x")
        await client.aclose()

    async def test_list_skills_sends_filters(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={"skills": [_skill_json()], "pagination": {"total": 5, "limit": 1, "offset": 2}},
            )

        client = _client(handler)
        page = await client.list_skills(limit=1, offset=2, author="alice", tags=["t"], name="a")
        await client.aclose()

        params = seen[0].url.params
        self.assertEqual(params["limit"], "1")
        self.assertEqual(params["author"], "alice")
        self.assertEqual(json.loads(params["filterTags"]), ["t"])
        self.assertEqual(params["filterName"], "a")
        self.assertEqual(page.total, 5)
        self.assertTrue(page.has_next_page)


class TestLocalRegistryClient(unittest.IsolatedAsyncioTestCase):
    async def test_register_persists_and_reads_back(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "registry.json"
            signer = Signer(b"key")
            client = LocalRegistryClient.from_path(path, signer=signer)
            await client.register_skill(name="ao", version="1.0.0", description="d", author="a", content_id=CID)

            reopened = make_registry_client(f"file://{path}")
            record = await reopened.get_skill("ao")

        self.assertEqual(record.owner, signer.identity)
        self.assertIsNone(await reopened.get_skill("ao", "2.0.0"))

    async def test_write_without_signer_fails(self) -> None:
        client = LocalRegistryClient(SkillRegistry())
        with self.assertRaises(ConfigurationError):
            await client.register_skill(name="ao", version="1.0.0", description="d", author="a", content_id=CID)


class TestRegistryUrl(unittest.TestCase):
    def test_missing_url_is_configuration_error(self) -> None:
        with self.assertRaises(ConfigurationError):
            make_registry_client(None)

    def test_plain_http_only_on_localhost(self) -> None:
        validate_remote_url("http://localhost:8080", field_name="registry_url")
        validate_remote_url("https://registry.example.com", field_name="registry_url")
        with self.assertRaises(ValidationError):
            validate_remote_url("http://registry.example.com", field_name="registry_url")
        with self.assertRaises(ValidationError):
            validate_remote_url("ftp://registry.example.com", field_name="registry_url")
