"""Shared test fixtures for PresetHub."""

from __future__ import annotations

import json
from typing import Any
from urllib.parse import unquote

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from presethub.config import Settings
from presethub.services.content_service import ContentService
from presethub.services.disk_cache import PersistentCache
from presethub.services.github_client import GitHubClient
from presethub.services.local_mirror import LocalMirror
from presethub.services.memory_cache import RevalidatingCache

OWNER = "prolix-oc"
REPO = "ST-Presets"


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class FakeClock:
    """Manually advanced clock so staleness does not depend on wall time."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Fake GitHub
# ---------------------------------------------------------------------------

class GitHubStub:
    """In-memory stand-in for the GitHub REST, GraphQL and raw endpoints.

    Fill ``contents`` / ``commits`` / ``trees`` / ``raw`` keyed by repository
    path; paths in ``failing`` answer 500. Every request is recorded.
    """

    def __init__(self):
        self.contents: dict[str, Any] = {}
        self.commits: dict[str, list[dict]] = {}
        self.trees: dict[str, list[dict]] = {}
        self.raw: dict[str, Any] = {}
        self.failing: set[str] = set()
        self.requests: list[httpx.Request] = []

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, kind: str, path: str | None = None) -> int:
        return sum(
            1 for r in self.requests
            if self._classify(r)[0] == kind and (path is None or self._classify(r)[1] == path)
        )

    @staticmethod
    def _classify(request: httpx.Request) -> tuple[str, str]:
        url_path = unquote(request.url.path)
        if request.url.host == "raw.githubusercontent.com":
            return "raw", url_path.split("/HEAD/", 1)[1]
        if url_path == "/graphql":
            variables = json.loads(request.content).get("variables") or {}
            expression = variables.get("expression")
            if expression is None:
                return "rate_limit", ""
            return "tree", expression.split(":", 1)[1]
        prefix = f"/repos/{OWNER}/{REPO}/"
        rest = url_path[len(prefix):]
        if rest.startswith("contents"):
            return "contents", rest[len("contents/"):]
        if rest == "commits":
            return "commits", request.url.params.get("path", "")
        return "unknown", url_path

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        kind, path = self._classify(request)
        rate_headers = {
            "x-ratelimit-limit": "5000",
            "x-ratelimit-remaining": "4999",
            "x-ratelimit-reset": "1700000000",
            "x-ratelimit-used": "1",
        }

        if path in self.failing:
            return httpx.Response(500, text="upstream exploded", headers=rate_headers)

        if kind == "contents":
            if path not in self.contents:
                return httpx.Response(404, json={"message": "Not Found"}, headers=rate_headers)
            return httpx.Response(200, json=self.contents[path], headers=rate_headers)
        if kind == "commits":
            return httpx.Response(200, json=self.commits.get(path, []), headers=rate_headers)
        if kind == "raw":
            if path not in self.raw:
                return httpx.Response(404, text="404: Not Found")
            return httpx.Response(200, json=self.raw[path])
        if kind in ("tree", "rate_limit"):
            rate_limit = {"limit": 5000, "remaining": 4990, "resetAt": "2026-01-01T00:00:00Z", "used": 10}
            if kind == "rate_limit":
                return httpx.Response(200, json={"data": {"rateLimit": rate_limit}})
            entries = self.trees.get(path)
            tree = {"entries": entries} if entries is not None else None
            return httpx.Response(
                200, json={"data": {"repository": {"object": tree}, "rateLimit": rate_limit}}
            )
        return httpx.Response(400, text=f"unexpected request {request.url}")


@pytest.fixture
def github() -> GitHubStub:
    return GitHubStub()


# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        github_token="test-token",
        github_repo_owner=OWNER,
        github_repo_name=REPO,
        persistent_cache_dir=str(tmp_path / "cache"),
        mirror_root_path=str(tmp_path / "mirror"),
        use_local_mirror=False,
        warmup_on_startup=False,
        warmup_paths=["Character Cards"],
        warmup_depth=1,
        fetch_timeout_seconds=2.0,
        webhook_secret="webhook-secret",
        cache_admin_token="admin-token",
    )


@pytest_asyncio.fixture
async def gh_client(test_settings, github):
    client = GitHubClient.from_settings(test_settings, transport=github.transport)
    yield client
    await client.close()


@pytest_asyncio.fixture
async def make_service(test_settings, github, clock):
    """Factory for ContentService instances sharing the fake GitHub and cache dir."""
    created: list[ContentService] = []

    def factory(settings: Settings | None = None) -> ContentService:
        settings = settings or test_settings
        service = ContentService(
            settings,
            client=GitHubClient.from_settings(settings, transport=github.transport),
            mirror=LocalMirror.from_settings(settings),
            disk_cache=PersistentCache.from_settings(settings),
            memory_cache=RevalidatingCache(
                ttl_by_kind=settings.ttl_by_resource_kind,
                default_ttl=30,
                fetch_timeout=settings.fetch_timeout_seconds,
                clock=clock,
            ),
        )
        created.append(service)
        return service

    yield factory
    for service in created:
        await service.close()


@pytest.fixture
def service(make_service) -> ContentService:
    return make_service()


# ---------------------------------------------------------------------------
# App / client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(test_settings, service):
    """FastAPI app with the test settings and service injected."""
    from presethub.main import app as fastapi_app

    fastapi_app.state.settings = test_settings
    fastapi_app.state.content_service = service
    yield fastapi_app
    del fastapi_app.state.content_service
    del fastapi_app.state.settings


@pytest_asyncio.fixture
async def client(app):
    """Async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
