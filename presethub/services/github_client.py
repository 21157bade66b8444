"""GitHub REST + GraphQL client for repository content."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from presethub.config import Settings
from presethub.exceptions import GraphQLError, NetworkError, NotFoundError, ParseError
from presethub.models.content import RateLimitInfo, TreeEntry

logger = logging.getLogger(__name__)

TREE_QUERY = """
query($owner: String!, $repo: String!, $expression: String!) {
  repository(owner: $owner, name: $repo) {
    object(expression: $expression) {
      ... on Tree {
        entries {
          name
          type
          mode
          oid
          size
        }
      }
    }
  }
  rateLimit {
    limit
    remaining
    resetAt
    used
  }
}
"""

RATE_LIMIT_QUERY = """
query {
  rateLimit {
    limit
    remaining
    resetAt
    used
  }
}
"""


class GitHubClient:
    """Reads directory listings, commits and trees of one repository.

    Usage:
        async with GitHubClient(token="...", owner="...", repo="...") as client:
            listing = await client.get_contents("World Books")
    """

    def __init__(
        self,
        token: str = "",
        owner: str = "prolix-oc",
        repo: str = "ST-Presets",
        api_base: str = "https://api.github.com",
        graphql_url: str = "https://api.github.com/graphql",
        raw_base: str = "https://raw.githubusercontent.com",
        user_agent: str = "PresetHub/1.0",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.owner = owner
        self.repo = repo
        self._api_base = api_base.rstrip("/")
        self._graphql_url = graphql_url
        self._raw_base = raw_base.rstrip("/")

        headers = {"User-Agent": user_agent}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._http = httpx.AsyncClient(
            headers=headers,
            timeout=timeout,
            transport=transport,
            follow_redirects=True,
        )

        self.rest_rate_limit: RateLimitInfo | None = None
        self.graphql_rate_limit: RateLimitInfo | None = None

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> GitHubClient:
        return cls(
            token=settings.github_token,
            owner=settings.github_repo_owner,
            repo=settings.github_repo_name,
            api_base=settings.github_api_base,
            graphql_url=settings.github_graphql_url,
            raw_base=settings.github_raw_base,
            user_agent=settings.user_agent,
            timeout=settings.fetch_timeout_seconds,
            transport=transport,
        )

    # ── URL helpers ──

    def contents_url(self, path: str) -> str:
        return f"{self._api_base}/repos/{self.owner}/{self.repo}/contents/{quote(path.strip('/'))}"

    def html_url(self, path: str) -> str:
        return f"https://github.com/{self.owner}/{self.repo}/tree/HEAD/{quote(path.strip('/'))}"

    def raw_url(self, path: str) -> str:
        return f"{self._raw_base}/{self.owner}/{self.repo}/HEAD/{quote(path.strip('/'))}"

    def git_tree_url(self, oid: str) -> str:
        return f"{self._api_base}/repos/{self.owner}/{self.repo}/git/trees/{oid}"

    # ── REST ──

    async def get_contents(self, path: str) -> Any:
        """Directory listing (list) or file metadata (dict) at ``path``."""
        resp = await self._request(
            "GET",
            self.contents_url(path),
            headers={"Accept": "application/vnd.github.v3+json"},
        )
        return self._json(resp)

    async def get_commits(self, path: str, per_page: int = 1) -> list[dict]:
        """Most recent commits touching ``path``, newest first."""
        resp = await self._request(
            "GET",
            f"{self._api_base}/repos/{self.owner}/{self.repo}/commits",
            params={"path": path, "per_page": per_page},
            headers={"Accept": "application/vnd.github.v3+json"},
        )
        commits = self._json(resp)
        if not isinstance(commits, list):
            raise ParseError(f"Expected a commit list for {path}, got {type(commits).__name__}")
        return commits

    async def fetch_json(self, url: str) -> Any:
        """Download and parse a raw JSON file."""
        resp = await self._request("GET", url)
        return self._json(resp)

    # ── GraphQL ──

    async def graphql(self, query: str, variables: dict | None = None) -> dict:
        resp = await self._request(
            "POST",
            self._graphql_url,
            json={"query": query, "variables": variables or {}},
            headers={"Accept": "application/vnd.github.v4+json"},
        )
        payload = self._json(resp)
        if not isinstance(payload, dict):
            raise ParseError("GraphQL response is not an object")
        if payload.get("errors"):
            logger.error("GraphQL errors: %s", payload["errors"])
            raise GraphQLError(payload["errors"])

        data = payload.get("data") or {}
        rate_limit = data.get("rateLimit")
        if rate_limit:
            try:
                self.graphql_rate_limit = RateLimitInfo.model_validate(rate_limit)
            except ValidationError:
                logger.debug("Ignoring malformed rateLimit block: %s", rate_limit)
        return data

    async def get_tree(self, path: str = "") -> tuple[list[TreeEntry], RateLimitInfo | None]:
        """Fetch the entries of one directory in a single request.

        A path that does not exist at HEAD yields no entries.
        """
        path = path.strip("/")
        data = await self.graphql(
            TREE_QUERY,
            {"owner": self.owner, "repo": self.repo, "expression": f"HEAD:{path}"},
        )
        tree = (data.get("repository") or {}).get("object")
        if tree is None:
            logger.info("Tree not found: %s", path or "root")
            return [], self.graphql_rate_limit

        try:
            entries = [TreeEntry.model_validate(e) for e in tree.get("entries") or []]
        except ValidationError as e:
            raise ParseError(f"Malformed tree entries for {path or 'root'}: {e}") from e
        return entries, self.graphql_rate_limit

    async def get_rate_limit(self) -> RateLimitInfo | None:
        """Current GraphQL quota, or None if it cannot be determined."""
        try:
            await self.graphql(RATE_LIMIT_QUERY)
        except (NetworkError, ParseError) as e:
            logger.error("Failed to get GraphQL rate limit: %s", e)
            return None
        return self.graphql_rate_limit

    # ── Transport ──

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            resp = await self._http.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request to {url} timed out") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Request to {url} failed: {e}") from e

        self._record_rest_rate_limit(resp)

        if resp.status_code == 404:
            raise NotFoundError(f"Not found: {url}")
        if not resp.is_success:
            logger.debug("GitHub API error %s for %s: %s", resp.status_code, url, resp.text[:200])
            raise NetworkError(
                f"GitHub API error: {resp.status_code} {resp.reason_phrase}",
                status_code=resp.status_code,
                body=resp.text[:1000],
            )
        return resp

    @staticmethod
    def _json(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise ParseError(f"Invalid JSON from {resp.request.url}: {e}") from e

    def _record_rest_rate_limit(self, resp: httpx.Response) -> None:
        headers = resp.headers
        if "x-ratelimit-limit" not in headers:
            return
        try:
            reset = datetime.fromtimestamp(int(headers.get("x-ratelimit-reset", "0")), tz=timezone.utc)
            self.rest_rate_limit = RateLimitInfo(
                limit=int(headers["x-ratelimit-limit"]),
                remaining=int(headers.get("x-ratelimit-remaining", "0")),
                resetAt=reset.isoformat(),
                used=int(headers.get("x-ratelimit-used", "0")),
            )
        except ValueError:
            logger.debug("Ignoring malformed rate limit headers")

    async def close(self):
        await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()
