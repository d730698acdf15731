"""GitHub API client for Switchyard.

Token authentication, webhook signature verification, rate limit tracking,
and the handful of read-only calls ingress needs to work out which files an
event changed.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import time
from datetime import datetime, timezone

import httpx

from switchyard import __version__

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"

# GitHub caps pull request file listings at 3000 entries (30 pages of 100)
_MAX_FILE_PAGES = 30


class GitHubClient:
    """Async GitHub API client authenticated with a personal or app token."""

    def __init__(
        self,
        *,
        token: str | None = None,
        webhook_secret: str | None = None,
        base_url: str = GITHUB_API,
    ):
        self.token = token
        self.webhook_secret = webhook_secret
        self.base_url = base_url

        # Rate limit tracking
        self._rate_limit_remaining: int = 5000
        self._rate_limit_reset: float = 0
        self._rate_limit_reserve: int = 50
        self._rate_limit_lock: asyncio.Lock | None = None

        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize HTTP client."""
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Accept": "application/vnd.github.v3+json",
                "User-Agent": f"Switchyard/{__version__}",
            },
            timeout=30.0,
        )
        self._rate_limit_lock = asyncio.Lock()
        logger.info("GitHub client started")

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("GitHub client not started")
        return self._client

    def _auth_headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"token {self.token}"}

    # ── Webhook Verification ─────────────────────────────────────────────

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Verify HMAC-SHA256 webhook signature.

        Args:
            payload: Raw request body bytes.
            signature: X-Hub-Signature-256 header value.
        """
        if not self.webhook_secret:
            logger.warning("No webhook secret configured, skipping signature verification")
            return True

        expected = (
            "sha256="
            + hmac.new(
                self.webhook_secret.encode(),
                payload,
                hashlib.sha256,
            ).hexdigest()
        )

        return hmac.compare_digest(expected, signature)

    # ── Rate Limit Tracking ──────────────────────────────────────────────

    def _update_rate_limit(self, response: httpx.Response) -> None:
        """Track rate limits from response headers."""
        remaining = response.headers.get("X-RateLimit-Remaining")
        reset = response.headers.get("X-RateLimit-Reset")
        if remaining:
            self._rate_limit_remaining = int(remaining)
        if reset:
            self._rate_limit_reset = float(reset)

        if self._rate_limit_remaining < 100:
            logger.warning(
                "GitHub API rate limit low: %d remaining (resets at %s)",
                self._rate_limit_remaining,
                datetime.fromtimestamp(self._rate_limit_reset, tz=timezone.utc).isoformat(),
            )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Make an authenticated API request, serializing near the rate limit."""
        if self._rate_limit_lock and self._rate_limit_remaining <= self._rate_limit_reserve:
            async with self._rate_limit_lock:
                await self._wait_for_rate_limit_reset()
                return await self._do_request(method, path, **kwargs)
        return await self._do_request(method, path, **kwargs)

    async def _do_request(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = self._auth_headers()
        headers.update(kwargs.pop("headers", {}))
        resp = await self.client.request(method, path, headers=headers, **kwargs)
        self._update_rate_limit(resp)
        resp.raise_for_status()
        return resp

    async def _wait_for_rate_limit_reset(self) -> None:
        """Sleep until the rate limit reset window if quota is exhausted."""
        if self._rate_limit_remaining > 0:
            return
        wait = max(0, self._rate_limit_reset - time.time()) + 1
        logger.warning("Rate limit exhausted, sleeping %.1fs until reset", wait)
        await asyncio.sleep(wait)
        self._rate_limit_remaining = 100  # optimistic reset

    # ── Changed Files ────────────────────────────────────────────────────

    async def list_pull_request_files(self, owner: str, repo: str, pr_number: int) -> list[str]:
        """Paths changed by a pull request (renames report both old and new path)."""
        paths: list[str] = []
        for page in range(1, _MAX_FILE_PAGES + 1):
            resp = await self._request(
                "GET",
                f"/repos/{owner}/{repo}/pulls/{pr_number}/files",
                params={"per_page": 100, "page": page},
            )
            files = resp.json()
            for f in files:
                paths.append(f["filename"])
                if f.get("previous_filename"):
                    paths.append(f["previous_filename"])
            if len(files) < 100:
                break
        return paths

    async def compare_files(self, owner: str, repo: str, base: str, head: str) -> list[str]:
        """Paths changed between two commits (used when a push payload is truncated)."""
        resp = await self._request("GET", f"/repos/{owner}/{repo}/compare/{base}...{head}")
        paths: list[str] = []
        for f in resp.json().get("files", []):
            paths.append(f["filename"])
            if f.get("previous_filename"):
                paths.append(f["previous_filename"])
        return paths
