"""
GitHub releases/commits adapter.

``meta.type`` selects ``releases`` (default) or ``commits``. The watermark
is the ISO timestamp of the newest release or commit seen.
"""

import logging
import re
from datetime import datetime
from typing import Any

from topic_tracker.config.topics import SourceKind
from topic_tracker.ingestion.base_adapter import (
    FetchedItem,
    FetchResult,
    SourceAdapter,
    parse_watermark_time,
    sanitize_content,
    to_iso,
)
from topic_tracker.ingestion.http_client import RetryConfig
from topic_tracker.storage.schemas import Source

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
_REPO_PATTERN = re.compile(r"github\.com/([^/]+)/([^/]+)")


def parse_repo_url(url: str) -> tuple[str, str]:
    """Return (owner, repo) for a github.com URL."""
    match = _REPO_PATTERN.search(url)
    if not match:
        raise ValueError(f"Invalid GitHub URL: {url}")
    owner, repo = match.group(1), match.group(2)
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]
    return owner, repo


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class CodeHostAdapter(SourceAdapter):
    """Adapter for GitHub repositories (releases or commits)."""

    def __init__(
        self,
        token: str | None = None,
        retry_config: RetryConfig | None = None,
        timeout: float = 30.0,
        api_url: str = GITHUB_API_URL,
    ):
        super().__init__(retry_config=retry_config, timeout=timeout)
        self._api_url = api_url.rstrip("/")
        self._headers = {"Accept": "application/vnd.github.v3+json"}
        if token:
            self._headers["Authorization"] = f"token {token}"
        else:
            logger.warning("No GitHub token configured - API requests are limited to 60/hour")

    @property
    def kind(self) -> SourceKind:
        return SourceKind.CODE_HOST

    async def fetch_items(self, source: Source, watermark: str | None) -> FetchResult:
        owner, repo = parse_repo_url(source.url)
        fetch_type = (source.meta or {}).get("type", "releases")
        logger.info(f"Fetching GitHub {fetch_type} for {owner}/{repo}")

        if fetch_type == "commits":
            return await self._fetch_commits(owner, repo, watermark)
        return await self._fetch_releases(owner, repo, watermark)

    async def _get_json(self, url: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        async with self._http() as client:
            response = await client.get(url, params=params, headers=self._headers)
        return response.json()

    async def _fetch_releases(self, owner: str, repo: str, watermark: str | None) -> FetchResult:
        releases = await self._get_json(f"{self._api_url}/repos/{owner}/{repo}/releases")

        cutoff = parse_watermark_time(watermark)
        items: list[FetchedItem] = []
        latest: datetime | None = None

        for release in releases:
            if release.get("draft"):
                continue

            published_at = _parse_time(release.get("published_at"))
            if published_at is None:
                continue
            if cutoff and published_at <= cutoff:
                continue

            if latest is None or published_at > latest:
                latest = published_at

            items.append(
                FetchedItem(
                    title=f"{repo} {release.get('name') or release.get('tag_name')}",
                    content=sanitize_content(release.get("body") or "No description provided"),
                    url=release.get("html_url"),
                    published_at=published_at,
                    metadata={
                        "type": "github_release",
                        "tag_name": release.get("tag_name"),
                        "prerelease": release.get("prerelease", False),
                        "author": (release.get("author") or {}).get("login"),
                        "repository": f"{owner}/{repo}",
                    },
                )
            )

        logger.info(f"Fetched {len(items)} releases from {owner}/{repo}")
        return FetchResult(items=items, next_watermark=to_iso(latest) if latest else None)

    async def _fetch_commits(self, owner: str, repo: str, watermark: str | None) -> FetchResult:
        params = {"since": watermark} if watermark else None
        commits = await self._get_json(f"{self._api_url}/repos/{owner}/{repo}/commits", params)

        # "since" is inclusive on the API side
        cutoff = parse_watermark_time(watermark)
        items: list[FetchedItem] = []
        latest: datetime | None = None

        for commit in commits:
            details = commit.get("commit", {})
            author = details.get("author") or {}
            published_at = _parse_time(author.get("date"))
            if published_at is None:
                continue
            if cutoff and published_at <= cutoff:
                continue

            if latest is None or published_at > latest:
                latest = published_at

            message = details.get("message", "")
            if message.startswith("Merge ") or len(message) < 10:
                continue

            items.append(
                FetchedItem(
                    title=f"{repo}: {message.splitlines()[0]}",
                    content=sanitize_content(message),
                    url=commit.get("html_url"),
                    published_at=published_at,
                    metadata={
                        "type": "github_commit",
                        "sha": commit.get("sha"),
                        "author": author.get("name"),
                        "repository": f"{owner}/{repo}",
                    },
                )
            )

        logger.info(f"Fetched {len(items)} commits from {owner}/{repo}")
        return FetchResult(items=items, next_watermark=to_iso(latest) if latest else None)
