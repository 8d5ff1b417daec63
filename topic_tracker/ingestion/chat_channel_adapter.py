"""
Discord channel adapter.

Reads messages newer than the watermark through the bot API. The watermark
is the highest message snowflake seen; a timestamp watermark (as seeded
from the lookback window) is converted to the equivalent snowflake.
"""

import logging
import re
from datetime import datetime
from typing import Any

import httpx
from bs4 import BeautifulSoup

from topic_tracker.config.topics import SourceKind
from topic_tracker.ingestion.base_adapter import (
    FetchedItem,
    FetchResult,
    SourceAdapter,
    parse_watermark_time,
    sanitize_content,
)
from topic_tracker.ingestion.http_client import HTTPClientError, RetryConfig
from topic_tracker.storage.schemas import Source

logger = logging.getLogger(__name__)

DISCORD_API_URL = "https://discord.com/api/v10"
DISCORD_EPOCH_MS = 1420070400000

MAX_PREVIEW_URLS = 3
MAX_PREVIEW_LENGTH = 500
PREVIEW_TIMEOUT_SECONDS = 10.0

_CHANNEL_PATTERN = re.compile(r"channels/\d+/(\d+)")
_URL_PATTERN = re.compile(r"https?://\S+")


def extract_channel_id(url: str) -> str:
    """Channel id from a discord.com/channels/<guild>/<channel> URL or a bare id."""
    match = _CHANNEL_PATTERN.search(url)
    if match:
        return match.group(1)
    if url.strip().isdigit():
        return url.strip()
    raise ValueError(f"Invalid Discord URL or channel ID: {url}")


def watermark_to_snowflake(watermark: str | None) -> str | None:
    """Numeric watermarks pass through; ISO timestamps become snowflakes."""
    if not watermark:
        return None
    if watermark.isdigit():
        return watermark
    moment = parse_watermark_time(watermark)
    if moment is None:
        return None
    millis = int(moment.timestamp() * 1000)
    return str(max(0, millis - DISCORD_EPOCH_MS) << 22)


class ChatChannelAdapter(SourceAdapter):
    """Adapter for Discord text channels."""

    def __init__(
        self,
        bot_token: str | None,
        retry_config: RetryConfig | None = None,
        timeout: float = 30.0,
        api_url: str = DISCORD_API_URL,
    ):
        super().__init__(retry_config=retry_config, timeout=timeout)
        self._bot_token = bot_token
        self._api_url = api_url.rstrip("/")

    @property
    def kind(self) -> SourceKind:
        return SourceKind.CHAT_CHANNEL

    async def fetch_items(self, source: Source, watermark: str | None) -> FetchResult:
        if not self._bot_token:
            raise ValueError("Discord bot token is required for chat-channel sources")

        channel_id = extract_channel_id(source.url)
        logger.info(f"Fetching Discord messages from channel: {channel_id}")

        messages = await self._fetch_messages(channel_id, watermark_to_snowflake(watermark))

        items: list[FetchedItem] = []
        latest_id: int | None = None

        for message in messages:
            message_id = int(message["id"])
            if latest_id is None or message_id > latest_id:
                latest_id = message_id

            content = (message.get("content") or "").strip()
            author = message.get("author") or {}
            if not content or author.get("discriminator") == "0000":
                continue

            enriched = await self._enrich_content(content)
            timestamp = message.get("timestamp")

            items.append(
                FetchedItem(
                    title=f"Discord: {author.get('username', 'unknown')}",
                    content=sanitize_content(enriched),
                    url=f"https://discord.com/channels/{channel_id}/{message['id']}",
                    published_at=datetime.fromisoformat(timestamp) if timestamp else None,
                    metadata={
                        "type": "discord_message",
                        "channel_id": message.get("channel_id"),
                        "author": {"id": author.get("id"), "username": author.get("username")},
                        "message_id": message["id"],
                        "has_embeds": bool(message.get("embeds")),
                        "has_attachments": bool(message.get("attachments")),
                        "reaction_count": len(message.get("reactions") or []),
                    },
                )
            )

        logger.info(f"Fetched {len(items)} messages from Discord channel: {channel_id}")
        return FetchResult(
            items=items,
            next_watermark=str(latest_id) if latest_id is not None else None,
        )

    async def _fetch_messages(self, channel_id: str, after: str | None) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"limit": 100}
        if after:
            params["after"] = after

        async with self._http() as client:
            response = await client.get(
                f"{self._api_url}/channels/{channel_id}/messages",
                params=params,
                headers={"Authorization": f"Bot {self._bot_token}"},
            )
        return response.json()

    async def _enrich_content(self, content: str) -> str:
        """Append title/description previews for up to three linked pages."""
        urls = _URL_PATTERN.findall(content)
        if not urls:
            return content

        enriched = content
        for url in urls[:MAX_PREVIEW_URLS]:
            preview = await self._fetch_preview(url)
            if preview:
                enriched += f"\n\n[{url}]\n{preview}"
        return enriched

    async def _fetch_preview(self, url: str) -> str | None:
        try:
            async with self._http(timeout=PREVIEW_TIMEOUT_SECONDS, retries=0) as client:
                response = await client.get(url)
        except (HTTPClientError, httpx.HTTPError) as e:
            logger.debug(f"Failed to fetch preview for {url}: {e}")
            return None

        if "text/html" not in response.headers.get("content-type", ""):
            return None

        soup = BeautifulSoup(response.text, "html.parser")
        title = (
            _meta_content(soup, property="og:title")
            or _meta_content(soup, name="twitter:title")
            or (soup.title.get_text(strip=True) if soup.title else None)
        )
        if not title:
            return None

        description = (
            _meta_content(soup, property="og:description")
            or _meta_content(soup, name="twitter:description")
            or _meta_content(soup, name="description")
        )
        preview = f"{title}\n{description}" if description else title
        return preview[:MAX_PREVIEW_LENGTH]


def _meta_content(soup: BeautifulSoup, **attrs: str) -> str | None:
    tag = soup.find("meta", attrs=attrs)
    if tag and tag.get("content"):
        return tag["content"].strip() or None
    return None
