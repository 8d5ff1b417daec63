"""
Slack Web API notifier.

Short summaries are posted with ``chat.postMessage`` as Block Kit blocks;
summaries longer than ``post_as_file_over`` characters are uploaded as a
markdown file through the external upload flow:

    files.getUploadURLExternal -> POST bytes to upload_url -> files.completeUploadExternal
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any

import httpx

from topic_tracker.config.settings import get_settings
from topic_tracker.config.topics import NotifierConfig
from topic_tracker.notifications.base import NotificationResult, Notifier, NotifierError
from topic_tracker.observability.metrics import get_metrics
from topic_tracker.queues.backoff import retry_with_backoff

logger = logging.getLogger(__name__)

SLACK_API_URL = "https://slack.com/api"

# Slack's limit for the text of one section block
MAX_BLOCK_TEXT = 3000


def normalize_channel(channel: str) -> str:
    return channel[1:] if channel.startswith("#") else channel


def split_text_for_blocks(text: str, max_size: int = MAX_BLOCK_TEXT) -> list[str]:
    """
    Split text into chunks of at most ``max_size`` characters.

    Paragraph boundaries are preferred, then sentence boundaries; a single
    sentence longer than the limit is cut and ends with "...".
    """
    if len(text) <= max_size:
        return [text]

    chunks: list[str] = []
    current = ""

    for paragraph in text.split("\n\n"):
        candidate = f"{current}\n\n{paragraph}" if current else paragraph
        if len(candidate) <= max_size:
            current = candidate
            continue

        if current:
            chunks.append(current)
            current = paragraph
            if len(current) <= max_size:
                continue
            paragraph = current
            current = ""

        sentence_chunk = ""
        for sentence in paragraph.split(". "):
            candidate = f"{sentence_chunk}. {sentence}" if sentence_chunk else sentence
            if len(candidate) <= max_size:
                sentence_chunk = candidate
            elif sentence_chunk:
                chunks.append(sentence_chunk)
                sentence_chunk = sentence if len(sentence) <= max_size else ""
                if not sentence_chunk:
                    chunks.append(sentence[: max_size - 3] + "...")
            else:
                chunks.append(sentence[: max_size - 3] + "...")
        current = sentence_chunk

    if current:
        chunks.append(current)
    return chunks


def _source_count(sources: Any) -> Any:
    return len(sources) if isinstance(sources, (list, tuple, set)) else sources


def format_metadata(metadata: dict[str, Any] | None) -> str:
    if not metadata:
        return ""
    parts = []
    if metadata.get("item_count"):
        parts.append(f"*Items processed:* {metadata['item_count']}")
    if metadata.get("time_range"):
        parts.append(f"*Time range:* {metadata['time_range']}")
    if metadata.get("sources"):
        parts.append(f"*Sources:* {_source_count(metadata['sources'])}")
    return " • ".join(parts)


def format_metadata_markdown(metadata: dict[str, Any] | None) -> str:
    if not metadata:
        return ""
    parts = []
    if metadata.get("item_count"):
        parts.append(f"**Items processed:** {metadata['item_count']}")
    if metadata.get("time_range"):
        parts.append(f"**Time range:** {metadata['time_range']}")
    if metadata.get("sources"):
        parts.append(f"**Sources:** {_source_count(metadata['sources'])}")
    return "  \n".join(parts)


def _generated_at() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_blocks(topic_name: str, summary: str, metadata: dict[str, Any] | None = None) -> list[dict]:
    """Block Kit payload: header, metadata, divider, summary sections, footer."""
    blocks: list[dict] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": f"📰 {topic_name} News Summary"},
        },
    ]

    metadata_text = format_metadata(metadata)
    if metadata_text:
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": metadata_text}})

    blocks.append({"type": "divider"})
    for chunk in split_text_for_blocks(summary):
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": chunk}})

    blocks.append({"type": "divider"})
    blocks.append(
        {"type": "section", "text": {"type": "mrkdwn", "text": f"_Generated at {_generated_at()}_"}}
    )
    return blocks


def build_markdown(topic_name: str, summary: str, metadata: dict[str, Any] | None = None) -> str:
    content = f"# 📰 {topic_name} News Summary\n\n"
    metadata_text = format_metadata_markdown(metadata)
    if metadata_text:
        content += f"{metadata_text}\n\n---\n\n"
    content += f"{summary}\n\n"
    content += f"---\n_Generated at {_generated_at()}_"
    return content


class SlackNotifier(Notifier):
    """
    Posts summaries to Slack channels with a bot token.

    Args:
        config: Upload threshold and retry policy.
        bot_token: Slack bot token (defaults to SLACK_BOT_TOKEN).
        timeout: Per-request timeout in seconds.
        api_url: Slack Web API base URL.
    """

    def __init__(
        self,
        config: NotifierConfig | None = None,
        bot_token: str | None = None,
        timeout: float = 30.0,
        api_url: str = SLACK_API_URL,
    ) -> None:
        settings = get_settings()
        if bot_token is None and settings.slack_bot_token is not None:
            bot_token = settings.slack_bot_token.get_secret_value()
        if not bot_token:
            raise ValueError("Slack bot token is required (SLACK_BOT_TOKEN)")

        self._config = config or NotifierConfig()
        self._token = bot_token
        self._timeout = timeout
        self._api_url = api_url.rstrip("/")

    async def post(
        self,
        topic_name: str,
        text: str,
        channels: list[str],
        metadata: dict[str, Any] | None = None,
    ) -> NotificationResult:
        as_file = len(text) > self._config.post_as_file_over
        logger.info(
            f"Posting {'file' if as_file else 'message'} ({len(text)} chars) "
            f"to {len(channels)} channel(s)"
        )

        result = NotificationResult()
        async with httpx.AsyncClient(
            timeout=self._timeout,
            headers={"Authorization": f"Bearer {self._token}"},
        ) as client:
            for channel in channels:
                name = normalize_channel(channel)
                try:
                    if as_file:
                        message_id = await self._with_retry(
                            lambda: self._post_file(client, topic_name, text, name, metadata)
                        )
                    else:
                        message_id = await self._with_retry(
                            lambda: self._post_blocks(client, topic_name, text, name, metadata)
                        )
                    result.message_id = message_id
                except Exception as e:
                    logger.error(f"Failed to post summary to channel {channel}: {e}")
                    get_metrics().notifier_errors.inc()
                    result.errors.append(f"{channel}: {e}")

        result.success = not result.errors
        return result

    async def _with_retry(self, fn) -> str | None:
        return await retry_with_backoff(
            fn,
            max_retries=self._config.retry_attempts,
            base_delay=1.0,
        )

    async def _api_call(
        self,
        client: httpx.AsyncClient,
        method: str,
        json_body: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await client.post(f"{self._api_url}/{method}", json=json_body, data=data)
        response.raise_for_status()
        payload = response.json()
        if not payload.get("ok"):
            raise NotifierError(f"Slack API error in {method}: {payload.get('error', 'unknown')}")
        return payload

    async def _post_blocks(
        self,
        client: httpx.AsyncClient,
        topic_name: str,
        summary: str,
        channel: str,
        metadata: dict[str, Any] | None,
    ) -> str | None:
        payload = await self._api_call(
            client,
            "chat.postMessage",
            json_body={
                "channel": channel,
                "blocks": build_blocks(topic_name, summary, metadata),
                "text": f"News summary: {topic_name}",
                "username": "News Agent",
                "icon_emoji": ":newspaper:",
            },
        )
        return payload.get("ts")

    async def _post_file(
        self,
        client: httpx.AsyncClient,
        topic_name: str,
        summary: str,
        channel: str,
        metadata: dict[str, Any] | None,
    ) -> str | None:
        slug = re.sub(r"\s+", "-", topic_name.lower())
        filename = f"news-summary-{slug}-{int(datetime.now(timezone.utc).timestamp() * 1000)}.md"
        content = build_markdown(topic_name, summary, metadata).encode("utf-8")

        ticket = await self._api_call(
            client,
            "files.getUploadURLExternal",
            data={"filename": filename, "length": str(len(content))},
        )

        upload = await client.post(ticket["upload_url"], content=content)
        upload.raise_for_status()

        comment = f"📰 News summary for *{topic_name}*"
        if metadata and metadata.get("item_count"):
            comment += f" ({metadata['item_count']} items processed)"

        completed = await self._api_call(
            client,
            "files.completeUploadExternal",
            json_body={
                "files": [{"id": ticket["file_id"], "title": f"News Summary: {topic_name}"}],
                "channel_id": channel,
                "initial_comment": comment,
            },
        )
        files = completed.get("files") or [{}]
        return files[0].get("id") or ticket["file_id"]
