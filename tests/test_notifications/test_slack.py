"""Tests for the Slack notifier and its message formatting."""

import json
from unittest.mock import AsyncMock
from urllib.parse import parse_qs

import httpx
import pytest
import respx

from topic_tracker.config.topics import NotifierConfig
from topic_tracker.notifications.slack import (
    SlackNotifier,
    build_blocks,
    build_markdown,
    format_metadata,
    normalize_channel,
    split_text_for_blocks,
)

API = "https://slack.com/api"
UPLOAD_URL = "https://files.slack.com/upload/v1/abc"
METADATA = {"item_count": 4, "time_range": "Jan 1 - Jan 2", "sources": ["feed", "repo"]}


def _notifier(**config) -> SlackNotifier:
    settings = {"retry_attempts": 0, **config}
    return SlackNotifier(config=NotifierConfig(**settings), bot_token="xoxb-test")


class TestFormatting:
    def test_normalize_channel(self):
        assert normalize_channel("#python-news") == "python-news"
        assert normalize_channel("C0123456") == "C0123456"

    def test_short_text_single_chunk(self):
        assert split_text_for_blocks("hello", max_size=20) == ["hello"]

    def test_split_on_paragraphs(self):
        text = "\n\n".join(["a" * 10, "b" * 10, "c" * 10])
        assert split_text_for_blocks(text, max_size=20) == ["a" * 10, "b" * 10, "c" * 10]

    def test_split_on_sentences(self):
        text = "First sentence here. Second sentence here. Third one."

        chunks = split_text_for_blocks(text, max_size=30)

        assert chunks == ["First sentence here", "Second sentence here", "Third one."]

    def test_oversized_sentence_truncated(self):
        chunks = split_text_for_blocks("x" * 50, max_size=20)

        assert chunks == ["x" * 17 + "..."]

    def test_metadata_line(self):
        assert format_metadata(METADATA) == (
            "*Items processed:* 4 • *Time range:* Jan 1 - Jan 2 • *Sources:* 2"
        )
        assert format_metadata(None) == ""

    def test_blocks_layout(self):
        blocks = build_blocks("Python", "Summary text", METADATA)

        assert blocks[0]["text"]["text"] == "📰 Python News Summary"
        assert [b["type"] for b in blocks] == [
            "header", "section", "divider", "section", "divider", "section",
        ]
        assert blocks[3]["text"]["text"] == "Summary text"
        assert blocks[5]["text"]["text"].startswith("_Generated at ")

    def test_blocks_without_metadata(self):
        blocks = build_blocks("Python", "Summary text")
        assert [b["type"] for b in blocks][:3] == ["header", "divider", "section"]

    def test_markdown_document(self):
        content = build_markdown("Python", "Summary text", METADATA)

        assert content.startswith("# 📰 Python News Summary\n\n")
        assert "**Items processed:** 4" in content
        assert "Summary text" in content


class TestSlackNotifier:
    """Tests for posting through the Slack Web API."""

    def test_token_required(self):
        with pytest.raises(ValueError, match="token"):
            SlackNotifier(bot_token="")

    @pytest.mark.asyncio
    @respx.mock
    async def test_post_message(self):
        route = respx.post(f"{API}/chat.postMessage").mock(
            return_value=httpx.Response(200, json={"ok": True, "ts": "1700000000.000100"})
        )

        result = await _notifier().post("Python", "Short summary", ["#python-news"], METADATA)

        assert result.success
        assert result.errors == []
        assert result.message_id == "1700000000.000100"

        request = route.calls.last.request
        body = json.loads(request.content)
        assert request.headers["Authorization"] == "Bearer xoxb-test"
        assert body["channel"] == "python-news"
        assert body["text"] == "News summary: Python"
        assert body["blocks"][0]["type"] == "header"

    @pytest.mark.asyncio
    @respx.mock
    async def test_failed_channel_does_not_stop_others(self):
        def reply(request):
            channel = json.loads(request.content)["channel"]
            if channel == "missing":
                return httpx.Response(200, json={"ok": False, "error": "channel_not_found"})
            return httpx.Response(200, json={"ok": True, "ts": "1.2"})

        route = respx.post(f"{API}/chat.postMessage").mock(side_effect=reply)

        result = await _notifier().post("Python", "Short summary", ["#missing", "#python-news"])

        assert route.call_count == 2
        assert not result.success
        assert result.message_id == "1.2"
        assert result.errors == ["#missing: Slack API error in chat.postMessage: channel_not_found"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_http_error_reported(self):
        respx.post(f"{API}/chat.postMessage").mock(return_value=httpx.Response(500))

        result = await _notifier().post("Python", "Short summary", ["#python-news"])

        assert not result.success
        assert len(result.errors) == 1
        assert result.errors[0].startswith("#python-news: ")

    @pytest.mark.asyncio
    @respx.mock
    async def test_long_summary_uploaded_as_file(self):
        ticket = respx.post(f"{API}/files.getUploadURLExternal").mock(
            return_value=httpx.Response(200, json={"ok": True, "upload_url": UPLOAD_URL, "file_id": "F123"})
        )
        upload = respx.post(UPLOAD_URL).mock(return_value=httpx.Response(200))
        complete = respx.post(f"{API}/files.completeUploadExternal").mock(
            return_value=httpx.Response(200, json={"ok": True, "files": [{"id": "F123"}]})
        )

        result = await _notifier(post_as_file_over=20).post(
            "Python Releases", "A summary well over twenty characters", ["#python-news"], METADATA
        )

        assert result.success
        assert result.message_id == "F123"

        form = parse_qs(ticket.calls.last.request.content.decode())
        assert form["filename"][0].startswith("news-summary-python-releases-")
        assert form["filename"][0].endswith(".md")

        uploaded = upload.calls.last.request.content.decode("utf-8")
        assert uploaded.startswith("# 📰 Python Releases News Summary")
        assert form["length"][0] == str(len(upload.calls.last.request.content))

        body = json.loads(complete.calls.last.request.content)
        assert body["channel_id"] == "python-news"
        assert body["files"] == [{"id": "F123", "title": "News Summary: Python Releases"}]
        assert body["initial_comment"] == "📰 News summary for *Python Releases* (4 items processed)"

    @pytest.mark.asyncio
    @respx.mock
    async def test_retries_transient_failure(self, monkeypatch):
        monkeypatch.setattr("topic_tracker.queues.backoff.asyncio.sleep", AsyncMock())
        route = respx.post(f"{API}/chat.postMessage").mock(
            side_effect=[
                httpx.Response(200, json={"ok": False, "error": "ratelimited"}),
                httpx.Response(200, json={"ok": True, "ts": "9.9"}),
            ]
        )

        result = await _notifier(retry_attempts=1).post("Python", "Short summary", ["#python-news"])

        assert result.success
        assert route.call_count == 2
