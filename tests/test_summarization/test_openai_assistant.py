"""Tests for the OpenAI assistant summarizer with a mocked client."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from tests.factories import make_item
from topic_tracker.config.topics import SummarizerConfig
from topic_tracker.summarization.base import SummarizerError, SummarizerTimeoutError
from topic_tracker.summarization.openai_assistant import OpenAIAssistantSummarizer
from topic_tracker.summarization.prompts import build_digest_prompt, truncate


def _run(status: str, **extra):
    return SimpleNamespace(id="run-1", status=status, **extra)


def _reply(text: str):
    return SimpleNamespace(
        data=[
            SimpleNamespace(
                role="assistant",
                content=[SimpleNamespace(type="text", text=SimpleNamespace(value=text))],
            )
        ]
    )


@pytest.fixture
def client():
    """AsyncOpenAI stand-in whose run completes on the second poll."""
    mock = MagicMock()
    threads = mock.beta.threads
    threads.create = AsyncMock(return_value=SimpleNamespace(id="thread-1"))
    threads.delete = AsyncMock()
    threads.messages.create = AsyncMock()
    threads.messages.list = AsyncMock(return_value=_reply("🔥 TOP 5 CRITICAL UPDATES\n- 3.13.1 is out"))
    threads.runs.create = AsyncMock(return_value=_run("queued"))
    threads.runs.retrieve = AsyncMock(side_effect=[_run("in_progress"), _run("completed")])
    threads.runs.cancel = AsyncMock()
    return mock


def _summarizer(client, **config):
    settings = {"retry_attempts": 0, "poll_interval_seconds": 0.001, "timeout_seconds": 5.0, **config}
    return OpenAIAssistantSummarizer(
        config=SummarizerConfig(**settings),
        api_key="sk-test",
        default_assistant_id="asst_default",
        client=client,
    )


class TestPrompt:
    def test_numbered_items_with_dates_and_urls(self):
        prompt = build_digest_prompt([make_item("First"), make_item("Second")])

        assert "Analyze the following 2 developer news items" in prompt
        assert "1. **First** (2024-01-02)" in prompt
        assert "2. **Second** (2024-01-02)" in prompt
        assert "Source: https://example.com/First" in prompt
        assert prompt.endswith("(no markdown formatting):")

    def test_content_truncated_per_item(self):
        prompt = build_digest_prompt([make_item("Long", content="x" * 50)], max_chars_per_item=10)
        assert "x" * 10 + "..." in prompt
        assert "x" * 11 not in prompt

    def test_truncate(self):
        assert truncate(None, 5) is None
        assert truncate("short", 10) == "short"
        assert truncate("abcdefgh", 3) == "abc..."


class TestOpenAIAssistantSummarizer:
    """Tests for the assistant run flow."""

    @pytest.mark.asyncio
    async def test_successful_run(self, client):
        summarizer = _summarizer(client)

        result = await summarizer.summarize([make_item("Python 3.13.1 released")], "asst_topic")

        assert result.text.startswith("🔥 TOP 5 CRITICAL UPDATES")
        assert "Python 3.13.1 released" in result.prompt
        client.beta.threads.runs.create.assert_awaited_once_with(thread_id="thread-1", assistant_id="asst_topic")
        client.beta.threads.delete.assert_awaited_once_with(thread_id="thread-1")

    @pytest.mark.asyncio
    async def test_default_assistant_used(self, client):
        await _summarizer(client).summarize([make_item("Item")])

        assert client.beta.threads.runs.create.await_args.kwargs["assistant_id"] == "asst_default"

    @pytest.mark.asyncio
    async def test_items_capped_per_run(self, client):
        items = [make_item(f"Item {i}") for i in range(5)]

        result = await _summarizer(client, max_items_per_run=2).summarize(items)

        assert "Analyze the following 2 developer" in result.prompt
        assert "Item 2" not in result.prompt

    @pytest.mark.asyncio
    async def test_empty_batch_skips_api(self, client):
        result = await _summarizer(client).summarize([])

        assert result.text == "No items to process"
        client.beta.threads.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_timeout_cancels_run(self, client):
        """A run still going at the deadline is cancelled."""
        client.beta.threads.runs.retrieve = AsyncMock(return_value=_run("in_progress"))
        summarizer = _summarizer(client, timeout_seconds=0.02)

        with pytest.raises(SummarizerTimeoutError):
            await summarizer.summarize([make_item("Item")])

        client.beta.threads.runs.cancel.assert_awaited_once_with(run_id="run-1", thread_id="thread-1")
        client.beta.threads.delete.assert_awaited_once_with(thread_id="thread-1")

    @pytest.mark.asyncio
    async def test_requires_action_treated_as_timeout(self, client):
        client.beta.threads.runs.retrieve = AsyncMock(return_value=_run("requires_action"))

        with pytest.raises(SummarizerTimeoutError):
            await _summarizer(client).summarize([make_item("Item")])

        client.beta.threads.runs.cancel.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_run(self, client):
        client.beta.threads.runs.retrieve = AsyncMock(
            return_value=_run("failed", last_error=SimpleNamespace(message="rate_limit_exceeded"))
        )

        with pytest.raises(SummarizerError, match="rate_limit_exceeded"):
            await _summarizer(client).summarize([make_item("Item")])

        client.beta.threads.delete.assert_awaited_once_with(thread_id="thread-1")

    @pytest.mark.asyncio
    async def test_thread_delete_failure_keeps_result(self, client):
        client.beta.threads.delete = AsyncMock(side_effect=ConnectionError("gone"))

        result = await _summarizer(client).summarize([make_item("Item")])

        assert "3.13.1" in result.text

    @pytest.mark.asyncio
    async def test_thread_deleted_per_retry(self, client):
        client.beta.threads.runs.retrieve = AsyncMock(
            side_effect=[_run("expired"), _run("completed")]
        )

        with patch("topic_tracker.queues.backoff.asyncio.sleep", new=AsyncMock()):
            await _summarizer(client, retry_attempts=1).summarize([make_item("Item")])

        assert client.beta.threads.delete.await_count == 2

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, client):
        client.beta.threads.runs.retrieve = AsyncMock(
            side_effect=[_run("expired"), _run("completed")]
        )
        summarizer = _summarizer(client, retry_attempts=1)

        with patch("topic_tracker.queues.backoff.asyncio.sleep", new=AsyncMock()):
            result = await summarizer.summarize([make_item("Item")])

        assert result.text
        assert client.beta.threads.create.await_count == 2

    @pytest.mark.asyncio
    async def test_no_assistant_configured(self, client):
        summarizer = OpenAIAssistantSummarizer(config=SummarizerConfig(), api_key="sk-test", client=client)
        summarizer._default_assistant_id = None

        with pytest.raises(SummarizerError, match="No OpenAI assistant ID"):
            await summarizer.summarize([make_item("Item")])

    @pytest.mark.asyncio
    async def test_unexpected_error_wrapped(self, client):
        client.beta.threads.create = AsyncMock(side_effect=ConnectionError("network down"))

        with pytest.raises(SummarizerError, match="network down"):
            await _summarizer(client).summarize([make_item("Item")])
