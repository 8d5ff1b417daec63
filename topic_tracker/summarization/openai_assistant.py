"""
Summarizer backed by the OpenAI Assistants API.

One summary is one thread: post the prompt, start a run for the assistant,
poll until the run finishes, read the newest assistant message, delete the
thread. A run still going at the timeout is cancelled before giving up.

The SDK is imported on first use so the package imports without it being
configured.
"""

import asyncio
import logging
import time
from collections.abc import Sequence
from typing import Any

from topic_tracker.config.settings import get_settings
from topic_tracker.config.topics import SummarizerConfig
from topic_tracker.observability.metrics import get_metrics
from topic_tracker.queues.backoff import retry_with_backoff
from topic_tracker.summarization.base import (
    SummarizableItem,
    Summarizer,
    SummarizerError,
    SummarizerTimeoutError,
    SummaryResult,
)
from topic_tracker.summarization.prompts import build_digest_prompt

logger = logging.getLogger(__name__)

FINISHED_RUN_STATUSES = frozenset({"completed", "failed", "cancelled", "expired"})


class OpenAIAssistantSummarizer(Summarizer):
    """
    Summarizer that delegates to a pre-configured OpenAI assistant.

    Args:
        config: Limits, timeout and retry policy.
        api_key: OpenAI API key (defaults to OPENAI_API_KEY).
        default_assistant_id: Used when a topic names no assistant.
        client: Pre-built AsyncOpenAI client (mainly for tests).
    """

    def __init__(
        self,
        config: SummarizerConfig | None = None,
        api_key: str | None = None,
        default_assistant_id: str | None = None,
        client: Any = None,
    ) -> None:
        settings = get_settings()
        self._config = config or SummarizerConfig()
        if api_key is None and settings.openai_api_key is not None:
            api_key = settings.openai_api_key.get_secret_value()
        self._api_key = api_key
        self._default_assistant_id = default_assistant_id or settings.openai_assistant_id
        self._client = client

    def _get_client(self) -> Any:
        """Lazy-initialize the OpenAI async client."""
        if self._client is None:
            import openai

            self._client = openai.AsyncOpenAI(api_key=self._api_key)
        return self._client

    async def summarize(
        self,
        items: Sequence[SummarizableItem],
        assistant_ref: str | None = None,
    ) -> SummaryResult:
        assistant_id = assistant_ref or self._default_assistant_id
        if not assistant_id:
            raise SummarizerError("No OpenAI assistant ID configured")

        limited = list(items)[: self._config.max_items_per_run]
        if not limited:
            return SummaryResult(text="No items to process", prompt="")

        prompt = build_digest_prompt(limited, self._config.max_chars_per_item)
        logger.info(f"Summarizing {len(limited)} items with assistant {assistant_id}")

        metrics = get_metrics()
        start = time.perf_counter()
        try:
            text = await retry_with_backoff(
                lambda: self._run_assistant(assistant_id, prompt),
                max_retries=self._config.retry_attempts,
                base_delay=1.0,
            )
        except SummarizerError as e:
            metrics.summarizer_errors.labels(error_type=type(e).__name__).inc()
            raise
        except Exception as e:
            metrics.summarizer_errors.labels(error_type=type(e).__name__).inc()
            raise SummarizerError(f"Summarization failed: {e}") from e
        finally:
            metrics.summarizer_latency.observe(time.perf_counter() - start)

        return SummaryResult(text=text, prompt=prompt)

    async def _run_assistant(self, assistant_id: str, prompt: str) -> str:
        client = self._get_client()
        threads = client.beta.threads

        thread = await threads.create()
        try:
            return await self._run_in_thread(thread.id, assistant_id, prompt)
        finally:
            try:
                await threads.delete(thread_id=thread.id)
            except Exception as e:
                logger.warning(f"Failed to delete thread {thread.id}: {e}")

    async def _run_in_thread(self, thread_id: str, assistant_id: str, prompt: str) -> str:
        threads = self._get_client().beta.threads

        await threads.messages.create(thread_id=thread_id, role="user", content=prompt)
        run = await threads.runs.create(thread_id=thread_id, assistant_id=assistant_id)

        run = await self._wait_for_run(thread_id, run.id)

        if run.status == "failed":
            last_error = getattr(run, "last_error", None)
            message = getattr(last_error, "message", None) or "Unknown error"
            raise SummarizerError(f"Assistant run failed: {message}")
        if run.status in ("cancelled", "expired"):
            raise SummarizerError(f"Assistant run {run.status}")

        messages = await threads.messages.list(thread_id=thread_id, order="desc", limit=1)
        reply = next((m for m in messages.data if m.role == "assistant"), None)
        if reply is None or not reply.content or reply.content[0].type != "text":
            raise SummarizerError("No valid response from assistant")
        return reply.content[0].text.value

    async def _wait_for_run(self, thread_id: str, run_id: str) -> Any:
        runs = self._get_client().beta.threads.runs
        deadline = time.monotonic() + self._config.timeout_seconds

        while time.monotonic() < deadline:
            run = await runs.retrieve(run_id=run_id, thread_id=thread_id)
            if run.status in FINISHED_RUN_STATUSES:
                return run
            if run.status == "requires_action":
                logger.warning(f"Run {run_id} requires action, which is not supported")
                break
            await asyncio.sleep(self._config.poll_interval_seconds)

        try:
            await runs.cancel(run_id=run_id, thread_id=thread_id)
        except Exception as e:
            logger.warning(f"Failed to cancel run {run_id}: {e}")

        raise SummarizerTimeoutError(
            f"Assistant run {run_id} did not finish within {self._config.timeout_seconds}s"
        )
