"""Summarization port and its OpenAI Assistants implementation."""

from topic_tracker.summarization.base import (
    Summarizer,
    SummarizerError,
    SummarizerTimeoutError,
    SummaryResult,
)
from topic_tracker.summarization.openai_assistant import OpenAIAssistantSummarizer
from topic_tracker.summarization.prompts import build_digest_prompt

__all__ = [
    "OpenAIAssistantSummarizer",
    "Summarizer",
    "SummarizerError",
    "SummarizerTimeoutError",
    "SummaryResult",
    "build_digest_prompt",
]
