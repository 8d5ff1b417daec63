"""Prompt template for the developer news digest."""

from collections.abc import Sequence

from topic_tracker.summarization.base import SummarizableItem

DIGEST_HEADER = """\
Analyze the following {count} developer news items and create a comprehensive summary for developers.

STRUCTURE REQUIRED:
🔥 TOP 5 CRITICAL UPDATES
- List the 5 most important items (breaking changes, major releases, critical features)
- Each point should be 1-2 lines maximum
- Use technical language appropriate for developers

📋 ADDITIONAL UPDATES
- List all other relevant items
- Include minor updates, improvements, and notable changes
- Keep each point concise but informative

NEWS ITEMS:

"""

DIGEST_FOOTER = (
    "\n---\n"
    "Provide the structured summary with the exact headers shown above "
    "(no markdown formatting):"
)


def truncate(text: str | None, max_chars: int) -> str | None:
    """Cut ``text`` to ``max_chars`` and mark the cut with an ellipsis."""
    if not text or len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


def format_item(index: int, item: SummarizableItem) -> str:
    published = f" ({item.published_at.date().isoformat()})" if item.published_at else ""
    text = f"{index}. **{item.title}**{published}\n"
    if item.url:
        text += f"   Source: {item.url}\n"
    if item.content:
        text += f"   {item.content}\n"
    return text


def build_digest_prompt(items: Sequence[SummarizableItem], max_chars_per_item: int | None = None) -> str:
    """Numbered item list wrapped in the digest instructions."""
    parts = []
    for i, item in enumerate(items, start=1):
        if max_chars_per_item is not None:
            item = _Truncated(item, max_chars_per_item)
        parts.append(format_item(i, item))

    return DIGEST_HEADER.format(count=len(items)) + "\n".join(parts) + DIGEST_FOOTER


class _Truncated:
    """Read-only view of an item with its content cut to size."""

    def __init__(self, item: SummarizableItem, max_chars: int):
        self.title = item.title
        self.url = item.url
        self.published_at = item.published_at
        self.content = truncate(item.content, max_chars)
