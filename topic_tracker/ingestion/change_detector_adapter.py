"""
Web page change detector.

Watches the element matched by ``meta.monitor_selector``. The watermark is
the SHA256 of that element's HTML, so an unchanged element yields no items.
With ``meta.item_selector`` each matching child becomes an item; otherwise
the whole element is one item.
"""

import logging
from datetime import datetime, timezone
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from topic_tracker.config.topics import SourceKind
from topic_tracker.ingestion.base_adapter import (
    FetchedItem,
    FetchResult,
    SourceAdapter,
    extract_domain,
    sanitize_content,
    stable_hash,
)
from topic_tracker.storage.schemas import Source

logger = logging.getLogger(__name__)

_HTML_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "Cache-Control": "no-cache",
}


def _meta_value(meta: dict, key: str) -> str | None:
    # snake_case or camelCase keys
    camel = key.split("_")[0] + "".join(p.title() for p in key.split("_")[1:])
    return meta.get(key) or meta.get(camel)


def _text_content(element: Tag) -> str:
    for tag in element.find_all(["script", "style", "noscript"]):
        tag.decompose()
    return " ".join(element.get_text(separator=" ").split())


class ChangeDetectorAdapter(SourceAdapter):
    """Adapter that turns changes of a page region into items."""

    @property
    def kind(self) -> SourceKind:
        return SourceKind.CHANGE_DETECTOR

    async def fetch_items(self, source: Source, watermark: str | None) -> FetchResult:
        meta = source.meta or {}
        monitor_selector = _meta_value(meta, "monitor_selector")
        item_selector = _meta_value(meta, "item_selector")

        if not monitor_selector:
            raise ValueError("monitor_selector is required for change-detector sources")

        logger.info(f"Monitoring content changes for: {source.url}")
        async with self._http() as client:
            response = await client.get(source.url, headers=_HTML_HEADERS)

        soup = BeautifulSoup(response.text, "html.parser")
        monitored = soup.select_one(monitor_selector)
        if monitored is None:
            logger.warning(f"Monitor selector {monitor_selector!r} not found on {source.url}")
            return FetchResult()

        current_hash = stable_hash(monitored.decode_contents())
        if watermark and watermark == current_hash:
            logger.debug(f"No content changes detected for {source.url}")
            return FetchResult(items=[], next_watermark=current_hash)

        now = datetime.now(timezone.utc)
        items: list[FetchedItem] = []

        if item_selector:
            for index, element in enumerate(monitored.select(item_selector)):
                item = self._element_item(element, index, item_selector, source.url, now)
                if item:
                    items.append(item)
        else:
            title = self._page_title(soup, source.url)
            content = _text_content(monitored)
            if content:
                items.append(
                    FetchedItem(
                        title=title,
                        content=sanitize_content(content),
                        url=source.url,
                        published_at=now,
                        metadata={
                            "type": "content_monitor",
                            "content_hash": current_hash,
                            "selector": monitor_selector,
                        },
                    )
                )

        logger.info(f"Detected {len(items)} content changes for {source.url}")
        return FetchResult(items=items, next_watermark=current_hash)

    def _element_item(
        self,
        element: Tag,
        index: int,
        selector: str,
        source_url: str,
        now: datetime,
    ) -> FetchedItem | None:
        title = self._item_title(element, index, source_url)
        url = self._item_url(element, source_url)
        content = _text_content(element)
        if not content:
            return None
        return FetchedItem(
            title=title,
            content=sanitize_content(content),
            url=url,
            published_at=now,
            metadata={
                "type": "content_monitor_item",
                "item_index": index,
                "selector": selector,
            },
        )

    def _page_title(self, soup: BeautifulSoup, url: str) -> str:
        if soup.title and soup.title.get_text(strip=True):
            return soup.title.get_text(strip=True)
        h1 = soup.find("h1")
        if h1 and h1.get_text(strip=True):
            return h1.get_text(strip=True)
        og_title = soup.find("meta", attrs={"property": "og:title"})
        if og_title and og_title.get("content"):
            return og_title["content"]
        return extract_domain(url)

    def _item_title(self, element: Tag, index: int, source_url: str) -> str:
        for selector in ("h1, h2, h3, h4, h5, h6", ".title, .name, .header", "a"):
            found = element.select_one(selector)
            if found and found.get_text(strip=True):
                return found.get_text(strip=True)

        content = " ".join(element.get_text(separator=" ").split())
        if len(content) > 50:
            return content[:50] + "..."
        return f"Item {index + 1} from {extract_domain(source_url)}"

    def _item_url(self, element: Tag, source_url: str) -> str:
        link = element.find("a", href=True)
        if link:
            return urljoin(source_url, link["href"])
        return source_url
