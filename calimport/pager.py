from __future__ import annotations

import logging
from typing import Any, Iterator, Mapping, Protocol

logger = logging.getLogger(__name__)

ITEMS = "items"
NEXT_PAGE_TOKEN = "nextPageToken"


class FeedClient(Protocol):
    def list_page(self, calendar_id: str, page_token: str = "") -> Mapping[str, Any]: ...


class EventsPager:
    """Walks a paged event feed, following continuation tokens until exhausted.

    Pages are handed out one at a time as they arrive; nothing is buffered
    and client errors propagate unchanged.
    """

    def __init__(self, client: FeedClient, calendar_id: str = "primary") -> None:
        self.client = client
        self.calendar_id = calendar_id

    def fetch_all(self) -> Iterator[Mapping[str, Any]]:
        token = ""
        page_number = 0
        while True:
            page = self.client.list_page(self.calendar_id, token)
            page_number += 1
            logger.debug("Fetched page %d with %d items", page_number, len(page.get(ITEMS) or []))
            yield page
            next_token = page.get(NEXT_PAGE_TOKEN)
            if not next_token:
                break
            token = str(next_token)


def page_items(page: Mapping[str, Any]) -> list[Any]:
    items = page.get(ITEMS) or []
    if not isinstance(items, list):
        raise ValueError(f"page '{ITEMS}' must be a list, got {type(items).__name__}")
    return items
