"""Cursor-driven page accumulation shared by the API clients."""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)


class PaginationError(Exception):
    """The server handed back a cursor that was already consumed."""


@dataclass
class Page:
    """One page of results and the cursor for the next one, if any."""
    items: List[Any] = field(default_factory=list)
    next_cursor: Optional[Any] = None


def fetch_all_pages(
    fetch_page: Callable[[Optional[Any]], Page],
    first_cursor: Optional[Any] = None,
    *,
    page_size: Optional[int] = None,
    max_items: Optional[int] = None,
) -> List[Any]:
    """
    Call fetch_page until the source signals there is nothing left.

    The loop ends when a page carries no next cursor, comes back empty, or
    (when page_size is given) holds fewer items than were asked for.

    Args:
        fetch_page: Callable taking the current cursor (None first) and
            returning a Page
        first_cursor: Cursor for the first request
        page_size: Requested page size, used for short-page detection
        max_items: Optional cap; the accumulated list is truncated to it

    Returns:
        All accumulated items in source order

    Raises:
        PaginationError: If a next cursor repeats one already requested
    """
    items: List[Any] = []
    cursor = first_cursor
    consumed = set()

    while True:
        if cursor is not None:
            consumed.add(cursor)

        page = fetch_page(cursor)
        items.extend(page.items)

        if max_items is not None and len(items) >= max_items:
            return items[:max_items]

        if not page.items or page.next_cursor is None or page.next_cursor == "":
            break
        if page_size is not None and len(page.items) < page_size:
            break
        if page.next_cursor in consumed:
            raise PaginationError(f"Cursor {page.next_cursor!r} was already consumed")

        cursor = page.next_cursor

    logger.debug(f"Fetched {len(items)} items")
    return items
