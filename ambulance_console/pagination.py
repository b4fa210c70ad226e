"""
Client-side filtering and pagination over already-fetched collections.

Pure functions of their inputs; nothing here talks to the network. Pages
are 1-based. Server-side paging lives in gateway.RequestAPI.list.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Generic, List, Optional, Sequence, TypeVar

from .config import DEFAULT_PAGE_SIZE
from .models import naive_utc

T = TypeVar("T")
Predicate = Callable[[Any], bool]

ALL = "all"


def _value(item: Any, field: str) -> Any:
    if isinstance(item, dict):
        return item.get(field)
    return getattr(item, field, None)


def match_all(item: Any) -> bool:
    return True


def search_predicate(term: Optional[str], fields: Sequence[str]) -> Predicate:
    """Case-insensitive substring match against any of the given fields."""
    if not term:
        return match_all
    needle = term.lower()

    def predicate(item):
        for field in fields:
            value = _value(item, field)
            if value is not None and needle in str(value).lower():
                return True
        return False

    return predicate


def status_predicate(status: Optional[str], field: str = "status") -> Predicate:
    if not status or status.lower() == ALL:
        return match_all
    wanted = status.lower()

    def predicate(item):
        value = _value(item, field)
        value = value.value if hasattr(value, "value") else value
        return str(value or "").lower() == wanted

    return predicate


def date_range_predicate(start: Optional[datetime], end: Optional[datetime], field: str = "created_at") -> Predicate:
    """Both bounds inclusive. Applies only when both are given."""
    if start is None or end is None:
        return match_all
    start, end = naive_utc(start), naive_utc(end)

    def predicate(item):
        value = naive_utc(_value(item, field))
        return value is not None and start <= value <= end

    return predicate


def all_of(*predicates: Predicate) -> Predicate:
    return lambda item: all(p(item) for p in predicates)


def filter_items(items: Sequence[T], predicate: Predicate = match_all) -> List[T]:
    return [item for item in items if predicate(item)]


def total_pages(count: int, page_size: int) -> int:
    return math.ceil(count / page_size) if count else 0


def clamp_page(page: int, pages: int) -> int:
    return max(1, min(page, max(pages, 1)))


@dataclass(frozen=True)
class Page(Generic[T]):
    items: List[T]
    page: int
    page_size: int
    total_pages: int
    match_count: int

    @property
    def has_previous(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    def to_wire(self, serialize: Callable[[T], Any] = lambda item: item) -> dict:
        return {
            "items": [serialize(item) for item in self.items],
            "page": self.page,
            "pageSize": self.page_size,
            "totalPages": self.total_pages,
            "matchCount": self.match_count,
            "hasPrevious": self.has_previous,
            "hasNext": self.has_next,
        }


def paginate(items: Sequence[T], predicate: Predicate = match_all, page: int = 1,
             page_size: int = DEFAULT_PAGE_SIZE) -> Page[T]:
    """
    Slice of matches for a 1-based page. A page past the end is empty;
    clamping is the caller's job.
    """
    if page_size < 1:
        raise ValueError("page_size must be at least 1")
    if page < 1:
        raise ValueError("page must be at least 1")
    matches = filter_items(items, predicate)
    start = (page - 1) * page_size
    return Page(
        items=matches[start:start + page_size],
        page=page,
        page_size=page_size,
        total_pages=total_pages(len(matches), page_size),
        match_count=len(matches),
    )


class ListView(Generic[T]):
    """Search and status filters plus the active page for one list screen."""

    def __init__(self, items: Sequence[T], search_fields: Sequence[str], page_size: int = DEFAULT_PAGE_SIZE,
                 status_field: str = "status"):
        self.items = list(items)
        self.search_fields = tuple(search_fields)
        self.status_field = status_field
        self.page_size = page_size
        self.search = ""
        self.status = ALL
        self.page = 1

    def set_items(self, items: Sequence[T]) -> None:
        self.items = list(items)

    def set_search(self, term: Optional[str]) -> None:
        term = term or ""
        if term != self.search:
            self.search = term
            self.page = 1

    def set_status(self, status: Optional[str]) -> None:
        status = status or ALL
        if status != self.status:
            self.status = status
            self.page = 1

    @property
    def predicate(self) -> Predicate:
        return all_of(
            search_predicate(self.search, self.search_fields),
            status_predicate(self.status, self.status_field),
        )

    def go_to(self, page: int) -> Page[T]:
        pages = total_pages(len(filter_items(self.items, self.predicate)), self.page_size)
        self.page = clamp_page(page, pages)
        return self.current()

    def next_page(self) -> Page[T]:
        return self.go_to(self.page + 1)

    def previous_page(self) -> Page[T]:
        return self.go_to(self.page - 1)

    def current(self) -> Page[T]:
        return paginate(self.items, self.predicate, self.page, self.page_size)
