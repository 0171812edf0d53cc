"""List / filter / sort / paginate helpers shared by every listing screen."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Iterable, Optional

from utils import safe_int

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10
MAX_LIMIT = 100
SORT_DIRECTIONS = ("asc", "desc")


def _positive_or_default(raw, default: int) -> int:
    value = safe_int(raw, default=default)
    return value if value > 0 else default


@dataclass(frozen=True)
class Pagination:
    page: int = DEFAULT_PAGE
    limit: int = DEFAULT_LIMIT

    @classmethod
    def from_args(cls, args) -> "Pagination":
        """Read ``page``/``limit``; junk and non-positive values fall back to defaults."""
        page = _positive_or_default(args.get("page"), DEFAULT_PAGE)
        limit = min(_positive_or_default(args.get("limit"), DEFAULT_LIMIT), MAX_LIMIT)
        return cls(page=page, limit=limit)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def meta(self, total: int) -> dict:
        return {"page": self.page, "limit": self.limit, "total": total}

    def slice(self, rows: list) -> list:
        return rows[self.offset:self.offset + self.limit]


def parse_sort(args, allowed: Iterable[str], default: str) -> tuple[str, str]:
    """Return ``(sort_by, sort_dir)`` restricted to *allowed* columns."""
    sort_by = (args.get("sort_by") or "").strip()
    if sort_by not in allowed:
        sort_by = default
    sort_dir = (args.get("sort_dir") or "").strip().lower()
    if sort_dir not in SORT_DIRECTIONS:
        sort_dir = "desc"
    return sort_by, sort_dir


def apply_sort(query, column, sort_dir: str):
    return query.order_by(column.asc() if sort_dir == "asc" else column.desc())


def matches_search(needle: str, *haystack) -> bool:
    """Case-insensitive substring match of *needle* against any value."""
    term = (needle or "").strip().lower()
    if not term:
        return True
    return any(term in str(value).lower() for value in haystack if value is not None)


# ---------------------------------------------------------------------------
# Admin screen state
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PageWindow:
    """The "Showing a-b of n" footer and its Previous/Next controls."""

    page: int
    limit: int
    total: int

    @property
    def start(self) -> int:
        if self.total <= 0:
            return 0
        return min((self.page - 1) * self.limit + 1, self.total)

    @property
    def end(self) -> int:
        if self.total <= 0:
            return 0
        return min(self.page * self.limit, self.total)

    @property
    def label(self) -> str:
        return f"Showing {self.start}-{self.end} of {self.total}"

    @property
    def previous_disabled(self) -> bool:
        return self.total <= 0 or self.page <= 1

    @property
    def next_disabled(self) -> bool:
        return self.total <= 0 or self.page * self.limit >= self.total


@dataclass(frozen=True)
class ListState:
    """Search, filters, sort and paging for one admin listing.

    Every change except a page change sends the user back to page 1.
    """

    search: str = ""
    filters: dict = field(default_factory=dict)
    sort_by: str = "created_at"
    sort_dir: str = "desc"
    page: int = DEFAULT_PAGE
    limit: int = DEFAULT_LIMIT

    @classmethod
    def from_args(
        cls,
        args,
        filter_keys: Iterable[str] = (),
        sort_columns: Iterable[str] = ("created_at",),
        default_sort: str = "created_at",
    ) -> "ListState":
        pagination = Pagination.from_args(args)
        sort_by, sort_dir = parse_sort(args, tuple(sort_columns), default_sort)
        filters = {}
        for key in filter_keys:
            value = (args.get(key) or "").strip()
            if value:
                filters[key] = value
        return cls(
            search=(args.get("search") or "").strip(),
            filters=filters,
            sort_by=sort_by,
            sort_dir=sort_dir,
            page=pagination.page,
            limit=pagination.limit,
        )

    def with_search(self, search: str) -> "ListState":
        return replace(self, search=search.strip(), page=DEFAULT_PAGE)

    def with_filter(self, key: str, value: Optional[str]) -> "ListState":
        filters = dict(self.filters)
        if value:
            filters[key] = value
        else:
            filters.pop(key, None)
        return replace(self, filters=filters, page=DEFAULT_PAGE)

    def with_sort(self, column: str) -> "ListState":
        """Toggle direction on the active column, otherwise sort the new column ascending."""
        if column == self.sort_by:
            direction = "asc" if self.sort_dir == "desc" else "desc"
        else:
            direction = "asc"
        return replace(self, sort_by=column, sort_dir=direction, page=DEFAULT_PAGE)

    def with_limit(self, limit: int) -> "ListState":
        return replace(self, limit=min(max(1, limit), MAX_LIMIT), page=DEFAULT_PAGE)

    def with_page(self, page: int) -> "ListState":
        return replace(self, page=max(1, page))

    def window(self, total: int) -> PageWindow:
        return PageWindow(page=self.page, limit=self.limit, total=total)

    def to_args(self) -> dict:
        """Query-string arguments for ``url_for``."""
        args = {
            "sort_by": self.sort_by,
            "sort_dir": self.sort_dir,
            "page": self.page,
            "limit": self.limit,
        }
        if self.search:
            args["search"] = self.search
        args.update(self.filters)
        return args
