"""Page requests and pagination metadata for list endpoints."""

from dataclasses import dataclass
from typing import Any

MAX_PAGE_SIZE = 100


@dataclass
class PageRequest:
    """Requested page window; out-of-range values are clamped."""

    page: int = 1
    size: int = 10
    sort: str = "createdAt"
    order: str = "desc"
    search: str = ""

    def __post_init__(self) -> None:
        self.page = max(int(self.page), 1)
        self.size = min(max(int(self.size), 1), MAX_PAGE_SIZE)
        self.order = "asc" if str(self.order).lower() == "asc" else "desc"
        self.search = (self.search or "").strip()

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.size


@dataclass
class Page:
    """One page of items plus metadata and a link to the next page."""

    items: list[Any]
    pagination: dict[str, Any]
    next: dict[str, Any] | None = None

    def to_dict(self, items_name: str = "items") -> dict[str, Any]:
        return {items_name: self.items, "pagination": self.pagination, "next": self.next}


def paginate(items: list[Any], total_items: int, request: PageRequest) -> Page:
    """Wrap one slice of results with pagination metadata.

    Args:
        items: The items on the requested page.
        total_items: Count of all matching items.
        request: The page window that produced ``items``.
    """
    total_pages = -(-total_items // request.size)
    offset = request.offset
    pagination = {
        "page": request.page,
        "size": request.size,
        "totalItems": total_items,
        "totalPages": total_pages,
        "startIndex": offset,
        "endIndex": min(offset + request.size, total_items) - 1,
        "sort": request.sort,
        "order": request.order,
        "search": request.search,
        "lastPage": total_pages,
    }

    next_page = None
    if request.page < total_pages:
        next_page = {
            "path": (
                f"?page={request.page + 1}&size={request.size}"
                f"&sort={request.sort}&order={request.order}"
            ),
            "page": request.page + 1,
            "size": request.size,
            "sort": request.sort,
            "order": request.order,
        }

    return Page(items=items, pagination=pagination, next=next_page)
