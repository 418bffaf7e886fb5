from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from accessreview.core.config import get_settings


@dataclass(frozen=True, slots=True)
class PageRequest:
    page: int
    limit: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


def page_request(page: int | None = None, limit: int | None = None) -> PageRequest:
    # Clamp caller-supplied paging so list queries stay bounded.
    settings = get_settings()
    resolved_page = max(1, int(page or 1))
    resolved_limit = int(limit or settings.default_page_size)
    resolved_limit = max(1, min(resolved_limit, int(settings.max_page_size)))
    return PageRequest(page=resolved_page, limit=resolved_limit)


def pagination_meta(*, total: int, request: PageRequest) -> dict[str, Any]:
    return {
        "total": total,
        "page": request.page,
        "limit": request.limit,
        "total_pages": math.ceil(total / request.limit) if total else 0,
    }
