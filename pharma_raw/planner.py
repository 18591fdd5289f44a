from __future__ import annotations

import math


def plan_total_pages(total_reported: int, page_size: int, max_pages: int) -> int:
    """Number of pages to fetch, counting page 1.

    The reported total is untrusted, so the result never exceeds ``max_pages``.
    """
    if page_size <= 0:
        raise ValueError(f"page_size must be positive, got {page_size}")
    if max_pages < 0:
        raise ValueError(f"max_pages must be >= 0, got {max_pages}")
    if total_reported <= 0:
        return 0
    return min(math.ceil(total_reported / page_size), max_pages)
