"""
Benefit Request Engine
Blueprint registry and shared listing helpers.
"""

from flask import request

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500


def page_window() -> tuple[int, int]:
    """``(limit, offset)`` from the query string, clamped; junk falls back to defaults."""
    limit = request.args.get("limit", DEFAULT_PAGE_SIZE, type=int)
    offset = request.args.get("offset", 0, type=int)
    return max(1, min(limit, MAX_PAGE_SIZE)), max(0, offset)


def page_of(query, serialize) -> dict:
    """Serialize one window of ``query`` into the listing envelope.

    ``{"items": [...], "total": n, "limit": l, "offset": o}``; ``total``
    counts the whole filtered set, not just this window.
    """
    limit, offset = page_window()
    return {
        "items": [serialize(row) for row in query.limit(limit).offset(offset)],
        "total": query.order_by(None).count(),
        "limit": limit,
        "offset": offset,
    }
