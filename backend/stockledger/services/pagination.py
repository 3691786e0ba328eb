from __future__ import annotations

from flask import current_app


def clamp_page(page, per_page, *, default_per_page: int = 20) -> tuple[int, int]:
    """Normalize page/per_page: page >= 1, 1 <= per_page <= HISTORY_MAX_PAGE_SIZE."""
    max_per_page = current_app.config.get("HISTORY_MAX_PAGE_SIZE", 100)
    page = max(int(page or 1), 1)
    per_page = min(max(int(per_page or default_per_page), 1), max_per_page)
    return page, per_page


def paginate(query, page, per_page, *, serialize=None) -> dict:
    """
    Run an ordered query for one page.

    Returns {"items", "count", "pagination": {page, per_page, total,
    total_pages, has_next, has_prev}}.
    """
    page, per_page = clamp_page(page, per_page)

    total = query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1

    rows = query.offset((page - 1) * per_page).limit(per_page).all()
    if serialize is None:
        serialize = lambda row: row.to_dict()  # noqa: E731

    return {
        "items": [serialize(row) for row in rows],
        "count": len(rows),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }
