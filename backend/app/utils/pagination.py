"""Page arithmetic shared by the listing endpoints."""

MAX_PAGE_SIZE = 100


def page_window(page: int, page_size: int, all_rows: bool) -> tuple[int | None, int]:
    """(limit, offset) for a 1-based page; page_size is capped at 100.

    `all_rows` disables paging: limit None, offset 0.
    """
    if all_rows:
        return None, 0
    page = max(page, 1)
    page_size = min(max(page_size, 1), MAX_PAGE_SIZE)
    return page_size, (page - 1) * page_size


def page_meta(page: int, page_size: int, all_rows: bool, total: int) -> dict:
    if all_rows:
        return {"page": 1, "page_size": total, "total": total}
    return {
        "page": max(page, 1),
        "page_size": min(max(page_size, 1), MAX_PAGE_SIZE),
        "total": total,
    }
