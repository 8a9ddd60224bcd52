import math


def paginate(query, page: int, limit: int):
    """Apply offset/limit to a query, returning (rows, total)"""
    total = query.order_by(None).count()
    rows = query.offset((page - 1) * limit).limit(limit).all()
    return rows, total


def page_envelope(key: str, items: list, total: int, page: int, limit: int) -> dict:
    return {
        "success": True,
        "count": len(items),
        "total": total,
        "total_pages": math.ceil(total / limit) if limit else 0,
        "current_page": page,
        key: items,
    }


def decimal_to_float(val):
    """Convert Decimal to float for JSON serialization"""
    if val is None:
        return None
    return float(val)
