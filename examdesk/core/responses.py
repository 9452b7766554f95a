import math
from typing import Any, Optional, Sequence


def ok(data: Any = None, message: Optional[str] = None) -> dict:
    body: dict = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    return body


def paginated(items: Sequence[Any], page: int, limit: int, total: int) -> dict:
    return {
        "success": True,
        "data": list(items),
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": math.ceil(total / limit) if limit else 0,
        },
    }
