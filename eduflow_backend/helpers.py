import math

from flask import current_app, jsonify, request

DEFAULT_LIMIT = 10
MAX_LIMIT = 100


def _positive_int(value, default):
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def pagination_args():
    """``(page, limit, skip)`` from the query string, with defaults for junk values."""
    limit = min(_positive_int(request.args.get("limit"), DEFAULT_LIMIT), MAX_LIMIT)
    page = _positive_int(request.args.get("page"), 1)
    return page, limit, (page - 1) * limit


def paginated_response(items, total, page, limit):
    return jsonify({
        "success": True,
        "count": len(items),
        "pagination": {
            "total": total,
            "page": page,
            "pages": math.ceil(total / limit) if total else 0,
        },
        "data": items,
    })


def json_body():
    return request.get_json(silent=True) or {}


def get_store():
    return current_app.extensions["eduflow.store"]


def get_chain():
    return current_app.extensions["eduflow.chain"]
