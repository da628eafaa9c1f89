"""
Shared handlers behind the cron and admin trigger endpoints.

Both surfaces authenticate differently and then call the same function here,
so the batch logic exists once.
"""
from flask import jsonify

from outbound.logging_config import get_logger
from outbound.pipeline import get_dispatcher, get_scheduler

logger = get_logger(__name__)


class InvalidParameter(ValueError):
    pass


def parse_positive_int(raw, name):
    """None/empty -> None; otherwise a positive int or InvalidParameter."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        raise InvalidParameter(f"{name} must be a positive integer")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise InvalidParameter(f"{name} must be a positive integer")
    if value < 1:
        raise InvalidParameter(f"{name} must be a positive integer")
    return value


def error_response(message, status_code):
    return jsonify({"success": False, "error": message}), status_code


def run_schedule():
    try:
        summary = get_scheduler().run()
        return jsonify({"success": True, **summary.to_dict()}), 200
    except Exception as e:
        logger.error("Error running scheduler", error=str(e), exc_info=True)
        return error_response("Failed to schedule notifications", 500)


def run_dispatch(raw_limit):
    try:
        limit = parse_positive_int(raw_limit, "limit")
    except InvalidParameter as e:
        return error_response(str(e), 400)

    try:
        dispatcher = get_dispatcher()
        result = dispatcher.run_batch(limit=limit)
        return jsonify({
            "success": True,
            "limit": dispatcher.normalize_limit(limit),
            **result.to_dict(),
        }), 200
    except Exception as e:
        logger.error("Error running dispatcher", error=str(e), exc_info=True)
        return error_response("Failed to process tasks", 500)


def run_sweep():
    try:
        reclaimed = get_dispatcher().reclaim_stale()
        return jsonify({"success": True, "reclaimed": reclaimed}), 200
    except Exception as e:
        logger.error("Error reclaiming stale tasks", error=str(e), exc_info=True)
        return error_response("Failed to reclaim stale tasks", 500)
