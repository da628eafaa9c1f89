"""
Admin endpoints: manual triggers, queue introspection and single-task actions.

All routes require an ADMIN session.
"""
from datetime import date

from flask import jsonify, request

from outbound.api import api_bp
from outbound.api.helpers import (
    InvalidParameter,
    error_response,
    parse_positive_int,
    run_dispatch,
    run_schedule,
    run_sweep,
)
from outbound.auth.utils import admin_required
from outbound.datetime_utils import utcnow
from outbound.logging_config import get_logger
from outbound.models import Invoice, InvoiceSchedule, TaskKind, TaskStatus, db
from outbound.pipeline import get_dispatcher, get_sync_coordinator
from outbound.services.invoice_reminders import FREQUENCIES, parse_send_time
from outbound.services.sync_coordinator import ENTITY_TYPES, SyncError
from outbound.services.task_store import TaskNotFound, TaskNotRetryable, TaskStore

logger = get_logger(__name__)


def _parse_enum(enum_cls, raw, name):
    if not raw:
        return None
    try:
        return enum_cls(raw)
    except ValueError:
        try:
            return enum_cls[raw.upper()]
        except KeyError:
            raise InvalidParameter(f"Unknown {name}: {raw}")


# ==============================================================================
# Triggers
# ==============================================================================

@api_bp.route("/admin/tasks/schedule", methods=["POST"])
@admin_required
def admin_schedule():
    return run_schedule()


@api_bp.route("/admin/tasks/dispatch", methods=["POST"])
@admin_required
def admin_dispatch():
    data = request.get_json(silent=True) or {}
    raw_limit = data.get("limit", request.args.get("limit"))
    return run_dispatch(raw_limit)


@api_bp.route("/admin/tasks/sweep", methods=["POST"])
@admin_required
def admin_sweep():
    return run_sweep()


# ==============================================================================
# Queue introspection
# ==============================================================================

@api_bp.route("/admin/tasks/stats", methods=["GET"])
@admin_required
def admin_task_stats():
    try:
        kind = _parse_enum(TaskKind, request.args.get("kind"), "kind")
    except InvalidParameter as e:
        return error_response(str(e), 400)

    try:
        return jsonify({
            "success": True,
            "kind": kind.value if kind else None,
            "counts": TaskStore.counts_by_status(kind),
            "due": TaskStore.count_due(utcnow(), kind),
        }), 200
    except Exception as e:
        logger.error("Error loading task stats", error=str(e), exc_info=True)
        return error_response("Failed to load task stats", 500)


@api_bp.route("/admin/tasks", methods=["GET"])
@admin_required
def admin_list_tasks():
    try:
        status = _parse_enum(TaskStatus, request.args.get("status"), "status")
        kind = _parse_enum(TaskKind, request.args.get("kind"), "kind")
        page = parse_positive_int(request.args.get("page"), "page") or 1
        limit = min(parse_positive_int(request.args.get("limit"), "limit") or 50, 200)
    except InvalidParameter as e:
        return error_response(str(e), 400)

    try:
        tasks, total = TaskStore.list_tasks(status=status, kind=kind, page=page, limit=limit)
        return jsonify({
            "success": True,
            "tasks": [task.to_dict() for task in tasks],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": (total + limit - 1) // limit,
            },
        }), 200
    except Exception as e:
        logger.error("Error listing tasks", error=str(e), exc_info=True)
        return error_response("Failed to list tasks", 500)


# ==============================================================================
# Single-task actions
# ==============================================================================

@api_bp.route("/admin/tasks/<int:task_id>/retry", methods=["POST"])
@admin_required
def admin_retry_task(task_id):
    try:
        outcome = get_dispatcher().execute_now(task_id)
        return jsonify({"success": outcome.status == TaskStatus.SENT, "outcome": outcome.to_dict()}), 200
    except TaskNotFound as e:
        return error_response(str(e), 404)
    except TaskNotRetryable as e:
        return error_response(str(e), 409)
    except Exception as e:
        logger.error("Error retrying task", task_id=task_id, error=str(e), exc_info=True)
        return error_response("Failed to retry task", 500)


@api_bp.route("/admin/tasks/<int:task_id>/cancel", methods=["POST"])
@admin_required
def admin_cancel_task(task_id):
    try:
        task = TaskStore.cancel(task_id)
        logger.info("Task cancelled", task_id=task_id)
        return jsonify({"success": True, "task": task.to_dict()}), 200
    except TaskNotFound as e:
        return error_response(str(e), 404)
    except TaskNotRetryable as e:
        return error_response(str(e), 409)
    except Exception as e:
        logger.error("Error cancelling task", task_id=task_id, error=str(e), exc_info=True)
        return error_response("Failed to cancel task", 500)


# ==============================================================================
# Control-panel sync
# ==============================================================================

@api_bp.route("/admin/sync/<entity_type>/<int:entity_id>", methods=["POST"])
@admin_required
def admin_sync_entity(entity_type, entity_id):
    if entity_type not in ENTITY_TYPES:
        return error_response(f"Unsupported entity type: {entity_type}", 400)

    data = request.get_json(silent=True) or {}
    control_panel = data.get("control_panel")
    coordinator = get_sync_coordinator()

    try:
        if data.get("immediate"):
            task = coordinator.enqueue_sync(entity_type, entity_id, control_panel)
            if task is None:
                return error_response("A sync for this entity is already queued", 409)
            outcome = coordinator.retry_now(task.id)
            return jsonify({"success": outcome.status == TaskStatus.SENT, "outcome": outcome.to_dict()}), 200

        task = coordinator.enqueue_sync(entity_type, entity_id, control_panel)
        return jsonify({
            "success": True,
            "queued": task is not None,
            "task": task.to_dict() if task else None,
        }), 202
    except SyncError as e:
        return error_response(str(e), 400)
    except TaskNotRetryable as e:
        return error_response(str(e), 409)
    except Exception as e:
        logger.error("Error syncing entity", entity_type=entity_type, entity_id=entity_id, error=str(e), exc_info=True)
        return error_response("Failed to sync entity", 500)


@api_bp.route("/admin/sync/stats", methods=["GET"])
@admin_required
def admin_sync_stats():
    try:
        return jsonify({"success": True, **get_sync_coordinator().queue_stats()}), 200
    except Exception as e:
        logger.error("Error loading sync stats", error=str(e), exc_info=True)
        return error_response("Failed to load sync stats", 500)


# ==============================================================================
# Invoice reminder cadence
# ==============================================================================

def _schedule_fields(data):
    fields = {}
    if "enabled" in data:
        fields["enabled"] = bool(data["enabled"])
    if "frequency" in data:
        if data["frequency"] not in FREQUENCIES:
            raise InvalidParameter(f"frequency must be one of {', '.join(FREQUENCIES)}")
        fields["frequency"] = data["frequency"]
    if "interval_days" in data:
        fields["interval_days"] = parse_positive_int(data["interval_days"], "interval_days")
    if "send_time" in data:
        if data["send_time"] and parse_send_time(data["send_time"]) is None:
            raise InvalidParameter("send_time must be HH:MM")
        fields["send_time"] = data["send_time"] or None
    if "start_date" in data:
        try:
            fields["start_date"] = date.fromisoformat(data["start_date"]) if data["start_date"] else None
        except (TypeError, ValueError):
            raise InvalidParameter("start_date must be YYYY-MM-DD")
    if "days_before_due" in data:
        value = data["days_before_due"]
        if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 0):
            raise InvalidParameter("days_before_due must be a non-negative integer")
        fields["days_before_due"] = value
    if "cc_accounting_team" in data:
        fields["cc_accounting_team"] = bool(data["cc_accounting_team"])
    return fields


@api_bp.route("/admin/invoices/<int:invoice_id>/schedule", methods=["POST"])
@admin_required
def admin_upsert_invoice_schedule(invoice_id):
    invoice = db.session.get(Invoice, invoice_id)
    if invoice is None:
        return error_response(f"Invoice {invoice_id} not found", 404)

    try:
        fields = _schedule_fields(request.get_json(silent=True) or {})
    except InvalidParameter as e:
        return error_response(str(e), 400)

    schedule = invoice.schedule or InvoiceSchedule(
        invoice_id=invoice.id,
        enabled=True,
        frequency="monthly",
        cc_accounting_team=False,
    )
    for name, value in fields.items():
        setattr(schedule, name, value)

    if schedule.frequency == "custom" and not schedule.interval_days:
        return error_response("interval_days is required for a custom frequency", 400)

    try:
        db.session.add(schedule)
        db.session.commit()
        logger.info("Invoice schedule saved", invoice_id=invoice_id, frequency=schedule.frequency)
        return jsonify({"success": True, "schedule": schedule.to_dict()}), 200
    except Exception as e:
        db.session.rollback()
        logger.error("Error saving invoice schedule", invoice_id=invoice_id, error=str(e), exc_info=True)
        return error_response("Failed to save invoice schedule", 500)
