"""Customer email verification."""
from flask import current_app, jsonify, render_template, request

from outbound.api import api_bp
from outbound.api.helpers import error_response
from outbound.logging_config import get_logger
from outbound.models import Customer, TaskKind, db
from outbound.pipeline import get_sync_coordinator
from outbound.services.task_store import TaskStore

logger = get_logger(__name__)


@api_bp.route("/customers/verify", methods=["GET"])
def verify_customer_email():
    """
    Mark a customer's email verified.

    Follow-up work is queued rather than run inline: a confirmation email and
    a control-panel sync. Either can fail and retry without affecting the
    verification itself.
    """
    token = request.args.get("token")
    if not token:
        return error_response("Verification token is required", 400)

    customer = Customer.query.filter_by(verification_token=token).first()
    if customer is None:
        return error_response("Invalid or expired verification token", 404)

    try:
        customer.email_verified = True
        customer.verification_token = None

        brand_name = current_app.config.get("BRAND_NAME", "HostDesk")
        TaskStore.enqueue(
            TaskKind.NOTIFICATION_EMAIL,
            {
                "to": customer.email,
                "subject": f"Your email has been verified - {brand_name}",
                "html": render_template(
                    "email/email_verified.html",
                    brand_name=brand_name,
                    site_url=current_app.config.get("SITE_URL", ""),
                    customer_name=customer.name,
                    email=customer.email,
                ),
                "notification": "EMAIL_VERIFIED",
                "customer_id": customer.id,
            },
            dedupe_key=f"email_verified:{customer.id}",
            subject_key=f"customer:{customer.id}",
        )
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error("Error verifying customer", customer_id=customer.id, error=str(e), exc_info=True)
        return error_response("Failed to verify email", 500)

    sync_task = get_sync_coordinator().enqueue_sync("customer", customer.id)
    logger.info("Customer email verified", customer_id=customer.id, sync_queued=sync_task is not None)

    return jsonify({
        "success": True,
        "message": "Email verified",
        "customer_id": customer.id,
        "sync_queued": sync_task is not None,
    }), 200
