"""
Token-gated trigger endpoints for external cron.

The token is accepted as `Authorization: Bearer <token>` or `?token=<token>`.
"""
from flask import request

from outbound.api import api_bp
from outbound.api.helpers import run_dispatch, run_schedule, run_sweep
from outbound.auth.utils import cron_token_required


@api_bp.route("/cron/schedule", methods=["GET", "POST"])
@cron_token_required
def cron_schedule():
    return run_schedule()


@api_bp.route("/cron/dispatch", methods=["GET", "POST"])
@cron_token_required
def cron_dispatch():
    return run_dispatch(request.args.get("limit"))


@api_bp.route("/cron/sweep", methods=["GET", "POST"])
@cron_token_required
def cron_sweep():
    return run_sweep()
