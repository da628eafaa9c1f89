# Package
from flask import Blueprint

from outbound.logging_config import get_logger

logger = get_logger(__name__)

api_bp = Blueprint("api", __name__)

from outbound.api import helpers, cron_routes, admin_routes, customer_routes
