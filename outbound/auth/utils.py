"""Authentication utilities for password hashing, sessions and the cron token."""
import secrets
from functools import wraps

from flask import current_app, jsonify, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from outbound.logging_config import get_logger
from outbound.models import User, db

logger = get_logger(__name__)


def hash_password(password: str) -> str:
    """Hash a password using werkzeug's pbkdf2:sha256."""
    return generate_password_hash(password, method='pbkdf2:sha256')


def verify_password(password_hash: str, password: str) -> bool:
    """Verify a password against a hash."""
    return check_password_hash(password_hash, password)


def get_current_user():
    """
    Get the current logged-in user from the session.

    Returns:
        User object if logged in and active, None otherwise
    """
    from flask import has_request_context

    # Background jobs have no session
    if not has_request_context():
        return None

    user_id = session.get('user_id')
    if not user_id:
        return None

    user = db.session.get(User, user_id)
    if user and user.is_active:
        return user
    return None


def login_required(f):
    """
    Decorator to require user login for a route.

    Returns 401 Unauthorized if user is not logged in.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = get_current_user()
        if not user:
            return jsonify({'success': False, 'error': 'Authentication required'}), 401
        return f(*args, **kwargs)
    return decorated_function


def admin_required(f):
    """
    Decorator to require admin privileges for a route.

    Returns 401 Unauthorized if user is not logged in.
    Returns 403 Forbidden if user is not an admin.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = get_current_user()
        if not user:
            return jsonify({'success': False, 'error': 'Authentication required'}), 401
        if not user.is_admin:
            logger.warning(f"Non-admin user {user.username} attempted to access admin-only route")
            return jsonify({'success': False, 'error': 'Admin privileges required'}), 403
        return f(*args, **kwargs)
    return decorated_function


def get_request_token():
    """Token from `Authorization: Bearer <token>`, falling back to `?token=`."""
    header = request.headers.get('Authorization', '')
    if header.lower().startswith('bearer '):
        return header[7:].strip()
    return request.args.get('token')


def cron_token_required(f):
    """
    Decorator for automatic trigger endpoints.

    Returns 401 Unauthorized when the token is missing, wrong, or no
    CRON_SECRET is configured.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get('CRON_SECRET')
        token = get_request_token()
        if not expected or not token or not secrets.compare_digest(token.encode(), expected.encode()):
            logger.warning("Rejected cron trigger", path=request.path, has_token=bool(token))
            return jsonify({'success': False, 'error': 'Unauthorized'}), 401
        return f(*args, **kwargs)
    return decorated_function
