"""Authentication routes for login and logout."""
from flask import Blueprint, request, jsonify, session
from outbound.models import User, db
from outbound.auth.utils import get_current_user, login_required, verify_password
from outbound.datetime_utils import utcnow
from outbound.logging_config import get_logger

logger = get_logger(__name__)

auth_bp = Blueprint('auth', __name__, url_prefix='/api/auth')


@auth_bp.route('/login', methods=['POST'])
def login():
    """Authenticate a user and create a session."""
    try:
        data = request.get_json(silent=True)
        if not data:
            return jsonify({'success': False, 'error': 'No JSON data provided'}), 400

        username = data.get('username')
        password = data.get('password')

        if not username or not password:
            return jsonify({'success': False, 'error': 'Username and password are required'}), 400

        user = User.query.filter_by(username=username).first()

        if not user or not verify_password(user.password_hash, password):
            logger.warning(f"Failed login attempt for user: {username}")
            return jsonify({'success': False, 'error': 'Invalid username or password'}), 401

        if not user.is_active:
            logger.warning(f"Login attempt for inactive user: {username}")
            return jsonify({'success': False, 'error': 'Account is inactive'}), 403

        user.last_login = utcnow()
        db.session.commit()

        session['user_id'] = user.id
        session['username'] = user.username
        session.permanent = True

        logger.info(f"User {username} logged in successfully")

        return jsonify({
            'success': True,
            'user': {
                'id': user.id,
                'username': user.username,
                'role': user.role,
            }
        }), 200

    except Exception as e:
        logger.error(f"Error during login: {e}", exc_info=True)
        return jsonify({'success': False, 'error': 'An error occurred during login'}), 500


@auth_bp.route('/logout', methods=['POST'])
def logout():
    """Clear the session."""
    username = session.get('username', 'Unknown')
    session.clear()
    logger.info(f"User {username} logged out")
    return jsonify({'success': True, 'message': 'Logged out successfully'}), 200


@auth_bp.route('/me', methods=['GET'])
@login_required
def get_current_user_info():
    """Get current logged-in user information."""
    user = get_current_user()
    return jsonify({
        'id': user.id,
        'username': user.username,
        'role': user.role,
        'is_admin': user.is_admin,
        'last_login': user.last_login.isoformat() if user.last_login else None,
    }), 200
