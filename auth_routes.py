"""
Authentication Routes for Tajer Backend
Handles email signup/login, password reset and role checks
"""

from flask import Blueprint, request, jsonify, current_app
import secrets
import jwt
import datetime
import logging
from functools import wraps

from models import db, User, USER_ROLES, utcnow
from extensions import limiter

auth_bp = Blueprint('auth', __name__, url_prefix='/api/auth')

logger = logging.getLogger(__name__)

SIGNUP_ROLES = tuple(r for r in USER_ROLES if r != 'admin')
RESET_TOKEN_TTL = datetime.timedelta(hours=1)
MIN_PASSWORD_LENGTH = 8

# MARK: - Helper Functions

def generate_token(user_id):
    """Generate JWT token for user"""
    payload = {
        'user_id': user_id,
        'exp': datetime.datetime.now(datetime.timezone.utc)
        + datetime.timedelta(days=current_app.config.get('JWT_EXPIRES_DAYS', 30))
    }
    return jwt.encode(payload, current_app.config['JWT_SECRET'], algorithm='HS256')


def verify_token(token):
    """Verify JWT token and return user_id"""
    try:
        payload = jwt.decode(token, current_app.config['JWT_SECRET'], algorithms=['HS256'])
        return payload.get('user_id')
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def require_auth(f):
    """Decorator to require authentication"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = request.headers.get('Authorization', '').replace('Bearer ', '')
        user_id = verify_token(token) if token else None
        if not user_id or not db.session.get(User, user_id):
            return jsonify({'error': 'Unauthorized'}), 401
        return f(user_id=user_id, *args, **kwargs)
    return decorated_function


def require_role(*roles):
    """Decorator that requires auth and one of *roles* (admins always pass)."""
    def decorator(f):
        @wraps(f)
        @require_auth
        def decorated_function(user_id, *args, **kwargs):
            user = db.session.get(User, user_id)
            if user.role not in roles and user.role != 'admin':
                return jsonify({'error': '{} access required'.format(' or '.join(r.capitalize() for r in roles))}), 403
            return f(user_id=user_id, *args, **kwargs)
        return decorated_function
    return decorator


require_admin = require_role('admin')


def _user_payload(user, token=None):
    body = {'success': True, 'user': user.to_dict()}
    if token:
        body['token'] = token
    return body

# MARK: - Email Authentication Routes

@auth_bp.route('/signup', methods=['POST'])
@limiter.limit("3 per minute")
def signup():
    """Create new user account with email/password"""
    data = request.get_json(silent=True) or {}
    username = (data.get('username') or '').strip()
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''
    role = (data.get('role') or 'customer').strip().lower()

    if not username or not email or not password:
        return jsonify({'error': 'Username, email and password are required'}), 400
    if '@' not in email:
        return jsonify({'error': 'Invalid email address'}), 400
    if len(password) < MIN_PASSWORD_LENGTH:
        return jsonify({'error': 'Password must be at least {} characters'.format(MIN_PASSWORD_LENGTH)}), 400
    if role not in SIGNUP_ROLES:
        return jsonify({'error': 'Role must be one of: {}'.format(', '.join(SIGNUP_ROLES))}), 400

    if User.query.filter_by(email=email).first():
        return jsonify({'error': 'Email is already registered.'}), 400

    new_user = User(username=username, email=email, role=role)
    new_user.set_password(password)
    db.session.add(new_user)
    db.session.commit()
    logger.info("User %s signed up as %s", new_user.id, role)

    current_app.extensions['notifier'].welcome(new_user)

    token = generate_token(new_user.id)
    body = _user_payload(new_user, token)
    body['message'] = 'User registered successfully!'
    return jsonify(body), 201


@auth_bp.route('/login', methods=['POST'])
@limiter.limit("5 per minute")
def login():
    """Login with email and password"""
    data = request.get_json(silent=True) or {}
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''

    if not email or not password:
        return jsonify({'error': 'Email and password required'}), 400

    db_user = User.query.filter_by(email=email).first()
    if not db_user or not db_user.check_password(password):
        return jsonify({'error': 'Invalid email or password'}), 401

    return jsonify(_user_payload(db_user, generate_token(db_user.id)))

# MARK: - Password Reset

@auth_bp.route('/forgot-password', methods=['POST'])
@limiter.limit("3 per minute")
def forgot_password():
    """Email a one-hour password reset link"""
    data = request.get_json(silent=True) or {}
    email = (data.get('email') or '').strip().lower()

    if not email:
        return jsonify({'error': 'Email is required'}), 400

    db_user = User.query.filter_by(email=email).first()
    if not db_user:
        return jsonify({'error': 'No account found with that email'}), 404

    db_user.reset_token = secrets.token_urlsafe(32)
    db_user.reset_token_expires = utcnow() + RESET_TOKEN_TTL
    db.session.commit()

    reset_url = '{}/reset-password?token={}'.format(current_app.config['FRONTEND_URL'], db_user.reset_token)
    current_app.extensions['notifier'].password_reset(db_user, reset_url)

    return jsonify({
        'success': True,
        'message': 'Password reset link sent to your email'
    })


@auth_bp.route('/reset-password', methods=['POST'])
@limiter.limit("5 per minute")
def reset_password():
    """Set a new password using a valid reset token"""
    data = request.get_json(silent=True) or {}
    token = data.get('token') or ''
    password = data.get('password') or data.get('newPassword') or ''

    if not token or not password:
        return jsonify({'error': 'Token and new password are required'}), 400
    if len(password) < MIN_PASSWORD_LENGTH:
        return jsonify({'error': 'Password must be at least {} characters'.format(MIN_PASSWORD_LENGTH)}), 400

    db_user = User.query.filter(
        User.reset_token == token,
        User.reset_token_expires > utcnow(),
    ).first()
    if not db_user:
        return jsonify({'error': 'Invalid or expired token'}), 400

    db_user.set_password(password)
    db_user.reset_token = None
    db_user.reset_token_expires = None
    db.session.commit()
    logger.info("Password reset for user %s", db_user.id)

    return jsonify({'success': True, 'message': 'Password has been reset'})

# MARK: - Current User

@auth_bp.route('/me', methods=['GET'])
@require_auth
def get_current_user(user_id):
    """Get current authenticated user profile"""
    return jsonify(_user_payload(db.session.get(User, user_id)))


@auth_bp.route('/change-password', methods=['POST'])
@require_auth
def change_password(user_id):
    """Change password for the authenticated user"""
    data = request.get_json(silent=True) or {}
    current_password = data.get('current_password') or ''
    new_password = data.get('new_password') or ''

    if len(new_password) < MIN_PASSWORD_LENGTH:
        return jsonify({'error': 'Password must be at least {} characters'.format(MIN_PASSWORD_LENGTH)}), 400

    db_user = db.session.get(User, user_id)
    if not db_user.check_password(current_password):
        return jsonify({'error': 'Current password is incorrect'}), 401

    db_user.set_password(new_password)
    db.session.commit()
    return jsonify({'success': True, 'message': 'Password updated'})
