import hashlib
import hmac
import os
from datetime import datetime, timedelta, timezone
from functools import wraps

import jwt
from flask import Blueprint, current_app, g, jsonify, request
from flask_wtf.csrf import generate_csrf
from werkzeug.security import check_password_hash, generate_password_hash

from errors import Forbidden, Unauthenticated, ValidationFailed
from extensions import get_resolver, get_session
from models import User, UserStatus
from schemas import LoginRequest, PasswordReset, parse_body

auth_bp = Blueprint('auth', __name__)

COOKIE_NAME = 'auth-token'
ALGORITHM = 'HS256'


def init_app(app):
    """Initialize authentication config."""
    app.config.setdefault('JWT_SECRET', os.environ.get('JWT_SECRET', app.secret_key))
    app.config.setdefault('JWT_ACCESS_HOURS', int(os.environ.get('JWT_ACCESS_HOURS', 2)))
    app.config.setdefault('JWT_REMEMBER_DAYS', int(os.environ.get('JWT_REMEMBER_DAYS', 30)))
    app.config.setdefault('SET_PASSWORD_HOURS', int(os.environ.get('SET_PASSWORD_HOURS', 72)))


def encode_token(claims: dict, lifetime: timedelta) -> str:
    now = datetime.now(timezone.utc)
    payload = dict(claims, iat=now, exp=now + lifetime)
    return jwt.encode(payload, current_app.config['JWT_SECRET'], algorithm=ALGORITHM)


def decode_token(token: str, purpose: str = 'session') -> dict:
    """Verify ``token`` and return its claims.

    Raises :class:`Unauthenticated` for bad signatures, expired tokens and
    tokens minted for a different purpose.
    """
    try:
        claims = jwt.decode(token, current_app.config['JWT_SECRET'], algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise Unauthenticated('Token expired') from None
    except jwt.InvalidTokenError:
        raise Unauthenticated('Invalid token') from None
    if claims.get('purpose', 'session') != purpose:
        raise Unauthenticated('Invalid token')
    return claims


def issue_session_token(user: User, remember_me: bool = False) -> tuple[str, int]:
    if remember_me:
        lifetime = timedelta(days=current_app.config['JWT_REMEMBER_DAYS'])
    else:
        lifetime = timedelta(hours=current_app.config['JWT_ACCESS_HOURS'])
    token = encode_token({'sub': str(user.id), 'username': user.username}, lifetime)
    return token, int(lifetime.total_seconds())


def _password_fingerprint(user: User) -> str:
    return hashlib.sha256((user.password_hash or '').encode()).hexdigest()[:16]


def issue_set_password_token(user: User) -> str:
    """Token for setting a password; it stops working once the password changes."""
    lifetime = timedelta(hours=current_app.config['SET_PASSWORD_HOURS'])
    claims = {'sub': str(user.id), 'purpose': 'set_password', 'pwd': _password_fingerprint(user)}
    return encode_token(claims, lifetime)


def _token_from_request() -> str | None:
    header = request.headers.get('Authorization', '')
    if header.lower().startswith('bearer '):
        return header[7:].strip() or None
    return request.cookies.get(COOKIE_NAME)


def load_current_user() -> User:
    """Resolve the session user or raise :class:`Unauthenticated`.

    Only ``ACTIVE`` users hold a session; suspended, inactive and invited
    accounts are treated as logged out.
    """
    if g.get('current_user') is not None:
        return g.current_user
    token = _token_from_request()
    if not token:
        raise Unauthenticated()
    claims = decode_token(token)
    try:
        user_id = int(claims['sub'])
    except (KeyError, TypeError, ValueError):
        raise Unauthenticated('Invalid token') from None
    user = get_session().get(User, user_id)
    if user is None or user.status != UserStatus.ACTIVE:
        raise Unauthenticated()
    g.current_user = user
    return user


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        load_current_user()
        return view(*args, **kwargs)

    return wrapped


def require_permission(system_id, *roles):
    """Guard a view with an access check on ``system_id``.

    Holding any one of ``roles`` (default ``read``) is enough.  ``system_id``
    may be a callable receiving the view kwargs.  Unauthenticated requests
    get 401 and denied ones 403; in both cases the view is not called.
    """
    required = roles or ('read',)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            user = load_current_user()
            system = system_id(kwargs) if callable(system_id) else system_id
            if not get_resolver().resolve_any(user.id, system, required):
                raise Forbidden()
            return view(*args, **kwargs)

        return wrapped

    return decorator


def has_role(system_id: str, role: str) -> bool:
    user = load_current_user()
    return get_resolver().resolve(user.id, system_id, role)


def serialize_user(user: User) -> dict:
    return {
        'id': user.id,
        'username': user.username,
        'email': user.email,
        'name': user.name,
        'status': user.status.value if user.status else None,
        'createdAt': user.created_at.isoformat() if user.created_at else None,
    }


def _set_auth_cookie(resp, token: str, max_age: int):
    resp.set_cookie(
        COOKIE_NAME,
        token,
        max_age=max_age,
        httponly=True,
        secure=current_app.config.get('SESSION_COOKIE_SECURE', False),
        samesite='Lax',
        path='/',
    )


@auth_bp.get('/api/auth/csrf')
def csrf_token():
    """Return a CSRF token for clients posting with the session cookie."""
    return jsonify(csrfToken=generate_csrf())


@auth_bp.post('/api/auth/login')
def api_login():
    """Authenticate with username or e-mail and password."""
    body = parse_body(LoginRequest)
    db = get_session()
    user = (
        db.query(User)
        .filter((User.username == body.username) | (User.email == body.username.lower()))
        .first()
    )
    if user is None or not user.password_hash or not check_password_hash(user.password_hash, body.password):
        current_app.logger.info('Failed login for %s', body.username)
        raise Unauthenticated('Invalid credentials')
    if user.status != UserStatus.ACTIVE:
        raise Forbidden('Account is not active')

    token, max_age = issue_session_token(user, body.remember_me)
    resp = jsonify(user=serialize_user(user), token=token)
    _set_auth_cookie(resp, token, max_age)
    return resp


@auth_bp.post('/api/auth/logout')
def logout():
    resp = jsonify(status='ok')
    resp.delete_cookie(COOKIE_NAME, path='/')
    return resp


@auth_bp.get('/api/auth/user')
@login_required
def current_user_info():
    user = g.current_user
    systems = get_resolver().effective_systems(user.id)
    permissions = {system: sorted(roles) for system, roles in sorted(systems.items())}
    return jsonify(user=serialize_user(user), permissions=permissions)


@auth_bp.post('/api/auth/reset-password')
def reset_password():
    """Set a password from a ``set_password`` token sent by e-mail."""
    body = parse_body(PasswordReset)
    try:
        claims = decode_token(body.token, purpose='set_password')
    except Unauthenticated as exc:
        raise ValidationFailed(exc.message) from None
    db = get_session()
    user = db.get(User, int(claims['sub']))
    if user is None or not hmac.compare_digest(str(claims.get('pwd', '')), _password_fingerprint(user)):
        raise ValidationFailed('Invalid token')
    if user.status != UserStatus.ACTIVE:
        raise Forbidden('Account is not active')
    user.password_hash = generate_password_hash(body.password)
    db.commit()
    return jsonify(status='ok')
