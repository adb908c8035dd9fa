"""User invitations and their acceptance."""

import secrets
from datetime import timedelta

from flask import Blueprint, current_app, g, jsonify, request
from werkzeug.security import generate_password_hash

from audit import record_audit
from auth import decode_token, encode_token, issue_set_password_token, require_permission, serialize_user
from errors import Conflict, NotFound, Unauthenticated, ValidationFailed
from extensions import get_notifier, get_resolver, get_session
from models import (
    SYSTEM_ACTOR,
    Invite,
    InviteStatus,
    Permission,
    Role,
    User,
    UserStatus,
    utcnow,
)
from schemas import InviteCreate, parse_body

invites_bp = Blueprint('invites', __name__)

DEFAULT_INVITE_ROLE = 'read'


def serialize_invite(invite: Invite) -> dict:
    return {
        'id': invite.id,
        'email': invite.email,
        'name': invite.name,
        'systemId': invite.system_id,
        'roleId': invite.role_id,
        'status': invite.status.value,
        'expiresAt': invite.expires_at.isoformat(),
        'userId': invite.user_id,
    }


def unique_username(db, email: str) -> str:
    """Username from the e-mail local part, suffixed until unused."""
    base = email.split('@', 1)[0] or 'user'
    candidate = base
    counter = 1
    while db.query(User.id).filter_by(username=candidate).first() is not None:
        candidate = f'{base}{counter}'
        counter += 1
    return candidate


@invites_bp.post('/api/users/invite')
@require_permission('admin', 'manage_users')
def create_invite():
    body = parse_body(InviteCreate)
    db = get_session()
    if body.role_id is not None and db.get(Role, body.role_id) is None:
        raise NotFound('Role not found')
    existing = db.query(User).filter_by(email=body.email).first()
    if existing is not None and existing.status == UserStatus.ACTIVE:
        raise Conflict('A user with this email already exists')

    days = current_app.config['INVITE_EXPIRY_DAYS']
    inviter = g.current_user
    invite = Invite(
        email=body.email,
        name=body.name,
        system_id=body.system_id,
        role_id=body.role_id,
        invited_by=str(inviter.id),
        expires_at=utcnow() + timedelta(days=days),
    )
    db.add(invite)
    db.flush()
    invite.token = encode_token({'inviteId': invite.id, 'purpose': 'invite'}, timedelta(days=days))
    record_audit(db, 'USER_INVITED', system_id=body.system_id, role_id=body.role_id,
                 performed_by=inviter.id, details={'email': body.email, 'inviteId': invite.id})
    db.commit()

    queued = get_notifier().send_invitation(
        invite.email, invite.name, invite.token, inviter=inviter.name or inviter.username, days=days
    )
    return jsonify(invite=serialize_invite(invite), emailQueued=queued), 201


@invites_bp.get('/api/accept-invite')
def accept_invite():
    """Accept an invitation token and activate or create the invited user."""
    token = request.args.get('token')
    if not token:
        raise ValidationFailed('Token is required')
    try:
        claims = decode_token(token, purpose='invite')
    except Unauthenticated:
        raise ValidationFailed('Invalid or expired invitation') from None

    db = get_session()
    invite_id = claims.get('inviteId')
    invite = db.get(Invite, invite_id) if isinstance(invite_id, int) else None
    if invite is None:
        raise ValidationFailed('Invitation not found')

    if invite.status == InviteStatus.ACCEPTED:
        user = db.get(User, invite.user_id) if invite.user_id else None
        return jsonify(message='Invitation already accepted',
                       user=serialize_user(user) if user else None)
    if invite.status == InviteStatus.CANCELLED:
        raise ValidationFailed('Invitation has been cancelled')
    if invite.status == InviteStatus.EXPIRED or invite.expires_at <= utcnow():
        invite.status = InviteStatus.EXPIRED
        db.commit()
        raise ValidationFailed('Invitation has expired')

    notifier = get_notifier()
    user = db.query(User).filter_by(email=invite.email).first()
    if user is not None and user.status == UserStatus.ACTIVE:
        _mark_accepted(db, invite, user)
        db.commit()
        return jsonify(message='Invitation accepted', user=serialize_user(user))

    if user is not None:
        user.status = UserStatus.ACTIVE
        user.name = invite.name
        _mark_accepted(db, invite, user)
        db.commit()
        current_app.logger.info('Reactivated user %s from invite %s', user.id, invite.id)
    else:
        user = User(
            username=unique_username(db, invite.email),
            email=invite.email,
            name=invite.name,
            password_hash=generate_password_hash(secrets.token_urlsafe(16)),
            status=UserStatus.ACTIVE,
        )
        db.add(user)
        db.flush()
        _mark_accepted(db, invite, user)
        _grant_invited_role(db, invite, user)
        db.commit()
        get_resolver().invalidate(user.id)
        current_app.logger.info('Created user %s from invite %s', user.id, invite.id)

    # a failed e-mail never undoes the acceptance
    if not notifier.send_welcome(user.email, user.name, user.username, issue_set_password_token(user)):
        current_app.logger.warning('Welcome email for user %s was not queued', user.id)
    return jsonify(message='Invitation accepted', user=serialize_user(user))


def _mark_accepted(db, invite: Invite, user: User) -> None:
    invite.status = InviteStatus.ACCEPTED
    invite.user_id = user.id
    record_audit(db, 'INVITE_ACCEPTED', user_id=user.id, system_id=invite.system_id,
                 performed_by=SYSTEM_ACTOR, details={'inviteId': invite.id})


def _grant_invited_role(db, invite: Invite, user: User) -> None:
    role = db.get(Role, invite.role_id) if invite.role_id else None
    if role is None:
        role = db.query(Role).filter_by(name=DEFAULT_INVITE_ROLE).first()
    if role is None:
        current_app.logger.warning('No role available for invite %s; no permission granted', invite.id)
        return
    exists = (
        db.query(Permission)
        .filter_by(user_id=user.id, system_id=invite.system_id, role_id=role.id)
        .first()
    )
    if exists:
        return
    perm = Permission(user_id=user.id, system_id=invite.system_id, role_id=role.id,
                      created_by=SYSTEM_ACTOR)
    db.add(perm)
    db.flush()
    record_audit(db, 'GRANTED', user_id=user.id, system_id=invite.system_id, role_id=role.id,
                 performed_by=SYSTEM_ACTOR,
                 details={'newPermission': {'id': perm.id, 'systemId': perm.system_id,
                                            'roleId': role.id, 'role': role.name},
                          'inviteId': invite.id})
