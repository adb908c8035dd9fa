"""Administration API: roles, users, groups, permissions and the audit log."""

from flask import Blueprint, Response, current_app, g, jsonify, request
from sqlalchemy.exc import IntegrityError

from audit import export_csv, export_pdf, query_audit, record_audit, serialize_audit
from auth import require_permission, serialize_user
from errors import Conflict, DuplicateName, NotFound, ValidationFailed
from extensions import get_resolver, get_session
from grants import PermissionGrantManager, serialize_permission
from groups import GroupMembershipManager, serialize_group
from models import GroupPermission, Permission, Role, User, UserStatus
from schemas import (
    AuditQuery,
    GroupCreate,
    GroupUpdate,
    MemberAdd,
    PermissionGrant,
    RoleCreate,
    RoleUpdate,
    UserStatusUpdate,
    parse_body,
)

admin_bp = Blueprint('admin', __name__)

ADMIN_SYSTEM = 'admin'
manage_users = require_permission(ADMIN_SYSTEM, 'manage_users')


def _actor():
    return g.current_user.id


def _groups():
    return GroupMembershipManager(get_session(), get_resolver())


def _grants():
    return PermissionGrantManager(get_session(), get_resolver())


def serialize_role(role: Role) -> dict:
    return {
        'id': role.id,
        'name': role.name,
        'description': role.description,
        'systemId': role.system_id,
    }


# -- roles ----------------------------------------------------------------------

@admin_bp.get('/api/roles')
@manage_users
def list_roles():
    roles = get_session().query(Role).order_by(Role.name).all()
    return jsonify([serialize_role(r) for r in roles])


@admin_bp.post('/api/roles')
@manage_users
def create_role():
    body = parse_body(RoleCreate)
    db = get_session()
    if db.query(Role).filter_by(name=body.name).first():
        raise DuplicateName('Role already exists')
    role = Role(name=body.name, description=body.description, system_id=body.system_id)
    db.add(role)
    try:
        db.flush()
        record_audit(db, 'CREATE_ROLE', role_id=role.id, system_id=role.system_id,
                     performed_by=_actor(), details={'name': role.name})
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateName('Role already exists') from None
    return jsonify(serialize_role(role)), 201


@admin_bp.put('/api/roles/<int:role_id>')
@manage_users
def update_role(role_id):
    body = parse_body(RoleUpdate)
    db = get_session()
    role = db.get(Role, role_id)
    if role is None:
        raise NotFound('Role not found')
    if body.name and body.name != role.name:
        if db.query(Role).filter(Role.name == body.name, Role.id != role_id).first():
            raise DuplicateName('Role already exists')
        role.name = body.name
    if body.description is not None:
        role.description = body.description
    if body.system_id is not None:
        role.system_id = body.system_id or None
    record_audit(db, 'UPDATE_ROLE', role_id=role.id, performed_by=_actor(),
                 details=body.serializable_dict())
    db.commit()
    get_resolver().invalidate()
    return jsonify(serialize_role(role))


@admin_bp.delete('/api/roles/<int:role_id>')
@manage_users
def delete_role(role_id):
    db = get_session()
    role = db.get(Role, role_id)
    if role is None:
        raise NotFound('Role not found')
    in_use = (
        db.query(Permission).filter_by(role_id=role_id).count()
        + db.query(GroupPermission).filter_by(role_id=role_id).count()
    )
    if in_use:
        raise Conflict('Role is assigned to users or groups')
    db.delete(role)
    record_audit(db, 'DELETE_ROLE', role_id=role_id, performed_by=_actor(),
                 details={'name': role.name})
    db.commit()
    return jsonify(status='ok')


# -- users ----------------------------------------------------------------------

@admin_bp.get('/api/users')
@manage_users
def list_users():
    query = get_session().query(User)
    status = request.args.get('status')
    if status:
        try:
            query = query.filter(User.status == UserStatus(status.upper()))
        except ValueError:
            raise ValidationFailed('Invalid status') from None
    users = query.order_by(User.name, User.username).all()
    return jsonify([serialize_user(u) for u in users])


def _change_status(user_id: int, status: UserStatus):
    db = get_session()
    user = db.get(User, user_id)
    if user is None:
        raise NotFound('User not found')
    previous = user.status
    user.status = status
    record_audit(
        db,
        'USER_STATUS_CHANGED',
        user_id=user.id,
        performed_by=_actor(),
        details={'from': previous.value if previous else None, 'to': status.value},
    )
    db.commit()
    current_app.logger.info('User %s status %s -> %s', user.id, previous, status)
    return jsonify(serialize_user(user))


@admin_bp.put('/api/users/<int:user_id>/status')
@manage_users
def update_user_status(user_id):
    body = parse_body(UserStatusUpdate)
    return _change_status(user_id, UserStatus(body.status))


@admin_bp.post('/api/users/<int:user_id>/deactivate')
@manage_users
def deactivate_user(user_id):
    return _change_status(user_id, UserStatus.INACTIVE)


@admin_bp.post('/api/users/<int:user_id>/reactivate')
@manage_users
def reactivate_user(user_id):
    return _change_status(user_id, UserStatus.ACTIVE)


# -- groups ---------------------------------------------------------------------

@admin_bp.get('/api/groups')
@manage_users
def list_groups():
    return jsonify([serialize_group(group, count) for group, count in _groups().list_groups()])


@admin_bp.post('/api/groups')
@manage_users
def create_group():
    body = parse_body(GroupCreate)
    group = _groups().create_group(body.name, body.description, body.user_ids, created_by=_actor())
    return jsonify(serialize_group(group, len(set(body.user_ids)))), 201


@admin_bp.put('/api/groups/<int:group_id>')
@manage_users
def update_group(group_id):
    body = parse_body(GroupUpdate)
    group = _groups().update_group(group_id, body.name, body.description, updated_by=_actor())
    return jsonify(serialize_group(group))


@admin_bp.delete('/api/groups/<int:group_id>')
@manage_users
def delete_group(group_id):
    _groups().delete_group(group_id, deleted_by=_actor())
    return jsonify(status='ok')


@admin_bp.get('/api/groups/<int:group_id>/users')
@manage_users
def list_group_members(group_id):
    members = _groups().list_members(group_id)
    return jsonify([
        dict(serialize_user(m.user), addedBy=m.added_by, addedAt=m.created_at.isoformat())
        for m in members
    ])


@admin_bp.post('/api/groups/<int:group_id>/users')
@manage_users
def add_group_member(group_id):
    body = parse_body(MemberAdd)
    membership = _groups().add_member(group_id, body.user_id, added_by=_actor())
    return jsonify(groupId=membership.group_id, userId=membership.user_id,
                   addedBy=membership.added_by), 201


@admin_bp.delete('/api/groups/<int:group_id>/users/<int:user_id>')
@manage_users
def remove_group_member(group_id, user_id):
    _groups().remove_member(group_id, user_id, removed_by=_actor())
    return jsonify(status='ok')


# -- permissions ------------------------------------------------------------------

@admin_bp.get('/api/permissions/users/<int:user_id>')
@manage_users
def list_user_permissions(user_id):
    return jsonify([serialize_permission(p) for p in _grants().list_user_permissions(user_id)])


@admin_bp.post('/api/permissions/users/<int:user_id>')
@manage_users
def grant_user_permission(user_id):
    body = parse_body(PermissionGrant)
    perm = _grants().grant_user_permission(
        user_id, body.system_id, body.role_id, body.expiry, granted_by=_actor()
    )
    return jsonify(serialize_permission(perm)), 201


@admin_bp.delete('/api/permissions/users/<int:user_id>/<int:permission_id>')
@manage_users
def revoke_user_permission(user_id, permission_id):
    _grants().revoke_user_permission(user_id, permission_id, revoked_by=_actor())
    return jsonify(status='ok')


@admin_bp.get('/api/permissions/groups/<int:group_id>')
@manage_users
def list_group_permissions(group_id):
    return jsonify([serialize_permission(p) for p in _grants().list_group_permissions(group_id)])


@admin_bp.post('/api/permissions/groups/<int:group_id>')
@manage_users
def grant_group_permission(group_id):
    body = parse_body(PermissionGrant)
    perm = _grants().grant_group_permission(
        group_id, body.system_id, body.role_id, body.expiry, granted_by=_actor()
    )
    return jsonify(serialize_permission(perm)), 201


@admin_bp.delete('/api/permissions/groups/<int:group_id>/<int:permission_id>')
@manage_users
def revoke_group_permission(group_id, permission_id):
    _grants().revoke_group_permission(group_id, permission_id, revoked_by=_actor())
    return jsonify(status='ok')


# -- audit ------------------------------------------------------------------------

def _audit_filters(params: AuditQuery) -> dict:
    return {
        'user_id': params.user_id,
        'action': params.action,
        'system_id': params.system_id,
        'role_id': params.role_id,
        'performed_by': params.performed_by,
        'start_date': params.start_date,
        'end_date': params.end_date,
    }


@admin_bp.get('/api/permissions/audit')
@manage_users
def audit_log():
    params = AuditQuery.model_validate(request.args.to_dict())
    result = query_audit(get_session(), _audit_filters(params), params.page, params.page_size)
    return jsonify(
        logs=[serialize_audit(row) for row in result['logs']],
        pagination=result['pagination'],
    )


@admin_bp.get('/api/permissions/audit/export')
@manage_users
def audit_export():
    params = AuditQuery.model_validate(request.args.to_dict())
    fmt = request.args.get('format', 'csv').lower()
    rows = query_audit(get_session(), _audit_filters(params), 1, 10000)['logs']
    if fmt == 'pdf':
        return Response(
            export_pdf(rows),
            mimetype='application/pdf',
            headers={'Content-Disposition': 'attachment; filename=permission_audit.pdf'},
        )
    if fmt != 'csv':
        raise ValidationFailed('Unsupported export format')
    return Response(
        export_csv(rows),
        mimetype='text/csv',
        headers={'Content-Disposition': 'attachment; filename=permission_audit.csv'},
    )
