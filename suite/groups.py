"""Group lifecycle and membership."""

from __future__ import annotations

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from audit import record_audit
from errors import AlreadyMember, DuplicateName, NotFound
from models import Group, User, UserGroup


def serialize_group(group: Group, member_count: int | None = None) -> dict:
    data = {
        "id": group.id,
        "name": group.name,
        "description": group.description,
        "createdAt": group.created_at.isoformat() if group.created_at else None,
        "updatedAt": group.updated_at.isoformat() if group.updated_at else None,
    }
    if member_count is not None:
        data["memberCount"] = member_count
    return data


class GroupMembershipManager:
    def __init__(self, session, resolver=None):
        self.session = session
        self.resolver = resolver

    def create_group(self, name, description=None, initial_user_ids=(), created_by=None) -> Group:
        """Create a group with its initial members in one transaction.

        Either the group, every membership and the ``CREATE_GROUP`` audit
        entry are committed together or nothing is.
        """
        if self.session.query(Group).filter_by(name=name).first() is not None:
            raise DuplicateName("Group name already exists")

        user_ids = list(dict.fromkeys(initial_user_ids or ()))
        if user_ids:
            found = {
                uid
                for (uid,) in self.session.query(User.id).filter(User.id.in_(user_ids))
            }
            missing = [uid for uid in user_ids if uid not in found]
            if missing:
                raise NotFound(f"Users not found: {', '.join(str(m) for m in missing)}")

        added_by = None if created_by is None else str(created_by)
        try:
            group = Group(name=name, description=description)
            self.session.add(group)
            self.session.flush()
            for uid in user_ids:
                self.session.add(UserGroup(user_id=uid, group_id=group.id, added_by=added_by))
            record_audit(
                self.session,
                "CREATE_GROUP",
                performed_by=created_by,
                details={"groupId": group.id, "name": name, "userIds": user_ids},
            )
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise DuplicateName("Group name already exists") from None
        self._invalidate()
        return group

    def update_group(self, group_id, name=None, description=None, updated_by=None) -> Group:
        group = self._get_group(group_id)
        if name is not None and name != group.name:
            clash = self.session.query(Group).filter(Group.name == name, Group.id != group_id).first()
            if clash is not None:
                raise DuplicateName("Group name already exists")
        changes = {}
        if name is not None and name != group.name:
            changes["name"] = {"from": group.name, "to": name}
            group.name = name
        if description is not None and description != group.description:
            changes["description"] = {"from": group.description, "to": description}
            group.description = description
        try:
            record_audit(
                self.session,
                "UPDATE_GROUP",
                performed_by=updated_by,
                details={"groupId": group_id, "changes": changes},
            )
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise DuplicateName("Group name already exists") from None
        return group

    def delete_group(self, group_id, deleted_by=None) -> None:
        group = self._get_group(group_id)
        member_ids = [m.user_id for m in group.members]
        for membership in list(group.members):
            self.session.delete(membership)
        for perm in list(group.permissions):
            self.session.delete(perm)
        self.session.flush()
        self.session.expire(group, ["members", "permissions"])
        self.session.delete(group)
        record_audit(
            self.session,
            "DELETE_GROUP",
            performed_by=deleted_by,
            details={"groupId": group_id, "name": group.name, "userIds": member_ids},
        )
        self.session.commit()
        self._invalidate()

    def add_member(self, group_id, user_id, added_by=None) -> UserGroup:
        group = self._get_group(group_id)
        user = self.session.get(User, user_id)
        if user is None:
            raise NotFound("User not found")
        if self.session.query(UserGroup).filter_by(group_id=group_id, user_id=user_id).first():
            raise AlreadyMember()

        membership = UserGroup(
            user_id=user_id,
            group_id=group_id,
            added_by=None if added_by is None else str(added_by),
        )
        self.session.add(membership)
        try:
            self.session.flush()
            record_audit(
                self.session,
                "ADD_USER_TO_GROUP",
                user_id=user_id,
                performed_by=added_by,
                details={"groupId": group_id, "groupName": group.name},
            )
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise AlreadyMember() from None
        self._invalidate(user_id)
        return membership

    def remove_member(self, group_id, user_id, removed_by=None) -> None:
        membership = (
            self.session.query(UserGroup)
            .filter_by(group_id=group_id, user_id=user_id)
            .first()
        )
        if membership is None:
            raise NotFound("Membership not found")
        self.session.delete(membership)
        record_audit(
            self.session,
            "REMOVE_USER_FROM_GROUP",
            user_id=user_id,
            performed_by=removed_by,
            details={"groupId": group_id},
        )
        self.session.commit()
        self._invalidate(user_id)

    def list_groups(self) -> list[tuple[Group, int]]:
        counts = (
            self.session.query(UserGroup.group_id, func.count(UserGroup.id))
            .group_by(UserGroup.group_id)
            .all()
        )
        by_group = dict(counts)
        groups = self.session.query(Group).order_by(Group.name).all()
        return [(g, by_group.get(g.id, 0)) for g in groups]

    def list_members(self, group_id) -> list[UserGroup]:
        self._get_group(group_id)
        return (
            self.session.query(UserGroup)
            .filter_by(group_id=group_id)
            .order_by(UserGroup.created_at, UserGroup.id)
            .all()
        )

    def _get_group(self, group_id) -> Group:
        group = self.session.get(Group, group_id)
        if group is None:
            raise NotFound("Group not found")
        return group

    def _invalidate(self, user_id=None) -> None:
        if self.resolver is not None:
            self.resolver.invalidate(user_id)
