"""Seed default roles

Revision ID: 0002
Revises: 0001
Create Date: 2025-06-02 00:10:00
"""

from alembic import op
import sqlalchemy as sa

revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None

ROLES = {
    "read": "View documents and records",
    "write": "Create and edit documents and records",
    "delete": "Archive or delete documents and records",
    "approve": "Approve documents and records",
    "manage_users": "Manage users, groups and permissions",
    "Admin": "Full access to the system",
}


def upgrade() -> None:
    for name, description in ROLES.items():
        op.execute(
            sa.text(
                "INSERT INTO roles (name, description, created_at) "
                "VALUES (:name, :description, CURRENT_TIMESTAMP) "
                "ON CONFLICT (name) DO NOTHING"
            ).bindparams(name=name, description=description)
        )


def downgrade() -> None:
    op.execute(
        sa.text("DELETE FROM roles WHERE name IN :names").bindparams(
            sa.bindparam("names", value=list(ROLES), expanding=True)
        )
    )
