"""initial_schema

Revision ID: a1f3c9e20b71
Revises:
Create Date: 2026-10-19 09:12:04.118532

"""
from alembic import op

from printlink.database import Base
import printlink.models  # noqa: F401


# revision identifiers, used by Alembic.
revision = 'a1f3c9e20b71'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Users, stores, catalog, orders, fulfillments, webhook logs and jobs
    Base.metadata.create_all(bind=op.get_bind())


def downgrade() -> None:
    Base.metadata.drop_all(bind=op.get_bind())
