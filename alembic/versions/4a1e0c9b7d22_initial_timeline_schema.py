"""initial timeline schema

Revision ID: 4a1e0c9b7d22
Revises:
Create Date: 2026-01-26 09:12:40.118204

"""
from typing import Sequence, Union

from alembic import op

from healthtimeline.database import Base
from healthtimeline import models  # noqa: F401

# revision identifiers, used by Alembic.
revision: str = "4a1e0c9b7d22"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    Base.metadata.create_all(op.get_bind())


def downgrade() -> None:
    Base.metadata.drop_all(op.get_bind())
