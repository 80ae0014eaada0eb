"""Track certificate regeneration

Revision ID: 8d3f2b6a1e70
Revises: 5c1e7a0b9d42
Create Date: 2026-10-17 15:40:12.504116

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '8d3f2b6a1e70'
down_revision: str | Sequence[str] | None = '5c1e7a0b9d42'
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    with op.batch_alter_table("certificates") as batch:
        batch.add_column(sa.Column("regenerated_at", sa.DateTime, nullable=True))
        batch.add_column(sa.Column("regenerated_by_id", sa.Integer, nullable=True))
        batch.create_foreign_key(
            "fk_certificates_regenerated_by", "users", ["regenerated_by_id"], ["id"]
        )


def downgrade() -> None:
    with op.batch_alter_table("certificates") as batch:
        batch.drop_constraint("fk_certificates_regenerated_by", type_="foreignkey")
        batch.drop_column("regenerated_by_id")
        batch.drop_column("regenerated_at")
