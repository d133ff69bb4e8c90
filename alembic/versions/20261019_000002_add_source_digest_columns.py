"""add source digest columns

Revision ID: 20261019_000002
Revises: 20261019_000001
Create Date: 2026-10-19 14:20:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000002"
down_revision: Union[str, Sequence[str], None] = "20261019_000001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    file_columns = {column["name"] for column in sa.inspect(bind).get_columns("files")}
    if "source_md5" not in file_columns:
        op.add_column("files", sa.Column("source_md5", sa.String(length=64), nullable=True))
    if "source_size" not in file_columns:
        op.add_column("files", sa.Column("source_size", sa.BigInteger(), nullable=True))


def downgrade() -> None:
    bind = op.get_bind()
    file_columns = {column["name"] for column in sa.inspect(bind).get_columns("files")}
    if "source_size" in file_columns:
        op.drop_column("files", "source_size")
    if "source_md5" in file_columns:
        op.drop_column("files", "source_md5")
