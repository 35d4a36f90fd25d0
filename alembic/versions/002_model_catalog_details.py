"""Model catalog details: category, description, context window, streaming.

Revision ID: 002
Revises: 001
Create Date: 2026-10-25
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "model_catalog",
        sa.Column("category", sa.String(32), nullable=False, server_default="chat"),
    )
    op.add_column("model_catalog", sa.Column("description", sa.Text, nullable=True))
    op.add_column("model_catalog", sa.Column("context_window", sa.Integer, nullable=True))
    op.add_column(
        "model_catalog",
        sa.Column(
            "supports_streaming", sa.Boolean, nullable=False, server_default=sa.false()
        ),
    )
    op.create_index("ix_model_catalog_provider", "model_catalog", ["provider"])
    op.create_index("ix_model_catalog_category", "model_catalog", ["category"])


def downgrade() -> None:
    op.drop_index("ix_model_catalog_category", table_name="model_catalog")
    op.drop_index("ix_model_catalog_provider", table_name="model_catalog")
    op.drop_column("model_catalog", "supports_streaming")
    op.drop_column("model_catalog", "context_window")
    op.drop_column("model_catalog", "description")
    op.drop_column("model_catalog", "category")
