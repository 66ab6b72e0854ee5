"""Driver reviews and the rating aggregate on drivers.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None

REVIEW_STATUS = ("active", "hidden", "reported")


def upgrade() -> None:
    op.add_column(
        "drivers",
        sa.Column("rating", sa.Float, nullable=False, server_default="0"),
    )
    op.add_column(
        "drivers",
        sa.Column("total_reviews", sa.Integer, nullable=False, server_default="0"),
    )

    op.create_table(
        "reviews",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "trip_id",
            sa.Integer,
            sa.ForeignKey("trips.id"),
            unique=True,
            nullable=False,
        ),
        sa.Column("rider_id", sa.Integer, sa.ForeignKey("riders.id"), nullable=False),
        sa.Column(
            "driver_id", sa.Integer, sa.ForeignKey("drivers.id"), nullable=False
        ),
        sa.Column("rating", sa.Float, nullable=False),
        sa.Column("comment", sa.String(500), nullable=False, server_default=""),
        sa.Column("tags", sa.JSON, nullable=False, server_default="[]"),
        sa.Column(
            "status",
            sa.Enum(*REVIEW_STATUS, name="reviewstatus"),
            nullable=False,
            server_default="active",
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint("rating >= 1 AND rating <= 5", name="ck_reviews_rating"),
    )
    op.create_index(
        "idx_reviews_driver_status", "reviews", ["driver_id", "status"]
    )


def downgrade() -> None:
    op.drop_table("reviews")
    op.execute("DROP TYPE IF EXISTS reviewstatus")
    op.drop_column("drivers", "total_reviews")
    op.drop_column("drivers", "rating")
