"""add_promo_code_tables

Revision ID: a1c4e7f20b93
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "a1c4e7f20b93"
down_revision = None
branch_labels = None
depends_on = None


discount_type = sa.Enum("percentage", "fixed", name="promo_discount_type")
applicable_type = sa.Enum(
    "all", "specific_plans", "specific_users", name="promo_applicable_type"
)


def upgrade() -> None:
    op.create_table(
        "subscription_plans",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("plan_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["plan_id"], ["subscription_plans.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index("ix_subscriptions_plan_id", "subscriptions", ["plan_id"])

    op.create_table(
        "promo_codes",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("discount_type", discount_type, nullable=False),
        sa.Column("discount_value", sa.Numeric(10, 2), nullable=False),
        sa.Column("max_discount_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("usage_limit", sa.Integer(), nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_first_time_only", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("applicable_to", applicable_type, nullable=False, server_default="all"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("usage_limit IS NULL OR usage_count <= usage_limit", name="ck_promo_usage_within_limit"),
    )
    op.create_index("ix_promo_codes_code", "promo_codes", ["code"], unique=True)

    op.create_table(
        "promo_code_applicable_plans",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("promo_code_id", sa.Uuid(), nullable=False),
        sa.Column("plan_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["promo_code_id"], ["promo_codes.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["plan_id"], ["subscription_plans.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("promo_code_id", "plan_id", name="uq_promo_plan"),
    )
    op.create_index("ix_promo_code_applicable_plans_promo_code_id", "promo_code_applicable_plans", ["promo_code_id"])
    op.create_index("ix_promo_code_applicable_plans_plan_id", "promo_code_applicable_plans", ["plan_id"])

    op.create_table(
        "promo_code_applicable_users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("promo_code_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["promo_code_id"], ["promo_codes.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("promo_code_id", "user_id", name="uq_promo_applicable_user"),
    )
    op.create_index("ix_promo_code_applicable_users_promo_code_id", "promo_code_applicable_users", ["promo_code_id"])
    op.create_index("ix_promo_code_applicable_users_user_id", "promo_code_applicable_users", ["user_id"])

    op.create_table(
        "subscription_promo_codes",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("promo_code_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("discount_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("applied_date", sa.Date(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.ForeignKeyConstraint(["promo_code_id"], ["promo_codes.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscription_promo_codes_subscription_id", "subscription_promo_codes", ["subscription_id"])
    op.create_index("ix_subscription_promo_codes_promo_code_id", "subscription_promo_codes", ["promo_code_id"])
    op.create_index("ix_subscription_promo_codes_user_id", "subscription_promo_codes", ["user_id"])
    op.create_index(
        "uq_subscription_promo_active_user",
        "subscription_promo_codes",
        ["promo_code_id", "user_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active"),
    )


def downgrade() -> None:
    op.drop_index("uq_subscription_promo_active_user", table_name="subscription_promo_codes")
    op.drop_index("ix_subscription_promo_codes_user_id", table_name="subscription_promo_codes")
    op.drop_index("ix_subscription_promo_codes_promo_code_id", table_name="subscription_promo_codes")
    op.drop_index("ix_subscription_promo_codes_subscription_id", table_name="subscription_promo_codes")
    op.drop_table("subscription_promo_codes")
    op.drop_index("ix_promo_code_applicable_users_user_id", table_name="promo_code_applicable_users")
    op.drop_index("ix_promo_code_applicable_users_promo_code_id", table_name="promo_code_applicable_users")
    op.drop_table("promo_code_applicable_users")
    op.drop_index("ix_promo_code_applicable_plans_plan_id", table_name="promo_code_applicable_plans")
    op.drop_index("ix_promo_code_applicable_plans_promo_code_id", table_name="promo_code_applicable_plans")
    op.drop_table("promo_code_applicable_plans")
    op.drop_index("ix_promo_codes_code", table_name="promo_codes")
    op.drop_table("promo_codes")
    op.drop_index("ix_subscriptions_plan_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_user_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_table("subscription_plans")
    applicable_type.drop(op.get_bind(), checkfirst=True)
    discount_type.drop(op.get_bind(), checkfirst=True)
