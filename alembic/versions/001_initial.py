"""Billing schema: users, subscriptions, affiliate_commissions, user_settings.

App startup runs Base.metadata.create_all before migrations, so every table is
created only when missing.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _has_table(name: str) -> bool:
    return sa.inspect(op.get_bind()).has_table(name)


def upgrade() -> None:
    if not _has_table("users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("email", sa.String(), nullable=False),
            sa.Column("username", sa.String(), nullable=True),
            sa.Column("hashed_password", sa.String(), nullable=True),
            sa.Column("first_name", sa.String(), nullable=True),
            sa.Column("last_name", sa.String(), nullable=True),
            sa.Column("role", sa.String(), nullable=False, server_default="user"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_blocked", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("whop_user_id", sa.String(), nullable=True),
            sa.Column("stripe_customer_id", sa.String(), nullable=True),
            sa.Column("referral_code", sa.String(), nullable=True),
            sa.Column("referred_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("affiliate_commission_rate", sa.Numeric(5, 2), nullable=True),
            sa.Column("subscription_status", sa.String(), nullable=True),
            sa.Column("subscription_plan", sa.String(), nullable=True),
            sa.Column("subscription_expires_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        )
        op.create_index("ix_users_id", "users", ["id"])
        op.create_index("ix_users_email", "users", ["email"], unique=True)
        op.create_index("ix_users_username", "users", ["username"], unique=True)
        op.create_index("ix_users_referral_code", "users", ["referral_code"], unique=True)
        op.create_index("ix_users_referred_by", "users", ["referred_by"])
        op.create_index("ix_users_whop_user_id", "users", ["whop_user_id"])
        op.create_index("ix_users_stripe_customer_id", "users", ["stripe_customer_id"])

    if not _has_table("subscriptions"):
        op.create_table(
            "subscriptions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True),
            sa.Column("plan", sa.String(), nullable=False, server_default="free"),
            sa.Column("status", sa.String(), nullable=False, server_default="active"),
            sa.Column("provider", sa.String(), nullable=True),
            sa.Column("stripe_customer_id", sa.String(), nullable=True),
            sa.Column("stripe_subscription_id", sa.String(), nullable=True, unique=True),
            sa.Column("whop_membership_id", sa.String(), nullable=True, unique=True),
            sa.Column("whop_user_id", sa.String(), nullable=True),
            sa.Column("whop_product_id", sa.String(), nullable=True),
            sa.Column("whop_plan_id", sa.String(), nullable=True),
            sa.Column("current_period_start", sa.DateTime(), nullable=True),
            sa.Column("current_period_end", sa.DateTime(), nullable=True),
            sa.Column("activation_ref", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
        )
        op.create_index("ix_subscriptions_id", "subscriptions", ["id"])
        op.create_index("ix_subscriptions_stripe_customer_id", "subscriptions", ["stripe_customer_id"])

    if not _has_table("affiliate_commissions"):
        op.create_table(
            "affiliate_commissions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("affiliate_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            sa.Column("referred_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            sa.Column("subscription_id", sa.Integer(), sa.ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True),
            sa.Column("source_ref", sa.String(), nullable=False, unique=True),
            sa.Column("amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("commission_rate", sa.Numeric(5, 2), nullable=False),
            sa.Column("status", sa.String(), nullable=False, server_default="approved"),
            sa.Column("period_start", sa.DateTime(), nullable=True),
            sa.Column("period_end", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
        )
        op.create_index("ix_affiliate_commissions_id", "affiliate_commissions", ["id"])
        op.create_index("ix_affiliate_commissions_affiliate_user_id", "affiliate_commissions", ["affiliate_user_id"])
        op.create_index("ix_affiliate_commissions_referred_user_id", "affiliate_commissions", ["referred_user_id"])

    if not _has_table("user_settings"):
        op.create_table(
            "user_settings",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True),
            sa.Column("email_notifications", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("telegram_notifications", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("telegram_chat_id", sa.String(), nullable=True),
        )
        op.create_index("ix_user_settings_id", "user_settings", ["id"])


def downgrade() -> None:
    op.drop_table("user_settings")
    op.drop_table("affiliate_commissions")
    op.drop_table("subscriptions")
    op.drop_table("users")
