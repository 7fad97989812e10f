"""Create bonus program, ledger and redemption tables."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20260601_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TRANSACTION_TYPES = (
    "earned_purchase",
    "earned_signup",
    "earned_referral",
    "earned_manual",
    "redeemed_discount",
    "redeemed_cash",
    "deducted_manual",
    "expired",
    "canceled",
)
TRANSACTION_STATUSES = ("pending", "confirmed", "canceled")
MILESTONE_TYPES = ("first_purchase", "total_spent", "order_count", "product_review", "referral_count", "custom")
REWARD_TYPES = ("percentage_discount", "fixed_discount", "free_shipping", "free_product", "cash_back")
COUPON_STATUSES = ("active", "used", "expired", "cancelled")
PAYOUT_STATUSES = ("pending", "approved", "rejected", "paid")

ENUM_TYPES = (
    "bonus_transaction_type",
    "bonus_transaction_status",
    "bonus_milestone_type",
    "reward_type",
    "bonus_coupon_status",
    "payout_request_status",
)


def _uuid() -> postgresql.UUID:
    return postgresql.UUID(as_uuid=True)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "bonus_programs",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("points_per_currency", sa.Numeric(12, 2), nullable=False, server_default="1.00"),
        sa.Column("min_order_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("max_points_per_order", sa.Integer(), nullable=True),
        sa.Column("points_expire_days", sa.Integer(), nullable=True),
        sa.Column("signup_bonus", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("referral_bonus_referrer", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("referral_bonus_referee", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_bonus_programs_organization_id", "bonus_programs", ["organization_id"])

    op.create_table(
        "bonus_tiers",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("bonus_program_id", _uuid(), sa.ForeignKey("bonus_programs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False),
        sa.Column("min_points", sa.Integer(), nullable=False),
        sa.Column("multiplier", sa.Numeric(5, 2), nullable=False, server_default="1.00"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("benefits", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("organization_id", "slug", name="uq_bonus_tiers_organization_slug"),
    )
    op.create_index("ix_bonus_tiers_program_id", "bonus_tiers", ["bonus_program_id"])

    op.create_table(
        "user_bonus_accounts",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("bonus_program_id", _uuid(), sa.ForeignKey("bonus_programs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("current_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pending_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_earned_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_redeemed_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_expired_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_tier_id", _uuid(), sa.ForeignKey("bonus_tiers.id"), nullable=True),
        sa.Column("tier_progress", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("last_earned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_redeemed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "bonus_program_id", name="uq_user_bonus_accounts_user_program"),
        sa.CheckConstraint("current_points >= 0", name="ck_user_bonus_accounts_current_points"),
        sa.CheckConstraint("pending_points >= 0", name="ck_user_bonus_accounts_pending_points"),
    )
    op.create_index("ix_user_bonus_accounts_organization_id", "user_bonus_accounts", ["organization_id"])

    op.create_table(
        "bonus_transactions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column(
            "user_bonus_account_id",
            _uuid(),
            sa.ForeignKey("user_bonus_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("type", sa.Enum(*TRANSACTION_TYPES, name="bonus_transaction_type"), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("balance_before", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "status",
            sa.Enum(*TRANSACTION_STATUSES, name="bonus_transaction_status"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_bonus_transactions_account_id", "bonus_transactions", ["user_bonus_account_id"])
    op.create_index("ix_bonus_transactions_order_id", "bonus_transactions", ["order_id"])
    op.create_index("ix_bonus_transactions_status", "bonus_transactions", ["status"])

    op.create_table(
        "points_expirations",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column(
            "user_bonus_account_id",
            _uuid(),
            sa.ForeignKey("user_bonus_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "bonus_transaction_id",
            _uuid(),
            sa.ForeignKey("bonus_transactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("remaining_points", sa.Integer(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_expired", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "remaining_points >= 0 AND remaining_points <= points",
            name="ck_points_expirations_remaining_points",
        ),
    )
    op.create_index("ix_points_expirations_account_id", "points_expirations", ["user_bonus_account_id"])
    op.create_index("ix_points_expirations_expires_at", "points_expirations", ["expires_at"])
    op.create_index("ix_points_expirations_is_expired", "points_expirations", ["is_expired"])

    op.create_table(
        "bonus_milestones",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("bonus_program_id", _uuid(), sa.ForeignKey("bonus_programs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("type", sa.Enum(*MILESTONE_TYPES, name="bonus_milestone_type"), nullable=False),
        sa.Column("target_value", sa.Numeric(12, 2), nullable=False),
        sa.Column("reward_points", sa.Integer(), nullable=False),
        sa.Column("is_repeatable", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_bonus_milestones_program_id", "bonus_milestones", ["bonus_program_id"])
    op.create_index("ix_bonus_milestones_is_active", "bonus_milestones", ["is_active"])

    op.create_table(
        "user_milestone_progress",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("milestone_id", _uuid(), sa.ForeignKey("bonus_milestones.id", ondelete="CASCADE"), nullable=False),
        sa.Column("current_value", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("is_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completion_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("bonus_transaction_id", _uuid(), sa.ForeignKey("bonus_transactions.id"), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "milestone_id", name="uq_user_milestone_progress_user_milestone"),
    )
    op.create_index("ix_user_milestone_progress_is_completed", "user_milestone_progress", ["is_completed"])

    op.create_table(
        "referrals",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("bonus_program_id", _uuid(), sa.ForeignKey("bonus_programs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("referrer_id", sa.String(), nullable=False),
        sa.Column("referred_user_id", sa.String(), nullable=True),
        sa.Column("referral_code", sa.String(50), nullable=False),
        sa.Column("signed_up_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("referrer_bonus_given", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("referrer_transaction_id", _uuid(), sa.ForeignKey("bonus_transactions.id"), nullable=True),
        sa.Column("referee_bonus_given", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("referee_transaction_id", _uuid(), sa.ForeignKey("bonus_transactions.id"), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_referrals_referral_code", "referrals", ["referral_code"], unique=True)
    op.create_index("ix_referrals_referrer_id", "referrals", ["referrer_id"])
    op.create_index("ix_referrals_referred_user_id", "referrals", ["referred_user_id"])

    op.create_table(
        "rewards",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("bonus_program_id", _uuid(), sa.ForeignKey("bonus_programs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("type", sa.Enum(*REWARD_TYPES, name="reward_type"), nullable=False),
        sa.Column("points_cost", sa.Integer(), nullable=False),
        sa.Column("cash_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("discount_percentage", sa.Numeric(5, 2), nullable=True),
        sa.Column("discount_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("min_order_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("max_redemptions_per_user", sa.Integer(), nullable=True),
        sa.Column("total_redemptions_limit", sa.Integer(), nullable=True),
        sa.Column("current_redemptions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("image", sa.String(255), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_rewards_program_id", "rewards", ["bonus_program_id"])
    op.create_index("ix_rewards_is_active", "rewards", ["is_active"])

    op.create_table(
        "bonus_coupons",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("reward_id", _uuid(), sa.ForeignKey("rewards.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "bonus_transaction_id",
            _uuid(),
            sa.ForeignKey("bonus_transactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("code", sa.String(50), nullable=False),
        # reward_type was created alongside the rewards table
        sa.Column("type", postgresql.ENUM(*REWARD_TYPES, name="reward_type", create_type=False), nullable=False),
        sa.Column("discount_percentage", sa.Numeric(5, 2), nullable=True),
        sa.Column("discount_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("min_order_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column(
            "status",
            sa.Enum(*COUPON_STATUSES, name="bonus_coupon_status"),
            nullable=False,
            server_default="active",
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("used_in_order_id", sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_bonus_coupons_code", "bonus_coupons", ["code"], unique=True)
    op.create_index("ix_bonus_coupons_user_id", "bonus_coupons", ["user_id"])
    op.create_index("ix_bonus_coupons_status", "bonus_coupons", ["status"])

    op.create_table(
        "payout_requests",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("reward_id", _uuid(), sa.ForeignKey("rewards.id", ondelete="SET NULL"), nullable=True),
        sa.Column(
            "bonus_transaction_id",
            _uuid(),
            sa.ForeignKey("bonus_transactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("points_deducted", sa.Integer(), nullable=False),
        sa.Column("cash_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*PAYOUT_STATUSES, name="payout_request_status"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("payout_method", sa.JSON(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_by", sa.String(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_payout_requests_organization_status", "payout_requests", ["organization_id", "status"])
    op.create_index("ix_payout_requests_user_id", "payout_requests", ["user_id"])


def downgrade() -> None:
    for table in (
        "payout_requests",
        "bonus_coupons",
        "rewards",
        "referrals",
        "user_milestone_progress",
        "bonus_milestones",
        "points_expirations",
        "bonus_transactions",
        "user_bonus_accounts",
        "bonus_tiers",
        "bonus_programs",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for enum_name in ENUM_TYPES:
            op.execute(f"DROP TYPE IF EXISTS {enum_name}")
