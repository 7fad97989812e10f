"""Bonus program, points ledger and redemption domain models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from bonus_ledger.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_type(enum_cls: type[Enum], name: str) -> SqlEnum:
    return SqlEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )


def _created_at() -> Column:
    return Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)


def _updated_at() -> Column:
    return Column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        server_default=func.now(),
        nullable=False,
    )


class BonusTransactionType(str, Enum):
    """Kinds of balance-affecting ledger events."""

    EARNED_PURCHASE = "earned_purchase"
    EARNED_SIGNUP = "earned_signup"
    EARNED_REFERRAL = "earned_referral"
    EARNED_MANUAL = "earned_manual"
    REDEEMED_DISCOUNT = "redeemed_discount"
    REDEEMED_CASH = "redeemed_cash"
    DEDUCTED_MANUAL = "deducted_manual"
    EXPIRED = "expired"
    CANCELED = "canceled"


class BonusTransactionStatus(str, Enum):
    """Lifecycle of a ledger row."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELED = "canceled"


class MilestoneType(str, Enum):
    """Event families a milestone accumulates progress from."""

    FIRST_PURCHASE = "first_purchase"
    TOTAL_SPENT = "total_spent"
    ORDER_COUNT = "order_count"
    PRODUCT_REVIEW = "product_review"
    REFERRAL_COUNT = "referral_count"
    CUSTOM = "custom"


class RewardType(str, Enum):
    """Catalog reward kinds."""

    PERCENTAGE_DISCOUNT = "percentage_discount"
    FIXED_DISCOUNT = "fixed_discount"
    FREE_SHIPPING = "free_shipping"
    FREE_PRODUCT = "free_product"
    CASH_BACK = "cash_back"


class CouponStatus(str, Enum):
    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PayoutStatus(str, Enum):
    """Approval workflow for cash-back payouts."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"


class BonusProgram(Base):
    """Organization-scoped loyalty program configuration."""

    __tablename__ = "bonus_programs"
    __table_args__ = (Index("ix_bonus_programs_organization_id", "organization_id"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(String, nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    points_per_currency = Column(Numeric(12, 2), nullable=False, default=1, server_default="1.00")
    min_order_amount = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    max_points_per_order = Column(Integer, nullable=True)
    points_expire_days = Column(Integer, nullable=True)
    signup_bonus = Column(Integer, nullable=False, default=0, server_default="0")
    referral_bonus_referrer = Column(Integer, nullable=False, default=0, server_default="0")
    referral_bonus_referee = Column(Integer, nullable=False, default=0, server_default="0")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    metadata_json = Column("metadata", JSON, nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()

    tiers = relationship("BonusTier", back_populates="program")


class BonusTier(Base):
    """Point-threshold band granting an earn multiplier."""

    __tablename__ = "bonus_tiers"
    __table_args__ = (
        UniqueConstraint("organization_id", "slug", name="uq_bonus_tiers_organization_slug"),
        Index("ix_bonus_tiers_program_id", "bonus_program_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(String, nullable=False)
    bonus_program_id = Column(
        UUID(as_uuid=True), ForeignKey("bonus_programs.id", ondelete="CASCADE"), nullable=False
    )
    name = Column(String(100), nullable=False)
    slug = Column(String(100), nullable=False)
    min_points = Column(Integer, nullable=False)
    multiplier = Column(Numeric(5, 2), nullable=False, default=1, server_default="1.00")
    description = Column(Text, nullable=True)
    benefits = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    sort_order = Column(Integer, nullable=False, default=0, server_default="0")
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()

    program = relationship("BonusProgram", back_populates="tiers")


class UserBonusAccount(Base):
    """Per-user, per-program point balance."""

    __tablename__ = "user_bonus_accounts"
    __table_args__ = (
        UniqueConstraint("user_id", "bonus_program_id", name="uq_user_bonus_accounts_user_program"),
        Index("ix_user_bonus_accounts_organization_id", "organization_id"),
        CheckConstraint("current_points >= 0", name="ck_user_bonus_accounts_current_points"),
        CheckConstraint("pending_points >= 0", name="ck_user_bonus_accounts_pending_points"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    bonus_program_id = Column(
        UUID(as_uuid=True), ForeignKey("bonus_programs.id", ondelete="CASCADE"), nullable=False
    )
    current_points = Column(Integer, nullable=False, default=0, server_default="0")
    pending_points = Column(Integer, nullable=False, default=0, server_default="0")
    total_earned_points = Column(Integer, nullable=False, default=0, server_default="0")
    total_redeemed_points = Column(Integer, nullable=False, default=0, server_default="0")
    total_expired_points = Column(Integer, nullable=False, default=0, server_default="0")
    current_tier_id = Column(UUID(as_uuid=True), ForeignKey("bonus_tiers.id"), nullable=True)
    tier_progress = Column(Numeric(5, 2), nullable=False, default=0, server_default="0")
    last_earned_at = Column(DateTime(timezone=True), nullable=True)
    last_redeemed_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = _created_at()
    updated_at = _updated_at()


class BonusTransaction(Base):
    """Append-only ledger row with balance snapshots."""

    __tablename__ = "bonus_transactions"
    __table_args__ = (
        Index("ix_bonus_transactions_account_id", "user_bonus_account_id"),
        Index("ix_bonus_transactions_order_id", "order_id"),
        Index("ix_bonus_transactions_status", "status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(String, nullable=False)
    user_bonus_account_id = Column(
        UUID(as_uuid=True), ForeignKey("user_bonus_accounts.id", ondelete="CASCADE"), nullable=False
    )
    type = Column(_enum_type(BonusTransactionType, "bonus_transaction_type"), nullable=False)
    points = Column(Integer, nullable=False)
    balance_before = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    order_id = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    status = Column(
        _enum_type(BonusTransactionStatus, "bonus_transaction_status"),
        nullable=False,
        default=BonusTransactionStatus.PENDING,
        server_default=BonusTransactionStatus.PENDING.value,
    )
    expires_at = Column(DateTime(timezone=True), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()


class PointsExpiration(Base):
    """Remaining un-expired points of a single confirmed award."""

    __tablename__ = "points_expirations"
    __table_args__ = (
        Index("ix_points_expirations_account_id", "user_bonus_account_id"),
        Index("ix_points_expirations_expires_at", "expires_at"),
        Index("ix_points_expirations_is_expired", "is_expired"),
        CheckConstraint(
            "remaining_points >= 0 AND remaining_points <= points",
            name="ck_points_expirations_remaining_points",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(String, nullable=False)
    user_bonus_account_id = Column(
        UUID(as_uuid=True), ForeignKey("user_bonus_accounts.id", ondelete="CASCADE"), nullable=False
    )
    bonus_transaction_id = Column(
        UUID(as_uuid=True), ForeignKey("bonus_transactions.id", ondelete="CASCADE"), nullable=False
    )
    points = Column(Integer, nullable=False)
    remaining_points = Column(Integer, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    is_expired = Column(Boolean, nullable=False, default=False, server_default="false")
    expired_at = Column(DateTime(timezone=True), nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()


class BonusMilestone(Base):
    """Cumulative-progress achievement awarding bonus points."""

    __tablename__ = "bonus_milestones"
    __table_args__ = (
        Index("ix_bonus_milestones_program_id", "bonus_program_id"),
        Index("ix_bonus_milestones_is_active", "is_active"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(String, nullable=False)
    bonus_program_id = Column(
        UUID(as_uuid=True), ForeignKey("bonus_programs.id", ondelete="CASCADE"), nullable=False
    )
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    type = Column(_enum_type(MilestoneType, "bonus_milestone_type"), nullable=False)
    target_value = Column(Numeric(12, 2), nullable=False)
    reward_points = Column(Integer, nullable=False)
    is_repeatable = Column(Boolean, nullable=False, default=False, server_default="false")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    sort_order = Column(Integer, nullable=False, default=0, server_default="0")
    metadata_json = Column("metadata", JSON, nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()


class UserMilestoneProgress(Base):
    """Per-user accumulated value towards a milestone."""

    __tablename__ = "user_milestone_progress"
    __table_args__ = (
        UniqueConstraint("user_id", "milestone_id", name="uq_user_milestone_progress_user_milestone"),
        Index("ix_user_milestone_progress_is_completed", "is_completed"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    milestone_id = Column(
        UUID(as_uuid=True), ForeignKey("bonus_milestones.id", ondelete="CASCADE"), nullable=False
    )
    current_value = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    is_completed = Column(Boolean, nullable=False, default=False, server_default="false")
    completed_at = Column(DateTime(timezone=True), nullable=True)
    completion_count = Column(Integer, nullable=False, default=0, server_default="0")
    bonus_transaction_id = Column(UUID(as_uuid=True), ForeignKey("bonus_transactions.id"), nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()


class Referral(Base):
    """Referral code issued by a referrer, bound once someone signs up."""

    __tablename__ = "referrals"
    __table_args__ = (
        Index("ix_referrals_referrer_id", "referrer_id"),
        Index("ix_referrals_referred_user_id", "referred_user_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(String, nullable=False)
    bonus_program_id = Column(
        UUID(as_uuid=True), ForeignKey("bonus_programs.id", ondelete="CASCADE"), nullable=False
    )
    referrer_id = Column(String, nullable=False)
    referred_user_id = Column(String, nullable=True)
    referral_code = Column(String(50), nullable=False, unique=True, index=True)
    signed_up_at = Column(DateTime(timezone=True), nullable=True)
    referrer_bonus_given = Column(Boolean, nullable=False, default=False, server_default="false")
    referrer_transaction_id = Column(UUID(as_uuid=True), ForeignKey("bonus_transactions.id"), nullable=True)
    referee_bonus_given = Column(Boolean, nullable=False, default=False, server_default="false")
    referee_transaction_id = Column(UUID(as_uuid=True), ForeignKey("bonus_transactions.id"), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()

    program = relationship("BonusProgram")


class Reward(Base):
    """Catalog entry redeemable for points."""

    __tablename__ = "rewards"
    __table_args__ = (
        Index("ix_rewards_program_id", "bonus_program_id"),
        Index("ix_rewards_is_active", "is_active"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(String, nullable=False)
    bonus_program_id = Column(
        UUID(as_uuid=True), ForeignKey("bonus_programs.id", ondelete="CASCADE"), nullable=False
    )
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    type = Column(_enum_type(RewardType, "reward_type"), nullable=False)
    points_cost = Column(Integer, nullable=False)
    cash_amount = Column(Numeric(12, 2), nullable=True)
    discount_percentage = Column(Numeric(5, 2), nullable=True)
    discount_amount = Column(Numeric(12, 2), nullable=True)
    min_order_amount = Column(Numeric(12, 2), nullable=True)
    max_redemptions_per_user = Column(Integer, nullable=True)
    total_redemptions_limit = Column(Integer, nullable=True)
    current_redemptions = Column(Integer, nullable=False, default=0, server_default="0")
    valid_from = Column(DateTime(timezone=True), nullable=True)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    image = Column(String(255), nullable=True)
    sort_order = Column(Integer, nullable=False, default=0, server_default="0")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    metadata_json = Column("metadata", JSON, nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()


class BonusCoupon(Base):
    """Single-use discount code produced by a non-cash redemption."""

    __tablename__ = "bonus_coupons"
    __table_args__ = (
        Index("ix_bonus_coupons_user_id", "user_id"),
        Index("ix_bonus_coupons_status", "status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("rewards.id", ondelete="CASCADE"), nullable=False)
    bonus_transaction_id = Column(
        UUID(as_uuid=True), ForeignKey("bonus_transactions.id", ondelete="CASCADE"), nullable=False
    )
    code = Column(String(50), nullable=False, unique=True, index=True)
    type = Column(_enum_type(RewardType, "reward_type"), nullable=False)
    discount_percentage = Column(Numeric(5, 2), nullable=True)
    discount_amount = Column(Numeric(12, 2), nullable=True)
    min_order_amount = Column(Numeric(12, 2), nullable=True)
    status = Column(
        _enum_type(CouponStatus, "bonus_coupon_status"),
        nullable=False,
        default=CouponStatus.ACTIVE,
        server_default=CouponStatus.ACTIVE.value,
    )
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    used_in_order_id = Column(String, nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()

    reward = relationship("Reward")


class PayoutRequest(Base):
    """Cash disbursement requested by redeeming a cash-back reward."""

    __tablename__ = "payout_requests"
    __table_args__ = (
        Index("ix_payout_requests_organization_status", "organization_id", "status"),
        Index("ix_payout_requests_user_id", "user_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("rewards.id", ondelete="SET NULL"), nullable=True)
    bonus_transaction_id = Column(
        UUID(as_uuid=True), ForeignKey("bonus_transactions.id", ondelete="CASCADE"), nullable=False
    )
    points_deducted = Column(Integer, nullable=False)
    cash_amount = Column(Numeric(12, 2), nullable=False)
    status = Column(
        _enum_type(PayoutStatus, "payout_request_status"),
        nullable=False,
        default=PayoutStatus.PENDING,
        server_default=PayoutStatus.PENDING.value,
    )
    payout_method = Column(JSON, nullable=False, default=dict)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    processed_by = Column(String, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()
