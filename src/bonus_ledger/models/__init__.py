"""SQLAlchemy models package."""

from .bonus import (  # noqa: F401
    BonusCoupon,
    BonusMilestone,
    BonusProgram,
    BonusTier,
    BonusTransaction,
    BonusTransactionStatus,
    BonusTransactionType,
    CouponStatus,
    MilestoneType,
    PayoutRequest,
    PayoutStatus,
    PointsExpiration,
    Referral,
    Reward,
    RewardType,
    UserBonusAccount,
    UserMilestoneProgress,
)
