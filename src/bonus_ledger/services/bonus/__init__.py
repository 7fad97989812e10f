"""Bonus ledger service exports."""

from .cashback import CashbackQuote, CashbackService  # noqa: F401
from .coupons import AppliedCoupon, CouponService, CouponValidation, calculate_discount  # noqa: F401
from .errors import *  # noqa: F401,F403
from .ledger import (  # noqa: F401
    ExpirationSweepSummary,
    PointsBalance,
    PointsLedgerService,
    TransactionPage,
)
from .milestones import MilestoneCompletion, MilestoneProgressView, MilestoneService  # noqa: F401
from .payouts import PayoutService  # noqa: F401
from .programs import BonusProgramService, ProgramStats  # noqa: F401
from .referrals import ReferralService, ReferralStats  # noqa: F401
from .rewards import AvailableReward, RedemptionResult, RewardService  # noqa: F401
from .tiers import TierService, TierStatus, resolve_tier  # noqa: F401
