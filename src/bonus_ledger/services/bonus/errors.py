"""Typed failures raised by the bonus services."""

from __future__ import annotations

from uuid import UUID


class BonusError(RuntimeError):
    """Base class for every bonus ledger failure."""


class NotFoundError(BonusError):
    """Raised when a program, account, reward, milestone, referral or transaction is absent."""

    def __init__(self, entity: str, identifier: object) -> None:
        super().__init__(f"{entity} {identifier} not found")
        self.entity = entity
        self.identifier = identifier


class InvalidStateError(BonusError):
    """Raised when an entity is not in a state that permits the operation."""


class NotPendingError(InvalidStateError):
    def __init__(self, transaction_id: UUID, status: str) -> None:
        super().__init__(f"Transaction {transaction_id} is {status}, expected pending")
        self.transaction_id = transaction_id
        self.status = status


class RewardInactiveError(InvalidStateError):
    """Raised when redeeming a disabled reward."""


class RewardExpiredError(InvalidStateError):
    """Raised when the reward validity window has closed."""


class RewardNotYetAvailableError(InvalidStateError):
    """Raised when the reward validity window has not opened yet."""


class RedemptionLimitReachedError(InvalidStateError):
    """Raised when the reward's total redemption cap is exhausted."""


class UserRedemptionLimitReachedError(InvalidStateError):
    """Raised when the user already redeemed the reward the allowed number of times."""


class ReferralAlreadyBoundError(InvalidStateError):
    """Raised when a referral code is already bound to a different user."""


class CouponUnavailableError(InvalidStateError):
    """Raised when a coupon cannot be applied, used or cancelled in its current state."""


class InvalidPayoutTransitionError(InvalidStateError):
    """Raised when a payout status change violates the approval workflow."""

    def __init__(self, current_status: str, requested_status: str) -> None:
        super().__init__(f"Cannot transition payout from {current_status} to {requested_status}")
        self.current_status = current_status
        self.requested_status = requested_status


class InsufficientPointsError(BonusError):
    def __init__(self, available: int, requested: int) -> None:
        super().__init__(f"Insufficient points: {available} available, {requested} requested")
        self.available = available
        self.requested = requested


class InvalidReferralCodeError(BonusError):
    """Raised when a referral code is unknown or inactive."""


class BonusValidationError(BonusError, ValueError):
    """Raised for malformed inputs that reach the service layer."""


class PayoutDetailsRequiredError(BonusValidationError):
    """Raised when a cash-back redemption omits payout details."""


class CodeGenerationError(BonusError):
    """Raised when a unique coupon or referral code could not be produced."""


__all__ = [
    "BonusError",
    "BonusValidationError",
    "CodeGenerationError",
    "CouponUnavailableError",
    "InsufficientPointsError",
    "InvalidPayoutTransitionError",
    "InvalidReferralCodeError",
    "InvalidStateError",
    "NotFoundError",
    "NotPendingError",
    "PayoutDetailsRequiredError",
    "RedemptionLimitReachedError",
    "ReferralAlreadyBoundError",
    "RewardExpiredError",
    "RewardInactiveError",
    "RewardNotYetAvailableError",
    "UserRedemptionLimitReachedError",
]
