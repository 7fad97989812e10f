from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from bonus_ledger.models.bonus import MilestoneType, RewardType


class BonusProgramCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    organization_id: str = Field(..., alias="organizationId", min_length=1)
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    points_per_currency: Decimal = Field(Decimal("1.00"), alias="pointsPerCurrency", ge=0)
    min_order_amount: Decimal = Field(Decimal("0"), alias="minOrderAmount", ge=0)
    max_points_per_order: int | None = Field(None, alias="maxPointsPerOrder", ge=1)
    points_expire_days: int | None = Field(None, alias="pointsExpireDays", ge=1)
    signup_bonus: int = Field(0, alias="signupBonus", ge=0)
    referral_bonus_referrer: int = Field(0, alias="referralBonusReferrer", ge=0)
    referral_bonus_referee: int = Field(0, alias="referralBonusReferee", ge=0)
    is_active: bool = Field(True, alias="isActive")
    metadata: dict[str, Any] | None = None


class BonusProgramUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = None
    points_per_currency: Decimal | None = Field(None, alias="pointsPerCurrency", ge=0)
    min_order_amount: Decimal | None = Field(None, alias="minOrderAmount", ge=0)
    max_points_per_order: int | None = Field(None, alias="maxPointsPerOrder", ge=1)
    points_expire_days: int | None = Field(None, alias="pointsExpireDays", ge=1)
    signup_bonus: int | None = Field(None, alias="signupBonus", ge=0)
    referral_bonus_referrer: int | None = Field(None, alias="referralBonusReferrer", ge=0)
    referral_bonus_referee: int | None = Field(None, alias="referralBonusReferee", ge=0)
    is_active: bool | None = Field(None, alias="isActive")
    metadata: dict[str, Any] | None = None


class BonusTierCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=100)
    slug: str = Field(..., min_length=1, max_length=100, pattern=r"^[a-z0-9][a-z0-9_-]*$")
    min_points: int = Field(..., alias="minPoints", ge=0)
    multiplier: Decimal = Field(Decimal("1.00"), gt=0)
    description: str | None = None
    benefits: list[str] = Field(default_factory=list)
    is_active: bool = Field(True, alias="isActive")
    sort_order: int = Field(0, alias="sortOrder")


class BonusTierUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = Field(None, min_length=1, max_length=100)
    min_points: int | None = Field(None, alias="minPoints", ge=0)
    multiplier: Decimal | None = Field(None, gt=0)
    description: str | None = None
    benefits: list[str] | None = None
    is_active: bool | None = Field(None, alias="isActive")
    sort_order: int | None = Field(None, alias="sortOrder")


class BonusMilestoneCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    type: MilestoneType
    target_value: Decimal = Field(..., alias="targetValue", gt=0)
    reward_points: int = Field(..., alias="rewardPoints", ge=1)
    is_repeatable: bool = Field(False, alias="isRepeatable")
    is_active: bool = Field(True, alias="isActive")
    sort_order: int = Field(0, alias="sortOrder")
    metadata: dict[str, Any] | None = None


class BonusMilestoneUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = None
    target_value: Decimal | None = Field(None, alias="targetValue", gt=0)
    reward_points: int | None = Field(None, alias="rewardPoints", ge=1)
    is_repeatable: bool | None = Field(None, alias="isRepeatable")
    is_active: bool | None = Field(None, alias="isActive")
    sort_order: int | None = Field(None, alias="sortOrder")
    metadata: dict[str, Any] | None = None


class RewardCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    type: RewardType
    points_cost: int = Field(..., alias="pointsCost", ge=1)
    cash_amount: Decimal | None = Field(None, alias="cashAmount", gt=0)
    discount_percentage: Decimal | None = Field(None, alias="discountPercentage", gt=0, le=100)
    discount_amount: Decimal | None = Field(None, alias="discountAmount", gt=0)
    min_order_amount: Decimal | None = Field(None, alias="minOrderAmount", ge=0)
    max_redemptions_per_user: int | None = Field(None, alias="maxRedemptionsPerUser", ge=1)
    total_redemptions_limit: int | None = Field(None, alias="totalRedemptionsLimit", ge=1)
    valid_from: datetime | None = Field(None, alias="validFrom")
    valid_until: datetime | None = Field(None, alias="validUntil")
    image: str | None = None
    sort_order: int = Field(0, alias="sortOrder")
    is_active: bool = Field(True, alias="isActive")
    metadata: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _check_type_fields(self) -> "RewardCreate":
        if self.type == RewardType.CASH_BACK and self.cash_amount is None:
            raise ValueError("cash_back rewards require cashAmount")
        if self.type == RewardType.PERCENTAGE_DISCOUNT and self.discount_percentage is None:
            raise ValueError("percentage_discount rewards require discountPercentage")
        if self.type == RewardType.FIXED_DISCOUNT and self.discount_amount is None:
            raise ValueError("fixed_discount rewards require discountAmount")
        if self.valid_from and self.valid_until and self.valid_from >= self.valid_until:
            raise ValueError("validFrom must precede validUntil")
        return self


class RewardUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = None
    points_cost: int | None = Field(None, alias="pointsCost", ge=1)
    cash_amount: Decimal | None = Field(None, alias="cashAmount", gt=0)
    discount_percentage: Decimal | None = Field(None, alias="discountPercentage", gt=0, le=100)
    discount_amount: Decimal | None = Field(None, alias="discountAmount", gt=0)
    min_order_amount: Decimal | None = Field(None, alias="minOrderAmount", ge=0)
    max_redemptions_per_user: int | None = Field(None, alias="maxRedemptionsPerUser", ge=1)
    total_redemptions_limit: int | None = Field(None, alias="totalRedemptionsLimit", ge=1)
    valid_from: datetime | None = Field(None, alias="validFrom")
    valid_until: datetime | None = Field(None, alias="validUntil")
    image: str | None = None
    sort_order: int | None = Field(None, alias="sortOrder")
    is_active: bool | None = Field(None, alias="isActive")
    metadata: dict[str, Any] | None = None


class PayoutDetails(BaseModel):
    """Destination for a cash-back payout."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    type: Literal["paypal", "bank_transfer"]
    details: dict[str, Any] = Field(default_factory=dict)
