"""Coupon issuance, validation and usage tracking."""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bonus_ledger.core.clock import ensure_utc, utcnow
from bonus_ledger.core.settings import settings
from bonus_ledger.db.session import transaction
from bonus_ledger.models.bonus import BonusCoupon, BonusTransaction, CouponStatus, Reward, RewardType

from .cashback import to_amount
from .errors import BonusValidationError, CodeGenerationError, CouponUnavailableError, NotFoundError

_CODE_ALPHABET = string.ascii_uppercase + string.digits
_CENT = Decimal("0.01")


@dataclass
class CouponValidation:
    valid: bool
    coupon: BonusCoupon | None = None
    error: str | None = None


@dataclass
class AppliedCoupon:
    coupon: BonusCoupon
    order_total: Decimal
    discount: Decimal
    final_total: Decimal


def calculate_discount(coupon: BonusCoupon, order_total: Decimal) -> Decimal:
    """Discount granted by ``coupon`` on ``order_total``, never above the total."""

    if coupon.type == RewardType.PERCENTAGE_DISCOUNT:
        discount = order_total * Decimal(coupon.discount_percentage or 0) / 100
    elif coupon.type == RewardType.FIXED_DISCOUNT:
        discount = Decimal(coupon.discount_amount or 0)
    else:
        discount = Decimal("0")
    return min(discount, order_total).quantize(_CENT, rounding=ROUND_HALF_UP)


class CouponService:
    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def generate_unique_code(self) -> str:
        """Produce an unused ``XXXX-XXXX-XXXX`` style code."""

        for _ in range(settings.code_generation_max_attempts):
            code = "-".join(
                "".join(secrets.choice(_CODE_ALPHABET) for _ in range(settings.coupon_code_segment_length))
                for _ in range(settings.coupon_code_segments)
            )
            exists = await self._db.execute(select(BonusCoupon.id).where(BonusCoupon.code == code))
            if exists.scalar_one_or_none() is None:
                return code
            logger.warning("Coupon code collision, retrying", code=code)
        raise CodeGenerationError("Unable to generate a unique coupon code")

    async def issue_coupon(self, user_id: str, reward: Reward, entry: BonusTransaction) -> BonusCoupon:
        """Persist a coupon for a redeemed reward. Must run inside the redemption's transaction."""

        coupon = BonusCoupon(
            organization_id=reward.organization_id,
            user_id=user_id,
            reward_id=reward.id,
            bonus_transaction_id=entry.id,
            code=await self.generate_unique_code(),
            type=reward.type,
            discount_percentage=reward.discount_percentage,
            discount_amount=reward.discount_amount,
            min_order_amount=reward.min_order_amount,
            status=CouponStatus.ACTIVE,
            expires_at=utcnow() + timedelta(days=settings.coupon_expiry_days),
        )
        self._db.add(coupon)
        await self._db.flush()
        logger.info("Issued bonus coupon", coupon_id=str(coupon.id), user_id=user_id, reward_id=str(reward.id))
        return coupon

    async def validate_coupon(self, code: str, organization_id: str) -> CouponValidation:
        async with transaction(self._db):
            coupon = await self._find_by_code(code, organization_id)
            if coupon is None:
                return CouponValidation(valid=False, error="Coupon not found")
            if coupon.status != CouponStatus.ACTIVE:
                return CouponValidation(valid=False, coupon=coupon, error=f"Coupon is {coupon.status.value}")
            if ensure_utc(coupon.expires_at) < utcnow():
                coupon.status = CouponStatus.EXPIRED
                await self._db.flush()
                return CouponValidation(valid=False, coupon=coupon, error="Coupon has expired")
        return CouponValidation(valid=True, coupon=coupon)

    async def apply_coupon(self, code: str, organization_id: str, order_total: Decimal | str) -> AppliedCoupon:
        total = to_amount(order_total)
        validation = await self.validate_coupon(code, organization_id)
        if not validation.valid or validation.coupon is None:
            raise CouponUnavailableError(validation.error or "Coupon is not valid")
        coupon = validation.coupon

        if coupon.min_order_amount is not None and total < Decimal(coupon.min_order_amount):
            raise BonusValidationError(f"Minimum order amount of {coupon.min_order_amount} required")

        discount = calculate_discount(coupon, total)
        return AppliedCoupon(coupon=coupon, order_total=total, discount=discount, final_total=total - discount)

    async def mark_coupon_used(
        self,
        coupon_id: UUID,
        order_id: str,
        *,
        organization_id: str | None = None,
    ) -> BonusCoupon:
        async with transaction(self._db):
            coupon = await self._lock_coupon(coupon_id, organization_id)
            if coupon.status != CouponStatus.ACTIVE:
                raise CouponUnavailableError(f"Coupon is {coupon.status.value}")
            coupon.status = CouponStatus.USED
            coupon.used_at = utcnow()
            coupon.used_in_order_id = order_id
            await self._db.flush()
        logger.info("Bonus coupon used", coupon_id=str(coupon_id), order_id=order_id)
        return coupon

    async def cancel_coupon(self, coupon_id: UUID, *, organization_id: str | None = None) -> BonusCoupon:
        """Void an active coupon. The redeemed points are not refunded."""

        async with transaction(self._db):
            coupon = await self._lock_coupon(coupon_id, organization_id)
            if coupon.status != CouponStatus.ACTIVE:
                raise CouponUnavailableError(f"Only active coupons can be cancelled, coupon is {coupon.status.value}")
            coupon.status = CouponStatus.CANCELLED
            await self._db.flush()
        logger.info("Bonus coupon cancelled", coupon_id=str(coupon_id))
        return coupon

    async def list_user_coupons(
        self,
        user_id: str,
        organization_id: str,
        *,
        include_used: bool = False,
    ) -> list[BonusCoupon]:
        async with transaction(self._db):
            await self._db.execute(
                update(BonusCoupon)
                .where(
                    BonusCoupon.user_id == user_id,
                    BonusCoupon.organization_id == organization_id,
                    BonusCoupon.status == CouponStatus.ACTIVE,
                    BonusCoupon.expires_at < utcnow(),
                )
                .values(status=CouponStatus.EXPIRED, updated_at=utcnow())
                .execution_options(synchronize_session="fetch")
            )
            stmt = select(BonusCoupon).where(
                BonusCoupon.user_id == user_id,
                BonusCoupon.organization_id == organization_id,
            )
            if not include_used:
                stmt = stmt.where(BonusCoupon.status == CouponStatus.ACTIVE)
            result = await self._db.execute(stmt.order_by(BonusCoupon.created_at.desc()))
            return list(result.scalars().all())

    async def expire_coupons(self, *, reference_time: datetime | None = None) -> int:
        """Flip every active coupon past its expiry to ``expired``."""

        now = ensure_utc(reference_time) or utcnow()
        async with transaction(self._db):
            result = await self._db.execute(
                update(BonusCoupon)
                .where(BonusCoupon.status == CouponStatus.ACTIVE, BonusCoupon.expires_at < now)
                .values(status=CouponStatus.EXPIRED, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        expired = int(result.rowcount or 0)
        logger.info("Expired stale bonus coupons", count=expired, reference_time=now.isoformat())
        return expired

    async def _find_by_code(self, code: str, organization_id: str) -> BonusCoupon | None:
        stmt = (
            select(BonusCoupon)
            .where(BonusCoupon.code == code.strip().upper(), BonusCoupon.organization_id == organization_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def _lock_coupon(self, coupon_id: UUID, organization_id: str | None) -> BonusCoupon:
        stmt = (
            select(BonusCoupon)
            .where(BonusCoupon.id == coupon_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if organization_id is not None:
            stmt = stmt.where(BonusCoupon.organization_id == organization_id)
        coupon = (await self._db.execute(stmt)).scalar_one_or_none()
        if coupon is None:
            raise NotFoundError("Bonus coupon", coupon_id)
        return coupon


__all__ = ["AppliedCoupon", "CouponService", "CouponValidation", "calculate_discount"]
