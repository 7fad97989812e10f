import datetime as dt
from decimal import Decimal

import pytest
from sqlalchemy import update

from bonus_ledger.models.bonus import BonusCoupon, CouponStatus, RewardType
from bonus_ledger.schemas.bonus import RewardCreate
from bonus_ledger.services.bonus import (
    BonusValidationError,
    CouponService,
    CouponUnavailableError,
    PointsLedgerService,
    RewardService,
    calculate_discount,
)


async def _issue(session, program_id, user_id: str, **reward_fields) -> BonusCoupon:
    fields = {"name": "Coupon reward", "points_cost": 10}
    fields.update(reward_fields)
    rewards = RewardService(session)
    reward = await rewards.create_reward(program_id, RewardCreate(**fields))
    await PointsLedgerService(session).adjust_points(user_id, program_id, reward.points_cost)
    return (await rewards.redeem_reward(user_id, program_id, reward.id)).coupon


def test_calculate_discount_is_capped_and_rounded() -> None:
    percentage = BonusCoupon(type=RewardType.PERCENTAGE_DISCOUNT, discount_percentage=Decimal("12.5"))
    fixed = BonusCoupon(type=RewardType.FIXED_DISCOUNT, discount_amount=Decimal("15"))
    shipping = BonusCoupon(type=RewardType.FREE_SHIPPING)

    assert calculate_discount(percentage, Decimal("19.99")) == Decimal("2.50")
    assert calculate_discount(fixed, Decimal("100")) == Decimal("15.00")
    assert calculate_discount(fixed, Decimal("9.50")) == Decimal("9.50")
    assert calculate_discount(shipping, Decimal("40")) == Decimal("0.00")


@pytest.mark.asyncio
async def test_apply_coupon_computes_final_total(session_factory, make_program) -> None:
    async with session_factory() as session:
        program = await make_program(session)
        program_id = program.id
        coupon = await _issue(
            session,
            program_id,
            "user-1",
            type=RewardType.PERCENTAGE_DISCOUNT,
            discount_percentage=Decimal("10"),
            min_order_amount=Decimal("50"),
        )
        code = coupon.code
        service = CouponService(session)

        applied = await service.apply_coupon(code.lower(), "org-1", "120.00")
        assert applied.discount == Decimal("12.00")
        assert applied.final_total == Decimal("108.00")

        with pytest.raises(BonusValidationError):
            await service.apply_coupon(code, "org-1", "40")

        missing = await service.validate_coupon("AAAA-BBBB-CCCC", "org-1")
        assert missing.valid is False
        assert missing.error == "Coupon not found"

        foreign = await service.validate_coupon(code, "org-other")
        assert foreign.valid is False


@pytest.mark.asyncio
async def test_validate_coupon_expires_stale_coupon(session_factory, make_program) -> None:
    async with session_factory() as session:
        program = await make_program(session)
        coupon = await _issue(
            session, program.id, "user-2", type=RewardType.FIXED_DISCOUNT, discount_amount=Decimal("5")
        )
        code, coupon_id = coupon.code, coupon.id
        await session.execute(
            update(BonusCoupon)
            .where(BonusCoupon.id == coupon_id)
            .values(expires_at=dt.datetime.now(dt.timezone.utc) - dt.timedelta(minutes=1))
        )
        await session.commit()

        service = CouponService(session)
        result = await service.validate_coupon(code, "org-1")
        assert result.valid is False
        assert result.error == "Coupon has expired"
        assert result.coupon.status == CouponStatus.EXPIRED

        again = await service.validate_coupon(code, "org-1")
        assert again.error == "Coupon is expired"

        with pytest.raises(CouponUnavailableError):
            await service.apply_coupon(code, "org-1", "100")


@pytest.mark.asyncio
async def test_mark_used_and_cancel(session_factory, make_program) -> None:
    async with session_factory() as session:
        program = await make_program(session)
        program_id = program.id
        first = await _issue(session, program_id, "user-3", type=RewardType.FREE_SHIPPING)
        second = await _issue(session, program_id, "user-3", type=RewardType.FREE_SHIPPING, name="Another")
        first_id, first_code, second_id = first.id, first.code, second.id
        service = CouponService(session)

        used = await service.mark_coupon_used(first_id, "order-7", organization_id="org-1")
        assert used.status == CouponStatus.USED
        assert used.used_in_order_id == "order-7"
        assert used.used_at is not None

        with pytest.raises(CouponUnavailableError):
            await service.mark_coupon_used(first_id, "order-8")

        result = await service.validate_coupon(first_code, "org-1")
        assert result.error == "Coupon is used"

        cancelled = await service.cancel_coupon(second_id)
        assert cancelled.status == CouponStatus.CANCELLED
        with pytest.raises(CouponUnavailableError):
            await service.cancel_coupon(second_id)

        balance = await PointsLedgerService(session).get_points_balance("user-3", program_id)
        assert balance.current_points == 0


@pytest.mark.asyncio
async def test_list_user_coupons_and_expiry_sweep(session_factory, make_program) -> None:
    async with session_factory() as session:
        program = await make_program(session)
        program_id = program.id
        kept = await _issue(session, program_id, "user-4", type=RewardType.FREE_SHIPPING)
        spent = await _issue(session, program_id, "user-4", type=RewardType.FREE_PRODUCT, name="Gift")
        stale = await _issue(session, program_id, "user-5", type=RewardType.FREE_SHIPPING, name="Late")
        kept_id, spent_id, stale_id = kept.id, spent.id, stale.id
        service = CouponService(session)

        await service.mark_coupon_used(spent_id, "order-1")
        active = await service.list_user_coupons("user-4", "org-1")
        assert [coupon.id for coupon in active] == [kept_id]
        everything = await service.list_user_coupons("user-4", "org-1", include_used=True)
        assert {coupon.id for coupon in everything} == {kept_id, spent_id}

        await session.execute(
            update(BonusCoupon)
            .where(BonusCoupon.id == stale_id)
            .values(expires_at=dt.datetime.now(dt.timezone.utc) - dt.timedelta(days=1))
        )
        await session.commit()

        assert await service.expire_coupons() == 1
        assert await service.expire_coupons() == 0
        assert await service.list_user_coupons("user-5", "org-1") == []
