import datetime as dt
import re
from decimal import Decimal
from uuid import uuid4

import pytest
from pydantic import ValidationError
from sqlalchemy import func, select

from bonus_ledger.models.bonus import (
    BonusCoupon,
    BonusTransactionType,
    CouponStatus,
    PayoutStatus,
    Reward,
    RewardType,
)
from bonus_ledger.observability.bonus import get_bonus_store
from bonus_ledger.schemas.bonus import RewardCreate, RewardUpdate
from bonus_ledger.services.bonus import (
    BonusValidationError,
    CodeGenerationError,
    CouponService,
    InsufficientPointsError,
    NotFoundError,
    PayoutDetailsRequiredError,
    PointsLedgerService,
    RedemptionLimitReachedError,
    RewardExpiredError,
    RewardInactiveError,
    RewardNotYetAvailableError,
    RewardService,
    UserRedemptionLimitReachedError,
)

COUPON_CODE = re.compile(r"^[A-Z0-9]{4}-[A-Z0-9]{4}-[A-Z0-9]{4}$")


async def _reward(session, program_id, **overrides) -> Reward:
    fields = {
        "name": "10% off",
        "type": RewardType.PERCENTAGE_DISCOUNT,
        "points_cost": 200,
        "discount_percentage": Decimal("10"),
    }
    fields.update(overrides)
    return await RewardService(session).create_reward(program_id, RewardCreate(**fields))


async def _reload_reward(session, reward_id) -> Reward:
    stmt = select(Reward).where(Reward.id == reward_id).execution_options(populate_existing=True)
    return (await session.execute(stmt)).scalar_one()


async def _coupon_count(session) -> int:
    return (await session.execute(select(func.count(BonusCoupon.id)))).scalar_one()


@pytest.mark.asyncio
async def test_redeem_discount_reward_issues_coupon(session_factory, make_program) -> None:
    async with session_factory() as session:
        program = await make_program(session)
        program_id = program.id
        reward = await _reward(session, program_id)
        await PointsLedgerService(session).adjust_points("user-1", program_id, 500)

        result = await RewardService(session).redeem_reward("user-1", program_id, reward.id)

        assert result.points_spent == 200
        assert result.remaining_points == 300
        assert result.payout_request is None
        assert result.transaction.type == BonusTransactionType.REDEEMED_DISCOUNT
        assert result.transaction.points == -200

        coupon = result.coupon
        assert COUPON_CODE.match(coupon.code)
        assert coupon.status == CouponStatus.ACTIVE
        assert coupon.type == RewardType.PERCENTAGE_DISCOUNT
        assert coupon.bonus_transaction_id == result.transaction.id
        assert coupon.expires_at > dt.datetime.now(dt.timezone.utc) + dt.timedelta(days=29)

        assert (await _reload_reward(session, reward.id)).current_redemptions == 1

        redemptions = get_bonus_store().snapshot().redemptions
        assert redemptions["total"] == 1
        assert redemptions["type:percentage_discount"] == 1


@pytest.mark.asyncio
async def test_redeem_with_insufficient_points_changes_nothing(session_factory, make_program) -> None:
    async with session_factory() as session:
        program = await make_program(session)
        program_id = program.id
        reward = await _reward(session, program_id)
        reward_id = reward.id
        await PointsLedgerService(session).adjust_points("user-2", program_id, 150)

        with pytest.raises(InsufficientPointsError):
            await RewardService(session).redeem_reward("user-2", program_id, reward_id)

        assert await _coupon_count(session) == 0
        assert (await _reload_reward(session, reward_id)).current_redemptions == 0
        balance = await PointsLedgerService(session).get_points_balance("user-2", program_id)
        assert balance.current_points == 150

        failures = get_bonus_store().snapshot().redemptions
        assert failures["failure:InsufficientPointsError"] == 1


@pytest.mark.asyncio
async def test_redemption_rolls_back_when_coupon_issue_fails(session_factory, make_program, monkeypatch) -> None:
    async with session_factory() as session:
        program = await make_program(session)
        program_id = program.id
        reward = await _reward(session, program_id)
        reward_id = reward.id
        await PointsLedgerService(session).adjust_points("user-3", program_id, 500)
        await session.commit()

        async def _exhausted(self) -> str:
            raise CodeGenerationError("Unable to generate a unique coupon code")

        monkeypatch.setattr(CouponService, "generate_unique_code", _exhausted)

        with pytest.raises(CodeGenerationError):
            await RewardService(session).redeem_reward("user-3", program_id, reward_id)

        balance = await PointsLedgerService(session).get_points_balance("user-3", program_id)
        assert balance.current_points == 500
        assert balance.total_redeemed_points == 0
        assert await _coupon_count(session) == 0
        assert (await _reload_reward(session, reward_id)).current_redemptions == 0


@pytest.mark.asyncio
async def test_failed_redemption_inside_open_transaction_keeps_points(
    session_factory, make_program, monkeypatch
) -> None:
    async with session_factory() as session:
        program = await make_program(session)
        program_id = program.id
        reward = await _reward(session, program_id)
        reward_id = reward.id
        await PointsLedgerService(session).adjust_points("user-4", program_id, 500)
        await session.commit()

        service = RewardService(session)
        offers = await service.get_available_rewards("user-4", program_id)
        assert [offer.reward.id for offer in offers] == [reward_id]
        assert session.in_transaction()

        async def _exhausted(self) -> str:
            raise CodeGenerationError("Unable to generate a unique coupon code")

        monkeypatch.setattr(CouponService, "generate_unique_code", _exhausted)

        with pytest.raises(CodeGenerationError):
            await service.redeem_reward("user-4", program_id, reward_id)
        await session.commit()

    async with session_factory() as session:
        balance = await PointsLedgerService(session).get_points_balance("user-4", program_id)
        assert balance.current_points == 500
        assert balance.total_redeemed_points == 0
        assert await _coupon_count(session) == 0
        assert (await _reload_reward(session, reward_id)).current_redemptions == 0


@pytest.mark.asyncio
async def test_redemption_eligibility_errors(session_factory, make_program) -> None:
    async with session_factory() as session:
        program = await make_program(session)
        program_id = program.id
        now = dt.datetime.now(dt.timezone.utc)
        inactive = await _reward(session, program_id, is_active=False)
        upcoming = await _reward(session, program_id, valid_from=now + dt.timedelta(days=1))
        lapsed = await _reward(session, program_id, valid_until=now - dt.timedelta(days=1))
        inactive_id, upcoming_id, lapsed_id = inactive.id, upcoming.id, lapsed.id
        await PointsLedgerService(session).adjust_points("user-4", program_id, 1000)
        service = RewardService(session)

        with pytest.raises(RewardInactiveError):
            await service.redeem_reward("user-4", program_id, inactive_id)
        with pytest.raises(RewardNotYetAvailableError):
            await service.redeem_reward("user-4", program_id, upcoming_id)
        with pytest.raises(RewardExpiredError):
            await service.redeem_reward("user-4", program_id, lapsed_id)
        with pytest.raises(NotFoundError):
            await service.redeem_reward("user-4", program_id, uuid4())

        balance = await PointsLedgerService(session).get_points_balance("user-4", program_id)
        assert balance.current_points == 1000


@pytest.mark.asyncio
async def test_redemption_limits(session_factory, make_program) -> None:
    async with session_factory() as session:
        program = await make_program(session)
        program_id = program.id
        scarce = await _reward(session, program_id, total_redemptions_limit=1)
        once_each = await _reward(session, program_id, max_redemptions_per_user=1)
        scarce_id, once_each_id = scarce.id, once_each.id
        ledger = PointsLedgerService(session)
        await ledger.adjust_points("user-5", program_id, 1000)
        await ledger.adjust_points("user-6", program_id, 1000)
        service = RewardService(session)

        await service.redeem_reward("user-5", program_id, scarce_id)
        with pytest.raises(RedemptionLimitReachedError):
            await service.redeem_reward("user-6", program_id, scarce_id)

        await service.redeem_reward("user-5", program_id, once_each_id)
        with pytest.raises(UserRedemptionLimitReachedError):
            await service.redeem_reward("user-5", program_id, once_each_id)
        await service.redeem_reward("user-6", program_id, once_each_id)

        balance = await ledger.get_points_balance("user-5", program_id)
        assert balance.current_points == 600


@pytest.mark.asyncio
async def test_cash_back_redemption_requires_payout_details(session_factory, make_program) -> None:
    async with session_factory() as session:
        program = await make_program(session)
        program_id = program.id
        reward = await _reward(
            session,
            program_id,
            name="$5 cash back",
            type=RewardType.CASH_BACK,
            points_cost=500,
            discount_percentage=None,
            cash_amount=Decimal("5.00"),
        )
        reward_id = reward.id
        await PointsLedgerService(session).adjust_points("user-7", program_id, 800)
        service = RewardService(session)

        with pytest.raises(PayoutDetailsRequiredError):
            await service.redeem_reward("user-7", program_id, reward_id)
        with pytest.raises(BonusValidationError):
            await service.redeem_reward("user-7", program_id, reward_id, {"type": "crypto"})

        result = await service.redeem_reward(
            "user-7", program_id, reward_id, {"type": "paypal", "details": {"email": "user7@example.com"}}
        )

        assert result.coupon is None
        assert result.transaction.type == BonusTransactionType.REDEEMED_CASH
        payout = result.payout_request
        assert payout.status == PayoutStatus.PENDING
        assert payout.points_deducted == 500
        assert Decimal(payout.cash_amount) == Decimal("5.00")
        assert payout.payout_method == {"type": "paypal", "details": {"email": "user7@example.com"}}
        assert result.remaining_points == 300


@pytest.mark.asyncio
async def test_available_rewards_and_catalog(session_factory, make_program) -> None:
    async with session_factory() as session:
        program = await make_program(session)
        program_id = program.id
        cheap = await _reward(session, program_id, name="Free shipping", type=RewardType.FREE_SHIPPING, points_cost=50, sort_order=1)
        pricey = await _reward(session, program_id, name="Big discount", points_cost=5000, sort_order=2)
        hidden = await _reward(session, program_id, name="Retired", is_active=False)
        cheap_id, pricey_id, hidden_id = cheap.id, pricey.id, hidden.id
        await PointsLedgerService(session).adjust_points("user-8", program_id, 100)
        service = RewardService(session)

        available = await service.get_available_rewards("user-8", program_id)
        assert [(item.reward.id, item.can_afford) for item in available] == [(cheap_id, True), (pricey_id, False)]

        updated = await service.update_reward(pricey_id, RewardUpdate(points_cost=80))
        assert updated.points_cost == 80

        await service.delete_reward(cheap_id)
        with pytest.raises(NotFoundError):
            await service.get_reward(cheap_id)

        remaining = await service.list_rewards(program_id, include_inactive=True)
        assert {reward.id for reward in remaining} == {pricey_id, hidden_id}

        with pytest.raises(ValidationError):
            RewardCreate(name="Broken", type=RewardType.CASH_BACK, points_cost=100)
