import datetime as dt

import pytest
from sqlalchemy import update

from bonus_ledger.jobs.bonus import expire_stale_coupons, run_points_expiration
from bonus_ledger.models.bonus import BonusCoupon, BonusTransactionStatus, BonusTransactionType, RewardType
from bonus_ledger.observability.bonus import get_bonus_store
from bonus_ledger.schemas.bonus import RewardCreate
from bonus_ledger.services.bonus import PointsLedgerService, RewardService


@pytest.mark.asyncio
async def test_points_expiration_job_reports_summary(session_factory, make_program) -> None:
    async with session_factory() as session:
        program = await make_program(session)
        await PointsLedgerService(session).award_points(
            "user-1",
            program.id,
            70,
            BonusTransactionType.EARNED_PURCHASE,
            status=BonusTransactionStatus.CONFIRMED,
            expires_at=dt.datetime.now(dt.timezone.utc) - dt.timedelta(days=2),
        )

    summary = await run_points_expiration(session_factory=session_factory)

    assert summary["rows_expired"] == 1
    assert summary["accounts_touched"] == 1
    assert summary["points_expired"] == 70
    assert "reference_time" in summary
    assert get_bonus_store().snapshot().sweeps["runs"] == 1

    again = await run_points_expiration(session_factory=session_factory)
    assert again["rows_expired"] == 0


@pytest.mark.asyncio
async def test_coupon_expiration_job(session_factory, make_program) -> None:
    async with session_factory() as session:
        program = await make_program(session)
        program_id = program.id
        rewards = RewardService(session)
        reward = await rewards.create_reward(
            program_id, RewardCreate(name="Shipping", type=RewardType.FREE_SHIPPING, points_cost=5)
        )
        await PointsLedgerService(session).adjust_points("user-2", program_id, 5)
        coupon = (await rewards.redeem_reward("user-2", program_id, reward.id)).coupon
        await session.execute(
            update(BonusCoupon)
            .where(BonusCoupon.id == coupon.id)
            .values(expires_at=dt.datetime.now(dt.timezone.utc) - dt.timedelta(hours=1))
        )
        await session.commit()

    async def _factory():
        return session_factory()

    summary = await expire_stale_coupons(session_factory=_factory)
    assert summary["coupons_expired"] == 1
