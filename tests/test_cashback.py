from decimal import Decimal

import pytest
from sqlalchemy import select

from bonus_ledger.models.bonus import BonusTransactionStatus, BonusTransactionType, PointsExpiration
from bonus_ledger.schemas.bonus import BonusTierCreate
from bonus_ledger.services.bonus import (
    BonusValidationError,
    CashbackService,
    PointsLedgerService,
    TierService,
)


@pytest.mark.asyncio
async def test_calculate_cashback_floors_and_applies_limits(session_factory, make_program) -> None:
    async with session_factory() as session:
        program = await make_program(
            session,
            points_per_currency=Decimal("1.5"),
            min_order_amount=Decimal("10"),
            max_points_per_order=500,
        )
        service = CashbackService(session)

        assert service.calculate_cashback(program, "99.99") == 149
        assert service.calculate_cashback(program, Decimal("9.99")) == 0
        assert service.calculate_cashback(program, "10") == 15
        assert service.calculate_cashback(program, "1000") == 500

        with pytest.raises(BonusValidationError):
            service.calculate_cashback(program, "not-a-number")
        with pytest.raises(BonusValidationError):
            service.calculate_cashback(program, "-5")


@pytest.mark.asyncio
async def test_cashback_applies_tier_multiplier(session_factory, make_program) -> None:
    async with session_factory() as session:
        program = await make_program(session)
        program_id = program.id
        tier = await TierService(session).create_tier(
            program_id, BonusTierCreate(name="Gold", slug="gold", min_points=0, multiplier=Decimal("1.5"))
        )
        tier_id = tier.id
        service = CashbackService(session)

        # No account yet, so no tier applies.
        plain = await service.calculate_cashback_with_tier("user-1", program, "100")
        assert plain.points == 100
        assert plain.multiplier == Decimal("1")

        await PointsLedgerService(session).adjust_points("user-1", program_id, 10)
        quote = await service.calculate_cashback_with_tier("user-1", program, "100")
        assert quote.base_points == 100
        assert quote.multiplier == Decimal("1.5")
        assert quote.points == 150
        assert quote.tier_id == tier_id
        assert quote.tier_name == "Gold"


@pytest.mark.asyncio
async def test_award_cashback_creates_pending_purchase_award(session_factory, make_program) -> None:
    async with session_factory() as session:
        program = await make_program(session, organization_id="org-shop", points_expire_days=365)
        program_id = program.id
        service = CashbackService(session)

        entry = await service.award_cashback("user-2", "org-shop", "order-42", "120.50")

        assert entry is not None
        assert entry.type == BonusTransactionType.EARNED_PURCHASE
        assert entry.status == BonusTransactionStatus.PENDING
        assert entry.points == 120
        assert entry.order_id == "order-42"
        assert entry.expires_at is not None
        assert entry.metadata_json["order_total"] == "120.50"
        assert entry.metadata_json["base_points"] == 120

        windows = (await session.execute(select(PointsExpiration))).scalars().all()
        assert windows == []

        balance = await PointsLedgerService(session).get_points_balance("user-2", program_id)
        assert balance.pending_points == 120
        assert balance.current_points == 0


@pytest.mark.asyncio
async def test_award_cashback_without_program_or_points(session_factory, make_program) -> None:
    async with session_factory() as session:
        await make_program(session, organization_id="org-small", min_order_amount=Decimal("50"))
        service = CashbackService(session)

        assert await service.award_cashback("user-3", "org-missing", "order-1", "100") is None
        assert await service.award_cashback("user-3", "org-small", "order-2", "20") is None


@pytest.mark.asyncio
async def test_signup_bonus(session_factory, make_program) -> None:
    async with session_factory() as session:
        generous = await make_program(session, signup_bonus=25)
        stingy = await make_program(session, organization_id="org-2")
        service = CashbackService(session)

        entry = await service.award_signup_bonus("user-4", generous.id)
        assert entry.type == BonusTransactionType.EARNED_SIGNUP
        assert entry.status == BonusTransactionStatus.CONFIRMED
        assert entry.balance_after == 25

        assert await service.award_signup_bonus("user-4", stingy.id) is None
