from decimal import Decimal

import pytest

from bonus_ledger.models.bonus import BonusTier
from bonus_ledger.schemas.bonus import BonusTierCreate, BonusTierUpdate
from bonus_ledger.services.bonus import (
    BonusValidationError,
    NotFoundError,
    PointsLedgerService,
    TierService,
    resolve_tier,
)


async def _seed_tiers(session, program_id) -> list[BonusTier]:
    service = TierService(session)
    bronze = await service.create_tier(program_id, BonusTierCreate(name="Bronze", slug="bronze", min_points=0))
    silver = await service.create_tier(
        program_id,
        BonusTierCreate(name="Silver", slug="silver", min_points=100, multiplier=Decimal("1.25"), benefits=["Free shipping"]),
    )
    gold = await service.create_tier(
        program_id, BonusTierCreate(name="Gold", slug="gold", min_points=500, multiplier=Decimal("1.5"))
    )
    return [bronze, silver, gold]


@pytest.mark.asyncio
async def test_calculate_user_tier_places_account_and_caches_tier(session_factory, make_program) -> None:
    async with session_factory() as session:
        program = await make_program(session)
        program_id = program.id
        bronze, silver, gold = await _seed_tiers(session, program_id)
        await PointsLedgerService(session).adjust_points("user-1", program_id, 250)

        status = await TierService(session).calculate_user_tier("user-1", program_id)

        assert status is not None
        assert status.current_tier.id == silver.id
        assert status.next_tier.id == gold.id
        assert status.progress == Decimal("37.5")
        assert status.points_to_next_tier == 250
        assert status.multiplier == Decimal("1.25")

        balance = await PointsLedgerService(session).get_points_balance("user-1", program_id)
        assert balance.current_tier_id == silver.id


@pytest.mark.asyncio
async def test_calculate_user_tier_without_account(session_factory, make_program) -> None:
    async with session_factory() as session:
        program = await make_program(session)
        await _seed_tiers(session, program.id)

        assert await TierService(session).calculate_user_tier("nobody", program.id) is None


def test_resolve_tier_at_top_and_below_lowest_tier() -> None:
    tiers = [
        BonusTier(name="Silver", slug="silver", min_points=100, multiplier=Decimal("1.25")),
        BonusTier(name="Gold", slug="gold", min_points=500, multiplier=Decimal("1.5")),
    ]

    top = resolve_tier(900, tiers)
    assert top.current_tier is tiers[1]
    assert top.next_tier is None
    assert top.progress == Decimal("0")
    assert top.points_to_next_tier is None

    below = resolve_tier(40, tiers)
    assert below.current_tier is None
    assert below.next_tier is tiers[0]
    assert below.points_to_next_tier == 60
    assert below.multiplier == Decimal("1")


@pytest.mark.asyncio
async def test_tier_catalog_management(session_factory, make_program) -> None:
    async with session_factory() as session:
        program = await make_program(session)
        program_id = program.id
        service = TierService(session)
        bronze, silver, gold = await _seed_tiers(session, program_id)
        silver_id, gold_id = silver.id, gold.id

        with pytest.raises(BonusValidationError):
            await service.create_tier(program_id, BonusTierCreate(name="Copy", slug="silver", min_points=50))

        assert await service.get_tier_benefits(silver_id) == ["Free shipping"]

        updated = await service.update_tier(gold_id, BonusTierUpdate(min_points=1000, name="Gold Plus"))
        assert updated.min_points == 1000
        assert updated.name == "Gold Plus"

        await service.update_tier(silver_id, BonusTierUpdate(is_active=False))
        active = await service.list_tiers(program_id)
        assert [tier.slug for tier in active] == ["bronze", "gold"]
        everything = await service.list_tiers(program_id, include_inactive=True)
        assert [tier.slug for tier in everything] == ["bronze", "silver", "gold"]

        await service.delete_tier(gold_id)
        with pytest.raises(NotFoundError):
            await service.get_tier(gold_id)
        assert [tier.slug for tier in await service.list_tiers(program_id, include_inactive=True)] == [
            "bronze",
            "silver",
        ]
