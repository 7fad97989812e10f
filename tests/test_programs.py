from decimal import Decimal

import pytest

from bonus_ledger.schemas.bonus import BonusProgramUpdate
from bonus_ledger.services.bonus import BonusProgramService, NotFoundError, PointsLedgerService


@pytest.mark.asyncio
async def test_program_lifecycle(session_factory, make_program) -> None:
    async with session_factory() as session:
        older = await make_program(session, name="Spring")
        newer = await make_program(session, name="Summer", points_per_currency=Decimal("2"))
        other_org = await make_program(session, organization_id="org-2")
        older_id, newer_id, other_id = older.id, newer.id, other_org.id
        service = BonusProgramService(session)

        assert {program.id for program in await service.list_programs("org-1")} == {older_id, newer_id}

        updated = await service.update_program(newer_id, BonusProgramUpdate(is_active=False, signup_bonus=10))
        assert updated.is_active is False
        assert updated.signup_bonus == 10
        assert updated.points_per_currency == Decimal("2")

        assert [program.id for program in await service.list_programs("org-1", include_inactive=False)] == [older_id]
        assert (await service.get_active_program("org-1")).id == older_id

        with pytest.raises(NotFoundError):
            await service.get_program(other_id, organization_id="org-1")

        await service.delete_program(older_id)
        with pytest.raises(NotFoundError):
            await service.get_program(older_id)
        assert await service.get_active_program("org-1") is None


@pytest.mark.asyncio
async def test_accounts_are_created_once(session_factory, make_program) -> None:
    async with session_factory() as session:
        program = await make_program(session)
        program_id = program.id
        service = BonusProgramService(session)

        first = await service.get_or_create_account("user-1", program_id)
        second = await service.get_or_create_account("user-1", program_id)

        assert first.id == second.id
        assert first.organization_id == "org-1"
        assert first.current_points == 0
        assert await service.get_account("user-2", program_id) is None


@pytest.mark.asyncio
async def test_program_stats(session_factory, make_program) -> None:
    async with session_factory() as session:
        program = await make_program(session)
        program_id = program.id
        ledger = PointsLedgerService(session)
        await ledger.adjust_points("user-1", program_id, 100)
        await ledger.adjust_points("user-1", program_id, -40)
        await ledger.adjust_points("user-2", program_id, 25)
        await BonusProgramService(session).get_or_create_account("user-3", program_id)

        stats = await BonusProgramService(session).get_program_stats(program_id)

        assert stats.total_users == 3
        assert stats.active_users == 2
        assert stats.total_points_issued == 125
        assert stats.total_points_redeemed == 40
        assert stats.total_points_expired == 0
        assert stats.outstanding_points == 85
