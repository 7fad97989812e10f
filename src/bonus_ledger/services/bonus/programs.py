"""Bonus program configuration and per-user account store."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID

from loguru import logger
from sqlalchemy import func, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bonus_ledger.core.clock import utcnow
from bonus_ledger.core.settings import settings
from bonus_ledger.db.session import transaction
from bonus_ledger.models.bonus import BonusProgram, UserBonusAccount
from bonus_ledger.schemas.bonus import BonusProgramCreate, BonusProgramUpdate

from .errors import NotFoundError

_UPSERT_DIALECTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


@dataclass
class ProgramStats:
    """Aggregate view across every account of a program."""

    program_id: UUID
    total_users: int
    active_users: int
    total_points_issued: int
    total_points_redeemed: int
    total_points_expired: int
    outstanding_points: int


async def insert_ignoring_conflict(
    session: AsyncSession,
    model: type,
    values: dict,
    conflict_columns: list[str],
) -> bool | None:
    """Insert a row unless it collides on ``conflict_columns``.

    Returns whether a row was inserted, or ``None`` when the dialect has no
    ``ON CONFLICT DO NOTHING`` support.
    """

    insert = _UPSERT_DIALECTS.get(session.get_bind().dialect.name)
    if insert is None:
        return None
    stmt = insert(model).values(**values).on_conflict_do_nothing(index_elements=conflict_columns)
    return (await session.execute(stmt)).rowcount == 1


def apply_changes(target: object, changes: dict) -> None:
    """Copy validated update fields onto a model, mapping ``metadata`` to its column attribute."""

    for key, value in changes.items():
        setattr(target, "metadata_json" if key == "metadata" else key, value)


class BonusProgramService:
    """CRUD for bonus programs plus lazy account creation."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def create_program(self, payload: BonusProgramCreate) -> BonusProgram:
        data = payload.model_dump()
        metadata = data.pop("metadata", None)
        async with transaction(self._db):
            program = BonusProgram(**data, metadata_json=metadata)
            self._db.add(program)
            await self._db.flush()
        logger.info("Created bonus program", program_id=str(program.id), organization_id=program.organization_id)
        return program

    async def get_program(
        self,
        program_id: UUID,
        *,
        organization_id: str | None = None,
        lock: bool = False,
    ) -> BonusProgram:
        """Return a non-deleted program or raise ``NotFoundError``."""

        stmt = select(BonusProgram).where(BonusProgram.id == program_id, BonusProgram.deleted_at.is_(None))
        if organization_id is not None:
            stmt = stmt.where(BonusProgram.organization_id == organization_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        program = (await self._db.execute(stmt)).scalar_one_or_none()
        if program is None:
            raise NotFoundError("Bonus program", program_id)
        return program

    async def get_active_program(self, organization_id: str) -> BonusProgram | None:
        stmt = (
            select(BonusProgram)
            .where(
                BonusProgram.organization_id == organization_id,
                BonusProgram.is_active.is_(True),
                BonusProgram.deleted_at.is_(None),
            )
            .order_by(BonusProgram.created_at.desc())
            .limit(1)
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def list_programs(self, organization_id: str, *, include_inactive: bool = True) -> list[BonusProgram]:
        stmt = select(BonusProgram).where(
            BonusProgram.organization_id == organization_id,
            BonusProgram.deleted_at.is_(None),
        )
        if not include_inactive:
            stmt = stmt.where(BonusProgram.is_active.is_(True))
        result = await self._db.execute(stmt.order_by(BonusProgram.created_at.desc()))
        return list(result.scalars().all())

    async def update_program(
        self,
        program_id: UUID,
        payload: BonusProgramUpdate,
        *,
        organization_id: str | None = None,
    ) -> BonusProgram:
        async with transaction(self._db):
            program = await self.get_program(program_id, organization_id=organization_id, lock=True)
            apply_changes(program, payload.model_dump(exclude_unset=True))
            await self._db.flush()
        logger.info("Updated bonus program", program_id=str(program_id))
        return program

    async def delete_program(self, program_id: UUID, *, organization_id: str | None = None) -> BonusProgram:
        """Soft delete: the program disappears from lookups but its history stays."""

        async with transaction(self._db):
            program = await self.get_program(program_id, organization_id=organization_id, lock=True)
            program.deleted_at = utcnow()
            program.is_active = False
            await self._db.flush()
        logger.info("Deleted bonus program", program_id=str(program_id))
        return program

    async def get_program_stats(self, program_id: UUID, *, organization_id: str | None = None) -> ProgramStats:
        await self.get_program(program_id, organization_id=organization_id)
        totals_stmt = select(
            func.count(UserBonusAccount.id),
            func.coalesce(func.sum(UserBonusAccount.total_earned_points), 0),
            func.coalesce(func.sum(UserBonusAccount.total_redeemed_points), 0),
            func.coalesce(func.sum(UserBonusAccount.total_expired_points), 0),
            func.coalesce(func.sum(UserBonusAccount.current_points), 0),
        ).where(UserBonusAccount.bonus_program_id == program_id)
        users, issued, redeemed, expired, outstanding = (await self._db.execute(totals_stmt)).one()

        cutoff = utcnow() - timedelta(days=settings.stats_active_window_days)
        active_stmt = select(func.count(UserBonusAccount.id)).where(
            UserBonusAccount.bonus_program_id == program_id,
            or_(UserBonusAccount.last_earned_at >= cutoff, UserBonusAccount.last_redeemed_at >= cutoff),
        )
        active = (await self._db.execute(active_stmt)).scalar_one()

        return ProgramStats(
            program_id=program_id,
            total_users=int(users),
            active_users=int(active),
            total_points_issued=int(issued),
            total_points_redeemed=int(redeemed),
            total_points_expired=int(expired),
            outstanding_points=int(outstanding),
        )

    async def get_account(self, user_id: str, program_id: UUID, *, lock: bool = False) -> UserBonusAccount | None:
        stmt = select(UserBonusAccount).where(
            UserBonusAccount.user_id == user_id,
            UserBonusAccount.bonus_program_id == program_id,
        )
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def get_or_create_account(self, user_id: str, program_id: UUID) -> UserBonusAccount:
        async with transaction(self._db):
            program = await self.get_program(program_id)
            return await self.ensure_account(user_id, program)

    async def ensure_account(self, user_id: str, program: BonusProgram) -> UserBonusAccount:
        """Upsert the account for ``(user_id, program)`` and return it row-locked.

        Must run inside an open transaction.
        """

        created = await insert_ignoring_conflict(
            self._db,
            UserBonusAccount,
            {"organization_id": program.organization_id, "user_id": user_id, "bonus_program_id": program.id},
            ["user_id", "bonus_program_id"],
        )
        if created is None:
            created = await self._insert_account_savepoint(user_id, program)

        account = await self.get_account(user_id, program.id, lock=True)
        if account is None:
            raise NotFoundError("Bonus account", f"{user_id}/{program.id}")
        if created:
            logger.info(
                "Created bonus account",
                user_id=user_id,
                program_id=str(program.id),
                account_id=str(account.id),
            )
        return account

    async def _insert_account_savepoint(self, user_id: str, program: BonusProgram) -> bool:
        if await self.get_account(user_id, program.id) is not None:
            return False
        try:
            async with self._db.begin_nested():
                self._db.add(
                    UserBonusAccount(
                        organization_id=program.organization_id,
                        user_id=user_id,
                        bonus_program_id=program.id,
                    )
                )
        except IntegrityError:
            logger.warning("Detected race when creating bonus account", user_id=user_id, program_id=str(program.id))
            return False
        return True


__all__ = ["BonusProgramService", "ProgramStats", "apply_changes", "insert_ignoring_conflict"]
