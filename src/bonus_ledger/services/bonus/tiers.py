"""Tier resolution and tier catalog management."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bonus_ledger.core.clock import utcnow
from bonus_ledger.db.session import transaction
from bonus_ledger.models.bonus import BonusTier
from bonus_ledger.schemas.bonus import BonusTierCreate, BonusTierUpdate

from .errors import BonusValidationError, NotFoundError
from .programs import BonusProgramService, apply_changes

_PROGRESS_QUANTUM = Decimal("0.01")


@dataclass
class TierStatus:
    """Resolved tier position of an account."""

    points: int
    current_tier: BonusTier | None
    next_tier: BonusTier | None
    progress: Decimal
    points_to_next_tier: int | None

    @property
    def multiplier(self) -> Decimal:
        if self.current_tier is None:
            return Decimal("1")
        return Decimal(self.current_tier.multiplier)


def resolve_tier(points: int, tiers: Sequence[BonusTier]) -> TierStatus:
    """Place ``points`` within tiers sorted by ``min_points`` ascending."""

    current: BonusTier | None = None
    upcoming: BonusTier | None = None
    for tier in tiers:
        if tier.min_points <= points:
            current = tier
        elif upcoming is None:
            upcoming = tier

    progress = Decimal("0")
    if current is not None and upcoming is not None:
        span = upcoming.min_points - current.min_points
        progress = (Decimal(points - current.min_points) * 100 / Decimal(span)).quantize(
            _PROGRESS_QUANTUM, rounding=ROUND_HALF_UP
        )

    return TierStatus(
        points=points,
        current_tier=current,
        next_tier=upcoming,
        progress=progress,
        points_to_next_tier=(upcoming.min_points - points) if upcoming is not None else None,
    )


class TierService:
    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._programs = BonusProgramService(db_session)

    async def calculate_user_tier(self, user_id: str, program_id: UUID) -> TierStatus | None:
        """Resolve the account's tier and refresh the cached tier when it moved."""

        async with transaction(self._db):
            account = await self._programs.get_account(user_id, program_id, lock=True)
            if account is None:
                return None
            status = resolve_tier(account.current_points, await self.list_tiers(program_id))
            resolved_id = status.current_tier.id if status.current_tier is not None else None
            if resolved_id != account.current_tier_id:
                previous = account.current_tier_id
                account.current_tier_id = resolved_id
                account.tier_progress = status.progress
                await self._db.flush()
                logger.info(
                    "Bonus account tier changed",
                    user_id=user_id,
                    program_id=str(program_id),
                    previous_tier_id=str(previous) if previous else None,
                    tier_id=str(resolved_id) if resolved_id else None,
                )
        return status

    async def create_tier(self, program_id: UUID, payload: BonusTierCreate) -> BonusTier:
        async with transaction(self._db):
            program = await self._programs.get_program(program_id)
            existing = await self._db.execute(
                select(BonusTier.id).where(
                    BonusTier.organization_id == program.organization_id,
                    BonusTier.slug == payload.slug,
                )
            )
            if existing.scalar_one_or_none() is not None:
                raise BonusValidationError(f"Tier slug '{payload.slug}' already exists")
            tier = BonusTier(
                organization_id=program.organization_id,
                bonus_program_id=program.id,
                **payload.model_dump(),
            )
            self._db.add(tier)
            await self._db.flush()
        logger.info("Created bonus tier", tier_id=str(tier.id), slug=tier.slug, min_points=tier.min_points)
        return tier

    async def get_tier(self, tier_id: UUID, *, organization_id: str | None = None) -> BonusTier:
        stmt = select(BonusTier).where(BonusTier.id == tier_id, BonusTier.deleted_at.is_(None))
        if organization_id is not None:
            stmt = stmt.where(BonusTier.organization_id == organization_id)
        tier = (await self._db.execute(stmt)).scalar_one_or_none()
        if tier is None:
            raise NotFoundError("Bonus tier", tier_id)
        return tier

    async def update_tier(
        self,
        tier_id: UUID,
        payload: BonusTierUpdate,
        *,
        organization_id: str | None = None,
    ) -> BonusTier:
        async with transaction(self._db):
            tier = await self.get_tier(tier_id, organization_id=organization_id)
            apply_changes(tier, payload.model_dump(exclude_unset=True))
            await self._db.flush()
        return tier

    async def delete_tier(self, tier_id: UUID, *, organization_id: str | None = None) -> BonusTier:
        async with transaction(self._db):
            tier = await self.get_tier(tier_id, organization_id=organization_id)
            tier.deleted_at = utcnow()
            tier.is_active = False
            await self._db.flush()
        logger.info("Deleted bonus tier", tier_id=str(tier_id))
        return tier

    async def list_tiers(self, program_id: UUID, *, include_inactive: bool = False) -> list[BonusTier]:
        stmt = select(BonusTier).where(
            BonusTier.bonus_program_id == program_id,
            BonusTier.deleted_at.is_(None),
        )
        if not include_inactive:
            stmt = stmt.where(BonusTier.is_active.is_(True))
        result = await self._db.execute(stmt.order_by(BonusTier.min_points.asc(), BonusTier.sort_order.asc()))
        return list(result.scalars().all())

    async def get_tier_benefits(self, tier_id: UUID) -> list[str]:
        tier = await self.get_tier(tier_id)
        return list(tier.benefits or [])


__all__ = ["TierService", "TierStatus", "resolve_tier"]
