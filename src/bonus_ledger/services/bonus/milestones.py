"""Milestone progress tracking and completion awards."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bonus_ledger.core.clock import ensure_utc, utcnow
from bonus_ledger.db.session import transaction
from bonus_ledger.models.bonus import (
    BonusMilestone,
    BonusTransaction,
    BonusTransactionStatus,
    BonusTransactionType,
    MilestoneType,
    UserMilestoneProgress,
)
from bonus_ledger.schemas.bonus import BonusMilestoneCreate, BonusMilestoneUpdate

from .errors import BonusValidationError, NotFoundError
from .ledger import PointsLedgerService
from .programs import BonusProgramService, apply_changes, insert_ignoring_conflict


@dataclass
class MilestoneCompletion:
    """Award produced by reaching a milestone target."""

    milestone_id: UUID
    user_id: str
    reward_points: int
    completion_count: int
    transaction: BonusTransaction


@dataclass
class MilestoneProgressView:
    milestone: BonusMilestone
    current_value: Decimal
    percentage: Decimal
    is_completed: bool
    completion_count: int
    completed_at: datetime | None


def _to_decimal(value: Decimal | int | float | str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise BonusValidationError(f"Invalid milestone value: {value!r}") from exc


class MilestoneService:
    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._programs = BonusProgramService(db_session)
        self._ledger = PointsLedgerService(db_session)

    async def track_milestone_progress(
        self,
        user_id: str,
        milestone_id: UUID,
        increment_value: Decimal | int | str,
    ) -> UserMilestoneProgress:
        increment = _to_decimal(increment_value)
        if not increment.is_finite() or increment <= 0:
            raise BonusValidationError("Milestone progress increment must be positive")
        async with transaction(self._db):
            milestone = await self.get_milestone(milestone_id)
            progress = await self._lock_progress(user_id, milestone_id)
            if progress is None:
                progress = await self._create_progress(user_id, milestone, increment)
            else:
                progress.current_value = Decimal(progress.current_value) + increment
                await self._db.flush()
        return progress

    async def check_milestone_completion(self, user_id: str, milestone_id: UUID) -> MilestoneCompletion | None:
        """Award the milestone when its target is met.

        Returns ``None`` when there is nothing to do: no progress yet, target
        not reached, or a non-repeatable milestone already completed.
        """

        async with transaction(self._db):
            milestone = await self.get_milestone(milestone_id)
            progress = await self._lock_progress(user_id, milestone_id)
            if progress is None:
                return None
            if Decimal(progress.current_value) < Decimal(milestone.target_value):
                return None
            if progress.is_completed and not milestone.is_repeatable:
                return None

            entry = await self._ledger.award_points(
                user_id,
                milestone.bonus_program_id,
                milestone.reward_points,
                BonusTransactionType.EARNED_MANUAL,
                status=BonusTransactionStatus.CONFIRMED,
                description=f"Milestone achieved: {milestone.name}",
                metadata={"milestone_id": str(milestone.id), "milestone_name": milestone.name},
            )
            progress.is_completed = True
            progress.completed_at = utcnow()
            progress.completion_count += 1
            progress.bonus_transaction_id = entry.id
            if milestone.is_repeatable:
                progress.current_value = Decimal("0")
            await self._db.flush()

        logger.info(
            "Milestone completed",
            user_id=user_id,
            milestone_id=str(milestone_id),
            completion_count=progress.completion_count,
            reward_points=milestone.reward_points,
        )
        return MilestoneCompletion(
            milestone_id=milestone.id,
            user_id=user_id,
            reward_points=milestone.reward_points,
            completion_count=progress.completion_count,
            transaction=entry,
        )

    async def check_milestones_for_event(
        self,
        user_id: str,
        program_id: UUID,
        milestone_type: MilestoneType | str,
        event_value: Decimal | int | str,
    ) -> list[MilestoneCompletion]:
        """Feed one external event into every active milestone of its type."""

        milestone_type = MilestoneType(milestone_type)
        completions: list[MilestoneCompletion] = []
        async with transaction(self._db):
            milestones = await self.list_milestones(program_id, milestone_type=milestone_type)
            for milestone in milestones:
                await self.track_milestone_progress(user_id, milestone.id, event_value)
                completion = await self.check_milestone_completion(user_id, milestone.id)
                if completion is not None:
                    completions.append(completion)
        return completions

    async def get_user_milestones(self, user_id: str, program_id: UUID) -> list[MilestoneProgressView]:
        milestones = await self.list_milestones(program_id)
        if not milestones:
            return []
        result = await self._db.execute(
            select(UserMilestoneProgress).where(
                UserMilestoneProgress.user_id == user_id,
                UserMilestoneProgress.milestone_id.in_([milestone.id for milestone in milestones]),
            )
        )
        progress_by_milestone = {row.milestone_id: row for row in result.scalars().all()}

        views: list[MilestoneProgressView] = []
        for milestone in milestones:
            progress = progress_by_milestone.get(milestone.id)
            current = Decimal(progress.current_value) if progress else Decimal("0")
            target = Decimal(milestone.target_value)
            percentage = min(current / target * 100, Decimal("100")) if target > 0 else Decimal("0")
            views.append(
                MilestoneProgressView(
                    milestone=milestone,
                    current_value=current,
                    percentage=percentage.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
                    is_completed=bool(progress and progress.is_completed),
                    completion_count=progress.completion_count if progress else 0,
                    completed_at=ensure_utc(progress.completed_at) if progress else None,
                )
            )
        return views

    async def create_milestone(self, program_id: UUID, payload: BonusMilestoneCreate) -> BonusMilestone:
        data = payload.model_dump()
        metadata = data.pop("metadata", None)
        async with transaction(self._db):
            program = await self._programs.get_program(program_id)
            milestone = BonusMilestone(
                organization_id=program.organization_id,
                bonus_program_id=program.id,
                metadata_json=metadata,
                **data,
            )
            self._db.add(milestone)
            await self._db.flush()
        logger.info("Created bonus milestone", milestone_id=str(milestone.id), type=milestone.type.value)
        return milestone

    async def get_milestone(self, milestone_id: UUID, *, organization_id: str | None = None) -> BonusMilestone:
        stmt = select(BonusMilestone).where(BonusMilestone.id == milestone_id, BonusMilestone.deleted_at.is_(None))
        if organization_id is not None:
            stmt = stmt.where(BonusMilestone.organization_id == organization_id)
        milestone = (await self._db.execute(stmt)).scalar_one_or_none()
        if milestone is None:
            raise NotFoundError("Bonus milestone", milestone_id)
        return milestone

    async def update_milestone(
        self,
        milestone_id: UUID,
        payload: BonusMilestoneUpdate,
        *,
        organization_id: str | None = None,
    ) -> BonusMilestone:
        async with transaction(self._db):
            milestone = await self.get_milestone(milestone_id, organization_id=organization_id)
            apply_changes(milestone, payload.model_dump(exclude_unset=True))
            await self._db.flush()
        return milestone

    async def delete_milestone(self, milestone_id: UUID, *, organization_id: str | None = None) -> BonusMilestone:
        async with transaction(self._db):
            milestone = await self.get_milestone(milestone_id, organization_id=organization_id)
            milestone.deleted_at = utcnow()
            milestone.is_active = False
            await self._db.flush()
        logger.info("Deleted bonus milestone", milestone_id=str(milestone_id))
        return milestone

    async def list_milestones(
        self,
        program_id: UUID,
        *,
        milestone_type: MilestoneType | None = None,
        include_inactive: bool = False,
    ) -> list[BonusMilestone]:
        stmt = select(BonusMilestone).where(
            BonusMilestone.bonus_program_id == program_id,
            BonusMilestone.deleted_at.is_(None),
        )
        if milestone_type is not None:
            stmt = stmt.where(BonusMilestone.type == milestone_type)
        if not include_inactive:
            stmt = stmt.where(BonusMilestone.is_active.is_(True))
        result = await self._db.execute(stmt.order_by(BonusMilestone.sort_order.asc(), BonusMilestone.created_at.asc()))
        return list(result.scalars().all())

    async def _lock_progress(self, user_id: str, milestone_id: UUID) -> UserMilestoneProgress | None:
        stmt = (
            select(UserMilestoneProgress)
            .where(
                UserMilestoneProgress.user_id == user_id,
                UserMilestoneProgress.milestone_id == milestone_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def _create_progress(
        self,
        user_id: str,
        milestone: BonusMilestone,
        increment: Decimal,
    ) -> UserMilestoneProgress:
        values = {
            "organization_id": milestone.organization_id,
            "user_id": user_id,
            "milestone_id": milestone.id,
            "current_value": increment,
        }
        created = await insert_ignoring_conflict(self._db, UserMilestoneProgress, values, ["user_id", "milestone_id"])
        if created is None:
            progress = UserMilestoneProgress(**values)
            self._db.add(progress)
            await self._db.flush()
            return progress

        progress = await self._lock_progress(user_id, milestone.id)
        if progress is None:
            raise NotFoundError("Milestone progress", f"{user_id}/{milestone.id}")
        if not created:
            # Another writer inserted the row first; apply our increment on top.
            logger.warning("Detected race when creating milestone progress", user_id=user_id, milestone_id=str(milestone.id))
            progress.current_value = Decimal(progress.current_value) + increment
            await self._db.flush()
        return progress


__all__ = ["MilestoneCompletion", "MilestoneProgressView", "MilestoneService"]
