"""Cash-back payout approval workflow."""

from __future__ import annotations

from typing import Dict, FrozenSet
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bonus_ledger.core.clock import utcnow
from bonus_ledger.db.session import transaction
from bonus_ledger.models.bonus import (
    BonusTransaction,
    BonusTransactionStatus,
    BonusTransactionType,
    PayoutRequest,
    PayoutStatus,
    Reward,
    UserBonusAccount,
)
from bonus_ledger.schemas.bonus import PayoutDetails

from .errors import InvalidPayoutTransitionError, NotFoundError
from .ledger import PointsLedgerService

PAYOUT_TRANSITIONS: Dict[PayoutStatus, FrozenSet[PayoutStatus]] = {
    PayoutStatus.PENDING: frozenset({PayoutStatus.APPROVED, PayoutStatus.REJECTED}),
    PayoutStatus.APPROVED: frozenset({PayoutStatus.PAID}),
    PayoutStatus.REJECTED: frozenset(),
    PayoutStatus.PAID: frozenset(),
}


class PayoutService:
    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._ledger = PointsLedgerService(db_session)

    async def create_payout_request(
        self,
        user_id: str,
        reward: Reward,
        entry: BonusTransaction,
        payout_details: PayoutDetails,
    ) -> PayoutRequest:
        """Record a pending payout for a cash-back redemption. Must run inside its transaction."""

        request = PayoutRequest(
            organization_id=reward.organization_id,
            user_id=user_id,
            reward_id=reward.id,
            bonus_transaction_id=entry.id,
            points_deducted=-entry.points,
            cash_amount=reward.cash_amount,
            status=PayoutStatus.PENDING,
            payout_method=payout_details.model_dump(),
        )
        self._db.add(request)
        await self._db.flush()
        logger.info(
            "Created payout request",
            payout_id=str(request.id),
            user_id=user_id,
            cash_amount=str(request.cash_amount),
        )
        return request

    async def approve_payout(
        self,
        payout_id: UUID,
        processed_by: str,
        *,
        organization_id: str | None = None,
    ) -> PayoutRequest:
        async with transaction(self._db):
            request = await self._transition(payout_id, PayoutStatus.APPROVED, processed_by, organization_id)
        return request

    async def reject_payout(
        self,
        payout_id: UUID,
        processed_by: str,
        reason: str,
        *,
        organization_id: str | None = None,
    ) -> PayoutRequest:
        """Reject a pending payout and refund its points in the same unit of work."""

        async with transaction(self._db):
            request = await self._transition(payout_id, PayoutStatus.REJECTED, processed_by, organization_id)
            request.rejection_reason = reason
            program_id = (
                await self._db.execute(
                    select(UserBonusAccount.bonus_program_id)
                    .join(BonusTransaction, BonusTransaction.user_bonus_account_id == UserBonusAccount.id)
                    .where(BonusTransaction.id == request.bonus_transaction_id)
                )
            ).scalar_one()
            await self._ledger.award_points(
                request.user_id,
                program_id,
                request.points_deducted,
                BonusTransactionType.EARNED_MANUAL,
                status=BonusTransactionStatus.CONFIRMED,
                description="Refund for rejected payout request",
                metadata={"payout_request_id": str(request.id), "reason": reason},
            )
            await self._db.flush()
        return request

    async def mark_payout_paid(
        self,
        payout_id: UUID,
        processed_by: str,
        *,
        organization_id: str | None = None,
    ) -> PayoutRequest:
        async with transaction(self._db):
            request = await self._transition(payout_id, PayoutStatus.PAID, processed_by, organization_id)
        return request

    async def get_payout_request(self, payout_id: UUID, *, organization_id: str | None = None) -> PayoutRequest:
        return await self._load(payout_id, organization_id, lock=False)

    async def list_payout_requests(
        self,
        organization_id: str,
        *,
        status: PayoutStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[PayoutRequest]:
        stmt = select(PayoutRequest).where(PayoutRequest.organization_id == organization_id)
        if status is not None:
            stmt = stmt.where(PayoutRequest.status == PayoutStatus(status))
        stmt = stmt.order_by(PayoutRequest.created_at.desc()).limit(limit).offset(offset)
        return list((await self._db.execute(stmt)).scalars().all())

    async def _transition(
        self,
        payout_id: UUID,
        target: PayoutStatus,
        processed_by: str,
        organization_id: str | None,
    ) -> PayoutRequest:
        request = await self._load(payout_id, organization_id, lock=True)
        current = PayoutStatus(request.status)
        if target not in PAYOUT_TRANSITIONS[current]:
            raise InvalidPayoutTransitionError(current.value, target.value)
        request.status = target
        request.processed_at = utcnow()
        request.processed_by = processed_by
        await self._db.flush()
        logger.info(
            "Payout request transitioned",
            payout_id=str(payout_id),
            from_status=current.value,
            to_status=target.value,
            processed_by=processed_by,
        )
        return request

    async def _load(self, payout_id: UUID, organization_id: str | None, *, lock: bool) -> PayoutRequest:
        stmt = select(PayoutRequest).where(PayoutRequest.id == payout_id)
        if organization_id is not None:
            stmt = stmt.where(PayoutRequest.organization_id == organization_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        request = (await self._db.execute(stmt)).scalar_one_or_none()
        if request is None:
            raise NotFoundError("Payout request", payout_id)
        return request


__all__ = ["PAYOUT_TRANSITIONS", "PayoutService"]
