"""Reward catalog and atomic redemption."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping
from uuid import UUID

from loguru import logger
from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from bonus_ledger.core.clock import ensure_utc, utcnow
from bonus_ledger.db.session import transaction
from bonus_ledger.models.bonus import (
    BonusCoupon,
    BonusTransaction,
    BonusTransactionType,
    PayoutRequest,
    Reward,
    RewardType,
)
from bonus_ledger.observability.bonus import get_bonus_store
from bonus_ledger.schemas.bonus import PayoutDetails, RewardCreate, RewardUpdate

from .coupons import CouponService
from .errors import (
    BonusError,
    BonusValidationError,
    NotFoundError,
    PayoutDetailsRequiredError,
    RedemptionLimitReachedError,
    RewardExpiredError,
    RewardInactiveError,
    RewardNotYetAvailableError,
    UserRedemptionLimitReachedError,
)
from .ledger import PointsLedgerService
from .payouts import PayoutService
from .programs import BonusProgramService, apply_changes


@dataclass
class RedemptionResult:
    """What a successful redemption produced."""

    reward: Reward
    transaction: BonusTransaction
    points_spent: int
    remaining_points: int
    coupon: BonusCoupon | None = None
    payout_request: PayoutRequest | None = None


@dataclass
class AvailableReward:
    reward: Reward
    can_afford: bool
    user_redemptions: int
    remaining_redemptions: int | None


def _parse_payout_details(payout_details: PayoutDetails | Mapping[str, Any] | None) -> PayoutDetails | None:
    if payout_details is None or isinstance(payout_details, PayoutDetails):
        return payout_details
    try:
        return PayoutDetails.model_validate(payout_details)
    except ValidationError as exc:
        raise BonusValidationError(f"Invalid payout details: {exc}") from exc


class RewardService:
    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._programs = BonusProgramService(db_session)
        self._ledger = PointsLedgerService(db_session)
        self._coupons = CouponService(db_session)
        self._payouts = PayoutService(db_session)
        self._store = get_bonus_store()

    async def redeem_reward(
        self,
        user_id: str,
        program_id: UUID,
        reward_id: UUID,
        payout_details: PayoutDetails | Mapping[str, Any] | None = None,
    ) -> RedemptionResult:
        """Spend points on a reward, producing a coupon or a pending payout.

        Eligibility checks, the deduction, the coupon or payout row and the
        redemption counter commit together or not at all.
        """

        try:
            details = _parse_payout_details(payout_details)
            async with transaction(self._db):
                reward = await self._lock_reward(reward_id, program_id)
                await self._check_eligibility(user_id, reward)

                coupon: BonusCoupon | None = None
                payout_request: PayoutRequest | None = None
                if reward.type == RewardType.CASH_BACK:
                    if details is None:
                        raise PayoutDetailsRequiredError("Payout details are required for cash back rewards")
                    if reward.cash_amount is None:
                        raise BonusValidationError(f"Reward {reward.id} has no cash amount configured")
                    entry = await self._ledger.deduct_points(
                        user_id,
                        program_id,
                        reward.points_cost,
                        BonusTransactionType.REDEEMED_CASH,
                        description=f"Redeemed: {reward.name}",
                        metadata={"reward_id": str(reward.id), "cash_amount": str(reward.cash_amount)},
                    )
                    payout_request = await self._payouts.create_payout_request(user_id, reward, entry, details)
                else:
                    entry = await self._ledger.deduct_points(
                        user_id,
                        program_id,
                        reward.points_cost,
                        BonusTransactionType.REDEEMED_DISCOUNT,
                        description=f"Redeemed: {reward.name}",
                        metadata={"reward_id": str(reward.id), "reward_type": reward.type.value},
                    )
                    coupon = await self._coupons.issue_coupon(user_id, reward, entry)

                reward.current_redemptions += 1
                await self._db.flush()
        except BonusError as exc:
            self._store.record_redemption_failure(type(exc).__name__)
            raise

        self._store.record_redemption(reward.type.value)
        logger.info(
            "Redeemed bonus reward",
            user_id=user_id,
            reward_id=str(reward_id),
            reward_type=reward.type.value,
            points=reward.points_cost,
        )
        return RedemptionResult(
            reward=reward,
            transaction=entry,
            points_spent=reward.points_cost,
            remaining_points=entry.balance_after,
            coupon=coupon,
            payout_request=payout_request,
        )

    async def get_available_rewards(self, user_id: str, program_id: UUID) -> list[AvailableReward]:
        """Rewards the user could redeem now, annotated with affordability."""

        now = utcnow()
        account = await self._programs.get_account(user_id, program_id)
        balance = account.current_points if account is not None else 0

        available: list[AvailableReward] = []
        for reward in await self.list_rewards(program_id):
            if reward.valid_from is not None and ensure_utc(reward.valid_from) > now:
                continue
            if reward.valid_until is not None and ensure_utc(reward.valid_until) < now:
                continue
            if reward.total_redemptions_limit is not None and reward.current_redemptions >= reward.total_redemptions_limit:
                continue

            used = await self._count_user_redemptions(user_id, reward.id)
            remaining = None
            if reward.max_redemptions_per_user is not None:
                remaining = max(reward.max_redemptions_per_user - used, 0)
                if remaining == 0:
                    continue
            available.append(
                AvailableReward(
                    reward=reward,
                    can_afford=balance >= reward.points_cost,
                    user_redemptions=used,
                    remaining_redemptions=remaining,
                )
            )
        return available

    async def create_reward(self, program_id: UUID, payload: RewardCreate) -> Reward:
        data = payload.model_dump()
        metadata = data.pop("metadata", None)
        for key in ("valid_from", "valid_until"):
            data[key] = ensure_utc(data[key])
        async with transaction(self._db):
            program = await self._programs.get_program(program_id)
            reward = Reward(
                organization_id=program.organization_id,
                bonus_program_id=program.id,
                metadata_json=metadata,
                **data,
            )
            self._db.add(reward)
            await self._db.flush()
        logger.info("Created bonus reward", reward_id=str(reward.id), type=reward.type.value, points_cost=reward.points_cost)
        return reward

    async def get_reward(self, reward_id: UUID, *, organization_id: str | None = None) -> Reward:
        stmt = select(Reward).where(Reward.id == reward_id, Reward.deleted_at.is_(None))
        if organization_id is not None:
            stmt = stmt.where(Reward.organization_id == organization_id)
        reward = (await self._db.execute(stmt)).scalar_one_or_none()
        if reward is None:
            raise NotFoundError("Reward", reward_id)
        return reward

    async def update_reward(
        self,
        reward_id: UUID,
        payload: RewardUpdate,
        *,
        organization_id: str | None = None,
    ) -> Reward:
        changes = payload.model_dump(exclude_unset=True)
        for key in ("valid_from", "valid_until"):
            if key in changes:
                changes[key] = ensure_utc(changes[key])
        async with transaction(self._db):
            reward = await self.get_reward(reward_id, organization_id=organization_id)
            apply_changes(reward, changes)
            if reward.type == RewardType.CASH_BACK and reward.cash_amount is None:
                raise BonusValidationError("cash_back rewards require a cash amount")
            await self._db.flush()
        return reward

    async def delete_reward(self, reward_id: UUID, *, organization_id: str | None = None) -> Reward:
        async with transaction(self._db):
            reward = await self.get_reward(reward_id, organization_id=organization_id)
            reward.deleted_at = utcnow()
            reward.is_active = False
            await self._db.flush()
        logger.info("Deleted bonus reward", reward_id=str(reward_id))
        return reward

    async def list_rewards(self, program_id: UUID, *, include_inactive: bool = False) -> list[Reward]:
        stmt = select(Reward).where(Reward.bonus_program_id == program_id, Reward.deleted_at.is_(None))
        if not include_inactive:
            stmt = stmt.where(Reward.is_active.is_(True))
        result = await self._db.execute(stmt.order_by(Reward.sort_order.asc(), Reward.points_cost.asc()))
        return list(result.scalars().all())

    async def _check_eligibility(self, user_id: str, reward: Reward) -> None:
        now = utcnow()
        if not reward.is_active:
            raise RewardInactiveError(f"Reward {reward.id} is not active")
        if reward.valid_from is not None and ensure_utc(reward.valid_from) > now:
            raise RewardNotYetAvailableError(f"Reward {reward.id} is not yet available")
        if reward.valid_until is not None and ensure_utc(reward.valid_until) < now:
            raise RewardExpiredError(f"Reward {reward.id} has expired")
        if reward.total_redemptions_limit is not None and reward.current_redemptions >= reward.total_redemptions_limit:
            raise RedemptionLimitReachedError(f"Reward {reward.id} redemption limit reached")
        if reward.max_redemptions_per_user is not None:
            used = await self._count_user_redemptions(user_id, reward.id)
            if used >= reward.max_redemptions_per_user:
                raise UserRedemptionLimitReachedError(
                    f"User {user_id} already redeemed reward {reward.id} {used} time(s)"
                )

    async def _count_user_redemptions(self, user_id: str, reward_id: UUID) -> int:
        coupons = (
            await self._db.execute(
                select(func.count(BonusCoupon.id)).where(BonusCoupon.user_id == user_id, BonusCoupon.reward_id == reward_id)
            )
        ).scalar_one()
        payouts = (
            await self._db.execute(
                select(func.count(PayoutRequest.id)).where(
                    PayoutRequest.user_id == user_id, PayoutRequest.reward_id == reward_id
                )
            )
        ).scalar_one()
        return int(coupons) + int(payouts)

    async def _lock_reward(self, reward_id: UUID, program_id: UUID) -> Reward:
        stmt = (
            select(Reward)
            .where(
                Reward.id == reward_id,
                Reward.bonus_program_id == program_id,
                Reward.deleted_at.is_(None),
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        reward = (await self._db.execute(stmt)).scalar_one_or_none()
        if reward is None:
            raise NotFoundError("Reward", reward_id)
        return reward


__all__ = ["AvailableReward", "RedemptionResult", "RewardService"]
