"""Purchase cashback and signup bonus issuance."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from bonus_ledger.core.clock import utcnow
from bonus_ledger.db.session import transaction
from bonus_ledger.models.bonus import BonusProgram, BonusTransaction, BonusTransactionStatus, BonusTransactionType

from .errors import BonusValidationError
from .ledger import PointsLedgerService
from .programs import BonusProgramService
from .tiers import TierService


@dataclass
class CashbackQuote:
    order_total: Decimal
    base_points: int
    multiplier: Decimal
    points: int
    tier_id: UUID | None = None
    tier_name: str | None = None


def to_amount(value: Decimal | str | int) -> Decimal:
    """Parse a fixed-point currency amount."""

    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise BonusValidationError(f"Invalid amount: {value!r}") from exc
    if not amount.is_finite() or amount < 0:
        raise BonusValidationError(f"Invalid amount: {value!r}")
    return amount


def _floor(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


class CashbackService:
    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._programs = BonusProgramService(db_session)
        self._ledger = PointsLedgerService(db_session)
        self._tiers = TierService(db_session)

    def calculate_cashback(self, program: BonusProgram, order_total: Decimal | str) -> int:
        """Base points for an order before any tier multiplier."""

        total = to_amount(order_total)
        if total < Decimal(program.min_order_amount or 0):
            return 0
        points = _floor(total * Decimal(program.points_per_currency))
        if program.max_points_per_order is not None:
            points = min(points, program.max_points_per_order)
        return max(points, 0)

    async def calculate_cashback_with_tier(
        self,
        user_id: str,
        program: BonusProgram,
        order_total: Decimal | str,
    ) -> CashbackQuote:
        total = to_amount(order_total)
        base_points = self.calculate_cashback(program, total)
        quote = CashbackQuote(order_total=total, base_points=base_points, multiplier=Decimal("1"), points=base_points)
        if base_points == 0:
            return quote

        status = await self._tiers.calculate_user_tier(user_id, program.id)
        if status is not None and status.current_tier is not None:
            quote.multiplier = status.multiplier
            quote.tier_id = status.current_tier.id
            quote.tier_name = status.current_tier.name
            quote.points = _floor(Decimal(base_points) * quote.multiplier)
        return quote

    async def award_cashback(
        self,
        user_id: str,
        organization_id: str,
        order_id: str,
        order_total: Decimal | str,
        *,
        status: BonusTransactionStatus = BonusTransactionStatus.PENDING,
    ) -> BonusTransaction | None:
        """Award purchase points through the organization's active program.

        Returns ``None`` when the organization has no active program or the
        order earns nothing.
        """

        async with transaction(self._db):
            program = await self._programs.get_active_program(organization_id)
            if program is None:
                logger.debug("No active bonus program for cashback", organization_id=organization_id)
                return None
            quote = await self.calculate_cashback_with_tier(user_id, program, order_total)
            if quote.points <= 0:
                return None

            expires_at = None
            if program.points_expire_days:
                expires_at = utcnow() + timedelta(days=program.points_expire_days)
            return await self._ledger.award_points(
                user_id,
                program.id,
                quote.points,
                BonusTransactionType.EARNED_PURCHASE,
                status=status,
                expires_at=expires_at,
                order_id=order_id,
                description=f"Cashback for order {order_id}",
                metadata={
                    "order_total": str(quote.order_total),
                    "base_points": quote.base_points,
                    "multiplier": str(quote.multiplier),
                    "tier_id": str(quote.tier_id) if quote.tier_id else None,
                    "tier_name": quote.tier_name,
                },
            )

    async def award_signup_bonus(self, user_id: str, program_id: UUID) -> BonusTransaction | None:
        async with transaction(self._db):
            program = await self._programs.get_program(program_id)
            if not program.signup_bonus:
                return None
            expires_at = None
            if program.points_expire_days:
                expires_at = utcnow() + timedelta(days=program.points_expire_days)
            return await self._ledger.award_points(
                user_id,
                program.id,
                program.signup_bonus,
                BonusTransactionType.EARNED_SIGNUP,
                status=BonusTransactionStatus.CONFIRMED,
                expires_at=expires_at,
                description="Signup bonus",
            )


__all__ = ["CashbackQuote", "CashbackService", "to_amount"]
