"""Referral codes and dual-sided referral bonuses."""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from bonus_ledger.core.clock import utcnow
from bonus_ledger.core.settings import settings
from bonus_ledger.db.session import transaction
from bonus_ledger.models.bonus import (
    BonusTransaction,
    BonusTransactionStatus,
    BonusTransactionType,
    Referral,
)
from bonus_ledger.observability.bonus import get_bonus_store

from .errors import (
    CodeGenerationError,
    InvalidReferralCodeError,
    InvalidStateError,
    NotFoundError,
    ReferralAlreadyBoundError,
)
from .ledger import PointsLedgerService
from .programs import BonusProgramService


@dataclass
class ReferralStats:
    total_referrals: int
    successful_referrals: int
    pending_referrals: int
    bonuses_earned: int


class ReferralService:
    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._programs = BonusProgramService(db_session)
        self._ledger = PointsLedgerService(db_session)
        self._store = get_bonus_store()

    @staticmethod
    def generate_referral_code(user_id: str) -> str:
        """Derive a code from the referrer id, the clock and a random suffix."""

        seed = f"{user_id}:{utcnow().timestamp()}:{secrets.token_hex(8)}"
        return hashlib.sha256(seed.encode("utf-8")).hexdigest().upper()[: settings.referral_code_length]

    async def get_or_create_referral_code(self, user_id: str, program_id: UUID) -> Referral:
        """Return the referrer's open referral, issuing a fresh code once all are used."""

        async with transaction(self._db):
            program = await self._programs.get_program(program_id)
            stmt = (
                select(Referral)
                .where(
                    Referral.referrer_id == user_id,
                    Referral.bonus_program_id == program.id,
                    Referral.is_active.is_(True),
                    Referral.referred_user_id.is_(None),
                )
                .order_by(Referral.created_at.asc())
                .limit(1)
            )
            referral = (await self._db.execute(stmt)).scalar_one_or_none()
            if referral is not None:
                return referral

            referral = Referral(
                organization_id=program.organization_id,
                bonus_program_id=program.id,
                referrer_id=user_id,
                referral_code=await self._generate_unique_code(user_id),
            )
            self._db.add(referral)
            await self._db.flush()

        self._store.record_referral_event("issued")
        logger.info("Issued referral code", code=referral.referral_code, referrer_id=user_id)
        return referral

    async def validate_referral_code(self, code: str, organization_id: str) -> Referral | None:
        stmt = select(Referral).where(
            Referral.referral_code == code.strip().upper(),
            Referral.organization_id == organization_id,
            Referral.is_active.is_(True),
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def track_referral(
        self,
        code: str,
        referred_user_id: str,
        *,
        organization_id: str | None = None,
    ) -> Referral:
        """Bind a signed-up user to a referral code.

        Rebinding the same user is a no-op; a code already bound to someone
        else raises ``ReferralAlreadyBoundError``.
        """

        async with transaction(self._db):
            stmt = (
                select(Referral)
                .where(Referral.referral_code == code.strip().upper(), Referral.is_active.is_(True))
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            if organization_id is not None:
                stmt = stmt.where(Referral.organization_id == organization_id)
            referral = (await self._db.execute(stmt)).scalar_one_or_none()
            if referral is None:
                logger.warning("Referral code not found", code=code)
                self._store.record_referral_event("invalid_code")
                raise InvalidReferralCodeError("Invalid referral code")

            if referral.referred_user_id is not None:
                if referral.referred_user_id == referred_user_id:
                    logger.info("Referral already tracked", code=referral.referral_code)
                    return referral
                self._store.record_referral_event("rebind_rejected")
                raise ReferralAlreadyBoundError(f"Referral code {referral.referral_code} is already used")
            if referral.referrer_id == referred_user_id:
                raise InvalidReferralCodeError("Cannot use your own referral code")

            referral.referred_user_id = referred_user_id
            referral.signed_up_at = utcnow()
            await self._db.flush()

        self._store.record_referral_event("tracked")
        logger.info("Referral tracked", code=referral.referral_code, referred_user_id=referred_user_id)
        return referral

    async def award_referral_bonuses(self, referral_id: UUID) -> Referral:
        """Credit the referrer and referee once each; repeat calls award nothing."""

        async with transaction(self._db):
            stmt = (
                select(Referral)
                .where(Referral.id == referral_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            referral = (await self._db.execute(stmt)).scalar_one_or_none()
            if referral is None:
                raise NotFoundError("Referral", referral_id)
            if referral.referred_user_id is None:
                raise InvalidStateError(f"Referral {referral_id} has no referred user yet")
            program = await self._programs.get_program(referral.bonus_program_id)

            if not referral.referrer_bonus_given and program.referral_bonus_referrer > 0:
                entry = await self._ledger.award_points(
                    referral.referrer_id,
                    program.id,
                    program.referral_bonus_referrer,
                    BonusTransactionType.EARNED_REFERRAL,
                    status=BonusTransactionStatus.CONFIRMED,
                    description="Referral bonus",
                    metadata={"referral_id": str(referral.id), "referred_user_id": referral.referred_user_id},
                )
                referral.referrer_bonus_given = True
                referral.referrer_transaction_id = entry.id
                self._store.record_referral_event("referrer_bonus")

            if not referral.referee_bonus_given and program.referral_bonus_referee > 0:
                entry = await self._ledger.award_points(
                    referral.referred_user_id,
                    program.id,
                    program.referral_bonus_referee,
                    BonusTransactionType.EARNED_REFERRAL,
                    status=BonusTransactionStatus.CONFIRMED,
                    description="Welcome bonus for joining via referral",
                    metadata={"referral_id": str(referral.id), "referrer_id": referral.referrer_id},
                )
                referral.referee_bonus_given = True
                referral.referee_transaction_id = entry.id
                self._store.record_referral_event("referee_bonus")

            await self._db.flush()
        return referral

    async def get_referral_stats(self, user_id: str, program_id: UUID) -> ReferralStats:
        base = (Referral.referrer_id == user_id, Referral.bonus_program_id == program_id)
        total = (await self._db.execute(select(func.count(Referral.id)).where(*base))).scalar_one()
        successful = (
            await self._db.execute(
                select(func.count(Referral.id)).where(*base, Referral.referred_user_id.is_not(None))
            )
        ).scalar_one()
        earned = (
            await self._db.execute(
                select(func.coalesce(func.sum(BonusTransaction.points), 0))
                .join(Referral, Referral.referrer_transaction_id == BonusTransaction.id)
                .where(*base)
            )
        ).scalar_one()
        return ReferralStats(
            total_referrals=int(total),
            successful_referrals=int(successful),
            pending_referrals=int(total) - int(successful),
            bonuses_earned=int(earned),
        )

    async def list_program_referrals(self, program_id: UUID, *, limit: int = 50, offset: int = 0) -> list[Referral]:
        stmt = (
            select(Referral)
            .where(Referral.bonus_program_id == program_id)
            .order_by(Referral.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list((await self._db.execute(stmt)).scalars().all())

    async def _generate_unique_code(self, user_id: str) -> str:
        for _ in range(settings.code_generation_max_attempts):
            code = self.generate_referral_code(user_id)
            exists = await self._db.execute(select(Referral.id).where(Referral.referral_code == code))
            if exists.scalar_one_or_none() is None:
                return code
            logger.warning("Referral code collision, retrying", code=code)
        raise CodeGenerationError("Unable to generate a unique referral code")


__all__ = ["ReferralService", "ReferralStats"]
