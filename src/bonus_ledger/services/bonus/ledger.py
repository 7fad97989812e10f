"""Points ledger: awards, deductions, pending confirmation and FIFO expiration."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bonus_ledger.core.clock import ensure_utc, utcnow
from bonus_ledger.db.session import transaction
from bonus_ledger.models.bonus import (
    BonusTransaction,
    BonusTransactionStatus,
    BonusTransactionType,
    PointsExpiration,
    UserBonusAccount,
)
from bonus_ledger.observability.bonus import get_bonus_store

from .errors import BonusValidationError, InsufficientPointsError, NotFoundError, NotPendingError
from .programs import BonusProgramService


@dataclass
class PointsBalance:
    """Read-only snapshot of an account's counters."""

    user_id: str
    program_id: UUID
    current_points: int = 0
    pending_points: int = 0
    total_earned_points: int = 0
    total_redeemed_points: int = 0
    total_expired_points: int = 0
    current_tier_id: UUID | None = None
    tier_progress: Decimal = Decimal("0")
    last_earned_at: datetime | None = None
    last_redeemed_at: datetime | None = None


@dataclass
class TransactionPage:
    items: List[BonusTransaction]
    total: int
    limit: int
    offset: int


@dataclass
class ExpirationSweepSummary:
    """Outcome of one expiration sweep."""

    reference_time: datetime
    rows_expired: int = 0
    accounts_touched: int = 0
    points_expired: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "reference_time": self.reference_time.isoformat(),
            "rows_expired": self.rows_expired,
            "accounts_touched": self.accounts_touched,
            "points_expired": self.points_expired,
        }


def _coerce_type(value: BonusTransactionType | str) -> BonusTransactionType:
    try:
        return BonusTransactionType(value)
    except ValueError as exc:
        raise BonusValidationError(f"Unknown transaction type: {value}") from exc


class PointsLedgerService:
    """Append-only ledger over per-user bonus accounts."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._programs = BonusProgramService(db_session)
        self._store = get_bonus_store()

    async def award_points(
        self,
        user_id: str,
        program_id: UUID,
        points: int,
        transaction_type: BonusTransactionType | str,
        *,
        status: BonusTransactionStatus = BonusTransactionStatus.PENDING,
        expires_at: datetime | None = None,
        description: str | None = None,
        order_id: str | None = None,
        metadata: Dict[str, Any] | None = None,
    ) -> BonusTransaction:
        """Credit points to a user's account, creating the account on first use.

        Confirmed awards move the redeemable balance immediately and register an
        expiration window when ``expires_at`` is given. Pending awards only grow
        ``pending_points`` until confirmed or cancelled. Callers dedupe; the same
        order awarded twice is credited twice.
        """

        if points <= 0:
            raise BonusValidationError("Awarded points must be positive")
        status = BonusTransactionStatus(status)
        if status == BonusTransactionStatus.CANCELED:
            raise BonusValidationError("Cannot award points in canceled status")
        transaction_type = _coerce_type(transaction_type)
        expires_at = ensure_utc(expires_at)

        async with transaction(self._db):
            program = await self._programs.get_program(program_id)
            account = await self._programs.ensure_account(user_id, program)

            balance_before = account.current_points
            if status == BonusTransactionStatus.CONFIRMED:
                account.current_points += points
                account.total_earned_points += points
                account.last_earned_at = utcnow()
            else:
                account.pending_points += points

            entry = BonusTransaction(
                organization_id=account.organization_id,
                user_bonus_account_id=account.id,
                type=transaction_type,
                points=points,
                balance_before=balance_before,
                balance_after=account.current_points,
                order_id=order_id,
                description=description,
                status=status,
                expires_at=expires_at,
                metadata_json=metadata,
            )
            self._db.add(entry)
            await self._db.flush()

            if status == BonusTransactionStatus.CONFIRMED and expires_at is not None:
                await self._track_expiration(account, entry, points, expires_at)

        self._store.record_ledger_event(transaction_type.value, status.value, points)
        logger.info(
            "Awarded bonus points",
            user_id=user_id,
            program_id=str(program_id),
            transaction_id=str(entry.id),
            points=points,
            type=transaction_type.value,
            status=status.value,
        )
        return entry

    async def deduct_points(
        self,
        user_id: str,
        program_id: UUID,
        points: int,
        transaction_type: BonusTransactionType | str,
        *,
        description: str | None = None,
        metadata: Dict[str, Any] | None = None,
    ) -> BonusTransaction:
        """Debit confirmed points; never clamps an overdraft."""

        if points <= 0:
            raise BonusValidationError("Deducted points must be positive")
        transaction_type = _coerce_type(transaction_type)

        async with transaction(self._db):
            account = await self._programs.get_account(user_id, program_id, lock=True)
            if account is None:
                raise NotFoundError("Bonus account", f"{user_id}/{program_id}")
            if account.current_points < points:
                logger.warning(
                    "Rejected deduction exceeding balance",
                    user_id=user_id,
                    program_id=str(program_id),
                    available=account.current_points,
                    requested=points,
                )
                raise InsufficientPointsError(account.current_points, points)

            balance_before = account.current_points
            account.current_points -= points
            account.total_redeemed_points += points
            account.last_redeemed_at = utcnow()
            await self._consume_expiring_points(account, points)

            entry = BonusTransaction(
                organization_id=account.organization_id,
                user_bonus_account_id=account.id,
                type=transaction_type,
                points=-points,
                balance_before=balance_before,
                balance_after=account.current_points,
                description=description,
                status=BonusTransactionStatus.CONFIRMED,
                metadata_json=metadata,
            )
            self._db.add(entry)
            await self._db.flush()

        self._store.record_ledger_event(transaction_type.value, BonusTransactionStatus.CONFIRMED.value, -points)
        logger.info(
            "Deducted bonus points",
            user_id=user_id,
            program_id=str(program_id),
            transaction_id=str(entry.id),
            points=points,
            type=transaction_type.value,
        )
        return entry

    async def confirm_pending_points(
        self,
        transaction_id: UUID,
        *,
        organization_id: str | None = None,
        expires_at: datetime | None = None,
    ) -> BonusTransaction:
        """Promote a pending award into the redeemable balance.

        The expiry requested on the pending award is not carried over; pass
        ``expires_at`` to register an expiration window for the confirmed points.
        """

        expires_at = ensure_utc(expires_at)
        async with transaction(self._db):
            entry = await self._get_pending_transaction(transaction_id, organization_id)
            account = await self._lock_account(entry.user_bonus_account_id)

            account.pending_points = max(0, account.pending_points - entry.points)
            account.current_points += entry.points
            account.total_earned_points += entry.points
            account.last_earned_at = utcnow()

            entry.status = BonusTransactionStatus.CONFIRMED
            entry.balance_after = account.current_points
            if expires_at is not None:
                entry.expires_at = expires_at
                await self._track_expiration(account, entry, entry.points, expires_at)
            await self._db.flush()

        self._store.record_pending_resolution("confirmed", entry.points)
        logger.info("Confirmed pending bonus points", transaction_id=str(transaction_id), points=entry.points)
        return entry

    async def cancel_pending_points(
        self,
        transaction_id: UUID,
        *,
        organization_id: str | None = None,
    ) -> BonusTransaction:
        async with transaction(self._db):
            entry = await self._get_pending_transaction(transaction_id, organization_id)
            account = await self._lock_account(entry.user_bonus_account_id)
            account.pending_points = max(0, account.pending_points - entry.points)
            entry.status = BonusTransactionStatus.CANCELED
            await self._db.flush()

        self._store.record_pending_resolution("canceled", entry.points)
        logger.info("Canceled pending bonus points", transaction_id=str(transaction_id), points=entry.points)
        return entry

    async def adjust_points(
        self,
        user_id: str,
        program_id: UUID,
        points: int,
        *,
        description: str | None = None,
        metadata: Dict[str, Any] | None = None,
    ) -> BonusTransaction:
        """Apply an administrator's signed correction as a confirmed entry."""

        if points == 0:
            raise BonusValidationError("Adjustment must be non-zero")
        if points > 0:
            return await self.award_points(
                user_id,
                program_id,
                points,
                BonusTransactionType.EARNED_MANUAL,
                status=BonusTransactionStatus.CONFIRMED,
                description=description,
                metadata=metadata,
            )
        return await self.deduct_points(
            user_id,
            program_id,
            -points,
            BonusTransactionType.DEDUCTED_MANUAL,
            description=description,
            metadata=metadata,
        )

    async def get_points_balance(self, user_id: str, program_id: UUID) -> PointsBalance:
        account = await self._programs.get_account(user_id, program_id)
        if account is None:
            return PointsBalance(user_id=user_id, program_id=program_id)
        return PointsBalance(
            user_id=user_id,
            program_id=program_id,
            current_points=account.current_points,
            pending_points=account.pending_points,
            total_earned_points=account.total_earned_points,
            total_redeemed_points=account.total_redeemed_points,
            total_expired_points=account.total_expired_points,
            current_tier_id=account.current_tier_id,
            tier_progress=Decimal(account.tier_progress or 0),
            last_earned_at=ensure_utc(account.last_earned_at),
            last_redeemed_at=ensure_utc(account.last_redeemed_at),
        )

    async def list_transactions(
        self,
        user_id: str,
        program_id: UUID,
        *,
        limit: int = 20,
        offset: int = 0,
    ) -> TransactionPage:
        account = await self._programs.get_account(user_id, program_id)
        if account is None:
            return TransactionPage(items=[], total=0, limit=limit, offset=offset)

        stmt = (
            select(BonusTransaction)
            .where(BonusTransaction.user_bonus_account_id == account.id)
            .order_by(BonusTransaction.created_at.desc(), BonusTransaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        items = list((await self._db.execute(stmt)).scalars().all())
        total = (
            await self._db.execute(
                select(func.count(BonusTransaction.id)).where(BonusTransaction.user_bonus_account_id == account.id)
            )
        ).scalar_one()
        return TransactionPage(items=items, total=int(total), limit=limit, offset=offset)

    async def list_expiring_points(
        self,
        user_id: str,
        program_id: UUID,
        *,
        within_days: int | None = None,
    ) -> list[PointsExpiration]:
        account = await self._programs.get_account(user_id, program_id)
        if account is None:
            return []
        stmt = select(PointsExpiration).where(
            PointsExpiration.user_bonus_account_id == account.id,
            PointsExpiration.is_expired.is_(False),
            PointsExpiration.remaining_points > 0,
        )
        if within_days is not None:
            stmt = stmt.where(PointsExpiration.expires_at <= utcnow() + timedelta(days=within_days))
        result = await self._db.execute(stmt.order_by(PointsExpiration.expires_at.asc()))
        return list(result.scalars().all())

    async def expire_points(self, *, reference_time: datetime | None = None) -> ExpirationSweepSummary:
        """Expire every window past its deadline, one unit of work per account.

        Rows are claimed with a conditional update on ``is_expired`` so a row
        handled by a concurrent sweep is skipped rather than expired twice.
        """

        now = ensure_utc(reference_time) or utcnow()
        summary = ExpirationSweepSummary(reference_time=now)

        async with transaction(self._db):
            stmt = (
                select(PointsExpiration.user_bonus_account_id, PointsExpiration.id)
                .where(
                    PointsExpiration.is_expired.is_(False),
                    PointsExpiration.expires_at <= now,
                    PointsExpiration.remaining_points > 0,
                )
                .order_by(PointsExpiration.user_bonus_account_id, PointsExpiration.expires_at.asc())
            )
            candidates = (await self._db.execute(stmt)).all()

        grouped: Dict[UUID, List[UUID]] = defaultdict(list)
        for account_id, expiration_id in candidates:
            grouped[account_id].append(expiration_id)

        for account_id, expiration_ids in grouped.items():
            async with transaction(self._db):
                rows, points = await self._expire_account(account_id, expiration_ids, now)
            if rows:
                summary.rows_expired += rows
                summary.accounts_touched += 1
                summary.points_expired += points

        self._store.record_expiration_sweep(
            rows=summary.rows_expired,
            accounts=summary.accounts_touched,
            points=summary.points_expired,
        )
        logger.bind(summary=summary.as_dict()).info("Bonus points expiration sweep completed")
        return summary

    async def _expire_account(self, account_id: UUID, expiration_ids: List[UUID], now: datetime) -> tuple[int, int]:
        account = await self._lock_account(account_id)
        claimed: List[str] = []
        expired_total = 0
        for expiration_id in expiration_ids:
            remaining = (
                await self._db.execute(
                    select(PointsExpiration.remaining_points)
                    .where(PointsExpiration.id == expiration_id, PointsExpiration.is_expired.is_(False))
                    .with_for_update()
                )
            ).scalar_one_or_none()
            if not remaining:
                continue
            result = await self._db.execute(
                update(PointsExpiration)
                .where(PointsExpiration.id == expiration_id, PointsExpiration.is_expired.is_(False))
                .values(is_expired=True, expired_at=now, remaining_points=0, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                continue
            claimed.append(str(expiration_id))
            expired_total += remaining

        if not claimed:
            return 0, 0

        # Clamp to the balance so total_earned - total_redeemed - total_expired stays equal to current_points.
        deducted = min(expired_total, account.current_points)
        balance_before = account.current_points
        account.current_points -= deducted
        account.total_expired_points += deducted

        self._db.add(
            BonusTransaction(
                organization_id=account.organization_id,
                user_bonus_account_id=account.id,
                type=BonusTransactionType.EXPIRED,
                points=-deducted,
                balance_before=balance_before,
                balance_after=account.current_points,
                description=f"{expired_total} points expired",
                status=BonusTransactionStatus.CONFIRMED,
                metadata_json={"expiration_ids": claimed, "expired_points": expired_total},
            )
        )
        await self._db.flush()
        logger.info(
            "Expired bonus points",
            account_id=str(account_id),
            rows=len(claimed),
            points=deducted,
        )
        return len(claimed), deducted

    async def _consume_expiring_points(self, account: UserBonusAccount, points: int) -> int:
        """Draw ``points`` from the soonest-expiring windows first."""

        stmt = (
            select(PointsExpiration)
            .where(
                PointsExpiration.user_bonus_account_id == account.id,
                PointsExpiration.is_expired.is_(False),
                PointsExpiration.remaining_points > 0,
            )
            .order_by(PointsExpiration.expires_at.asc(), PointsExpiration.created_at.asc())
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        windows = (await self._db.execute(stmt)).scalars().all()

        outstanding = points
        for window in windows:
            if outstanding <= 0:
                break
            consumed = min(window.remaining_points, outstanding)
            window.remaining_points -= consumed
            outstanding -= consumed
        await self._db.flush()
        return points - outstanding

    async def _track_expiration(
        self,
        account: UserBonusAccount,
        entry: BonusTransaction,
        points: int,
        expires_at: datetime,
    ) -> PointsExpiration:
        window = PointsExpiration(
            organization_id=account.organization_id,
            user_bonus_account_id=account.id,
            bonus_transaction_id=entry.id,
            points=points,
            remaining_points=points,
            expires_at=expires_at,
        )
        self._db.add(window)
        await self._db.flush()
        return window

    async def _get_pending_transaction(self, transaction_id: UUID, organization_id: str | None) -> BonusTransaction:
        stmt = (
            select(BonusTransaction)
            .where(BonusTransaction.id == transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if organization_id is not None:
            stmt = stmt.where(BonusTransaction.organization_id == organization_id)
        entry = (await self._db.execute(stmt)).scalar_one_or_none()
        if entry is None:
            raise NotFoundError("Bonus transaction", transaction_id)
        if entry.status != BonusTransactionStatus.PENDING:
            raise NotPendingError(entry.id, BonusTransactionStatus(entry.status).value)
        return entry

    async def _lock_account(self, account_id: UUID) -> UserBonusAccount:
        stmt = (
            select(UserBonusAccount)
            .where(UserBonusAccount.id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        account = (await self._db.execute(stmt)).scalar_one_or_none()
        if account is None:
            raise NotFoundError("Bonus account", account_id)
        return account


__all__ = [
    "ExpirationSweepSummary",
    "PointsBalance",
    "PointsLedgerService",
    "TransactionPage",
]
