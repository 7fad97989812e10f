"""Periodic sweeps that expire overdue points and coupons."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from bonus_ledger.core.clock import utcnow
from bonus_ledger.services.bonus import CouponService, PointsLedgerService

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def _open_session(session_factory: SessionFactory) -> AsyncSession:
    maybe_session = session_factory()
    if isinstance(maybe_session, AsyncSession):
        return maybe_session
    return await maybe_session


async def run_points_expiration(*, session_factory: SessionFactory) -> Dict[str, Any]:
    """Expire every points window past its deadline."""

    session = await _open_session(session_factory)
    async with session as managed_session:
        summary = await PointsLedgerService(managed_session).expire_points(reference_time=utcnow())
    return summary.as_dict()


async def expire_stale_coupons(*, session_factory: SessionFactory) -> Dict[str, Any]:
    """Flip active coupons past their expiry to expired."""

    session = await _open_session(session_factory)
    async with session as managed_session:
        now = utcnow()
        expired = await CouponService(managed_session).expire_coupons(reference_time=now)

    summary = {"reference_time": now.isoformat(), "coupons_expired": expired}
    logger.bind(summary=summary).info("Coupon expiration sweep completed")
    return summary


__all__ = ["expire_stale_coupons", "run_points_expiration"]
