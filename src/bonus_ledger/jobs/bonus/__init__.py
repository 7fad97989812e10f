"""Bonus ledger job exports."""

from .expiration import expire_stale_coupons, run_points_expiration  # noqa: F401

__all__ = [
    "expire_stale_coupons",
    "run_points_expiration",
]
