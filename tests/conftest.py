import sys
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

import bonus_ledger.models  # noqa: E402,F401
from bonus_ledger.db.base import Base  # noqa: E402
from bonus_ledger.db.session import enable_sqlite_savepoints  # noqa: E402
from bonus_ledger.observability.bonus import get_bonus_store  # noqa: E402
from bonus_ledger.schemas.bonus import BonusProgramCreate  # noqa: E402
from bonus_ledger.services.bonus import BonusProgramService  # noqa: E402


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    enable_sqlite_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture
def make_program():
    """Create a bonus program; keyword overrides map onto ``BonusProgramCreate`` fields."""

    async def _make(session: AsyncSession, **overrides):
        fields = {"organization_id": "org-1", "name": "Rewards Club"}
        fields.update(overrides)
        return await BonusProgramService(session).create_program(BonusProgramCreate(**fields))

    return _make


@pytest.fixture(autouse=True)
def reset_bonus_store():
    get_bonus_store().reset()
    yield
    get_bonus_store().reset()
