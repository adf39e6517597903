from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway SQLite file before any clawkeeper module builds it.
_DB_DIR = tempfile.mkdtemp(prefix="clawkeeper-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'clawkeeper.db')}"
os.environ.setdefault("SIDE_EFFECT_EXECUTION_MODE", "inline")
os.environ.setdefault("RESEND_API_KEY", "")

import pytest  # noqa: E402

from clawkeeper.core.config import get_settings  # noqa: E402
from clawkeeper.domain.models import Base  # noqa: E402
from clawkeeper.persistence.db import engine  # noqa: E402
from clawkeeper.services.credits import reset_credit_ledger  # noqa: E402
from clawkeeper.services.side_effects import drain_background_tasks  # noqa: E402


@pytest.fixture
async def fresh_schema() -> None:
    # DB tests opt in; dispose the engine so no connection outlives its event loop.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await drain_background_tasks()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(autouse=True)
def _reset_settings_cache() -> None:
    # Clear settings caches between tests to avoid env leakage.
    yield
    get_settings.cache_clear()
    reset_credit_ledger()
