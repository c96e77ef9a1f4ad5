from __future__ import annotations

import os
from pathlib import Path
import tempfile

# Point settings at a throwaway SQLite database before any siemrelay module builds the engine.
_TEST_DB_DIR = Path(tempfile.mkdtemp(prefix="siemrelay-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_DIR / 'siemrelay.db'}")
os.environ.setdefault("DELIVERY_QUEUE_MODE", "poll")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

import pytest  # noqa: E402

from siemrelay.domain.models import Base  # noqa: E402
from siemrelay.persistence.db import engine  # noqa: E402
from siemrelay.services.telemetry import reset_telemetry  # noqa: E402
from siemrelay.tests.utils.delivery import FrozenClock, install_clock  # noqa: E402


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Rebuild every table so delivery state never leaks between tests.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture(autouse=True)
def fresh_telemetry() -> None:
    reset_telemetry()
    yield
    reset_telemetry()


@pytest.fixture
def clock(monkeypatch: pytest.MonkeyPatch) -> FrozenClock:
    # Freeze delivery time so retry schedules can be stepped through without sleeping.
    frozen = FrozenClock()
    install_clock(monkeypatch, frozen)
    return frozen
