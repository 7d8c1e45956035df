from __future__ import annotations

import os
import tempfile
from pathlib import Path

# Point settings at a throwaway SQLite file before any upgradeguard module builds the engine.
_TEST_DB_PATH = Path(tempfile.gettempdir()) / "upgradeguard_test.db"
if _TEST_DB_PATH.exists():
    _TEST_DB_PATH.unlink()
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_PATH}")
os.environ.setdefault("AUTH_DEV_BYPASS", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

from upgradeguard.apps.api.deps import clear_auth_cache
from upgradeguard.core.config import get_settings
from upgradeguard.domain.models import Base
from upgradeguard.persistence.db import engine
from upgradeguard.services.governance import set_governance


@pytest.fixture(autouse=True)
async def reset_database() -> None:
    # Every test starts from an empty schema built from the ORM metadata.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Keep cached settings, principals and governance overrides from leaking across tests.
    get_settings.cache_clear()
    clear_auth_cache()
    set_governance(None)
    yield
    get_settings.cache_clear()
    set_governance(None)
