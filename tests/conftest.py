"""
Shared fixtures for the message engine tests.

Nothing here talks to a database or to Twilio: sessions are AsyncMocks and
query results are MagicMocks shaped like SQLAlchemy results.
"""

import os
from unittest.mock import AsyncMock, MagicMock

import pytest

# Settings are read at import time by rehabflow.main
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("ENABLE_REAL_SMS", "false")
os.environ.setdefault("TWILIO_VALIDATE_WEBHOOKS", "false")


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Clear the settings cache around every test so monkeypatched env
    vars take effect and never leak."""
    from rehabflow.config import clear_settings_cache
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture()
def mock_db():
    """Create a mock AsyncSession with execute, commit, rollback and flush."""
    db = AsyncMock()
    db.execute = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.flush = AsyncMock()
    db.add = MagicMock()
    return db


def make_result(rows=None, scalar=None, rowcount=1):
    """A MagicMock standing in for a SQLAlchemy Result."""
    result = MagicMock()
    result.all.return_value = rows or []
    result.scalar_one_or_none.return_value = scalar
    result.scalar_one.return_value = scalar
    result.rowcount = rowcount
    return result
