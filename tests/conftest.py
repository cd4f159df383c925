import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from marketdata.core import config, database
from marketdata.db.init_db import init_db, drop_db
from marketdata.services import alerts

# Function-scoped engine on a throwaway SQLite file so concurrent sessions
# behave like separate connections to a real store.
@pytest.fixture(scope="function")
async def db_engine(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'marketdata-test.db'}"
    engine = create_async_engine(url, **database.engine_options(url))
    yield engine
    await engine.dispose()

@pytest.fixture(scope="function", autouse=True)
async def setup_test_db(db_engine):
    # Snapshot global
    original_engine = database.db_manager._engine
    original_maker = database.db_manager._session_maker

    # Patch global
    database.db_manager._engine = db_engine
    database.db_manager._session_maker = sessionmaker(
        bind=db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )

    await init_db()
    yield
    await drop_db()

    # Restore global
    database.db_manager._engine = original_engine
    database.db_manager._session_maker = original_maker

@pytest.fixture(scope="function", autouse=True)
def isolated_settings(monkeypatch):
    settings = config.get_settings()
    monkeypatch.setattr(settings, "ALERT_WEBHOOK_URL", None)
    monkeypatch.setattr(settings, "GITHUB_TOKEN", None)
    monkeypatch.setattr(settings, "EXCHANGE_RATE_API_KEY", None)
    monkeypatch.setattr(settings, "DATA_RATE_LIMIT_DELAY", 0)
    alerts.reset_throttle()
    yield settings
    alerts.reset_throttle()

@pytest.fixture
def sent_alerts():
    with patch.object(alerts, "send_alert", new_callable=AsyncMock, return_value=True) as mock_send:
        yield mock_send
