from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from marketdata.core.config import get_settings

settings = get_settings()

def engine_options(url: str) -> dict:
    options = {"echo": settings.DATABASE_ECHO}
    if url.startswith("sqlite"):
        # Concurrent writers queue on the file lock instead of failing with "database is locked"
        options["connect_args"] = {"timeout": settings.DATABASE_LOCK_TIMEOUT}
    else:
        options.update(pool_pre_ping=True, pool_size=settings.DATABASE_POOL_SIZE)
    return options

# Lazy initialization to prevent import-time loop binding issues
class Database:
    def __init__(self):
        self._engine = None
        self._session_maker = None

    @property
    def engine(self):
        if self._engine is None:
            self._engine = create_async_engine(settings.DATABASE_URL, **engine_options(settings.DATABASE_URL))
        return self._engine

    @property
    def session_maker(self):
        if self._session_maker is None:
            self._session_maker = sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            )
        return self._session_maker

db_manager = Database()

# Counters, metrics and fallbacks all open short-lived sessions through this
def AsyncSessionLocal():
    return db_manager.session_maker()
