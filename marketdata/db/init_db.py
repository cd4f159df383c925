import asyncio
from marketdata.core.database import db_manager
from marketdata.core.logging_config import get_logger
from marketdata.db.models import Base

logger = get_logger("init_db")

async def init_db():
    async with db_manager.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("tables_created", tables=sorted(Base.metadata.tables))

async def drop_db():
    async with db_manager.engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    logger.warning("tables_dropped", tables=sorted(Base.metadata.tables))

if __name__ == "__main__":
    asyncio.run(init_db())
