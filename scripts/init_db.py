import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import engine_from_settings
from models.base import Base
# Import all models to ensure they are registered
from models.data_source import DataSourceCredential
from models.raw_record import RawRecord
from models.ingestion_log import IngestionLog

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def init_database():
    logger.info(f"Connecting to database ({settings.ENVIRONMENT})...")
    engine = engine_from_settings(settings)

    async with engine.begin() as conn:
        logger.info("Creating tables...")
        # Create all tables defined in models
        await conn.run_sync(Base.metadata.create_all)
        logger.info(
            "Tables created successfully: "
            f"{', '.join(m.__tablename__ for m in (DataSourceCredential, RawRecord, IngestionLog))}"
        )

    await engine.dispose()

if __name__ == "__main__":
    asyncio.run(init_database())
