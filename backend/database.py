from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
            db_name = os.environ.get('DB_NAME', 'sow_factory')
            self.client = AsyncIOMotorClient(mongo_url)
            self.db = self.client[db_name]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {db_name}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes for the pipeline collections."""
        try:
            # Secret entries - one row per namespaced key
            await self.db.app_config.create_index("key", unique=True)

            await self.db.templates.create_index("template_id", unique=True)
            await self.db.templates.create_index("active")

            # SOW records - owner listing and status dashboards
            await self.db.sows.create_index("sow_id", unique=True)
            await self.db.sows.create_index([("created_by", 1), ("created_at", -1)])
            await self.db.sows.create_index("status")
            await self.db.sows.create_index("request_id")

            # Audit log indexes - append-only timeline per entity
            await self.db.audit_logs.create_index([("resource_type", 1), ("resource_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index("timestamp")
            await self.db.audit_logs.create_index("request_id")
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

database = Database()
