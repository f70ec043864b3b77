from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.database.stats_repo import StatsRepo
from app.schemas.stats import TeacherStats


class MongoStatsRepository(StatsRepo):
    def __init__(self, db: AsyncIOMotorDatabase):
        self.col = db["teacher_stats"]

    async def find(self, recipient_id: str) -> Optional[TeacherStats]:
        d = await self.col.find_one({"recipientId": str(recipient_id)}, {"_id": 0})
        return TeacherStats(**d) if d else None

    async def upsert(self, stats: TeacherStats) -> None:
        await self.col.replace_one(
            {"recipientId": stats.recipientId}, stats.model_dump(), upsert=True
        )

    async def ensure_indexes(self):
        await self.col.create_index("recipientId", unique=True)
