from typing import List, Sequence, Set

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.database.roster_repo import RosterRepo


class MongoRosterRepository(RosterRepo):
    """Read-only view over the users collection owned by the identity service."""

    def __init__(self, db: AsyncIOMotorDatabase, roles: Sequence[str]):
        self.col = db["users"]
        self.roles = list(roles)

    async def list_recipient_ids(self) -> List[str]:
        cursor = self.col.find({"role": {"$in": self.roles}}, {"_id": 1}).sort("_id", 1)
        return [str(d["_id"]) async for d in cursor]

    async def existing_ids(self, recipient_ids: Sequence[str]) -> Set[str]:
        keys: list = []
        for rid in recipient_ids:
            keys.append(rid)
            if ObjectId.is_valid(rid):
                keys.append(ObjectId(rid))
        cursor = self.col.find({"_id": {"$in": keys}, "role": {"$in": self.roles}}, {"_id": 1})
        return {str(d["_id"]) async for d in cursor}
