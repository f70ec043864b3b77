# app/database/mongo_assignment.py
import re
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING, ReturnDocument

from app.database.assignment_repo import AssignmentFilter, AssignmentRepo
from app.schemas.assignment import Assignment


class MongoAssignmentRepository(AssignmentRepo):
    def __init__(self, db: AsyncIOMotorDatabase):
        self.col = db["assignments"]

    def _from_doc(self, d: dict) -> Assignment:
        base = {k: v for k, v in d.items() if k not in {"_id"}}
        return Assignment(**base)

    def _to_doc_from_model(self, a: Assignment) -> dict:
        return a.model_dump()

    def _query(self, filt: AssignmentFilter) -> dict:
        q: dict = {}
        if filt.status:
            q["status"] = filt.status
        elif filt.statuses:
            q["status"] = {"$in": list(filt.statuses)}
        if filt.recipient_id:
            q["assignedTo"] = str(filt.recipient_id)
        if filt.text:
            pattern = re.escape(filt.text)
            q["$or"] = [
                {"title": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
            ]
        return q

    async def create(self, assignment: Assignment) -> str:
        """
        Inserisce un Assignment completo (con id già generato nel service).
        """
        doc = self._to_doc_from_model(assignment)
        await self.col.insert_one(doc)
        return assignment.assignmentId

    async def find_one(self, assignment_id: str) -> Optional[Assignment]:
        d = await self.col.find_one({"assignmentId": str(assignment_id)})
        return self._from_doc(d) if d else None

    async def find_for_recipient(
        self, recipient_id: str, statuses: Optional[Sequence[str]] = None
    ) -> Sequence[Assignment]:
        q: dict = {"assignedTo": str(recipient_id)}
        if statuses:
            q["status"] = {"$in": list(statuses)}
        cursor = self.col.find(q)
        docs: List[dict] = [d async for d in cursor]
        return [self._from_doc(d) for d in docs]

    async def search(
        self, filt: AssignmentFilter, skip: int = 0, limit: Optional[int] = None
    ) -> Tuple[List[Assignment], int]:
        q = self._query(filt)
        cursor = self.col.find(q).sort("createdAt", DESCENDING).skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        docs: List[dict] = [d async for d in cursor]
        total = await self.col.count_documents(q)
        return [self._from_doc(d) for d in docs], total

    async def save(self, assignment: Assignment, expected_version: int) -> bool:
        assignment.version = expected_version + 1
        res = await self.col.replace_one(
            {"assignmentId": assignment.assignmentId, "version": expected_version},
            self._to_doc_from_model(assignment),
        )
        if res.matched_count == 0:
            assignment.version = expected_version
            return False
        return True

    async def delete(self, assignment_id: str) -> bool:
        res = await self.col.delete_one({"assignmentId": str(assignment_id)})
        return res.deleted_count > 0

    async def complete_many(
        self, assignment_ids: Sequence[str], ts: datetime, actor: str
    ) -> List[Assignment]:
        changed: List[Assignment] = []
        # one atomic update per document so the returned list is exactly what changed
        for assignment_id in dict.fromkeys(assignment_ids):
            d = await self.col.find_one_and_update(
                {"assignmentId": str(assignment_id), "status": "active"},
                {
                    "$set": {
                        "status": "completed",
                        "completedAt": ts,
                        "completedBy": actor,
                        "updatedAt": ts,
                        "updatedBy": actor,
                    },
                    "$inc": {"version": 1},
                },
                return_document=ReturnDocument.AFTER,
            )
            if d:
                changed.append(self._from_doc(d))
        return changed

    def _due_query(self, now: datetime, stale_before: datetime) -> dict:
        return {
            "$or": [
                {"status": "scheduled", "publishDate": {"$lte": now}},
                {"status": "publishing", "claimedAt": {"$lte": stale_before}},
            ]
        }

    async def find_due_scheduled(self, now: datetime, stale_before: datetime) -> Sequence[Assignment]:
        cursor = self.col.find(self._due_query(now, stale_before)).sort("publishDate", 1)
        docs: List[dict] = [d async for d in cursor]
        return [self._from_doc(d) for d in docs]

    async def claim_for_publication(
        self, assignment_id: str, now: datetime, stale_before: datetime
    ) -> Optional[Assignment]:
        q = {"assignmentId": str(assignment_id), **self._due_query(now, stale_before)}
        d = await self.col.find_one_and_update(
            q,
            {"$set": {"status": "publishing", "claimedAt": now}, "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER,
        )
        return self._from_doc(d) if d else None

    async def set_publication_error(self, assignment_id: str, message: str, claimed_at: datetime) -> bool:
        res = await self.col.update_one(
            {"assignmentId": str(assignment_id), "status": "publishing", "claimedAt": claimed_at},
            {
                "$set": {"status": "publication_error", "publicationError": message, "claimedAt": None},
                "$inc": {"version": 1},
            },
        )
        return res.modified_count > 0

    async def ensure_indexes(self):
        await self.col.create_index("assignmentId", unique=True)
        await self.col.create_index("assignedTo")
        await self.col.create_index([("status", 1), ("publishDate", 1)])
        await self.col.create_index([("createdAt", -1)])
