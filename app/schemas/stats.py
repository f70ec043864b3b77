from datetime import datetime
from typing import Dict, List

from pydantic import BaseModel

from app.schemas.assignment import UtcDatetime


class StatsCounters(BaseModel):
    completed: int = 0
    pending: int = 0
    overdue: int = 0
    total: int = 0


class TeacherStats(BaseModel):
    recipientId: str
    stats: StatsCounters = StatsCounters()
    lastUpdated: UtcDatetime


class RecipientTally(StatsCounters):
    recipientId: str
    completionRate: float = 0.0


class AdminOverview(BaseModel):
    total: int
    byStatus: Dict[str, int]
    overdue: int
    dueSoon: int
    completionRate: float
    generatedAt: datetime
    recipients: List[RecipientTally] = []
