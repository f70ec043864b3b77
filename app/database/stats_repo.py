from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from app.schemas.stats import TeacherStats


class StatsRepo(ABC):
    @abstractmethod
    async def find(self, recipient_id: str) -> Optional[TeacherStats]:
        """Ritorna le statistiche cached del docente, oppure None."""
        raise NotImplementedError

    @abstractmethod
    async def upsert(self, stats: TeacherStats) -> None:
        """Sostituisce l'intero record di stats.recipientId, creandolo se manca."""
        raise NotImplementedError
