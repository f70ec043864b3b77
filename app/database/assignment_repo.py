from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple

from app.core.errors import ConcurrentModification, NotFoundError
from app.schemas.assignment import Assignment

logger = logging.getLogger("assignments.repository")


@dataclass
class AssignmentFilter:
    status: Optional[str] = None
    statuses: Optional[Sequence[str]] = None
    text: Optional[str] = None
    recipient_id: Optional[str] = None


class AssignmentRepo(ABC):
    @abstractmethod
    async def create(self, assignment: Assignment) -> str:
        """Inserisce un assignment completo e ritorna il suo ID."""
        raise NotImplementedError

    @abstractmethod
    async def find_one(self, assignment_id: str) -> Optional[Assignment]:
        """Ritorna un assignment per ID, oppure None se non esiste."""
        raise NotImplementedError

    @abstractmethod
    async def find_for_recipient(
        self, recipient_id: str, statuses: Optional[Sequence[str]] = None
    ) -> Sequence[Assignment]:
        """Tutti gli assignment il cui assignedTo contiene il docente, filtrabili per stato."""
        raise NotImplementedError

    @abstractmethod
    async def search(
        self, filt: AssignmentFilter, skip: int = 0, limit: Optional[int] = None
    ) -> Tuple[List[Assignment], int]:
        """Pagina filtrata ordinata per createdAt decrescente, più il totale dei risultati."""
        raise NotImplementedError

    @abstractmethod
    async def save(self, assignment: Assignment, expected_version: int) -> bool:
        """Salva solo se la versione è ancora expected_version. Incrementa assignment.version e ritorna True se riuscito."""
        raise NotImplementedError

    @abstractmethod
    async def delete(self, assignment_id: str) -> bool:
        """Cancella un assignment. Ritorna True se qualcosa è stato cancellato."""
        raise NotImplementedError

    @abstractmethod
    async def complete_many(
        self, assignment_ids: Sequence[str], ts: datetime, actor: str
    ) -> List[Assignment]:
        """Completa gli assignment attivi della lista e ritorna quelli effettivamente modificati."""
        raise NotImplementedError

    @abstractmethod
    async def find_due_scheduled(self, now: datetime, stale_before: datetime) -> Sequence[Assignment]:
        """Assignment programmati con publishDate <= now, più le prese in carico più vecchie di stale_before."""
        raise NotImplementedError

    @abstractmethod
    async def claim_for_publication(
        self, assignment_id: str, now: datetime, stale_before: datetime
    ) -> Optional[Assignment]:
        """Porta atomicamente un assignment scaduto in 'publishing'. None se un'altra esecuzione lo ha già preso."""
        raise NotImplementedError

    @abstractmethod
    async def set_publication_error(self, assignment_id: str, message: str, claimed_at: datetime) -> bool:
        """
        Segna la pubblicazione come fallita, solo se la presa in carico claimed_at è ancora quella corrente.
        Ritorna False se un'altra esecuzione ha ripreso l'assignment nel frattempo.
        """
        raise NotImplementedError

    async def mutate(
        self,
        assignment_id: str,
        fn: Callable[[Assignment], Optional[bool]],
        retries: int = 5,
    ) -> Assignment:
        """
        Lettura-modifica-scrittura protetta dal campo version.
        fn modifica l'assignment in place e può sollevare per annullare; se ritorna False non si salva nulla.
        """
        for attempt in range(1, retries + 1):
            assignment = await self.find_one(assignment_id)
            if assignment is None:
                raise NotFoundError(f"Assignment {assignment_id} not found")
            expected = assignment.version
            if fn(assignment) is False:
                return assignment
            if await self.save(assignment, expected):
                return assignment
            logger.debug("Version conflict on %s (attempt %d/%d)", assignment_id, attempt, retries)
        raise ConcurrentModification(assignment_id)
