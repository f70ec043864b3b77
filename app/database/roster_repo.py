from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Sequence, Set


class RosterRepo(ABC):
    @abstractmethod
    async def list_recipient_ids(self) -> List[str]:
        """Ritorna gli ID di tutti i docenti attualmente idonei."""
        raise NotImplementedError

    @abstractmethod
    async def existing_ids(self, recipient_ids: Sequence[str]) -> Set[str]:
        """Sottoinsieme di recipient_ids che appartiene a docenti idonei."""
        raise NotImplementedError
