"""
ChainTrust - Entity Store

Persistent storage of companies belongs to the registry service. The engine
reaches it through a narrow contract:

    get(id)               -> Company | None   (a snapshot)
    update(id, mutator)   -> bool             (atomic read-modify-write)
    list_all()            -> [Company]        (snapshots)

Writes for one company are serialized with a per-id asyncio.Lock so a
challenge acceptance and a monitor-driven demotion never interleave.
Evidence must be fetched before calling update(); no lock is held across
network I/O.
"""
import asyncio
import copy
import inspect
from typing import Callable, Dict, List, Optional

import structlog

from chaintrust.entities.model import Company

logger = structlog.get_logger()


class EntityStore:
    """Interface. Subclass for a real backend."""

    async def get(self, entity_id: str) -> Optional[Company]:
        raise NotImplementedError

    async def update(self, entity_id: str, mutator: Callable[[Company], object]) -> bool:
        raise NotImplementedError

    async def list_all(self) -> List[Company]:
        raise NotImplementedError


class InMemoryEntityStore(EntityStore):
    """
    Dict-backed store. Hands out deep copies so callers can never mutate
    stored state outside of update().
    """

    def __init__(self, companies: Optional[List[Company]] = None):
        self._companies: Dict[str, Company] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        for company in companies or []:
            self.put(company)

    def _lock(self, entity_id: str) -> asyncio.Lock:
        lock = self._locks.get(entity_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[entity_id] = lock
        return lock

    def put(self, company: Company):
        self._companies[company.id] = copy.deepcopy(company)

    async def get(self, entity_id: str) -> Optional[Company]:
        company = self._companies.get(entity_id)
        return copy.deepcopy(company) if company is not None else None

    async def update(self, entity_id: str, mutator: Callable[[Company], object]) -> bool:
        async with self._lock(entity_id):
            stored = self._companies.get(entity_id)
            if stored is None:
                return False
            # Work on a copy so a mutator that raises leaves the record untouched
            working = copy.deepcopy(stored)
            result = mutator(working)
            if inspect.isawaitable(result):
                await result
            self._companies[entity_id] = working
            return True

    async def list_all(self) -> List[Company]:
        return [copy.deepcopy(c) for c in self._companies.values()]

    def __len__(self) -> int:
        return len(self._companies)
