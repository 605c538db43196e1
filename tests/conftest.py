"""
Shared fixtures: a manual clock, in-memory store and a scripted evidence
fetcher wired into a full TrustEngine.
"""
import asyncio
from collections import defaultdict

import pytest

from chaintrust.clock import ManualClock
from chaintrust.entities.model import BasicInfo, Company
from chaintrust.entities.store import InMemoryEntityStore
from chaintrust.errors import EvidenceNotFound
from chaintrust.monitoring.events import EventLog
from chaintrust.rate_limit import RateLimiter
from chaintrust.service import TrustEngine, shared_engine
from chaintrust.verification.evidence import EvidenceFetcher

OWNER = "alice"


class FakeFetcher(EvidenceFetcher):
    """
    Evidence answers are scripted per reference. Anything not scripted is
    reported as not found; entries in `failures` are raised as-is.
    """

    def __init__(self):
        self.txt = {}
        self.identities = {}
        self.chains = {}
        self.failures = {}
        self.delay = 0.0
        self.calls = []
        self._active = defaultdict(int)
        self.max_active = defaultdict(int)

    async def _enter(self, kind: str, reference: str):
        self.calls.append((kind, reference))
        self._active[reference] += 1
        self.max_active[reference] = max(self.max_active[reference], self._active[reference])
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if reference in self.failures:
                raise self.failures[reference]
        finally:
            self._active[reference] -= 1

    async def check_domain_txt(self, domain):
        await self._enter("dns", domain)
        return self.txt.get(domain, "")

    async def check_identity_api(self, platform, reference):
        await self._enter(platform, reference)
        if (platform, reference) not in self.identities:
            raise EvidenceNotFound(platform, reference, f"{platform} reference not found: {reference}")
        return self.identities[(platform, reference)]

    async def check_chain_activity(self, chain, address):
        await self._enter(chain.value, address)
        if (chain, address) not in self.chains:
            raise EvidenceNotFound(chain.value, address, "No transactions found for address")
        return self.chains[(chain, address)]


def make_company(company_id="acme", owner=OWNER, **kwargs) -> Company:
    kwargs.setdefault("basic_info", BasicInfo(name="Acme Labs", website="https://acme.xyz"))
    return Company(id=company_id, created_by=owner, **kwargs)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store():
    return InMemoryEntityStore()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def events(clock):
    return EventLog(clock)


@pytest.fixture
def limiter(clock):
    return RateLimiter(clock=clock)


@pytest.fixture
def engine(store, fetcher, clock, limiter, events):
    return TrustEngine(store, fetcher, clock=clock, limiter=limiter, events=events)


@pytest.fixture
def process_engine():
    """The process-wide engine, rebuilt for each test."""
    shared_engine.cache_clear()
    yield shared_engine()
    shared_engine.cache_clear()


@pytest.fixture
def acme(store):
    company = make_company()
    store.put(company)
    return company
