"""
ChainTrust — Trust Engine

Wires the components together and exposes the outward surface:

    create_challenge(entity_id, caller, target_kind, target, method)  -> Challenge
    verify_challenge(entity_id, caller, target_kind, target)          -> VerificationResult
    run_scheduled_tasks(now)                                          -> [completed task ids]
    compute_scores(entity_id)                                         -> TrustScores
    check_fraud(entity_id)                                            -> [pattern descriptions]
    acknowledge_alert(alert_id, caller)                               -> CommunityAlert

Every collaborator is injected so tests can run the whole engine against
in-memory fakes and a manual clock.
"""
from functools import lru_cache
from typing import List, Optional

import structlog

from chaintrust.clock import SystemClock
from chaintrust.config import settings
from chaintrust.entities.store import InMemoryEntityStore
from chaintrust.errors import AuthorizationError, NotFoundError
from chaintrust.monitoring.events import EventLog, SecurityEventType, SecuritySeverity
from chaintrust.monitoring.monitor import ProofMonitor
from chaintrust.rate_limit import build_rate_limiter
from chaintrust.trust.community import CommunityValidator
from chaintrust.trust.engine import TrustScores, compute_scores
from chaintrust.trust.fraud import FraudHeuristics
from chaintrust.verification.challenges import ChallengeMethod, ChallengeStore
from chaintrust.verification.evidence import HttpEvidenceFetcher
from chaintrust.verification.verifier import ChallengeVerifier

logger = structlog.get_logger()


class TrustEngine:
    def __init__(self, store, fetcher, clock=None, limiter=None, events=None, challenges=None):
        self.clock = clock or SystemClock()
        self.store = store
        self.fetcher = fetcher
        self.limiter = limiter if limiter is not None else build_rate_limiter(self.clock)
        self.events = events if events is not None else EventLog(self.clock)
        self.challenges = challenges if challenges is not None else ChallengeStore()

        self.monitor = ProofMonitor(store, fetcher, self.events, self.clock, self.limiter)
        self.fraud = FraudHeuristics(store, self.events, self.clock)
        self.community = CommunityValidator(store, self.limiter, self.events, self.clock, self.fraud)

        self.verifier = ChallengeVerifier(
            store, self.challenges, fetcher, self.limiter, self.events, self.clock, self.monitor,
        )

    async def create_challenge(
        self,
        entity_id: str,
        caller: str,
        target_kind: str,
        target: Optional[str] = None,
        method: Optional[ChallengeMethod] = None,
    ):
        return await self.verifier.create_challenge(entity_id, caller, target_kind, target, method)

    async def verify_challenge(self, entity_id: str, caller: str, target_kind: str, target: Optional[str] = None):
        return await self.verifier.verify_challenge(entity_id, caller, target_kind, target)

    async def run_scheduled_tasks(self, now: Optional[float] = None) -> List[str]:
        return await self.monitor.run_due_tasks(now)

    async def compute_scores(self, entity_id: str) -> TrustScores:
        company = await self.store.get(entity_id)
        if company is None:
            raise NotFoundError("Company not found")
        return compute_scores(company)

    async def check_fraud(self, entity_id: str) -> List[str]:
        return await self.fraud.check_fraud(entity_id)

    async def acknowledge_alert(self, alert_id: str, caller: str):
        """Moderators, or the owner of the alerted company, may acknowledge."""
        alert = self.events.get_alert(alert_id)
        if alert is None:
            raise NotFoundError("Alert not found")

        if caller not in settings.MODERATORS:
            company = await self.store.get(alert.entity_id)
            if company is None or company.created_by != caller:
                self.events.record(
                    SecurityEventType.UNAUTHORIZED_ACCESS,
                    caller,
                    SecuritySeverity.MEDIUM,
                    f"Unauthorized alert acknowledgement: {alert_id} for company {alert.entity_id}",
                    entity_id=alert.entity_id,
                )
                raise AuthorizationError("Unauthorized: only moderators or the company owner can acknowledge")

        self.events.acknowledge_alert(alert_id)
        logger.info("alert_acknowledged_by", alert_id=alert_id, caller=caller)
        return alert


def build_engine(store=None, fetcher=None, clock=None) -> TrustEngine:
    """Engine with the configured rate-limit backend and live evidence sources."""
    engine = TrustEngine(
        store=store if store is not None else InMemoryEntityStore(),
        fetcher=fetcher if fetcher is not None else HttpEvidenceFetcher(),
        clock=clock,
    )
    logger.info("trust_engine_built",
                limiter=type(engine.limiter).__name__,
                fetcher=type(engine.fetcher).__name__)
    return engine


@lru_cache()
def shared_engine() -> TrustEngine:
    """The process-wide engine; API routes and the scheduler drain the same queue."""
    return build_engine()
