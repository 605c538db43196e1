"""
ChainTrust — Fraud Heuristics

Read-only pattern detection over a snapshot of all companies:

    Rapid endorsements     more than 5 endorsements received in the trailing hour
    Shared authors         a testimonial author who also wrote for more than 2 other companies
    Mutual endorsements    A endorses B and B endorses A

The integrity score starts at 100 and is debited
    5   per unverified testimonial
    10  per endorsement from an endorser with reputation below 20
    15  per detected pattern
and gates reputation staking below 50.
"""
from dataclasses import dataclass, field
from typing import Dict, List

import structlog

from chaintrust.entities.model import Company
from chaintrust.errors import NotFoundError
from chaintrust.monitoring.events import SecurityEventType, SecuritySeverity

logger = structlog.get_logger()

RAPID_WINDOW_SECONDS = 3600
RAPID_ENDORSEMENT_LIMIT = 5
SHARED_AUTHOR_LIMIT = 2
LOW_ENDORSER_REPUTATION = 20
INTEGRITY_THRESHOLD = 50


@dataclass
class IntegrityReport:
    company_id: str
    score: int
    patterns: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.score >= INTEGRITY_THRESHOLD

    def to_dict(self) -> dict:
        return {
            "company_id": self.company_id,
            "score": self.score,
            "valid": self.is_valid,
            "patterns": list(self.patterns),
        }


# =============================================
# PURE DETECTORS
# =============================================

def rapid_endorsements(company: Company, now: float) -> int:
    cutoff = now - RAPID_WINDOW_SECONDS
    return sum(1 for e in company.community_validation.peer_endorsements if e.timestamp > cutoff)


def detect_patterns(company: Company, snapshot: Dict[str, Company], now: float) -> List[str]:
    patterns = []

    recent = rapid_endorsements(company, now)
    if recent > RAPID_ENDORSEMENT_LIMIT:
        patterns.append(f"Rapid endorsement creation: {recent} endorsements in the last hour")

    others = [c for cid, c in snapshot.items() if cid != company.id]
    seen_authors = set()
    for testimonial in company.community_validation.employee_testimonials:
        author = testimonial.author_name
        if author in seen_authors:
            continue
        seen_authors.add(author)
        same_author = sum(
            1
            for other in others
            for t in other.community_validation.employee_testimonials
            if t.author_name == author
        )
        if same_author > SHARED_AUTHOR_LIMIT:
            patterns.append(
                f"Author '{author}' has testimonials across {same_author + 1} different companies"
            )

    for endorsement in company.community_validation.peer_endorsements:
        endorser = snapshot.get(endorsement.endorser_company_id)
        if endorser is None:
            continue
        if any(e.endorser_company_id == company.id
               for e in endorser.community_validation.peer_endorsements):
            patterns.append(f"Mutual endorsement detected with company {endorser.id}")

    return patterns


def integrity_score(company: Company, snapshot: Dict[str, Company], patterns: List[str]) -> int:
    cv = company.community_validation
    score = 100
    score -= 5 * sum(1 for t in cv.employee_testimonials if not t.verified)
    for endorsement in cv.peer_endorsements:
        endorser = snapshot.get(endorsement.endorser_company_id)
        if endorser and endorser.community_validation.reputation_score < LOW_ENDORSER_REPUTATION:
            score -= 10
    score -= 15 * len(patterns)
    return score


# =============================================
# SERVICE
# =============================================

class FraudHeuristics:
    def __init__(self, store, events, clock):
        self.store = store
        self.events = events
        self.clock = clock

    async def _snapshot(self, company_id: str):
        companies = {c.id: c for c in await self.store.list_all()}
        company = companies.get(company_id)
        if company is None:
            raise NotFoundError("Company not found")
        return company, companies

    def _record_patterns(self, company: Company, patterns: List[str]):
        for pattern in patterns:
            self.events.record(
                SecurityEventType.SUSPICIOUS_INPUT,
                None,
                SecuritySeverity.MEDIUM,
                f"Suspicious validation pattern for company {company.id}: {pattern}",
                entity_id=company.id,
            )

    async def check_fraud(self, company_id: str) -> List[str]:
        """Describe every suspicious validation pattern for the company."""
        company, snapshot = await self._snapshot(company_id)
        patterns = detect_patterns(company, snapshot, self.clock.now())
        self._record_patterns(company, patterns)
        logger.info("fraud_check_complete", company_id=company_id, patterns=len(patterns))
        return patterns

    async def validate_integrity(self, company_id: str) -> IntegrityReport:
        company, snapshot = await self._snapshot(company_id)
        patterns = detect_patterns(company, snapshot, self.clock.now())
        self._record_patterns(company, patterns)
        report = IntegrityReport(
            company_id=company_id,
            score=integrity_score(company, snapshot, patterns),
            patterns=patterns,
        )
        if not report.is_valid:
            self.events.record(
                SecurityEventType.SUSPICIOUS_INPUT,
                None,
                SecuritySeverity.MEDIUM,
                f"Reputation integrity concern for company {company_id}: score {report.score}",
                entity_id=company_id,
            )
        return report
