"""
ChainTrust — Community Validation

Endorsements from other registered companies, testimonials, community
vouches and reputation staking. Every write is throttled on the general
rate-limit class, screened for markup injection and followed by a
synchronous rescore of the touched company.
"""
import time
from typing import List, Tuple

import structlog

from chaintrust.config import settings
from chaintrust.entities.model import Company, Endorsement, Testimonial, Vouch
from chaintrust.errors import AuthorizationError, NotFoundError, ValidationError
from chaintrust.guards import enforce_rate_limit, load_company, load_owned_company
from chaintrust.monitoring.events import SecurityEventType, SecuritySeverity
from chaintrust.rate_limit import HTTP
from chaintrust.trust.engine import rescore, voucher_weight

logger = structlog.get_logger()

MAX_MESSAGE_LENGTH = 1000
MAX_NAME_LENGTH = 100
MIN_ENDORSER_REPUTATION = 10

DANGEROUS_PATTERNS = [
    "<script>",
    "</script>",
    "javascript:",
    "onerror=",
    "onload=",
    "eval(",
    "document.cookie",
    "window.location",
]


def _check_length(value: str, field_name: str, limit: int) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"{field_name} cannot be empty")
    if len(value) > limit:
        raise ValidationError(f"{field_name} exceeds {limit} characters")
    return value


class CommunityValidator:
    def __init__(self, store, limiter, events, clock, fraud=None):
        self.store = store
        self.limiter = limiter
        self.events = events
        self.clock = clock
        self.fraud = fraud

    def _now(self) -> float:
        return self.clock.now() if self.clock else time.time()

    def _screen(self, caller: str, entity_id: str, kind: str, *values: str):
        for value in values:
            lowered = value.lower()
            if any(pattern in lowered for pattern in DANGEROUS_PATTERNS):
                self.events.record(
                    SecurityEventType.XSS_ATTEMPT,
                    caller,
                    SecuritySeverity.HIGH,
                    f"Potential XSS attempt in {kind} for company {entity_id}",
                    entity_id=entity_id,
                )
                raise ValidationError(f"Invalid content detected in {kind}")

    async def _mutate(self, entity_id: str, mutate):
        """Apply mutate and rescore under the company lock."""
        def wrapped(company: Company):
            mutate(company)
            rescore(company)
            company.updated_at = self._now()

        if not await self.store.update(entity_id, wrapped):
            raise NotFoundError("Company not found")

    # =============================================
    # ENDORSEMENTS
    # =============================================

    async def add_endorsement(self, entity_id: str, endorser_id: str, message: str, caller: str):
        await enforce_rate_limit(self.limiter, self.events, caller, HTTP, "endorsements")
        await load_owned_company(self.store, self.events, endorser_id, caller, "endorse on behalf of this company")
        target = await self.store.get(entity_id)
        if target is None:
            raise NotFoundError("Target company not found")

        if endorser_id == entity_id:
            self.events.record(
                SecurityEventType.SUSPICIOUS_INPUT,
                caller,
                SecuritySeverity.MEDIUM,
                f"Self-endorsement attempt by company {entity_id}",
                entity_id=entity_id,
            )
            raise ValidationError("Companies cannot endorse themselves")

        message = _check_length(message, "Endorsement message", MAX_MESSAGE_LENGTH)
        self._screen(caller, entity_id, "endorsement message", message)

        endorsement = Endorsement(
            endorser_company_id=endorser_id,
            message=message,
            timestamp=self._now(),
            endorser_principal=caller,
        )

        def mutate(company: Company):
            endorsements = company.community_validation.peer_endorsements
            if any(e.endorser_company_id == endorser_id for e in endorsements):
                raise ValidationError("Endorsement already exists")
            endorsements.append(endorsement)

        await self._mutate(entity_id, mutate)
        self.events.record(
            SecurityEventType.SECURITY_SCAN,
            caller,
            SecuritySeverity.LOW,
            f"Endorsement added: {endorser_id} endorsed {entity_id}",
            entity_id=entity_id,
        )
        return endorsement

    async def remove_endorsement(self, entity_id: str, endorser_id: str, caller: str):
        endorser = await self.store.get(endorser_id)
        if endorser is None:
            raise NotFoundError("Endorser company not found")
        if endorser.created_by != caller:
            raise AuthorizationError("Unauthorized: Only company owner can remove endorsements")

        def mutate(company: Company):
            cv = company.community_validation
            cv.peer_endorsements = [e for e in cv.peer_endorsements if e.endorser_company_id != endorser_id]

        await self._mutate(entity_id, mutate)

    async def validate_endorsement_eligibility(self, endorser_id: str, entity_id: str) -> bool:
        endorser = await self.store.get(endorser_id)
        if endorser is None:
            raise NotFoundError("Endorser company not found")
        if endorser.community_validation.reputation_score < MIN_ENDORSER_REPUTATION:
            return False
        target = await self.store.get(entity_id)
        if target is not None and any(
            e.endorser_company_id == endorser_id for e in target.community_validation.peer_endorsements
        ):
            return False
        return True

    # =============================================
    # TESTIMONIALS
    # =============================================

    async def add_testimonial(self, entity_id: str, author_name: str, role: str, message: str, caller: str):
        await enforce_rate_limit(self.limiter, self.events, caller, HTTP, "testimonials")
        await load_company(self.store, self.events, entity_id, caller, "Testimonial")

        author_name = _check_length(author_name, "Author name", MAX_NAME_LENGTH)
        role = _check_length(role, "Role", MAX_NAME_LENGTH)
        message = _check_length(message, "Message", MAX_MESSAGE_LENGTH)
        self._screen(caller, entity_id, "testimonial", author_name, role, message)

        testimonial = Testimonial(
            author_name=author_name,
            role=role,
            message=message,
            timestamp=self._now(),
            verified=False,
        )

        def mutate(company: Company):
            testimonials = company.community_validation.employee_testimonials
            if any(t.author_name == author_name for t in testimonials):
                raise ValidationError("Testimonial from this author already exists")
            testimonials.append(testimonial)

        await self._mutate(entity_id, mutate)
        logger.info("testimonial_added", entity_id=entity_id, author=author_name)
        return testimonial

    async def remove_testimonial(self, entity_id: str, author_name: str, caller: str):
        company = await load_company(self.store, self.events, entity_id, caller, "Testimonial removal")
        if not any(t.author_name == author_name for t in company.community_validation.employee_testimonials):
            raise NotFoundError("Testimonial not found")
        if company.created_by != caller:
            raise AuthorizationError("Unauthorized: Only company owner can remove testimonials")

        def mutate(company: Company):
            cv = company.community_validation
            cv.employee_testimonials = [t for t in cv.employee_testimonials if t.author_name != author_name]

        await self._mutate(entity_id, mutate)

    async def verify_testimonial(self, entity_id: str, author_name: str, caller: str):
        await load_owned_company(self.store, self.events, entity_id, caller, "verify testimonials")
        await self._set_testimonial_verified(entity_id, author_name, True)

    async def flag_testimonial(self, entity_id: str, author_name: str, caller: str):
        """Moderation: mark a testimonial unverified."""
        company = await load_company(self.store, self.events, entity_id, caller, "Testimonial flag")
        if caller not in settings.MODERATORS and caller != company.created_by:
            raise AuthorizationError("Unauthorized: Only moderators can flag testimonials")
        await self._set_testimonial_verified(entity_id, author_name, False)
        logger.info("testimonial_flagged", entity_id=entity_id, author=author_name, moderator=caller)

    async def _set_testimonial_verified(self, entity_id: str, author_name: str, verified: bool):
        def mutate(company: Company):
            for testimonial in company.community_validation.employee_testimonials:
                if testimonial.author_name == author_name:
                    testimonial.verified = verified
                    return
            raise NotFoundError("Testimonial not found")

        await self._mutate(entity_id, mutate)

    # =============================================
    # VOUCHES
    # =============================================

    async def add_vouch(self, entity_id: str, message: str, caller: str):
        await enforce_rate_limit(self.limiter, self.events, caller, HTTP, "vouches")
        await load_company(self.store, self.events, entity_id, caller, "Vouch")

        message = _check_length(message, "Message", MAX_MESSAGE_LENGTH)
        self._screen(caller, entity_id, "vouch message", message)

        previous = len(await self.get_vouches_by_principal(caller))
        vouch = Vouch(
            voucher_principal=caller,
            message=message,
            timestamp=self._now(),
            weight=voucher_weight(previous),
        )

        def mutate(company: Company):
            vouches = company.community_validation.community_vouches
            if any(v.voucher_principal == caller for v in vouches):
                raise ValidationError("Vouch from this principal already exists")
            vouches.append(vouch)

        await self._mutate(entity_id, mutate)
        return vouch

    async def remove_vouch(self, entity_id: str, caller: str):
        def mutate(company: Company):
            cv = company.community_validation
            cv.community_vouches = [v for v in cv.community_vouches if v.voucher_principal != caller]

        await self._mutate(entity_id, mutate)

    # =============================================
    # STAKING
    # =============================================

    async def stake_reputation(self, entity_id: str, amount: int, caller: str):
        await enforce_rate_limit(self.limiter, self.events, caller, HTTP, "reputation staking")
        await load_owned_company(self.store, self.events, entity_id, caller, "stake reputation")
        if amount <= 0:
            raise ValidationError("Stake amount must be greater than 0")

        if self.fraud is not None:
            report = await self.fraud.validate_integrity(entity_id)
            if not report.is_valid:
                self.events.record(
                    SecurityEventType.SUSPICIOUS_INPUT,
                    caller,
                    SecuritySeverity.HIGH,
                    f"Reputation staking blocked due to integrity concerns for company {entity_id}",
                    entity_id=entity_id,
                )
                raise ValidationError(
                    "Cannot stake reputation: integrity validation failed. "
                    "Please review your community validations."
                )

        def mutate(company: Company):
            company.community_validation.reputation_staked += amount

        await self._mutate(entity_id, mutate)
        self.events.record(
            SecurityEventType.SECURITY_SCAN,
            caller,
            SecuritySeverity.LOW,
            f"Reputation staked: company {entity_id} staked {amount} tokens",
            entity_id=entity_id,
        )

    # =============================================
    # QUERIES
    # =============================================

    async def get_community_validation(self, entity_id: str):
        company = await self.store.get(entity_id)
        if company is None:
            raise NotFoundError("Company not found")
        return company.community_validation

    async def get_companies_by_reputation(self, min_score: int, limit: int = 50) -> List[Company]:
        companies = [
            c for c in await self.store.list_all()
            if c.community_validation.reputation_score >= min_score
        ]
        companies.sort(key=lambda c: c.community_validation.reputation_score, reverse=True)
        return companies[:limit]

    async def get_leaderboard(self, limit: int = 20) -> List[dict]:
        companies = await self.get_companies_by_reputation(0, limit)
        return [
            {
                "company_id": c.id,
                "company_name": c.basic_info.name,
                "reputation_score": c.community_validation.reputation_score,
                "reputation_staked": c.community_validation.reputation_staked,
            }
            for c in companies
        ]

    async def get_stats(self, entity_id: str) -> dict:
        cv = await self.get_community_validation(entity_id)
        return {
            "total_endorsements": len(cv.peer_endorsements),
            "total_testimonials": len(cv.employee_testimonials),
            "verified_testimonials": sum(1 for t in cv.employee_testimonials if t.verified),
            "total_vouches": len(cv.community_vouches),
            "reputation_score": cv.reputation_score,
            "reputation_staked": cv.reputation_staked,
        }

    async def get_endorsements_by_company(self, endorser_id: str) -> List[Tuple[str, Endorsement]]:
        if await self.store.get(endorser_id) is None:
            raise NotFoundError("Endorser company not found")
        return [
            (c.id, e)
            for c in await self.store.list_all()
            for e in c.community_validation.peer_endorsements
            if e.endorser_company_id == endorser_id
        ]

    async def get_vouches_by_principal(self, principal: str) -> List[Tuple[str, Vouch]]:
        return [
            (c.id, v)
            for c in await self.store.list_all()
            for v in c.community_validation.community_vouches
            if v.voucher_principal == principal
        ]

    async def get_testimonials_by_author(self, author_name: str) -> List[Tuple[str, Testimonial]]:
        return [
            (c.id, t)
            for c in await self.store.list_all()
            for t in c.community_validation.employee_testimonials
            if t.author_name == author_name
        ]
