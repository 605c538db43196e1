"""
ChainTrust — Guards
Shared pre-checks run before any expensive or abusable work: throttling,
entity lookup and ownership. Each refusal is recorded as a security event
before the error is raised.
"""
from chaintrust.entities.model import Company
from chaintrust.errors import AuthorizationError, NotFoundError, RateLimitError
from chaintrust.monitoring.events import SecurityEventType, SecuritySeverity


async def enforce_rate_limit(limiter, events, identity: str, action_class: str, action: str):
    if await limiter.allow(identity, action_class):
        return
    limit, _ = limiter.limits[action_class]
    retry_after = limiter.retry_after(identity, action_class)
    events.record(
        SecurityEventType.RATE_LIMIT_EXCEEDED,
        identity,
        SecuritySeverity.MEDIUM,
        f"Rate limit exceeded for {action}: {limit} per window",
    )
    raise RateLimitError(action_class, limit, retry_after)


async def load_company(store, events, entity_id: str, caller: str, action: str) -> Company:
    company = await store.get(entity_id)
    if company is None:
        events.record(
            SecurityEventType.SUSPICIOUS_INPUT,
            caller,
            SecuritySeverity.LOW,
            f"{action} attempted for non-existent company: {entity_id}",
        )
        raise NotFoundError("Company not found")
    return company


def require_owner(events, company: Company, caller: str, action: str):
    if company.created_by == caller:
        return
    events.record(
        SecurityEventType.UNAUTHORIZED_ACCESS,
        caller,
        SecuritySeverity.MEDIUM,
        f"Unauthorized {action}: principal {caller} is not the owner of company {company.id}",
        entity_id=company.id,
    )
    raise AuthorizationError(f"Unauthorized: only the company owner can {action}")


async def load_owned_company(store, events, entity_id: str, caller: str, action: str) -> Company:
    company = await load_company(store, events, entity_id, caller, action)
    require_owner(events, company, caller, action)
    return company
