"""
ChainTrust - Registry API

Authenticated endpoints (Bearer token, caller = `sub`):
    POST   /v1/registry/companies/{id}/challenges              - Create domain or chain challenge
    POST   /v1/registry/companies/{id}/challenges/verify       - Verify an outstanding challenge
    POST   /v1/registry/companies/{id}/github                  - Verify GitHub organization
    POST   /v1/registry/companies/{id}/social                  - Verify social proof post
    POST   /v1/registry/companies/{id}/portfolio/verify        - Re-check declared chain addresses
    POST   /v1/registry/companies/{id}/endorsements            - Endorse as one of your companies
    DELETE /v1/registry/companies/{id}/endorsements/{endorser}
    POST   /v1/registry/companies/{id}/testimonials
    DELETE /v1/registry/companies/{id}/testimonials/{author}
    POST   /v1/registry/companies/{id}/testimonials/{author}/verify
    POST   /v1/registry/companies/{id}/testimonials/{author}/flag
    POST   /v1/registry/companies/{id}/vouches
    DELETE /v1/registry/companies/{id}/vouches
    POST   /v1/registry/companies/{id}/stake
    POST   /v1/registry/companies/{id}/reports                 - Community report
    POST   /v1/registry/monitoring/alerts/{alert_id}/ack       - Moderators or the company owner
    GET    /v1/registry/monitoring/events                      - Security event log, moderators only

Public endpoints:
    GET    /v1/registry/companies/{id}/scores
    GET    /v1/registry/companies/{id}/risk
    GET    /v1/registry/companies/{id}/fraud
    GET    /v1/registry/companies/{id}/integrity
    GET    /v1/registry/companies/{id}/community
    GET    /v1/registry/leaderboard
    GET    /v1/registry/instructions/{verification_type}
    GET    /v1/registry/monitoring/stats
    GET    /v1/registry/monitoring/alerts
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
import structlog

from chaintrust.config import settings
from chaintrust.entities.model import VerificationType
from chaintrust.errors import (
    AuthorizationError, ChainTrustError, ChallengeExpiredError, NotFoundError,
    RateLimitError, TransportError, ValidationError,
)
from chaintrust.monitoring.monitor import ReportType
from chaintrust.security import require_caller
from chaintrust.service import TrustEngine, shared_engine
from chaintrust.verification.challenges import ChallengeMethod, MethodKind
from chaintrust.verification.verifier import ChallengeVerifier

logger = structlog.get_logger()

router = APIRouter(prefix="/v1/registry", tags=["registry"])


def get_engine() -> TrustEngine:
    return shared_engine()


def http_error(exc: ChainTrustError) -> HTTPException:
    """Map an engine error to its HTTP status."""
    if isinstance(exc, RateLimitError):
        return HTTPException(
            status_code=429,
            detail={
                "error": "rate_limit_exceeded",
                "action_class": exc.action_class,
                "limit": exc.limit,
                "retry_after": exc.retry_after,
            },
            headers={"Retry-After": str(exc.retry_after)},
        )
    if isinstance(exc, (ValidationError, ChallengeExpiredError)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, AuthorizationError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, TransportError):
        logger.warning("evidence_source_failed", source=exc.source, error=str(exc))
        return HTTPException(status_code=502, detail=f"Evidence source unavailable: {exc.source}")
    return HTTPException(status_code=500, detail=str(exc))


# =============================================
# REQUEST MODELS
# =============================================

class MethodRequest(BaseModel):
    kind: MethodKind = MethodKind.SIGN_MESSAGE
    message: Optional[str] = Field(None, max_length=500)
    verification_code: Optional[str] = Field(None, max_length=200)
    variable_name: Optional[str] = Field(None, max_length=100)
    value: Optional[str] = Field(None, max_length=200)
    transaction_data: Optional[str] = Field(None, max_length=500)


class ChallengeRequest(BaseModel):
    target_kind: str = Field(..., min_length=1, max_length=32)
    target: Optional[str] = Field(None, max_length=500)
    method: Optional[MethodRequest] = None


class VerifyChallengeRequest(BaseModel):
    target_kind: str = Field(..., min_length=1, max_length=32)
    target: Optional[str] = Field(None, max_length=500)


class GithubRequest(BaseModel):
    org: str = Field(..., min_length=1, max_length=39)


class SocialRequest(BaseModel):
    platform: str
    url: str = Field(..., max_length=4096)


class EndorsementRequest(BaseModel):
    endorser_id: str
    message: str


class TestimonialRequest(BaseModel):
    author_name: str
    role: str
    message: str


class VouchRequest(BaseModel):
    message: str


class StakeRequest(BaseModel):
    amount: int = Field(..., gt=0)


class ReportRequest(BaseModel):
    report_type: ReportType
    evidence: str
    proof_id: Optional[str] = None


# =============================================
# VERIFICATION
# =============================================

@router.post("/companies/{company_id}/challenges")
async def create_challenge(
    company_id: str,
    req: ChallengeRequest,
    caller: str = Depends(require_caller),
    engine: TrustEngine = Depends(get_engine),
):
    method = ChallengeMethod(**req.method.model_dump()) if req.method else None
    try:
        challenge = await engine.create_challenge(company_id, caller, req.target_kind, req.target, method)
    except ChainTrustError as e:
        raise http_error(e)
    return challenge.to_dict()


@router.post("/companies/{company_id}/challenges/verify")
async def verify_challenge(
    company_id: str,
    req: VerifyChallengeRequest,
    caller: str = Depends(require_caller),
    engine: TrustEngine = Depends(get_engine),
):
    try:
        result = await engine.verify_challenge(company_id, caller, req.target_kind, req.target)
    except ChainTrustError as e:
        raise http_error(e)
    return result.to_dict()


@router.post("/companies/{company_id}/github")
async def verify_github(
    company_id: str,
    req: GithubRequest,
    caller: str = Depends(require_caller),
    engine: TrustEngine = Depends(get_engine),
):
    try:
        result = await engine.verifier.verify_github(company_id, req.org, caller)
    except ChainTrustError as e:
        raise http_error(e)
    return result.to_dict()


@router.post("/companies/{company_id}/social")
async def verify_social(
    company_id: str,
    req: SocialRequest,
    caller: str = Depends(require_caller),
    engine: TrustEngine = Depends(get_engine),
):
    try:
        result = await engine.verifier.verify_social(company_id, req.platform, req.url, caller)
    except ChainTrustError as e:
        raise http_error(e)
    return result.to_dict()


@router.post("/companies/{company_id}/portfolio/verify")
async def verify_portfolio(
    company_id: str,
    caller: str = Depends(require_caller),
    engine: TrustEngine = Depends(get_engine),
):
    try:
        results = await engine.verifier.verify_portfolio(company_id, caller)
    except ChainTrustError as e:
        raise http_error(e)
    return {"company_id": company_id, "results": results}


@router.get("/instructions/{verification_type}")
async def instructions(verification_type: VerificationType, company_id: Optional[str] = None):
    return {
        "verification_type": verification_type.value,
        "instructions": ChallengeVerifier.instructions(verification_type, company_id),
    }


# =============================================
# SCORES
# =============================================

@router.get("/companies/{company_id}/scores")
async def scores(company_id: str, engine: TrustEngine = Depends(get_engine)):
    try:
        result = await engine.compute_scores(company_id)
    except ChainTrustError as e:
        raise http_error(e)
    return result.to_dict()


@router.get("/companies/{company_id}/risk")
async def risk(company_id: str, engine: TrustEngine = Depends(get_engine)):
    try:
        assessment = await engine.verifier.assess_risk(company_id)
    except ChainTrustError as e:
        raise http_error(e)
    return assessment.to_dict()


@router.get("/companies/{company_id}/fraud")
async def fraud(company_id: str, engine: TrustEngine = Depends(get_engine)):
    try:
        patterns = await engine.check_fraud(company_id)
    except ChainTrustError as e:
        raise http_error(e)
    return {"company_id": company_id, "patterns": patterns}


@router.get("/companies/{company_id}/integrity")
async def integrity(company_id: str, engine: TrustEngine = Depends(get_engine)):
    try:
        report = await engine.fraud.validate_integrity(company_id)
    except ChainTrustError as e:
        raise http_error(e)
    return report.to_dict()


# =============================================
# COMMUNITY
# =============================================

@router.post("/companies/{company_id}/endorsements")
async def add_endorsement(
    company_id: str,
    req: EndorsementRequest,
    caller: str = Depends(require_caller),
    engine: TrustEngine = Depends(get_engine),
):
    try:
        await engine.community.add_endorsement(company_id, req.endorser_id, req.message, caller)
    except ChainTrustError as e:
        raise http_error(e)
    return {"status": "ok"}


@router.delete("/companies/{company_id}/endorsements/{endorser_id}")
async def remove_endorsement(
    company_id: str,
    endorser_id: str,
    caller: str = Depends(require_caller),
    engine: TrustEngine = Depends(get_engine),
):
    try:
        await engine.community.remove_endorsement(company_id, endorser_id, caller)
    except ChainTrustError as e:
        raise http_error(e)
    return {"status": "ok"}


@router.post("/companies/{company_id}/testimonials")
async def add_testimonial(
    company_id: str,
    req: TestimonialRequest,
    caller: str = Depends(require_caller),
    engine: TrustEngine = Depends(get_engine),
):
    try:
        await engine.community.add_testimonial(company_id, req.author_name, req.role, req.message, caller)
    except ChainTrustError as e:
        raise http_error(e)
    return {"status": "ok"}


@router.delete("/companies/{company_id}/testimonials/{author_name}")
async def remove_testimonial(
    company_id: str,
    author_name: str,
    caller: str = Depends(require_caller),
    engine: TrustEngine = Depends(get_engine),
):
    try:
        await engine.community.remove_testimonial(company_id, author_name, caller)
    except ChainTrustError as e:
        raise http_error(e)
    return {"status": "ok"}


@router.post("/companies/{company_id}/testimonials/{author_name}/verify")
async def verify_testimonial(
    company_id: str,
    author_name: str,
    caller: str = Depends(require_caller),
    engine: TrustEngine = Depends(get_engine),
):
    try:
        await engine.community.verify_testimonial(company_id, author_name, caller)
    except ChainTrustError as e:
        raise http_error(e)
    return {"status": "ok"}


@router.post("/companies/{company_id}/testimonials/{author_name}/flag")
async def flag_testimonial(
    company_id: str,
    author_name: str,
    caller: str = Depends(require_caller),
    engine: TrustEngine = Depends(get_engine),
):
    try:
        await engine.community.flag_testimonial(company_id, author_name, caller)
    except ChainTrustError as e:
        raise http_error(e)
    return {"status": "ok"}


@router.post("/companies/{company_id}/vouches")
async def add_vouch(
    company_id: str,
    req: VouchRequest,
    caller: str = Depends(require_caller),
    engine: TrustEngine = Depends(get_engine),
):
    try:
        vouch = await engine.community.add_vouch(company_id, req.message, caller)
    except ChainTrustError as e:
        raise http_error(e)
    return {"status": "ok", "weight": vouch.weight}


@router.delete("/companies/{company_id}/vouches")
async def remove_vouch(
    company_id: str,
    caller: str = Depends(require_caller),
    engine: TrustEngine = Depends(get_engine),
):
    try:
        await engine.community.remove_vouch(company_id, caller)
    except ChainTrustError as e:
        raise http_error(e)
    return {"status": "ok"}


@router.post("/companies/{company_id}/stake")
async def stake(
    company_id: str,
    req: StakeRequest,
    caller: str = Depends(require_caller),
    engine: TrustEngine = Depends(get_engine),
):
    try:
        await engine.community.stake_reputation(company_id, req.amount, caller)
    except ChainTrustError as e:
        raise http_error(e)
    return {"status": "ok"}


@router.get("/companies/{company_id}/community")
async def community_stats(company_id: str, engine: TrustEngine = Depends(get_engine)):
    try:
        return await engine.community.get_stats(company_id)
    except ChainTrustError as e:
        raise http_error(e)


@router.get("/leaderboard")
async def leaderboard(
    limit: int = Query(20, ge=1, le=100),
    engine: TrustEngine = Depends(get_engine),
):
    return {"leaderboard": await engine.community.get_leaderboard(limit)}


# =============================================
# MONITORING
# =============================================

@router.post("/companies/{company_id}/reports")
async def submit_report(
    company_id: str,
    req: ReportRequest,
    caller: str = Depends(require_caller),
    engine: TrustEngine = Depends(get_engine),
):
    try:
        message = await engine.monitor.submit_report(
            company_id, caller, req.report_type, req.evidence, req.proof_id,
        )
    except ChainTrustError as e:
        raise http_error(e)
    return {"status": "ok", "message": message}


@router.get("/monitoring/stats")
async def monitoring_stats(engine: TrustEngine = Depends(get_engine)):
    return await engine.monitor.get_monitoring_stats()


@router.get("/monitoring/alerts")
async def alerts(
    acknowledged: Optional[bool] = None,
    engine: TrustEngine = Depends(get_engine),
):
    return {"alerts": [a.to_dict() for a in engine.events.alerts(acknowledged)]}


@router.post("/monitoring/alerts/{alert_id}/ack")
async def acknowledge_alert(
    alert_id: str,
    caller: str = Depends(require_caller),
    engine: TrustEngine = Depends(get_engine),
):
    try:
        await engine.acknowledge_alert(alert_id, caller)
    except ChainTrustError as e:
        raise http_error(e)
    return {"status": "ok"}


@router.get("/monitoring/events")
async def security_events(
    limit: int = Query(100, ge=1, le=1000),
    caller: str = Depends(require_caller),
    engine: TrustEngine = Depends(get_engine),
):
    if caller not in settings.MODERATORS:
        raise HTTPException(status_code=403, detail="Unauthorized: moderators only")
    return {"events": [e.to_dict() for e in engine.events.events(limit)]}
