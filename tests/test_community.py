import pytest

from chaintrust.config import settings
from chaintrust.entities.model import CompanyStatus, Testimonial
from chaintrust.errors import AuthorizationError, NotFoundError, RateLimitError, ValidationError
from chaintrust.monitoring.events import SecurityEventType, SecuritySeverity
from chaintrust.trust.engine import rescore

from tests.conftest import OWNER, make_company


@pytest.fixture
def endorsers(store):
    owners = {"e1": "bob", "e2": "carol", "e3": "dave"}
    for company_id, owner in owners.items():
        store.put(make_company(company_id, owner=owner))
    return owners


# =============================================
# ENDORSEMENTS
# =============================================

async def test_endorsements_raise_reputation_and_status(engine, store, acme, endorsers):
    for company_id, owner in endorsers.items():
        await engine.community.add_endorsement("acme", company_id, "Shipped with them", owner)

    company = await store.get("acme")
    assert len(company.community_validation.peer_endorsements) == 3
    assert company.community_validation.reputation_score >= 30
    assert company.status == CompanyStatus.VERIFIED

    stats = await engine.community.get_stats("acme")
    assert stats["total_endorsements"] == 3


async def test_endorsement_rejections(engine, store, events, acme, endorsers):
    community = engine.community

    with pytest.raises(ValidationError):
        await community.add_endorsement("acme", "acme", "I am great", OWNER)
    with pytest.raises(AuthorizationError):
        await community.add_endorsement("acme", "e1", "Not my company", OWNER)
    with pytest.raises(NotFoundError):
        await community.add_endorsement("ghost", "e1", "Who?", "bob")

    await community.add_endorsement("acme", "e1", "Great partner", "bob")
    with pytest.raises(ValidationError):
        await community.add_endorsement("acme", "e1", "Again", "bob")


async def test_markup_in_messages_is_rejected(engine, events, acme, endorsers):
    with pytest.raises(ValidationError):
        await engine.community.add_endorsement("acme", "e1", "<script>alert(1)</script>", "bob")

    [attempt] = [e for e in events.events() if e.event_type == SecurityEventType.XSS_ATTEMPT]
    assert attempt.severity == SecuritySeverity.HIGH
    assert attempt.actor == "bob"


async def test_remove_endorsement_rescores(engine, store, acme, endorsers):
    await engine.community.add_endorsement("acme", "e1", "Great partner", "bob")
    with_endorsement = (await store.get("acme")).community_validation.reputation_score

    with pytest.raises(AuthorizationError):
        await engine.community.remove_endorsement("acme", "e1", "mallory")
    await engine.community.remove_endorsement("acme", "e1", "bob")

    company = await store.get("acme")
    assert company.community_validation.peer_endorsements == []
    assert company.community_validation.reputation_score < with_endorsement


# =============================================
# TESTIMONIALS
# =============================================

async def test_testimonial_lifecycle(engine, store, acme, monkeypatch):
    monkeypatch.setattr(settings, "MODERATORS", ["mod"])
    community = engine.community

    await community.add_testimonial("acme", "Ann", "Engineer", "Great culture", "ann")
    with pytest.raises(ValidationError):
        await community.add_testimonial("acme", "Ann", "Engineer", "Twice", "ann2")

    with pytest.raises(AuthorizationError):
        await community.verify_testimonial("acme", "Ann", "mallory")
    await community.verify_testimonial("acme", "Ann", OWNER)
    assert (await store.get("acme")).community_validation.employee_testimonials[0].verified

    with pytest.raises(AuthorizationError):
        await community.flag_testimonial("acme", "Ann", "mallory")
    await community.flag_testimonial("acme", "Ann", "mod")
    assert not (await store.get("acme")).community_validation.employee_testimonials[0].verified

    with pytest.raises(NotFoundError):
        await community.verify_testimonial("acme", "Nobody", OWNER)

    await community.remove_testimonial("acme", "Ann", OWNER)
    assert (await store.get("acme")).community_validation.employee_testimonials == []


async def test_testimonial_field_limits(engine, acme):
    with pytest.raises(ValidationError):
        await engine.community.add_testimonial("acme", "   ", "Engineer", "hi", "ann")
    with pytest.raises(ValidationError):
        await engine.community.add_testimonial("acme", "Ann", "Engineer", "x" * 1001, "ann")


async def test_general_writes_are_rate_limited(engine, acme):
    for i in range(10):
        await engine.community.add_testimonial("acme", f"author{i}", "Engineer", "Good", "bob")

    with pytest.raises(RateLimitError) as exc:
        await engine.community.add_testimonial("acme", "author10", "Engineer", "Good", "bob")
    assert exc.value.action_class == "http"


# =============================================
# VOUCHES & STAKING
# =============================================

async def test_vouch_weight_grows_with_voucher_history(engine, store):
    for i in range(4):
        store.put(make_company(f"c{i}"))

    weights = [(await engine.community.add_vouch(f"c{i}", "legit", "bob")).weight for i in range(4)]

    assert weights == [1, 1, 1, 2]
    assert len(await engine.community.get_vouches_by_principal("bob")) == 4


async def test_duplicate_vouch_and_removal(engine, store, acme):
    await engine.community.add_vouch("acme", "legit", "bob")
    with pytest.raises(ValidationError):
        await engine.community.add_vouch("acme", "still legit", "bob")

    await engine.community.remove_vouch("acme", "bob")
    assert (await store.get("acme")).community_validation.community_vouches == []


async def test_staking_requires_integrity(engine, store):
    company = make_company()
    company.community_validation.employee_testimonials = [
        Testimonial(author_name=f"a{i}", role="Eng", message="ok", timestamp=0.0) for i in range(11)
    ]
    store.put(company)

    with pytest.raises(ValidationError):
        await engine.community.stake_reputation("acme", 100, OWNER)
    assert (await store.get("acme")).community_validation.reputation_staked == 0


async def test_staking_adds_bonus(engine, store):
    company = make_company()
    rescore(company)
    store.put(company)
    before = company.community_validation.reputation_score

    with pytest.raises(AuthorizationError):
        await engine.community.stake_reputation("acme", 100, "mallory")
    with pytest.raises(ValidationError):
        await engine.community.stake_reputation("acme", 0, OWNER)
    await engine.community.stake_reputation("acme", 100, OWNER)

    company = await store.get("acme")
    assert company.community_validation.reputation_staked == 100
    assert company.community_validation.reputation_score == before + 4


# =============================================
# QUERIES
# =============================================

async def test_leaderboard_orders_by_reputation(engine, store, endorsers):
    store.put(make_company("acme"))
    await engine.community.add_endorsement("acme", "e1", "Great partner", "bob")

    board = await engine.community.get_leaderboard(limit=2)

    assert len(board) == 2
    assert board[0]["company_id"] == "acme"
    assert board[0]["reputation_score"] >= board[1]["reputation_score"]


async def test_endorsement_eligibility(engine, store, acme, endorsers):
    assert not await engine.community.validate_endorsement_eligibility("e1", "acme")

    endorser = await store.get("e1")
    endorser.community_validation.reputation_score = 15
    store.put(endorser)
    assert await engine.community.validate_endorsement_eligibility("e1", "acme")


async def test_lookup_by_endorser_and_author(engine, acme, endorsers):
    await engine.community.add_endorsement("acme", "e1", "Great partner", "bob")
    await engine.community.add_testimonial("acme", "Ann", "Engineer", "Great culture", "ann")

    [(target, endorsement)] = await engine.community.get_endorsements_by_company("e1")
    assert (target, endorsement.endorser_principal) == ("acme", "bob")
    assert [cid for cid, _ in await engine.community.get_testimonials_by_author("Ann")] == ["acme"]

    with pytest.raises(NotFoundError):
        await engine.community.get_endorsements_by_company("ghost")
