import pytest

from chaintrust.entities.model import Endorsement, Testimonial
from chaintrust.errors import NotFoundError
from chaintrust.monitoring.events import SecurityEventType
from chaintrust.trust.fraud import detect_patterns, integrity_score

from tests.conftest import make_company


def _endorsement(endorser_id, timestamp):
    return Endorsement(endorser_company_id=endorser_id, message="solid team",
                       timestamp=timestamp, endorser_principal=f"{endorser_id}-owner")


def _testimonial(author, verified=False):
    return Testimonial(author_name=author, role="Engineer", message="great place",
                       timestamp=0.0, verified=verified)


async def test_clean_company_has_no_patterns(engine, acme):
    assert await engine.check_fraud("acme") == []
    report = await engine.fraud.validate_integrity("acme")
    assert report.score == 100
    assert report.is_valid


async def test_rapid_endorsements_in_the_last_hour(engine, store, clock):
    company = make_company()
    now = clock.now()
    company.community_validation.peer_endorsements = [
        _endorsement(f"e{i}", now - 60 * i) for i in range(6)
    ]
    store.put(company)

    patterns = await engine.check_fraud("acme")

    assert patterns == ["Rapid endorsement creation: 6 endorsements in the last hour"]


async def test_old_endorsements_are_not_rapid(engine, store, clock):
    company = make_company()
    now = clock.now()
    company.community_validation.peer_endorsements = (
        [_endorsement(f"recent{i}", now - 60) for i in range(5)]
        + [_endorsement(f"old{i}", now - 7200) for i in range(5)]
    )
    store.put(company)

    assert await engine.check_fraud("acme") == []


async def test_author_shared_across_many_companies(engine, store):
    for company_id in ("acme", "beta", "gamma", "delta"):
        company = make_company(company_id)
        company.community_validation.employee_testimonials = [_testimonial("Eve")]
        store.put(company)

    patterns = await engine.check_fraud("acme")

    assert patterns == ["Author 'Eve' has testimonials across 4 different companies"]


async def test_author_on_two_other_companies_is_fine(engine, store):
    for company_id in ("acme", "beta", "gamma"):
        company = make_company(company_id)
        company.community_validation.employee_testimonials = [_testimonial("Eve")]
        store.put(company)

    assert await engine.check_fraud("acme") == []


async def test_mutual_endorsement_and_integrity_debits(engine, store, clock, events):
    acme = make_company("acme")
    acme.community_validation.peer_endorsements = [_endorsement("beta", clock.now() - 86400)]
    acme.community_validation.employee_testimonials = [
        _testimonial("Ann"), _testimonial("Bob"), _testimonial("Cy", verified=True),
    ]
    beta = make_company("beta", owner="bob")
    beta.community_validation.peer_endorsements = [_endorsement("acme", clock.now() - 86400)]
    store.put(acme)
    store.put(beta)

    report = await engine.fraud.validate_integrity("acme")

    assert report.patterns == ["Mutual endorsement detected with company beta"]
    # 2 unverified testimonials, 1 low-reputation endorser, 1 pattern
    assert report.score == 100 - 10 - 10 - 15
    assert report.is_valid
    assert report.to_dict()["valid"] is True
    suspicious = [e for e in events.events() if e.event_type == SecurityEventType.SUSPICIOUS_INPUT]
    assert len(suspicious) == 1


async def test_integrity_below_threshold_is_invalid(engine, store, events):
    company = make_company()
    company.community_validation.employee_testimonials = [_testimonial(f"author{i}") for i in range(11)]
    store.put(company)

    report = await engine.fraud.validate_integrity("acme")

    assert report.score == 45
    assert not report.is_valid
    assert any("integrity concern" in e.message for e in events.events())


async def test_unknown_company(engine):
    with pytest.raises(NotFoundError):
        await engine.check_fraud("ghost")
    with pytest.raises(NotFoundError):
        await engine.fraud.validate_integrity("ghost")


def test_detectors_are_pure(clock):
    acme = make_company("acme")
    acme.community_validation.peer_endorsements = [_endorsement("beta", clock.now())]
    beta = make_company("beta")
    beta.community_validation.peer_endorsements = [_endorsement("acme", clock.now())]
    beta.community_validation.reputation_score = 50
    snapshot = {"acme": acme, "beta": beta}

    patterns = detect_patterns(acme, snapshot, clock.now())

    assert len(patterns) == 1
    assert integrity_score(acme, snapshot, patterns) == 85
    assert len(acme.community_validation.peer_endorsements) == 1
