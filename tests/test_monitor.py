import pytest

from chaintrust.config import settings
from chaintrust.entities.model import (
    BasicInfo, CompanyStatus, ProofStatus, VerificationProof, VerificationType,
)
from chaintrust.errors import (
    AuthorizationError, NotFoundError, RateLimitError, TransportError, ValidationError,
)
from chaintrust.monitoring.events import (
    AlertSeverity, AlertType, SecurityEventType, SecuritySeverity,
)
from chaintrust.monitoring.monitor import ReportType, TaskPriority, TaskType
from chaintrust.trust.engine import rescore

from tests.conftest import OWNER, make_company


def _verified_company(*extra_proofs):
    """Complete profile, GitHub and domain identity, one Active GitHub proof."""
    company = make_company(basic_info=BasicInfo(
        name="Acme Labs", description="DeFi tooling", website="https://acme.xyz", focus_areas=["defi"],
    ))
    company.web3_identity.github_org = "acme-labs"
    company.web3_identity.domain_verified = True
    proof = VerificationProof(
        VerificationType.GITHUB, "https://github.com/acme-labs", 0.0, reference="acme-labs",
    )
    company.web3_identity.verification_proofs.extend([proof, *extra_proofs])
    rescore(company)
    return company, proof


def _alerts_of(events, alert_type):
    return [a for a in events.alerts() if a.alert_type == alert_type]


# =============================================
# SCHEDULING & DRAINING
# =============================================

def test_priority_decides_initial_delay(engine, clock):
    monitor = engine.monitor
    now = clock.now()

    assert monitor.schedule_check("acme", priority=TaskPriority.CRITICAL).scheduled_at == now
    assert monitor.schedule_check("acme", priority=TaskPriority.HIGH).scheduled_at == now + 900
    assert monitor.schedule_check("acme", priority=TaskPriority.MEDIUM).scheduled_at == now + 3600
    assert monitor.schedule_check("acme", priority=TaskPriority.LOW).scheduled_at == now + 3600
    update = monitor.schedule_check("acme", task_type=TaskType.REPUTATION_UPDATE)
    assert update.scheduled_at == now + 300
    assert update.max_retries == 3


async def test_drained_queue_is_idempotent(engine, store, fetcher, clock):
    company, proof = _verified_company()
    store.put(company)
    before = (await store.get("acme")).to_dict()

    assert await engine.run_scheduled_tasks(clock.now()) == []
    engine.monitor.schedule_check("acme", proof.proof_id)
    assert await engine.run_scheduled_tasks(clock.now()) == []

    assert (await store.get("acme")).to_dict() == before
    assert fetcher.calls == []


async def test_due_tasks_complete_in_due_order(engine, clock):
    monitor = engine.monitor
    late = monitor.schedule_check("c", task_type=TaskType.SECURITY_SCAN, delay=30)
    early = monitor.schedule_check("a", task_type=TaskType.CONTENT_VALIDATION, delay=10)
    middle = monitor.schedule_check("b", task_type=TaskType.COMMUNITY_ALERT, delay=20)
    tie = monitor.schedule_check("d", task_type=TaskType.SECURITY_SCAN, delay=20)

    completed = await monitor.run_due_tasks(clock.now() + 60)

    assert completed == [early.id, middle.id, tie.id, late.id]
    assert monitor.pending_tasks() == []


async def test_priority_pass_only_runs_urgent_tasks(engine, clock):
    monitor = engine.monitor
    low = monitor.schedule_check("a", task_type=TaskType.SECURITY_SCAN, priority=TaskPriority.LOW, delay=0)
    critical = monitor.schedule_check("b", task_type=TaskType.SECURITY_SCAN, priority=TaskPriority.CRITICAL)

    assert await monitor.run_priority_tasks(clock.now()) == [critical.id]
    assert [t.id for t in monitor.pending_tasks()] == [low.id]


async def test_same_proof_checks_never_overlap(engine, store, fetcher, clock):
    company, proof = _verified_company()
    store.put(company)
    fetcher.identities[("github", "acme-labs")] = {"public_repos": 2}
    fetcher.delay = 0.02

    first = engine.monitor.schedule_check("acme", proof.proof_id, priority=TaskPriority.CRITICAL)
    second = engine.monitor.schedule_check("acme", proof.proof_id, priority=TaskPriority.CRITICAL)
    completed = await engine.run_scheduled_tasks(clock.now())

    assert completed == [first.id, second.id]
    assert fetcher.max_active["acme-labs"] == 1


async def test_pair_locks_are_released_after_drain(engine, store, fetcher, clock):
    company, proof = _verified_company()
    store.put(company)
    fetcher.identities[("github", "acme-labs")] = {"public_repos": 2}
    fetcher.delay = 0.01
    monitor = engine.monitor

    for _ in range(3):
        monitor.schedule_check("acme", proof.proof_id, priority=TaskPriority.CRITICAL)
    monitor.schedule_check("other", task_type=TaskType.SECURITY_SCAN, delay=0)
    await engine.run_scheduled_tasks(clock.now())

    assert monitor.pending_tasks() == []
    assert monitor._pair_locks == {}
    assert monitor._pair_users == {}


# =============================================
# RETRIES
# =============================================

async def test_failing_task_retries_linearly_then_drops(engine, store, fetcher, events, clock):
    company, proof = _verified_company()
    store.put(company)
    fetcher.failures["acme-labs"] = TransportError("github", "unexpected status 503", 503)
    monitor = engine.monitor
    task = monitor.schedule_check("acme", proof.proof_id, priority=TaskPriority.CRITICAL)
    now = clock.now()

    assert await monitor.run_due_tasks(now) == []
    assert task.retry_count == 1
    assert task.scheduled_at == now + 3600
    assert "503" in task.last_error

    assert await monitor.run_due_tasks(now + 3599) == []
    assert task.retry_count == 1

    now += 3600
    await monitor.run_due_tasks(now)
    assert task.retry_count == 2
    assert task.scheduled_at == now + 7200
    assert monitor.get_task(task.id) is task

    await monitor.run_due_tasks(now + 7200)
    assert task.retry_count == 3
    assert monitor.get_task(task.id) is None
    assert monitor.failed_tasks() == [task]

    failures = [e for e in events.events() if e.message.startswith("Monitoring task failed permanently")]
    assert len(failures) == 1
    assert failures[0].severity == SecuritySeverity.HIGH
    assert (await store.get("acme")).find_proof(proof.proof_id).status == ProofStatus.ACTIVE


async def test_timeout_counts_as_failure(engine, store, fetcher, clock):
    company, proof = _verified_company()
    store.put(company)
    fetcher.identities[("github", "acme-labs")] = {"public_repos": 2}
    fetcher.delay = 0.5
    engine.monitor.task_timeout = 0.05

    task = engine.monitor.schedule_check("acme", proof.proof_id, priority=TaskPriority.CRITICAL)
    assert await engine.run_scheduled_tasks(clock.now()) == []

    assert task.retry_count == 1
    assert "timed out" in task.last_error


async def test_missing_company_fails_the_task(engine, clock):
    task = engine.monitor.schedule_check("ghost", "proof_x", priority=TaskPriority.CRITICAL)

    assert await engine.run_scheduled_tasks(clock.now()) == []
    assert task.last_error == "Company not found"


# =============================================
# PROOF REMOVAL
# =============================================

async def test_removed_proof_demotes_and_flags(engine, store, events, clock):
    company, proof = _verified_company()
    before = company.verification_score
    assert company.status == CompanyStatus.PENDING
    store.put(company)

    check = engine.monitor.schedule_check("acme", proof.proof_id, priority=TaskPriority.CRITICAL)
    assert await engine.run_scheduled_tasks(clock.now()) == [check.id]

    stored = await store.get("acme")
    assert stored.find_proof(proof.proof_id).status == ProofStatus.REMOVED
    assert stored.verification_score <= before - 20

    [alert] = _alerts_of(events, AlertType.PROOF_DELETED)
    assert alert.severity == AlertSeverity.ERROR
    assert alert.evidence == ["https://github.com/acme-labs"]
    assert alert.message.startswith("TRUST ALERT: github verification proof has been deleted")
    tampering = [e for e in events.events() if e.event_type == SecurityEventType.PROOF_TAMPERING]
    assert tampering and tampering[0].severity == SecuritySeverity.HIGH

    [update] = engine.monitor.pending_tasks()
    assert update.task_type == TaskType.REPUTATION_UPDATE
    assert update.priority == TaskPriority.HIGH
    assert update.scheduled_at == clock.now() + 300

    clock.advance(300)
    assert await engine.run_scheduled_tasks() == [update.id]

    stored = await store.get("acme")
    assert stored.verification_score < 30
    assert stored.status == CompanyStatus.FLAGGED
    assert _alerts_of(events, AlertType.REPUTATION_DROPPED)


async def test_reputation_update_leaves_healthy_company_alone(engine, store, clock):
    company, _ = _verified_company()
    assert company.verification_score >= 30
    store.put(company)

    engine.monitor.schedule_check("acme", task_type=TaskType.REPUTATION_UPDATE, delay=0)
    await engine.run_scheduled_tasks(clock.now())

    assert (await store.get("acme")).status != CompanyStatus.FLAGGED


async def test_reputation_update_never_unsuspends(engine, store, clock):
    company = make_company(status=CompanyStatus.SUSPENDED)
    store.put(company)

    engine.monitor.schedule_check("acme", task_type=TaskType.REPUTATION_UPDATE, delay=0)
    await engine.run_scheduled_tasks(clock.now())

    assert (await store.get("acme")).status == CompanyStatus.SUSPENDED


async def test_domain_proof_without_token_is_removed(engine, store, fetcher, clock):
    domain = VerificationProof(
        VerificationType.DOMAIN, "https://acme.xyz", 0.0, challenge_data="tok123", reference="acme.xyz",
    )
    company, _ = _verified_company(domain)
    store.put(company)
    fetcher.txt["acme.xyz"] = "chaintrust-verification=other"

    engine.monitor.schedule_check("acme", domain.proof_id, priority=TaskPriority.CRITICAL)
    await engine.run_scheduled_tasks(clock.now())

    assert (await store.get("acme")).find_proof(domain.proof_id).status == ProofStatus.REMOVED


async def test_chain_without_source_is_skipped(engine, store, fetcher, clock):
    solana = VerificationProof(VerificationType.SOLANA, "https://solscan.io/account/x", 0.0, reference="x")
    company, _ = _verified_company(solana)
    store.put(company)

    task = engine.monitor.schedule_check("acme", solana.proof_id, priority=TaskPriority.CRITICAL)

    assert await engine.run_scheduled_tasks(clock.now()) == [task.id]
    assert fetcher.calls == []
    assert (await store.get("acme")).find_proof(solana.proof_id).status == ProofStatus.ACTIVE


async def test_whole_company_check_reports_each_failure(engine, store, fetcher, events, clock):
    domain = VerificationProof(
        VerificationType.DOMAIN, "https://acme.xyz", 0.0, challenge_data="tok123", reference="acme.xyz",
    )
    company, github = _verified_company(domain)
    store.put(company)
    fetcher.failures["acme.xyz"] = TransportError("dns", "SERVFAIL")

    task = engine.monitor.schedule_check("acme", priority=TaskPriority.CRITICAL)
    assert await engine.run_scheduled_tasks(clock.now()) == [task.id]

    stored = await store.get("acme")
    assert stored.find_proof(github.proof_id).status == ProofStatus.REMOVED
    assert stored.find_proof(domain.proof_id).status == ProofStatus.ACTIVE
    assert any(e.message.startswith("Proof check failed for company acme") for e in events.events())


# =============================================
# COMMUNITY REPORTS
# =============================================

async def test_three_reports_dispute_proof_and_schedule_critical_check(engine, store, events, clock):
    company, proof = _verified_company()
    before = company.verification_score
    store.put(company)
    monitor = engine.monitor

    for reporter in ("r1", "r2"):
        await monitor.submit_report("acme", reporter, ReportType.PROOF_DELETED, "post is gone", proof.proof_id)
    assert (await store.get("acme")).find_proof(proof.proof_id).status == ProofStatus.ACTIVE
    assert monitor.pending_tasks() == []

    message = await monitor.submit_report("acme", "r3", ReportType.IMPERSONATION, "fake org", proof.proof_id)
    assert message == "Report submitted successfully"

    stored = await store.get("acme")
    assert stored.find_proof(proof.proof_id).status == ProofStatus.DISPUTED
    assert stored.verification_score < before

    [task] = monitor.pending_tasks()
    assert task.priority == TaskPriority.CRITICAL
    assert task.proof_id == proof.proof_id
    assert task.scheduled_at == clock.now()
    assert _alerts_of(events, AlertType.PROOF_DISPUTED)
    reports = [e for e in events.events() if e.event_type == SecurityEventType.COMMUNITY_REPORT]
    assert len(reports) == 3


async def test_disputed_proof_that_passes_check_is_restored(engine, store, fetcher, clock):
    company, proof = _verified_company()
    store.put(company)
    for reporter in ("r1", "r2", "r3"):
        await engine.monitor.submit_report("acme", reporter, ReportType.SUSPICIOUS, "looks off", proof.proof_id)
    fetcher.identities[("github", "acme-labs")] = {"public_repos": 5}

    await engine.run_scheduled_tasks(clock.now())

    stored = await store.get("acme")
    assert stored.find_proof(proof.proof_id).status == ProofStatus.ACTIVE
    record = engine.monitor.get_proof_monitoring("acme", proof.proof_id)
    assert record.community_reports == []
    assert record.check_results[-1].status_found == ProofStatus.ACTIVE


async def test_report_validation(engine, store):
    company, proof = _verified_company()
    store.put(company)
    monitor = engine.monitor

    await monitor.submit_report("acme", "r1", ReportType.OTHER, "first", proof.proof_id)
    with pytest.raises(ValidationError):
        await monitor.submit_report("acme", "r1", ReportType.OTHER, "again", proof.proof_id)
    with pytest.raises(ValidationError):
        await monitor.submit_report("acme", "r2", ReportType.OTHER, "   ", proof.proof_id)
    with pytest.raises(ValidationError):
        await monitor.submit_report("acme", "r3", ReportType.OTHER, "x" * 1001, proof.proof_id)
    with pytest.raises(NotFoundError):
        await monitor.submit_report("acme", "r4", ReportType.OTHER, "evidence", "proof_missing")
    with pytest.raises(NotFoundError):
        await monitor.submit_report("ghost", "r5", ReportType.OTHER, "evidence")


async def test_reports_are_rate_limited(engine, acme):
    for _ in range(3):
        await engine.monitor.submit_report("acme", "r1", ReportType.OTHER, "spam")
    with pytest.raises(RateLimitError):
        await engine.monitor.submit_report("acme", "r1", ReportType.OTHER, "spam")


# =============================================
# SCANS & STATS
# =============================================

async def test_full_scan_schedules_live_proofs_once(engine, store, clock):
    removed = VerificationProof(VerificationType.TWITTER, "https://x.com/acme/status/1", 0.0,
                                status=ProofStatus.REMOVED)
    company, proof = _verified_company(removed)
    store.put(company)

    assert await engine.monitor.full_scan() == 1
    [task] = engine.monitor.pending_tasks()
    assert (task.proof_id, task.priority) == (proof.proof_id, TaskPriority.LOW)

    assert await engine.monitor.full_scan() == 0
    assert engine.monitor.last_full_scan == clock.now()


async def test_monitoring_stats(engine, store, clock):
    disputed = VerificationProof(VerificationType.DOMAIN, "https://acme.xyz", 0.0, status=ProofStatus.DISPUTED)
    removed = VerificationProof(VerificationType.TWITTER, "https://x.com/a", 0.0, status=ProofStatus.REMOVED)
    company, _ = _verified_company(disputed, removed)
    store.put(company)
    engine.monitor.schedule_check("acme")

    stats = await engine.monitor.get_monitoring_stats()

    assert stats["total_proofs_monitored"] == 3
    assert (stats["active_proofs"], stats["disputed_proofs"], stats["removed_proofs"]) == (1, 1, 1)
    assert stats["pending_tasks"] == 1
    assert stats["permanently_failed_tasks"] == 0
    assert stats["last_full_scan"] is None


async def test_full_scan_forgets_history_of_removed_proofs(engine, store, fetcher, clock):
    domain = VerificationProof(
        VerificationType.DOMAIN, "https://acme.xyz", 0.0, challenge_data="tok123", reference="acme.xyz",
    )
    company, github = _verified_company(domain)
    store.put(company)
    fetcher.txt["acme.xyz"] = "chaintrust-verification=tok123"
    monitor = engine.monitor

    monitor.schedule_check("acme", priority=TaskPriority.CRITICAL)
    await engine.run_scheduled_tasks(clock.now())
    assert monitor.get_proof_monitoring("acme", github.proof_id) is not None
    assert monitor.get_proof_monitoring("acme", domain.proof_id) is not None

    await monitor.full_scan()

    assert monitor.get_proof_monitoring("acme", github.proof_id) is None
    assert monitor.get_proof_monitoring("acme", domain.proof_id) is not None


# =============================================
# ALERTS
# =============================================

async def test_alert_acknowledgement_is_owner_or_moderator_only(engine, events, acme, monkeypatch):
    monkeypatch.setattr(settings, "MODERATORS", ["mod"])
    alert = events.create_alert(AlertType.PROOF_DELETED, "acme", AlertSeverity.ERROR, "gone")
    orphan = events.create_alert(AlertType.PROOF_DELETED, "ghost", AlertSeverity.ERROR, "gone")

    with pytest.raises(AuthorizationError):
        await engine.acknowledge_alert(alert.alert_id, "mallory")
    with pytest.raises(AuthorizationError):
        await engine.acknowledge_alert(orphan.alert_id, OWNER)
    with pytest.raises(NotFoundError):
        await engine.acknowledge_alert("alert_missing", "mod")
    assert not alert.acknowledged
    denied = [e for e in events.events() if e.event_type == SecurityEventType.UNAUTHORIZED_ACCESS]
    assert [e.actor for e in denied] == [OWNER, "mallory"]

    await engine.acknowledge_alert(alert.alert_id, OWNER)
    await engine.acknowledge_alert(orphan.alert_id, "mod")
    assert events.alerts(acknowledged=False) == []
