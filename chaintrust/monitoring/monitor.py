"""
ChainTrust — Proof Monitor

Accepted proofs are not trusted forever. Every accepted proof gets a
scheduled re-check; when the backing evidence has disappeared the proof is
demoted to Removed, a public alert is raised and the company is rescored.

Queue discipline:
    - Tasks are drained FIFO by (scheduled_at, insertion order). Priority only
      decides how soon a task is first scheduled, never its queue position.
    - Tasks for the same (company, proof) pair run one after another; distinct
      pairs run concurrently, bounded by TASK_CONCURRENCY.
    - Every execution is bounded by TASK_TIMEOUT. A timeout is a failure.
    - A failed task is retried after retry_count * RETRY_BASE_DELAY and dropped
      (with a High severity event) once retry_count reaches max_retries.

Community reports accumulate per proof. REPORT_THRESHOLD distinct reporters
push the proof to Disputed and schedule a Critical re-check.
"""
import asyncio
import itertools
import time
import uuid
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

import structlog

from chaintrust.config import settings
from chaintrust.entities.model import (
    ChainType, Company, CompanyStatus, ProofStatus, VerificationProof, VerificationType,
)
from chaintrust.errors import ChainTrustError, EvidenceNotFound, NotFoundError, ValidationError
from chaintrust.guards import enforce_rate_limit
from chaintrust.monitoring.events import (
    AlertSeverity, AlertType, SecurityEventType, SecuritySeverity,
)
from chaintrust.rate_limit import REPORT
from chaintrust.trust.engine import rescore

logger = structlog.get_logger()


# =============================================
# TASK MODEL
# =============================================

class TaskType(str, Enum):
    PROOF_CHECK = "proof_check"
    CONTENT_VALIDATION = "content_validation"
    REPUTATION_UPDATE = "reputation_update"
    SECURITY_SCAN = "security_scan"
    COMMUNITY_ALERT = "community_alert"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


URGENT_PRIORITIES = {TaskPriority.HIGH, TaskPriority.CRITICAL}


def priority_delay(priority: TaskPriority) -> int:
    """Seconds until a newly scheduled check first becomes due."""
    if priority == TaskPriority.CRITICAL:
        return 0
    if priority == TaskPriority.HIGH:
        return 15 * 60
    return settings.PROOF_CHECK_DELAY


@dataclass
class MonitoringTask:
    task_type: TaskType
    entity_id: str
    scheduled_at: float
    priority: TaskPriority = TaskPriority.MEDIUM
    proof_id: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    last_error: Optional[str] = None
    created_at: float = 0.0
    seq: int = 0
    id: str = field(default_factory=lambda: f"task_{uuid.uuid4().hex[:12]}")

    @property
    def pair(self) -> Tuple[str, Optional[str]]:
        return (self.entity_id, self.proof_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "task_type": self.task_type.value,
            "entity_id": self.entity_id,
            "proof_id": self.proof_id,
            "scheduled_at": self.scheduled_at,
            "priority": self.priority.value,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "last_error": self.last_error,
        }


# =============================================
# COMMUNITY REPORTS
# =============================================

class ReportType(str, Enum):
    PROOF_DELETED = "proof_deleted"
    FALSE_INFORMATION = "false_information"
    IMPERSONATION = "impersonation"
    SUSPICIOUS = "suspicious"
    OTHER = "other"


@dataclass
class CommunityReport:
    reporter: str
    report_type: ReportType
    evidence: str
    timestamp: float


@dataclass
class ProofCheckResult:
    timestamp: float
    status_found: ProofStatus
    notes: str


@dataclass
class ProofMonitoring:
    """Check history and open reports for one proof."""
    entity_id: str
    proof_id: str
    last_checked: Optional[float] = None
    check_results: List[ProofCheckResult] = field(default_factory=list)
    community_reports: List[CommunityReport] = field(default_factory=list)

    def reporters(self) -> set:
        return {r.reporter for r in self.community_reports}


MAX_CHECK_RESULTS = 20
MAX_REPORT_EVIDENCE = 1000


# =============================================
# MONITOR
# =============================================

class ProofMonitor:
    def __init__(self, store, fetcher, events, clock, limiter=None):
        self.store = store
        self.fetcher = fetcher
        self.events = events
        self.clock = clock
        self.limiter = limiter
        self.task_timeout = settings.TASK_TIMEOUT
        self.concurrency = settings.TASK_CONCURRENCY

        self._tasks: Dict[str, MonitoringTask] = {}
        self._seq = itertools.count()
        self._in_flight: set = set()
        self._pair_locks: Dict[Tuple[str, Optional[str]], asyncio.Lock] = {}
        self._pair_users: Dict[Tuple[str, Optional[str]], int] = {}
        self._records: Dict[Tuple[str, str], ProofMonitoring] = {}
        self._failed: List[MonitoringTask] = []
        self.last_full_scan: Optional[float] = None

    def _now(self) -> float:
        return self.clock.now() if self.clock else time.time()

    # =============================================
    # SCHEDULING
    # =============================================

    def schedule_check(
        self,
        entity_id: str,
        proof_id: Optional[str] = None,
        priority: TaskPriority = TaskPriority.MEDIUM,
        task_type: TaskType = TaskType.PROOF_CHECK,
        delay: Optional[float] = None,
        max_retries: Optional[int] = None,
    ) -> MonitoringTask:
        now = self._now()
        if delay is None:
            if task_type == TaskType.REPUTATION_UPDATE:
                delay = settings.REPUTATION_UPDATE_DELAY
            else:
                delay = priority_delay(priority)

        task = MonitoringTask(
            task_type=task_type,
            entity_id=entity_id,
            proof_id=proof_id,
            scheduled_at=now + delay,
            priority=priority,
            max_retries=settings.TASK_MAX_RETRIES if max_retries is None else max_retries,
            created_at=now,
            seq=next(self._seq),
        )
        self._tasks[task.id] = task
        logger.info("monitoring_task_scheduled",
                    task_id=task.id,
                    task_type=task_type.value,
                    entity_id=entity_id,
                    proof_id=proof_id,
                    priority=priority.value,
                    due_in=delay)
        return task

    def pending_tasks(self) -> List[MonitoringTask]:
        return sorted(self._tasks.values(), key=lambda t: (t.scheduled_at, t.seq))

    def get_task(self, task_id: str) -> Optional[MonitoringTask]:
        return self._tasks.get(task_id)

    def failed_tasks(self) -> List[MonitoringTask]:
        return list(self._failed)

    # =============================================
    # DRAINING
    # =============================================

    async def run_due_tasks(self, now: Optional[float] = None, priorities=None) -> List[str]:
        """
        Execute every task due at `now`. Returns the ids of tasks that
        completed successfully, in due order.
        """
        now = self._now() if now is None else now
        due = [
            t for t in self.pending_tasks()
            if t.scheduled_at <= now
            and t.id not in self._in_flight
            and (priorities is None or t.priority in priorities)
        ]
        if not due:
            return []

        groups: "OrderedDict[tuple, List[MonitoringTask]]" = OrderedDict()
        for task in due:
            groups.setdefault(task.pair, []).append(task)
            self._in_flight.add(task.id)

        logger.info("monitor_drain_start", due=len(due), groups=len(groups))

        semaphore = asyncio.Semaphore(self.concurrency)
        completed: List[str] = []

        async def run_group(tasks: List[MonitoringTask]):
            async with semaphore:
                async with self._serialized(tasks[0].pair):
                    for task in tasks:
                        try:
                            if await self._run_task(task, now):
                                completed.append(task.id)
                        finally:
                            self._in_flight.discard(task.id)

        await asyncio.gather(*(run_group(tasks) for tasks in groups.values()))

        order = {t.id: i for i, t in enumerate(due)}
        completed.sort(key=order.get)
        logger.info("monitor_drain_complete", due=len(due), completed=len(completed))
        return completed

    async def run_priority_tasks(self, now: Optional[float] = None) -> List[str]:
        """Overdue High and Critical tasks only."""
        return await self.run_due_tasks(now, priorities=URGENT_PRIORITIES)

    @asynccontextmanager
    async def _serialized(self, pair):
        """Hold the pair's lock; the lock is dropped once nobody holds or awaits it."""
        lock = self._pair_locks.setdefault(pair, asyncio.Lock())
        self._pair_users[pair] = self._pair_users.get(pair, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._pair_users[pair] -= 1
            if self._pair_users[pair] == 0:
                del self._pair_users[pair]
                del self._pair_locks[pair]

    async def _run_task(self, task: MonitoringTask, now: float) -> bool:
        try:
            await asyncio.wait_for(self._execute(task), timeout=self.task_timeout)
        except asyncio.TimeoutError:
            error = f"timed out after {self.task_timeout}s"
        except ChainTrustError as e:
            error = str(e)
        except Exception as e:
            logger.exception("monitoring_task_crashed", task_id=task.id)
            error = f"{type(e).__name__}: {e}"
        else:
            self._tasks.pop(task.id, None)
            logger.info("monitoring_task_complete",
                        task_id=task.id, task_type=task.task_type.value, entity_id=task.entity_id)
            return True

        self._fail(task, error, now)
        return False

    def _fail(self, task: MonitoringTask, error: str, now: float):
        task.retry_count += 1
        task.last_error = error

        if task.retry_count >= task.max_retries:
            self._tasks.pop(task.id, None)
            self._failed.append(task)
            self.events.record(
                SecurityEventType.PROOF_TAMPERING,
                None,
                SecuritySeverity.HIGH,
                f"Monitoring task failed permanently: {task.id} ({error})",
                entity_id=task.entity_id,
            )
            return

        task.scheduled_at = now + task.retry_count * settings.RETRY_BASE_DELAY
        logger.warning("monitoring_task_retry",
                       task_id=task.id,
                       retry_count=task.retry_count,
                       next_at=task.scheduled_at,
                       error=error)

    async def _execute(self, task: MonitoringTask):
        if task.task_type == TaskType.PROOF_CHECK:
            await self._check_proofs(task)
        elif task.task_type == TaskType.REPUTATION_UPDATE:
            await self._update_reputation(task)
        elif task.task_type in (TaskType.CONTENT_VALIDATION,
                                TaskType.SECURITY_SCAN,
                                TaskType.COMMUNITY_ALERT):
            logger.debug("monitoring_task_noop", task_id=task.id, task_type=task.task_type.value)
        else:
            raise ValidationError(f"Unknown task type: {task.task_type}")

    # =============================================
    # PROOF CHECKS
    # =============================================

    async def _check_proofs(self, task: MonitoringTask):
        company = await self.store.get(task.entity_id)
        if company is None:
            raise NotFoundError("Company not found")

        if task.proof_id is not None:
            proof = company.find_proof(task.proof_id)
            if proof is None:
                raise NotFoundError("Proof not found")
            await self.check_proof(company, proof)
            return

        # Whole-company check: report each failure, keep going
        for proof in company.web3_identity.verification_proofs:
            if proof.status == ProofStatus.REMOVED:
                continue
            try:
                await self.check_proof(company, proof)
            except ChainTrustError as e:
                self.events.record(
                    SecurityEventType.PROOF_TAMPERING,
                    None,
                    SecuritySeverity.HIGH,
                    f"Proof check failed for company {company.id}: {e}",
                    entity_id=company.id,
                )

    async def check_proof(self, company: Company, proof: VerificationProof) -> ProofStatus:
        """
        Re-run the existence check for one proof and apply the outcome.
        Evidence is fetched before the company record is locked.
        """
        if proof.status == ProofStatus.REMOVED:
            return proof.status

        try:
            await self._fetch_evidence(proof)
        except EvidenceNotFound as e:
            await self.handle_missing_proof(company.id, proof, str(e))
            return ProofStatus.REMOVED

        self._record_check(company.id, proof.proof_id, ProofStatus.ACTIVE,
                           "Proof verified as still accessible")

        if proof.status == ProofStatus.DISPUTED:
            await self._resolve_dispute(company.id, proof.proof_id)
        return ProofStatus.ACTIVE

    async def _fetch_evidence(self, proof: VerificationProof):
        vtype = proof.verification_type
        ref = proof.check_reference

        if vtype == VerificationType.GITHUB:
            await self.fetcher.check_identity_api("github", ref)
        elif vtype == VerificationType.DOMAIN:
            txt = await self.fetcher.check_domain_txt(ref)
            if proof.challenge_data and proof.challenge_data not in txt:
                raise EvidenceNotFound("dns", ref, f"Verification TXT record no longer present on {ref}")
        elif vtype.is_chain:
            chain = ChainType(vtype.value)
            if not self.fetcher.supports_chain(chain):
                logger.debug("proof_check_skipped", proof_id=proof.proof_id, chain=chain.value)
                return
            await self.fetcher.check_chain_activity(chain, ref)
        else:
            await self.fetcher.check_identity_api(vtype.value, ref)

    def _record_check(self, entity_id: str, proof_id: str, status: ProofStatus, notes: str):
        record = self._record(entity_id, proof_id)
        now = self._now()
        record.last_checked = now
        record.check_results.append(ProofCheckResult(timestamp=now, status_found=status, notes=notes))
        del record.check_results[:-MAX_CHECK_RESULTS]

    def _record(self, entity_id: str, proof_id: str) -> ProofMonitoring:
        key = (entity_id, proof_id)
        record = self._records.get(key)
        if record is None:
            record = ProofMonitoring(entity_id=entity_id, proof_id=proof_id)
            self._records[key] = record
        return record

    def get_proof_monitoring(self, entity_id: str, proof_id: str) -> Optional[ProofMonitoring]:
        return self._records.get((entity_id, proof_id))

    async def handle_missing_proof(self, entity_id: str, proof: VerificationProof, reason: str = ""):
        demoted = False

        def mutate(company: Company):
            nonlocal demoted
            stored = company.find_proof(proof.proof_id)
            if stored is None:
                return
            demoted = stored.transition(ProofStatus.REMOVED)
            if demoted:
                rescore(company)
                company.updated_at = self._now()

        if not await self.store.update(entity_id, mutate):
            raise NotFoundError("Company not found")

        self._record_check(entity_id, proof.proof_id, ProofStatus.REMOVED, reason or "Proof no longer accessible")
        if not demoted:
            return

        vtype = proof.verification_type.value
        self.events.create_alert(
            AlertType.PROOF_DELETED,
            entity_id,
            AlertSeverity.ERROR,
            f"TRUST ALERT: {vtype} verification proof has been deleted after verification. "
            f"Original proof is no longer accessible.",
            evidence=[proof.proof_url],
        )
        self.events.record(
            SecurityEventType.PROOF_TAMPERING,
            None,
            SecuritySeverity.HIGH,
            f"Verification proof deleted: {proof.proof_url} for company {entity_id}",
            entity_id=entity_id,
        )
        self.schedule_check(
            entity_id,
            priority=TaskPriority.HIGH,
            task_type=TaskType.REPUTATION_UPDATE,
            max_retries=1,
        )

    async def _resolve_dispute(self, entity_id: str, proof_id: str):
        restored = False

        def mutate(company: Company):
            nonlocal restored
            stored = company.find_proof(proof_id)
            if stored is not None and stored.status == ProofStatus.DISPUTED:
                restored = stored.transition(ProofStatus.ACTIVE)
                rescore(company)
                company.updated_at = self._now()

        await self.store.update(entity_id, mutate)
        if restored:
            self._record(entity_id, proof_id).community_reports.clear()
            logger.info("proof_dispute_resolved", entity_id=entity_id, proof_id=proof_id)

    # =============================================
    # REPUTATION
    # =============================================

    async def _update_reputation(self, task: MonitoringTask):
        flagged = False
        score = 0

        def mutate(company: Company):
            nonlocal flagged, score
            rescore(company)
            score = company.verification_score
            if score < settings.FLAG_THRESHOLD and company.status != CompanyStatus.SUSPENDED:
                flagged = company.status != CompanyStatus.FLAGGED
                company.status = CompanyStatus.FLAGGED
            company.updated_at = self._now()

        if not await self.store.update(task.entity_id, mutate):
            raise NotFoundError("Company not found")

        logger.info("reputation_updated", entity_id=task.entity_id, verification_score=score, flagged=flagged)
        if flagged:
            self.events.create_alert(
                AlertType.REPUTATION_DROPPED,
                task.entity_id,
                AlertSeverity.WARNING,
                f"Company flagged: verification score dropped to {score}",
            )

    # =============================================
    # COMMUNITY REPORTS
    # =============================================

    async def submit_report(
        self,
        entity_id: str,
        reporter: str,
        report_type: ReportType,
        evidence: str,
        proof_id: Optional[str] = None,
    ) -> str:
        if self.limiter is not None:
            await enforce_rate_limit(self.limiter, self.events, reporter, REPORT, "community reports")

        evidence = (evidence or "").strip()
        if not evidence:
            raise ValidationError("Report evidence cannot be empty")
        if len(evidence) > MAX_REPORT_EVIDENCE:
            raise ValidationError(f"Report evidence cannot exceed {MAX_REPORT_EVIDENCE} characters")

        company = await self.store.get(entity_id)
        if company is None:
            raise NotFoundError("Company not found")

        if proof_id is not None:
            if company.find_proof(proof_id) is None:
                raise NotFoundError("Proof not found")
            record = self._record(entity_id, proof_id)
            if reporter in record.reporters():
                raise ValidationError("You have already reported this proof")
            record.community_reports.append(CommunityReport(
                reporter=reporter,
                report_type=report_type,
                evidence=evidence,
                timestamp=self._now(),
            ))
            if len(record.reporters()) >= settings.REPORT_THRESHOLD:
                await self._dispute(entity_id, proof_id, len(record.reporters()))

        self.events.record(
            SecurityEventType.COMMUNITY_REPORT,
            reporter,
            SecuritySeverity.MEDIUM,
            f"Community report: {report_type.value} - {evidence}",
            entity_id=entity_id,
        )
        return "Report submitted successfully"

    async def _dispute(self, entity_id: str, proof_id: str, reports: int):
        disputed = False

        def mutate(company: Company):
            nonlocal disputed
            proof = company.find_proof(proof_id)
            if proof is not None:
                disputed = proof.transition(ProofStatus.DISPUTED)
                if disputed:
                    rescore(company)
                    company.updated_at = self._now()

        await self.store.update(entity_id, mutate)
        if not disputed:
            return

        self.schedule_check(entity_id, proof_id, priority=TaskPriority.CRITICAL)
        self.events.create_alert(
            AlertType.PROOF_DISPUTED,
            entity_id,
            AlertSeverity.WARNING,
            f"Verification proof {proof_id} disputed after {reports} community reports",
        )

    # =============================================
    # SCANS & STATS
    # =============================================

    async def full_scan(self, now: Optional[float] = None) -> int:
        """Schedule a check for every live proof that has none pending."""
        now = self._now() if now is None else now
        pending = {t.pair for t in self._tasks.values() if t.task_type == TaskType.PROOF_CHECK}
        live = set()
        scheduled = 0
        for company in await self.store.list_all():
            for proof in company.web3_identity.verification_proofs:
                if proof.status == ProofStatus.REMOVED:
                    continue
                live.add((company.id, proof.proof_id))
                if (company.id, proof.proof_id) in pending:
                    continue
                self.schedule_check(company.id, proof.proof_id, priority=TaskPriority.LOW)
                scheduled += 1

        # History of removed or deleted proofs is not kept past a scan
        stale = [key for key in self._records if key not in live]
        for key in stale:
            del self._records[key]

        self.last_full_scan = now
        logger.info("monitor_full_scan", scheduled=scheduled, pruned=len(stale))
        return scheduled

    async def get_monitoring_stats(self) -> dict:
        now = self._now()
        stats = {
            "total_proofs_monitored": 0,
            "active_proofs": 0,
            "removed_proofs": 0,
            "disputed_proofs": 0,
            "last_full_scan": self.last_full_scan,
            "security_events_today": len(self.events.events_since(now - 86400)),
            "failed_checks_count": sum(1 for t in self._tasks.values() if t.retry_count > 0),
            "permanently_failed_tasks": len(self._failed),
            "pending_tasks": len(self._tasks),
        }
        for company in await self.store.list_all():
            for proof in company.web3_identity.verification_proofs:
                stats["total_proofs_monitored"] += 1
                stats[f"{proof.status.value}_proofs"] += 1
        return stats
