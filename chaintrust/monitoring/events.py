"""
ChainTrust — Audit Events & Alerts

The event sink every component reports to. record() is fire-and-forget:
it appends to a bounded in-process history, mirrors the event to structlog
and returns. High and Critical events also raise a public system alert.

Alerts are immutable once created except for the acknowledged flag.
"""
import time
import uuid
from collections import deque
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Deque, Dict, List, Optional

import structlog

from chaintrust.config import settings

logger = structlog.get_logger()


class SecurityEventType(str, Enum):
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    SUSPICIOUS_INPUT = "suspicious_input"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    SECURITY_SCAN = "security_scan"
    REPEATED_FAILED_VERIFICATION = "repeated_failed_verification"
    PROOF_TAMPERING = "proof_tampering"
    COMMUNITY_REPORT = "community_report"
    XSS_ATTEMPT = "xss_attempt"


class SecuritySeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertType(str, Enum):
    PROOF_DELETED = "proof_deleted"
    PROOF_DISPUTED = "proof_disputed"
    REPUTATION_DROPPED = "reputation_dropped"
    SECURITY_BREACH = "security_breach"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


_ESCALATING = {SecuritySeverity.HIGH, SecuritySeverity.CRITICAL}


@dataclass
class SecurityEvent:
    event_type: SecurityEventType
    severity: SecuritySeverity
    message: str
    timestamp: float
    actor: Optional[str] = None
    entity_id: Optional[str] = None
    event_id: str = field(default_factory=lambda: f"evt_{uuid.uuid4().hex[:12]}")

    def to_dict(self) -> dict:
        d = asdict(self)
        d["event_type"] = self.event_type.value
        d["severity"] = self.severity.value
        return d


@dataclass
class CommunityAlert:
    alert_type: AlertType
    entity_id: str
    severity: AlertSeverity
    message: str
    created_at: float
    evidence: List[str] = field(default_factory=list)
    acknowledged: bool = False
    alert_id: str = field(default_factory=lambda: f"alert_{uuid.uuid4().hex[:12]}")

    def to_dict(self) -> dict:
        d = asdict(self)
        d["alert_type"] = self.alert_type.value
        d["severity"] = self.severity.value
        return d


class EventLog:
    """In-process EventSink with alert board."""

    def __init__(self, clock=None, history_size: int = None):
        self.clock = clock
        self._events: Deque[SecurityEvent] = deque(maxlen=history_size or settings.EVENT_HISTORY_SIZE)
        self._alerts: Dict[str, CommunityAlert] = {}

    def _now(self) -> float:
        return self.clock.now() if self.clock else time.time()

    # =============================================
    # SECURITY EVENTS
    # =============================================

    def record(
        self,
        event_type: SecurityEventType,
        actor: Optional[str],
        severity: SecuritySeverity,
        message: str,
        entity_id: Optional[str] = None,
    ) -> SecurityEvent:
        event = SecurityEvent(
            event_type=event_type,
            severity=severity,
            message=message,
            timestamp=self._now(),
            actor=actor,
            entity_id=entity_id,
        )
        self._events.append(event)

        log = logger.warning if severity in _ESCALATING else logger.info
        log("security_event",
            event_type=event_type.value,
            severity=severity.value,
            actor=actor,
            entity_id=entity_id,
            message=message)

        if severity in _ESCALATING:
            self.create_alert(
                AlertType.SECURITY_BREACH,
                entity_id or "system",
                AlertSeverity.CRITICAL,
                f"Security event: {message}",
            )
        return event

    def events(self, limit: Optional[int] = None) -> List[SecurityEvent]:
        """Most recent first."""
        items = list(reversed(self._events))
        return items[:limit] if limit else items

    def events_since(self, since: float) -> List[SecurityEvent]:
        return [e for e in self._events if e.timestamp >= since]

    # =============================================
    # ALERTS
    # =============================================

    def create_alert(
        self,
        alert_type: AlertType,
        entity_id: str,
        severity: AlertSeverity,
        message: str,
        evidence: Optional[List[str]] = None,
    ) -> CommunityAlert:
        alert = CommunityAlert(
            alert_type=alert_type,
            entity_id=entity_id,
            severity=severity,
            message=message,
            created_at=self._now(),
            evidence=list(evidence or []),
        )
        self._alerts[alert.alert_id] = alert
        logger.info("community_alert_created",
                    alert_id=alert.alert_id,
                    alert_type=alert_type.value,
                    entity_id=entity_id,
                    severity=severity.value)
        return alert

    def alerts(self, acknowledged: Optional[bool] = None) -> List[CommunityAlert]:
        alerts = sorted(self._alerts.values(), key=lambda a: a.created_at, reverse=True)
        if acknowledged is None:
            return alerts
        return [a for a in alerts if a.acknowledged == acknowledged]

    def get_alert(self, alert_id: str) -> Optional[CommunityAlert]:
        return self._alerts.get(alert_id)

    def acknowledge_alert(self, alert_id: str) -> bool:
        alert = self._alerts.get(alert_id)
        if alert is None:
            return False
        alert.acknowledged = True
        logger.info("community_alert_acknowledged", alert_id=alert_id)
        return True
