"""Dataclasses for alert rules, alerts and notification records."""
from dataclasses import dataclass, field, replace, asdict
from datetime import datetime
from typing import ClassVar, Optional

from models.enums import AlertStatus, NotificationStatus, NotificationEvent, Severity
from utils.clock import utcnow, to_iso, from_iso


@dataclass(frozen=True)
class EscalationPolicy:
    enabled: bool = False
    delay_seconds: int = 600
    max_level: int = 3

    @classmethod
    def from_dict(cls, d):
        d = d or {}
        return cls(
            enabled=bool(d.get("enabled", False)),
            delay_seconds=d.get("delay_seconds", 600),
            max_level=d.get("max_level", 3),
        )


@dataclass(frozen=True)
class ChannelRef:
    channel: str
    recipient: str = ""

    @classmethod
    def from_value(cls, value):
        """Accept 'slack', {'channel': 'email', 'recipient': 'ops@x'} or a ChannelRef."""
        if isinstance(value, ChannelRef):
            return value
        if isinstance(value, str):
            return cls(channel=value)
        return cls(channel=value.get("channel", ""), recipient=value.get("recipient") or "")


@dataclass(frozen=True)
class AlertRule:
    """Threshold rule. Immutable: edits build a new instance."""
    id: str
    name: str
    metric_type: str
    metric_name: str
    condition: str = ">"
    threshold: float = 0.0
    severity: str = Severity.WARNING.value
    enabled: bool = True
    suppression_window_seconds: int = 3600
    escalation: EscalationPolicy = field(default_factory=EscalationPolicy)
    channels: tuple = ()
    consecutive_breaches: int = 1
    description: str = ""

    @property
    def key(self):
        return (self.metric_type, self.metric_name)

    def evolve(self, **changes):
        if "escalation" in changes and isinstance(changes["escalation"], dict):
            changes["escalation"] = EscalationPolicy.from_dict(changes["escalation"])
        if "channels" in changes:
            changes["channels"] = tuple(ChannelRef.from_value(c) for c in changes["channels"] or ())
        return replace(self, **changes)

    def to_dict(self):
        d = asdict(self)
        d["channels"] = [asdict(c) for c in self.channels]
        return d

    @classmethod
    def from_dict(cls, d):
        return cls(
            id=str(d.get("id", "")),
            name=d.get("name") or str(d.get("id", "")),
            metric_type=d.get("metric_type", ""),
            metric_name=d.get("metric_name", ""),
            condition=d.get("condition", ">"),
            threshold=d.get("threshold", 0.0),
            severity=d.get("severity", Severity.WARNING.value),
            enabled=bool(d.get("enabled", True)),
            suppression_window_seconds=d.get("suppression_window_seconds", 3600),
            escalation=EscalationPolicy.from_dict(d.get("escalation")),
            channels=tuple(ChannelRef.from_value(c) for c in d.get("channels") or ()),
            consecutive_breaches=d.get("consecutive_breaches", 1),
            description=d.get("description", ""),
        )


# --- Alert context entries ---

@dataclass(frozen=True)
class MetricSnapshot:
    kind: ClassVar[str] = "metric"
    metric_type: str
    metric_name: str
    value: float
    unit: str = ""
    timestamp: Optional[str] = None


@dataclass(frozen=True)
class RuleReference:
    kind: ClassVar[str] = "rule"
    rule_id: str
    condition: str
    threshold: float


@dataclass(frozen=True)
class Note:
    kind: ClassVar[str] = "note"
    author: str
    text: str
    at: Optional[str] = None


CONTEXT_TYPES = {t.kind: t for t in (MetricSnapshot, RuleReference, Note)}


def context_to_dict(entry):
    d = asdict(entry)
    d["kind"] = entry.kind
    return d


def context_from_dict(d):
    d = dict(d)
    entry_type = CONTEXT_TYPES.get(d.pop("kind", None))
    if entry_type is None:
        return None
    return entry_type(**d)


@dataclass
class Alert:
    rule_id: str
    rule_name: str
    metric_type: str
    metric_name: str
    value: float
    threshold: float
    severity: str
    message: str = ""
    status: str = AlertStatus.ACTIVE.value
    escalation_level: int = 0
    escalated_at: Optional[datetime] = None
    suppressed: bool = False
    suppressed_count: int = 0
    fired_at: datetime = field(default_factory=utcnow)
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    context: list = field(default_factory=list)
    id: Optional[int] = None

    @property
    def metric_snapshot(self):
        for entry in self.context:
            if isinstance(entry, MetricSnapshot):
                return entry
        return None

    @property
    def is_open(self):
        return self.status != AlertStatus.RESOLVED.value

    def to_dict(self):
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "metric_type": self.metric_type,
            "metric_name": self.metric_name,
            "value": self.value,
            "threshold": self.threshold,
            "severity": self.severity,
            "message": self.message,
            "status": self.status,
            "escalation_level": self.escalation_level,
            "escalated_at": to_iso(self.escalated_at),
            "suppressed": self.suppressed,
            "suppressed_count": self.suppressed_count,
            "fired_at": to_iso(self.fired_at),
            "acknowledged_at": to_iso(self.acknowledged_at),
            "acknowledged_by": self.acknowledged_by,
            "resolved_at": to_iso(self.resolved_at),
            "resolved_by": self.resolved_by,
            "context": [context_to_dict(c) for c in self.context],
        }

    @classmethod
    def from_dict(cls, d):
        context = [context_from_dict(c) for c in d.get("context") or []]
        return cls(
            id=d.get("id"),
            rule_id=d["rule_id"],
            rule_name=d.get("rule_name", ""),
            metric_type=d.get("metric_type", ""),
            metric_name=d.get("metric_name", ""),
            value=d.get("value"),
            threshold=d.get("threshold"),
            severity=d.get("severity", Severity.WARNING.value),
            message=d.get("message") or "",
            status=d.get("status", AlertStatus.ACTIVE.value),
            escalation_level=d.get("escalation_level") or 0,
            escalated_at=from_iso(d.get("escalated_at")),
            suppressed=bool(d.get("suppressed")),
            suppressed_count=d.get("suppressed_count") or 0,
            fired_at=from_iso(d.get("fired_at")),
            acknowledged_at=from_iso(d.get("acknowledged_at")),
            acknowledged_by=d.get("acknowledged_by"),
            resolved_at=from_iso(d.get("resolved_at")),
            resolved_by=d.get("resolved_by"),
            context=[c for c in context if c is not None],
        )


@dataclass
class NotificationRecord:
    alert_id: int
    channel: str
    recipient: str = ""
    subject: str = ""
    content: str = ""
    event: str = NotificationEvent.FIRED.value
    status: str = NotificationStatus.PENDING.value
    retry_count: int = 0
    max_retries: int = 3
    error: Optional[str] = None
    sent_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    next_attempt_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def is_terminal(self):
        return self.status in (NotificationStatus.SENT.value, NotificationStatus.FAILED.value)

    def to_dict(self):
        return {
            "id": self.id,
            "alert_id": self.alert_id,
            "channel": self.channel,
            "recipient": self.recipient,
            "subject": self.subject,
            "content": self.content,
            "event": self.event,
            "status": self.status,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "error": self.error,
            "sent_at": to_iso(self.sent_at),
            "created_at": to_iso(self.created_at),
            "next_attempt_at": to_iso(self.next_attempt_at),
        }

    @classmethod
    def from_dict(cls, d):
        return cls(
            id=d.get("id"),
            alert_id=d["alert_id"],
            channel=d["channel"],
            recipient=d.get("recipient") or "",
            subject=d.get("subject") or "",
            content=d.get("content") or "",
            event=d.get("event", NotificationEvent.FIRED.value),
            status=d.get("status", NotificationStatus.PENDING.value),
            retry_count=d.get("retry_count") or 0,
            max_retries=d.get("max_retries", 3),
            error=d.get("error"),
            sent_at=from_iso(d.get("sent_at")),
            created_at=from_iso(d.get("created_at")),
            next_attempt_at=from_iso(d.get("next_attempt_at")),
        )
