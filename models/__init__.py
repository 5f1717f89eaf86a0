"""Data models."""
from models.enums import (
    MetricType, MetricStatus, Severity, AlertStatus, NotificationStatus,
    NotificationEvent, ChannelType, HealthStatus, BackoffPolicy, CONDITIONS,
)
from models.metrics import MetricSample
from models.alerts import (
    AlertRule, EscalationPolicy, ChannelRef, Alert, NotificationRecord,
    MetricSnapshot, RuleReference, Note,
)
