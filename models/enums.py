"""Enums for metric types, statuses, severities and channels."""
from enum import Enum


class MetricType(str, Enum):
    SYSTEM = "system"
    APPLICATION = "application"
    DATABASE = "database"
    CACHE = "cache"
    BUSINESS = "business"


class MetricStatus(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


SEVERITY_ORDER = {"info": 0, "warning": 1, "critical": 2, "emergency": 3}


class AlertStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    RETRYING = "retrying"
    FAILED = "failed"


class NotificationEvent(str, Enum):
    FIRED = "fired"
    ESCALATED = "escalated"
    RESOLVED = "resolved"


class ChannelType(str, Enum):
    EMAIL = "email"
    WEBHOOK = "webhook"
    SLACK = "slack"
    DINGTALK = "dingtalk"
    TELEGRAM = "telegram"
    SMS = "sms"
    CONSOLE = "console"
    FILE = "file"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class BackoffPolicy(str, Enum):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


CONDITIONS = (">", ">=", "<", "<=", "==", "!=")
