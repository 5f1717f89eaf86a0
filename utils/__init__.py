"""Utility modules for the operations monitor."""
from utils.logger import setup_logging
from utils.formatters import format_value, format_compact, format_duration, format_severity, time_ago
from utils.errors import (
    MonitorError, RuleValidationError, RuleNotFoundError, AlertNotFoundError,
    AlertStateError, StoreError, DeliveryError,
)
from utils.rwlock import RWLock
from utils.http_client import HTTPClient
from utils.counters import Counters
