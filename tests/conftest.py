"""Shared test fixtures."""
import os
import sys
import threading
import pytest
import tempfile
from datetime import datetime, timedelta, timezone

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from alerts.lifecycle import AlertLifecycleManager
from alerts.registry import RuleRegistry
from models.alerts import AlertRule, ChannelRef, EscalationPolicy
from models.database import Database
from monitor.pipeline import MonitoringPipeline
from monitor.retention import RetentionSweeper
from notifications.dispatcher import NotificationDispatcher
from utils.errors import DeliveryError

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds=0, minutes=0):
        self.now = self.now + timedelta(seconds=seconds, minutes=minutes)
        return self.now


class RecordingChannel:
    """Channel that keeps every message it is asked to send."""

    def __init__(self, name="console", timeout=1):
        self.name = name
        self.timeout = timeout
        self.sent = []
        self._lock = threading.Lock()

    def send(self, recipient, subject, content):
        with self._lock:
            self.sent.append((recipient, subject, content))


class FailingChannel:
    """Channel that raises on the first `failures` sends (every send by default)."""

    def __init__(self, name="webhook", failures=None, timeout=1):
        self.name = name
        self.timeout = timeout
        self.failures = failures
        self.attempts = 0

    def send(self, recipient, subject, content):
        self.attempts += 1
        if self.failures is None or self.attempts <= self.failures:
            raise DeliveryError(f"{self.name} is down", channel=self.name, status_code=503)


def make_rule(**overrides):
    fields = dict(
        id="cpu_high",
        name="High CPU",
        metric_type="system",
        metric_name="cpu_usage",
        condition=">",
        threshold=80.0,
        severity="warning",
        suppression_window_seconds=300,
        channels=(ChannelRef("console"),),
    )
    fields.update(overrides)
    if isinstance(fields.get("escalation"), dict):
        fields["escalation"] = EscalationPolicy.from_dict(fields["escalation"])
    return AlertRule(**fields)


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    db = Database(db_path)
    db.connect()
    yield db
    db.close()
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(db_path + suffix):
            os.unlink(db_path + suffix)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def console_channel():
    return RecordingChannel("console")


@pytest.fixture
def registry():
    return RuleRegistry(known_channels={"console", "webhook", "email", "slack", "file"})


@pytest.fixture
def dispatcher(temp_db, console_channel, clock):
    return NotificationDispatcher(temp_db, {"console": console_channel}, max_retries=3,
                                  backoff_base_seconds=1, clock=clock)


@pytest.fixture
def lifecycle(temp_db, registry, dispatcher, clock):
    return AlertLifecycleManager(temp_db, registry, dispatcher, clock=clock)


@pytest.fixture
def pipeline(temp_db, registry, dispatcher, lifecycle, clock):
    return MonitoringPipeline(temp_db, registry, dispatcher, lifecycle,
                              sweeper=RetentionSweeper(temp_db, 30, clock=clock),
                              clock=clock)
