"""Tests for the retention sweeper."""
from datetime import timedelta

import pytest

from conftest import T0
from models.alerts import Alert, NotificationRecord
from models.database import OPEN_STATUSES
from models.metrics import MetricSample
from monitor.retention import RetentionSweeper

OLD = T0 - timedelta(days=40)


def _alert(db, fired_at=OLD, resolved_at=None):
    alert = db.create_alert(Alert("cpu_high", "High CPU", "system", "cpu_usage", 95.0, 80.0,
                                  "warning", fired_at=fired_at))
    if resolved_at:
        db.transition_alert(alert.id, OPEN_STATUSES, "resolved", resolved_at, actor="system")
    return alert


def test_rejects_non_positive_days(temp_db):
    with pytest.raises(ValueError):
        RetentionSweeper(temp_db, 0)


def test_cutoff(temp_db, clock):
    assert RetentionSweeper(temp_db, 7, clock=clock).cutoff() == T0 - timedelta(days=7)


def test_old_samples_removed(temp_db, clock):
    temp_db.save_metric(MetricSample("system", "cpu_usage", 10.0, timestamp=OLD))
    temp_db.save_metric(MetricSample("system", "cpu_usage", 20.0, timestamp=T0))
    result = RetentionSweeper(temp_db, 30, clock=clock).sweep()
    assert result.metrics == 1
    assert [m.value for m in temp_db.get_metrics()] == [20.0]


def test_open_alerts_survive_with_their_notifications(temp_db, clock):
    alert = _alert(temp_db)
    temp_db.create_notification(NotificationRecord(alert.id, "console", status="sent", created_at=OLD))
    result = RetentionSweeper(temp_db, 30, clock=clock).sweep()
    assert result.alerts == 0
    assert result.notifications == 0
    assert temp_db.get_alert(alert.id) is not None


def test_resolved_alerts_use_resolution_time(temp_db, clock):
    expired = _alert(temp_db, resolved_at=OLD + timedelta(hours=1))
    # fired long ago but resolved recently: kept
    recent = _alert(temp_db, resolved_at=T0 - timedelta(days=1))
    temp_db.create_notification(NotificationRecord(expired.id, "console", status="sent",
                                                   created_at=OLD))
    temp_db.create_notification(NotificationRecord(expired.id, "email", status="failed",
                                                   created_at=T0 - timedelta(days=1)))

    result = RetentionSweeper(temp_db, 30, clock=clock).sweep()
    assert result.alerts == 1
    assert result.notifications == 2
    assert result.total == 3
    assert temp_db.get_alert(expired.id) is None
    assert temp_db.get_alert(recent.id) is not None
    assert temp_db.get_notifications(alert_id=expired.id) == []


def test_unsent_records_are_kept(temp_db, clock):
    alert = _alert(temp_db, resolved_at=OLD)
    record = temp_db.create_notification(NotificationRecord(alert.id, "webhook", status="retrying",
                                                            created_at=OLD))
    RetentionSweeper(temp_db, 30, clock=clock).sweep()
    assert temp_db.get_notification(record.id).status == "retrying"


def test_result_to_dict(temp_db, clock):
    sweeper = RetentionSweeper(temp_db, 30, clock=clock)
    d = sweeper.sweep().to_dict()
    assert d["cutoff"].startswith("2024-01-31")
    assert sweeper.last_result.total == 0
