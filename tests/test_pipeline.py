"""Tests for the monitoring pipeline."""
import threading
import time
from datetime import timedelta

import pytest
import yaml

from config import load_config
from conftest import T0, RecordingChannel, make_rule
from monitor.pipeline import MonitoringPipeline, build_pipeline
from monitor.sampler import CallableSource, MetricSampler
from utils.errors import StoreError


def _wait_for(predicate, timeout=5):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


class TestRecordMetric:
    def test_breach_fires_and_notifies(self, pipeline, registry, temp_db, console_channel):
        registry.add(make_rule())
        sample = pipeline.record_metric("system", "cpu_usage", 91, threshold=80, unit="%")
        assert sample.id is not None
        assert sample.status == "critical"

        alerts = temp_db.get_alerts()
        assert len(alerts) == 1
        assert alerts[0].value == 91
        assert console_channel.sent[0][1] == "[WARNING] High CPU"
        assert pipeline.stats["samples_evaluated"] == 1

    def test_sample_status_uses_sample_threshold(self, pipeline):
        assert pipeline.record_metric("system", "memory_usage", 70, threshold=85).status == "warning"
        assert pipeline.record_metric("system", "memory_usage", 10, threshold=85).status == "normal"
        assert pipeline.record_metric("business", "orders", 5).status == "normal"

    def test_no_matching_rule(self, pipeline, temp_db):
        pipeline.record_metric("app", "latency_ms", 999)
        assert temp_db.get_alerts() == []
        assert temp_db.count_metrics() == 1

    def test_full_cycle(self, pipeline, registry, temp_db, console_channel, clock):
        registry.add(make_rule(suppression_window_seconds=0))
        pipeline.record_metric("system", "cpu_usage", 95)
        clock.advance(minutes=1)
        pipeline.record_metric("system", "cpu_usage", 40)
        alert = temp_db.get_alerts()[0]
        assert alert.status == "resolved"
        subjects = [s for _, s, _ in console_channel.sent]
        assert subjects == ["[WARNING] High CPU", "[RESOLVED] High CPU"]


class TestCollect:
    def test_collect_once_records_every_reading(self, temp_db, registry, dispatcher, lifecycle, clock):
        sampler = MetricSampler([CallableSource("custom", "queue_depth", lambda: 7, threshold=10),
                                 CallableSource("custom", "errors", lambda: 0)])
        p = MonitoringPipeline(temp_db, registry, dispatcher, lifecycle, sampler=sampler, clock=clock)
        samples = p.collect_once()
        assert [s.name for s in samples] == ["queue_depth", "errors"]
        assert samples[0].status == "normal"
        assert temp_db.count_metrics() == 2

    def test_without_sampler(self, pipeline):
        assert pipeline.collect_once() == []


class TestAdministration:
    def test_rule_crud(self, pipeline):
        pipeline.create_rule(make_rule(id="b_rule"))
        pipeline.create_rule(make_rule(id="a_rule", enabled=False))
        assert [r.id for r in pipeline.list_rules()] == ["a_rule", "b_rule"]
        assert [r.id for r in pipeline.list_rules(enabled_only=True)] == ["b_rule"]
        updated = pipeline.update_rule("b_rule", threshold=95)
        assert updated.threshold == 95.0
        pipeline.delete_rule("a_rule")
        assert [r.id for r in pipeline.list_rules()] == ["b_rule"]

    def test_operator_actions(self, pipeline, registry, temp_db):
        registry.add(make_rule())
        pipeline.record_metric("system", "cpu_usage", 95)
        alert_id = temp_db.get_alerts()[0].id
        assert pipeline.acknowledge(alert_id, "alice").status == "acknowledged"
        assert pipeline.resolve(alert_id, "alice", note="fixed").status == "resolved"


class TestHealthAndStats:
    def test_health_levels(self, pipeline, registry):
        assert pipeline.get_health()["status"] == "healthy"

        registry.add(make_rule())
        pipeline.record_metric("system", "cpu_usage", 95)
        health = pipeline.get_health()
        assert health["status"] == "warning"
        assert health["active_alerts"] == 1

        registry.add(make_rule(id="disk", metric_name="disk_usage", severity="critical"))
        pipeline.record_metric("system", "disk_usage", 99)
        assert pipeline.get_health()["status"] == "critical"

    def test_acknowledged_alerts_do_not_count_as_active(self, pipeline, registry, temp_db):
        registry.add(make_rule(severity="critical"))
        pipeline.record_metric("system", "cpu_usage", 95)
        pipeline.acknowledge(temp_db.get_alerts()[0].id, "bob")
        health = pipeline.get_health()
        assert health["status"] == "healthy"
        assert health["acknowledged_alerts"] == 1

    def test_stats_sections(self, pipeline, registry):
        registry.add(make_rule())
        pipeline.record_metric("system", "cpu_usage", 95)
        stats = pipeline.get_stats()
        assert set(stats) == {"alerts", "notifications", "rules", "metrics", "pipeline",
                              "lifecycle", "dispatcher"}
        assert stats["alerts"]["total"] == 1
        assert stats["lifecycle"]["fired"] == 1
        assert stats["dispatcher"]["sent"] == 1
        assert stats["rules"] == {"total": 1, "enabled": 1}
        assert stats["metrics"]["stored"] == 1

    def test_sweep(self, pipeline, temp_db):
        pipeline.record_metric("system", "cpu_usage", 10, timestamp=T0 - timedelta(days=60))
        assert pipeline.sweep().metrics == 1


class TestThreaded:
    def test_start_evaluates_in_background(self, pipeline, registry, temp_db, console_channel):
        registry.add(make_rule())
        pipeline.start()
        try:
            assert pipeline.running
            pipeline.record_metric("system", "cpu_usage", 95)
            assert _wait_for(lambda: len(console_channel.sent) == 1)
            assert pipeline.dispatcher.get_stats()["workers"] == 2
        finally:
            pipeline.stop()
        assert not pipeline.running
        assert len(temp_db.get_alerts()) == 1

    def test_stop_drains_queue(self, pipeline, registry, temp_db):
        registry.add(make_rule(suppression_window_seconds=0))
        pipeline.start()
        for i in range(20):
            pipeline.record_metric("system", "cpu_usage", 90 + (i % 2) * -50)
        pipeline.stop()
        assert pipeline.stats["samples_evaluated"] == 20

    def test_start_resumes_pending_records(self, temp_db, registry, dispatcher, lifecycle, clock,
                                           console_channel):
        from models.alerts import Alert, NotificationRecord
        alert = temp_db.create_alert(Alert("r", "R", "system", "cpu_usage", 1.0, 0.0, "info"))
        temp_db.create_notification(NotificationRecord(alert.id, "console", subject="left over"))
        p = MonitoringPipeline(temp_db, registry, dispatcher, lifecycle, clock=clock)
        p.start()
        try:
            assert _wait_for(lambda: len(console_channel.sent) == 1)
        finally:
            p.stop()
        assert temp_db.get_notifications()[0].status == "sent"

    def test_run_forever_returns_on_stop_event(self, pipeline):
        t = threading.Thread(target=pipeline.run_forever)
        t.start()
        assert _wait_for(lambda: pipeline.running)
        pipeline.stop_event.set()
        t.join(timeout=10)
        assert not t.is_alive()
        assert not pipeline.running


def test_store_failure_is_counted(pipeline, temp_db, monkeypatch):
    def broken(sample):
        raise StoreError("disk full")

    monkeypatch.setattr(temp_db, "save_metric", broken)
    pipeline.sampler = MetricSampler([CallableSource("custom", "x", lambda: 1)])
    assert pipeline.collect_once() == []
    assert pipeline.stats["store_errors"] == 1


def test_build_pipeline_from_config(tmp_path, clock):
    rules_path = tmp_path / "rules.yaml"
    rules_path.write_text(yaml.safe_dump({"rules": [
        {"id": "latency", "name": "Slow API", "metric_type": "app", "metric_name": "latency_ms",
         "condition": ">=", "threshold": 500, "severity": "critical", "channels": ["console"]},
    ]}))
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump({
        "database": {"path": str(tmp_path / "ops.db")},
        "alerts": {"rules_path": str(rules_path)},
        "sampler": {"enabled": False},
        "notifications": {"backoff": {"policy": "exponential"}},
    }))
    config = load_config(str(config_path))
    channel = RecordingChannel("console")
    pipeline = build_pipeline(config, channels={"console": channel}, clock=clock)
    try:
        assert pipeline.sampler is None
        assert pipeline.dispatcher.backoff_policy == "exponential"
        assert [r.id for r in pipeline.list_rules()] == ["latency"]
        pipeline.record_metric("app", "latency_ms", 750)
        assert channel.sent[0][1] == "[CRITICAL] Slow API"
    finally:
        pipeline.close()


def test_inline_retry_is_not_duplicated_on_start(temp_db, registry, clock):
    from notifications.dispatcher import NotificationDispatcher
    from alerts.lifecycle import AlertLifecycleManager
    from conftest import FailingChannel

    flaky = FailingChannel("console", failures=1)
    dispatcher = NotificationDispatcher(temp_db, {"console": flaky}, clock=clock)
    lifecycle = AlertLifecycleManager(temp_db, registry, dispatcher, clock=clock)
    p = MonitoringPipeline(temp_db, registry, dispatcher, lifecycle, retry_interval=0.1, clock=clock)
    registry.add(make_rule())

    p.record_metric("system", "cpu_usage", 95)
    assert flaky.attempts == 1
    clock.advance(minutes=60)

    p.start()
    try:
        assert _wait_for(lambda: flaky.attempts >= 2)
        time.sleep(0.5)
    finally:
        p.stop()
    assert flaky.attempts == 2
    assert dispatcher.pending_retries() == 0
    assert temp_db.get_notifications()[0].status == "sent"


class TestSampleBackpressure:
    def _gated(self, registry):
        """Block the evaluator inside its first rule lookup until released."""
        entered = threading.Event()
        release = threading.Event()
        original = registry.find_by_metric
        calls = []

        def find_by_metric(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                entered.set()
                release.wait(5)
            return original(*args, **kwargs)

        registry.find_by_metric = find_by_metric
        return entered, release

    def test_full_queue_hands_off_without_loss(self, temp_db, registry, dispatcher, lifecycle, clock):
        p = MonitoringPipeline(temp_db, registry, dispatcher, lifecycle, sample_queue_size=1,
                               clock=clock)
        entered, release = self._gated(registry)
        p.start()
        try:
            p.record_metric("system", "cpu_usage", 10)
            assert entered.wait(2)
            p.record_metric("system", "cpu_usage", 20)

            producer = threading.Thread(target=p.record_metric, args=("system", "cpu_usage", 30))
            producer.start()
            assert _wait_for(lambda: p.stats["sample_overflows"] == 1)
            assert producer.is_alive()

            release.set()
            producer.join(timeout=5)
            assert not producer.is_alive()
            assert _wait_for(lambda: p.stats["samples_evaluated"] == 3)
        finally:
            release.set()
            p.stop()
        assert p.stats["samples_evaluated"] == 3

    def test_shutdown_during_hand_off_evaluates_inline(self, temp_db, registry, dispatcher,
                                                       lifecycle, clock):
        p = MonitoringPipeline(temp_db, registry, dispatcher, lifecycle, sample_queue_size=1,
                               clock=clock)
        entered, release = self._gated(registry)
        p.start()
        try:
            p.record_metric("system", "cpu_usage", 10)
            assert entered.wait(2)
            p.record_metric("system", "cpu_usage", 20)

            producer = threading.Thread(target=p.record_metric, args=("system", "cpu_usage", 30))
            producer.start()
            assert _wait_for(lambda: p.stats["sample_overflows"] == 1)

            p.stop_event.set()
            producer.join(timeout=5)
            assert not producer.is_alive()
            # the producer's sample was evaluated in its own thread
            assert p.stats["samples_evaluated"] == 1
        finally:
            release.set()
            p.stop()
        assert p.stats["samples_evaluated"] == 3
        assert p.stats["sample_overflows"] == 1
