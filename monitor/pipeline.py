"""Monitoring pipeline: wires sampler, evaluator, lifecycle and dispatcher.

Samples flow through one bounded queue drained by a single evaluator
thread, so alerts of a rule are fired, escalated and resolved in order.
All background threads stop on one shared event.
"""
import logging
import queue
import threading
from pathlib import Path

from alerts.channels import build_channels
from alerts.evaluator import classify, evaluate
from alerts.lifecycle import AlertLifecycleManager
from alerts.registry import RuleRegistry
from models.database import Database
from models.enums import ChannelType, HealthStatus, Severity, AlertStatus
from models.metrics import MetricSample
from monitor.retention import RetentionSweeper
from monitor.sampler import build_sampler
from monitor.scheduler import PeriodicWorker
from notifications.dispatcher import NotificationDispatcher
from utils.clock import utcnow, to_iso
from utils.counters import Counters
from utils.errors import StoreError

logger = logging.getLogger("opsmonitor.pipeline")

_SAMPLE = "sample"
_ESCALATE = "escalate"
HANDOFF_WAIT_SECONDS = 0.5


class MonitoringPipeline:
    def __init__(self, store, registry, dispatcher, lifecycle, sampler=None, sweeper=None,
                 stop_event=None, sample_queue_size=1000, collect_interval=30,
                 escalation_interval=60, retry_interval=1, sweep_time="03:00", clock=None):
        self.store = store
        self.registry = registry
        self.dispatcher = dispatcher
        self.lifecycle = lifecycle
        self.sampler = sampler
        self.sweeper = sweeper or RetentionSweeper(store)
        self.stop_event = stop_event or dispatcher.stop_event
        self.collect_interval = collect_interval
        self.escalation_interval = escalation_interval
        self.retry_interval = retry_interval
        self.sweep_time = sweep_time
        self.clock = clock or utcnow
        self.stats = Counters("samples_recorded", "samples_evaluated", "sample_overflows",
                              "store_errors", "worker_errors")

        self._queue = queue.Queue(maxsize=sample_queue_size)
        self._evaluator = None
        self._timers = []
        self._running = False

    @property
    def running(self):
        return self._running

    # --- Ingestion ---

    def record_metric(self, metric_type, name, value, threshold=0.0, unit="", timestamp=None):
        """Persist a sample and hand it to evaluation."""
        value = float(value)
        threshold = float(threshold or 0.0)
        sample = MetricSample(
            type=metric_type,
            name=name,
            value=value,
            unit=unit,
            threshold=threshold,
            status=classify(value, threshold).value,
            timestamp=timestamp or self.clock(),
        )
        sample = self.store.save_metric(sample)
        self.stats.incr("samples_recorded")
        self._submit((_SAMPLE, sample))
        return sample

    def collect_once(self):
        """Poll the sampler once and record every reading."""
        if self.sampler is None:
            return []
        samples = []
        for r in self.sampler.collect():
            try:
                samples.append(self.record_metric(r.type, r.name, r.value, r.threshold, r.unit))
            except StoreError as e:
                self.stats.incr("store_errors")
                logger.error(f"Could not record {r.type}/{r.name}: {e}")
        return samples

    def check_escalations(self, now=None):
        """Queue an escalation pass behind pending samples, or run it inline when stopped."""
        if not self._running:
            return self.lifecycle.check_escalations(now)
        self._submit((_ESCALATE, now))
        return None

    def process_retries(self, now=None):
        return self.dispatcher.process_due_retries(now)

    def sweep(self, now=None):
        return self.sweeper.sweep(now)

    def _submit(self, item):
        if not self._running:
            self._handle(item)
            return
        try:
            self._queue.put_nowait(item)
            return
        except queue.Full:
            self.stats.incr("sample_overflows")
            logger.warning(f"Sample queue full ({self._queue.maxsize}), waiting for the evaluator")
        while not self.stop_event.is_set():
            try:
                self._queue.put(item, timeout=HANDOFF_WAIT_SECONDS)
                return
            except queue.Full:
                continue
        self._handle(item)

    def _handle(self, item):
        kind, payload = item
        if kind == _SAMPLE:
            rules = self.registry.find_by_metric(payload.type, payload.name)
            if rules:
                self.lifecycle.process(evaluate(payload, rules))
            self.stats.incr("samples_evaluated")
        elif kind == _ESCALATE:
            self.lifecycle.check_escalations(payload)

    def _evaluator_loop(self):
        while not self.stop_event.is_set():
            try:
                item = self._queue.get(timeout=0.2)
            except queue.Empty:
                continue
            try:
                self._handle(item)
            except Exception:
                self.stats.incr("worker_errors")
                logger.exception("Evaluator worker error")
            finally:
                self._queue.task_done()

    def _drain(self):
        drained = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return drained
            try:
                self._handle(item)
                drained += 1
            except Exception:
                self.stats.incr("worker_errors")
                logger.exception("Error evaluating queued item during shutdown")
            finally:
                self._queue.task_done()

    # --- Rule administration ---

    def create_rule(self, rule):
        return self.registry.add(rule)

    def update_rule(self, rule_id, **fields):
        return self.registry.update(rule_id, **fields)

    def delete_rule(self, rule_id):
        return self.registry.remove(rule_id)

    def list_rules(self, enabled_only=False):
        rules = self.registry.list_enabled() if enabled_only else self.registry.list_all()
        return sorted(rules, key=lambda r: r.id)

    # --- Operator actions ---

    def acknowledge(self, alert_id, actor, note=None):
        return self.lifecycle.acknowledge(alert_id, actor, note)

    def resolve(self, alert_id, actor, note=None):
        return self.lifecycle.resolve(alert_id, actor, note)

    # --- Queries ---

    def list_alerts(self, status=None, severity=None, limit=100):
        return self.store.get_alerts(status=status, severity=severity, limit=limit)

    def list_metrics(self, metric_type=None, name=None, limit=100):
        return self.store.get_metrics(metric_type=metric_type, name=name, limit=limit)

    def list_notifications(self, alert_id=None, status=None, limit=100):
        return self.store.get_notifications(alert_id=alert_id, status=status, limit=limit)

    def get_stats(self):
        rules = self.registry.list_all()
        pipeline = self.stats.to_dict()
        pipeline["queue_depth"] = self._queue.qsize()
        pipeline["running"] = self._running
        return {
            "alerts": self.store.alert_stats(),
            "notifications": self.store.notification_stats(),
            "rules": {"total": len(rules), "enabled": sum(1 for r in rules if r.enabled)},
            "metrics": {"stored": self.store.count_metrics()},
            "pipeline": pipeline,
            "lifecycle": self.lifecycle.stats.to_dict(),
            "dispatcher": self.dispatcher.get_stats(),
        }

    def get_health(self):
        counts = self.store.active_counts_by_severity()
        active = sum(counts.values())
        if counts.get(Severity.CRITICAL.value) or counts.get(Severity.EMERGENCY.value):
            status = HealthStatus.CRITICAL
        elif active:
            status = HealthStatus.WARNING
        else:
            status = HealthStatus.HEALTHY
        return {
            "status": status.value,
            "active_alerts": active,
            "active_by_severity": counts,
            "acknowledged_alerts": len(self.store.get_alerts(
                status=AlertStatus.ACKNOWLEDGED.value, limit=10000)),
            "running": self._running,
            "checked_at": to_iso(self.clock()),
        }

    # --- Lifecycle ---

    def start(self):
        if self._running:
            return
        self.stop_event.clear()
        self._running = True
        self.dispatcher.start()
        self.dispatcher.resume_pending()

        self._evaluator = threading.Thread(target=self._evaluator_loop, name="evaluator", daemon=True)
        self._evaluator.start()

        self._timers = []
        if self.sampler is not None and self.collect_interval:
            self._timers.append(PeriodicWorker("collector", self.collect_once,
                                               interval_seconds=self.collect_interval,
                                               stop_event=self.stop_event, run_immediately=True))
        self._timers.append(PeriodicWorker("escalation", self.check_escalations,
                                           interval_seconds=self.escalation_interval,
                                           stop_event=self.stop_event))
        self._timers.append(PeriodicWorker("retry", self.process_retries,
                                           interval_seconds=self.retry_interval,
                                           stop_event=self.stop_event))
        self._timers.append(PeriodicWorker("retention", self.sweep, at=self.sweep_time,
                                           stop_event=self.stop_event))
        for timer in self._timers:
            timer.start()
        logger.info(f"Pipeline started with {len(self.registry)} rules")

    def stop(self):
        if not self._running:
            return
        self.stop_event.set()
        for timer in self._timers:
            timer.join()
        if self._evaluator:
            self._evaluator.join(timeout=5)
            self._evaluator = None
        drained = self._drain()
        if drained:
            logger.info(f"Evaluated {drained} queued items during shutdown")
        self.dispatcher.stop()
        self._timers = []
        self._running = False
        logger.info("Pipeline stopped")

    def run_forever(self):
        """Start and block until the stop event is set."""
        self.start()
        try:
            while not self.stop_event.wait(1):
                pass
        finally:
            self.stop()

    def close(self):
        self.stop()
        self.store.close()


def build_pipeline(config, db=None, channels=None, clock=None):
    """Construct a pipeline from the loaded configuration dict."""
    stop_event = threading.Event()
    clock = clock or utcnow

    if db is None:
        db = Database(config["database"]["path"]).connect()

    notif_cfg = config.get("notifications", {})
    if channels is None:
        channels = build_channels(notif_cfg)
    backoff = notif_cfg.get("backoff", {})
    dispatcher = NotificationDispatcher(
        db, channels,
        max_retries=notif_cfg.get("max_retries", 3),
        backoff_policy=backoff.get("policy", "linear"),
        backoff_base_seconds=backoff.get("base_seconds", 1),
        backoff_max_seconds=backoff.get("max_seconds", 300),
        queue_size=notif_cfg.get("queue_size", 100),
        retry_queue_size=notif_cfg.get("retry_queue_size", 1000),
        workers=notif_cfg.get("workers", 2),
        default_recipients=notif_cfg.get("default_recipients", {}),
        stop_event=stop_event,
        clock=clock,
    )

    known_channels = {c.value for c in ChannelType} | set(channels)
    registry = RuleRegistry(known_channels=known_channels)
    rules_path = config.get("alerts", {}).get("rules_path")
    if rules_path and Path(rules_path).exists():
        registry.load(rules_path)

    lifecycle = AlertLifecycleManager(db, registry, dispatcher, clock=clock)

    sampler_cfg = config.get("sampler", {})
    sampler = build_sampler(sampler_cfg) if sampler_cfg.get("enabled", True) else None

    retention_cfg = config.get("retention", {})
    sweeper = RetentionSweeper(db, retention_cfg.get("days", 30), clock=clock)

    pipeline_cfg = config.get("pipeline", {})
    return MonitoringPipeline(
        db, registry, dispatcher, lifecycle,
        sampler=sampler,
        sweeper=sweeper,
        stop_event=stop_event,
        sample_queue_size=pipeline_cfg.get("sample_queue_size", 1000),
        collect_interval=sampler_cfg.get("interval_seconds", 30),
        escalation_interval=pipeline_cfg.get("escalation_interval_seconds", 60),
        retry_interval=notif_cfg.get("retry_tick_seconds", 1),
        sweep_time=retention_cfg.get("sweep_time", "03:00"),
        clock=clock,
    )
