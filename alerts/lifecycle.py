"""Alert lifecycle: fire, suppress, escalate, auto-resolve, acknowledge, resolve.

The lifecycle manager is the only writer of alert status. Every transition
is a conditional store update, so when two paths race for the same edge
exactly one of them wins and only the winner notifies.
"""
import logging
import threading

from alerts.evaluator import Evaluation
from models.alerts import Alert, MetricSnapshot, RuleReference
from models.database import OPEN_STATUSES
from models.enums import AlertStatus, NotificationEvent
from utils.clock import utcnow, to_iso
from utils.counters import Counters
from utils.errors import AlertNotFoundError, AlertStateError, StoreError
from utils.formatters import format_value

logger = logging.getLogger("opsmonitor.alerts.lifecycle")

SYSTEM_ACTOR = "system"


def build_message(rule, sample):
    return (f"{rule.name}: {sample.type}/{sample.name} is {format_value(sample.value, sample.unit)} "
            f"({rule.condition} {format_value(rule.threshold, sample.unit)})")


class AlertLifecycleManager:
    def __init__(self, store, registry, dispatcher, clock=None):
        self.store = store
        self.registry = registry
        self.dispatcher = dispatcher
        self.clock = clock or utcnow
        self.stats = Counters(
            "fired", "suppressed", "auto_resolved", "escalated", "acknowledged",
            "resolved", "store_errors", "evaluation_errors",
        )
        # rule_id -> consecutive breaching evaluations, touched by the evaluation path only
        self._streaks = {}
        self._streak_lock = threading.Lock()

    # --- Evaluation path ---

    def process(self, evaluations):
        """Apply a batch of evaluations. Failures are logged per evaluation."""
        fired = []
        for evaluation in evaluations:
            try:
                if evaluation.breached:
                    alert = self.on_breach(evaluation)
                    if alert is not None:
                        fired.append(alert)
                else:
                    self.on_clear(evaluation)
            except StoreError as e:
                self.stats.incr("store_errors")
                logger.error(f"Store failure while handling rule {evaluation.rule.id}, "
                             f"will retry next cycle: {e}")
            except Exception:
                self.stats.incr("evaluation_errors")
                logger.exception(f"Unexpected error handling rule {evaluation.rule.id}")
        return fired

    def _bump_streak(self, rule_id):
        with self._streak_lock:
            self._streaks[rule_id] = self._streaks.get(rule_id, 0) + 1
            return self._streaks[rule_id]

    def _reset_streak(self, rule_id):
        with self._streak_lock:
            self._streaks.pop(rule_id, None)

    def on_breach(self, evaluation: Evaluation):
        rule, sample = evaluation.rule, evaluation.sample
        streak = self._bump_streak(rule.id)
        if streak < rule.consecutive_breaches:
            logger.debug(f"Rule {rule.id} breached {streak}/{rule.consecutive_breaches} times")
            return None

        # the rule may have been edited, disabled or removed since evaluation
        current = self.registry.get(rule.id)
        if current is None or not current.enabled:
            logger.debug(f"Rule {rule.id} no longer enabled, not firing")
            return None

        now = sample.timestamp
        latest = self.store.get_latest_alert(current.id)
        window = current.suppression_window_seconds
        if latest is not None and window > 0:
            elapsed = (now - latest.fired_at).total_seconds()
            if elapsed < window:
                if latest.is_open:
                    self.store.mark_suppressed(latest.id, now)
                self.stats.incr("suppressed")
                logger.debug(f"Rule {current.id} suppressed: last alert {latest.id} "
                             f"fired {elapsed:.0f}s ago (window {window}s)")
                return None

        alert = Alert(
            rule_id=current.id,
            rule_name=current.name,
            metric_type=sample.type,
            metric_name=sample.name,
            value=sample.value,
            threshold=current.threshold,
            severity=current.severity,
            message=build_message(current, sample),
            fired_at=now,
            context=[
                MetricSnapshot(metric_type=sample.type, metric_name=sample.name, value=sample.value,
                               unit=sample.unit, timestamp=to_iso(sample.timestamp)),
                RuleReference(rule_id=current.id, condition=current.condition,
                              threshold=current.threshold),
            ],
        )
        self.store.create_alert(alert)
        self.stats.incr("fired")
        logger.warning(f"Alert {alert.id} fired [{alert.severity}] {alert.message}")
        self.dispatcher.dispatch(alert, current, NotificationEvent.FIRED)
        return alert

    def on_clear(self, evaluation: Evaluation):
        """Resolve every open alert of the rule. Returns the alerts this call resolved."""
        rule, sample = evaluation.rule, evaluation.sample
        self._reset_streak(rule.id)
        resolved = []
        for alert in self.store.get_unresolved_alerts(rule.id):
            if not self.store.transition_alert(alert.id, OPEN_STATUSES, AlertStatus.RESOLVED.value,
                                               sample.timestamp, actor=SYSTEM_ACTOR):
                continue
            alert.status = AlertStatus.RESOLVED.value
            alert.resolved_at = sample.timestamp
            alert.resolved_by = SYSTEM_ACTOR
            self.stats.incr("auto_resolved")
            logger.info(f"Alert {alert.id} auto-resolved: {sample.name} = {sample.value}")
            self.dispatcher.dispatch(alert, self.registry.get(rule.id) or rule,
                                     NotificationEvent.RESOLVED)
            resolved.append(alert)
        return resolved

    def check_escalations(self, now=None):
        """Escalate active alerts whose rule allows it and whose delay has passed."""
        now = now or self.clock()
        escalated = []
        try:
            candidates = [a for a in self.store.get_unresolved_alerts()
                          if a.status == AlertStatus.ACTIVE.value]
        except StoreError as e:
            self.stats.incr("store_errors")
            logger.error(f"Could not load alerts for escalation: {e}")
            return escalated

        for alert in candidates:
            rule = self.registry.get(alert.rule_id)
            if rule is None or not rule.escalation.enabled:
                continue
            if alert.escalation_level >= rule.escalation.max_level:
                continue
            since = alert.escalated_at or alert.fired_at
            if (now - since).total_seconds() <= rule.escalation.delay_seconds:
                continue
            try:
                if not self.store.escalate_alert(alert.id, alert.escalation_level, now):
                    continue
            except StoreError as e:
                self.stats.incr("store_errors")
                logger.error(f"Could not escalate alert {alert.id}: {e}")
                continue
            alert.escalation_level += 1
            alert.escalated_at = now
            self.stats.incr("escalated")
            logger.warning(f"Alert {alert.id} escalated to level {alert.escalation_level}")
            self.dispatcher.dispatch(alert, rule, NotificationEvent.ESCALATED)
            escalated.append(alert)
        return escalated

    # --- Operator actions ---

    def _require(self, alert_id):
        alert = self.store.get_alert(alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        return alert

    def acknowledge(self, alert_id, actor, note=None):
        alert = self._require(alert_id)
        if alert.status != AlertStatus.ACTIVE.value:
            raise AlertStateError(alert_id, alert.status, "acknowledge", AlertStateError.NOT_ACTIVE)
        if not self.store.transition_alert(alert_id, (AlertStatus.ACTIVE.value,),
                                           AlertStatus.ACKNOWLEDGED.value, self.clock(),
                                           actor=actor, note=note):
            raise AlertStateError(alert_id, self._require(alert_id).status, "acknowledge",
                                  AlertStateError.NOT_ACTIVE)
        self.stats.incr("acknowledged")
        logger.info(f"Alert {alert_id} acknowledged by {actor}")
        return self._require(alert_id)

    def resolve(self, alert_id, actor, note=None):
        alert = self._require(alert_id)
        if not alert.is_open:
            raise AlertStateError(alert_id, alert.status, "resolve", AlertStateError.ALREADY_RESOLVED)
        if not self.store.transition_alert(alert_id, OPEN_STATUSES, AlertStatus.RESOLVED.value,
                                           self.clock(), actor=actor, note=note):
            raise AlertStateError(alert_id, self._require(alert_id).status, "resolve",
                                  AlertStateError.ALREADY_RESOLVED)
        self.stats.incr("resolved")
        logger.info(f"Alert {alert_id} resolved by {actor}")
        alert = self._require(alert_id)
        self.dispatcher.dispatch(alert, self.registry.get(alert.rule_id), NotificationEvent.RESOLVED)
        return alert
