"""Alert rule registry: validation, YAML loading and lookup by metric key."""
import math
import logging
import yaml
from pathlib import Path

from models.alerts import AlertRule
from models.enums import CONDITIONS, Severity
from utils.errors import RuleValidationError, RuleNotFoundError
from utils.rwlock import RWLock

logger = logging.getLogger("opsmonitor.alerts.registry")

SEVERITIES = {s.value for s in Severity}


def validate_rule(rule: AlertRule, known_channels=None):
    """Raise RuleValidationError if the rule cannot be evaluated or delivered."""
    def fail(field, message):
        raise RuleValidationError(f"Rule {rule.id!r}: {message}", rule_id=rule.id, field=field)

    if not rule.id:
        fail("id", "id is required")
    if not rule.metric_type or not rule.metric_name:
        fail("metric", "metric_type and metric_name are required")
    if rule.condition not in CONDITIONS:
        fail("condition", f"invalid condition {rule.condition!r}")
    try:
        threshold = float(rule.threshold)
    except (TypeError, ValueError):
        fail("threshold", f"threshold {rule.threshold!r} is not a number")
    if not math.isfinite(threshold):
        fail("threshold", "threshold must be finite")
    if rule.severity not in SEVERITIES:
        fail("severity", f"unknown severity {rule.severity!r}")
    if rule.suppression_window_seconds is None or rule.suppression_window_seconds < 0:
        fail("suppression_window_seconds", "suppression window must be >= 0")
    if rule.escalation.delay_seconds < 0:
        fail("escalation.delay_seconds", "escalation delay must be >= 0")
    if rule.escalation.max_level < 0:
        fail("escalation.max_level", "escalation max_level must be >= 0")
    if rule.consecutive_breaches < 1:
        fail("consecutive_breaches", "consecutive_breaches must be >= 1")
    if known_channels is not None:
        unknown = [c.channel for c in rule.channels if c.channel not in known_channels]
        if unknown:
            fail("channels", f"unknown channels {unknown}")


class RuleRegistry:
    """Rules keyed by id with an index on (metric_type, metric_name).

    Writers copy the current dicts, apply their change and swap the new
    dicts in; readers only hold the lock long enough to grab the references.
    """

    def __init__(self, known_channels=None):
        self.known_channels = set(known_channels) if known_channels is not None else None
        self._lock = RWLock()
        self._rules = {}
        self._index = {}

    @staticmethod
    def _build_index(rules):
        index = {}
        for rule in rules.values():
            index.setdefault(rule.key, []).append(rule.id)
        return {k: tuple(v) for k, v in index.items()}

    def _snapshot(self):
        with self._lock.read_lock():
            return self._rules, self._index

    def _coerce(self, rule):
        try:
            if isinstance(rule, dict):
                rule = AlertRule.from_dict(rule)
            validate_rule(rule, self.known_channels)
        except (TypeError, ValueError) as e:
            raise RuleValidationError(f"Rule {getattr(rule, 'id', rule)!r}: {e}") from e
        return rule.evolve(threshold=float(rule.threshold))

    def add(self, rule):
        rule = self._coerce(rule)
        with self._lock.write_lock():
            if rule.id in self._rules:
                raise RuleValidationError(f"Duplicate rule id {rule.id!r}", rule_id=rule.id, field="id")
            new_rules = dict(self._rules)
            new_rules[rule.id] = rule
            self._rules, self._index = new_rules, self._build_index(new_rules)
        logger.info(f"Added rule {rule.id} ({rule.metric_type}/{rule.metric_name} "
                    f"{rule.condition} {rule.threshold})")
        return rule

    def update(self, rule_id, **fields):
        fields.pop("id", None)
        current = self.get(rule_id)
        if current is None:
            raise RuleNotFoundError(rule_id)
        try:
            updated = self._coerce(current.evolve(**fields))
        except TypeError as e:
            raise RuleValidationError(f"Rule {rule_id!r}: {e}", rule_id=rule_id) from e
        with self._lock.write_lock():
            if rule_id not in self._rules:
                raise RuleNotFoundError(rule_id)
            new_rules = dict(self._rules)
            new_rules[rule_id] = updated
            self._rules, self._index = new_rules, self._build_index(new_rules)
        logger.info(f"Updated rule {rule_id}: {sorted(fields)}")
        return updated

    def remove(self, rule_id):
        with self._lock.write_lock():
            if rule_id not in self._rules:
                raise RuleNotFoundError(rule_id)
            new_rules = dict(self._rules)
            removed = new_rules.pop(rule_id)
            self._rules, self._index = new_rules, self._build_index(new_rules)
        logger.info(f"Removed rule {rule_id}")
        return removed

    def get(self, rule_id):
        rules, _ = self._snapshot()
        return rules.get(rule_id)

    def find_by_metric(self, metric_type, metric_name, enabled_only=True):
        rules, index = self._snapshot()
        found = [rules[rid] for rid in index.get((metric_type, metric_name), ())]
        if enabled_only:
            found = [r for r in found if r.enabled]
        return found

    def list_enabled(self):
        rules, _ = self._snapshot()
        return [r for r in rules.values() if r.enabled]

    def list_all(self):
        rules, _ = self._snapshot()
        return list(rules.values())

    def __len__(self):
        return len(self._snapshot()[0])

    def load(self, path):
        """Load rules from a YAML file. Invalid or duplicate rules are logged and skipped."""
        path = Path(path)
        if not path.exists():
            logger.warning(f"Alert rules file not found: {path}")
            return 0
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        loaded = 0
        for raw in data.get("rules", []):
            try:
                self.add(raw)
                loaded += 1
            except (RuleValidationError, TypeError, ValueError, AttributeError) as e:
                rule_id = raw.get("id") if isinstance(raw, dict) else raw
                logger.warning(f"Skipping invalid rule {rule_id}: {e}")
        logger.info(f"Loaded {loaded} rules from {path}")
        return loaded
