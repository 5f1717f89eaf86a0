"""Threshold evaluation. Pure functions, no I/O."""
from dataclasses import dataclass

from models.alerts import AlertRule
from models.enums import MetricStatus
from models.metrics import MetricSample

OPERATOR_MAP = {
    "<": lambda v, t: v < t,
    ">": lambda v, t: v > t,
    "<=": lambda v, t: v <= t,
    ">=": lambda v, t: v >= t,
    "==": lambda v, t: v == t,
    "!=": lambda v, t: v != t,
}

WARNING_RATIO = 0.8


def evaluate_condition(value, condition, threshold) -> bool:
    """Plain float comparison. Missing values and unknown conditions never breach."""
    if value is None:
        return False
    func = OPERATOR_MAP.get(condition)
    if func is None:
        return False
    return func(float(value), float(threshold))


def classify(value, threshold) -> MetricStatus:
    """Status of a sample against its own threshold: >= threshold is critical,
    >= 80% of it is warning. Non-positive thresholds are always normal."""
    if value is None or not threshold or threshold <= 0:
        return MetricStatus.NORMAL
    if value >= threshold:
        return MetricStatus.CRITICAL
    if value >= threshold * WARNING_RATIO:
        return MetricStatus.WARNING
    return MetricStatus.NORMAL


@dataclass(frozen=True)
class Evaluation:
    rule: AlertRule
    sample: MetricSample
    breached: bool
    status: MetricStatus


def evaluate(sample, rules):
    """Evaluate a sample against every rule observing its (type, name)."""
    results = []
    status = classify(sample.value, sample.threshold)
    for rule in rules:
        if rule.key != sample.key:
            continue
        breached = evaluate_condition(sample.value, rule.condition, rule.threshold)
        results.append(Evaluation(rule=rule, sample=sample, breached=breached, status=status))
    return results
