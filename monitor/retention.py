"""Retention sweeper: purge samples, resolved alerts and delivered notifications."""
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Optional

from utils.clock import utcnow, to_iso

logger = logging.getLogger("opsmonitor.retention")


@dataclass(frozen=True)
class SweepResult:
    metrics: int = 0
    alerts: int = 0
    notifications: int = 0
    cutoff: Optional[datetime] = None

    @property
    def total(self):
        return self.metrics + self.alerts + self.notifications

    def to_dict(self):
        d = asdict(self)
        d["cutoff"] = to_iso(self.cutoff)
        return d


class RetentionSweeper:
    def __init__(self, store, retention_days=30, clock=None):
        if retention_days <= 0:
            raise ValueError("retention_days must be positive")
        self.store = store
        self.retention_days = retention_days
        self.clock = clock or utcnow
        self.last_result = None

    def cutoff(self, now=None):
        return (now or self.clock()) - timedelta(days=self.retention_days)

    def sweep(self, now=None):
        """Delete everything older than the retention period.

        Active and acknowledged alerts are never deleted, nor are notification
        records that belong to them.
        """
        cutoff = self.cutoff(now)
        counts = self.store.purge_expired(cutoff)
        result = SweepResult(cutoff=cutoff, **counts)
        self.last_result = result
        logger.info(f"Retention sweep before {to_iso(cutoff)}: {result.metrics} samples, "
                    f"{result.alerts} alerts, {result.notifications} notifications removed")
        return result
