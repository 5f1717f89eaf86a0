"""Metric sample dataclass."""
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional

from models.enums import MetricStatus
from utils.clock import utcnow, to_iso, from_iso


@dataclass(frozen=True)
class MetricSample:
    type: str
    name: str
    value: float
    unit: str = ""
    threshold: float = 0.0
    status: str = MetricStatus.NORMAL.value
    timestamp: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    @property
    def key(self):
        return (self.type, self.name)

    def with_id(self, sample_id):
        return replace(self, id=sample_id)

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "value": self.value,
            "unit": self.unit,
            "threshold": self.threshold,
            "status": self.status,
            "timestamp": to_iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, d):
        return cls(
            id=d.get("id"),
            type=d["type"],
            name=d["name"],
            value=float(d["value"]),
            unit=d.get("unit") or "",
            threshold=float(d.get("threshold") or 0.0),
            status=d.get("status") or MetricStatus.NORMAL.value,
            timestamp=from_iso(d.get("timestamp")) or utcnow(),
        )
