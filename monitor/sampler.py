"""Metric sources and the sampler that polls them.

A source returns a list of Readings; the sampler turns a failing source into a
log line so the other sources still report.
"""
import gc
import os
import logging
from dataclasses import dataclass

import psutil

from models.enums import MetricType

logger = logging.getLogger("opsmonitor.sampler")

DEFAULT_THRESHOLDS = {
    "cpu_usage": 80.0,
    "memory_usage": 85.0,
    "disk_usage": 90.0,
    "process_count": 1000,
}


@dataclass(frozen=True)
class Reading:
    type: str
    name: str
    value: float
    unit: str = ""
    threshold: float = 0.0


class SystemSource:
    """Host CPU, memory, disk, network, process count and load average."""

    name = "system"

    def __init__(self, thresholds=None, disk_paths=("/",)):
        self.thresholds = {**DEFAULT_THRESHOLDS, **(thresholds or {})}
        self.disk_paths = tuple(disk_paths or ("/",))

    def _reading(self, name, value, unit=""):
        return Reading(MetricType.SYSTEM.value, name, float(value), unit,
                       float(self.thresholds.get(name, 0.0)))

    def collect(self):
        readings = [
            self._reading("cpu_usage", psutil.cpu_percent(interval=None), "%"),
            self._reading("memory_usage", psutil.virtual_memory().percent, "%"),
        ]
        for path in self.disk_paths:
            name = "disk_usage" if path == "/" else f"disk_usage:{path}"
            usage = psutil.disk_usage(path)
            readings.append(Reading(MetricType.SYSTEM.value, name, float(usage.percent), "%",
                                    float(self.thresholds.get("disk_usage", 0.0))))

        net = psutil.net_io_counters()
        if net is not None:
            readings.append(self._reading("network_bytes_sent", net.bytes_sent, "bytes"))
            readings.append(self._reading("network_bytes_recv", net.bytes_recv, "bytes"))

        readings.append(self._reading("process_count", len(psutil.pids())))
        load1, _, _ = psutil.getloadavg()
        readings.append(self._reading("load_average_1m", load1))
        return readings


class ApplicationSource:
    """Resource usage of this process."""

    name = "application"

    def __init__(self, thresholds=None, pid=None):
        self.thresholds = thresholds or {}
        self.process = psutil.Process(pid or os.getpid())

    def _reading(self, name, value, unit=""):
        return Reading(MetricType.APPLICATION.value, name, float(value), unit,
                       float(self.thresholds.get(name, 0.0)))

    def collect(self):
        with self.process.oneshot():
            rss_mb = self.process.memory_info().rss / (1024 ** 2)
            readings = [
                self._reading("memory_rss_mb", round(rss_mb, 2), "MB"),
                self._reading("threads", self.process.num_threads()),
                self._reading("cpu_usage", self.process.cpu_percent(interval=None), "%"),
            ]
            if hasattr(self.process, "num_fds"):
                readings.append(self._reading("open_fds", self.process.num_fds()))
        collections = sum(s.get("collections", 0) for s in gc.get_stats())
        readings.append(self._reading("gc_collections", collections))
        return readings


class CallableSource:
    """Metric supplied by a collaborator as a zero-argument callable."""

    def __init__(self, metric_type, name, fn, unit="", threshold=0.0):
        self.metric_type = metric_type
        self.metric_name = name
        self.fn = fn
        self.unit = unit
        self.threshold = threshold

    @property
    def name(self):
        return f"{self.metric_type}/{self.metric_name}"

    def collect(self):
        value = self.fn()
        if value is None:
            return []
        return [Reading(self.metric_type, self.metric_name, float(value), self.unit,
                        float(self.threshold))]


class MetricSampler:
    def __init__(self, sources=None):
        self.sources = list(sources or [])
        self.source_failures = 0

    def add_source(self, source):
        self.sources.append(source)

    def collect(self):
        """Poll every source once and return all readings."""
        readings = []
        for source in self.sources:
            try:
                readings.extend(source.collect())
            except Exception as e:
                self.source_failures += 1
                logger.warning(f"Source {source.name} failed: {e}")
        logger.debug(f"Collected {len(readings)} readings from {len(self.sources)} sources")
        return readings


def build_sampler(sampler_config):
    sampler_config = sampler_config or {}
    thresholds = sampler_config.get("thresholds", {})
    sources = []
    if sampler_config.get("system", True):
        sources.append(SystemSource(thresholds, sampler_config.get("disk_paths", ["/"])))
    if sampler_config.get("application", True):
        sources.append(ApplicationSource(sampler_config.get("application_thresholds", {})))
    return MetricSampler(sources)
