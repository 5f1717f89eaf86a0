"""Notification fan-out with per-record retry and backoff.

One alert event becomes one NotificationRecord per channel reference on the
rule. Records are persisted as pending, then delivered by worker threads
draining a bounded queue. Failed attempts go onto a bounded retry heap keyed
by their next attempt time.
"""
import heapq
import itertools
import logging
import queue
import threading
from datetime import timedelta

from models.alerts import NotificationRecord
from models.enums import BackoffPolicy, NotificationEvent, NotificationStatus
from utils.clock import utcnow, to_iso
from utils.counters import Counters
from utils.errors import DeliveryError, StoreError
from utils.formatters import format_value, format_severity

logger = logging.getLogger("opsmonitor.notifications.dispatcher")

SHUTDOWN_GRACE_SECONDS = 2


def compute_backoff(attempt, policy=BackoffPolicy.LINEAR.value, base_seconds=1.0, max_seconds=300.0):
    """Delay before retry number `attempt` (1-based).

    linear: base * n, exponential: base * 2^(n-1), both capped at max_seconds.
    """
    attempt = max(1, int(attempt))
    policy = policy.value if hasattr(policy, "value") else policy
    if policy == BackoffPolicy.EXPONENTIAL.value:
        delay = base_seconds * (2 ** (attempt - 1))
    else:
        delay = base_seconds * attempt
    return min(float(delay), float(max_seconds))


def format_subject(alert, event):
    event = event.value if hasattr(event, "value") else event
    severity = format_severity(alert.severity)
    if event == NotificationEvent.RESOLVED.value:
        return f"[RESOLVED] {alert.rule_name}"
    if event == NotificationEvent.ESCALATED.value:
        return f"[ESCALATED L{alert.escalation_level}] [{severity}] {alert.rule_name}"
    return f"[{severity}] {alert.rule_name}"


def format_content(alert, event):
    event = event.value if hasattr(event, "value") else event
    snapshot = alert.metric_snapshot
    unit = snapshot.unit if snapshot else ""
    lines = [alert.message] if alert.message else []
    lines += [
        f"Metric: {alert.metric_type}/{alert.metric_name}",
        f"Value: {format_value(alert.value, unit)} (threshold {format_value(alert.threshold, unit)})",
        f"Severity: {format_severity(alert.severity)}",
        f"Fired at: {to_iso(alert.fired_at)}",
    ]
    if event == NotificationEvent.ESCALATED.value:
        lines.append(f"Escalation level: {alert.escalation_level}")
    if event == NotificationEvent.RESOLVED.value and alert.resolved_at:
        lines.append(f"Resolved at: {to_iso(alert.resolved_at)}"
                     + (f" by {alert.resolved_by}" if alert.resolved_by else ""))
    return "\n".join(lines)


class NotificationDispatcher:
    """Fan-out of alert events to channel senders.

    Until `start()` is called every delivery runs inline in the caller, which
    is how the CLI one-shot commands and the tests drive it.
    """

    def __init__(self, store, channels, max_retries=3, backoff_policy="linear",
                 backoff_base_seconds=1.0, backoff_max_seconds=300.0, queue_size=100,
                 retry_queue_size=1000, workers=2, default_recipients=None,
                 stop_event=None, clock=None):
        self.store = store
        self.channels = dict(channels or {})
        self.max_retries = max_retries
        self.backoff_policy = backoff_policy
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.retry_queue_size = retry_queue_size
        self.num_workers = workers
        self.default_recipients = default_recipients or {}
        self.stop_event = stop_event or threading.Event()
        self.clock = clock or utcnow
        self.stats = Counters(
            "dispatched", "sent", "failed", "retried", "dispatch_overflows",
            "retry_overflows", "store_errors", "worker_errors",
        )

        self._queue = queue.Queue(maxsize=queue_size)
        self._retry_heap = []
        self._retry_lock = threading.Lock()
        self._seq = itertools.count()
        # ids of records held in the queue, the retry heap or a delivery in progress
        self._held = set()
        self._workers = []
        self._running = False

    # --- Fan-out ---

    def resolve_recipient(self, channel_ref):
        return channel_ref.recipient or self.default_recipients.get(channel_ref.channel, "")

    def dispatch(self, alert, rule, event=NotificationEvent.FIRED):
        """Create and enqueue one record per channel of the rule."""
        event = event.value if hasattr(event, "value") else event
        if rule is None or not rule.channels:
            logger.debug(f"No channels for alert {alert.id} ({alert.rule_id}), nothing to send")
            return []

        subject = format_subject(alert, event)
        content = format_content(alert, event)
        records = []
        for ref in rule.channels:
            record = NotificationRecord(
                alert_id=alert.id,
                channel=ref.channel,
                recipient=self.resolve_recipient(ref),
                subject=subject,
                content=content,
                event=event,
                max_retries=self.max_retries,
                created_at=self.clock(),
            )
            try:
                self.store.create_notification(record)
            except StoreError as e:
                self.stats.incr("store_errors")
                logger.error(f"Could not persist {ref.channel} notification for alert {alert.id}: {e}")
                continue
            self._claim(record)
            records.append(record)
            self.stats.incr("dispatched")

        for record in records:
            self._submit(record)
        return records

    def _claim(self, record):
        """Mark a record as held in memory. False if it already is."""
        with self._retry_lock:
            if record.id in self._held:
                return False
            self._held.add(record.id)
            return True

    def _release(self, record):
        with self._retry_lock:
            self._held.discard(record.id)

    def _submit(self, record):
        if not self._running:
            self.deliver(record)
            return
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self.stats.incr("dispatch_overflows")
            logger.warning(f"Notification queue full, delivering record {record.id} "
                           f"({record.channel}) in the calling thread")
            self.deliver(record)

    # --- Delivery ---

    def deliver(self, record):
        """One delivery attempt. Never raises for channel failures."""
        channel = self.channels.get(record.channel)
        try:
            if channel is None:
                raise DeliveryError(f"Unknown channel {record.channel!r}", channel=record.channel)
            channel.send(record.recipient, record.subject, record.content)
        except Exception as e:
            self._handle_failure(record, e)
            return record

        record.status = NotificationStatus.SENT.value
        record.sent_at = self.clock()
        record.error = None
        record.next_attempt_at = None
        self._persist(record)
        self._release(record)
        self.stats.incr("sent")
        logger.info(f"Sent {record.event} notification {record.id} via {record.channel}")
        return record

    def _handle_failure(self, record, error):
        record.retry_count += 1
        record.error = str(error)[:500] or error.__class__.__name__
        if record.retry_count < record.max_retries:
            delay = compute_backoff(record.retry_count, self.backoff_policy,
                                    self.backoff_base_seconds, self.backoff_max_seconds)
            record.status = NotificationStatus.RETRYING.value
            record.next_attempt_at = self.clock() + timedelta(seconds=delay)
            logger.warning(f"{record.channel} delivery of record {record.id} failed "
                           f"(attempt {record.retry_count}/{record.max_retries}), "
                           f"retrying in {delay:.1f}s: {record.error}")
            if self._persist(record):
                self.stats.incr("retried")
                self._schedule_retry(record, delay)
            else:
                self._release(record)
        else:
            record.status = NotificationStatus.FAILED.value
            record.next_attempt_at = None
            logger.error(f"{record.channel} delivery of record {record.id} failed permanently "
                         f"after {record.retry_count} attempts: {record.error}")
            self._persist(record)
            self._release(record)
            self.stats.incr("failed")

    def _persist(self, record):
        try:
            changed = self.store.update_notification(record)
        except StoreError as e:
            self.stats.incr("store_errors")
            logger.error(f"Could not persist notification {record.id}: {e}")
            return False
        if not changed:
            logger.debug(f"Notification {record.id} already terminal, update skipped")
        return changed

    # --- Retries ---

    def _schedule_retry(self, record, delay):
        due = record.next_attempt_at.timestamp()
        with self._retry_lock:
            accepted = len(self._retry_heap) < self.retry_queue_size
            if accepted:
                heapq.heappush(self._retry_heap, (due, next(self._seq), record))
        if accepted:
            return
        self.stats.incr("retry_overflows")
        logger.warning(f"Retry queue full, retrying record {record.id} in the calling thread "
                       f"after {delay:.1f}s")
        if self.stop_event.wait(delay):
            # left as retrying in the store for resume_pending
            self._release(record)
            return
        self.deliver(record)

    def process_due_retries(self, now=None):
        """Move retries whose backoff has elapsed back to delivery."""
        now_ts = (now or self.clock()).timestamp()
        due = []
        with self._retry_lock:
            while self._retry_heap and self._retry_heap[0][0] <= now_ts:
                due.append(heapq.heappop(self._retry_heap)[2])
        for record in due:
            self._submit(record)
        return len(due)

    def pending_retries(self):
        with self._retry_lock:
            return len(self._retry_heap)

    def process_queue(self):
        """Drain the delivery queue in the calling thread."""
        count = 0
        while True:
            try:
                record = self._queue.get_nowait()
            except queue.Empty:
                return count
            try:
                self.deliver(record)
                count += 1
            finally:
                self._queue.task_done()

    def resume_pending(self):
        """Pick up unsent records from the store that are not already held in memory."""
        try:
            records = self.store.get_notifications_by_status(
                NotificationStatus.PENDING.value, NotificationStatus.RETRYING.value)
        except StoreError as e:
            logger.error(f"Could not load unsent notifications: {e}")
            return 0
        resumed = 0
        for record in records:
            if not self._claim(record):
                continue
            resumed += 1
            if record.status == NotificationStatus.RETRYING.value and record.next_attempt_at:
                with self._retry_lock:
                    heapq.heappush(self._retry_heap,
                                   (record.next_attempt_at.timestamp(), next(self._seq), record))
            else:
                self._submit(record)
        if resumed:
            logger.info(f"Resumed {resumed} unsent notifications")
        return resumed

    # --- Workers ---

    def _worker_loop(self):
        while not self.stop_event.is_set():
            try:
                record = self._queue.get(timeout=0.2)
            except queue.Empty:
                continue
            try:
                self.deliver(record)
            except Exception:
                self.stats.incr("worker_errors")
                self._release(record)
                logger.exception(f"Dispatcher worker crashed on record {record.id}")
            finally:
                self._queue.task_done()

    def start(self):
        """Start the workers. Records left in the queue or retry heap by an
        earlier stop() are delivered by the new workers."""
        if self._running:
            return
        # a previous stop() leaves the event set; new workers would exit at once
        self.stop_event.clear()
        self._running = True
        for i in range(self.num_workers):
            t = threading.Thread(target=self._worker_loop, name=f"dispatcher-{i}", daemon=True)
            t.start()
            self._workers.append(t)
        logger.info(f"Dispatcher started with {self.num_workers} workers")

    def shutdown_timeout(self):
        timeouts = [getattr(c, "timeout", 0) or 0 for c in self.channels.values()]
        return max(timeouts, default=0) + SHUTDOWN_GRACE_SECONDS

    def stop(self):
        """Signal workers and wait for in-flight sends. Queued records stay pending."""
        self.stop_event.set()
        timeout = self.shutdown_timeout()
        for t in self._workers:
            t.join(timeout=timeout)
            if t.is_alive():
                logger.warning(f"{t.name} did not finish within {timeout}s")
        self._workers = []
        self._running = False

    def get_stats(self):
        stats = self.stats.to_dict()
        stats["queue_depth"] = self._queue.qsize()
        stats["retry_pending"] = self.pending_retries()
        stats["workers"] = len(self._workers)
        return stats
