"""SQLite store for metric samples, alerts and notification records."""
import json
import sqlite3
import logging
from contextlib import contextmanager
from pathlib import Path

from models.alerts import Alert, NotificationRecord, Note, context_to_dict
from models.enums import AlertStatus, NotificationStatus
from models.metrics import MetricSample
from utils.clock import to_iso
from utils.errors import StoreError
from utils.rwlock import RWLock

logger = logging.getLogger("opsmonitor.db")

OPEN_STATUSES = (AlertStatus.ACTIVE.value, AlertStatus.ACKNOWLEDGED.value)
TERMINAL_NOTIFICATION_STATUSES = (NotificationStatus.SENT.value, NotificationStatus.FAILED.value)


def _placeholders(values):
    return ", ".join("?" for _ in values)


class Database:
    """Thread-safe store. Reads share a lock, writes take it exclusively.

    Every sqlite3 error is re-raised as StoreError; a write that raises has
    been rolled back.
    """

    def __init__(self, db_path="data/opsmonitor.db"):
        self.db_path = db_path
        self.conn = None
        self._lock = RWLock()

    def connect(self):
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()
        return self

    def close(self):
        if self.conn:
            with self._lock.write_lock():
                self.conn.close()
                self.conn = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, *args):
        self.close()

    def _create_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS metric_samples (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                type TEXT NOT NULL,
                name TEXT NOT NULL,
                value REAL NOT NULL,
                unit TEXT DEFAULT '',
                threshold REAL DEFAULT 0,
                status TEXT NOT NULL,
                timestamp TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_samples_key
                ON metric_samples(type, name, timestamp);
            CREATE INDEX IF NOT EXISTS idx_samples_timestamp
                ON metric_samples(timestamp);

            CREATE TABLE IF NOT EXISTS alerts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                rule_id TEXT NOT NULL,
                rule_name TEXT NOT NULL,
                metric_type TEXT NOT NULL,
                metric_name TEXT NOT NULL,
                value REAL,
                threshold REAL,
                severity TEXT NOT NULL,
                status TEXT NOT NULL,
                message TEXT,
                escalation_level INTEGER DEFAULT 0,
                escalated_at TEXT,
                suppressed INTEGER DEFAULT 0,
                suppressed_count INTEGER DEFAULT 0,
                fired_at TEXT NOT NULL,
                acknowledged_at TEXT,
                acknowledged_by TEXT,
                resolved_at TEXT,
                resolved_by TEXT,
                context TEXT DEFAULT '[]'
            );

            CREATE INDEX IF NOT EXISTS idx_alerts_rule
                ON alerts(rule_id, fired_at);
            CREATE INDEX IF NOT EXISTS idx_alerts_status
                ON alerts(status);

            CREATE TABLE IF NOT EXISTS notification_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                alert_id INTEGER NOT NULL,
                channel TEXT NOT NULL,
                recipient TEXT,
                subject TEXT,
                content TEXT,
                event TEXT NOT NULL,
                status TEXT NOT NULL,
                retry_count INTEGER DEFAULT 0,
                max_retries INTEGER DEFAULT 3,
                error TEXT,
                sent_at TEXT,
                created_at TEXT NOT NULL,
                next_attempt_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_notifications_alert
                ON notification_records(alert_id);
            CREATE INDEX IF NOT EXISTS idx_notifications_status
                ON notification_records(status);
        """)
        self.conn.commit()

    @contextmanager
    def _read(self):
        with self._lock.read_lock():
            if self.conn is None:
                raise StoreError("Database is not connected")
            try:
                yield self.conn
            except sqlite3.Error as e:
                raise StoreError(f"Read failed: {e}") from e

    @contextmanager
    def _write(self):
        with self._lock.write_lock():
            if self.conn is None:
                raise StoreError("Database is not connected")
            try:
                yield self.conn
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise StoreError(f"Write failed: {e}") from e

    # --- Metric samples ---

    def save_metric(self, sample: MetricSample) -> MetricSample:
        with self._write() as conn:
            cur = conn.execute("""
                INSERT INTO metric_samples (type, name, value, unit, threshold, status, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (sample.type, sample.name, sample.value, sample.unit, sample.threshold,
                  sample.status, to_iso(sample.timestamp)))
        logger.debug(f"Saved sample {sample.type}/{sample.name}={sample.value}")
        return sample.with_id(cur.lastrowid)

    def get_metrics(self, metric_type=None, name=None, since=None, limit=100):
        query = "SELECT * FROM metric_samples WHERE 1=1"
        params = []
        if metric_type:
            query += " AND type = ?"
            params.append(metric_type)
        if name:
            query += " AND name = ?"
            params.append(name)
        if since:
            query += " AND timestamp >= ?"
            params.append(to_iso(since))
        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)
        with self._read() as conn:
            rows = conn.execute(query, params).fetchall()
        return [MetricSample.from_dict(dict(r)) for r in rows]

    def count_metrics(self):
        with self._read() as conn:
            row = conn.execute("SELECT COUNT(*) AS cnt FROM metric_samples").fetchone()
        return row["cnt"]

    # --- Alerts ---

    @staticmethod
    def _row_to_alert(row):
        d = dict(row)
        d["context"] = json.loads(d.get("context") or "[]")
        return Alert.from_dict(d)

    def create_alert(self, alert: Alert) -> Alert:
        d = alert.to_dict()
        with self._write() as conn:
            cur = conn.execute("""
                INSERT INTO alerts
                (rule_id, rule_name, metric_type, metric_name, value, threshold, severity,
                 status, message, escalation_level, escalated_at, suppressed, suppressed_count,
                 fired_at, acknowledged_at, acknowledged_by, resolved_at, resolved_by, context)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                d["rule_id"], d["rule_name"], d["metric_type"], d["metric_name"],
                d["value"], d["threshold"], d["severity"], d["status"], d["message"],
                d["escalation_level"], d["escalated_at"], int(d["suppressed"]),
                d["suppressed_count"], d["fired_at"], d["acknowledged_at"],
                d["acknowledged_by"], d["resolved_at"], d["resolved_by"],
                json.dumps(d["context"]),
            ))
        alert.id = cur.lastrowid
        return alert

    def get_alert(self, alert_id):
        with self._read() as conn:
            row = conn.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,)).fetchone()
        return self._row_to_alert(row) if row else None

    def get_alerts(self, status=None, severity=None, rule_id=None, limit=100):
        query = "SELECT * FROM alerts WHERE 1=1"
        params = []
        if status:
            query += " AND status = ?"
            params.append(status)
        if severity:
            query += " AND severity = ?"
            params.append(severity)
        if rule_id:
            query += " AND rule_id = ?"
            params.append(rule_id)
        query += " ORDER BY fired_at DESC, id DESC LIMIT ?"
        params.append(limit)
        with self._read() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_alert(r) for r in rows]

    def get_unresolved_alerts(self, rule_id=None):
        query = f"SELECT * FROM alerts WHERE status IN ({_placeholders(OPEN_STATUSES)})"
        params = list(OPEN_STATUSES)
        if rule_id:
            query += " AND rule_id = ?"
            params.append(rule_id)
        query += " ORDER BY fired_at ASC, id ASC"
        with self._read() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_alert(r) for r in rows]

    def get_latest_alert(self, rule_id):
        with self._read() as conn:
            row = conn.execute("""
                SELECT * FROM alerts WHERE rule_id = ?
                ORDER BY fired_at DESC, id DESC LIMIT 1
            """, (rule_id,)).fetchone()
        return self._row_to_alert(row) if row else None

    def transition_alert(self, alert_id, from_statuses, to_status, at, actor=None, note=None):
        """Move an alert to `to_status` only if it is currently in `from_statuses`.

        Returns True when this call performed the change.
        """
        sets = ["status = ?"]
        params = [to_status]
        if to_status == AlertStatus.ACKNOWLEDGED.value:
            sets += ["acknowledged_at = ?", "acknowledged_by = ?"]
            params += [to_iso(at), actor]
        elif to_status == AlertStatus.RESOLVED.value:
            sets += ["resolved_at = ?", "resolved_by = ?", "suppressed = 0"]
            params += [to_iso(at), actor]
        params.append(alert_id)
        params += list(from_statuses)

        with self._write() as conn:
            cur = conn.execute(
                f"UPDATE alerts SET {', '.join(sets)} "
                f"WHERE id = ? AND status IN ({_placeholders(from_statuses)})",
                params,
            )
            changed = cur.rowcount == 1
            if changed and note:
                row = conn.execute("SELECT context FROM alerts WHERE id = ?", (alert_id,)).fetchone()
                context = json.loads(row["context"] or "[]")
                context.append(context_to_dict(Note(author=actor or "", text=note, at=to_iso(at))))
                conn.execute("UPDATE alerts SET context = ? WHERE id = ?",
                             (json.dumps(context), alert_id))
        return changed

    def mark_suppressed(self, alert_id, at=None):
        with self._write() as conn:
            cur = conn.execute(f"""
                UPDATE alerts SET suppressed = 1, suppressed_count = suppressed_count + 1
                WHERE id = ? AND status IN ({_placeholders(OPEN_STATUSES)})
            """, (alert_id, *OPEN_STATUSES))
        return cur.rowcount == 1

    def escalate_alert(self, alert_id, expected_level, at):
        """Bump the escalation level if nobody else did since `expected_level` was read."""
        with self._write() as conn:
            cur = conn.execute("""
                UPDATE alerts SET escalation_level = escalation_level + 1, escalated_at = ?
                WHERE id = ? AND status = ? AND escalation_level = ?
            """, (to_iso(at), alert_id, AlertStatus.ACTIVE.value, expected_level))
        return cur.rowcount == 1

    def alert_stats(self):
        with self._read() as conn:
            total = conn.execute("SELECT COUNT(*) AS cnt FROM alerts").fetchone()["cnt"]
            by_status = conn.execute(
                "SELECT status, COUNT(*) AS cnt FROM alerts GROUP BY status").fetchall()
            by_severity = conn.execute(
                "SELECT severity, COUNT(*) AS cnt FROM alerts GROUP BY severity").fetchall()
            by_rule = conn.execute(
                "SELECT rule_id, COUNT(*) AS cnt FROM alerts GROUP BY rule_id").fetchall()
        return {
            "total": total,
            "by_status": {r["status"]: r["cnt"] for r in by_status},
            "by_severity": {r["severity"]: r["cnt"] for r in by_severity},
            "by_rule": {r["rule_id"]: r["cnt"] for r in by_rule},
        }

    def active_counts_by_severity(self):
        with self._read() as conn:
            rows = conn.execute("""
                SELECT severity, COUNT(*) AS cnt FROM alerts
                WHERE status = ? GROUP BY severity
            """, (AlertStatus.ACTIVE.value,)).fetchall()
        return {r["severity"]: r["cnt"] for r in rows}

    # --- Notification records ---

    def create_notification(self, record: NotificationRecord) -> NotificationRecord:
        d = record.to_dict()
        with self._write() as conn:
            cur = conn.execute("""
                INSERT INTO notification_records
                (alert_id, channel, recipient, subject, content, event, status, retry_count,
                 max_retries, error, sent_at, created_at, next_attempt_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                d["alert_id"], d["channel"], d["recipient"], d["subject"], d["content"],
                d["event"], d["status"], d["retry_count"], d["max_retries"], d["error"],
                d["sent_at"], d["created_at"], d["next_attempt_at"],
            ))
        record.id = cur.lastrowid
        return record

    def update_notification(self, record: NotificationRecord) -> bool:
        """Persist delivery state. Records already sent or failed are left untouched."""
        with self._write() as conn:
            cur = conn.execute(f"""
                UPDATE notification_records
                SET status = ?, retry_count = ?, error = ?, sent_at = ?, next_attempt_at = ?
                WHERE id = ? AND status NOT IN ({_placeholders(TERMINAL_NOTIFICATION_STATUSES)})
            """, (
                record.status, record.retry_count, record.error, to_iso(record.sent_at),
                to_iso(record.next_attempt_at), record.id, *TERMINAL_NOTIFICATION_STATUSES,
            ))
        return cur.rowcount == 1

    def get_notification(self, record_id):
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM notification_records WHERE id = ?", (record_id,)).fetchone()
        return NotificationRecord.from_dict(dict(row)) if row else None

    def get_notifications(self, alert_id=None, status=None, limit=100):
        query = "SELECT * FROM notification_records WHERE 1=1"
        params = []
        if alert_id is not None:
            query += " AND alert_id = ?"
            params.append(alert_id)
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        with self._read() as conn:
            rows = conn.execute(query, params).fetchall()
        return [NotificationRecord.from_dict(dict(r)) for r in rows]

    def get_notifications_by_status(self, *statuses):
        with self._read() as conn:
            rows = conn.execute(f"""
                SELECT * FROM notification_records
                WHERE status IN ({_placeholders(statuses)}) ORDER BY id ASC
            """, statuses).fetchall()
        return [NotificationRecord.from_dict(dict(r)) for r in rows]

    def notification_stats(self):
        with self._read() as conn:
            by_status = conn.execute("""
                SELECT status, COUNT(*) AS cnt FROM notification_records GROUP BY status
            """).fetchall()
            by_channel = conn.execute("""
                SELECT channel, COUNT(*) AS cnt FROM notification_records GROUP BY channel
            """).fetchall()
        return {
            "by_status": {r["status"]: r["cnt"] for r in by_status},
            "by_channel": {r["channel"]: r["cnt"] for r in by_channel},
        }

    # --- Retention ---

    def purge_expired(self, cutoff):
        """Delete data older than `cutoff`. Open alerts and their records are kept."""
        cutoff_iso = to_iso(cutoff)
        terminal = _placeholders(TERMINAL_NOTIFICATION_STATUSES)
        with self._write() as conn:
            metrics = conn.execute(
                "DELETE FROM metric_samples WHERE timestamp < ?", (cutoff_iso,)).rowcount
            notifications = conn.execute(f"""
                DELETE FROM notification_records
                WHERE status IN ({terminal}) AND created_at < ?
                  AND alert_id NOT IN (
                      SELECT id FROM alerts WHERE status IN ({_placeholders(OPEN_STATUSES)}))
            """, (*TERMINAL_NOTIFICATION_STATUSES, cutoff_iso, *OPEN_STATUSES)).rowcount
            alerts = conn.execute("""
                DELETE FROM alerts
                WHERE status = ? AND resolved_at IS NOT NULL AND resolved_at < ?
            """, (AlertStatus.RESOLVED.value, cutoff_iso)).rowcount
            notifications += conn.execute(f"""
                DELETE FROM notification_records
                WHERE status IN ({terminal}) AND alert_id NOT IN (SELECT id FROM alerts)
            """, TERMINAL_NOTIFICATION_STATUSES).rowcount
        return {"metrics": metrics, "alerts": alerts, "notifications": notifications}
