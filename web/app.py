"""
Read-only Flask JSON API over the monitoring pipeline.

API endpoints:
  GET /api/health          - Overall status and active alert counts
  GET /api/alerts          - Alerts (?status=&severity=&limit=)
  GET /api/alerts/<id>     - One alert with its notification records
  GET /api/metrics         - Recent samples (?type=&name=&limit=)
  GET /api/notifications   - Notification records (?alert_id=&status=&limit=)
  GET /api/stats           - Pipeline, lifecycle and dispatcher counters
  GET /api/rules           - Configured alert rules

Started via: python main.py web [--port 5000] [--host 127.0.0.1]
"""
import logging

from flask import Flask, jsonify, request

from utils.errors import StoreError

logger = logging.getLogger("opsmonitor.web.app")

MAX_LIMIT = 1000


def create_app(config: dict, pipeline) -> Flask:
    """
    Factory function. Receives the pipeline built by main.py or wsgi.py.

    Args:
        config: Application config dict
        pipeline: MonitoringPipeline used for every query
    """
    app = Flask(__name__)
    app.config["OPS_MONITOR"] = config

    def _limit(default=100):
        try:
            return max(1, min(int(request.args.get("limit", default)), MAX_LIMIT))
        except ValueError:
            return default

    @app.errorhandler(StoreError)
    def handle_store_error(e):
        logger.error(f"Store error serving {request.path}: {e}")
        return jsonify({"error": "Store unavailable"}), 503

    @app.route("/api/health")
    def api_health():
        health = pipeline.get_health()
        code = 503 if health["status"] == "critical" else 200
        return jsonify(health), code

    @app.route("/api/alerts")
    def api_alerts():
        alerts = pipeline.list_alerts(status=request.args.get("status"),
                                      severity=request.args.get("severity"),
                                      limit=_limit())
        return jsonify({"alerts": [a.to_dict() for a in alerts], "count": len(alerts)})

    @app.route("/api/alerts/<int:alert_id>")
    def api_alert(alert_id):
        alert = pipeline.store.get_alert(alert_id)
        if alert is None:
            return jsonify({"error": f"Alert not found: {alert_id}"}), 404
        notifications = pipeline.list_notifications(alert_id=alert_id, limit=MAX_LIMIT)
        return jsonify({"alert": alert.to_dict(),
                        "notifications": [n.to_dict() for n in notifications]})

    @app.route("/api/metrics")
    def api_metrics():
        samples = pipeline.list_metrics(metric_type=request.args.get("type"),
                                        name=request.args.get("name"),
                                        limit=_limit())
        return jsonify({"metrics": [s.to_dict() for s in samples], "count": len(samples)})

    @app.route("/api/notifications")
    def api_notifications():
        alert_id = request.args.get("alert_id", type=int)
        records = pipeline.list_notifications(alert_id=alert_id,
                                              status=request.args.get("status"),
                                              limit=_limit())
        return jsonify({"notifications": [r.to_dict() for r in records], "count": len(records)})

    @app.route("/api/stats")
    def api_stats():
        return jsonify(pipeline.get_stats())

    @app.route("/api/rules")
    def api_rules():
        rules = pipeline.list_rules()
        return jsonify({"rules": [r.to_dict() for r in rules], "count": len(rules)})

    return app
