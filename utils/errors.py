"""Exception types raised across the monitoring pipeline."""


class MonitorError(Exception):
    """Base class for monitoring errors."""


class RuleValidationError(MonitorError):
    """Alert rule rejected at creation or update time."""
    def __init__(self, message, rule_id=None, field=None):
        super().__init__(message)
        self.rule_id = rule_id
        self.field = field


class RuleNotFoundError(MonitorError):
    def __init__(self, rule_id):
        super().__init__(f"Alert rule not found: {rule_id}")
        self.rule_id = rule_id


class AlertNotFoundError(MonitorError):
    def __init__(self, alert_id):
        super().__init__(f"Alert not found: {alert_id}")
        self.alert_id = alert_id


class AlertStateError(MonitorError):
    """Operator action requested on an alert that is not in a valid source state."""
    NOT_ACTIVE = "not active"
    ALREADY_RESOLVED = "already resolved"

    def __init__(self, alert_id, status, action, reason=None):
        detail = f"{reason} (status is {status})" if reason else f"status is {status}"
        super().__init__(f"Cannot {action} alert {alert_id}: {detail}")
        self.alert_id = alert_id
        self.status = status
        self.action = action
        self.reason = reason


class StoreError(MonitorError):
    """Persistence failure. The state change that raised it did not happen."""


class DeliveryError(MonitorError):
    """Channel send failure with optional transport details."""
    def __init__(self, message, channel=None, status_code=None, response_body=None):
        super().__init__(message)
        self.channel = channel
        self.status_code = status_code
        self.response_body = response_body
