"""Alert rules, evaluation, lifecycle and channel senders."""
from alerts.evaluator import evaluate, evaluate_condition, classify, Evaluation
from alerts.registry import RuleRegistry, validate_rule
from alerts.lifecycle import AlertLifecycleManager
from alerts.channels import (
    NotificationChannel, ConsoleChannel, FileChannel, EmailChannel, WebhookChannel,
    SlackChannel, DingTalkChannel, SMSChannel, build_channels,
)
