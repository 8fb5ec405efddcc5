"""
Structured logging for the caching and optimistic-update layer.
Every operation is logged as `Operation: <op>, Status: <status>, Details: {...}`.
"""

import logging
from typing import Any, Dict, List


class StructuredLogger:
    """Structured logger for cache, optimistic, submission and reconcile operations."""

    def __init__(self, name: str = "engage"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.log(level, message)

    def log_cache_operation(self, operation: str, key: str, status: str = "success", details: Dict[str, Any] = None):
        """Log a local cache operation. Cache traffic is chatty, so it goes to debug."""
        log_details = {"key": key}
        if details:
            log_details.update(details)

        self.log_operation(f"cache.{operation}", status, log_details, level=logging.DEBUG)

    def log_optimistic_operation(self, operation: str, operation_id: str, item_type: str, item_id: Any, status: str = "pending"):
        """Log an optimistic mutation and its resolution."""
        log_details = {
            "operation_id": operation_id,
            "item_type": item_type,
            "item_id": item_id
        }
        self.log_operation(f"optimistic.{operation}", status, log_details, level=logging.DEBUG)

    def log_submission_action(self, action: str, user_id: str, activity_type: str, activity_id: str, status: str = "success", details: Dict[str, Any] = None):
        """Log an attendee submission action."""
        log_details = {
            "user_id": user_id,
            "activity_type": activity_type,
            "activity_id": activity_id
        }
        if details:
            log_details.update(sanitize_payload(details))

        self.log_operation(f"submission.{action}", status, log_details)

    def log_review_decision(self, submission_id: str, decision: str, reviewer: str, reason: str = "", status: str = "success"):
        """Log an admin review decision."""
        log_details = {
            "submission_id": submission_id,
            "decision": decision,
            "reviewer": reviewer,
            "reason": reason[:100] if reason else ""  # Limit reason length
        }
        self.log_operation("review.decision", status, log_details)

    def log_reconcile_event(self, event: str, path: str, details: Dict[str, Any] = None):
        """Log a real-time reconciliation event."""
        log_details = {"path": path}
        if details:
            log_details.update(details)

        self.log_operation(f"reconcile.{event}", "observed", log_details, level=logging.DEBUG)

    def log_invalidation(self, event: str, keys: List[str], user_id: str = None):
        """Log cache invalidation fan-out."""
        log_details = {
            "event": event,
            "key_count": len(keys)
        }
        if user_id:
            log_details["user_id"] = user_id

        self.log_operation("cache.invalidate", "cleared", log_details, level=logging.DEBUG)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads before they reach the log."""
    if sensitive_fields is None:
        sensitive_fields = ['answers', 'responses', 'fileURL', 'email', 'token', 'password']

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
