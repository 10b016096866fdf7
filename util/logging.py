"""
Structured logging for the secret generator.
Reconcile decisions, store operations and dispatch cycles; secret values are never written to the log.
"""

import logging
from typing import Any, Dict, List

# Fields whose values are redacted by sanitize_payload
SENSITIVE_FIELDS = ['value', 'data', 'token', 'password']


class StructuredLogger:
    """Structured logger for reconcile, store and dispatcher operations."""

    def __init__(self, name: str = "secret_generator"):
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

    def set_debug(self, enabled: bool):
        """Switch between DEBUG and INFO verbosity."""
        self.logger.setLevel(logging.DEBUG if enabled else logging.INFO)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {sanitize_payload(details)}"

        self.logger.log(level, message)

    def log_reconcile_decision(self, identity: str, decision: str, reason: str):
        """Log whether a record needs generation."""
        self.log_operation("reconcile.decision", decision, {"secret": identity, "reason": reason})

    def log_secret_generated(self, identity: str, target_key: str, length: int, resource_version: str = None):
        """Log a successful generation. Only the token length is recorded."""
        details = {"secret": identity, "target_key": target_key, "length": length}
        if resource_version:
            details["resource_version"] = resource_version

        self.log_operation("reconcile.generated", "success", details)

    def log_reconcile_failure(self, identity: str, stage: str, error: Dict[str, Any]):
        """Log an abandoned reconcile attempt."""
        details = {"secret": identity, "stage": stage}
        if error:
            details["error"] = error

        self.log_operation("reconcile.failed", "abandoned", details, level=logging.ERROR)

    def log_store_operation(self, operation: str, identity: str = None, status: str = "success", details: Dict[str, Any] = None):
        """Log a store read/write."""
        log_details = {}
        if identity:
            log_details["secret"] = identity
        if details:
            log_details.update(details)

        level = logging.INFO if status == "success" else logging.WARNING
        self.log_operation(f"store.{operation}", status, log_details, level=level)

    def log_dispatch_cycle(self, cycle: str, start_time: float, end_time: float, status: str = "success", details: Dict[str, Any] = None):
        """Log a dispatcher resync or watch window."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {"duration_ms": duration_ms}
        if details:
            log_details.update(details)
        elif status == "success":
            log_details["message"] = f"Dispatch cycle '{cycle}' completed in {duration_ms}ms"
        elif status == "failed":
            log_details["message"] = f"Dispatch cycle '{cycle}' failed after {duration_ms}ms"

        self.log_operation(f"dispatch.{cycle}", status, log_details)

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
    """Sanitize payloads for logging."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

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
