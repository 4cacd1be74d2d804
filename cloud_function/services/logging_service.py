"""
Structured Logging Service - Cloud Logging integration.

Logs are sent to Google Cloud Logging as structured entries (job_id,
chapter_id, stage, ...) and mirrored to the console so Cloud Run / local
runs still show them.
"""
import json
import sys
from datetime import datetime, timezone
from typing import Optional, Any

from google.cloud import logging as cloud_logging

from config import CLOUD_LOGGING_ENABLED

LOGGER_NAME = "book-condenser"


class StructuredLogger:
    """Provides structured logging for Cloud Logging integration."""

    def __init__(self, job_id: Optional[str] = None, chapter_id: Optional[str] = None,
                 enable_console: bool = True, enable_cloud: bool = CLOUD_LOGGING_ENABLED):
        """
        Initialize the structured logger.

        Args:
            job_id: Optional job ID to include in all log entries
            chapter_id: Optional chapter ID to include in all log entries
            enable_console: If True, also prints to console (default: True)
            enable_cloud: If False, skips the Cloud Logging client entirely
        """
        self.job_id = job_id
        self.chapter_id = chapter_id
        self.enable_console = enable_console
        self.cloud_logging_enabled = False

        if enable_cloud:
            try:
                self.client = cloud_logging.Client()
                self.logger = self.client.logger(LOGGER_NAME)
                self.cloud_logging_enabled = True
            except Exception as e:
                print(f"Warning: Cloud Logging initialization failed: {e}. Using console only.", file=sys.stderr)

    def info(self, message: str, **kwargs):
        """Log info-level message."""
        self._log("INFO", message, **kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning-level message."""
        self._log("WARNING", message, **kwargs)

    def error(self, message: str, **kwargs):
        """Log error-level message."""
        self._log("ERROR", message, **kwargs)

    def debug(self, message: str, **kwargs):
        """Log debug-level message."""
        self._log("DEBUG", message, **kwargs)

    def _log(self, severity: str, message: str, **kwargs):
        """Sends one entry to Cloud Logging and the console."""
        struct = {
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **kwargs
        }
        if self.job_id:
            struct["job_id"] = self.job_id
        if self.chapter_id:
            struct["chapter_id"] = self.chapter_id

        if self.cloud_logging_enabled:
            try:
                self.logger.log_struct(struct, severity=severity)
            except Exception as e:
                print(f"Cloud Logging error: {e}", file=sys.stderr)

        if self.enable_console:
            console_msg = f"[{severity}] {message}"
            if self.chapter_id:
                console_msg = f"[{self.chapter_id}] {console_msg}"
            if self.job_id:
                console_msg = f"[{self.job_id}] {console_msg}"
            if kwargs:
                console_msg += f" | {json.dumps(kwargs, ensure_ascii=False, default=str)}"

            print(console_msg, file=sys.stderr if severity == "ERROR" else sys.stdout)


class JobLogger:
    """Convenience wrapper for job-specific (and optionally chapter-specific) logging."""

    def __init__(self, job_id: str, chapter_id: Optional[str] = None):
        self.job_id = job_id
        self.chapter_id = chapter_id
        self.logger = _shared_logger(job_id, chapter_id)

    def info(self, message: str, **kwargs):
        """Log info-level message (delegated to the shared StructuredLogger)."""
        self.logger.info(message, **kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning-level message."""
        self.logger.warning(message, **kwargs)

    def error(self, message: str, **kwargs):
        """Log error-level message."""
        self.logger.error(message, **kwargs)

    def debug(self, message: str, **kwargs):
        """Log debug-level message."""
        self.logger.debug(message, **kwargs)

    def log_stage(self, stage: str, status: str, **kwargs):
        """
        Log a processing stage transition.

        Args:
            stage: Stage name (e.g., 'segmentation', 'condensation')
            status: Status (e.g., 'started', 'completed', 'failed')
        """
        self.logger.info(
            f"Stage: {stage} - {status}",
            stage=stage,
            status=status,
            **kwargs
        )

    def log_error(self, stage: str, error: str, **kwargs):
        self.logger.error(
            f"Error in {stage}: {error}",
            stage=stage,
            error=error,
            **kwargs
        )

    def log_metric(self, metric_name: str, value: Any, **kwargs):
        self.logger.info(
            f"Metric: {metric_name}={value}",
            metric=metric_name,
            value=value,
            **kwargs
        )


def _shared_logger(job_id: Optional[str], chapter_id: Optional[str]) -> StructuredLogger:
    # One Cloud Logging client per process; per-job loggers only differ in context.
    scoped = StructuredLogger(job_id=job_id, chapter_id=chapter_id, enable_cloud=False)
    if _global_logger.cloud_logging_enabled:
        scoped.client = _global_logger.client
        scoped.logger = _global_logger.logger
        scoped.cloud_logging_enabled = True
    return scoped


# Global logger instance for shared services
_global_logger = StructuredLogger()

def set_global_job_id(job_id: Optional[str]):
    """Set the job ID for the global logger."""
    _global_logger.job_id = job_id

def get_logger() -> StructuredLogger:
    """Get the global structured logger."""
    return _global_logger
