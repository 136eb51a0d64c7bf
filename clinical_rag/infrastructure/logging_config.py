"""Structured logging configuration.

This module provides structured logging with JSON formatting for production
environments and human-readable formatting for development, plus a filter that
masks PHI in every log message before it is emitted.

Security Impact:
    - Every message passes through the PHI detector; matched values are
      replaced by their mask tokens
    - Structured format enables better log analysis
    - Log levels prevent information disclosure
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from clinical_rag.domain.services.phi_detector import DEFAULT_DETECTOR, PHIDetector

logger = logging.getLogger(__name__)


class PHIRedactingFilter(logging.Filter):
    """Masks PHI in log messages.

    The formatted message is redacted and frozen into ``record.msg`` (with
    ``args`` cleared) so handlers and formatters never see the raw values.
    """

    def __init__(self, detector: Optional[PHIDetector] = None):
        super().__init__()
        self.detector = detector or DEFAULT_DETECTOR

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if self.detector.contains_phi(message):
            record.msg, _ = self.detector.redact(message)
            record.args = None
        return True


class StructuredFormatter(logging.Formatter):
    """Structured JSON formatter for logs."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Parameters:
            record: Log record to format

        Returns:
            JSON string representation of log record
        """
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        if hasattr(record, "owner_id"):
            log_data["owner_id"] = record.owner_id

        return json.dumps(log_data, default=str)


def setup_logging(use_json: bool = False, log_level: str = "INFO", redact_phi: bool = True):
    """Setup application logging.

    Parameters:
        use_json: Use JSON formatting (for production)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        redact_phi: Attach PHIRedactingFilter to the console handler

    Security Impact:
        - JSON logs enable better security monitoring
        - PHI filter keeps matched values out of every log sink
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)

    if use_json:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
    handler.setFormatter(formatter)

    if redact_phi:
        handler.addFilter(PHIRedactingFilter())

    root_logger.addHandler(handler)

    # Third-party HTTP clients log request bodies at DEBUG
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
