"""Configure application logging.

Logs are formatted as JSON lines with a timestamp, level, module, message
and the ``component`` tag that request handlers attach (e.g.
``CHECKOUT_POST``, ``PESAPAL_IPN``). Any dict passed as ``extra={"extra": ...}``
is merged into the top level of the record.
"""

import json
import logging
import logging.handlers
import os
from datetime import datetime, timezone

_CONFIGURED = False


class JsonFormatter(logging.Formatter):
    """Format log records as JSON strings."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "module": record.module,
            "message": record.getMessage(),
        }
        component = getattr(record, "component", None)
        if component:
            log_record["component"] = component
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            log_record.update(extra)
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record, default=str)


def configure_logging(level: str = "INFO", log_dir: str | None = None) -> None:
    """Configure the root logger once per process.

    Args:
        level: Name of the logging level for the root logger.
        log_dir: When set, also write to a rotating ``checkout.log`` in this
            directory (created if missing).
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    logger = logging.getLogger()
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    formatter = JsonFormatter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            filename=os.path.join(log_dir, "checkout.log"),
            maxBytes=5 * 1024 * 1024,  # 5 MB per log file
            backupCount=3,
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    _CONFIGURED = True
