# agenda/utils/my_logging.py
"""Logging configuration"""
import logging
import re
import sys
from agenda.config.settings import get_settings

# Manage tokens travel in the path, webhook secrets in the query string
MANAGE_TOKEN_PATH = re.compile(r"(/manage/)[^/?]+")
SECRET_QUERY = re.compile(r"(token=)[^&]+")


def redact_url(path: str, query: str = "") -> str:
    """Request target with credentials replaced, safe to log"""
    safe = MANAGE_TOKEN_PATH.sub(r"\1[redacted]", path)
    if query:
        safe = safe + "?" + SECRET_QUERY.sub(r"\1[redacted]", query)
    return safe


class RedactAccessLogFilter(logging.Filter):
    """Strips manage tokens and secrets from uvicorn access log lines"""

    def filter(self, record: logging.LogRecord) -> bool:
        # uvicorn.access args: (client_addr, method, full_path, http_version, status_code)
        if isinstance(record.args, tuple) and len(record.args) >= 3:
            path, _, query = str(record.args[2]).partition("?")
            args = list(record.args)
            args[2] = redact_url(path, query)
            record.args = tuple(args)
        return True


def setup_logging(verbose=True):
    """Configure application logging"""
    settings = get_settings()

    if verbose:
        level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    else:
        level = logging.WARNING

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)]
    )

    access_logger = logging.getLogger("uvicorn.access")
    if not any(isinstance(f, RedactAccessLogFilter) for f in access_logger.filters):
        access_logger.addFilter(RedactAccessLogFilter())

    if not verbose:
        # Silence noisy loggers
        noisy_loggers = [
            "sqlalchemy",
            "sqlalchemy.engine",
            "sqlalchemy.pool",
            "sqlalchemy.orm",
            "alembic",
            "celery",
            "uvicorn",
            "uvicorn.error",
            "uvicorn.access",
        ]
        for name in noisy_loggers:
            logger = logging.getLogger(name)
            logger.setLevel(logging.ERROR)
            logger.propagate = False


def mask_phone(phone: str) -> str:
    """Keep only the last four digits of a phone number for log lines."""
    if not phone:
        return ""
    return f"***{phone[-4:]}"
