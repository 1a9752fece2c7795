# app/core/logger.py
"""
Shared application logger.

Modules either import ``logger`` from here or create their own with
``logging.getLogger(__name__)``; both end up on the root handler configured below.
"""
import logging
import sys

from app.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging() -> None:
    level = logging.DEBUG if settings.DEBUG else logging.INFO
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(level)

    # Third-party clients are chatty at DEBUG
    for noisy in ("httpx", "httpcore", "openai", "botocore", "boto3", "urllib3", "pdfminer"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


configure_logging()

logger = logging.getLogger("app")
