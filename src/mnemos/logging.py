import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

from mnemos.config import settings

# Context variable to track the request id across threads and calls
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

def get_request_id() -> str:
    """Retrieve the current request_id or generate a new one if not set."""
    rid = request_id_ctx.get()
    if rid is None:
        rid = str(uuid.uuid4())
        request_id_ctx.set(rid)
    return rid

@contextmanager
def request_scope(request_id: Optional[str] = None) -> Iterator[str]:
    """Bind a request id for the duration of one collaborator call."""
    token = request_id_ctx.set(request_id or str(uuid.uuid4()))
    try:
        yield request_id_ctx.get()
    finally:
        request_id_ctx.reset(token)

class RequestIDFilter(logging.Filter):
    """Injects request_id into log records."""
    def filter(self, record):
        record.request_id = get_request_id()
        return True

def configure_logging(level: str = "INFO"):
    """Configures the root logger with a standard format including request_id."""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers to avoid duplication
    if logger.handlers:
        logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | [%(request_id)s] | %(name)s:%(funcName)s:%(lineno)d - %(message)s"
    )
    handler.setFormatter(formatter)

    handler.addFilter(RequestIDFilter())

    logger.addHandler(handler)

    # Silence noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)

# Initialize logging on import with default settings
configure_logging(settings.LOG_LEVEL)
logger = logging.getLogger("mnemos")
