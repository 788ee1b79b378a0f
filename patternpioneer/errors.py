"""
Error types shared by the model and adapter layers, plus the safe logging
helpers used by the routes.

In development the full exception is logged and echoed to the client. In
production only a sanitized record (context, message, timestamp) is logged
and clients get a generic message.
"""
from typing import Optional

import structlog

from .config import is_development
from .helpers import now_ts, to_iso

logger = structlog.get_logger()

GENERIC_ERROR_MESSAGE = "An error occurred. Please try again later."


class InsufficientCredits(Exception):
    def __init__(self, available: int, needed: int):
        self.available = available
        self.needed = needed
        super().__init__(
            f"Insufficient credits. You have {available} credits but need "
            f"{needed}."
        )


class PaymentError(Exception):
    pass


class StorageError(Exception):
    pass


class MailError(Exception):
    pass


def log_error(context: str, error: Optional[BaseException]) -> None:
    if is_development():
        logger.error("error", context=context, exc_info=error)
        return
    logger.error(
        "error",
        context=context,
        message=str(error) if error is not None else "Unknown error",
        timestamp=to_iso(now_ts()),
    )


def public_error_message(error: Optional[BaseException]) -> str:
    if is_development():
        return str(error) if error else "An error occurred"
    return GENERIC_ERROR_MESSAGE
