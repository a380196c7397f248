"""Structured JSON logging with scan-pass and transfer context fields."""

import logging
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from chainpay.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
pass_id_ctx: ContextVar[str] = ContextVar("pass_id", default="")
transfer_key_ctx: ContextVar[str] = ContextVar("transfer_key", default="")


class ContextFilter(logging.Filter):
    """Inject service and correlation identifiers into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = trace_id_ctx.get()
        record.pass_id = pass_id_ctx.get()
        record.transfer_key = transfer_key_ctx.get()
        return True


def configure_logging() -> None:
    """Configure root logger once per service process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(service_name)s %(trace_id)s %(pass_id)s %(transfer_key)s %(message)s"
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    root.addFilter(context_filter)


logger = logging.getLogger("chainpay")
