"""
logging_config.py
Structured JSON logging for the billing engine.

- Uses python's logging + python-json-logger.
- A ContextVar carries the id of the current run (sweep, billing run, gateway event)
  and a filter stamps it on every record.
- Entry points (cron.py, app.py) call configure_logging() once at startup.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger import jsonlogger

import config

run_id_ctx: ContextVar[str] = ContextVar("run_id", default="-")


class RunIdFilter(logging.Filter):
    def filter(self, record):
        record.run_id = run_id_ctx.get()
        return True


def configure_logging(level: str | None = None) -> None:
    root = logging.getLogger()
    if root.handlers:
        # already configured
        return

    root.setLevel(level or config.LOG_LEVEL)
    handler = logging.StreamHandler()
    fmt_fields = ["asctime", "levelname", "name", "message", "run_id", "module", "funcName", "lineno"]
    formatter = jsonlogger.JsonFormatter(fmt=" ".join(f"%({f})s" for f in fmt_fields))
    handler.setFormatter(formatter)
    handler.addFilter(RunIdFilter())
    root.addHandler(handler)


@contextmanager
def run_context(run_id: str):
    token = run_id_ctx.set(run_id)
    try:
        yield
    finally:
        run_id_ctx.reset(token)
