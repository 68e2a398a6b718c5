"""Context variables surfaced on every log record."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

tenant_id_ctx_var: ContextVar[str | None] = ContextVar("tenant_id", default=None)
operation_id_ctx_var: ContextVar[str | None] = ContextVar("operation_id", default=None)


@contextmanager
def log_context(tenant_id: object | None = None, operation_id: str | None = None) -> Iterator[None]:
    """Bind tenant and operation ids for the duration of a block.

    Ids left as None keep their enclosing value. Each asyncio task owns a
    copy of the context, so concurrent refunds do not see each other's values.
    """
    tenant_token = tenant_id_ctx_var.set(str(tenant_id)) if tenant_id is not None else None
    op_token = operation_id_ctx_var.set(operation_id) if operation_id is not None else None
    try:
        yield
    finally:
        if op_token is not None:
            operation_id_ctx_var.reset(op_token)
        if tenant_token is not None:
            tenant_id_ctx_var.reset(tenant_token)


class LogContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.tenant_id = tenant_id_ctx_var.get() or "-"
        record.operation_id = operation_id_ctx_var.get() or "-"
        return True
