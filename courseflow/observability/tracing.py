"""Trace ids for log correlation.

Every scheduler dispatch and every handled lifecycle event runs under its own
trace id, bound into structlog's context together with the record or event ids.
"""

import uuid
from contextlib import ExitStack
from typing import Any

import structlog


def new_trace_id() -> str:
    return uuid.uuid4().hex[:16]


class TraceContext:
    """Bind a trace id and extra fields to every log line inside the block.

    Nested contexts shadow the outer fields and restore them on exit.
    """

    def __init__(self, trace_id: str | None = None, **fields: Any):
        self.trace_id = trace_id or new_trace_id()
        self._fields = fields
        self._stack = ExitStack()

    def __enter__(self) -> str:
        self._stack.enter_context(
            structlog.contextvars.bound_contextvars(trace_id=self.trace_id, **self._fields)
        )
        return self.trace_id

    def __exit__(self, *exc_info: Any) -> None:
        self._stack.close()
