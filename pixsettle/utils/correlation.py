from __future__ import annotations

import contextvars
import uuid
from contextlib import contextmanager
from typing import Iterator

# Task-local correlation id; one per webhook request, bot update or scheduler job
_cid = contextvars.ContextVar("correlation_id", default="")


def set_correlation_id(value: str | None = None) -> str:
    """Set a correlation id for the current task (generate if not provided)."""
    cid = value or uuid.uuid4().hex
    _cid.set(cid)
    return cid


def get_correlation_id() -> str:
    return _cid.get("")


def clear_correlation_id() -> None:
    _cid.set("")


@contextmanager
def correlation_scope(value: str | None = None) -> Iterator[str]:
    """Bind a correlation id for the duration of the block and restore the previous one."""
    token = _cid.set(value or uuid.uuid4().hex)
    try:
        yield _cid.get()
    finally:
        _cid.reset(token)
