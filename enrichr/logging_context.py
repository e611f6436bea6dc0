from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

_job_id_ctx: ContextVar[str | None] = ContextVar("job_id", default=None)


def get_job_id() -> str | None:
    return _job_id_ctx.get()


@contextmanager
def job_log_context(job_id: str) -> Iterator[None]:
    token = _job_id_ctx.set(job_id)
    try:
        yield
    finally:
        _job_id_ctx.reset(token)
