"""Logging plumbing shared by every certwright component."""

import logging
import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

_root = logging.getLogger("certwright")
_root.addHandler(logging.NullHandler())

# Identifiers the current task works on; each worker thread sets its own
_domains: ContextVar[tuple[str, ...]] = ContextVar("certwright_domains", default=())


@contextmanager
def domain_context(domains: Iterable[str] | None) -> Iterator[None]:
    """Tag log records emitted inside the block with ``domains``.

    Nested blocks shadow the outer tag and restore it on exit.
    """
    token = _domains.set(tuple(domains or ()))
    try:
        yield
    finally:
        _domains.reset(token)


def get_domain_extra() -> dict[str, Any]:
    """Domain fields for ``extra=``: ``domain`` for one, ``domains`` for several."""
    domains = _domains.get()
    if not domains:
        return {}
    if len(domains) == 1:
        return {"domain": domains[0]}
    return {"domains": list(domains)}


def log_extra(**fields: Any) -> dict[str, Any]:
    """Merge ``fields`` over the current domain tag."""
    return {**get_domain_extra(), **fields}


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def resolve_logger(logger: logging.Logger | None, name: str) -> logging.Logger:
    """Return the injected logger, or the module logger ``name``.

    Module loggers sit under ``certwright``, which only carries a
    NullHandler, so nothing is emitted until the application configures
    logging.
    """
    return logger if logger is not None else get_logger(name)


class Timer:
    """Wall-clock stopwatch for ``elapsed_ms`` log fields.

    Usage:
        with Timer() as t:
            response = http.post(...)
        log.debug("Request done", extra={"elapsed_ms": t.elapsed_ms})
    """

    def __init__(self) -> None:
        self.elapsed_ms: float = 0
        self._started: float | None = None

    def __enter__(self) -> "Timer":
        self._started = time.perf_counter()
        return self

    def __exit__(self, *exc_info: object) -> None:
        if self._started is not None:
            self.elapsed_ms = round((time.perf_counter() - self._started) * 1000, 2)
