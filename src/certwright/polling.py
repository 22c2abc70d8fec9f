"""Poll-and-sleep loops for resources whose status changes server-side."""

import logging
import threading
import time
from collections.abc import Callable
from typing import TypeVar

from certwright._logging import log_extra, resolve_logger
from certwright.config import PollPolicy
from certwright.exceptions import OperationCancelled, PollTimeoutError, parse_retry_after
from certwright.transport import AcmeResponse

T = TypeVar("T")


class Poller:
    """Re-fetch a resource until it reaches a terminal status.

    Sleeping is done by waiting on the caller's cancellation event, so a
    cancelled operation wakes immediately instead of finishing its sleep.

    Args:
        policy: Backoff intervals and wait budget.
        logger: Optional logger; defaults to the module logger.
    """

    def __init__(self, policy: PollPolicy | None = None, logger: logging.Logger | None = None):
        self.policy = policy or PollPolicy()
        self._log = resolve_logger(logger, __name__)

    def poll(
        self,
        fetch: Callable[[], AcmeResponse],
        parse: Callable[[AcmeResponse], T],
        is_done: Callable[[T], bool],
        resource: str,
        url: str,
        cancel: threading.Event | None = None,
    ) -> T:
        """Fetch until ``is_done`` accepts the parsed value.

        A ``Retry-After`` header longer than the next backoff step replaces
        it; no single sleep outlasts the remaining budget.

        Raises:
            PollTimeoutError: The budget ran out first.
            OperationCancelled: ``cancel`` was set.
        """
        waiter = cancel if cancel is not None else threading.Event()
        delays = self.policy.delays()
        started = time.monotonic()
        attempts = 0

        while True:
            if waiter.is_set():
                raise OperationCancelled(f"Polling {resource} at {url} cancelled")

            response = fetch()
            value = parse(response)
            attempts += 1
            status = getattr(value, "status", None)
            if is_done(value):
                self._log.debug(
                    "Poll finished",
                    extra=log_extra(resource=resource, url=url, status=status, attempts=attempts),
                )
                return value

            waited = time.monotonic() - started
            remaining = self.policy.timeout - waited
            if remaining <= 0:
                raise PollTimeoutError(resource, url, waited, status)

            delay = next(delays)
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            if retry_after is not None and retry_after > delay:
                delay = retry_after
            delay = min(delay, remaining)

            self._log.debug(
                "Resource not final yet",
                extra=log_extra(resource=resource, url=url, status=status, delay=delay),
            )
            if waiter.wait(delay):
                raise OperationCancelled(f"Polling {resource} at {url} cancelled")
