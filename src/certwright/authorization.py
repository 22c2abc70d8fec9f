"""Per-identifier authorization driver.

For every authorization URL of an order the driver runs, on its own
worker thread::

    fetch authorization -> select combination -> present (solver)
        -> notify challenge ready -> poll until terminal -> clean up (solver)

Failures are captured per identifier and raised together as one
:class:`AuthorizationError` once every task has finished; one domain
failing never interrupts the others.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from certwright._logging import Timer, domain_context, log_extra, resolve_logger
from certwright.exceptions import (
    AuthorizationError,
    ChallengeFailedError,
    MalformedResponseError,
    OperationCancelled,
)
from certwright.models import Authorization, AuthorizationStatus, Challenge, ChallengeStatus, Problem
from certwright.polling import Poller
from certwright.solvers.base import Solver
from certwright.solvers.registry import SolverRegistry
from certwright.transport import Transport


class _NotifyGuard:
    """Challenge URLs already signalled ready within one authorize call."""

    def __init__(self) -> None:
        self._urls: set[str] = set()
        self._lock = threading.Lock()

    def claim(self, url: str) -> bool:
        with self._lock:
            if url in self._urls:
                return False
            self._urls.add(url)
            return True

    def release(self, url: str) -> None:
        with self._lock:
            self._urls.discard(url)


@dataclass
class _Outcome:
    domain: str
    authorization: Authorization | None = None
    error: Exception | None = None


def _first_problem(authorization: Authorization) -> Problem | None:
    for challenge in authorization.challenges:
        if challenge.error is not None:
            return challenge.error
    return None


class AuthorizationDriver:
    """Drives authorizations to a terminal status using registered solvers.

    Args:
        transport: Transport for authorization and challenge requests.
        solvers: Registry resolving challenge types to solvers.
        poller: Poll discipline for authorization status.
        max_workers: Ceiling on concurrent identifiers (None: one per identifier).
        logger: Optional logger; defaults to the module logger.
    """

    def __init__(
        self,
        transport: Transport,
        solvers: SolverRegistry,
        poller: Poller,
        max_workers: int | None = None,
        logger: logging.Logger | None = None,
    ):
        self._transport = transport
        self.solvers = solvers
        self._poller = poller
        self.max_workers = max_workers
        self._log = resolve_logger(logger, __name__)

    def fetch(self, url: str) -> Authorization:
        """POST-as-GET an authorization resource."""
        return self._transport.post_as_get(url).parse(Authorization, url=url)

    def deactivate(self, url: str) -> Authorization:
        """Deactivate an authorization (RFC 8555 Section 7.5.2)."""
        response = self._transport.signed_post(url, {"status": "deactivated"})
        authorization = response.parse(Authorization, url=url)
        self._log.info("Authorization deactivated", extra={"url": url, "domain": authorization.domain})
        return authorization

    def authorize(
        self,
        urls: list[str],
        cancel: threading.Event | None = None,
    ) -> list[Authorization]:
        """Authorize every identifier behind ``urls`` concurrently.

        Args:
            urls: Authorization URLs, one per identifier.
            cancel: Event the caller sets to abandon the operation.

        Returns:
            The final (valid) authorizations, in the order of ``urls``.

        Raises:
            AuthorizationError: One or more identifiers failed; carries every
                domain with its cause.
            OperationCancelled: ``cancel`` was set; presented artifacts
                were cleaned up before this is raised.
        """
        if not urls:
            return []

        guard = _NotifyGuard()
        workers = min(self.max_workers or len(urls), len(urls))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="certwright-authz") as pool:
            futures = [pool.submit(self._authorize_one, url, guard, cancel) for url in urls]
            outcomes = [future.result() for future in futures]

        if cancel is not None and cancel.is_set():
            raise OperationCancelled(f"Authorization of {len(urls)} identifier(s) cancelled")

        failures = {o.domain: o.error for o in outcomes if o.error is not None}
        if failures:
            self._log.warning(
                "Authorization failed",
                extra={"failed": sorted(failures), "total": len(outcomes)},
            )
            raise AuthorizationError(failures)
        return [o.authorization for o in outcomes if o.authorization is not None]

    def _authorize_one(
        self, url: str, guard: _NotifyGuard, cancel: threading.Event | None
    ) -> _Outcome:
        if cancel is not None and cancel.is_set():
            return _Outcome(domain=url, error=OperationCancelled("Cancelled before start"))
        try:
            authorization = self.fetch(url)
        except Exception as e:
            return _Outcome(domain=url, error=e)

        with domain_context([authorization.domain]):
            try:
                with Timer() as timer:
                    final = self._drive(authorization, guard, cancel)
            except Exception as e:
                self._log.warning("Identifier failed", extra=log_extra(error=str(e)))
                return _Outcome(domain=authorization.domain, error=e)
            self._log.info("Identifier authorized", extra=log_extra(elapsed_ms=timer.elapsed_ms))
            return _Outcome(domain=authorization.domain, authorization=final)

    def _drive(
        self, authorization: Authorization, guard: _NotifyGuard, cancel: threading.Event | None
    ) -> Authorization:
        domain = authorization.domain
        if authorization.status == AuthorizationStatus.VALID:
            self._log.debug("Authorization already valid", extra=log_extra())
            return authorization
        if authorization.status.is_terminal:
            raise ChallengeFailedError(domain, authorization.status, _first_problem(authorization))

        selected = self.solvers.select(authorization)
        presented: list[tuple[Challenge, Solver, str]] = []
        try:
            for challenge, solver in selected:
                if cancel is not None and cancel.is_set():
                    raise OperationCancelled(f"Cancelled while presenting for {domain}")
                if not challenge.token:
                    raise MalformedResponseError(f"{challenge.type} challenge for {domain} has no token")
                key_authorization = self._transport.signer.key_authorization(challenge.token)
                # Recorded first so a half-finished present is still cleaned up
                presented.append((challenge, solver, key_authorization))
                solver.present(domain, challenge, key_authorization)
                self._log.info("Challenge presented", extra=log_extra(challenge_type=challenge.type))

            for challenge, _ in selected:
                self._notify(challenge, guard)

            final = self._poll(authorization.url or "", cancel)
        finally:
            self._clean_up(domain, presented)

        if final.status != AuthorizationStatus.VALID:
            raise ChallengeFailedError(domain, final.status, _first_problem(final))
        return final

    def _notify(self, challenge: Challenge, guard: _NotifyGuard) -> None:
        """Tell the server to validate ``challenge``, at most once per URL.

        A failed signal releases the URL so a retried authorization sends it again.
        """
        if challenge.status != ChallengeStatus.PENDING or not guard.claim(challenge.url):
            return
        try:
            self._transport.signed_post(challenge.url, {})
        except Exception:
            guard.release(challenge.url)
            raise
        self._log.debug("Challenge ready signalled", extra=log_extra(url=challenge.url))

    def _poll(self, url: str, cancel: threading.Event | None) -> Authorization:
        return self._poller.poll(
            fetch=lambda: self._transport.post_as_get(url),
            parse=lambda response: response.parse(Authorization, url=url),
            is_done=lambda authorization: authorization.status.is_terminal,
            resource="authorization",
            url=url,
            cancel=cancel,
        )

    def _clean_up(self, domain: str, presented: list[tuple[Challenge, Solver, str]]) -> None:
        for challenge, solver, key_authorization in presented:
            try:
                solver.clean_up(domain, challenge, key_authorization)
            except Exception:
                # Best effort; the authorization outcome stands
                self._log.warning(
                    "Challenge cleanup failed",
                    exc_info=True,
                    extra=log_extra(challenge_type=challenge.type),
                )
