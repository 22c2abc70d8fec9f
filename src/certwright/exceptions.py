"""Error taxonomy for the certwright ACME client."""

from collections.abc import Mapping
from typing import Any

from certwright.models import AcmeErrorType, Problem


class AcmeError(Exception):
    """Base class for every error raised by certwright."""


class AccountKeyError(AcmeError):
    """Account key is missing or fails validity constraints.

    Raised at construction time, before any network call is made.
    """


class TransportError(AcmeError):
    """The CA could not be reached (network failure or timeout).

    Retryable by the caller; never retried internally.
    """

    def __init__(self, message: str, url: str | None = None):
        self.url = url
        super().__init__(message)


class NonceError(TransportError):
    """No nonce was available and fetching a fresh one failed."""


class MalformedResponseError(AcmeError):
    """A successful response body did not parse as the expected resource."""

    def __init__(self, message: str, url: str | None = None, body: str | None = None):
        self.url = url
        self.body = body
        super().__init__(message)


class ProtocolError(AcmeError):
    """Non-success HTTP status carrying a problem document (RFC 7807).

    Attributes:
        type: Machine readable problem type URN.
        detail: Human readable detail, verbatim from the server.
        status_code: HTTP status code of the response.
        subproblems: Per-identifier subproblems, if any.
        retry_after: Seconds from the Retry-After header, if present.
        headers: Response headers with lowercased names.
    """

    def __init__(
        self,
        type: str,
        detail: str,
        status_code: int,
        subproblems: list[dict[str, Any]] | None = None,
        retry_after: int | None = None,
        headers: Mapping[str, str] | None = None,
    ):
        self.type = type
        self.detail = detail
        self.status_code = status_code
        self.subproblems = subproblems
        self.retry_after = retry_after
        self.headers = {key.lower(): value for key, value in (headers or {}).items()}
        super().__init__(f"{type}: {detail}")

    @classmethod
    def from_response(
        cls,
        data: dict[str, Any],
        status_code: int,
        headers: Mapping[str, str] | None = None,
    ) -> "ProtocolError":
        """Create a ProtocolError from a parsed problem document.

        Routes to the subclass registered for the problem type.

        Args:
            data: Parsed JSON problem document.
            status_code: HTTP status code.
            headers: Response headers (for Retry-After extraction).

        Returns:
            ProtocolError instance (or appropriate subclass).
        """
        lowered = {key.lower(): value for key, value in (headers or {}).items()}
        retry_after = parse_retry_after(lowered.get("retry-after"))
        error_type = data.get("type", "about:blank")

        error_cls = _PROBLEM_TYPES.get(error_type, cls)
        return error_cls(
            type=error_type,
            detail=data.get("detail", "Unknown error"),
            status_code=status_code,
            subproblems=data.get("subproblems"),
            retry_after=retry_after,
            headers=headers,
        )

class RateLimitError(ProtocolError):
    """Rate limit exceeded (problem type ``rateLimited``)."""


class BadNonceError(ProtocolError):
    """The server rejected the request nonce (problem type ``badNonce``)."""


class DnsValidationError(ProtocolError):
    """DNS lookup failed during validation (problem type ``dns``)."""


class CAAError(ProtocolError):
    """CAA record forbids issuance (problem type ``caa``)."""


class ServerInternalError(ProtocolError):
    """ACME server internal error (problem type ``serverInternal``)."""


class AccountDoesNotExistError(ProtocolError):
    """No account exists for the key (problem type ``accountDoesNotExist``)."""


class UnauthorizedError(ProtocolError):
    """Client lacks authorization (problem type ``unauthorized``)."""


class OrderError(ProtocolError):
    """Order creation or finalization failed.

    A problem routed to a specific class keeps that class: a rate-limited
    order raises an error that is both an ``OrderError`` and a
    ``RateLimitError``.
    """

    @classmethod
    def from_protocol_error(cls, error: ProtocolError) -> "OrderError":
        """Convert ``error`` to an order error, keeping its problem-type class."""
        if isinstance(error, OrderError):
            return error
        error_cls = _ORDER_ERRORS.get(type(error), OrderError)
        return error_cls(
            type=error.type,
            detail=error.detail,
            status_code=error.status_code,
            subproblems=error.subproblems,
            retry_after=error.retry_after,
            headers=error.headers,
        )


class OrderRateLimitError(OrderError, RateLimitError):
    pass


class OrderBadNonceError(OrderError, BadNonceError):
    pass


class OrderDnsValidationError(OrderError, DnsValidationError):
    pass


class OrderCAAError(OrderError, CAAError):
    pass


class OrderServerInternalError(OrderError, ServerInternalError):
    pass


class OrderAccountDoesNotExistError(OrderError, AccountDoesNotExistError):
    pass


class OrderUnauthorizedError(OrderError, UnauthorizedError):
    pass


_ORDER_ERRORS: dict[type[ProtocolError], type[OrderError]] = {
    RateLimitError: OrderRateLimitError,
    BadNonceError: OrderBadNonceError,
    DnsValidationError: OrderDnsValidationError,
    CAAError: OrderCAAError,
    ServerInternalError: OrderServerInternalError,
    AccountDoesNotExistError: OrderAccountDoesNotExistError,
    UnauthorizedError: OrderUnauthorizedError,
}


_PROBLEM_TYPES: dict[str, type[ProtocolError]] = {
    AcmeErrorType.RATE_LIMITED: RateLimitError,
    AcmeErrorType.BAD_NONCE: BadNonceError,
    AcmeErrorType.DNS: DnsValidationError,
    AcmeErrorType.CAA: CAAError,
    AcmeErrorType.SERVER_INTERNAL: ServerInternalError,
    AcmeErrorType.ACCOUNT_DOES_NOT_EXIST: AccountDoesNotExistError,
    AcmeErrorType.UNAUTHORIZED: UnauthorizedError,
}


class NoSolverError(AcmeError):
    """No registered solver covers any offered challenge combination."""

    def __init__(self, domain: str, offered: list[str]):
        self.domain = domain
        self.offered = offered
        super().__init__(
            f"No solver covers a challenge combination for {domain} (offered: {', '.join(offered) or 'none'})"
        )


class SolverError(AcmeError):
    """A solver could not provision its validation artifact."""


class ChallengeFailedError(AcmeError):
    """An authorization reached a failed terminal status."""

    def __init__(self, domain: str, status: str, problem: Problem | None = None):
        self.domain = domain
        self.status = status
        self.problem = problem
        detail = problem.detail if problem and problem.detail else "no detail provided"
        super().__init__(f"Authorization for {domain} is {status}: {detail}")


class AuthorizationError(AcmeError):
    """Aggregate of every identifier that could not be authorized.

    Attributes:
        failures: Mapping of domain to the error that failed it.
    """

    def __init__(self, failures: Mapping[str, Exception]):
        self.failures = dict(failures)
        lines = [f"{domain}: {error}" for domain, error in self.failures.items()]
        super().__init__(f"{len(lines)} identifier(s) failed authorization:\n  " + "\n  ".join(lines))

    @property
    def domains(self) -> list[str]:
        """Domains that failed, in the order they were reported."""
        return list(self.failures)


class PollTimeoutError(AcmeError, TimeoutError):
    """A poll loop exhausted its wait budget before a terminal status."""

    def __init__(self, resource: str, url: str, waited: float, last_status: str | None = None):
        self.resource = resource
        self.url = url
        self.waited = waited
        self.last_status = last_status
        super().__init__(
            f"{resource} at {url} still {last_status or 'unknown'} after {waited:.1f}s"
        )


class OperationCancelled(AcmeError):
    """The caller cancelled an in-flight operation."""


class DownloadError(AcmeError):
    """Certificate download attempted without a valid, finalized order."""


def parse_retry_after(value: str | None) -> int | None:
    """Parse Retry-After header (seconds or HTTP-date)."""
    if not value:
        return None
    try:
        return max(0, int(value))
    except ValueError:
        pass

    from datetime import datetime, timezone
    from email.utils import parsedate_to_datetime

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0, int((when - datetime.now(timezone.utc)).total_seconds()))
