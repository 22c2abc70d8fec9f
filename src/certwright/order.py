"""Order lifecycle: create, authorize, finalize, download (RFC 8555 Section 7.4)."""

import ipaddress
import logging
import threading
from collections.abc import Callable, Iterable

from certwright._logging import Timer, resolve_logger
from certwright.authorization import AuthorizationDriver
from certwright.crypto import base64url_encode
from certwright.exceptions import DownloadError, OperationCancelled, OrderError, ProtocolError
from certwright.models import (
    AcmeErrorType,
    CertificateResource,
    Directory,
    Identifier,
    IdentifierType,
    Order,
    OrderStatus,
    Problem,
)
from certwright.polling import Poller
from certwright.transport import PEM_CHAIN_CONTENT_TYPE, Transport


def normalize_domains(domains: Iterable[str]) -> list[str]:
    """Lowercase, strip trailing dots and drop duplicates, keeping first-seen order.

    Raises:
        ValueError: If no domain remains.
    """
    seen: dict[str, None] = {}
    for domain in domains:
        name = domain.strip().rstrip(".").lower()
        if name:
            seen.setdefault(name, None)
    if not seen:
        raise ValueError("At least one domain is required")
    return list(seen)


def _identifier(value: str) -> Identifier:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return Identifier(type=IdentifierType.DNS, value=value)
    return Identifier(type=IdentifierType.IP, value=value)


def _order_error(problem: Problem | None, fallback: str, status_code: int = 0) -> OrderError:
    if problem is None:
        return OrderError(type="about:blank", detail=fallback, status_code=status_code)
    return OrderError(
        type=problem.type,
        detail=problem.detail or fallback,
        status_code=problem.status or status_code,
        subproblems=problem.subproblems,
    )


class OrderEngine:
    """Drives one order from creation to the downloaded certificate chain.

    Args:
        transport: Transport for order requests.
        directory: Callable returning the session's directory.
        driver: Authorization driver used by :meth:`wait_ready`.
        poller: Poll discipline for order status.
        logger: Optional logger; defaults to the module logger.
    """

    def __init__(
        self,
        transport: Transport,
        directory: Callable[[], Directory],
        driver: AuthorizationDriver,
        poller: Poller,
        logger: logging.Logger | None = None,
    ):
        self._transport = transport
        self._directory = directory
        self.driver = driver
        self._poller = poller
        self._log = resolve_logger(logger, __name__)

    def new_order(self, domains: Iterable[str]) -> Order:
        """Create an order with one identifier per distinct domain.

        Returns:
            The Order, with ``url`` taken from the Location header.

        Raises:
            OrderError: The server refused the order or did not create it.
            ValueError: If no domain was given.
        """
        names = normalize_domains(domains)
        payload = {"identifiers": [_identifier(name).model_dump(mode="json") for name in names]}

        try:
            response = self._transport.signed_post(self._directory().new_order, payload)
        except ProtocolError as e:
            raise OrderError.from_protocol_error(e) from e

        if response.status_code not in (200, 201) or not response.location:
            raise OrderError(
                type=AcmeErrorType.MALFORMED,
                detail=f"newOrder answered {response.status_code} without an order Location",
                status_code=response.status_code,
            )

        order = response.parse(Order, url=response.location)
        self._log.info(
            "Order created",
            extra={"order_url": order.url, "domains": names, "status": order.status},
        )
        return order

    def fetch(self, url: str) -> Order:
        """Re-read an order resource."""
        return self._transport.post_as_get(url).parse(Order, url=url)

    def _poll(self, order: Order, done: set[OrderStatus], cancel: threading.Event | None) -> Order:
        if not order.url:
            raise OrderError(
                type=AcmeErrorType.MALFORMED, detail="Order has no URL to poll", status_code=0
            )
        url = order.url
        return self._poller.poll(
            fetch=lambda: self._transport.post_as_get(url),
            parse=lambda response: response.parse(Order, url=url),
            is_done=lambda current: current.status in done,
            resource="order",
            url=url,
            cancel=cancel,
        )

    def wait_ready(self, order: Order, cancel: threading.Event | None = None) -> Order:
        """Authorize every identifier, then wait for the order to become ready.

        Raises:
            AuthorizationError: One or more identifiers could not be authorized.
            OrderError: The order became invalid.
            PollTimeoutError: The order did not settle within the budget.
            OperationCancelled: ``cancel`` was set.
        """
        if order.status == OrderStatus.INVALID:
            raise _order_error(order.error, "Order is invalid")

        if order.status == OrderStatus.PENDING:
            with Timer() as timer:
                self.driver.authorize(order.authorizations, cancel=cancel)
            self._log.info(
                "Authorizations complete",
                extra={"order_url": order.url, "elapsed_ms": timer.elapsed_ms},
            )

        done = {OrderStatus.READY, OrderStatus.VALID, OrderStatus.INVALID}
        if order.status not in done:
            order = self._poll(order, done, cancel)
        if order.status == OrderStatus.INVALID:
            raise _order_error(order.error, "Order became invalid")
        return order

    def finalize(
        self,
        order: Order,
        csr_der: bytes,
        cancel: threading.Event | None = None,
    ) -> Order:
        """Submit the CSR and wait for issuance.

        Args:
            order: A ready order.
            csr_der: DER encoded certificate signing request.
            cancel: Event the caller sets to abandon the wait.

        Returns:
            The valid order, with its certificate URL.

        Raises:
            OrderError: The server rejected the CSR or the order became invalid;
                carries the server's problem detail.
        """
        if cancel is not None and cancel.is_set():
            raise OperationCancelled("Finalize cancelled")

        try:
            response = self._transport.signed_post(order.finalize, {"csr": base64url_encode(csr_der)})
        except ProtocolError as e:
            raise OrderError.from_protocol_error(e) from e
        finalized = response.parse(Order, url=order.url)
        self._log.info("Order finalized", extra={"order_url": order.url, "status": finalized.status})

        done = {OrderStatus.VALID, OrderStatus.INVALID}
        if finalized.status not in done:
            finalized = self._poll(finalized, done, cancel)
        if finalized.status == OrderStatus.INVALID:
            raise _order_error(finalized.error, "Order became invalid after finalization")
        return finalized

    def fetch_certificate(
        self,
        order: Order,
        private_key_pem: str | None = None,
        cancel: threading.Event | None = None,
    ) -> CertificateResource:
        """Download the chain of a valid order as a CertificateResource.

        Raises:
            DownloadError: The order is not valid or has no certificate URL.
        """
        if order.status != OrderStatus.VALID or not order.certificate:
            raise DownloadError(
                f"Order {order.url or ''} is {order.status} without a certificate URL"
            )
        if cancel is not None and cancel.is_set():
            raise OperationCancelled("Download cancelled")

        response = self._transport.post_as_get(order.certificate, accept=PEM_CHAIN_CONTENT_TYPE)
        self._log.info(
            "Certificate downloaded",
            extra={"certificate_url": order.certificate, "bytes": len(response.content)},
        )
        return CertificateResource(
            domain=order.domains[0],
            domains=order.domains,
            certificate=response.content,
            private_key_pem=private_key_pem,
            certificate_url=order.certificate,
            issuer_url=response.links.get("up"),
        )

    def download(self, order: Order, cancel: threading.Event | None = None) -> bytes:
        """Raw certificate chain bytes of a valid order."""
        return self.fetch_certificate(order, cancel=cancel).certificate
