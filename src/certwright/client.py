"""ACME client for certificate management."""

import logging
import threading
from collections.abc import Iterable

import httpx

from certwright._logging import Timer, domain_context, resolve_logger
from certwright.account import AccountManager
from certwright.authorization import AuthorizationDriver
from certwright.config import ClientSettings
from certwright.crypto import (
    PrivateKey,
    base64url_encode,
    create_csr,
    csr_to_der,
    generate_rsa_key,
    pem_to_der,
    private_key_to_pem,
)
from certwright.models import (
    Account,
    Authorization,
    CertificateResource,
    Directory,
    Order,
    RevocationReason,
)
from certwright.nonce import NonceSet
from certwright.order import OrderEngine, normalize_domains
from certwright.polling import Poller
from certwright.signer import Signer
from certwright.solvers.base import Solver
from certwright.solvers.registry import SolverRegistry
from certwright.transport import Transport


class AcmeClient:
    """ACME client for automated SSL/TLS certificate management.

    This client implements RFC 8555 (ACME) for obtaining certificates
    from an ACME-compliant certificate authority. It owns one HTTP
    session, one nonce pool and one signer; the account, order and
    authorization components share them.

    Args:
        account_key: Private key for the ACME account (RSA >= 2048 bits,
            or ECDSA P-256/P-384).
        solvers: Challenge solvers, one per challenge type they handle.
        directory_url: URL of the ACME directory endpoint. Overrides
            ``settings.directory_url`` when given.
        settings: Tunables; loaded from ``CERTWRIGHT_*`` variables when omitted.
        http: Pre-configured httpx client. The client does not close a
            client it did not create.
        logger: Optional logger shared by every component.

    Raises:
        AccountKeyError: If ``account_key`` is unacceptable. Nothing is
            sent to the server in that case.
    """

    def __init__(
        self,
        account_key: PrivateKey,
        solvers: Iterable[Solver] = (),
        directory_url: str | None = None,
        settings: ClientSettings | None = None,
        http: httpx.Client | None = None,
        logger: logging.Logger | None = None,
    ):
        self.settings = settings or ClientSettings()
        self.directory_url = directory_url or self.settings.directory_url
        self._log = resolve_logger(logger, __name__)

        self._owns_http = http is None
        self._http = http or httpx.Client(
            verify=self.settings.verify,
            timeout=self.settings.http_timeout,
            headers={"User-Agent": self.settings.user_agent},
        )

        self.nonces = NonceSet()
        self.signer = Signer(
            account_key,
            nonces=self.nonces,
            fetch_nonce=self._fetch_nonce,
            min_rsa_key_size=self.settings.min_rsa_key_size,
            logger=logger,
        )
        self.transport = Transport(
            self._http,
            self.signer,
            bad_nonce_retries=self.settings.bad_nonce_retries,
            logger=logger,
        )
        self.poller = Poller(self.settings.poll_policy(), logger=logger)
        self.solvers = SolverRegistry(solvers)

        self.accounts = AccountManager(self.transport, self._get_directory, logger=logger)
        self.authorizations = AuthorizationDriver(
            self.transport,
            self.solvers,
            self.poller,
            max_workers=self.settings.max_workers,
            logger=logger,
        )
        self.orders = OrderEngine(
            self.transport, self._get_directory, self.authorizations, self.poller, logger=logger
        )

        self._directory: Directory | None = None
        self._directory_lock = threading.Lock()

    def close(self) -> None:
        """Close the HTTP client, if this client created it."""
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "AcmeClient":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    @property
    def directory(self) -> Directory:
        """Get the ACME directory (fetched once, then cached)."""
        return self._get_directory()

    def _get_directory(self) -> Directory:
        with self._directory_lock:
            if self._directory is None:
                self._directory = self.transport.get(self.directory_url).parse(Directory)
                self._log.debug("Directory loaded", extra={"url": self.directory_url})
            return self._directory

    def _fetch_nonce(self) -> str:
        return self.transport.fetch_nonce(self._get_directory().new_nonce)

    @property
    def account_url(self) -> str | None:
        """Get the account URL (set after registration)."""
        return self.transport.account_url

    @property
    def account_key(self) -> PrivateKey:
        return self.signer.key

    def register_solver(self, solver: Solver, challenge_type: str | None = None) -> None:
        self.solvers.register(solver, challenge_type)

    def register_account(
        self,
        email: str | None = None,
        contact: list[str] | None = None,
        agree_tos: bool = True,
        only_return_existing: bool = False,
    ) -> Account:
        """Register a new account or find an existing one.

        Args:
            email: Contact email address; shorthand for ``mailto:`` contact.
            contact: Contact URIs, used as given.
            agree_tos: Agree to the CA's terms of service.
            only_return_existing: Fail instead of creating a new account.

        Returns:
            The Account resource.
        """
        contacts = list(contact or [])
        if email:
            contacts.append(f"mailto:{email}")
        return self.accounts.register(
            contact=contacts or None,
            agree_tos=agree_tos,
            only_return_existing=only_return_existing,
        )

    def agree_to_tos(self) -> Account:
        return self.accounts.agree_to_tos()

    def update_contact(self, contact: list[str]) -> Account:
        return self.accounts.update_contact(contact)

    def rollover_key(self, new_key: PrivateKey) -> None:
        """Roll over to a new account key (RFC 8555 Section 7.3.5)."""
        self.accounts.rollover_key(new_key)

    def deactivate_account(self) -> Account:
        """Deactivate the current account (RFC 8555 Section 7.3.6).

        WARNING: This is irreversible. A deactivated account cannot be
        reactivated, and no new orders can be created.
        """
        return self.accounts.deactivate()

    def create_order(self, domains: list[str]) -> Order:
        """Create a new certificate order.

        Args:
            domains: Domain names (or IP addresses) for the certificate.

        Returns:
            The Order resource, with its URL.
        """
        return self.orders.new_order(domains)

    def fetch_order(self, order_url: str) -> Order:
        return self.orders.fetch(order_url)

    def wait_ready(self, order: Order, cancel: threading.Event | None = None) -> Order:
        """Authorize every identifier of ``order`` and wait until it is ready."""
        return self.orders.wait_ready(order, cancel=cancel)

    def fetch_authorization(self, authz_url: str) -> Authorization:
        return self.authorizations.fetch(authz_url)

    def deactivate_authorization(self, authz_url: str) -> Authorization:
        """Deactivate an authorization (RFC 8555 Section 7.5.2).

        This prevents the authorization from being used to issue certificates.
        Use this when selling/transferring a domain to ensure no new certificates
        can be issued for it.

        Args:
            authz_url: The authorization URL to deactivate.

        Returns:
            The updated Authorization with status "deactivated".
        """
        return self.authorizations.deactivate(authz_url)

    def finalize_order(
        self,
        order: Order,
        csr_der: bytes,
        cancel: threading.Event | None = None,
    ) -> Order:
        """Finalize a ready order by submitting a DER encoded CSR."""
        return self.orders.finalize(order, csr_der, cancel=cancel)

    def download_certificate(self, order: Order) -> bytes:
        """Download the certificate chain of a valid order, as served."""
        return self.orders.download(order)

    def revoke_certificate(
        self,
        certificate: bytes | str,
        reason: RevocationReason | int | None = None,
    ) -> None:
        """Revoke a certificate (RFC 8555 Section 7.6).

        Args:
            certificate: The certificate, DER bytes or a PEM string.
            reason: Optional revocation reason code (RFC 5280 Section 5.3.1).

        Raises:
            ValueError: If the server has no revokeCert endpoint.
            ProtocolError: If revocation fails.
        """
        revoke_url = self.directory.revoke_cert
        if not revoke_url:
            raise ValueError("Server directory has no revokeCert endpoint")

        der_bytes = pem_to_der(certificate) if isinstance(certificate, str) else certificate
        payload: dict[str, str | int] = {"certificate": base64url_encode(der_bytes)}
        if reason is not None:
            payload["reason"] = int(reason)

        self.transport.signed_post(revoke_url, payload)
        self._log.info("Certificate revoked", extra={"reason": payload.get("reason")})

    def obtain_certificate(
        self,
        domains: list[str],
        csr_der: bytes | None = None,
        cancel: threading.Event | None = None,
    ) -> CertificateResource:
        """Obtain a certificate for the given domains.

        This is the main high-level method that:
        1. Creates an order
        2. Completes all authorizations with the registered solvers
        3. Finalizes the order with a CSR
        4. Downloads the certificate

        Args:
            domains: Domain names for the certificate.
            csr_der: Optional DER encoded CSR. If not provided, a 2048-bit
                RSA key and CSR are generated and the key is returned.
            cancel: Event the caller sets to abandon the operation.

        Returns:
            CertificateResource with the chain and, when generated, the
            private key PEM.

        Raises:
            ValueError: If no account is registered.
        """
        if not self.account_url:
            raise ValueError("Account not registered. Call register_account() first.")

        names = normalize_domains(domains)
        private_key_pem: str | None = None
        if csr_der is None:
            cert_key = generate_rsa_key(2048)
            csr_der = csr_to_der(create_csr(cert_key, names))
            private_key_pem = private_key_to_pem(cert_key)

        with domain_context(names), Timer() as timer:
            order = self.orders.new_order(names)
            order = self.orders.wait_ready(order, cancel=cancel)
            order = self.orders.finalize(order, csr_der, cancel=cancel)
            resource = self.orders.fetch_certificate(
                order, private_key_pem=private_key_pem, cancel=cancel
            )
        self._log.info(
            "Certificate obtained",
            extra={"order_url": order.url, "elapsed_ms": timer.elapsed_ms, "domains": names},
        )
        return resource
