"""TLS-ALPN-01 solver: certificates for an application-owned TLS listener."""

import logging
import threading

from cryptography import x509

from certwright._logging import resolve_logger
from certwright.crypto import PrivateKey, make_tls_alpn_certificate
from certwright.models import Challenge, ChallengeType
from certwright.solvers.base import Solver
from certwright.solvers.keyauth import TLS_ALPN_PROTOCOL


class TlsAlpn01Solver(Solver):
    """Generates the acmeIdentifier certificate for each domain.

    The listener on port 443 must negotiate the ``acme-tls/1`` ALPN protocol
    and present :meth:`certificate_for` the SNI name it receives.
    """

    challenge_type = ChallengeType.TLS_ALPN_01
    alpn_protocol = TLS_ALPN_PROTOCOL

    def __init__(self, logger: logging.Logger | None = None):
        self._lock = threading.Lock()
        self._certs: dict[str, tuple[str, x509.Certificate, PrivateKey]] = {}
        self._log = resolve_logger(logger, __name__)

    def present(self, domain: str, challenge: Challenge, key_authorization: str) -> None:
        with self._lock:
            existing = self._certs.get(domain)
            if existing and existing[0] == key_authorization:
                return
            certificate, key = make_tls_alpn_certificate(domain, key_authorization)
            self._certs[domain] = (key_authorization, certificate, key)
        self._log.debug("TLS-ALPN-01 certificate generated", extra={"domain": domain})

    def clean_up(self, domain: str, challenge: Challenge, key_authorization: str) -> None:
        with self._lock:
            self._certs.pop(domain, None)

    def certificate_for(self, server_name: str) -> tuple[x509.Certificate, PrivateKey] | None:
        """Certificate and key to present for an SNI name, if one is pending."""
        with self._lock:
            entry = self._certs.get(server_name)
        return (entry[1], entry[2]) if entry else None
