"""Request signing with anti-replay nonce management."""

import logging
from collections.abc import Callable
from typing import Any

from certwright._logging import resolve_logger
from certwright.crypto import (
    PrivateKey,
    get_jwk,
    key_thumbprint,
    sign_jws,
    validate_account_key,
)
from certwright.exceptions import NonceError, TransportError
from certwright.nonce import NonceSet

# Another thread may take the nonce we just fetched; give up after this many attempts
_MAX_NONCE_FETCHES = 3


class Signer:
    """Holds the account key and produces signed ACME envelopes.

    Each call to :meth:`sign` consumes exactly one nonce from the shared
    pool. When the pool is empty, ``fetch_nonce`` is called to refill it
    (normally a HEAD against the directory's newNonce URL, whose reply the
    transport harvests into the same pool).

    Args:
        account_key: RSA or ECDSA private key; validated once, here.
        nonces: Shared nonce pool. A fresh pool is created when omitted.
        fetch_nonce: Callable that refills ``nonces`` with at least one nonce.
        min_rsa_key_size: Smallest acceptable RSA modulus in bits.
        logger: Optional logger; defaults to the module logger.

    Raises:
        AccountKeyError: If the key is missing or unacceptable.
    """

    def __init__(
        self,
        account_key: PrivateKey,
        nonces: NonceSet | None = None,
        fetch_nonce: Callable[[], object] | None = None,
        min_rsa_key_size: int = 2048,
        logger: logging.Logger | None = None,
    ):
        self.min_rsa_key_size = min_rsa_key_size
        self._key = validate_account_key(account_key, min_rsa_key_size)
        self.nonces = nonces if nonces is not None else NonceSet()
        self.fetch_nonce = fetch_nonce
        self._log = resolve_logger(logger, __name__)
        self._thumbprint = key_thumbprint(self._key)

    @property
    def key(self) -> PrivateKey:
        return self._key

    @property
    def jwk(self) -> dict[str, str]:
        return get_jwk(self._key)

    @property
    def thumbprint(self) -> str:
        """RFC 7638 thumbprint of the account public key."""
        return self._thumbprint

    def replace_key(self, new_key: PrivateKey) -> None:
        """Switch to ``new_key`` after the server accepted a key change.

        Raises:
            AccountKeyError: If the new key is unacceptable.
        """
        self._key = validate_account_key(new_key, self.min_rsa_key_size)
        self._thumbprint = key_thumbprint(self._key)

    def key_authorization(self, token: str) -> str:
        """Bind a challenge token to the account key: ``token.thumbprint``."""
        return f"{token}.{self._thumbprint}"

    def _take_nonce(self) -> str:
        nonce = self.nonces.pop()
        attempts = 0
        while nonce is None:
            if self.fetch_nonce is None:
                raise NonceError("Nonce pool is empty and no nonce source is configured")
            if attempts >= _MAX_NONCE_FETCHES:
                raise NonceError(f"No nonce available after {attempts} fetches")
            attempts += 1
            self._log.debug("Nonce pool empty, fetching", extra={"attempt": attempts})
            try:
                self.fetch_nonce()
            except NonceError:
                raise
            except TransportError as e:
                raise NonceError(f"Could not fetch a nonce: {e}", url=e.url) from e
            nonce = self.nonces.pop()
        return nonce

    def sign(
        self,
        payload: dict[str, Any] | None,
        url: str,
        kid: str | None = None,
    ) -> dict[str, str]:
        """Sign ``payload`` for ``url``.

        Args:
            payload: JSON payload, or None for an empty (POST-as-GET) payload.
            url: Target URL, bound into the protected header.
            kid: Account URL; the public JWK is embedded when omitted.

        Returns:
            Flattened JWS envelope ready to POST.

        Raises:
            NonceError: If no nonce could be obtained.
        """
        nonce = self._take_nonce()
        return sign_jws(self._key, payload, url=url, nonce=nonce, kid=kid)
