"""Account registration and maintenance (RFC 8555 Section 7.3)."""

import logging
from collections.abc import Callable
from typing import Any
from urllib.parse import urljoin

from certwright._logging import resolve_logger
from certwright.crypto import PrivateKey, sign_jws, validate_account_key
from certwright.exceptions import ProtocolError
from certwright.models import Account, Directory
from certwright.transport import AcmeResponse, Transport


class AccountManager:
    """Registers, fetches and updates the account bound to the signing key.

    After :meth:`register` succeeds the account URL is stored on the
    transport, so every later request identifies itself by ``kid``.

    Args:
        transport: Transport used for all account requests.
        directory: Callable returning the session's directory.
        logger: Optional logger; defaults to the module logger.
    """

    def __init__(
        self,
        transport: Transport,
        directory: Callable[[], Directory],
        logger: logging.Logger | None = None,
    ):
        self._transport = transport
        self._directory = directory
        self._log = resolve_logger(logger, __name__)
        self.account: Account | None = None

    @property
    def url(self) -> str | None:
        return self._transport.account_url

    def _require_url(self) -> str:
        if not self.url:
            raise ValueError("Account not registered. Call register() first.")
        return self.url

    def _to_account(self, response: AcmeResponse, url: str | None) -> Account:
        account = response.parse(
            Account,
            url=url,
            tos_url=response.links.get("terms-of-service") or self._directory().terms_of_service,
        )
        self.account = account
        return account

    def register(
        self,
        contact: list[str] | None = None,
        agree_tos: bool = True,
        only_return_existing: bool = False,
    ) -> Account:
        """Register a new account, or return the one that already exists.

        A 409 Conflict (sent by older servers for a known key) is treated
        as success: the existing account is fetched from the Location
        header and returned.

        Args:
            contact: Contact URIs, e.g. ["mailto:admin@example.com"].
            agree_tos: Send termsOfServiceAgreed.
            only_return_existing: Only look up an existing account.

        Returns:
            The Account resource, with ``url`` set.
        """
        payload: dict[str, Any] = {}
        if agree_tos:
            payload["termsOfServiceAgreed"] = True
        if contact:
            payload["contact"] = list(contact)
        if only_return_existing:
            payload["onlyReturnExisting"] = True

        new_account_url = self._directory().new_account
        try:
            response = self._transport.signed_post(new_account_url, payload, use_kid=False)
        except ProtocolError as e:
            location = e.headers.get("location")
            if e.status_code != 409 or not location:
                raise
            location = urljoin(new_account_url, location)
            self._log.info("Account already registered", extra={"account_url": location})
            self._transport.account_url = location
            return self.fetch()

        self._transport.account_url = response.location
        account = self._to_account(response, response.location)
        self._log.info(
            "Account registered" if response.status_code == 201 else "Existing account found",
            extra={"account_url": response.location, "status": account.status},
        )
        return account

    def fetch(self) -> Account:
        """Re-read the account resource."""
        url = self._require_url()
        return self._to_account(self._transport.signed_post(url, {}), url)

    def agree_to_tos(self) -> Account:
        """Record agreement to the CA's current terms of service."""
        url = self._require_url()
        response = self._transport.signed_post(url, {"termsOfServiceAgreed": True})
        account = self._to_account(response, url)
        self._log.info("Terms of service agreed", extra={"tos_url": account.tos_url})
        return account

    def update_contact(self, contact: list[str]) -> Account:
        url = self._require_url()
        return self._to_account(self._transport.signed_post(url, {"contact": list(contact)}), url)

    def rollover_key(self, new_key: PrivateKey) -> None:
        """Replace the account key (RFC 8555 Section 7.3.5).

        The inner JWS is signed by ``new_key`` with no nonce and wrapped
        as the payload of an outer JWS signed by the current key. The
        signer switches to ``new_key`` only once the server accepts.

        Raises:
            AccountKeyError: If ``new_key`` is unacceptable.
            ValueError: If the account is not registered or the server
                has no keyChange endpoint.
        """
        url = self._require_url()
        key_change_url = self._directory().key_change
        if not key_change_url:
            raise ValueError("Server directory has no keyChange endpoint")

        signer = self._transport.signer
        validate_account_key(new_key, signer.min_rsa_key_size)
        inner = sign_jws(
            new_key,
            {"account": url, "oldKey": signer.jwk},
            url=key_change_url,
        )
        self._transport.signed_post(key_change_url, inner)
        signer.replace_key(new_key)
        self._log.info("Account key rolled over", extra={"account_url": url})

    def deactivate(self) -> Account:
        """Deactivate the account (RFC 8555 Section 7.3.6). Irreversible."""
        url = self._require_url()
        account = self._to_account(self._transport.signed_post(url, {"status": "deactivated"}), url)
        self._log.warning("Account deactivated", extra={"account_url": url})
        return account
