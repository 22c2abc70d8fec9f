"""Abstract base class for DNS providers."""

from abc import ABC, abstractmethod


class DnsProvider(ABC):
    """Creates and deletes the TXT records used by DNS-01 validation.

    ``domain`` is always the bare domain (no ``_acme-challenge`` label and
    no wildcard prefix); providers derive the record name themselves.
    """

    @abstractmethod
    def create_txt_record(self, domain: str, value: str) -> None:
        """Create (or replace) the TXT record at ``_acme-challenge.{domain}``.

        Calling this again with the same value must leave the zone unchanged.

        Raises:
            Exception: If record creation fails.
        """
        ...

    @abstractmethod
    def delete_txt_record(self, domain: str, value: str) -> None:
        """Delete the TXT record at ``_acme-challenge.{domain}``.

        Raises:
            Exception: If record deletion fails.
        """
        ...

    def wait_for_propagation(self, domain: str, value: str, timeout: int = 120) -> bool:
        """Wait until the record is visible to the CA's resolvers.

        The default assumes the provider writes to the authoritative
        servers synchronously.

        Returns:
            True if the record propagated, False on timeout.
        """
        return True
