"""Capability interface for challenge solvers."""

from abc import ABC, abstractmethod

from certwright.models import Challenge


class Solver(ABC):
    """Provisions and removes the artifact a CA checks for one challenge type.

    The protocol engine only ever calls :meth:`can_solve`, :meth:`present`
    and :meth:`clean_up`. It never calls ``present`` or ``clean_up``
    concurrently for the same identifier, but different identifiers run in
    parallel, so implementations touching shared resources (a DNS zone, a
    directory on disk) must guard them themselves.
    """

    #: Challenge type string this solver handles, e.g. "http-01".
    challenge_type: str = ""

    def can_solve(self, challenge_type: str) -> bool:
        """Return True if this solver handles ``challenge_type``."""
        return challenge_type == self.challenge_type

    @abstractmethod
    def present(self, domain: str, challenge: Challenge, key_authorization: str) -> None:
        """Provision the validation artifact.

        Must be idempotent: presenting an artifact that is already in place
        leaves it unchanged and does not raise.

        Args:
            domain: Identifier value (may be a "*." wildcard).
            challenge: The challenge being answered.
            key_authorization: ``token.thumbprint`` for this challenge.

        Raises:
            Exception: If the artifact could not be provisioned.
        """
        ...

    @abstractmethod
    def clean_up(self, domain: str, challenge: Challenge, key_authorization: str) -> None:
        """Remove the artifact created by :meth:`present`.

        Best effort: the authorization is already decided when this runs,
        so the caller logs failures rather than propagating them.
        """
        ...
