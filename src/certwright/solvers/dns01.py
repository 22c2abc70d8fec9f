"""DNS-01 solver delegating record management to a DnsProvider."""

import logging

from certwright._logging import resolve_logger
from certwright.exceptions import SolverError
from certwright.models import Challenge, ChallengeType
from certwright.providers.base import DnsProvider
from certwright.solvers.base import Solver
from certwright.solvers.keyauth import base_domain, compute_dns_txt_value, dns_record_name


class Dns01Solver(Solver):
    """Publishes ``base64url(sha256(key_authorization))`` as a TXT record.

    Args:
        provider: DNS provider that owns the zone.
        propagation_timeout: Seconds to wait for the record to be visible.
        logger: Optional logger; defaults to the module logger.
    """

    challenge_type = ChallengeType.DNS_01

    def __init__(
        self,
        provider: DnsProvider,
        propagation_timeout: int = 120,
        logger: logging.Logger | None = None,
    ):
        self.provider = provider
        self.propagation_timeout = propagation_timeout
        self._log = resolve_logger(logger, __name__)

    def present(self, domain: str, challenge: Challenge, key_authorization: str) -> None:
        domain = base_domain(domain)
        value = compute_dns_txt_value(key_authorization)
        self.provider.create_txt_record(domain, value)
        self._log.info(
            "TXT record provisioned",
            extra={"domain": domain, "record_name": dns_record_name(domain)},
        )
        if not self.provider.wait_for_propagation(domain, value, timeout=self.propagation_timeout):
            raise SolverError(
                f"TXT record {dns_record_name(domain)} not visible after {self.propagation_timeout}s"
            )

    def clean_up(self, domain: str, challenge: Challenge, key_authorization: str) -> None:
        domain = base_domain(domain)
        self.provider.delete_txt_record(domain, compute_dns_txt_value(key_authorization))
        self._log.info(
            "TXT record removed",
            extra={"domain": domain, "record_name": dns_record_name(domain)},
        )
