"""DNS providers and test-server integrations for challenge solvers."""

from certwright.providers.base import DnsProvider
from certwright.providers.challtestsrv import (
    ChallTestSrvClient,
    ChallTestSrvHttp01Solver,
    ChallTestSrvProvider,
)

__all__ = [
    "ChallTestSrvClient",
    "ChallTestSrvHttp01Solver",
    "ChallTestSrvProvider",
    "DnsProvider",
]
