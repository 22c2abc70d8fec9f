"""ACME challenge solvers."""

from certwright.solvers.base import Solver
from certwright.solvers.dns01 import Dns01Solver
from certwright.solvers.http01 import Http01Solver, MemoryHttp01Solver, WebrootHttp01Solver
from certwright.solvers.keyauth import compute_dns_txt_value, compute_key_authorization
from certwright.solvers.registry import SolverRegistry
from certwright.solvers.tls_alpn01 import TlsAlpn01Solver

__all__ = [
    "Dns01Solver",
    "Http01Solver",
    "MemoryHttp01Solver",
    "Solver",
    "SolverRegistry",
    "TlsAlpn01Solver",
    "WebrootHttp01Solver",
    "compute_dns_txt_value",
    "compute_key_authorization",
]
