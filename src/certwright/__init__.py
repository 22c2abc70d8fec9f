"""Certwright - ACME client library for automated SSL/TLS certificate management."""

from certwright.client import AcmeClient
from certwright.config import ClientSettings, PollPolicy
from certwright.exceptions import AcmeError

__all__ = ["AcmeClient", "AcmeError", "ClientSettings", "PollPolicy"]
__version__ = "0.1.0"
