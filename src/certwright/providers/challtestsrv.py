"""Pebble challenge test server (pebble-challtestsrv) integration.

challtestsrv answers the DNS and HTTP queries Pebble makes during
validation; its management API lets tests publish TXT records and
HTTP-01 tokens without a real zone or web server.
"""

import logging

import httpx

from certwright._logging import resolve_logger
from certwright.providers.base import DnsProvider
from certwright.solvers.http01 import Http01Solver
from certwright.solvers.keyauth import dns_record_name


class ChallTestSrvClient:
    """Thin client for the challtestsrv management API.

    Args:
        url: Base URL of the management API, e.g. "http://localhost:8055".
        http: Optional httpx client to reuse.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        url: str,
        http: httpx.Client | None = None,
        timeout: float = 10.0,
        logger: logging.Logger | None = None,
    ):
        self.url = url.rstrip("/")
        self._http = http or httpx.Client(timeout=timeout)
        self._log = resolve_logger(logger, __name__)

    def _call(self, endpoint: str, body: dict[str, str]) -> None:
        response = self._http.post(f"{self.url}/{endpoint}", json=body)
        response.raise_for_status()
        self._log.debug("challtestsrv call", extra={"endpoint": endpoint, **body})

    def set_txt(self, host: str, value: str) -> None:
        self._call("set-txt", {"host": host, "value": value})

    def clear_txt(self, host: str) -> None:
        self._call("clear-txt", {"host": host})

    def add_http01(self, token: str, content: str) -> None:
        self._call("add-http01", {"token": token, "content": content})

    def del_http01(self, token: str) -> None:
        self._call("del-http01", {"token": token})


class ChallTestSrvProvider(DnsProvider):
    """DNS provider backed by challtestsrv's mock DNS server."""

    def __init__(self, client: ChallTestSrvClient):
        self.client = client

    def create_txt_record(self, domain: str, value: str) -> None:
        # set-txt replaces, so repeating it is harmless
        self.client.set_txt(dns_record_name(domain), value)

    def delete_txt_record(self, domain: str, value: str) -> None:
        self.client.clear_txt(dns_record_name(domain))


class ChallTestSrvHttp01Solver(Http01Solver):
    """HTTP-01 solver publishing tokens through challtestsrv."""

    def __init__(self, client: ChallTestSrvClient):
        self.client = client

    def publish(self, token: str, body: str) -> None:
        self.client.add_http01(token, body)

    def withdraw(self, token: str) -> None:
        self.client.del_http01(token)
