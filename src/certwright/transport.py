"""HTTP transport for signed ACME requests.

Every response passing through :class:`Transport` has its ``Replay-Nonce``
harvested into the shared pool, whatever its status. Responses are decoded
into :class:`AcmeResponse` values or classified into :class:`TransportError`,
:class:`ProtocolError` and :class:`MalformedResponseError`, so callers never
branch on raw status codes. Nothing here retries, except re-signing after
a badNonce rejection when the owner opts in (the server never processed
such a request).
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, TypeVar
from urllib.parse import urljoin

import httpx
from pydantic import BaseModel, ValidationError

from certwright._logging import Timer, log_extra, resolve_logger
from certwright.exceptions import (
    BadNonceError,
    MalformedResponseError,
    NonceError,
    ProtocolError,
    TransportError,
)
from certwright.signer import Signer

JOSE_CONTENT_TYPE = "application/jose+json"
PEM_CHAIN_CONTENT_TYPE = "application/pem-certificate-chain"

ModelT = TypeVar("ModelT", bound=BaseModel)

_LINK_RE = re.compile(r"<([^>]*)>((?:\s*;\s*[^;,]+)*)")
_REL_RE = re.compile(r"""rel\s*=\s*(?:"([^"]*)"|([^\s;,]+))""", re.IGNORECASE)


def parse_links(values: list[str] | str, base_url: str | None = None) -> dict[str, str]:
    """Map relation names to URLs from one or more ``Link`` header values.

    Each value may hold several comma separated ``<url>; rel="name"``
    entries; a ``rel`` may list several space separated names. On duplicate
    relation names the last entry wins. Relative URLs are resolved against
    ``base_url`` when given.
    """
    if isinstance(values, str):
        values = [values]

    links: dict[str, str] = {}
    for value in values:
        for match in _LINK_RE.finditer(value):
            target, params = match.group(1).strip(), match.group(2)
            if base_url:
                target = urljoin(base_url, target)
            rel = _REL_RE.search(params)
            if not rel:
                continue
            for name in (rel.group(1) or rel.group(2)).split():
                links[name] = target
    return links


@dataclass(frozen=True)
class AcmeResponse:
    """A successful response, with the headers ACME cares about extracted."""

    url: str
    status_code: int
    headers: httpx.Headers
    content: bytes
    nonce: str | None = None
    location: str | None = None
    links: dict[str, str] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self) -> dict[str, Any]:
        """Decode the body as a JSON object.

        Raises:
            MalformedResponseError: If the body is not a JSON object.
        """
        try:
            data = json.loads(self.content)
        except (ValueError, UnicodeDecodeError) as e:
            raise MalformedResponseError(
                f"Response from {self.url} is not valid JSON: {e}", url=self.url, body=self.text
            ) from e
        if not isinstance(data, dict):
            raise MalformedResponseError(
                f"Response from {self.url} is not a JSON object", url=self.url, body=self.text
            )
        return data

    def parse(self, model: type[ModelT], **extra: Any) -> ModelT:
        """Validate the body into ``model``, merging ``extra`` fields.

        Raises:
            MalformedResponseError: If the body does not match the model.
        """
        data = self.json()
        data.update(extra)
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise MalformedResponseError(
                f"Unexpected {model.__name__} from {self.url}: {e}", url=self.url, body=self.text
            ) from e


class Transport:
    """Issues ACME HTTP requests through a shared httpx client.

    Args:
        http: Configured httpx client (timeouts, TLS verification).
        signer: Signer whose nonce pool receives every harvested nonce.
        bad_nonce_retries: How many times a request rejected with badNonce
            is re-signed with a fresh nonce. Zero (the default) disables it;
            no other failure is ever retried.
        logger: Optional logger; defaults to the module logger.
    """

    def __init__(
        self,
        http: httpx.Client,
        signer: Signer,
        bad_nonce_retries: int = 0,
        logger: logging.Logger | None = None,
    ):
        self._http = http
        self.signer = signer
        self.bad_nonce_retries = bad_nonce_retries
        self.account_url: str | None = None
        self._log = resolve_logger(logger, __name__)

    @property
    def nonces(self):
        return self.signer.nonces

    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        with Timer() as timer:
            try:
                response = self._http.request(method, url, **kwargs)
            except httpx.TransportError as e:
                self._log.warning(
                    "ACME request failed",
                    extra=log_extra(method=method, url=url, error=str(e)),
                )
                raise TransportError(f"{method} {url} failed: {e}", url=url) from e

        # Harvest before looking at the status: error replies carry fresh nonces too
        self.nonces.push(response.headers.get("Replay-Nonce"))

        self._log.debug(
            "ACME request",
            extra=log_extra(
                method=method,
                url=url,
                status_code=response.status_code,
                elapsed_ms=timer.elapsed_ms,
            ),
        )
        return response

    def _decode(self, url: str, response: httpx.Response) -> AcmeResponse:
        if response.status_code >= 400:
            raise self._problem(response)

        location = response.headers.get("Location")
        return AcmeResponse(
            url=url,
            status_code=response.status_code,
            headers=response.headers,
            content=response.content,
            nonce=response.headers.get("Replay-Nonce"),
            location=urljoin(url, location) if location else None,
            links=parse_links(response.headers.get_list("Link"), base_url=url),
        )

    def _problem(self, response: httpx.Response) -> ProtocolError:
        headers = dict(response.headers)
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            error = ProtocolError.from_response(data, response.status_code, headers=headers)
        else:
            error = ProtocolError(
                type="about:blank",
                detail=response.text or response.reason_phrase,
                status_code=response.status_code,
                headers=headers,
            )
        self._log.info(
            "ACME server returned a problem",
            extra=log_extra(status_code=error.status_code, problem_type=error.type, detail=error.detail),
        )
        return error

    def get(self, url: str) -> AcmeResponse:
        """Unauthenticated GET (directory document)."""
        return self._decode(url, self._send("GET", url))

    def fetch_nonce(self, url: str) -> str:
        """HEAD ``url`` (newNonce) so a fresh nonce lands in the pool.

        Raises:
            NonceError: If the response carried no Replay-Nonce header.
            TransportError: If the request failed.
        """
        response = self._send("HEAD", url)
        nonce = response.headers.get("Replay-Nonce")
        if response.status_code >= 400 or not nonce:
            raise NonceError(
                f"newNonce at {url} returned {response.status_code} without a Replay-Nonce",
                url=url,
            )
        return nonce

    def post(self, url: str, envelope: dict[str, str], accept: str | None = None) -> AcmeResponse:
        """POST an already signed envelope."""
        headers = {"Content-Type": JOSE_CONTENT_TYPE}
        if accept:
            headers["Accept"] = accept
        response = self._send("POST", url, content=json.dumps(envelope), headers=headers)
        return self._decode(url, response)

    def signed_post(
        self,
        url: str,
        payload: dict[str, Any] | None,
        use_kid: bool = True,
        accept: str | None = None,
    ) -> AcmeResponse:
        """Sign ``payload`` for ``url`` and POST it.

        Args:
            url: The endpoint URL.
            payload: JSON payload, or None for POST-as-GET.
            use_kid: Identify the account by ``account_url`` (kid). When
                False, or before registration, the public JWK is embedded.
            accept: Optional Accept header.
        """
        kid = self.account_url if use_kid else None
        attempt = 0
        while True:
            try:
                return self.post(url, self.signer.sign(payload, url, kid=kid), accept=accept)
            except BadNonceError:
                if attempt >= self.bad_nonce_retries:
                    raise
                attempt += 1
                self._log.debug("Nonce rejected, re-signing", extra=log_extra(url=url, attempt=attempt))

    def post_as_get(self, url: str, accept: str | None = None) -> AcmeResponse:
        """Read a resource without mutating it (signed empty payload)."""
        return self.signed_post(url, None, accept=accept)
