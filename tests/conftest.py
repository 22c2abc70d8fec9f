"""Pytest fixtures for Certwright test suite."""

import itertools
import json
import logging
import logging.handlers
import os
import secrets
import threading
import warnings
from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import httpx
import pytest
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature
from cryptography.x509.oid import NameOID

from certwright import AcmeClient
from certwright.config import ClientSettings
from certwright.crypto import base64url_decode, base64url_encode, generate_rsa_key, key_thumbprint
from certwright.models import Challenge
from certwright.solvers.http01 import MemoryHttp01Solver

# Suppress InsecureRequestWarning for pebble bootstrap
warnings.filterwarnings("ignore", message="Unverified HTTPS request")

# Default URLs for local pebble setup
PEBBLE_DIRECTORY_URL = os.environ.get("PEBBLE_DIRECTORY_URL", "https://localhost:14000/dir")
CHALLTESTSRV_URL = os.environ.get("CHALLTESTSRV_URL", "http://localhost:8055")

FAKE_CA = "https://ca.test"
ACME_ERROR = "urn:ietf:params:acme:error:"


# =============================================================================
# Pebble (integration)
# =============================================================================


@pytest.fixture(scope="session")
def pebble_ca_cert() -> str | bool:
    """Get SSL verification setting for Pebble.

    Returns False to disable SSL verification for pebble tests.
    Pebble uses a self-signed certificate that's not meant for production.

    If PEBBLE_CA_CERT env var is set, returns that path instead.
    """
    ca_cert_path = os.environ.get("PEBBLE_CA_CERT")
    if ca_cert_path and Path(ca_cert_path).exists():
        return ca_cert_path
    return False


@pytest.fixture(scope="session")
def pebble_directory_url(pebble_ca_cert: str | bool) -> str:
    """Return the Pebble ACME directory URL, skipping when Pebble is down."""
    try:
        httpx.get(PEBBLE_DIRECTORY_URL, verify=pebble_ca_cert, timeout=5).raise_for_status()
    except httpx.HTTPError:
        pytest.skip("Pebble not available")
    return PEBBLE_DIRECTORY_URL


@pytest.fixture(scope="session")
def challtestsrv_url() -> str:
    """Return the pebble-challtestsrv management API URL."""
    return CHALLTESTSRV_URL


# =============================================================================
# Keys
# =============================================================================


@pytest.fixture(scope="session")
def account_key() -> rsa.RSAPrivateKey:
    """One RSA account key for the whole session (generation is slow)."""
    return generate_rsa_key(2048)


# =============================================================================
# In-process fake CA
# =============================================================================


def _b64_int(value: str) -> int:
    return int.from_bytes(base64url_decode(value), "big")


def public_key_from_jwk(jwk: dict[str, str]) -> rsa.RSAPublicKey | ec.EllipticCurvePublicKey:
    if jwk["kty"] == "RSA":
        return rsa.RSAPublicNumbers(_b64_int(jwk["e"]), _b64_int(jwk["n"])).public_key()
    curve = {"P-256": ec.SECP256R1(), "P-384": ec.SECP384R1()}[jwk["crv"]]
    return ec.EllipticCurvePublicNumbers(_b64_int(jwk["x"]), _b64_int(jwk["y"]), curve).public_key()


def verify_jws(envelope: dict[str, str], key=None) -> tuple[dict[str, Any], Any]:
    """Verify a flattened JWS and return its protected header and payload.

    The key is taken from the embedded ``jwk`` unless one is given.

    Raises:
        InvalidSignature: If the signature does not verify.
    """
    protected = json.loads(base64url_decode(envelope["protected"]))
    key = key or public_key_from_jwk(protected["jwk"])
    signing_input = f"{envelope['protected']}.{envelope['payload']}".encode("ascii")
    signature = base64url_decode(envelope["signature"])

    if isinstance(key, rsa.RSAPublicKey):
        key.verify(signature, signing_input, padding.PKCS1v15(), hashes.SHA256())
    else:
        size = len(signature) // 2
        hash_cls = hashes.SHA256 if size == 32 else hashes.SHA384
        der = encode_dss_signature(
            int.from_bytes(signature[:size], "big"), int.from_bytes(signature[size:], "big")
        )
        key.verify(der, signing_input, ec.ECDSA(hash_cls()))

    payload = json.loads(base64url_decode(envelope["payload"])) if envelope["payload"] else None
    return protected, payload


def _self_signed_chain(domains: list[str]) -> bytes:
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=90))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]), critical=False
        )
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM)


class FakeCA:
    """An RFC 8555 server behind ``httpx.MockTransport``.

    It issues and checks nonces, verifies every JWS and walks orders,
    authorizations and challenges through their status machines. A
    challenge passes when ``validator(domain, type, token, key_authorization)``
    returns True and the domain is not listed in ``invalid_domains``.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self.issued_nonces: set[str] = set()
        self.requests: list[tuple[str, str]] = []
        self.accounts: dict[str, dict[str, Any]] = {}
        self.orders: dict[str, dict[str, Any]] = {}
        self.authzs: dict[str, dict[str, Any]] = {}
        self.challenges: dict[str, tuple[str, dict[str, Any]]] = {}
        self.certificates: dict[str, bytes] = {}
        self.revoked: list[dict[str, Any]] = []

        self.challenge_types = ["http-01", "dns-01", "tls-alpn-01"]
        self.combinations: list[list[int]] | None = None
        self.invalid_domains: set[str] = set()
        self.validator: Callable[[str, str, str, str], bool] = lambda *args: True
        self.conflict_on_existing = False
        self.reject_nonces = 0
        self.new_order_problem: tuple[int, str, str, dict[str, str]] | None = None
        self.finalize_problem: tuple[int, str, str] | None = None
        self.finalize_calls = 0
        self.notified: list[str] = []

    # ---- plumbing ---------------------------------------------------------

    @property
    def directory_url(self) -> str:
        return f"{FAKE_CA}/dir"

    def http_client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handle))

    def count(self, method: str, prefix: str) -> int:
        return sum(1 for m, p in self.requests if m == method and p.startswith(prefix))

    def _new_id(self) -> int:
        return next(self._ids)

    def _reply(
        self,
        status: int,
        body: Any = None,
        headers: dict[str, str] | None = None,
        content_type: str = "application/json",
    ) -> httpx.Response:
        nonce = f"nonce-{self._new_id()}-{secrets.token_hex(4)}"
        self.issued_nonces.add(nonce)
        all_headers = {"Replay-Nonce": nonce, **(headers or {})}
        if body is None:
            return httpx.Response(status, headers=all_headers)
        if isinstance(body, bytes):
            all_headers["Content-Type"] = content_type
            return httpx.Response(status, headers=all_headers, content=body)
        all_headers["Content-Type"] = content_type
        return httpx.Response(status, headers=all_headers, content=json.dumps(body).encode())

    def _problem(
        self, status: int, kind: str, detail: str, headers: dict[str, str] | None = None
    ) -> httpx.Response:
        body = {"type": ACME_ERROR + kind, "detail": detail, "status": status}
        return self._reply(status, body, headers, content_type="application/problem+json")

    def directory(self) -> dict[str, Any]:
        return {
            "newNonce": f"{FAKE_CA}/new-nonce",
            "newAccount": f"{FAKE_CA}/new-account",
            "newOrder": f"{FAKE_CA}/new-order",
            "revokeCert": f"{FAKE_CA}/revoke-cert",
            "keyChange": f"{FAKE_CA}/key-change",
            "meta": {"termsOfService": f"{FAKE_CA}/tos"},
        }

    # ---- dispatch ---------------------------------------------------------

    def handle(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            path = request.url.path
            self.requests.append((request.method, path))

            if request.method == "GET" and path == "/dir":
                return self._reply(200, self.directory())
            if request.method == "HEAD" and path == "/new-nonce":
                return self._reply(200)
            if request.method != "POST":
                return self._problem(405, "malformed", f"{request.method} not allowed")

            envelope = json.loads(request.content)
            header = json.loads(base64url_decode(envelope["protected"]))

            if self.reject_nonces:
                self.reject_nonces -= 1
                self.issued_nonces.discard(header.get("nonce"))
                return self._problem(400, "badNonce", "JWS has an invalid anti-replay nonce")
            if header.get("nonce") not in self.issued_nonces:
                return self._problem(400, "badNonce", "JWS has an invalid anti-replay nonce")
            self.issued_nonces.discard(header["nonce"])

            if header.get("url") != str(request.url):
                return self._problem(400, "malformed", "JWS url does not match request")

            key = None
            account = None
            if "kid" in header:
                account = self.accounts.get(header["kid"])
                if account is None:
                    return self._problem(400, "accountDoesNotExist", "Unknown kid")
                key = account["key"]
            try:
                _, payload = verify_jws(envelope, key)
            except InvalidSignature:
                return self._problem(400, "malformed", "JWS signature invalid")

            if path == "/new-account":
                return self._new_account(header, payload)
            if account is None:
                return self._problem(400, "malformed", "kid required")

            segment = path.split("/")[1]
            handler = {
                "acct": self._account,
                "new-order": self._new_order,
                "order": self._order,
                "authz": self._authz,
                "chall": self._challenge,
                "finalize": self._finalize,
                "cert": self._certificate,
                "revoke-cert": self._revoke,
                "key-change": self._key_change,
            }.get(segment)
            if handler is None:
                return self._problem(404, "malformed", f"No resource at {path}")
            return handler(str(request.url), account, payload, request)

    # ---- accounts ---------------------------------------------------------

    def _account_body(self, account: dict[str, Any]) -> dict[str, Any]:
        body = {"status": account["status"], "orders": f"{account['url']}/orders"}
        if account["contact"]:
            body["contact"] = account["contact"]
        if account["tos"]:
            body["termsOfServiceAgreed"] = True
        return body

    def _new_account(self, header: dict[str, Any], payload: dict[str, Any]) -> httpx.Response:
        if "jwk" not in header:
            return self._problem(400, "malformed", "newAccount requires jwk")
        thumbprint = key_thumbprint(public_key_from_jwk(header["jwk"]))
        existing = next((a for a in self.accounts.values() if a["thumbprint"] == thumbprint), None)
        if existing:
            if self.conflict_on_existing:
                return self._problem(
                    409, "malformed", "Key already in use", {"Location": existing["url"]}
                )
            return self._reply(200, self._account_body(existing), {"Location": existing["url"]})
        if payload.get("onlyReturnExisting"):
            return self._problem(400, "accountDoesNotExist", "No account for this key")

        url = f"{FAKE_CA}/acct/{self._new_id()}"
        account = {
            "url": url,
            "key": public_key_from_jwk(header["jwk"]),
            "thumbprint": thumbprint,
            "status": "valid",
            "contact": payload.get("contact"),
            "tos": bool(payload.get("termsOfServiceAgreed")),
        }
        self.accounts[url] = account
        return self._reply(201, self._account_body(account), {"Location": url})

    def _account(self, url, account, payload, request) -> httpx.Response:
        if account["url"] != url:
            return self._problem(403, "unauthorized", "Not your account")
        if payload:
            if "contact" in payload:
                account["contact"] = payload["contact"]
            if payload.get("termsOfServiceAgreed"):
                account["tos"] = True
            if payload.get("status") == "deactivated":
                account["status"] = "deactivated"
        link = {"Link": f'<{FAKE_CA}/tos>;rel="terms-of-service"'}
        return self._reply(200, self._account_body(account), link)

    def _key_change(self, url, account, payload, request) -> httpx.Response:
        try:
            inner_header, inner_payload = verify_jws(payload)
        except InvalidSignature:
            return self._problem(400, "malformed", "Inner JWS signature invalid")
        if "nonce" in inner_header or inner_header.get("url") != url:
            return self._problem(400, "malformed", "Bad inner JWS header")
        if inner_payload["account"] != account["url"]:
            return self._problem(400, "malformed", "Wrong account")
        if key_thumbprint(public_key_from_jwk(inner_payload["oldKey"])) != account["thumbprint"]:
            return self._problem(400, "malformed", "oldKey does not match")
        account["key"] = public_key_from_jwk(inner_header["jwk"])
        account["thumbprint"] = key_thumbprint(account["key"])
        return self._reply(200, self._account_body(account))

    # ---- orders -----------------------------------------------------------

    def _new_authz(self, identifier: dict[str, str], thumbprint: str) -> str:
        url = f"{FAKE_CA}/authz/{self._new_id()}"
        value = identifier["value"]
        wildcard = value.startswith("*.")
        types = ["dns-01"] if wildcard else self.challenge_types
        challenges = []
        for challenge_type in types:
            challenge = {
                "type": challenge_type,
                "url": f"{FAKE_CA}/chall/{self._new_id()}",
                "status": "pending",
                "token": base64url_encode(secrets.token_bytes(16)),
            }
            self.challenges[challenge["url"]] = (url, challenge)
            challenges.append(challenge)
        authz = {
            "status": "pending",
            "identifier": {"type": identifier["type"], "value": value.removeprefix("*.")},
            "challenges": challenges,
            "expires": (datetime.now(timezone.utc) + timedelta(days=7)).isoformat(),
            "thumbprint": thumbprint,
        }
        if wildcard:
            authz["wildcard"] = True
        if self.combinations is not None:
            authz["combinations"] = self.combinations
        self.authzs[url] = authz
        return url

    def _order_body(self, order: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in order.items() if k != "csr"}

    def _new_order(self, url, account, payload, request) -> httpx.Response:
        if self.new_order_problem:
            status, kind, detail, headers = self.new_order_problem
            return self._problem(status, kind, detail, headers)
        order_id = self._new_id()
        order_url = f"{FAKE_CA}/order/{order_id}"
        identifiers = payload["identifiers"]
        self.orders[order_url] = {
            "status": "pending",
            "identifiers": identifiers,
            "authorizations": [self._new_authz(i, account["thumbprint"]) for i in identifiers],
            "finalize": f"{FAKE_CA}/finalize/{order_id}",
            "expires": (datetime.now(timezone.utc) + timedelta(days=7)).isoformat(),
        }
        return self._reply(201, self._order_body(self.orders[order_url]), {"Location": order_url})

    def _refresh_order(self, order_url: str) -> dict[str, Any]:
        order = self.orders[order_url]
        if order["status"] == "pending":
            statuses = [self._resolve_authz(u)["status"] for u in order["authorizations"]]
            if any(s == "invalid" for s in statuses):
                order["status"] = "invalid"
                order["error"] = {"type": ACME_ERROR + "unauthorized", "detail": "Authorization failed"}
            elif all(s == "valid" for s in statuses):
                order["status"] = "ready"
        elif order["status"] == "processing":
            domains = [i["value"] for i in order["identifiers"]]
            cert_url = f"{FAKE_CA}/cert/{order_url.rsplit('/', 1)[1]}"
            self.certificates[cert_url] = _self_signed_chain(domains)
            order["status"] = "valid"
            order["certificate"] = cert_url
        return order

    def _order(self, url, account, payload, request) -> httpx.Response:
        if url not in self.orders:
            return self._problem(404, "malformed", "No such order")
        return self._reply(200, self._order_body(self._refresh_order(url)))

    def _finalize(self, url, account, payload, request) -> httpx.Response:
        self.finalize_calls += 1
        order_url = url.replace("/finalize/", "/order/")
        order = self._refresh_order(order_url)
        if order["status"] != "ready":
            return self._problem(403, "orderNotReady", f"Order is {order['status']}")
        if self.finalize_problem:
            status, kind, detail = self.finalize_problem
            return self._problem(status, kind, detail)
        csr = x509.load_der_x509_csr(base64url_decode(payload["csr"]))
        order["csr"] = csr
        order["status"] = "processing"
        return self._reply(200, self._order_body(order), {"Retry-After": "0"})

    def _certificate(self, url, account, payload, request) -> httpx.Response:
        if url not in self.certificates:
            return self._problem(404, "malformed", "No such certificate")
        return self._reply(
            200,
            self.certificates[url],
            {"Link": f'<{FAKE_CA}/issuer>;rel="up"'},
            content_type=request.headers.get("Accept", "application/pem-certificate-chain"),
        )

    def _revoke(self, url, account, payload, request) -> httpx.Response:
        self.revoked.append(payload)
        return self._reply(200)

    # ---- authorizations ---------------------------------------------------

    def _resolve_authz(self, authz_url: str) -> dict[str, Any]:
        authz = self.authzs[authz_url]
        if authz["status"] != "pending":
            return authz
        processing = [c for c in authz["challenges"] if c["status"] == "processing"]
        if not processing:
            return authz

        domain = authz["identifier"]["value"]
        for challenge in processing:
            key_authorization = f"{challenge['token']}.{authz['thumbprint']}"
            passed = domain not in self.invalid_domains and self.validator(
                domain, challenge["type"], challenge["token"], key_authorization
            )
            if passed:
                challenge["status"] = "valid"
                challenge["validated"] = datetime.now(timezone.utc).isoformat()
            else:
                challenge["status"] = "invalid"
                challenge["error"] = {
                    "type": ACME_ERROR + "incorrectResponse",
                    "detail": f"Key authorization mismatch for {domain}",
                    "status": 403,
                }
        if any(c["status"] == "invalid" for c in processing):
            authz["status"] = "invalid"
        else:
            authz["status"] = "valid"
        return authz

    def _authz_body(self, authz: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in authz.items() if k != "thumbprint"}

    def _authz(self, url, account, payload, request) -> httpx.Response:
        if url not in self.authzs:
            return self._problem(404, "malformed", "No such authorization")
        if payload and payload.get("status") == "deactivated":
            self.authzs[url]["status"] = "deactivated"
            return self._reply(200, self._authz_body(self.authzs[url]))
        # One poll sees "pending" before validation completes
        authz = self.authzs[url]
        if authz.pop("_seen", False):
            authz = self._resolve_authz(url)
        elif any(c["status"] == "processing" for c in authz["challenges"]):
            authz["_seen"] = True
        return self._reply(200, {k: v for k, v in self._authz_body(authz).items() if k != "_seen"})

    def _challenge(self, url, account, payload, request) -> httpx.Response:
        if url not in self.challenges:
            return self._problem(404, "malformed", "No such challenge")
        _, challenge = self.challenges[url]
        if payload == {} and challenge["status"] == "pending":
            challenge["status"] = "processing"
            self.notified.append(url)
        return self._reply(200, challenge, {"Link": f'<{self.challenges[url][0]}>;rel="up"'})


@pytest.fixture
def verify() -> Callable[..., tuple[dict[str, Any], Any]]:
    """JWS verifier usable from tests."""
    return verify_jws


@pytest.fixture
def fake_ca() -> FakeCA:
    return FakeCA()


@pytest.fixture
def fast_settings(fake_ca: FakeCA) -> ClientSettings:
    """Settings that poll without sleeping."""
    return ClientSettings(
        directory_url=fake_ca.directory_url,
        poll_interval=0,
        poll_max_interval=0,
        poll_backoff=1,
        poll_timeout=5,
    )


class RecordingSolver(MemoryHttp01Solver):
    """In-memory HTTP-01 solver that records every present/clean_up call."""

    def __init__(self, on_present: Callable[[str], None] | None = None) -> None:
        super().__init__()
        self.on_present = on_present
        self.presented: list[str] = []
        self.cleaned: list[str] = []
        self._calls = threading.Lock()

    def present(self, domain: str, challenge: Challenge, key_authorization: str) -> None:
        with self._calls:
            self.presented.append(domain)
        super().present(domain, challenge, key_authorization)
        if self.on_present is not None:
            self.on_present(domain)

    def clean_up(self, domain: str, challenge: Challenge, key_authorization: str) -> None:
        with self._calls:
            self.cleaned.append(domain)
        super().clean_up(domain, challenge, key_authorization)


@pytest.fixture
def http_solver(fake_ca: FakeCA) -> RecordingSolver:
    """HTTP-01 solver the fake CA validates against."""
    solver = RecordingSolver()
    fake_ca.validator = lambda domain, challenge_type, token, key_authorization: (
        challenge_type != "http-01" or solver.lookup(token) == key_authorization
    )
    return solver


@pytest.fixture
def acme_client(
    fake_ca: FakeCA,
    fast_settings: ClientSettings,
    account_key: rsa.RSAPrivateKey,
    http_solver: RecordingSolver,
) -> Generator[AcmeClient]:
    """Client wired to the fake CA, with an HTTP-01 solver, not yet registered."""
    http = fake_ca.http_client()
    client = AcmeClient(
        account_key=account_key,
        solvers=[http_solver],
        settings=fast_settings,
        http=http,
    )
    yield client
    client.close()
    http.close()


@pytest.fixture
def registered_client(acme_client: AcmeClient) -> AcmeClient:
    acme_client.register_account(email="test@example.com")
    return acme_client


# =============================================================================
# Log capture
# =============================================================================


class LogCapture:
    """Helper class to capture and inspect log records."""

    def __init__(self, handler: logging.handlers.MemoryHandler) -> None:
        self._handler = handler

    @property
    def records(self) -> list[logging.LogRecord]:
        """Get all captured log records."""
        return self._handler.buffer

    def get_records(
        self, level: int | None = None, name: str | None = None
    ) -> list[logging.LogRecord]:
        """Get log records filtered by level and/or logger name.

        Args:
            level: Filter by log level (e.g., logging.INFO).
            name: Filter by logger name prefix (e.g., "certwright.order").

        Returns:
            List of matching log records.
        """
        records = self.records
        if level is not None:
            records = [r for r in records if r.levelno == level]
        if name is not None:
            records = [r for r in records if r.name.startswith(name)]
        return records

    def get_messages(self, level: int | None = None, name: str | None = None) -> list[str]:
        """Get log messages filtered by level and/or logger name."""
        return [r.getMessage() for r in self.get_records(level, name)]

    def clear(self) -> None:
        """Clear all captured log records."""
        self._handler.buffer.clear()


@pytest.fixture
def log_capture() -> Generator[LogCapture]:
    """Capture logs from the certwright library during a test.

    Usage:
        def test_something(log_capture):
            # do something that logs
            assert "Order created" in log_capture.get_messages(logging.INFO)
    """
    handler = logging.handlers.MemoryHandler(capacity=10000)
    handler.setLevel(logging.DEBUG)

    certwright_logger = logging.getLogger("certwright")
    original_level = certwright_logger.level
    certwright_logger.setLevel(logging.DEBUG)
    certwright_logger.addHandler(handler)

    try:
        yield LogCapture(handler)
    finally:
        certwright_logger.removeHandler(handler)
        certwright_logger.setLevel(original_level)
        handler.close()
