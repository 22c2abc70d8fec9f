"""HTTP-01 solvers: the key authorization served at a well-known path."""

import logging
import threading
from abc import abstractmethod
from collections.abc import Callable, Iterable
from pathlib import Path

from certwright._logging import resolve_logger
from certwright.models import Challenge, ChallengeType
from certwright.solvers.base import Solver
from certwright.solvers.keyauth import HTTP01_PATH_PREFIX


class Http01Solver(Solver):
    """Base for HTTP-01 solvers; subclasses decide where the token lives.

    The CA fetches ``http://<domain>/.well-known/acme-challenge/<token>``
    over plain HTTP and expects the raw key authorization as the body.
    """

    challenge_type = ChallengeType.HTTP_01

    def present(self, domain: str, challenge: Challenge, key_authorization: str) -> None:
        self.publish(challenge.token, key_authorization)

    def clean_up(self, domain: str, challenge: Challenge, key_authorization: str) -> None:
        self.withdraw(challenge.token)

    @abstractmethod
    def publish(self, token: str, body: str) -> None:
        """Make ``body`` available for ``token`` (overwrite if present)."""
        ...

    @abstractmethod
    def withdraw(self, token: str) -> None:
        """Stop serving ``token``; a missing token is not an error."""
        ...


class MemoryHttp01Solver(Http01Solver):
    """Keeps tokens in memory for an application-owned HTTP server.

    Use :meth:`lookup` from a request handler, or mount :meth:`wsgi_app`
    under any WSGI server listening on port 80.
    """

    def __init__(self, logger: logging.Logger | None = None):
        self._lock = threading.Lock()
        self._tokens: dict[str, str] = {}
        self._log = resolve_logger(logger, __name__)

    def publish(self, token: str, body: str) -> None:
        with self._lock:
            self._tokens[token] = body
        self._log.debug("HTTP-01 token published", extra={"token": token})

    def withdraw(self, token: str) -> None:
        with self._lock:
            self._tokens.pop(token, None)

    def lookup(self, token: str) -> str | None:
        with self._lock:
            return self._tokens.get(token)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)

    def wsgi_app(
        self, environ: dict, start_response: Callable[[str, list[tuple[str, str]]], object]
    ) -> Iterable[bytes]:
        """Minimal WSGI application answering challenge requests only."""
        path = environ.get("PATH_INFO", "")
        body = None
        if path.startswith(HTTP01_PATH_PREFIX):
            body = self.lookup(path[len(HTTP01_PATH_PREFIX) :])
        if body is None:
            start_response("404 Not Found", [("Content-Type", "text/plain")])
            return [b"not found"]
        start_response("200 OK", [("Content-Type", "application/octet-stream")])
        return [body.encode("ascii")]


class WebrootHttp01Solver(Http01Solver):
    """Writes token files under the document root of an existing web server.

    Args:
        webroot: Directory served at ``/`` for the domains being validated.
    """

    def __init__(self, webroot: str | Path, logger: logging.Logger | None = None):
        self.webroot = Path(webroot)
        self._log = resolve_logger(logger, __name__)

    @property
    def challenge_dir(self) -> Path:
        return self.webroot / HTTP01_PATH_PREFIX.strip("/")

    def publish(self, token: str, body: str) -> None:
        self.challenge_dir.mkdir(parents=True, exist_ok=True)
        path = self.challenge_dir / token
        path.write_text(body, encoding="ascii")
        path.chmod(0o644)
        self._log.info("HTTP-01 token written", extra={"path": str(path)})

    def withdraw(self, token: str) -> None:
        path = self.challenge_dir / token
        path.unlink(missing_ok=True)
        self._log.info("HTTP-01 token removed", extra={"path": str(path)})
