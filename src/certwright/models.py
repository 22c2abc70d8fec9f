"""Pydantic models for ACME protocol resources."""

from datetime import datetime
from enum import IntEnum, StrEnum
from typing import Any

from pydantic import BaseModel, Field

ACME_ERROR_PREFIX = "urn:ietf:params:acme:error:"

# =============================================================================
# ACME Protocol Enums (RFC 8555)
# =============================================================================


class RevocationReason(IntEnum):
    """Certificate revocation reasons (RFC 5280 Section 5.3.1)."""

    UNSPECIFIED = 0
    KEY_COMPROMISE = 1
    CA_COMPROMISE = 2
    AFFILIATION_CHANGED = 3
    SUPERSEDED = 4
    CESSATION_OF_OPERATION = 5


class AcmeErrorType(StrEnum):
    """ACME problem types (RFC 8555 Section 6.7)."""

    ACCOUNT_DOES_NOT_EXIST = ACME_ERROR_PREFIX + "accountDoesNotExist"
    BAD_CSR = ACME_ERROR_PREFIX + "badCSR"
    BAD_NONCE = ACME_ERROR_PREFIX + "badNonce"
    CAA = ACME_ERROR_PREFIX + "caa"
    CONNECTION = ACME_ERROR_PREFIX + "connection"
    DNS = ACME_ERROR_PREFIX + "dns"
    INCORRECT_RESPONSE = ACME_ERROR_PREFIX + "incorrectResponse"
    MALFORMED = ACME_ERROR_PREFIX + "malformed"
    ORDER_NOT_READY = ACME_ERROR_PREFIX + "orderNotReady"
    RATE_LIMITED = ACME_ERROR_PREFIX + "rateLimited"
    REJECTED_IDENTIFIER = ACME_ERROR_PREFIX + "rejectedIdentifier"
    SERVER_INTERNAL = ACME_ERROR_PREFIX + "serverInternal"
    UNAUTHORIZED = ACME_ERROR_PREFIX + "unauthorized"


class ChallengeStatus(StrEnum):
    """Challenge statuses (RFC 8555 Section 7.1.6)."""

    PENDING = "pending"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"


class AuthorizationStatus(StrEnum):
    """Authorization statuses (RFC 8555 Section 7.1.6)."""

    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"
    DEACTIVATED = "deactivated"
    EXPIRED = "expired"
    REVOKED = "revoked"

    @property
    def is_terminal(self) -> bool:
        return self is not AuthorizationStatus.PENDING


class OrderStatus(StrEnum):
    """Order statuses (RFC 8555 Section 7.1.6)."""

    PENDING = "pending"
    READY = "ready"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"


class AccountStatus(StrEnum):
    """Account statuses (RFC 8555 Section 7.1.6)."""

    VALID = "valid"
    DEACTIVATED = "deactivated"
    REVOKED = "revoked"


class ChallengeType(StrEnum):
    """Challenge types (RFC 8555 Section 8, RFC 8737)."""

    HTTP_01 = "http-01"
    DNS_01 = "dns-01"
    TLS_ALPN_01 = "tls-alpn-01"


class IdentifierType(StrEnum):
    """Identifier types (RFC 8555 Section 9.7.7)."""

    DNS = "dns"
    IP = "ip"


# =============================================================================
# Pydantic Models
# =============================================================================


class Directory(BaseModel):
    """ACME directory resource (RFC 8555 Section 7.1.1).

    Loaded once per session and never mutated afterwards.
    """

    new_nonce: str = Field(alias="newNonce")
    new_account: str = Field(alias="newAccount")
    new_order: str = Field(alias="newOrder")
    revoke_cert: str | None = Field(default=None, alias="revokeCert")
    key_change: str | None = Field(default=None, alias="keyChange")
    new_authz: str | None = Field(default=None, alias="newAuthz")
    meta: dict[str, Any] | None = None

    model_config = {"populate_by_name": True, "frozen": True}

    @property
    def terms_of_service(self) -> str | None:
        return (self.meta or {}).get("termsOfService")


class Problem(BaseModel):
    """Problem document embedded in orders, authorizations and challenges."""

    type: str = "about:blank"
    detail: str | None = None
    status: int | None = None
    subproblems: list[dict[str, Any]] | None = None


class Account(BaseModel):
    """ACME account resource (RFC 8555 Section 7.1.2)."""

    status: AccountStatus
    contact: list[str] | None = None
    orders: str | None = None
    terms_of_service_agreed: bool | None = Field(default=None, alias="termsOfServiceAgreed")

    # Populated from response headers, not the body
    url: str | None = None
    tos_url: str | None = None

    model_config = {"populate_by_name": True}


class Identifier(BaseModel):
    """ACME identifier (RFC 8555 Section 7.1.3)."""

    type: IdentifierType = IdentifierType.DNS
    value: str


class Challenge(BaseModel):
    """ACME challenge resource (RFC 8555 Section 7.5.1).

    ``type`` is kept as a plain string so that challenge types this
    library has never heard of still parse; they simply have no solver.
    """

    type: str
    url: str
    status: ChallengeStatus = ChallengeStatus.PENDING
    token: str | None = None
    validated: datetime | None = None
    error: Problem | None = None


class Authorization(BaseModel):
    """ACME authorization resource (RFC 8555 Section 7.1.4).

    ``combinations`` is only sent by pre-RFC servers; each entry lists
    challenge indices that together satisfy the authorization.
    """

    status: AuthorizationStatus
    identifier: Identifier
    challenges: list[Challenge]
    combinations: list[list[int]] | None = None
    expires: datetime | None = None
    wildcard: bool | None = None

    url: str | None = None

    @property
    def domain(self) -> str:
        return self.identifier.value


class Order(BaseModel):
    """ACME order resource (RFC 8555 Section 7.1.3)."""

    status: OrderStatus
    identifiers: list[Identifier]
    authorizations: list[str]
    finalize: str
    expires: datetime | None = None
    not_before: datetime | None = Field(default=None, alias="notBefore")
    not_after: datetime | None = Field(default=None, alias="notAfter")
    certificate: str | None = None
    error: Problem | None = None

    # Taken from the Location header of the newOrder response
    url: str | None = None

    model_config = {"populate_by_name": True}

    @property
    def domains(self) -> list[str]:
        return [identifier.value for identifier in self.identifiers]


class CertificateResource(BaseModel):
    """An issued certificate chain, handed back to the caller uninterpreted."""

    domain: str
    domains: list[str]
    certificate: bytes
    private_key_pem: str | None = None
    certificate_url: str | None = None
    issuer_url: str | None = None
