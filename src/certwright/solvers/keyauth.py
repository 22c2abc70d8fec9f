"""Key authorization and per-challenge proof values."""

import base64
import hashlib

HTTP01_PATH_PREFIX = "/.well-known/acme-challenge/"
DNS01_LABEL = "_acme-challenge"
TLS_ALPN_PROTOCOL = "acme-tls/1"


def compute_key_authorization(token: str, thumbprint: str) -> str:
    """Compute the key authorization string.

    The key authorization is the token concatenated with the account
    key thumbprint, separated by a period.

    Args:
        token: The challenge token from the ACME server.
        thumbprint: The base64url-encoded SHA-256 thumbprint of the account key.

    Returns:
        The key authorization string (token.thumbprint).
    """
    return f"{token}.{thumbprint}"


def compute_dns_txt_value(key_authorization: str) -> str:
    """Compute the DNS TXT record value for DNS-01 challenge.

    The TXT record value is the base64url-encoded SHA-256 digest
    of the key authorization string, without padding.
    """
    digest = hashlib.sha256(key_authorization.encode()).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()


def base_domain(domain: str) -> str:
    """Strip a leading wildcard label: "*.example.com" -> "example.com"."""
    domain = domain.rstrip(".")
    return domain[2:] if domain.startswith("*.") else domain


def dns_record_name(domain: str) -> str:
    """Fully qualified TXT record name for a DNS-01 challenge."""
    return f"{DNS01_LABEL}.{base_domain(domain)}."


def http01_path(token: str) -> str:
    """URL path the CA fetches for an HTTP-01 challenge."""
    return f"{HTTP01_PATH_PREFIX}{token}"
