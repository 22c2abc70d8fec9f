"""Cryptographic primitives: account keys, JWS envelopes, CSRs, TLS-ALPN certificates."""

import base64
import hashlib
import json
from datetime import datetime, timedelta, timezone
from typing import Any

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.x509.oid import NameOID, ObjectIdentifier

from certwright.exceptions import AccountKeyError

PrivateKey = rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey
PublicKey = rsa.RSAPublicKey | ec.EllipticCurvePublicKey

# curve name -> (JWK crv, JWS alg, hash, coordinate size in bytes)
_EC_PARAMS: dict[str, tuple[str, str, type[hashes.HashAlgorithm], int]] = {
    "secp256r1": ("P-256", "ES256", hashes.SHA256, 32),
    "secp384r1": ("P-384", "ES384", hashes.SHA384, 48),
}

# id-pe-acmeIdentifier (RFC 8737 Section 3)
ACME_IDENTIFIER_OID = ObjectIdentifier("1.3.6.1.5.5.7.1.31")


def base64url_encode(data: bytes) -> str:
    """Base64url encode without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def base64url_decode(data: str) -> bytes:
    """Base64url decode, tolerating missing padding."""
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def generate_rsa_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    """Generate an RSA private key."""
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def generate_ecdsa_key(curve: str = "P-256") -> ec.EllipticCurvePrivateKey:
    """Generate an ECDSA private key.

    Args:
        curve: Curve name ("P-256" or "P-384").

    Raises:
        ValueError: If curve is not supported.
    """
    curves = {"P-256": ec.SECP256R1, "P-384": ec.SECP384R1}
    if curve not in curves:
        raise ValueError(f"Unsupported curve: {curve}. Supported: {list(curves)}")
    return ec.generate_private_key(curves[curve]())


def load_private_key_pem(pem_data: str | bytes, password: bytes | None = None) -> PrivateKey:
    """Load an RSA or ECDSA private key from PEM.

    Raises:
        ValueError: If the PEM is invalid, the password is wrong, or the key
            type is not usable for ACME.
    """
    if isinstance(pem_data, str):
        pem_data = pem_data.encode("utf-8")
    try:
        key = serialization.load_pem_private_key(pem_data, password=password)
    except TypeError as e:
        # Encrypted key without password, or password for a plain key
        raise ValueError("Invalid password or encrypted key requires password") from e

    if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise ValueError(f"Unsupported key type: {type(key).__name__}")
    return key


def private_key_to_pem(key: PrivateKey) -> str:
    """Serialize a private key as unencrypted PKCS#8 PEM."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def validate_account_key(key: object, min_rsa_key_size: int = 2048) -> PrivateKey:
    """Check that ``key`` can sign ACME requests.

    Args:
        key: Candidate account key.
        min_rsa_key_size: Smallest acceptable RSA modulus in bits.

    Returns:
        The key, unchanged.

    Raises:
        AccountKeyError: If the key is absent, of an unsupported type or
            curve, or an RSA key below the minimum size.
    """
    if key is None:
        raise AccountKeyError("No account key supplied")
    if isinstance(key, rsa.RSAPrivateKey):
        if key.key_size < min_rsa_key_size:
            raise AccountKeyError(
                f"RSA account key is {key.key_size} bits; at least {min_rsa_key_size} required"
            )
        return key
    if isinstance(key, ec.EllipticCurvePrivateKey):
        if key.curve.name not in _EC_PARAMS:
            raise AccountKeyError(f"Unsupported account key curve: {key.curve.name}")
        return key
    raise AccountKeyError(f"Unsupported account key type: {type(key).__name__}")


def _int_to_base64url(n: int, length: int | None = None) -> str:
    if length is None:
        length = max(1, (n.bit_length() + 7) // 8)
    return base64url_encode(n.to_bytes(length, byteorder="big"))


def get_jwk(key: PrivateKey | PublicKey) -> dict[str, str]:
    """Public JWK for a key, with only the members RFC 7638 hashes."""
    public_key = key.public_key() if isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)) else key

    if isinstance(public_key, rsa.RSAPublicKey):
        numbers = public_key.public_numbers()
        return {"e": _int_to_base64url(numbers.e), "kty": "RSA", "n": _int_to_base64url(numbers.n)}

    curve_name = public_key.curve.name
    if curve_name not in _EC_PARAMS:
        raise ValueError(f"Unsupported curve: {curve_name}")
    crv, _, _, size = _EC_PARAMS[curve_name]
    numbers = public_key.public_numbers()
    return {
        "crv": crv,
        "kty": "EC",
        "x": _int_to_base64url(numbers.x, size),
        "y": _int_to_base64url(numbers.y, size),
    }


def key_thumbprint(key: PrivateKey | PublicKey) -> str:
    """Base64url SHA-256 JWK thumbprint of a key (RFC 7638)."""
    canonical = json.dumps(get_jwk(key), sort_keys=True, separators=(",", ":"))
    return base64url_encode(hashlib.sha256(canonical.encode("utf-8")).digest())


def jws_algorithm(key: PrivateKey) -> str:
    """JWS ``alg`` value for a key."""
    if isinstance(key, rsa.RSAPrivateKey):
        return "RS256"
    return _EC_PARAMS[key.curve.name][1]


def _raw_signature(key: PrivateKey, signing_input: bytes) -> bytes:
    if isinstance(key, rsa.RSAPrivateKey):
        return key.sign(signing_input, padding.PKCS1v15(), hashes.SHA256())

    _, _, hash_cls, size = _EC_PARAMS[key.curve.name]
    r, s = decode_dss_signature(key.sign(signing_input, ec.ECDSA(hash_cls())))
    # JWS wants fixed-size r||s, not DER
    return r.to_bytes(size, "big") + s.to_bytes(size, "big")


def sign_jws(
    key: PrivateKey,
    payload: dict[str, Any] | None,
    url: str,
    nonce: str | None = None,
    kid: str | None = None,
) -> dict[str, str]:
    """Sign a payload as an ACME JWS in flattened JSON serialization.

    Args:
        key: Private key to sign with.
        payload: JSON payload, or None for POST-as-GET (empty payload).
        url: Target URL, bound into the protected header.
        nonce: Replay nonce (omitted for the inner JWS of a key change).
        kid: Account URL. When absent the public JWK is embedded instead.

    Returns:
        Dict with ``protected``, ``payload`` and ``signature`` members.
    """
    protected: dict[str, Any] = {"alg": jws_algorithm(key), "url": url}
    if nonce is not None:
        protected["nonce"] = nonce
    if kid:
        protected["kid"] = kid
    else:
        protected["jwk"] = get_jwk(key)

    protected_b64 = base64url_encode(json.dumps(protected, separators=(",", ":")).encode("utf-8"))
    if payload is None:
        payload_b64 = ""
    else:
        payload_b64 = base64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))

    signature = _raw_signature(key, f"{protected_b64}.{payload_b64}".encode("ascii"))
    return {
        "protected": protected_b64,
        "payload": payload_b64,
        "signature": base64url_encode(signature),
    }


def create_csr(key: PrivateKey, domains: list[str]) -> x509.CertificateSigningRequest:
    """Create a CSR naming every domain as a SAN, the first one also as CN.

    Raises:
        ValueError: If domains list is empty.
    """
    if not domains:
        raise ValueError("At least one domain is required")

    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])]))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(domain) for domain in domains]),
            critical=False,
        )
    )
    return builder.sign(key, hashes.SHA256())


def csr_to_der(csr: x509.CertificateSigningRequest) -> bytes:
    return csr.public_bytes(serialization.Encoding.DER)


def pem_to_der(pem: str | bytes) -> bytes:
    """Convert the first PEM certificate in ``pem`` to DER."""
    if isinstance(pem, str):
        pem = pem.encode("ascii")
    return x509.load_pem_x509_certificate(pem).public_bytes(serialization.Encoding.DER)


def make_tls_alpn_certificate(
    domain: str,
    key_authorization: str,
    key: PrivateKey | None = None,
    validity: timedelta = timedelta(days=7),
) -> tuple[x509.Certificate, PrivateKey]:
    """Build the self-signed certificate presented for a tls-alpn-01 challenge.

    The certificate names ``domain`` as its only SAN and carries a critical
    acmeIdentifier extension whose value is the DER OCTET STRING of
    SHA-256(key_authorization) (RFC 8737 Section 3).

    Returns:
        The certificate and the private key it was issued for.
    """
    if key is None:
        key = generate_ecdsa_key("P-256")

    digest = hashlib.sha256(key_authorization.encode("utf-8")).digest()
    # OCTET STRING, length 32
    extension_value = b"\x04\x20" + digest

    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
    now = datetime.now(timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + validity)
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
        .add_extension(
            x509.UnrecognizedExtension(ACME_IDENTIFIER_OID, extension_value), critical=True
        )
        .sign(key, hashes.SHA256())
    )
    return certificate, key
