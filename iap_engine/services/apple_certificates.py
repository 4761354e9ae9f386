"""
Apple Certificate Chain Verification.

StoreKit 2 signs transactions, renewal info and notifications with a leaf
certificate carried in the JWS x5c header, followed by the Apple Worldwide
Developer Relations intermediate and (usually) Apple Root CA - G3.

The chain is trusted when every certificate is valid at verification time,
each one is signed by the next, the leaf and intermediate carry Apple's
marker extensions and the last one is, or is signed by, a configured root.
Roots come from Apple's PKI page: https://www.apple.com/certificateauthority/
"""

import base64
import binascii
from collections.abc import Iterable, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes

from iap_engine.exceptions import SignatureInvalidError

APPLE_LEAF_MARKER_OID = x509.ObjectIdentifier("1.2.840.113635.100.6.11.1")
APPLE_INTERMEDIATE_MARKER_OID = x509.ObjectIdentifier("1.2.840.113635.100.6.2.1")

_PEM_MARKER = b"-----BEGIN CERTIFICATE-----"


def parse_certificate(data: bytes) -> x509.Certificate:
    """
    Parse a DER or PEM certificate.

    Raises:
        ValueError: If the data is not a certificate
    """
    if _PEM_MARKER in data:
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


def load_root_certificates(paths: Iterable[str]) -> list[x509.Certificate]:
    """
    Load trusted root certificates from files; blank entries are skipped.

    Raises:
        ValueError: If a file cannot be read or is not a certificate
    """
    roots: list[x509.Certificate] = []
    for path in paths:
        path = path.strip()
        if not path:
            continue
        try:
            data = Path(path).read_bytes()
        except OSError as e:
            raise ValueError(f"cannot read root certificate {path}: {e}") from e
        try:
            roots.append(parse_certificate(data))
        except ValueError as e:
            raise ValueError(f"{path} is not a certificate: {e}") from e
    return roots


def decode_x5c(x5c: Any) -> list[x509.Certificate]:
    """
    Decode an x5c header: base64 (not base64url) DER certificates, leaf first.

    Raises:
        SignatureInvalidError: If the header is not a list of certificates
    """
    if not isinstance(x5c, list) or not x5c:
        raise SignatureInvalidError("x5c must be a non-empty list")
    chain: list[x509.Certificate] = []
    for entry in x5c:
        if not isinstance(entry, str):
            raise SignatureInvalidError("x5c entries must be strings")
        try:
            chain.append(x509.load_der_x509_certificate(base64.b64decode(entry, validate=True)))
        except (binascii.Error, ValueError) as e:
            raise SignatureInvalidError(f"malformed x5c certificate: {e}") from e
    return chain


def _name(cert: x509.Certificate) -> str:
    return cert.subject.rfc4514_string()


def _is_ca(cert: x509.Certificate) -> bool:
    try:
        return bool(cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca)
    except x509.ExtensionNotFound:
        return False


def _require_marker(cert: x509.Certificate, oid: x509.ObjectIdentifier) -> None:
    try:
        cert.extensions.get_extension_for_oid(oid)
    except x509.ExtensionNotFound as e:
        raise SignatureInvalidError(
            f"{_name(cert)} is not an App Store signing certificate"
        ) from e


def _issued_by(cert: x509.Certificate, issuer: x509.Certificate) -> bool:
    try:
        cert.verify_directly_issued_by(issuer)
    except (InvalidSignature, TypeError, ValueError):
        return False
    return True


def verify_certificate_chain(
    chain: Sequence[x509.Certificate],
    roots: Sequence[x509.Certificate],
    at: datetime,
) -> x509.Certificate:
    """
    Check a leaf-first certificate chain and return the leaf.

    Args:
        chain: Certificates from the x5c header
        roots: Trusted root certificates
        at: Verification time (timezone-aware)

    Raises:
        SignatureInvalidError: If the chain is not trusted
    """
    if not roots:
        raise SignatureInvalidError("no trusted root certificates configured")
    if len(chain) < 2:
        raise SignatureInvalidError("x5c chain is missing the intermediate certificate")

    for cert in chain:
        if not cert.not_valid_before_utc <= at <= cert.not_valid_after_utc:
            raise SignatureInvalidError(f"{_name(cert)} is not valid at {at.isoformat()}")

    for child, issuer in zip(chain, chain[1:]):
        if not _is_ca(issuer):
            raise SignatureInvalidError(f"{_name(issuer)} is not a CA certificate")
        if not _issued_by(child, issuer):
            raise SignatureInvalidError(f"{_name(child)} is not signed by {_name(issuer)}")

    _require_marker(chain[0], APPLE_LEAF_MARKER_OID)
    _require_marker(chain[1], APPLE_INTERMEDIATE_MARKER_OID)

    top = chain[-1]
    trusted = {root.fingerprint(hashes.SHA256()) for root in roots}
    if top.fingerprint(hashes.SHA256()) in trusted:
        return chain[0]
    if any(_issued_by(top, root) for root in roots):
        return chain[0]
    raise SignatureInvalidError(f"{_name(top)} does not chain to a trusted root")
