"""
Signature Engine - RSA2 (SHA256withRSA) signing for gateway traffic.

Operators paste keys into payment_config as bare base64 blobs, sometimes with
line breaks, sometimes already PEM-wrapped. Everything here normalizes them
before handing them to cryptography.
"""

import base64
import binascii
from collections.abc import Iterable, Mapping
from enum import Enum

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from structlog import get_logger

from qc_billing.exceptions import SignatureVerificationError, SigningError

logger = get_logger(__name__)

SIGN_FIELD = "sign"
SIGN_TYPE_FIELD = "sign_type"
PEM_LINE_LENGTH = 64

# PKCS#8 PrivateKeyInfo opens with version INTEGER 0 followed by the
# AlgorithmIdentifier SEQUENCE; PKCS#1 RSAPrivateKey follows version with
# the modulus INTEGER instead.
_VERSION_ZERO = b"\x02\x01\x00"
_SEQUENCE_TAG = 0x30


class KeyEncoding(str, Enum):
    """DER container of a private key blob."""

    PKCS1 = "pkcs1"
    PKCS8 = "pkcs8"


def canonicalize(params: Mapping[str, object], exclude: Iterable[str] = (SIGN_FIELD,)) -> str:
    """
    Build the signing content string.

    Keys sorted by code point, excluded keys and empty values dropped,
    joined as k=v&k=v with raw (unencoded) values.
    """
    excluded = set(exclude)
    pairs = []
    for key in sorted(params):
        if key in excluded:
            continue
        value = params[key]
        if value is None or value == "":
            continue
        pairs.append(f"{key}={value}")
    return "&".join(pairs)


def _strip_blob(key: str) -> str:
    return "".join(key.split())


def wrap_pem(blob: str, label: str) -> str:
    """Fold a base64 body at 64 columns between BEGIN/END markers."""
    body = _strip_blob(blob)
    lines = [body[i : i + PEM_LINE_LENGTH] for i in range(0, len(body), PEM_LINE_LENGTH)]
    return f"-----BEGIN {label}-----\n" + "\n".join(lines) + f"\n-----END {label}-----\n"


def _skip_sequence_header(der: bytes) -> bytes:
    """Return the contents of the outer DER SEQUENCE."""
    if len(der) < 2 or der[0] != _SEQUENCE_TAG:
        raise SigningError("private key is not a DER SEQUENCE")

    length_byte = der[1]
    if length_byte < 0x80:
        header_length = 2
    else:
        header_length = 2 + (length_byte & 0x7F)

    if len(der) <= header_length:
        raise SigningError("private key is truncated")
    return der[header_length:]


def detect_private_key_encoding(blob: str) -> KeyEncoding:
    """
    Tell PKCS#8 from PKCS#1 by looking at the DER structure.

    Raises:
        SigningError: If the blob is not base64 or not a DER SEQUENCE
    """
    try:
        der = base64.b64decode(_strip_blob(blob), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise SigningError("private key is not valid base64") from exc

    body = _skip_sequence_header(der)
    if body.startswith(_VERSION_ZERO) and len(body) > 3 and body[3] == _SEQUENCE_TAG:
        return KeyEncoding.PKCS8
    return KeyEncoding.PKCS1


def format_private_key(key: str) -> str:
    """Normalize an operator-supplied private key to PEM."""
    key = key.strip()
    if "-----BEGIN" in key:
        return key

    encoding = detect_private_key_encoding(key)
    label = "PRIVATE KEY" if encoding is KeyEncoding.PKCS8 else "RSA PRIVATE KEY"
    return wrap_pem(key, label)


def format_public_key(key: str) -> str:
    """Normalize an operator-supplied public key to SubjectPublicKeyInfo PEM."""
    key = key.strip()
    if "-----BEGIN" in key:
        return key
    return wrap_pem(key, "PUBLIC KEY")


def load_private_key(key: str) -> rsa.RSAPrivateKey:
    """
    Parse an RSA private key in any accepted form.

    Raises:
        SigningError: If the key cannot be parsed or is not RSA
    """
    pem = format_private_key(key)
    try:
        private_key = serialization.load_pem_private_key(pem.encode("ascii"), password=None)
    except (ValueError, TypeError, UnicodeEncodeError, UnsupportedAlgorithm) as exc:
        raise SigningError("private key could not be parsed") from exc

    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise SigningError(f"expected an RSA key, got {type(private_key).__name__}")
    return private_key


def load_public_key(key: str) -> rsa.RSAPublicKey:
    """
    Parse the gateway's RSA public key.

    Raises:
        SignatureVerificationError: If the key cannot be parsed or is not RSA
    """
    pem = format_public_key(key)
    try:
        public_key = serialization.load_pem_public_key(pem.encode("ascii"))
    except (ValueError, TypeError, UnicodeEncodeError, UnsupportedAlgorithm) as exc:
        raise SignatureVerificationError("public key could not be parsed") from exc

    if not isinstance(public_key, rsa.RSAPublicKey):
        raise SignatureVerificationError(f"expected an RSA key, got {type(public_key).__name__}")
    return public_key


def sign_params(params: Mapping[str, object], private_key: str) -> str:
    """
    Sign request parameters.

    Everything except ``sign`` is covered, ``sign_type`` included.

    Returns:
        Standard base64 signature

    Raises:
        SigningError: If the key is unusable
    """
    content = canonicalize(params, exclude=(SIGN_FIELD,))
    key = load_private_key(private_key)
    signature = key.sign(content.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())

    logger.debug("params_signed", content_length=len(content), param_count=len(params))
    return base64.b64encode(signature).decode("ascii")


def normalize_signature(signature: str) -> str:
    """Undo form decoding that turned '+' into ' '."""
    return signature.replace(" ", "+")


def verify_params(params: Mapping[str, str], public_key: str) -> bool:
    """
    Verify a gateway notification.

    ``sign`` and ``sign_type`` are excluded from the content.

    Returns:
        True if the signature matches, False otherwise

    Raises:
        SignatureVerificationError: If the public key itself is unusable
    """
    key = load_public_key(public_key)

    signature = params.get(SIGN_FIELD)
    if not signature:
        logger.warning("signature_missing")
        return False

    try:
        raw_signature = base64.b64decode(normalize_signature(signature), validate=True)
    except (binascii.Error, ValueError):
        logger.warning("signature_not_base64")
        return False

    content = canonicalize(params, exclude=(SIGN_FIELD, SIGN_TYPE_FIELD))
    try:
        key.verify(raw_signature, content.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        return False
    return True
