"""
Signature Service for Webhook Authenticity

Implements HMAC signature generation and verification over the raw request
bytes. Verification runs before any JSON parsing so the digest covers the
exact bytes the provider signed.
"""
import base64
import binascii
import hashlib
import hmac
import logging
from typing import Literal

logger = logging.getLogger(__name__)

Encoding = Literal["hex", "base64"]

SUPPORTED_ALGORITHMS = frozenset({"sha1", "sha256", "sha512"})


def compute_signature(
    payload: bytes,
    secret: str,
    algorithm: str = "sha256",
    encoding: Encoding = "hex"
) -> str:
    """
    Sign a payload using HMAC.

    Args:
        payload: Raw bytes to sign
        secret: Shared webhook secret
        algorithm: Digest name (sha1, sha256, sha512)
        encoding: Output encoding, "hex" or "base64"

    Returns:
        Encoded signature string

    Raises:
        ValueError: If the algorithm or encoding is unsupported
    """
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"Unsupported HMAC algorithm: {algorithm}")

    digest = hmac.new(
        secret.encode("utf-8"),
        payload,
        getattr(hashlib, algorithm)
    ).digest()

    if encoding == "hex":
        return digest.hex()
    if encoding == "base64":
        return base64.b64encode(digest).decode("ascii")
    raise ValueError(f"Unsupported signature encoding: {encoding}")


def verify_signature(
    payload: bytes,
    signature_header: str,
    secret: str,
    algorithm: str = "sha256",
    encoding: Encoding = "hex"
) -> bool:
    """
    Verify a webhook signature using constant-time comparison.

    Args:
        payload: Raw request body exactly as received
        signature_header: Value of the provider's signature header
        secret: Shared webhook secret
        algorithm: Digest name (sha1, sha256, sha512)
        encoding: Encoding the provider uses for the signature

    Returns:
        True if the signature is valid, False otherwise. Malformed input
        (missing header, empty secret, unknown algorithm, undecodable
        signature) yields False rather than an exception.
    """
    if not signature_header or not secret or payload is None:
        return False

    try:
        expected = compute_signature(payload, secret, algorithm, encoding)
        provided = signature_header.strip()

        if encoding == "hex":
            provided = provided.lower()
        else:
            # Re-encode so padding or alphabet differences cannot slip through
            provided = base64.b64encode(base64.b64decode(provided, validate=True)).decode("ascii")

        return hmac.compare_digest(expected.encode("ascii"), provided.encode("ascii"))
    except (ValueError, TypeError, binascii.Error, UnicodeError) as e:
        logger.debug(f"Malformed webhook signature rejected: {e}")
        return False
