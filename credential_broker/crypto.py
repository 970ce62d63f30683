"""
Credential fingerprints — keyed derivation used by the rotation history.

The rotation history stored alongside a remote secret never contains
previous passwords, only HKDF-SHA256 fingerprints bound to the server name:

    fingerprint = HKDF(password, info="credential-history:<server>")

Security Note:
    Never log plaintext passwords. Fingerprints are safe to log.
"""
import hmac
import secrets
import string
import logging

from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives import hashes

logger = logging.getLogger("credential_broker.crypto")

FINGERPRINT_LENGTH = 16  # bytes, hex-encoded to 32 chars

# shell-safe punctuation: no quotes, backslash, '$' or backtick
PASSWORD_SYMBOLS = "!#%+-.:=?@^_~"
_PASSWORD_CLASSES = (
    string.ascii_lowercase,
    string.ascii_uppercase,
    string.digits,
    PASSWORD_SYMBOLS,
)
PASSWORD_ALPHABET = "".join(_PASSWORD_CLASSES)


def derive_key(seed: bytes, context: str, length: int = FINGERPRINT_LENGTH) -> bytes:
    """Derive key material using HKDF-SHA256.

    Args:
        seed: Input key material.
        context: Context string for domain separation.
        length: Output length in bytes.

    Returns:
        Derived bytes.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=None,  # deterministic: fingerprints must be comparable later
        info=context.encode("utf-8"),
    )
    return hkdf.derive(seed)


def fingerprint(password: str, server_name: str) -> str:
    """Return the history fingerprint of a password for one server."""
    return derive_key(
        password.encode("utf-8"), f"credential-history:{server_name}"
    ).hex()


def matches(password: str, server_name: str, fingerprints: list[str]) -> bool:
    """Check whether a password matches any of the given fingerprints."""
    candidate = fingerprint(password, server_name)
    return any(hmac.compare_digest(candidate, fp) for fp in fingerprints)


def generate_password(length: int = 32) -> str:
    """Generate a random password with at least one char of each class.

    Args:
        length: Password length (at least 4).

    Returns:
        Password drawn from :data:`PASSWORD_ALPHABET`.
    """
    if length < len(_PASSWORD_CLASSES):
        raise ValueError(f"Password length must be >= {len(_PASSWORD_CLASSES)}")
    chars = [secrets.choice(cls) for cls in _PASSWORD_CLASSES]
    chars.extend(
        secrets.choice(PASSWORD_ALPHABET)
        for _ in range(length - len(chars))
    )
    # shuffle so the class-guaranteed chars are not always first
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)
