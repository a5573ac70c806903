"""Security utilities for encrypting sensitive configuration data.

Uses Fernet symmetric encryption with a machine-specific key derived from
the login name, host name, and a static salt. This keeps the remote access
token out of plain sight in configuration.xml while leaving it recoverable
on the same machine by the same user.
"""

import base64
import getpass
import hashlib
import platform
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from ..logging_config import get_logger

logger = get_logger("security")

# Static salt - not secret, just adds entropy
_SALT = b"GitMC_v1_salt_2024"
_PREFIX = "ENC:"


def _get_machine_key() -> bytes:
    """Generate a machine-specific encryption key.

    Returns:
        32-byte url-safe base64 key suitable for Fernet encryption
    """
    try:
        username = getpass.getuser()
    except (KeyError, OSError):
        username = "default_user"
    hostname = platform.node() or "default_machine"

    key_material = f"{username}:{hostname}".encode("utf-8")
    key = hashlib.pbkdf2_hmac(
        "sha256",
        key_material,
        _SALT,
        iterations=100000,
        dklen=32
    )
    return base64.urlsafe_b64encode(key)


@lru_cache(maxsize=1)
def _get_cipher() -> Fernet:
    # One PBKDF2 derivation per process
    return Fernet(_get_machine_key())


def encrypt_secret(plain_text: str) -> str:
    """Encrypt a secret for storage.

    Args:
        plain_text: The plain text secret to encrypt

    Returns:
        The Fernet token prefixed with 'ENC:', or an empty string for
        empty input.
    """
    if not plain_text:
        return ""
    encrypted = _get_cipher().encrypt(plain_text.encode("utf-8"))
    return f"{_PREFIX}{encrypted.decode('ascii')}"


def decrypt_secret(encrypted_text: str) -> str:
    """Decrypt a stored secret.

    Args:
        encrypted_text: The stored value (prefixed with 'ENC:')

    Returns:
        The decrypted plain text. Values without the prefix are returned
        as-is. Values that cannot be decrypted on this machine yield an
        empty string.
    """
    if not encrypted_text:
        return ""

    if not is_encrypted(encrypted_text):
        return encrypted_text

    try:
        decrypted = _get_cipher().decrypt(encrypted_text[len(_PREFIX):].encode("ascii"))
        return decrypted.decode("utf-8")
    except (InvalidToken, ValueError, UnicodeError) as e:
        logger.error("Failed to decrypt stored secret: %s", e)
        return ""


def is_encrypted(text: str) -> bool:
    """Check if a string is encrypted.

    Args:
        text: The string to check

    Returns:
        True if the string appears to be encrypted
    """
    return text.startswith(_PREFIX) if text else False
