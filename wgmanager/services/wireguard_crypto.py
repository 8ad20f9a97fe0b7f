"""WireGuard cryptographic utilities.

Provides Curve25519 key generation and optional Fernet encryption
for storing private keys at rest.
"""

from __future__ import annotations

import base64
import binascii
import logging
import secrets

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from wgmanager.config import settings

_logger = logging.getLogger(__name__)
_encryption_warning_logged = False


def generate_keypair() -> tuple[str, str]:
    """Generate a WireGuard Curve25519 keypair.

    Returns:
        Tuple of (private_key_base64, public_key_base64)
    """
    private_key = X25519PrivateKey.generate()
    private_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return (
        base64.b64encode(private_bytes).decode("ascii"),
        base64.b64encode(public_bytes).decode("ascii"),
    )


def derive_public_key(private_key_b64: str) -> str:
    """Derive the base64 public key from a base64 private key.

    Raises ValueError for anything that is not a 32-byte key.
    """
    if not validate_key(private_key_b64):
        raise ValueError("invalid private key")
    private_key = X25519PrivateKey.from_private_bytes(base64.b64decode(private_key_b64))
    public_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return base64.b64encode(public_bytes).decode("ascii")


def generate_preshared_key() -> str:
    return base64.b64encode(secrets.token_bytes(32)).decode("ascii")


def validate_key(key_b64: str) -> bool:
    """True when ``key_b64`` is a base64-encoded 32-byte WireGuard key."""
    if not key_b64 or not isinstance(key_b64, str):
        return False
    try:
        key_bytes = base64.b64decode(key_b64.strip(), validate=True)
    except (binascii.Error, ValueError):
        return False
    return len(key_bytes) == 32


def get_encryption_key() -> bytes | None:
    """Return the configured Fernet key, or None when at-rest encryption is off."""
    key_str = settings.wireguard_key_encryption_key
    if not key_str:
        return None
    try:
        return key_str.encode("ascii")
    except UnicodeEncodeError as e:
        raise RuntimeError(
            "WIREGUARD_KEY_ENCRYPTION_KEY must be a valid ASCII string"
        ) from e


def generate_encryption_key() -> str:
    """Generate a value suitable for WIREGUARD_KEY_ENCRYPTION_KEY."""
    return Fernet.generate_key().decode("ascii")


def encrypt_private_key(private_key_b64: str) -> str:
    """Prepare a private key for storage.

    Returns ``enc:<token>`` when an encryption key is configured, otherwise
    ``plain:<key>`` (a warning is logged once per process).
    """
    global _encryption_warning_logged
    encryption_key = get_encryption_key()
    if encryption_key is None:
        if not _encryption_warning_logged:
            _logger.warning(
                "wireguard_private_keys_unencrypted "
                "hint=set WIREGUARD_KEY_ENCRYPTION_KEY to encrypt keys at rest"
            )
            _encryption_warning_logged = True
        return f"plain:{private_key_b64}"
    encrypted = Fernet(encryption_key).encrypt(private_key_b64.encode("ascii"))
    return f"enc:{encrypted.decode('ascii')}"


def decrypt_private_key(stored_key: str) -> str:
    """Decrypt a private key from storage.

    Handles ``enc:``, ``plain:`` and legacy unprefixed values.

    Raises:
        ValueError: If decryption fails or no encryption key is configured
    """
    if stored_key.startswith("plain:"):
        return stored_key[6:]

    if stored_key.startswith("enc:"):
        encryption_key = get_encryption_key()
        if encryption_key is None:
            raise ValueError(
                "Encrypted key found but WIREGUARD_KEY_ENCRYPTION_KEY not set"
            )
        try:
            decrypted = Fernet(encryption_key).decrypt(stored_key[4:].encode("ascii"))
        except InvalidToken as e:
            raise ValueError("Failed to decrypt private key") from e
        return decrypted.decode("ascii")

    return stored_key
