"""
LunaPass - Cryptography Module

Every object LunaPass stores passes through this file.

Envelope formats:
    Passphrase scheme (legacy databases):
        nonce(12) || salt(16) || ciphertext || tag(16)
        key = PBKDF2-HMAC-SHA512(passphrase, salt, 10000 iterations)

    Key scheme (current databases):
        nonce(12) || ciphertext || tag(16)
        key = content key from the keyring (HKDF subkey, used directly)

Both use ChaCha20-Poly1305, so any tampering or a wrong key fails the tag
check. That failure is the only way to tell a wrong passphrase apart, and it
always surfaces as AuthenticationFailed.

Keyring key derivation:
    1. Passphrase -> scrypt -> wrapping key (wraps the keyring master secret)
    2. Master secret -> HKDF -> subkeys (content key, ...)
"""

import os
import json
from datetime import datetime, timezone
from typing import Any, Dict, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .errors import AuthenticationFailed


# =============================================================================
# Configuration
# =============================================================================

KEY_SIZE = 32            # 256-bit key
NONCE_SIZE = 12          # 96-bit nonce for ChaCha20-Poly1305
SALT_SIZE = 16
TAG_SIZE = 16            # 128-bit authentication tag

# Deliberately slow: every passphrase envelope pays this on seal AND open
PBKDF2_ITERATIONS = 10000

# scrypt parameters for the keyring wrapping key
SCRYPT_N = 2**17
SCRYPT_R = 8
SCRYPT_P = 1

KeyMaterial = Union[str, bytes]


# =============================================================================
# Key Derivation
# =============================================================================

def derive_passphrase_key(passphrase: str, salt: bytes) -> bytes:
    """
    Derive an envelope key from a passphrase with PBKDF2-HMAC-SHA512.

    Used for every object in a legacy database, so the salt is fresh per
    object and the cost is paid per object.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=KEY_SIZE,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(passphrase.encode('utf-8'))


def derive_wrapping_key(passphrase: str, salt: bytes, n: int = SCRYPT_N,
                        r: int = SCRYPT_R, p: int = SCRYPT_P) -> bytes:
    """
    Derive the keyring wrapping key from a passphrase using scrypt.

    Args:
        passphrase: Database passphrase
        salt: 16-byte random salt (stored in the keyring record, NOT secret)
        n, r, p: scrypt cost parameters (stored in the keyring record)

    Returns:
        32-byte wrapping key
    """
    kdf = Scrypt(salt=salt, length=KEY_SIZE, n=n, r=r, p=p)
    return kdf.derive(passphrase.encode('utf-8'))


def derive_subkeys(master_secret: bytes) -> Dict[str, bytes]:
    """
    Derive independent subkeys from the keyring master secret using HKDF.

    Returns:
        Dictionary with:
        - content_key: Seals index, version objects and the note
    """
    def hkdf(info: str) -> bytes:
        h = HKDF(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=None,
            info=info.encode('utf-8')
        )
        return h.derive(master_secret)

    return {
        'content_key': hkdf('lunapass-content-v1'),
    }


# =============================================================================
# Canonical JSON
# =============================================================================

def encode_json(value: Any) -> bytes:
    """
    Serialize a value to canonical JSON bytes.

    Sorted keys, compact separators, UTF-8 without escaping. The same value
    always gives the same bytes, which the migration check relies on.
    """
    return json.dumps(value, separators=(",", ":"), sort_keys=True,
                      ensure_ascii=False).encode('utf-8')


def decode_json(data: bytes) -> Any:
    return json.loads(data.decode('utf-8'))


# =============================================================================
# Envelope Encryption (ChaCha20-Poly1305)
# =============================================================================

def seal(plaintext: bytes, key: KeyMaterial) -> bytes:
    """
    Encrypt a payload into an envelope.

    Args:
        plaintext: Serialized payload
        key: Passphrase (str) for the legacy scheme, or 32 key bytes for the
            current scheme

    Returns:
        Envelope bytes (layout depends on the scheme, see module docstring)
    """
    # NEVER reuse a nonce with the same key
    nonce = os.urandom(NONCE_SIZE)

    if isinstance(key, str):
        salt = os.urandom(SALT_SIZE)
        cipher = ChaCha20Poly1305(derive_passphrase_key(key, salt))
        return nonce + salt + cipher.encrypt(nonce, plaintext, None)

    cipher = ChaCha20Poly1305(_check_key(key))
    return nonce + cipher.encrypt(nonce, plaintext, None)


def open_envelope(envelope: bytes, key: KeyMaterial) -> bytes:
    """
    Decrypt an envelope produced by seal().

    Raises:
        AuthenticationFailed: Wrong key/passphrase, tampering, or a malformed
            envelope. The message never says which.
    """
    if isinstance(key, str):
        header = NONCE_SIZE + SALT_SIZE
    else:
        header = NONCE_SIZE
        key = _check_key(key)

    if len(envelope) < header + TAG_SIZE:
        raise AuthenticationFailed()

    nonce = envelope[:NONCE_SIZE]
    if isinstance(key, str):
        key = derive_passphrase_key(key, envelope[NONCE_SIZE:header])

    try:
        return ChaCha20Poly1305(key).decrypt(nonce, envelope[header:], None)
    except InvalidTag:
        raise AuthenticationFailed() from None


def seal_json(value: Any, key: KeyMaterial) -> bytes:
    return seal(encode_json(value), key)


def open_json(envelope: bytes, key: KeyMaterial) -> Any:
    return decode_json(open_envelope(envelope, key))


# =============================================================================
# Helpers
# =============================================================================

def now_iso() -> str:
    """Current UTC time as ISO-8601 with milliseconds, e.g. 2024-05-01T10:00:00.000Z"""
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def _check_key(key: bytes) -> bytes:
    if len(key) != KEY_SIZE:
        raise ValueError(f"Key must be {KEY_SIZE} bytes, got {len(key)}")
    return key
