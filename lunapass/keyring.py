"""
LunaPass - Keyring Module

Key material for the current storage scheme.

A keyring is a random 32-byte master secret, wrapped (encrypted) under a
key derived from the database passphrase with scrypt. The wrapped secret,
its salt and the scrypt parameters live in one object behind the
`lunapass-keyring` pointer. If that pointer exists, the database has been
migrated to the current scheme.

Recovery uses SLIP-0039 mnemonics (Shamir Secret Sharing):
- By default a single recovery phrase (1-of-1) is issued at creation
- The secret can also be split k-of-n; fewer than k shares reveal NOTHING
- Recovering re-wraps the SAME master secret under a new passphrase, so
  nothing else in the database needs re-encrypting
"""

import os
from typing import List, Optional, Tuple

from shamir_mnemonic import MnemonicError, shamir

from . import crypto
from .errors import AuthenticationFailed, NotFound
from .storage import ObjectStore

KEYRING_POINTER = "lunapass-keyring"
MASTER_SECRET_SIZE = 32
KEYRING_CHECK = b"lunapass-keyring-check"


class Keyring:
    """Unlocked key material. Only exists in memory."""

    def __init__(self, master_secret: bytes):
        self.master_secret = master_secret
        self.content_key = crypto.derive_subkeys(master_secret)['content_key']


# =============================================================================
# Keyring record
# =============================================================================

def _wrap(master_secret: bytes, passphrase: str, n: int) -> dict:
    salt = os.urandom(crypto.SALT_SIZE)
    wrapping_key = crypto.derive_wrapping_key(passphrase, salt, n, crypto.SCRYPT_R, crypto.SCRYPT_P)
    return {
        "version": 1,
        "kdf": "scrypt",
        "kdf_params": {"N": n, "r": crypto.SCRYPT_R, "p": crypto.SCRYPT_P},
        "salt": salt.hex(),
        "secret": crypto.seal(master_secret, wrapping_key).hex(),
        # Lets recovery tell this secret apart from any other valid phrase
        "check": crypto.seal(KEYRING_CHECK, Keyring(master_secret).content_key).hex(),
    }


async def _save(store: ObjectStore, record: dict) -> None:
    cid = await store.put(crypto.encode_json(record))
    await store.put_pointer(KEYRING_POINTER, cid)


async def _load_record(store: ObjectStore) -> Optional[dict]:
    cid = await store.get_pointer(KEYRING_POINTER)
    if cid is None:
        return None
    data = await store.get(cid)
    return crypto.decode_json(data) if data is not None else None


async def has_keyring(store: ObjectStore) -> bool:
    """Is key material for the current scheme already established?"""
    return await store.get_pointer(KEYRING_POINTER) is not None


async def create_keyring(store: ObjectStore, passphrase: str,
                         n: int = crypto.SCRYPT_N) -> Tuple[Keyring, List[str]]:
    """
    Create, persist and unlock a new keyring.

    Args:
        store: Current-scheme store
        passphrase: Database passphrase
        n: scrypt cost (stored in the record, so later unlocks use it too)

    Returns:
        (keyring, recovery phrase as a list of words)
    """
    master_secret = os.urandom(MASTER_SECRET_SIZE)
    await _save(store, _wrap(master_secret, passphrase, n))
    phrase = generate_recovery_shares(master_secret, 1, 1)[0]
    return Keyring(master_secret), phrase.split()


async def load_keyring(store: ObjectStore, passphrase: str) -> Keyring:
    """
    Unlock the stored keyring.

    Raises:
        NotFound: No keyring in this database
        AuthenticationFailed: Wrong passphrase
    """
    record = await _load_record(store)
    if record is None:
        raise NotFound("No keyring in this database")

    params = record["kdf_params"]
    wrapping_key = crypto.derive_wrapping_key(
        passphrase, bytes.fromhex(record["salt"]), params["N"], params["r"], params["p"]
    )
    return Keyring(crypto.open_envelope(bytes.fromhex(record["secret"]), wrapping_key))


async def unlock_with_shares(store: ObjectStore, phrases: List[str]) -> Keyring:
    """
    Unlock the stored keyring with recovery phrase(s) instead of the passphrase.

    Args:
        phrases: Enough SLIP-0039 mnemonics (space-separated words) to meet
            the threshold

    Raises:
        ValueError: Invalid or insufficient phrases
        NotFound: No keyring in this database
        AuthenticationFailed: The phrases belong to a different secret
    """
    master_secret = combine_recovery_shares(phrases)
    record = await _load_record(store)
    if record is None:
        raise NotFound("No keyring in this database")

    keyring = Keyring(master_secret)
    try:
        check = crypto.open_envelope(bytes.fromhex(record["check"]), keyring.content_key)
    except AuthenticationFailed:
        check = None
    if check != KEYRING_CHECK:
        raise AuthenticationFailed("Recovery phrase does not belong to this database")
    return keyring


async def recover_keyring(store: ObjectStore, phrases: List[str], new_passphrase: str,
                          n: int = crypto.SCRYPT_N) -> Keyring:
    """
    Replace the keyring's passphrase using recovery phrase(s).

    Nothing is written unless the phrases unlock this database's keyring.

    Args:
        phrases: See `unlock_with_shares`
        new_passphrase: Passphrase to wrap the recovered secret with

    Raises:
        ValueError: Invalid or insufficient phrases
        NotFound: No keyring in this database
        AuthenticationFailed: The phrases belong to a different secret
    """
    keyring = await unlock_with_shares(store, phrases)
    await _save(store, _wrap(keyring.master_secret, new_passphrase, n))
    return keyring


# =============================================================================
# Recovery shares (SLIP-0039)
# =============================================================================

def generate_recovery_shares(master_secret: bytes, k: int, n: int) -> List[str]:
    """
    Split the master secret into n mnemonic shares (need k to recover).

    Returns:
        List of n shares, each a space-separated mnemonic
    """
    if k > n:
        raise ValueError(f"k ({k}) cannot be greater than n ({n})")

    if k < 1:
        raise ValueError("k must be at least 1")

    if k == 1 and n != 1:
        raise ValueError("A threshold of 1 only allows a single share")

    if n > 16:
        raise ValueError("n cannot exceed 16 (library limitation)")

    # One group with a k-of-n member threshold
    groups = shamir.generate_mnemonics(
        group_threshold=1,
        groups=[(k, n)],
        master_secret=master_secret
    )

    return groups[0]


def combine_recovery_shares(shares: List[str]) -> bytes:
    """
    Reconstruct the master secret from k shares.

    Raises:
        ValueError: If shares are invalid or insufficient
    """
    try:
        return shamir.combine_mnemonics(shares)
    except (MnemonicError, ValueError) as e:
        raise ValueError(f"Failed to combine shares: {e}") from e


def format_recovery_kit(shares: List[str], k: int) -> str:
    """Format recovery shares for printing on paper."""
    output = []
    output.append("=" * 70)
    output.append("LunaPass RECOVERY KIT")
    output.append("=" * 70)
    output.append(f"\nThreshold: Need {k} of {len(shares)} shares to recover")
    output.append("\nIMPORTANT:")
    output.append("- Store shares in separate secure locations")
    output.append(f"- Any {k} shares can recover your database if you forget the passphrase")
    output.append("- NEVER store all shares together!\n")
    output.append("=" * 70)

    for i, share in enumerate(shares, 1):
        output.append(f"\n\nSHARE {i} of {len(shares)}")
        output.append("-" * 70)
        output.append(share)
        output.append("\n" + "-" * 70)

    output.append("\n\nTo recover:")
    output.append("1. Run: lunapass recover")
    output.append(f"2. Enter any {k} shares when prompted")
    output.append("3. Choose a new passphrase\n")

    return "\n".join(output)
