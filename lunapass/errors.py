"""
LunaPass - Errors

Everything the library raises on purpose derives from LunaPassError, so the
CLI can turn it into a message and a non-zero exit.
"""

from typing import List, Sequence, Tuple


class LunaPassError(Exception):
    """Base class for LunaPass errors."""


class AuthenticationFailed(LunaPassError):
    """
    AEAD tag verification failed.

    The only signal for a wrong passphrase or key. The message is fixed so
    it never reveals which part of the envelope was bad.
    """

    def __init__(self, message: str = "Incorrect database passphrase"):
        super().__init__(message)


class NotFound(LunaPassError):
    """An entry, or an object that should exist, is absent."""


class AlreadyExists(LunaPassError):
    """An entry identifier is present where absence was required."""


class StoreUnavailable(LunaPassError):
    """
    The underlying object/pointer store failed.

    When raised for a fan-out (e.g. deleting a chain), `errors` holds every
    branch failure, not just the first.
    """

    def __init__(self, message: str, errors: Sequence[BaseException] = ()):
        super().__init__(message)
        self.errors: List[BaseException] = list(errors)


Mismatch = Tuple[str, int, str]


class MigrationVerificationFailed(LunaPassError):
    """
    Post-migration comparison found differences.

    `mismatches` is a list of (entry id, generation, kind) tuples, where
    generation 0 is the head and kind is one of "added", "props", "prev",
    "missing" or "extra".
    """

    def __init__(self, mismatches: Sequence[Mismatch]):
        self.mismatches: List[Mismatch] = list(mismatches)
        super().__init__(
            f"Migration verification failed with {len(self.mismatches)} mismatch(es)"
        )
