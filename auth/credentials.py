"""
auth/credentials.py -- Password hashing and verification (bcrypt).

No other module touches raw passwords. Callers pass plaintext in, get a hash
or a bool back, and drop the plaintext.

Using bcrypt directly rather than passlib[bcrypt]: passlib's wrap-bug
detection builds a password longer than 72 bytes, which current bcrypt
releases reject with an explicit error.

72-byte limit: bcrypt only looks at the first 72 bytes of input and recent
releases raise ValueError past that. hash() refuses such input outright;
verify() returns False for it (nothing hash() produced can match), so
mismatched input never raises.

Timing equalization [C1]: verify_dummy() runs a full bcrypt check against a
hash computed once at construction, so a login for an unknown email costs the
same as a login with a wrong password.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import bcrypt

from auth.errors import CorruptHashError

MAX_PASSWORD_BYTES = 72


class CredentialStore:
    """Salted, adaptive one-way password hashing with a fixed cost factor.

    Usage:
        credentials = CredentialStore(rounds=12)
        stored = credentials.hash("correct horse battery staple")
        credentials.verify("correct horse battery staple", stored)  # True
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        self._dummy_hash = self.hash("blogapi_timing_dummy")

    def hash(self, plaintext: str) -> str:
        """Return a bcrypt hash of the plaintext. Raises ValueError past 72 bytes."""
        encoded = plaintext.encode("utf-8")
        if len(encoded) > MAX_PASSWORD_BYTES:
            raise ValueError(f"Password exceeds {MAX_PASSWORD_BYTES} bytes.")
        return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plaintext: str, hashed: str) -> bool:
        """Return True iff plaintext matches hashed.

        Raises CorruptHashError only when the stored hash itself is malformed.
        """
        encoded = plaintext.encode("utf-8")
        if len(encoded) > MAX_PASSWORD_BYTES:
            return False
        try:
            return bcrypt.checkpw(encoded, hashed.encode("utf-8"))
        except ValueError as exc:
            raise CorruptHashError("Stored password hash is malformed.") from exc

    def verify_dummy(self, plaintext: str) -> None:
        """Burn one bcrypt check so a missing principal is not faster than a wrong password."""
        self.verify(plaintext, self._dummy_hash)
