"""Password hashing.

Uses bcrypt with automatic salting and a configurable work factor. A digest
produced at a lower cost (or by an older bcrypt variant) is reported as
needing a rehash so it can be upgraded on the next successful login.
"""

from __future__ import annotations

from typing import Protocol

import bcrypt

from .errors import ValidationError

BCRYPT_PREFIX = "2b"
BCRYPT_ROUNDS = 12
MAX_PASSWORD_BYTES = 72


class Hasher(Protocol):
    def hash(self, password: str) -> str:
        ...

    def verify(self, password: str, digest: str) -> bool:
        ...

    def needs_rehash(self, digest: str) -> bool:
        ...


class BcryptHasher:
    """bcrypt ``Hasher`` with a fixed cost factor."""

    def __init__(self, rounds: int = BCRYPT_ROUNDS) -> None:
        self.rounds = rounds

    def hash(self, password: str) -> str:
        """Hash a password.

        Raises:
            ValidationError: the password is longer than bcrypt accepts.
        """
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValidationError("Password too long.")
        salt = bcrypt.gensalt(rounds=self.rounds)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    def verify(self, password: str, digest: str) -> bool:
        """Constant-time comparison against a bcrypt digest.

        Malformed or empty digests never verify, nor do passwords too long
        to have been hashed.
        """
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            return False
        try:
            return bcrypt.checkpw(password.encode("utf-8"), digest.encode("utf-8"))
        except (ValueError, TypeError, AttributeError):
            return False

    def needs_rehash(self, digest: str) -> bool:
        # $2b$12$<22 char salt><31 char hash>
        parts = digest.split("$")
        if len(parts) != 4 or parts[0]:
            return True
        prefix, cost = parts[1], parts[2]
        if prefix != BCRYPT_PREFIX or not cost.isdigit():
            return True
        return int(cost) != self.rounds
