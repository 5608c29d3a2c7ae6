"""Credential store exceptions.

Callers catch these to tell apart the outcomes of schema and credential
operations. None of them carry password material.
"""


class RoostError(Exception):
    """Base class for all credential store errors."""


class SchemaError(RoostError):
    """A schema reconciliation step failed."""


class ValidationError(RoostError):
    """Input violates a length or non-empty constraint."""


class DuplicateError(RoostError):
    """Username or email already taken."""


class IntegrityError(RoostError):
    """More than one row shares an identifier that must be unique."""


class AuthError(RoostError):
    """Credentials did not match.

    The message is the same whether the user is unknown or the password is
    wrong.
    """

    def __init__(self, message: str = "Invalid username or password."):
        super().__init__(message)


class UpdateError(RoostError):
    """An update expected to touch exactly one row did not."""


class StorageError(RoostError):
    """The storage engine rejected a write for a reason other than uniqueness."""
