"""
auth/errors.py -- Error taxonomy for the auth core.

Two families, handled differently:

  Expected authentication failures (bad credentials, expired/revoked refresh
  tokens, inactive accounts) are NOT exceptions. Workflows return them as an
  ErrorCode inside AuthResult / Redemption so the caller branches on a value.

  Authorization and data-integrity violations (non-owner, missing permission,
  duplicate identity, system-role mutation) raise an AuthError subclass BEFORE
  any write happens. The HTTP layer maps AuthError.code to a status code.

CorruptHashError is the hard-failure path: a stored password hash that bcrypt
cannot parse. It signals data corruption, never a wrong password.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_INACTIVE = "account_inactive"
    DUPLICATE_PRINCIPAL = "duplicate_principal"
    VALIDATION_FAILED = "validation_failed"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_REVOKED = "token_revoked"
    TOKEN_NOT_FOUND = "token_not_found"
    PRINCIPAL_NOT_FOUND = "principal_not_found"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"


class AuthError(Exception):
    """Base class for rejected auth operations. Carries a stable ErrorCode."""

    code: ErrorCode = ErrorCode.VALIDATION_FAILED

    def __init__(self, message: str, code: ErrorCode | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationFailed(AuthError):
    code = ErrorCode.VALIDATION_FAILED


class DuplicatePrincipal(AuthError):
    code = ErrorCode.DUPLICATE_PRINCIPAL


class PrincipalNotFound(AuthError):
    code = ErrorCode.PRINCIPAL_NOT_FOUND


class NotFound(AuthError):
    """A role, permission, or other non-principal record does not exist (or is trashed)."""

    code = ErrorCode.NOT_FOUND


class Unauthorized(AuthError):
    """The caller lacks the permission, role, or ownership the operation requires."""

    code = ErrorCode.UNAUTHORIZED


class Forbidden(AuthError):
    """The operation would mutate a protected (system) record."""

    code = ErrorCode.FORBIDDEN


class CorruptHashError(Exception):
    """A stored password hash is malformed. Indicates data corruption."""
