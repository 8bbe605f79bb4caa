"""
auth/service.py -- Authentication workflows: register, login, refresh, revoke.

AuthService composes the leaf components and owns the transaction boundary.
Each multi-write workflow opens ONE connection, threads it through every
repository call, and commits once at the end. Leaving the `with` block without
committing (an early return or an exception) closes the connection, which
rolls the whole workflow back:

  register: user row + first refresh token commit together.
  refresh:  claim old token + issue new token commit together. If the
            principal turns out to be missing or inactive, the claim is rolled
            back and the old token stays Active.

Expected failures come back as AuthResult(success=False, error=ErrorCode...),
never as exceptions. Messages are deliberately generic where detail would
help an attacker:
  - unknown email and wrong password share "Invalid email or password" [C1]
  - "Account is deactivated" is only revealed after the password verified

Logging: outcomes are logged with principal ids, never with passwords, token
values, or password hashes.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from auth.credentials import MAX_PASSWORD_BYTES, CredentialStore
from auth.errors import CorruptHashError, ErrorCode, PrincipalNotFound
from auth.ledger import RefreshTokenLedger
from auth.models import AuthResult, PrincipalSnapshot, RegistrationRequest, User
from auth.rbac import RbacEvaluator
from auth.store import AuthStore
from auth.tokens import TokenIssuer, TokenValidation

logger = logging.getLogger("blogapi.auth.service")

MIN_PASSWORD_LENGTH = 8
MAX_USERNAME_LENGTH = 50
MAX_EMAIL_LENGTH = 255

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
ACCOUNT_INACTIVE_MESSAGE = "Account is deactivated"
DUPLICATE_PRINCIPAL_MESSAGE = "User with this email or username already exists"
INVALID_REFRESH_MESSAGE = "Invalid or expired refresh token"
PRINCIPAL_UNAVAILABLE_MESSAGE = "User not found or inactive"


def validate_password_policy(password: str) -> Optional[str]:
    """Return a client-safe problem description, or None if the password is acceptable."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters."
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        return f"Password must be at most {MAX_PASSWORD_BYTES} bytes."
    return None


def validate_identity(username: str, email: str) -> Optional[str]:
    if not username or not email:
        return "Username and email are required."
    if len(username) > MAX_USERNAME_LENGTH:
        return f"Username must be at most {MAX_USERNAME_LENGTH} characters."
    if len(email) > MAX_EMAIL_LENGTH or not _EMAIL_RE.match(email):
        return "Email address is not valid."
    return None


class AuthService:
    """Entry point for every credential and token workflow.

    Usage:
        service = AuthService(store, credentials, rbac, issuer, ledger)
        result = service.login("alice@example.com", "s3cret-pass")
        if result.success:
            ...  # result.access_token, result.refresh_token
    """

    def __init__(
        self,
        store: AuthStore,
        credentials: CredentialStore,
        rbac: RbacEvaluator,
        issuer: TokenIssuer,
        ledger: RefreshTokenLedger,
    ) -> None:
        self._store = store
        self._credentials = credentials
        self._rbac = rbac
        self._issuer = issuer
        self._ledger = ledger

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    def register(self, request: RegistrationRequest) -> AuthResult:
        username = request.username.strip()
        email = request.email.strip()

        problem = validate_identity(username, email)
        if problem is None and not request.password:
            problem = "Password is required."
        if problem is None:
            problem = validate_password_policy(request.password)
        if problem is None and request.password != request.confirm_password:
            problem = "Passwords do not match"
        if problem is not None:
            return AuthResult.fail(ErrorCode.VALIDATION_FAILED, problem)

        # Hash before opening the transaction: bcrypt is slow by design.
        password_hash = self._credentials.hash(request.password)
        user = User(
            username=username,
            email=email,
            password_hash=password_hash,
            first_name=request.first_name.strip(),
            last_name=request.last_name.strip(),
            is_email_confirmed=False,
            is_active=True,
        )

        with self._store.engine.connect() as conn:
            if self._store.users.identity_taken(email, username, conn=conn):
                return AuthResult.fail(ErrorCode.DUPLICATE_PRINCIPAL, DUPLICATE_PRINCIPAL_MESSAGE)
            try:
                self._store.users.add(user, conn=conn)
                result = self._issue_pair(user, conn)
                conn.commit()
            except IntegrityError:
                # Lost a registration race; the partial unique index caught it.
                logger.info("Registration rejected by unique index for username=%s", username)
                return AuthResult.fail(ErrorCode.DUPLICATE_PRINCIPAL, DUPLICATE_PRINCIPAL_MESSAGE)

        logger.info("Registered principal id=%s username=%s", user.id, username)
        return result

    def login(self, email: str, password: str, remember_me: bool = False) -> AuthResult:
        """Verify credentials and issue a token pair.

        remember_me is accepted for client compatibility; token lifetimes come
        from configuration regardless.
        """
        email = (email or "").strip()
        password = password or ""
        user = self._store.users.get_by_email(email) if email else None
        if user is None:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            self._credentials.verify_dummy(password)
            logger.info("Login failed: unknown email")
            return AuthResult.fail(ErrorCode.INVALID_CREDENTIALS, INVALID_CREDENTIALS_MESSAGE)

        try:
            verified = self._credentials.verify(password, user.password_hash)
        except CorruptHashError:
            logger.error("Stored password hash for principal id=%s is malformed", user.id)
            verified = False
        if not verified:
            logger.info("Login failed: bad password for principal id=%s", user.id)
            return AuthResult.fail(ErrorCode.INVALID_CREDENTIALS, INVALID_CREDENTIALS_MESSAGE)

        if not user.is_active:
            logger.info("Login refused: principal id=%s is deactivated", user.id)
            return AuthResult.fail(ErrorCode.ACCOUNT_INACTIVE, ACCOUNT_INACTIVE_MESSAGE)

        with self._store.engine.connect() as conn:
            user.last_login_at = self._store.users.set_last_login(user.id, conn=conn)
            result = self._issue_pair(user, conn)
            conn.commit()

        logger.info("Login succeeded for principal id=%s", user.id)
        return result

    def refresh(self, refresh_token: str) -> AuthResult:
        """Rotate a refresh token: consume the old one, issue a new pair.

        Redemption and re-issue run in one transaction. Any failure after the
        claim rolls the claim back, so the caller can retry with the same token.
        """
        with self._store.engine.connect() as conn:
            redemption = self._ledger.redeem(refresh_token, conn=conn)
            if not redemption.ok:
                return AuthResult.fail(redemption.error, INVALID_REFRESH_MESSAGE)

            user = self._store.users.get(redemption.principal_id, conn=conn)
            if user is None:
                logger.info("Refresh refused: principal id=%s no longer exists", redemption.principal_id)
                return AuthResult.fail(ErrorCode.PRINCIPAL_NOT_FOUND, PRINCIPAL_UNAVAILABLE_MESSAGE)
            if not user.is_active:
                logger.info("Refresh refused: principal id=%s is deactivated", user.id)
                return AuthResult.fail(ErrorCode.ACCOUNT_INACTIVE, PRINCIPAL_UNAVAILABLE_MESSAGE)

            result = self._issue_pair(user, conn)
            conn.commit()

        logger.info("Refresh token rotated for principal id=%s", user.id)
        return result

    def revoke(self, refresh_token: str, owner_id: Optional[str] = None) -> bool:
        return self._ledger.revoke(refresh_token, owner_id=owner_id)

    def revoke_all(self, principal_id: str) -> int:
        return self._ledger.revoke_all(principal_id)

    def validate_token(self, token: str) -> TokenValidation:
        return self._issuer.validate(token)

    def snapshot(self, principal_id: str) -> PrincipalSnapshot:
        """Current view of a live principal with resolved role names."""
        user = self._store.users.get(principal_id)
        if user is None:
            raise PrincipalNotFound("User not found.")
        return PrincipalSnapshot.of(user, self._rbac.roles_of(principal_id))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _issue_pair(self, user: User, conn: Connection) -> AuthResult:
        snapshot = PrincipalSnapshot.of(user, self._rbac.roles_of(user.id, conn=conn))
        access = self._issuer.mint(snapshot)
        refresh = self._ledger.issue(user.id, conn=conn)
        return AuthResult(
            success=True,
            access_token=access.token,
            refresh_token=refresh.value,
            user=snapshot,
            expires_at=access.expires_at,
        )
