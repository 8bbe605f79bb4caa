"""
auth/ledger.py -- Refresh-token issuance, single-use redemption, and revocation.

Token lifecycle:

    Active --redeem--> Rotated (is_revoked = 1)
    Active --revoke--> Revoked (is_revoked = 1)
    Active --time----> Expired (derived: now > expires_at; never stored)

Rotated and Revoked share the same stored flag. The distinction only matters
to a human reading the logs, so the ledger does not persist it.

Security design decisions:
  Values: secrets.token_urlsafe(64) gives 512 bits of entropy, base64url
       encoded. Only SHA-256(value) is stored. SHA-256 rather than bcrypt
       because the input is already high-entropy: brute force is infeasible
       and lookup by digest stays O(1).

  Single use: redeem() ends in a conditional UPDATE ... WHERE is_revoked = 0.
       A replay that read the row before a concurrent redemption committed
       still loses at the UPDATE and gets Revoked, never a second pair.

  Revocation scope: revoke(value, owner_id) refuses to touch a token that
       belongs to someone else. The caller sees the same False it would
       see for an unknown token.

Every method accepts an optional conn so AuthService can redeem and re-issue
inside one transaction.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy.engine import Connection

from auth.errors import ErrorCode
from auth.lifecycle import Clock, from_iso, to_iso, utcnow
from auth.models import RefreshToken
from auth.store import AuthStore

logger = logging.getLogger("blogapi.auth.ledger")


def hash_refresh_token(value: str) -> str:
    """SHA-256 hex digest of a raw refresh-token value."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class TokenState(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


def token_state(record: RefreshToken, now: datetime) -> TokenState:
    """Derive the state of a stored token at a point in time. Revocation wins over expiry."""
    if record.is_revoked:
        return TokenState.REVOKED
    if now > from_iso(record.expires_at):
        return TokenState.EXPIRED
    return TokenState.ACTIVE


@dataclass(frozen=True)
class LedgerConfig:
    ttl: timedelta = timedelta(days=30)

    def __post_init__(self) -> None:
        if self.ttl <= timedelta(0):
            raise ValueError("LedgerConfig.ttl must be positive.")


@dataclass(frozen=True)
class IssuedRefreshToken:
    value: str
    expires_at: datetime


@dataclass(frozen=True)
class Redemption:
    """Outcome of redeem(). Exactly one of principal_id / error is set."""

    principal_id: Optional[str] = None
    error: Optional[ErrorCode] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RefreshTokenLedger:
    def __init__(self, store: AuthStore, config: LedgerConfig = LedgerConfig(), clock: Clock = utcnow) -> None:
        self._tokens = store.refresh_tokens
        self.config = config
        self._clock = clock

    def issue(self, principal_id: str, conn: Optional[Connection] = None) -> IssuedRefreshToken:
        value = secrets.token_urlsafe(64)
        expires_at = self._clock() + self.config.ttl
        self._tokens.add(
            RefreshToken(
                token_hash=hash_refresh_token(value),
                user_id=principal_id,
                expires_at=to_iso(expires_at),
            ),
            conn=conn,
        )
        return IssuedRefreshToken(value=value, expires_at=expires_at)

    def redeem(self, value: str, conn: Optional[Connection] = None) -> Redemption:
        """Consume a refresh token. Succeeds at most once per value."""
        if not value:
            return Redemption(error=ErrorCode.TOKEN_NOT_FOUND)
        digest = hash_refresh_token(value)
        record = self._tokens.get_by_hash(digest, conn=conn)
        if record is None:
            return Redemption(error=ErrorCode.TOKEN_NOT_FOUND)

        state = token_state(record, self._clock())
        if state is TokenState.REVOKED:
            logger.warning("Refresh token replay rejected for principal=%s", record.user_id)
            return Redemption(error=ErrorCode.TOKEN_REVOKED)
        if state is TokenState.EXPIRED:
            return Redemption(error=ErrorCode.TOKEN_EXPIRED)

        if not self._tokens.claim(digest, conn=conn):
            # Lost the race: another redemption flipped the flag first.
            logger.warning("Concurrent refresh token redemption lost for principal=%s", record.user_id)
            return Redemption(error=ErrorCode.TOKEN_REVOKED)
        return Redemption(principal_id=record.user_id)

    def revoke(self, value: str, owner_id: Optional[str] = None, conn: Optional[Connection] = None) -> bool:
        """Mark a token revoked. Idempotent.

        Returns True if the token exists (and belongs to owner_id when given),
        whether or not it was already revoked.
        """
        if not value:
            return False
        digest = hash_refresh_token(value)
        record = self._tokens.get_by_hash(digest, conn=conn)
        if record is None:
            return False
        if owner_id is not None and record.user_id != owner_id:
            logger.warning("Refusing to revoke refresh token owned by another principal (caller=%s)", owner_id)
            return False
        if not record.is_revoked:
            record.is_revoked = True
            self._tokens.update(record, conn=conn)
        return True

    def revoke_all(self, principal_id: str, conn: Optional[Connection] = None) -> int:
        count = self._tokens.revoke_for_user(principal_id, conn=conn)
        if count:
            logger.info("Revoked %d refresh token(s) for principal=%s", count, principal_id)
        return count

    def active_for(self, principal_id: str, conn: Optional[Connection] = None) -> list[RefreshToken]:
        """Unrevoked, unexpired tokens held by a principal."""
        return self._tokens.active_for_user(principal_id, to_iso(self._clock()), conn=conn)

    def cleanup_expired(self, conn: Optional[Connection] = None) -> int:
        """Physically delete expired tokens. Returns the number removed."""
        removed = self._tokens.purge_expired(to_iso(self._clock()), conn=conn)
        if removed:
            logger.info("Purged %d expired refresh token(s)", removed)
        return removed
