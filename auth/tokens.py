"""
auth/tokens.py -- Signed access-token issuance and validation (JWT).

Security design decisions:
  JWT: python-jose, HMAC family only (HS256/HS384/HS512). The signing secret,
       issuer, audience, TTL, and algorithm arrive in an immutable TokenConfig
       built once at startup. Nothing here reads settings or the environment.

  Claims: sub (principal id), name (username), email, given_name, family_name,
       roles (one entry per role), iss, aud, iat, exp, jti. exp and iat are
       integer epoch seconds.

  Expiry: jose's own exp check uses the wall clock. We disable it and compare
       against the injected clock instead (now >= exp is expired), so expiry
       is testable without sleeping. exp is still REQUIRED, but the presence
       check is ours: jose's require_exp switches verify_exp back on.

  Failure shape: validate() never raises and never says why a token failed.
       Bad signature, wrong issuer, wrong audience, expired, malformed -- all
       produce the same TokenValidation(valid=False). The reason is logged at
       DEBUG only.

No storage access. Validation is pure computation.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from auth.lifecycle import Clock, utcnow
from auth.models import PrincipalSnapshot

logger = logging.getLogger("blogapi.auth.tokens")

SUPPORTED_ALGORITHMS = frozenset({"HS256", "HS384", "HS512"})


@dataclass(frozen=True)
class TokenConfig:
    secret: str
    issuer: str
    audience: str
    ttl: timedelta = timedelta(minutes=1440)
    algorithm: str = "HS256"

    def __post_init__(self) -> None:
        if not self.secret:
            raise ValueError("TokenConfig.secret must not be empty.")
        if self.algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported JWT algorithm {self.algorithm!r}.")
        if self.ttl <= timedelta(0):
            raise ValueError("TokenConfig.ttl must be positive.")


@dataclass(frozen=True)
class IssuedAccessToken:
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    username: str
    email: str
    given_name: str
    family_name: str
    roles: tuple[str, ...]
    issuer: str
    audience: str
    issued_at: Optional[datetime]
    expires_at: datetime
    jti: str


@dataclass(frozen=True)
class TokenValidation:
    valid: bool
    claims: Optional[TokenClaims] = None

    @classmethod
    def invalid(cls) -> "TokenValidation":
        return cls(valid=False)


class TokenIssuer:
    """Mint and validate access tokens for one issuer/audience pair.

    Usage:
        issuer = TokenIssuer(TokenConfig(secret=key, issuer="BlogAPI", audience="BlogAPIUsers"))
        issued = issuer.mint(snapshot)
        result = issuer.validate(issued.token)
        if result.valid:
            principal_id = result.claims.subject
    """

    def __init__(self, config: TokenConfig, clock: Clock = utcnow) -> None:
        self.config = config
        self._clock = clock

    def mint(self, principal: PrincipalSnapshot) -> IssuedAccessToken:
        now = self._clock()
        issued_at = int(now.timestamp())
        expires = int((now + self.config.ttl).timestamp())
        payload = {
            "sub": principal.id,
            "name": principal.username,
            "email": principal.email,
            "given_name": principal.first_name,
            "family_name": principal.last_name,
            "roles": list(principal.roles),
            "iss": self.config.issuer,
            "aud": self.config.audience,
            "iat": issued_at,
            "exp": expires,
            "jti": str(uuid.uuid4()),
        }
        token = jwt.encode(payload, self.config.secret, algorithm=self.config.algorithm)
        return IssuedAccessToken(token=token, expires_at=datetime.fromtimestamp(expires, timezone.utc))

    def validate(self, token: str) -> TokenValidation:
        """Check signature, issuer, audience and expiry. Never raises."""
        if not token:
            return TokenValidation.invalid()
        try:
            payload = jwt.decode(
                token,
                self.config.secret,
                algorithms=[self.config.algorithm],
                audience=self.config.audience,
                issuer=self.config.issuer,
                options={
                    "verify_exp": False,
                    "require_iss": True,
                    "require_aud": True,
                    "require_sub": True,
                },
            )
        except JWTError as exc:
            logger.debug("Access token rejected: %s", exc)
            return TokenValidation.invalid()

        # jose already matched iss/aud; re-check so a decoder option change
        # cannot silently widen what is accepted.
        if payload.get("iss") != self.config.issuer or payload.get("aud") != self.config.audience:
            logger.debug("Access token rejected: issuer/audience mismatch")
            return TokenValidation.invalid()

        exp = payload.get("exp")
        if not isinstance(exp, (int, float)):
            logger.debug("Access token rejected: non-numeric exp")
            return TokenValidation.invalid()
        if self._clock().timestamp() >= exp:
            logger.debug("Access token rejected: expired")
            return TokenValidation.invalid()

        roles = payload.get("roles") or []
        if isinstance(roles, str):
            roles = [roles]
        iat = payload.get("iat")
        claims = TokenClaims(
            subject=str(payload["sub"]),
            username=payload.get("name", ""),
            email=payload.get("email", ""),
            given_name=payload.get("given_name", ""),
            family_name=payload.get("family_name", ""),
            roles=tuple(roles),
            issuer=payload["iss"],
            audience=payload["aud"],
            issued_at=datetime.fromtimestamp(iat, timezone.utc) if isinstance(iat, (int, float)) else None,
            expires_at=datetime.fromtimestamp(exp, timezone.utc),
            jti=payload.get("jti", ""),
        )
        return TokenValidation(valid=True, claims=claims)
