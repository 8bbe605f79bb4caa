"""
api/routes/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/auth/register    -- create account; returns token pair
  POST /api/auth/login       -- password login; returns token pair
  POST /api/auth/refresh     -- rotate refresh token; returns new pair
  POST /api/auth/revoke      -- revoke one of the caller's refresh tokens (requires auth)
  POST /api/auth/revoke-all  -- revoke every refresh token of the caller (requires auth)
  POST /api/auth/validate    -- check the bearer access token (requires auth)
  GET  /api/auth/me          -- current principal with roles and permissions (requires auth)

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  [C1] AuthService.login() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries tokens.
  IDOR guard: POST /revoke passes the caller's id to the ledger; a token owned
  by someone else is reported exactly like an unknown token.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    AuthResponse,
    ErrorDetail,
    ErrorResponse,
    LoginRequest,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    RevokeAllResponse,
    UserResponse,
    ValidateResponse,
)
from auth.dependencies import bearer_token, get_current_principal
from auth.errors import ErrorCode
from auth.models import AuthResult, PrincipalSnapshot, RegistrationRequest
from auth.rbac import RbacEvaluator
from auth.service import AuthService

# Auth policy:
# - POST /api/auth/register:   public
# - POST /api/auth/login:      public, rate limited
# - POST /api/auth/refresh:    public -- the refresh token is the credential
# - POST /api/auth/revoke:     requires auth (get_current_principal) + ownership check
# - POST /api/auth/revoke-all: requires auth (get_current_principal)
# - POST /api/auth/validate:   requires a bearer token; pure validation, no DB
# - GET  /api/auth/me:         requires auth (get_current_principal)
router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    resp.headers["Pragma"] = "no-cache"
    return resp


def _token_response(result: AuthResult) -> JSONResponse:
    body = AuthResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        expires_at=result.expires_at,
        user=UserResponse.from_snapshot(result.user),
    )
    return _no_store(JSONResponse(status_code=200, content=body.model_dump(mode="json", by_alias=True)))


def _failure_response(status_code: int, result: AuthResult) -> JSONResponse:
    body = ErrorResponse(
        error=ErrorDetail(
            code=result.error.value if result.error else ErrorCode.VALIDATION_FAILED.value,
            message=result.message or "Request failed.",
        )
    )
    return _no_store(JSONResponse(status_code=status_code, content=body.model_dump()))


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AuthResponse)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a principal (email unconfirmed, active) and return a token pair.

    Every rejection -- missing fields, weak password, mismatched confirmation,
    duplicate identity -- is a 400 with the error code in the envelope.
    """
    service: AuthService = request.app.state.auth_service
    result = service.register(
        RegistrationRequest(
            username=body.username,
            email=body.email,
            password=body.password,
            confirm_password=body.confirm_password,
            first_name=body.first_name,
            last_name=body.last_name,
        )
    )
    if not result.success:
        return _failure_response(400, result)
    return _token_response(result)


@limiter.limit(login_rate_limit)  # [H2] brute-force mitigation -- must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Unknown email and wrong password return the same 401 invalid_credentials
    envelope. account_inactive is only reported once the password verified.
    """
    service: AuthService = request.app.state.auth_service
    result = service.login(body.email, body.password, remember_me=body.remember_me)
    if not result.success:
        return _failure_response(401, result)
    return _token_response(result)


@router.post("/auth/refresh", response_model=AuthResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token is consumed."""
    service: AuthService = request.app.state.auth_service
    result = service.refresh(body.refresh_token)
    if not result.success:
        return _failure_response(401, result)
    return _token_response(result)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/revoke", response_model=MessageResponse)
def revoke(
    request: Request,
    body: RefreshRequest,
    principal: PrincipalSnapshot = Depends(get_current_principal),
) -> MessageResponse:
    """Revoke one refresh token. Ownership is verified in the ledger [IDOR guard]."""
    service: AuthService = request.app.state.auth_service
    if not service.revoke(body.refresh_token, owner_id=principal.id):
        raise HTTPException(
            status_code=400,
            detail={"code": ErrorCode.TOKEN_NOT_FOUND.value, "message": "Invalid refresh token."},
        )
    return MessageResponse(message="Token revoked successfully")


@router.post("/auth/revoke-all", response_model=RevokeAllResponse)
def revoke_all(
    request: Request,
    principal: PrincipalSnapshot = Depends(get_current_principal),
) -> RevokeAllResponse:
    """Sign out everywhere: revoke every outstanding refresh token of the caller."""
    service: AuthService = request.app.state.auth_service
    count = service.revoke_all(principal.id)
    return RevokeAllResponse(revoked=count, message=f"Revoked {count} refresh token(s).")


@router.post("/auth/validate", response_model=ValidateResponse)
def validate(request: Request) -> ValidateResponse:
    """Report whether the bearer access token is currently valid.

    Pure token validation: signature, issuer, audience, expiry. No database
    lookup, so a token stays valid here until it expires.
    """
    token = bearer_token(request)
    service: AuthService = request.app.state.auth_service
    result = service.validate_token(token) if token else None
    if result is None or not result.valid:
        raise HTTPException(
            status_code=401,
            detail={"code": "invalid_token", "message": "Token is invalid or expired."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return ValidateResponse(valid=True, user_id=result.claims.subject, username=result.claims.username)


@router.get("/auth/me", response_model=MeResponse)
def me(
    request: Request,
    principal: PrincipalSnapshot = Depends(get_current_principal),
) -> MeResponse:
    """Return the authenticated principal with its roles and effective permissions."""
    rbac: RbacEvaluator = request.app.state.rbac
    base = UserResponse.from_snapshot(principal)
    return MeResponse(**base.model_dump(), permissions=sorted(rbac.permissions_of(principal.id)))
