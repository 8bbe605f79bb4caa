"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

Authentication is bearer-only: Authorization: Bearer <access token>. The token
is validated by the TokenIssuer (signature, issuer, audience, expiry), then
the principal is reloaded so a deactivated or soft-deleted account loses
access immediately rather than when its token expires.

try_get_current_principal() is the soft variant (returns None on failure).
get_current_principal() wraps it and raises HTTP 401 if unauthenticated.
require_admin() and require_permission(name) wrap get_current_principal() and
raise HTTP 403 when the principal lacks the role or permission.

Components are read from request.app.state (installed by api/main.py at
startup), never imported as globals.

Layer rule: no imports from api/ or core/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.errors import ErrorCode
from auth.models import PrincipalSnapshot
from auth.rbac import RbacEvaluator
from auth.service import AuthService

_UNAUTHENTICATED = {"code": "authentication_required", "message": "Authentication required."}


def bearer_token(request: Request) -> str | None:
    """Extract the raw token from an Authorization: Bearer header, or None."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def try_get_current_principal(request: Request) -> PrincipalSnapshot | None:
    """Authenticate the request from its bearer token.

    Returns the live, active principal on success, None on any failure.
    Never raises -- callers that need a hard 401 should use get_current_principal().
    """
    token = bearer_token(request)
    if token is None:
        return None
    service: AuthService = request.app.state.auth_service
    result = service.validate_token(token)
    if not result.valid:
        return None
    user = request.app.state.store.users.get(result.claims.subject)
    if user is None or not user.is_active:
        return None
    rbac: RbacEvaluator = request.app.state.rbac
    return PrincipalSnapshot.of(user, rbac.roles_of(user.id))


def get_current_principal(request: Request) -> PrincipalSnapshot:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: PrincipalSnapshot = Depends(get_current_principal)): ...
    """
    principal = try_get_current_principal(request)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail=_UNAUTHENTICATED,
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal


def require_admin(request: Request) -> PrincipalSnapshot:
    """Require an admin-equivalent role. 401 if unauthenticated, 403 if not admin."""
    principal = get_current_principal(request)
    rbac: RbacEvaluator = request.app.state.rbac
    if not rbac.is_admin(principal.id):
        raise HTTPException(
            status_code=403,
            detail={"code": ErrorCode.FORBIDDEN.value, "message": "Admin access required."},
        )
    return principal


def require_permission(permission: str) -> Callable[[Request], PrincipalSnapshot]:
    """Dependency factory: require a named permission (admins always pass).

    Use as a FastAPI dependency:
        @router.get("/users")
        def route(principal: PrincipalSnapshot = Depends(require_permission("users.read"))): ...
    """

    def dependency(request: Request) -> PrincipalSnapshot:
        principal = get_current_principal(request)
        rbac: RbacEvaluator = request.app.state.rbac
        if not (rbac.has_permission(principal.id, permission) or rbac.is_admin(principal.id)):
            raise HTTPException(
                status_code=403,
                detail={
                    "code": ErrorCode.UNAUTHORIZED.value,
                    "message": f"Missing permission '{permission}'.",
                },
            )
        return principal

    return dependency
