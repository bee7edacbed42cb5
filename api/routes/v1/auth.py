"""
api/routes/v1/auth.py -- Token lifecycle REST endpoints.

Routes:
  POST /api/v1/auth/login       -- password login; returns access + refresh token
  POST /api/v1/auth/refresh     -- rotate a refresh token; returns a new pair
  POST /api/v1/auth/logout-all  -- delete every refresh token of the caller (requires auth)
  GET  /api/v1/auth/me          -- current identity and authorities (requires auth)

Security:
  POST /login is rate-limited per client IP (Settings.login_rate_limit).
  Unknown user and wrong password produce the same 401 body.
  Cache-Control: no-store on every response that carries a token.
  Refresh failure is always 401 {"error": "invalid_refresh_token"}; whether the
  token was unknown, replayed, or expired is only recorded in the audit trail.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import AuthResponse, LoginRequest, LogoutAllResponse, MeResponse, RefreshRequest
from audit.models import RequestContext
from auth.dependencies import current_security, get_current_user, request_context
from auth.errors import BadCredentials
from auth.models import AccessGrant, User
from auth.service import AuthService

# Auth policy:
# - POST /api/v1/auth/login:       public -- on the gate's allow-list
# - POST /api/v1/auth/refresh:     public -- the refresh token is the credential
# - POST /api/v1/auth/logout-all:  requires auth (get_current_user)
# - GET  /api/v1/auth/me:          requires auth (get_current_user)
router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _grant_response(grant: AccessGrant) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=AuthResponse(
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            access_token_expires_at=grant.access_token_expires_at,
        ).model_dump(mode="json", by_alias=True),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=AuthResponse)
def login(
    request: Request,
    body: LoginRequest,
    ctx: RequestContext = Depends(request_context),
) -> JSONResponse:
    """Authenticate with username (or email) and password.

    Returns the same generic error for an unknown identity and a wrong
    password ("bad_credentials") to avoid leaking which usernames exist.
    """
    try:
        grant = _service(request).login(body.username_or_email, body.password, ctx)
    except BadCredentials as exc:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": str(exc)}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp
    return _grant_response(grant)


@router.post("/auth/refresh", response_model=AuthResponse)
def refresh(
    request: Request,
    body: RefreshRequest,
    ctx: RequestContext = Depends(request_context),
) -> JSONResponse:
    """Exchange a refresh token for a new access token and a new refresh token.

    The presented token is revoked in the same transaction; replaying it
    afterwards fails.
    """
    grant = _service(request).refresh(body.refresh_token, ctx)
    if grant is None:
        resp = JSONResponse(status_code=401, content={"error": "invalid_refresh_token"})
        resp.headers["Cache-Control"] = "no-store"
        return resp
    return _grant_response(grant)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout-all", response_model=LogoutAllResponse)
def logout_all(
    request: Request,
    current_user: User = Depends(get_current_user),
    ctx: RequestContext = Depends(request_context),
) -> LogoutAllResponse:
    """Revoke every refresh token of the caller. Access tokens expire on their own."""
    revoked = _service(request).logout_all(current_user.username, ctx)
    return LogoutAllResponse(revoked_count=revoked)


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return MeResponse(
        user_id=current_user.id,
        username=current_user.username,
        email=current_user.email,
        authorities=sorted(current_security(request).authorities),
    )
