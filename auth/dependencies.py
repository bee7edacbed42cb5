"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The authentication gate middleware (api/main.py) has already run by the time
these execute and left a SecurityContext on request.state.security. These
helpers only read it:

  current_security() returns the context, anonymous if the gate never ran.
  get_current_user() raises HTTP 401 if nobody is authenticated.
  require_authority(code) raises HTTP 403 if the authenticated user lacks code.

request_context() collects the provenance (IP, user agent, request id) that
audit events carry.

Layer rule: no imports from api/ or jobs/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, HTTPException, Request

from audit.models import RequestContext
from auth.gate import SecurityContext
from auth.models import User


def current_security(request: Request) -> SecurityContext:
    return getattr(request.state, "security", None) or SecurityContext.anonymous()


def request_context(request: Request) -> RequestContext:
    """Provenance for audit events.

    The client IP is the first X-Forwarded-For hop when present, else the
    socket peer. TrustedHostMiddleware guards the Host header, not this one, so
    only trust it behind a proxy that overwrites it.
    """
    forwarded = request.headers.get("X-Forwarded-For", "")
    ip = forwarded.split(",")[0].strip() if forwarded else None
    if not ip and request.client is not None:
        ip = request.client.host
    return RequestContext(
        ip_address=ip or None,
        user_agent=request.headers.get("User-Agent") or "unknown",
        request_id=request.headers.get("X-Request-Id") or getattr(request.state, "request_id", None),
    )


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    security = current_security(request)
    if not security.is_authenticated:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return security.principal


def require_authority(code: str) -> Callable[..., User]:
    """Dependency factory: 401 if unauthenticated, 403 without the given role or permission code.

        @router.get("/audit/events")
        def route(user: User = Depends(require_authority("audit.read"))): ...
    """

    def dependency(request: Request, user: User = Depends(get_current_user)) -> User:
        if code not in current_security(request).authorities:
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": f"Missing authority: {code}."},
            )
        return user

    return dependency
