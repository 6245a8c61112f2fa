from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
from starlette.routing import Match, Route

from inscriber.auth import UserRole, get_api_key_from_db

ROLE_FLAG_ATTR = "__required_role__"


def admin_route(
    endpoint: Callable[..., Awaitable[Any]],
) -> Callable[..., Awaitable[Any]]:
    """Mark an endpoint as requiring an authenticated admin."""
    setattr(endpoint, ROLE_FLAG_ATTR, UserRole.ADMIN)
    return endpoint


def viewer_route(
    endpoint: Callable[..., Awaitable[Any]],
) -> Callable[..., Awaitable[Any]]:
    """Mark an endpoint as readable by any authenticated key."""
    setattr(endpoint, ROLE_FLAG_ATTR, UserRole.VIEWER)
    return endpoint


def required_role(endpoint: Any) -> Optional[UserRole]:
    return getattr(endpoint, ROLE_FLAG_ATTR, None)


class ApiAuthMiddleware(BaseHTTPMiddleware):
    """Attach the authenticated API user to request state when a key is sent."""

    def __init__(self, app, service):
        super().__init__(app)
        self.service = service

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Any]]
    ):
        request.state.api_user = None
        api_key = request.headers.get("X-API-Key")

        if api_key:
            api_user = await get_api_key_from_db(api_key, self.service.async_session)
            if not api_user:
                return JSONResponse(
                    status_code=401,
                    content={"detail": "Invalid, expired, or inactive API key"},
                )
            request.state.api_user = api_user

        return await call_next(request)


class RoleAuthMiddleware(BaseHTTPMiddleware):
    """Enforce the role declared with admin_route / viewer_route."""

    def __init__(self, app, service):
        super().__init__(app)
        self.service = service

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Any]]
    ):
        route = self._get_matching_route(request)
        role = required_role(route.endpoint) if route else None

        if role is not None:
            api_user = getattr(request.state, "api_user", None)

            if api_user is None:
                api_key = request.headers.get("X-API-Key")
                if not api_key:
                    return JSONResponse(
                        status_code=401,
                        content={"detail": "Authentication required"},
                    )

                api_user = await get_api_key_from_db(
                    api_key, self.service.async_session
                )
                if not api_user:
                    return JSONResponse(
                        status_code=401,
                        content={"detail": "Invalid, expired, or inactive API key"},
                    )
                request.state.api_user = api_user

            if role == UserRole.ADMIN and api_user.role != UserRole.ADMIN:
                return JSONResponse(
                    status_code=403,
                    content={"detail": "Admin access required"},
                )

        return await call_next(request)

    @staticmethod
    def _get_matching_route(request: Request) -> Optional[Route]:
        for route in request.app.router.routes:
            if not hasattr(route, "endpoint"):
                continue

            match, _ = route.matches(request.scope)
            if match == Match.FULL:
                return route  # type: ignore[return-value]
        return None
