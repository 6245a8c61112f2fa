from contextlib import asynccontextmanager
from typing import List, Optional, cast

from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse
from sqlalchemy import select

from core import __version__ as VERSION  # noqa: N812
from core.errors import ExternalServiceError
from core.log import get_logger
from inscriber.admin import InvalidAdminActionError
from inscriber.auth_middleware import (
    ApiAuthMiddleware,
    RoleAuthMiddleware,
    admin_route,
    required_role,
    viewer_route,
)
from inscriber.competition import (
    CompetitionInvariantError,
    InvalidTransitionError,
    ProposalNotFoundError,
)
from inscriber.models import (
    TERMINAL_ORDER_STATUSES,
    AdminActionRequest,
    AdminActionResponse,
    ApiKey,
    InscriptionOrder,
    InscriptionOrderResponse,
)
from inscriber.service import InscriberService

logger = get_logger(__name__)

API_SECURITY_SCHEME_NAME = "ApiKeyAuth"
DEFAULT_ORDER_LIMIT = 50
MAX_ORDER_LIMIT = 500

# Admin errors mapped to HTTP status codes; the body stays an AdminActionResponse
ADMIN_ERROR_STATUS = (
    (ProposalNotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (InvalidAdminActionError, status.HTTP_400_BAD_REQUEST),
    (CompetitionInvariantError, status.HTTP_409_CONFLICT),
    (ExternalServiceError, status.HTTP_502_BAD_GATEWAY),
)


def _admin_error(exc: Exception) -> JSONResponse:
    for error_type, status_code in ADMIN_ERROR_STATUS:
        if isinstance(exc, error_type):
            break
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    body = AdminActionResponse(success=False, error=str(exc))
    return JSONResponse(status_code=status_code, content=body.model_dump())


def create_app(
    service: InscriberService, start_background_tasks: bool = True
) -> FastAPI:
    """Build the operator API around ``service``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage inscriber service lifecycle."""
        await service.startup()
        if start_background_tasks:
            await service.start_background_tasks()

        yield

        await service.shutdown()

    app = FastAPI(
        title="Inscriber API",
        description="Operator API for the block-driven inscription contest",
        version=VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RoleAuthMiddleware, service=service)
    app.add_middleware(ApiAuthMiddleware, service=service)

    def get_api_user(request: Request) -> ApiKey:
        """Return the authenticated user set by the middleware."""
        return cast(ApiKey, request.state.api_user)

    def require_admin_facade():
        if service.admin is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Service not initialized",
            )
        return service.admin

    @app.get("/")
    async def root() -> dict:
        """Root endpoint."""
        return {
            "service": "Inscriber",
            "version": VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint."""
        monitor = service.monitor
        return {
            "status": "healthy" if service.is_running else "starting",
            "service": "inscriber",
            "database_connected": service.async_session is not None,
            "monitor_running": bool(monitor and monitor.is_running),
        }

    @app.get("/admin/competition")
    @viewer_route
    async def competition_status() -> dict:
        """Engine status snapshot plus the list of available actions."""
        admin = require_admin_facade()
        return {
            "success": True,
            "data": await admin.status(),
            "actions": admin.help(),
        }

    @app.post("/admin/competition", response_model=AdminActionResponse)
    @admin_route
    async def competition_action(payload: AdminActionRequest, request: Request):
        """Run an admin action (admin only)."""
        admin = require_admin_facade()
        admin_user = get_api_user(request)
        actor = f"admin:{admin_user.name}" if admin_user else "admin"

        try:
            return await admin.execute(payload, actor=actor)
        except Exception as exc:
            logger.error("Admin action %s failed: %s", payload.action, exc)
            return _admin_error(exc)

    @app.get("/admin/orders", response_model=List[InscriptionOrderResponse])
    @viewer_route
    async def list_orders(
        open_only: bool = Query(False, description="Only non-terminal orders"),
        proposal_id: Optional[int] = Query(None, description="Filter by proposal"),
        limit: int = Query(DEFAULT_ORDER_LIMIT, ge=1, le=MAX_ORDER_LIMIT),
    ):
        """Inscription order audit trail, newest first."""
        if not service.async_session:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Database not initialized",
            )

        query = select(InscriptionOrder)
        if open_only:
            query = query.where(
                InscriptionOrder.order_status.not_in(
                    [order_status.value for order_status in TERMINAL_ORDER_STATUSES]
                )
            )
        if proposal_id is not None:
            query = query.where(InscriptionOrder.proposal_id == proposal_id)

        async with service.async_session() as session:
            result = await session.execute(
                query.order_by(InscriptionOrder.created_at.desc()).limit(limit)
            )
            orders = result.scalars().all()

        return [InscriptionOrderResponse.from_order(order) for order in orders]

    def custom_openapi() -> dict:
        """Customize OpenAPI schema to advertise API key security."""
        if app.openapi_schema:
            return app.openapi_schema

        openapi_schema = get_openapi(
            title=app.title,
            version=app.version,
            description=app.description,
            routes=app.routes,
        )

        components = openapi_schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes[API_SECURITY_SCHEME_NAME] = {
            "type": "apiKey",
            "in": "header",
            "name": "X-API-Key",
            "description": "API key used for authenticated endpoints.",
        }

        paths = openapi_schema.get("paths", {})
        for route in app.routes:
            endpoint = getattr(route, "endpoint", None)
            if not endpoint or required_role(endpoint) is None:
                continue

            path_item = paths.get(route.path)
            if not path_item:
                continue

            for method in route.methods or []:
                operation = path_item.get(method.lower())
                if not operation:
                    continue
                security = operation.setdefault("security", [])
                if {API_SECURITY_SCHEME_NAME: []} not in security:
                    security.append({API_SECURITY_SCHEME_NAME: []})

        app.openapi_schema = openapi_schema
        return app.openapi_schema

    app.openapi = custom_openapi
    return app
