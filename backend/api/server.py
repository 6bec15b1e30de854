"""
Donation API Server
===================
FastAPI server for the donation payment lifecycle:
- Single and recurring donation creation
- Gateway webhook endpoint
- Subscription cancel / update / status
- Organization listing and statistics
- Mock checkout approval (mock gateway only)
- Reconciliation sweep in the background

pip install fastapi uvicorn pydantic structlog PyJWT
"""

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.auth import get_requester
from donations.container import ServiceContainer
from donations.errors import (
    AuthorizationError,
    DonationError,
    GatewayError,
    NotFoundError,
    PolicyViolation,
)
from donations.models import DonationStatus, DonationType, Requester, utc_now
from schemas.donations import (
    CancelSubscriptionResponse,
    CreateDonationRequest,
    DonationListResponse,
    DonationResponse,
    DonationView,
    ErrorResponse,
    HealthResponse,
    MockApprovalResponse,
    Pagination,
    RecurringDonationResponse,
    SingleDonationResponse,
    StatisticsResponse,
    StatisticsView,
    SubscriptionStatusResponse,
    SubscriptionStatusView,
    UpdateSubscriptionRequest,
    WebhookAckResponse,
)

VERSION = "1.0.0"


# =============================================================================
# CONFIGURATION
# =============================================================================

class ServerConfig:
    """Server configuration from environment"""

    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ENV = os.getenv("ENV", "development")
    DEBUG = ENV == "development"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

    # Page size bounds for organization listings
    DEFAULT_PAGE_SIZE = 20
    MAX_PAGE_SIZE = 100


config = ServerConfig()


def configure_logging(env: str = config.ENV, level: str = config.LOG_LEVEL):
    """JSON logs in production, colored console output in development."""
    renderer = (
        structlog.dev.ConsoleRenderer(colors=True)
        if env == "development"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelNamesMapping().get(level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger().bind(component="server")

START_TIME = utc_now()


# =============================================================================
# LIFESPAN
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic"""
    container: ServiceContainer = app.state.container
    logger.info("server_starting", version=VERSION, env=config.ENV, gateway=container.gateway.name)

    await container.start()
    sweep_task = asyncio.create_task(container.sweep.sweep_loop())

    yield

    logger.info("server_shutting_down")
    sweep_task.cancel()
    try:
        await sweep_task
    except asyncio.CancelledError:
        pass
    await container.stop()


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

async def donation_error_handler(request: Request, exc: DonationError) -> JSONResponse:
    log = logger.bind(path=request.url.path, code=exc.code)
    if exc.status_code >= 500:
        log.error("request_failed", message=exc.message)
    else:
        log.info("request_rejected", message=exc.message, status_code=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_public_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": [str(p) for p in e.get("loc", ())], "msg": e.get("msg", "")}
        for e in exc.errors()
    ]
    body = ErrorResponse(message="Invalid request", code="request.validation", meta={"errors": errors})
    return JSONResponse(status_code=400, content=body.model_dump(by_alias=True, exclude_none=True))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_error",
                 path=request.url.path,
                 error=str(exc),
                 error_type=type(exc).__name__)
    body = ErrorResponse(message="Internal server error", code="internal")
    return JSONResponse(status_code=500, content=body.model_dump(by_alias=True, exclude_none=True))


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def request_metadata(request: Request) -> dict[str, Any]:
    return {
        "ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
        "request_id": request.headers.get("x-request-id") or getattr(request.state, "request_id", None),
        "source": request.headers.get("x-source", "api"),
    }


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Query dates without an offset are taken as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def ensure_org_access(requester: Requester, organization_id: str):
    if not (requester.is_admin or requester.organization_id == organization_id):
        raise AuthorizationError("You do not have permission to view this organization")


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    app = FastAPI(
        title="Donation Payment API",
        version=VERSION,
        lifespan=lifespan,
        responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
    )
    app.state.container = container or ServiceContainer.build()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(DonationError, donation_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = request.headers.get("x-request-id") or str(uuid4())[:8]
        request.state.request_id = request_id
        start = time.perf_counter()

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    register_routes(app)
    return app


def register_routes(app: FastAPI):

    # =========================================================================
    # HEALTH
    # =========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health_check(container: ServiceContainer = Depends(get_container)):
        uptime = (utc_now() - START_TIME).total_seconds()
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime_seconds=uptime,
            gateway=container.gateway.name,
            store=type(container.store).__name__,
            event_bus_connected=await container.events.health_check(),
            sweep=await container.sweep.get_sweep_stats(),
        )

    # =========================================================================
    # CREATION
    # =========================================================================

    @app.post("/api/donations/single", status_code=201, response_model=SingleDonationResponse)
    async def create_single_donation(
        request: Request,
        body: CreateDonationRequest = Body(...),
        container: ServiceContainer = Depends(get_container),
    ):
        result = await container.coordinator.create_single(body.to_raw(), request_metadata(request))
        return SingleDonationResponse(
            donation_id=result.donation.id,
            payment_url=result.payment_url,
            gateway_reference=result.gateway_reference,
            amount=result.donation.amount,
        )

    @app.post("/api/donations/recurring", status_code=201, response_model=RecurringDonationResponse)
    async def create_recurring_donation(
        request: Request,
        body: CreateDonationRequest = Body(...),
        container: ServiceContainer = Depends(get_container),
    ):
        result = await container.coordinator.create_recurring(body.to_raw(), request_metadata(request))
        donation = result.donation
        return RecurringDonationResponse(
            donation_id=donation.id,
            subscription_url=result.payment_url,
            subscription_id=result.gateway_reference,
            amount=donation.amount,
            frequency=donation.frequency.value,
            organization_name=donation.organization_name,
        )

    # =========================================================================
    # WEBHOOK
    # =========================================================================

    @app.post("/api/donations/webhook", response_model=WebhookAckResponse)
    async def payment_webhook(request: Request, container: ServiceContainer = Depends(get_container)):
        """Gateway notifications. Always answers 200."""
        try:
            body = await request.json()
        except ValueError:
            body = None
        payload: dict[str, Any] = dict(body) if isinstance(body, dict) else {}

        # Mercado Pago also sends the topic and id as query parameters
        query = request.query_params
        if "type" not in payload and "topic" not in payload:
            topic = query.get("type") or query.get("topic")
            if topic:
                payload["type"] = topic
        if not payload.get("data") and (query.get("data.id") or query.get("id")):
            payload["data"] = {"id": query.get("data.id") or query.get("id")}

        ack = await container.reconciler.handle(payload, dict(request.headers))
        return WebhookAckResponse(success=ack.success, message=ack.message)

    # =========================================================================
    # ORGANIZATION VIEWS
    # =========================================================================

    @app.get("/api/donations/organization/{organization_id}", response_model=DonationListResponse)
    async def list_organization_donations(
        organization_id: str,
        status: Optional[DonationStatus] = Query(default=None),
        type: Optional[DonationType] = Query(default=None),
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=config.DEFAULT_PAGE_SIZE, ge=1, le=config.MAX_PAGE_SIZE),
        requester: Requester = Depends(get_requester),
        container: ServiceContainer = Depends(get_container),
    ):
        ensure_org_access(requester, organization_id)
        donations, total = await container.store.find(
            organization_id=organization_id,
            status=status,
            type=type,
            limit=limit,
            offset=(page - 1) * limit,
        )
        return DonationListResponse(
            data=[DonationView.from_donation(d) for d in donations],
            pagination=Pagination(page=page, limit=limit, total=total, pages=-(-total // limit)),
        )

    @app.get("/api/donations/organization/{organization_id}/statistics", response_model=StatisticsResponse)
    async def organization_statistics(
        organization_id: str,
        start_date: Optional[datetime] = Query(default=None, alias="startDate"),
        end_date: Optional[datetime] = Query(default=None, alias="endDate"),
        requester: Requester = Depends(get_requester),
        container: ServiceContainer = Depends(get_container),
    ):
        ensure_org_access(requester, organization_id)
        stats = await container.store.get_statistics(
            organization_id, since=as_utc(start_date), until=as_utc(end_date),
        )
        return StatisticsResponse(data=StatisticsView.from_statistics(stats))

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    @app.get("/api/donations/{donation_id}/subscription", response_model=SubscriptionStatusResponse)
    async def subscription_status(donation_id: str, container: ServiceContainer = Depends(get_container)):
        view = await container.subscriptions.get_status(donation_id)
        return SubscriptionStatusResponse(data=SubscriptionStatusView.from_view(view))

    @app.patch("/api/donations/{donation_id}/subscription", response_model=SubscriptionStatusResponse)
    async def update_subscription(
        donation_id: str,
        body: UpdateSubscriptionRequest = Body(...),
        requester: Requester = Depends(get_requester),
        container: ServiceContainer = Depends(get_container),
    ):
        if body.amount is None:
            raise PolicyViolation("New amount is required", meta={"fields": ["amount"]})
        view = await container.subscriptions.update_amount(donation_id, body.amount, requester)
        return SubscriptionStatusResponse(data=SubscriptionStatusView.from_view(view))

    @app.delete("/api/donations/{donation_id}/cancel", response_model=CancelSubscriptionResponse)
    async def cancel_subscription(
        donation_id: str,
        requester: Requester = Depends(get_requester),
        container: ServiceContainer = Depends(get_container),
    ):
        donation = await container.subscriptions.cancel(donation_id, requester)
        return CancelSubscriptionResponse(
            message="Subscription cancelled",
            data=DonationView.from_donation(donation),
        )

    # =========================================================================
    # SINGLE RECORD
    # =========================================================================

    @app.get("/api/donations/{donation_id}", response_model=DonationResponse)
    async def get_donation(
        donation_id: str,
        requester: Requester = Depends(get_requester),
        container: ServiceContainer = Depends(get_container),
    ):
        donation = await container.store.find_by_id(donation_id)
        if donation is None:
            raise NotFoundError(f"Donation {donation_id} not found")
        if not requester.may_manage(donation):
            raise AuthorizationError("You do not have permission to view this donation")
        return DonationResponse(data=DonationView.from_donation(donation))

    # =========================================================================
    # MOCK CHECKOUT
    # =========================================================================

    @app.post("/api/mock/payments/{gateway_id}/approve", response_model=MockApprovalResponse)
    async def mock_approve(gateway_id: str, container: ServiceContainer = Depends(get_container)):
        """Simulate the donor paying at the mock checkout."""
        mock = container.mock_gateway
        if mock is None:
            raise NotFoundError("Mock checkout is only available with the mock gateway")
        try:
            resource = await mock.mark_approved(gateway_id)
        except GatewayError as e:
            if e.provider_status == 404:
                raise NotFoundError(f"Mock payment {gateway_id} not found")
            raise
        outcome = await container.reconciler.apply(mock.notification_for(gateway_id))
        return MockApprovalResponse.from_outcome(gateway_id, resource.status, outcome)


# =============================================================================
# MAIN
# =============================================================================

configure_logging()
app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level="info",
    )
