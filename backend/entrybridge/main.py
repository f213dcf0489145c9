import asyncio
import logging
import math
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .config import Settings, get_settings
from .dependencies import get_app_settings, get_gateway
from .errors import (
    AppError,
    MethodNotAllowedError,
    PayloadTooLargeError,
    RequestTimeoutError,
    RouteNotFoundError,
    ValidationError,
    describe_error,
    to_error_envelope,
)
from .log_config import configure_logging, request_id_var
from .routers import budgets_router, entries_router
from .schemas.health import HealthStatus
from .services.budgets import BudgetService
from .services.entries import EntryService
from .services.gateway import ActualGateway
from .services.guards import ApiKeyGuard, RequestRateLimiter
from .services.idempotency import IdempotencyCache
from .services.locks import BudgetLockManager

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    yield

    # Shutdown
    await app.state.gateway.shutdown()
    logger.info("Gateway shut down")


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request_id_var.get()


def error_response(request: Request, error: BaseException, headers: Optional[dict] = None) -> JSONResponse:
    """Render ``error`` as the JSON error envelope and log it."""
    request_id = _request_id(request)
    status_code, body = to_error_envelope(error, request_id)

    level = logging.ERROR if status_code >= 500 else logging.WARNING
    code = body["error"]["code"]
    logger.log(level, f"request_failed status={status_code} code={code} {describe_error(error)}")

    headers = dict(headers or {})
    headers[REQUEST_ID_HEADER] = request_id
    if isinstance(error, AppError) and getattr(error, "retry_after_ms", None) is not None:
        headers["Retry-After"] = str(max(1, math.ceil(error.retry_after_ms / 1000)))
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def body_too_large(settings: Settings) -> PayloadTooLargeError:
    return PayloadTooLargeError("Request body too large", {"limitBytes": settings.body_limit_bytes})


class RequestBodyGuard:
    """
    Bounds the request body as it streams in.

    Covers bodies sent without Content-Length (chunked): receiving stops with
    413 once more than ``limit_bytes`` arrived, or with 408 when the whole body
    took longer than ``timeout_ms``. Once the body is complete, ``receive`` is
    passed through untouched.
    """

    def __init__(self, app: ASGIApp, limit_bytes: int, timeout_ms: int):
        self.app = app
        self.limit_bytes = limit_bytes
        self.timeout_ms = timeout_ms

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_ms / 1000
        received = 0
        complete = False

        async def guarded_receive() -> Message:
            nonlocal received, complete
            if complete:
                return await receive()

            try:
                message = await asyncio.wait_for(receive(), max(0.0, deadline - loop.time()))
            except asyncio.TimeoutError:
                raise HTTPException(status_code=408) from None

            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.limit_bytes:
                    raise HTTPException(status_code=413)
                complete = not message.get("more_body", False)
            return message

        await self.app(scope, guarded_receive, send)


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        return error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        details = jsonable_encoder([
            {key: value for key, value in item.items() if key not in ("url", "ctx")}
            for item in exc.errors()
        ])
        return error_response(request, ValidationError("Request validation failed", details))

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            error: AppError = RouteNotFoundError("Route not found")
        elif exc.status_code == 405:
            error = MethodNotAllowedError("Method not allowed")
        elif exc.status_code == 408:
            error = RequestTimeoutError(
                "Request body was not received in time",
                {"timeoutMs": request.app.state.settings.request_timeout_ms},
            )
        elif exc.status_code == 413:
            error = body_too_large(request.app.state.settings)
        else:
            error = AppError(str(exc.detail))
            error.status_code = exc.status_code
            error.code = "http_error"
        return error_response(request, error, headers=getattr(exc, "headers", None))


def register_middleware(app: FastAPI, settings: Settings) -> None:
    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        started = time.perf_counter()
        try:
            content_length = request.headers.get("content-length")
            if content_length and content_length.isdigit() and int(content_length) > settings.body_limit_bytes:
                response = error_response(request, body_too_large(settings))
            else:
                try:
                    response = await call_next(request)
                except Exception as e:
                    logger.exception("Unhandled error while serving request")
                    response = error_response(request, e)

            response.headers[REQUEST_ID_HEADER] = request_id
            route = request.scope.get("route")
            logger.info(
                f"request_completed method={request.method} "
                f"route={getattr(route, 'path', request.url.path)} "
                f"status={response.status_code} "
                f"duration_ms={(time.perf_counter() - started) * 1000:.1f} "
                f"budget_id={request.path_params.get('budget_id', '-')}"
            )
            return response
        finally:
            request_id_var.reset(token)


def create_app(
    settings: Optional[Settings] = None,
    *,
    gateway: Optional[ActualGateway] = None,
    budget_service: Optional[BudgetService] = None,
    entry_service: Optional[EntryService] = None,
    api_key_guard: Optional[ApiKeyGuard] = None,
    rate_limiter: Optional[RequestRateLimiter] = None,
) -> FastAPI:
    """Build the application; any service not passed in is built from ``settings``."""
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    gateway = gateway or ActualGateway(settings)
    budget_service = budget_service or BudgetService(settings, gateway)
    entry_service = entry_service or EntryService(
        gateway,
        budget_service,
        BudgetLockManager(),
        IdempotencyCache(
            ttl_ms=settings.idempotency_ttl_ms,
            max_records=settings.idempotency_max_records,
        ),
        lock_timeout_ms=settings.lock_timeout_ms,
    )

    app = FastAPI(
        title="Entry Bridge",
        description="REST bridge for listing budgets and reading/writing ledger entries in Actual Budget",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.gateway = gateway
    app.state.budget_service = budget_service
    app.state.entry_service = entry_service
    app.state.api_key_guard = api_key_guard or ApiKeyGuard(
        settings.bridge_api_key.get_secret_value(),
        failure_window_ms=settings.auth_failure_window_ms,
        max_attempts=settings.auth_max_attempts,
        block_ms=settings.auth_block_ms,
        max_tracked_clients=settings.auth_max_tracked_clients,
    )
    app.state.rate_limiter = rate_limiter or RequestRateLimiter(
        window_ms=settings.request_rate_limit_window_ms,
        max_requests=settings.request_rate_limit_max_requests,
        state_ttl_ms=settings.rate_limit_state_ttl_ms,
        max_tracked_clients=settings.rate_limit_max_tracked_clients,
    )

    # Added first so it sits inside request_context and its errors get the request id
    app.add_middleware(
        RequestBodyGuard,
        limit_bytes=settings.body_limit_bytes,
        timeout_ms=settings.request_timeout_ms,
    )
    register_middleware(app, settings)
    register_error_handlers(app)

    app.include_router(budgets_router)
    app.include_router(entries_router)

    async def resolve_health(gateway: ActualGateway, settings: Settings) -> HealthStatus:
        try:
            await gateway.ping()
            connectivity = "ok"
        except Exception as e:
            logger.warning(f"Actual connectivity check failed: {describe_error(e)}")
            connectivity = "error"

        return HealthStatus(
            status="ok" if connectivity == "ok" else "degraded",
            actual_connectivity=connectivity,
            budget_discovery_mode=settings.budget_discovery_mode,
        )

    # Health check endpoints
    @app.get("/health", response_model=HealthStatus)
    async def health_check(
        gateway: ActualGateway = Depends(get_gateway),
        settings: Settings = Depends(get_app_settings),
    ):
        """Liveness: always 200, reports Actual connectivity."""
        return await resolve_health(gateway, settings)

    @app.get("/ready", response_model=HealthStatus)
    async def readiness_check(
        gateway: ActualGateway = Depends(get_gateway),
        settings: Settings = Depends(get_app_settings),
    ):
        """Readiness: 503 while Actual is unreachable."""
        health = await resolve_health(gateway, settings)
        if health.actual_connectivity == "error":
            return JSONResponse(status_code=503, content=health.model_dump(by_alias=True))
        return health

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "entrybridge.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=get_settings().port,
    )
