from typing import Optional

from fastapi import Header, Request
from fastapi.encoders import jsonable_encoder
from pydantic import ValidationError as PydanticValidationError

from .config import Settings
from .errors import ValidationError
from .schemas.entries import ListEntriesQuery, parse_idempotency_key
from .services.budgets import BudgetService
from .services.entries import EntryService
from .services.gateway import ActualGateway
from .services.guards import ApiKeyGuard, RequestRateLimiter

UNKNOWN_CLIENT = "unknown"


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_gateway(request: Request) -> ActualGateway:
    return request.app.state.gateway


def get_budget_service(request: Request) -> BudgetService:
    return request.app.state.budget_service


def get_entry_service(request: Request) -> EntryService:
    return request.app.state.entry_service


def resolve_client_address(request: Request) -> str:
    """Address of the socket peer."""
    if request.client is not None and request.client.host:
        return request.client.host
    return UNKNOWN_CLIENT


def resolve_client_identifier(request: Request) -> str:
    """First X-Forwarded-For hop when present, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return resolve_client_address(request)


async def require_api_key(request: Request) -> None:
    """Dependency guarding every budget route with the bridge API key."""
    guard: ApiKeyGuard = request.app.state.api_key_guard
    guard.authenticate(resolve_client_address(request), request.headers.get("authorization"))


async def enforce_rate_limit(request: Request) -> None:
    limiter: RequestRateLimiter = request.app.state.rate_limiter
    limiter.hit(resolve_client_identifier(request))


async def get_list_entries_query(request: Request) -> ListEntriesQuery:
    try:
        return ListEntriesQuery.model_validate(dict(request.query_params))
    except PydanticValidationError as e:
        raise ValidationError(
            "Invalid query parameters",
            jsonable_encoder(e.errors(include_url=False, include_context=False)),
        ) from e


async def get_idempotency_key(
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
) -> Optional[str]:
    return parse_idempotency_key(idempotency_key)
