"""
Session gateway over the Actual client.

The Actual client keeps a single "currently open budget", so every call into
it (init, open, the caller's work, close, shutdown) goes through one FIFO
queue and runs strictly one at a time, process-wide. The client's surface
differs between versions, so each capability is probed by name and tried in
a fixed fallback order; whatever it returns is normalised into the typed
records in ``schemas.upstream``.
"""
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, List, Optional, TypeVar

from ..config import Settings
from ..errors import AppError, UpstreamError, describe_error
from ..schemas.budgets import BudgetSummary
from ..schemas.upstream import NamedEntity, TransactionDraft, UpstreamTransaction
from .actual_client import ActualHttpClient
from .locks import FifoLock

logger = logging.getLogger(__name__)

T = TypeVar("T")

ENTITY_ID_FIELDS = ("id", "uuid", "account", "category", "payee")
BUDGET_ID_FIELDS = ("id", "fileId", "groupId", "uuid")
BUDGET_NAME_FIELDS = ("name", "fileName", "groupName")
BUDGET_DISCOVERY_METHODS = ("list_user_files", "list_budgets", "get_budgets")


class CallStatus(Enum):
    OK = "ok"
    UNSUPPORTED = "unsupported"
    FAILED = "failed"


@dataclass
class CallResult:
    """Outcome of one probe into the Actual client."""
    status: CallStatus
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status is CallStatus.OK


def capability(api: Any, name: str) -> Optional[Callable]:
    fn = getattr(api, name, None)
    return fn if callable(fn) else None


async def invoke(fn: Callable, *args, **kwargs) -> Any:
    """Call ``fn`` and await the result if it is awaitable."""
    result = fn(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


async def try_call(api: Any, name: str, *args, **kwargs) -> CallResult:
    fn = capability(api, name)
    if fn is None:
        return CallResult(CallStatus.UNSUPPORTED)
    try:
        return CallResult(CallStatus.OK, value=await invoke(fn, *args, **kwargs))
    except Exception as e:
        return CallResult(CallStatus.FAILED, error=e)


def _field(record: Any, name: str) -> Any:
    if isinstance(record, dict):
        return record.get(name)
    return getattr(record, name, None)


def _first_text(record: Any, names: Iterable[str]) -> Optional[str]:
    for name in names:
        value = _field(record, name)
        if isinstance(value, str) and value:
            return value
    return None


def _as_list(value: Any) -> list:
    return list(value) if isinstance(value, (list, tuple)) else []


def normalize_entity(record: Any) -> Optional[NamedEntity]:
    if record is None:
        return None
    entity_id = _first_text(record, ENTITY_ID_FIELDS)
    name = _first_text(record, ("name",))
    if not entity_id or not name:
        return None
    return NamedEntity(id=entity_id, name=name)


def normalize_budget(record: Any) -> Optional[BudgetSummary]:
    if record is None:
        return None
    budget_id = _first_text(record, BUDGET_ID_FIELDS)
    name = _first_text(record, BUDGET_NAME_FIELDS) or budget_id
    if not budget_id or not name:
        return None
    return BudgetSummary(id=budget_id, name=name)


def normalize_transaction(record: Any, fallback_account_id: str) -> Optional[UpstreamTransaction]:
    if record is None:
        return None

    transaction_id = _first_text(record, ("id", "uuid"))
    date = _first_text(record, ("date",))
    account_id = _first_text(record, ("account", "accountId", "account_id")) or fallback_account_id

    raw_amount = _field(record, "amount")
    if isinstance(raw_amount, bool):
        return None
    try:
        amount = int(round(float(raw_amount)))
    except (TypeError, ValueError, OverflowError):
        return None

    if not transaction_id or not date or not account_id:
        return None

    return UpstreamTransaction(
        id=transaction_id,
        date=date,
        amount=amount,
        account_id=account_id,
        category_id=_first_text(record, ("category", "categoryId", "category_id")),
        payee_id=_first_text(record, ("payee", "payeeId", "payee_id")),
        notes=_first_text(record, ("notes", "note")),
    )


def _normalized(items: Any, normalize: Callable[[Any], Optional[T]]) -> List[T]:
    return [item for item in map(normalize, _as_list(items)) if item is not None]


class BudgetSession:
    """Typed view of the Actual client while one budget is open."""

    def __init__(self, api: Any):
        self.api = api

    async def sync(self) -> None:
        result = await try_call(self.api, "sync")
        if result.status is CallStatus.FAILED:
            raise UpstreamError("Failed to sync budget", result.error)

    async def _list_entities(self, method: str, label: str) -> List[NamedEntity]:
        result = await try_call(self.api, method)
        if result.status is CallStatus.UNSUPPORTED:
            raise UpstreamError(f"Actual API does not expose {method}")
        if result.status is CallStatus.FAILED:
            raise UpstreamError(f"Failed to load {label}", result.error)
        return _normalized(result.value, normalize_entity)

    async def get_accounts(self) -> List[NamedEntity]:
        return await self._list_entities("get_accounts", "accounts")

    async def get_categories(self) -> List[NamedEntity]:
        return await self._list_entities("get_categories", "categories")

    async def get_payees(self) -> List[NamedEntity]:
        return await self._list_entities("get_payees", "payees")

    async def create_payee(self, name: str) -> NamedEntity:
        strategies = (
            ("create_payee", ({"name": name},)),
            ("add_payee", (name,)),
        )
        for method, args in strategies:
            result = await try_call(self.api, method, *args)
            if result.status is CallStatus.FAILED:
                raise UpstreamError("Failed to create payee", result.error)
            if result.ok:
                created = normalize_entity(result.value)
                if created is not None:
                    return created

        raise UpstreamError("Actual API did not return payee data for created payee")

    async def list_transactions(self, start_date: str, end_date: str) -> List[UpstreamTransaction]:
        """Transactions of every account between two dates, as the client reports them."""
        if capability(self.api, "get_transactions") is None:
            raise UpstreamError("Actual API does not expose get_transactions")

        transactions: List[UpstreamTransaction] = []
        for account in await self.get_accounts():
            result = await try_call(self.api, "get_transactions", account.id, start_date, end_date)
            if not result.ok:
                logger.debug(
                    f"Positional get_transactions failed for account {account.id} "
                    f"({describe_error(result.error)}); retrying with keyword arguments"
                )
                result = await try_call(
                    self.api,
                    "get_transactions",
                    account_id=account.id,
                    start_date=start_date,
                    end_date=end_date,
                )
            if not result.ok:
                raise UpstreamError(f"Failed to list transactions for account {account.id}", result.error)

            transactions.extend(
                _normalized(result.value, lambda item: normalize_transaction(item, account.id))
            )
        return transactions

    async def create_transaction(self, draft: TransactionDraft) -> str:
        """
        Create one transaction and return its id.

        Strategies are tried in a fixed order. A strategy that raises stops the
        search: the write may have reached Actual, so it is not retried another way.
        """
        payload = {
            "date": draft.date,
            "amount": draft.amount,
            "payee": draft.payee_id,
            "category": draft.category_id,
            "notes": draft.notes,
        }
        strategies = (
            ("add_transaction", (draft.account_id, payload), lambda value: value),
            ("add_transactions", (draft.account_id, [payload]), lambda value: next(iter(_as_list(value)), None)),
            ("create_transaction", ({**payload, "account": draft.account_id},), lambda value: value),
        )

        for method, args, pick in strategies:
            result = await try_call(self.api, method, *args)
            if result.status is CallStatus.FAILED:
                raise UpstreamError("Failed to create transaction", result.error)
            if result.ok:
                created = normalize_transaction(pick(result.value), draft.account_id)
                if created is not None:
                    return created.id

        raise UpstreamError("Actual API did not return transaction data for created transaction")

    async def close(self) -> None:
        result = await try_call(self.api, "close_budget")
        if result.status is CallStatus.FAILED:
            logger.warning(f"Failed to close budget session cleanly: {describe_error(result.error)}")


class ActualGateway:
    """Single, serialized entry point into the Actual client."""

    def __init__(self, settings: Settings, api: Any = None):
        self.settings = settings
        self.api = api if api is not None else ActualHttpClient(timeout=settings.upstream_timeout_ms / 1000)
        self._tail = FifoLock()
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def _initialize(self) -> None:
        init = capability(self.api, "init")
        if init is None:
            raise UpstreamError("Actual API init function is not available")

        password = self.settings.actual_password.get_secret_value()
        try:
            await invoke(
                init,
                server_url=self.settings.actual_server_url,
                password=password,
                data_dir=self.settings.actual_data_dir,
            )
            login = capability(self.api, "login")
            if login is not None:
                await invoke(login, password)
        except Exception as e:
            raise UpstreamError("Failed to initialize Actual API client", e) from e

        self._initialized = True
        logger.info("Actual API client initialized")

    async def _ensure_init(self) -> None:
        # Only ever called with the tail held, so no second caller can race it.
        if not self._initialized:
            await self._initialize()

    async def _open_budget(self, budget_id: str) -> None:
        file_password = (
            self.settings.actual_file_password.get_secret_value()
            if self.settings.actual_file_password is not None
            else None
        )

        attempts: List[Callable[[], Awaitable[Any]]] = []
        download = capability(self.api, "download_budget")
        if download is not None:
            if file_password:
                attempts.append(lambda: invoke(download, budget_id, password=file_password))
                attempts.append(lambda: invoke(download, budget_id, file_password))
            else:
                attempts.append(lambda: invoke(download, budget_id))
        for name in ("open_budget", "load_budget"):
            fn = capability(self.api, name)
            if fn is not None:
                attempts.append(lambda fn=fn: invoke(fn, budget_id))

        if not attempts:
            raise UpstreamError("Actual API does not expose a budget open method")

        last_error: Optional[BaseException] = None
        for attempt in attempts:
            try:
                await attempt()
                return
            except Exception as e:
                last_error = e
                logger.debug(f"Opening budget {budget_id} failed ({describe_error(e)}); trying next method")

        raise UpstreamError(f"Failed to open budget {budget_id}", last_error)

    async def list_budgets(self) -> List[BudgetSummary]:
        """First non-empty result among the client's discovery methods, else []."""
        async with self._tail:
            await self._ensure_init()

            for method in BUDGET_DISCOVERY_METHODS:
                result = await try_call(self.api, method)
                if result.status is CallStatus.FAILED:
                    logger.debug(f"Budget listing via {method} failed ({describe_error(result.error)}); trying next")
                    continue
                budgets = _normalized(result.value, normalize_budget) if result.ok else []
                if budgets:
                    return budgets
            return []

    async def with_budget(self, budget_id: str, fn: Callable[[BudgetSession], Awaitable[T]]) -> T:
        """
        Open ``budget_id`` and run ``fn`` against it, then close the budget.

        Nothing else touches the Actual client until ``fn`` has finished and
        the budget is closed.
        """
        async with self._tail:
            await self._ensure_init()
            await self._open_budget(budget_id)
            session = BudgetSession(self.api)
            try:
                return await fn(session)
            except AppError:
                raise
            except Exception as e:
                raise UpstreamError(f"Actual operation failed for budget {budget_id}", e) from e
            finally:
                await session.close()

    async def ping(self) -> None:
        await self.list_budgets()

    async def shutdown(self) -> None:
        async with self._tail:
            if not self._initialized:
                return

            result = await try_call(self.api, "shutdown")
            if result.status is CallStatus.FAILED:
                logger.warning(f"Failed to shut down Actual API cleanly: {describe_error(result.error)}")

            self._initialized = False
            logger.info("Actual API client shut down")
