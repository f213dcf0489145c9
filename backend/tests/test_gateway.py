import asyncio

import pytest

from conftest import FakeActualApi, make_settings
from entrybridge.errors import NotFoundError, UpstreamError
from entrybridge.schemas.upstream import TransactionDraft
from entrybridge.services.gateway import (
    ActualGateway,
    normalize_budget,
    normalize_entity,
    normalize_transaction,
)


class SyncStyleApi:
    """Older client generation: plain functions, alternate method names."""

    def __init__(self):
        self.calls = []
        self.payees = []

    def init(self, server_url, password, data_dir=None):
        self.calls.append("init")

    def list_budgets(self):
        self.calls.append("list_budgets")
        return [{"fileId": "file-1", "fileName": "Legacy"}]

    def load_budget(self, budget_id):
        self.calls.append(f"load_budget:{budget_id}")

    def get_accounts(self):
        return [{"uuid": "acc-1", "name": "Cash"}]

    def get_categories(self):
        return []

    def get_payees(self):
        return list(self.payees)

    def add_payee(self, name):
        self.calls.append("add_payee")
        created = {"uuid": "payee-9", "name": name}
        self.payees.append(created)
        return created

    def get_transactions(self, *args, **kwargs):
        if args:
            raise TypeError("positional arguments are not supported")
        self.calls.append("get_transactions:kwargs")
        return [{"uuid": "tx-1", "date": "2024-01-05", "amount": "-250", "accountId": kwargs["account_id"]}]

    def create_transaction(self, transaction):
        self.calls.append("create_transaction")
        return {"id": "tx-new", **transaction}


def make_gateway(api, **settings):
    return ActualGateway(make_settings(**settings), api=api)


def test_normalize_entity_field_priority():
    assert normalize_entity({"uuid": "u1", "id": "i1", "name": "A"}).id == "i1"
    assert normalize_entity({"payee": "p1", "name": "Shop"}).id == "p1"
    assert normalize_entity({"id": "x"}) is None
    assert normalize_entity({"name": "no id"}) is None
    assert normalize_entity(None) is None


def test_normalize_budget_falls_back_to_id_for_name():
    assert normalize_budget({"groupId": "g1", "groupName": "Group"}).name == "Group"
    assert normalize_budget({"fileId": "f1"}).name == "f1"
    assert normalize_budget({"name": "nameless"}) is None


def test_normalize_transaction():
    transaction = normalize_transaction(
        {"id": "t1", "date": "2024-01-01", "amount": -1234, "category": "c1", "note": "memo"},
        fallback_account_id="acc-1",
    )
    assert transaction.account_id == "acc-1"
    assert transaction.amount == -1234
    assert transaction.notes == "memo"
    assert normalize_transaction({"id": "t1", "date": "2024-01-01", "amount": "abc"}, "acc-1") is None
    assert normalize_transaction({"id": "t1", "date": "2024-01-01", "amount": True}, "acc-1") is None
    assert normalize_transaction({"id": "t1", "amount": 5}, "acc-1") is None


@pytest.mark.asyncio
async def test_init_runs_once_with_login():
    api = FakeActualApi()
    gateway = make_gateway(api)

    await asyncio.gather(gateway.list_budgets(), gateway.list_budgets(), gateway.ping())

    assert api.calls.count("init") == 1
    assert api.calls.count("login") == 1
    assert api.calls[:2] == ["init", "login"]
    assert gateway.initialized


@pytest.mark.asyncio
async def test_failed_init_is_upstream_error_and_retried():
    api = FakeActualApi()
    attempts = []

    async def flaky_init(server_url, password, data_dir=None):
        attempts.append(server_url)
        if len(attempts) == 1:
            raise ConnectionError("refused")

    api.init = flaky_init
    gateway = make_gateway(api)

    with pytest.raises(UpstreamError) as excinfo:
        await gateway.list_budgets()
    assert isinstance(excinfo.value.cause, ConnectionError)

    assert await gateway.list_budgets() != []
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_with_budget_calls_are_totally_ordered():
    api = FakeActualApi()
    gateway = make_gateway(api)
    events = []

    async def work(session, name):
        events.append(f"start:{name}")
        await asyncio.sleep(0.01)
        await session.get_accounts()
        events.append(f"end:{name}")
        return name

    results = await asyncio.gather(
        gateway.with_budget("budget-1", lambda s: work(s, "a")),
        gateway.with_budget("budget-2", lambda s: work(s, "b")),
    )

    assert results == ["a", "b"]
    assert events == ["start:a", "end:a", "start:b", "end:b"]
    opens = [c for c in api.calls if c.startswith("download_budget") or c == "close_budget"]
    assert opens == ["download_budget:budget-1", "close_budget", "download_budget:budget-2", "close_budget"]


@pytest.mark.asyncio
async def test_session_is_closed_when_operation_fails():
    api = FakeActualApi()
    gateway = make_gateway(api)

    async def fail(session):
        raise NotFoundError("Account not found: Savings")

    with pytest.raises(NotFoundError):
        await gateway.with_budget("budget-1", fail)
    assert api.calls[-1] == "close_budget"

    async def crash(session):
        raise KeyError("boom")

    with pytest.raises(UpstreamError):
        await gateway.with_budget("budget-1", crash)
    assert api.calls[-1] == "close_budget"


@pytest.mark.asyncio
async def test_close_failure_is_not_propagated():
    api = FakeActualApi()

    async def broken_close():
        raise RuntimeError("close failed")

    api.close_budget = broken_close
    gateway = make_gateway(api)

    async def work(session):
        return "done"

    assert await gateway.with_budget("budget-1", work) == "done"


@pytest.mark.asyncio
async def test_open_budget_falls_back_through_methods():
    api = FakeActualApi()
    tried = []

    async def download_budget(budget_id, *args, **kwargs):
        tried.append(("download", args, kwargs))
        raise ValueError("bad password")

    async def open_budget(budget_id):
        tried.append(("open", budget_id))

    api.download_budget = download_budget
    api.open_budget = open_budget
    gateway = make_gateway(api, actual_file_password="file-secret")

    async def work(session):
        return True

    assert await gateway.with_budget("budget-1", work)
    assert tried == [
        ("download", (), {"password": "file-secret"}),
        ("download", ("file-secret",), {}),
        ("open", "budget-1"),
    ]


@pytest.mark.asyncio
async def test_open_budget_exhausted_is_upstream_error():
    api = FakeActualApi()

    async def download_budget(budget_id, password=None):
        raise ValueError("missing file")

    api.download_budget = download_budget
    gateway = make_gateway(api)

    async def work(session):
        return True

    with pytest.raises(UpstreamError) as excinfo:
        await gateway.with_budget("budget-1", work)
    assert isinstance(excinfo.value.cause, ValueError)


@pytest.mark.asyncio
async def test_sync_style_api_is_adapted():
    api = SyncStyleApi()
    gateway = make_gateway(api)

    budgets = await gateway.list_budgets()
    assert [(b.id, b.name) for b in budgets] == [("file-1", "Legacy")]

    async def work(session):
        await session.sync()
        transactions = await session.list_transactions("2024-01-01", "2024-01-31")
        payee = await session.create_payee("Market")
        created = await session.create_transaction(TransactionDraft(
            account_id="acc-1", category_id="cat-1", payee_id=payee.id, date="2024-01-06", amount=-500,
        ))
        return transactions, payee, created

    transactions, payee, created = await gateway.with_budget("file-1", work)

    assert transactions[0].amount == -250
    assert transactions[0].account_id == "acc-1"
    assert payee.id == "payee-9"
    assert created == "tx-new"
    assert "load_budget:file-1" in api.calls
    assert "get_transactions:kwargs" in api.calls


@pytest.mark.asyncio
async def test_missing_capability_is_upstream_error():
    api = FakeActualApi()
    api.get_categories = None
    gateway = make_gateway(api)

    async def work(session):
        return await session.get_categories()

    with pytest.raises(UpstreamError):
        await gateway.with_budget("budget-1", work)


@pytest.mark.asyncio
async def test_create_transaction_without_usable_result_is_upstream_error():
    api = FakeActualApi()

    async def add_transactions(account_id, transactions):
        return []

    api.add_transactions = add_transactions
    gateway = make_gateway(api)

    async def work(session):
        return await session.create_transaction(TransactionDraft(
            account_id="acc-1", category_id="cat-1", date="2024-01-06", amount=100,
        ))

    with pytest.raises(UpstreamError, match="did not return transaction data"):
        await gateway.with_budget("budget-1", work)


@pytest.mark.asyncio
async def test_create_transaction_failure_is_not_retried():
    api = FakeActualApi()
    calls = []

    async def add_transactions(account_id, transactions):
        calls.append("add_transactions")
        raise TimeoutError("slow")

    def create_transaction(transaction):
        calls.append("create_transaction")
        return {"id": "tx-dup", **transaction}

    api.add_transactions = add_transactions
    api.create_transaction = create_transaction
    gateway = make_gateway(api)

    async def work(session):
        return await session.create_transaction(TransactionDraft(
            account_id="acc-1", category_id="cat-1", date="2024-01-06", amount=100,
        ))

    with pytest.raises(UpstreamError, match="Failed to create transaction"):
        await gateway.with_budget("budget-1", work)
    assert calls == ["add_transactions"]


@pytest.mark.asyncio
async def test_shutdown_only_after_init():
    api = FakeActualApi()
    gateway = make_gateway(api)

    await gateway.shutdown()
    assert "shutdown" not in api.calls

    await gateway.ping()
    await gateway.shutdown()
    assert api.calls.count("shutdown") == 1
    assert not gateway.initialized
