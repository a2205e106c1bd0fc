"""
Pytest configuration and shared fixtures.

FakeGateway / FakeIdentity replace Supabase: in-memory tables, ids
generated on insert, realtime feed driven by the test through `emit`.
"""
import asyncio
import copy
import uuid
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest
from supabase import AuthApiError

from sponsorcrm.config import reset_settings
from sponsorcrm.database import (
    ChangeEvent,
    DataGateway,
    FeedSubscription,
    IdentityProvider,
    SessionSubscription,
)
from sponsorcrm.models import Table

ALL_TABLES = (Table.EVENTS, Table.COMPANIES, Table.RELATIONS, Table.CONTACTS, Table.AUDIT_LOGS)
READS = ("select_all", "select_where", "select_recent", "subscribe")


class MissingTable(Exception):
    """PostgREST error raised when a table does not exist."""

    def __init__(self):
        super().__init__("relation does not exist")
        self.code = "42P01"
        self.message = 'relation "public.audit_logs" does not exist'


class FakeFeedSubscription(FeedSubscription):
    def __init__(self, gateway: "FakeGateway", table: str, callback):
        self.gateway = gateway
        self.table = table
        self.callback = callback

    async def unsubscribe(self) -> None:
        callbacks = self.gateway.callbacks.get(self.table, [])
        if self.callback in callbacks:
            callbacks.remove(self.callback)


class FakeGateway(DataGateway):
    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {t: [] for t in ALL_TABLES}
        self.calls: List[tuple] = []
        self.failures: Dict[tuple, Exception] = {}
        self.callbacks: Dict[str, list] = {}
        self.gate: Optional[asyncio.Event] = None
        self.insert_delay: float = 0

    # -- helpers ------------------------------------------------------
    def seed(self, table: str, *rows: Dict[str, Any]) -> None:
        for row in rows:
            self.tables[table].append(dict(row))

    def fail(self, operation: str, table: str, exc: Optional[Exception] = None) -> None:
        self.failures[(operation, table)] = exc or RuntimeError(f"{operation} {table} failed")

    def writes(self) -> List[tuple]:
        return [c for c in self.calls if c[0] not in READS]

    def emit(self, table: str, event_type: str, new=None, old=None) -> None:
        event = ChangeEvent(table, event_type, new=new, old=old)
        for callback in list(self.callbacks.get(table, [])):
            callback(event)

    def _check(self, operation: str, table: str) -> None:
        self.calls.append((operation, table))
        exc = self.failures.get((operation, table))
        if exc is not None:
            raise exc

    # -- DataGateway --------------------------------------------------
    async def select_all(self, table):
        self._check("select_all", table)
        if self.gate is not None:
            await self.gate.wait()
        return copy.deepcopy(self.tables[table])

    async def select_where(self, table, column, value):
        self._check("select_where", table)
        return [copy.deepcopy(r) for r in self.tables[table] if r.get(column) == value]

    async def select_recent(self, table, order_by, limit):
        self._check("select_recent", table)
        rows = sorted(self.tables[table], key=lambda r: r.get(order_by) or "", reverse=True)
        return copy.deepcopy(rows[:limit])

    async def insert(self, table, rows):
        self._check("insert", table)
        if self.insert_delay:
            await asyncio.sleep(self.insert_delay)
        inserted = []
        for row in rows:
            row = dict(row)
            row.setdefault("id", str(uuid.uuid4()))
            self.tables[table].append(row)
            inserted.append(copy.deepcopy(row))
        return inserted

    async def update(self, table, record_id, values):
        self._check("update", table)
        updated = []
        for row in self.tables[table]:
            if row.get("id") == record_id:
                row.update(values)
                updated.append(copy.deepcopy(row))
        return updated

    async def delete(self, table, record_id):
        return await self.delete_where(table, "id", record_id, operation="delete")

    async def delete_where(self, table, column, value, operation="delete_where"):
        self._check(operation, table)
        removed = [r for r in self.tables[table] if r.get(column) == value]
        self.tables[table] = [r for r in self.tables[table] if r.get(column) != value]
        return removed

    async def subscribe(self, table, callback):
        self._check("subscribe", table)
        self.callbacks.setdefault(table, []).append(callback)
        return FakeFeedSubscription(self, table, callback)


class FakeSessionSubscription(SessionSubscription):
    def __init__(self, identity: "FakeIdentity", callback):
        self.identity = identity
        self.callback = callback

    def unsubscribe(self) -> None:
        if self.callback in self.identity.callbacks:
            self.identity.callbacks.remove(self.callback)


def make_session(user_id: str = "user-1", email: str = "ana@example.com"):
    return SimpleNamespace(user=SimpleNamespace(id=user_id, email=email))


class FakeIdentity(IdentityProvider):
    def __init__(self, session=None):
        self.session = session
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.callbacks: list = []
        self.accounts: Dict[str, str] = {"ana@example.com": "secret"}

    def notify(self, session) -> None:
        self.session = session
        for callback in list(self.callbacks):
            callback(session)

    async def get_current_session(self):
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.session

    def on_session_change(self, callback):
        self.callbacks.append(callback)
        return FakeSessionSubscription(self, callback)

    async def sign_in(self, email, password):
        if self.accounts.get(email) != password:
            raise AuthApiError("Invalid login credentials", 400, "invalid_credentials")
        session = make_session(email=email)
        self.notify(session)
        return session

    async def sign_out(self):
        self.notify(None)


@pytest.fixture(scope="function")
def clean_env(monkeypatch):
    """
    Clean environment for testing.

    Removes all app-related env vars and resets the settings singleton.
    """
    env_vars = [
        "SUPABASE_URL",
        "SUPABASE_KEY",
        "DB_DEBUG",
        "STORE_TIMEOUT_SECONDS",
        "SESSION_TIMEOUT_SECONDS",
        "AUDIT_LIMIT",
        "LOG_LEVEL",
    ]
    for var in env_vars:
        monkeypatch.delenv(var, raising=False)

    reset_settings()

    yield

    reset_settings()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def identity():
    return FakeIdentity()


@pytest.fixture
def seeded_gateway(gateway):
    """One event, one company with a contact, one relation between them."""
    gateway.seed(Table.EVENTS, {
        "id": "ev-1", "name": "Expo 2025", "start_date": "2025-03-10",
        "end_date": "2025-03-12", "archived": False,
        "created_at": "2025-01-01T10:00:00+00:00",
    })
    gateway.seed(Table.COMPANIES, {
        "id": "co-1", "name": "Acme", "segment": "Tech", "tags": ["vip"],
        "archived": False, "created_at": "2025-01-02T10:00:00+00:00",
    })
    gateway.seed(Table.CONTACTS, {
        "id": "ct-1", "company_id": "co-1", "name": "Bruna", "email": "bruna@acme.com",
    })
    gateway.seed(Table.RELATIONS, {
        "id": "rel-1", "event_id": "ev-1", "company_id": "co-1",
        "status": "NEGOCIACAO", "value_expected": 5000, "value_closed": 0,
        "next_action": "Enviar proposta", "next_action_date": "2025-02-01",
        "archived": False,
        "created_at": "2025-01-03T10:00:00+00:00",
        "updated_at": "2025-01-03T10:00:00+00:00",
    })
    return gateway
