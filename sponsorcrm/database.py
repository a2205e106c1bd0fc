import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from realtime import RealtimePostgresChangesListenEvent
from supabase import AsyncClient, acreate_client

from .config import Settings, get_settings

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


# ======================================================
# 1) CONTRATS (passerelle de données + fournisseur d'identité)
# ======================================================
@dataclass(frozen=True)
class ChangeEvent:
    """
    Notification temps réel normalisée : {eventType, new, old}.
    """
    table: str
    event_type: str  # INSERT | UPDATE | DELETE
    new: Optional[Row] = None
    old: Optional[Row] = None


ChangeCallback = Callable[[ChangeEvent], None]
SessionCallback = Callable[[Optional[Any]], None]


class FeedSubscription(ABC):
    @abstractmethod
    async def unsubscribe(self) -> None:
        ...


class DataGateway(ABC):
    """
    CRUD + flux de changements par table. Toutes les méthodes suspendent
    l'appelant jusqu'à la réponse du backend.
    """

    @abstractmethod
    async def select_all(self, table: str) -> List[Row]:
        ...

    @abstractmethod
    async def select_where(self, table: str, column: str, value: Any) -> List[Row]:
        ...

    @abstractmethod
    async def select_recent(self, table: str, order_by: str, limit: int) -> List[Row]:
        ...

    @abstractmethod
    async def insert(self, table: str, rows: List[Row]) -> List[Row]:
        ...

    @abstractmethod
    async def update(self, table: str, record_id: str, values: Row) -> List[Row]:
        ...

    @abstractmethod
    async def delete(self, table: str, record_id: str) -> List[Row]:
        ...

    @abstractmethod
    async def delete_where(self, table: str, column: str, value: Any) -> List[Row]:
        ...

    @abstractmethod
    async def subscribe(self, table: str, callback: ChangeCallback) -> FeedSubscription:
        ...


class SessionSubscription(ABC):
    @abstractmethod
    def unsubscribe(self) -> None:
        ...


class IdentityProvider(ABC):
    @abstractmethod
    async def get_current_session(self) -> Optional[Any]:
        ...

    @abstractmethod
    def on_session_change(self, callback: SessionCallback) -> SessionSubscription:
        ...

    @abstractmethod
    async def sign_in(self, email: str, password: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def sign_out(self) -> None:
        ...


# ======================================================
# 2) IMPLÉMENTATION SUPABASE
# ======================================================
def parse_change_payload(table: str, payload: Dict[str, Any]) -> ChangeEvent:
    """
    Convertit un payload `postgres_changes` de realtime-py en ChangeEvent.

    realtime-py livre {"data": {"type", "record", "old_record", ...}, "ids": [...]}
    """
    data = payload.get("data", payload)
    event_type = data.get("type") or data.get("eventType")
    if hasattr(event_type, "value"):
        event_type = event_type.value
    return ChangeEvent(
        table=table,
        event_type=str(event_type).upper(),
        new=data.get("record") or data.get("new") or None,
        old=data.get("old_record") or data.get("old") or None,
    )


class _ChannelSubscription(FeedSubscription):
    def __init__(self, client: AsyncClient, channel):
        self._client = client
        self._channel = channel

    async def unsubscribe(self) -> None:
        await self._client.remove_channel(self._channel)


class SupabaseGateway(DataGateway):
    def __init__(self, client: AsyncClient, schema: str = "public"):
        self.client = client
        self.schema = schema

    async def select_all(self, table: str) -> List[Row]:
        resp = await self.client.table(table).select("*").execute()
        return resp.data or []

    async def select_where(self, table: str, column: str, value: Any) -> List[Row]:
        resp = await self.client.table(table).select("*").eq(column, value).execute()
        return resp.data or []

    async def select_recent(self, table: str, order_by: str, limit: int) -> List[Row]:
        resp = await (
            self.client.table(table)
            .select("*")
            .order(order_by, desc=True)
            .limit(limit)
            .execute()
        )
        return resp.data or []

    async def insert(self, table: str, rows: List[Row]) -> List[Row]:
        resp = await self.client.table(table).insert(rows).execute()
        return resp.data or []

    async def update(self, table: str, record_id: str, values: Row) -> List[Row]:
        resp = await self.client.table(table).update(values).eq("id", record_id).execute()
        return resp.data or []

    async def delete(self, table: str, record_id: str) -> List[Row]:
        resp = await self.client.table(table).delete().eq("id", record_id).execute()
        return resp.data or []

    async def delete_where(self, table: str, column: str, value: Any) -> List[Row]:
        resp = await self.client.table(table).delete().eq(column, value).execute()
        return resp.data or []

    async def subscribe(self, table: str, callback: ChangeCallback) -> FeedSubscription:
        channel = self.client.channel(f"{self.schema}:{table}")
        channel.on_postgres_changes(
            RealtimePostgresChangesListenEvent.All,
            callback=lambda payload: callback(parse_change_payload(table, payload)),
            table=table,
            schema=self.schema,
        )
        await channel.subscribe()
        logger.debug("Abonné au flux temps réel de %s", table)
        return _ChannelSubscription(self.client, channel)


class _AuthSubscription(SessionSubscription):
    def __init__(self, subscription):
        self._subscription = subscription

    def unsubscribe(self) -> None:
        self._subscription.unsubscribe()


class SupabaseIdentity(IdentityProvider):
    def __init__(self, client: AsyncClient):
        self.client = client

    async def get_current_session(self) -> Optional[Any]:
        return await self.client.auth.get_session()

    def on_session_change(self, callback: SessionCallback) -> SessionSubscription:
        # supabase-auth appelle callback(event, session)
        subscription = self.client.auth.on_auth_state_change(
            lambda _event, session: callback(session)
        )
        return _AuthSubscription(subscription)

    async def sign_in(self, email: str, password: str) -> Optional[Any]:
        resp = await self.client.auth.sign_in_with_password(
            {"email": email, "password": password}
        )
        return resp.session

    async def sign_out(self) -> None:
        await self.client.auth.sign_out()


# ======================================================
# 3) CYCLE DE VIE DU CLIENT (pas de singleton global)
# ======================================================
async def connect(settings: Optional[Settings] = None) -> AsyncClient:
    """
    Construit un client Supabase asynchrone explicite.
    L'appelant en est propriétaire et doit le fermer (voir `supabase_session`).
    """
    settings = settings or get_settings()
    settings.require_supabase()

    if settings.db_debug:
        logger.info("[DB] SUPABASE_URL = %s", settings.supabase_url)
        logger.info("[DB] SUPABASE_KEY = %s", settings.masked_key)

    return await acreate_client(settings.supabase_url, settings.supabase_key)


@dataclass
class Backend:
    client: AsyncClient
    gateway: SupabaseGateway
    identity: SupabaseIdentity


@asynccontextmanager
async def supabase_session(
    settings: Optional[Settings] = None,
    factory: Callable[[Optional[Settings]], Awaitable[AsyncClient]] = connect,
) -> AsyncIterator[Backend]:
    """
    Poignée à durée de vie explicite : passerelle + identité partagent
    le même client, fermé (canaux temps réel compris) à la sortie.

    Exemple :
        async with supabase_session() as backend:
            store = SyncStore(backend.gateway)
    """
    client = await factory(settings)
    try:
        yield Backend(
            client=client,
            gateway=SupabaseGateway(client),
            identity=SupabaseIdentity(client),
        )
    finally:
        try:
            await client.remove_all_channels()
        except Exception as e:
            logger.warning("Fermeture des canaux temps réel incomplète: %s", e)
