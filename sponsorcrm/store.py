"""
Store de synchronisation : source de vérité unique (par processus) des
quatre collections events / companies / event_companies / contacts.

- chargement initial parallèle, borné par un timeout (état vide mais débloqué)
- flux temps réel appliqué par identité (upsert / suppression idempotents)
- contacts dénormalisés sur leur entreprise via une projection recalculée
- mutations en écriture directe vers la passerelle
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError as PydanticValidationError
from pydantic_core import to_jsonable_python
from sqlmodel import SQLModel

from .config import get_settings
from .database import ChangeEvent, DataGateway, FeedSubscription, Row
from .exceptions import (
    CRMError,
    DuplicateRelationError,
    NotFoundError,
    ValidationError,
    WriteError,
)
from .models import (
    DERIVED_FIELDS,
    MODELS_BY_TABLE,
    READ_ONLY_FIELDS,
    Company,
    Contact,
    Event,
    Relation,
    SponsorshipStatus,
    Table,
    now_utc,
)
from .timeouts import DONE, TIMEOUT, race

logger = logging.getLogger(__name__)

Listener = Callable[["SyncStore"], None]

# Champs saisissables d'un contact créé en même temps que son entreprise
CONTACT_FIELDS = ("name", "email", "whatsapp", "role")


def _as_dict(data: Any) -> Dict[str, Any]:
    if data is None:
        return {}
    if hasattr(data, "model_dump"):
        return data.model_dump(exclude_unset=True)
    return dict(data)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _error_message(exc: Exception) -> str:
    return getattr(exc, "message", None) or str(exc) or exc.__class__.__name__


def join_contacts(companies: List[Company], contacts: List[Contact]) -> List[Company]:
    """
    Projection pure : chaque entreprise reçoit les contacts dont
    company_id == company.id, dans l'ordre d'arrivée. Les contacts orphelins
    n'apparaissent nulle part.
    """
    by_company: Dict[str, List[Contact]] = {}
    for contact in contacts:
        by_company.setdefault(contact.company_id, []).append(contact)
    return [
        company.model_copy(update={"contacts": list(by_company.get(company.id, []))})
        for company in companies
    ]


@dataclass(frozen=True)
class StoreSnapshot:
    events: Tuple[Event, ...] = ()
    companies: Tuple[Company, ...] = ()
    relations: Tuple[Relation, ...] = ()
    contacts: Tuple[Contact, ...] = ()
    loading: bool = False
    timed_out: bool = False
    degraded: bool = False


@dataclass
class _Bootstrap:
    rows: Dict[str, List[SQLModel]] = field(default_factory=dict)


class SyncStore:
    TABLES = (Table.EVENTS, Table.COMPANIES, Table.RELATIONS, Table.CONTACTS)

    def __init__(self, gateway: DataGateway, timeout: Optional[float] = None):
        self.gateway = gateway
        self.timeout = timeout if timeout is not None else get_settings().store_timeout

        # table -> {id: enregistrement}, ordre d'arrivée conservé
        self._rows: Dict[str, Dict[str, SQLModel]] = {t: {} for t in self.TABLES}
        self._companies_view: Optional[List[Company]] = None

        self.loading = False
        self.timed_out = False
        self.degraded = False  # chargement initial abandonné (timeout ou erreur)
        self.last_error: Optional[Exception] = None

        self._active = False
        self._session = 0    # incrémenté à chaque start/stop
        self._load_seq = 0   # incrémenté à chaque chargement
        self._buffering = False
        self._pending: List[Callable[[], None]] = []
        self._linking: Set[Tuple[str, str]] = set()  # couples en cours d'insertion
        self._subscriptions: List[FeedSubscription] = []
        self._subscribe_task: Optional[asyncio.Task] = None
        self._listeners: List[Listener] = []

    # ======================================================
    # Lecture
    # ======================================================
    @property
    def active(self) -> bool:
        return self._active

    @property
    def events(self) -> List[Event]:
        return list(self._rows[Table.EVENTS].values())

    @property
    def relations(self) -> List[Relation]:
        return list(self._rows[Table.RELATIONS].values())

    @property
    def contacts(self) -> List[Contact]:
        return list(self._rows[Table.CONTACTS].values())

    @property
    def companies(self) -> List[Company]:
        if self._companies_view is None:
            self._companies_view = join_contacts(
                list(self._rows[Table.COMPANIES].values()), self.contacts
            )
        return list(self._companies_view)

    def event(self, event_id: str) -> Optional[Event]:
        return self._rows[Table.EVENTS].get(event_id)

    def relation(self, relation_id: str) -> Optional[Relation]:
        return self._rows[Table.RELATIONS].get(relation_id)

    def contact(self, contact_id: str) -> Optional[Contact]:
        return self._rows[Table.CONTACTS].get(contact_id)

    def company(self, company_id: str) -> Optional[Company]:
        for company in self.companies:
            if company.id == company_id:
                return company
        return None

    def snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(
            events=tuple(self.events),
            companies=tuple(self.companies),
            relations=tuple(self.relations),
            contacts=tuple(self.contacts),
            loading=self.loading,
            timed_out=self.timed_out,
            degraded=self.degraded,
        )

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Listener du store en erreur")

    # ======================================================
    # Cycle de vie
    # ======================================================
    async def start(self) -> bool:
        """
        Active le store pour la session courante : abonnement aux flux
        (en tâche de fond) puis chargement initial. Retourne False si le
        chargement a dégradé vers un état vide.
        """
        if self._active:
            return not self.degraded
        self._active = True
        self._session += 1
        session = self._session

        # Les évènements reçus pendant le chargement sont mis en attente
        self._buffering = True
        self._subscribe_task = asyncio.ensure_future(self._subscribe(session))
        return await self._load(session)

    async def reload(self) -> bool:
        """Relance le chargement initial (reprise après timeout)."""
        if not self._active:
            return await self.start()
        self._buffering = True
        return await self._load(self._session)

    async def stop(self) -> None:
        """
        Démontage (sign-out / arrêt) : les résultats tardifs de l'ancienne
        session sont ignorés.
        """
        self._session += 1
        self._active = False
        self._buffering = False
        self._pending.clear()

        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            await self._close_subscription(subscription)

        for rows in self._rows.values():
            rows.clear()
        self._companies_view = None
        self.loading = False
        self.timed_out = False
        self.degraded = False
        self._notify()

    def _is_current(self, session: int) -> bool:
        return self._active and session == self._session

    async def _close_subscription(self, subscription: FeedSubscription) -> None:
        try:
            await subscription.unsubscribe()
        except Exception as e:
            logger.warning("Désabonnement du flux impossible: %s", e)

    async def _subscribe(self, session: int) -> None:
        for table in self.TABLES:
            try:
                subscription = await self.gateway.subscribe(
                    table, partial(self._on_change, session)
                )
            except Exception as e:
                logger.error("Abonnement temps réel à %s impossible: %s", table, e)
                continue
            if not self._is_current(session):
                await self._close_subscription(subscription)
                return
            self._subscriptions.append(subscription)

    # ======================================================
    # Chargement initial
    # ======================================================
    async def _fetch_all(self) -> _Bootstrap:
        # Les 4 requêtes partent ensemble, jamais l'une après l'autre
        results = await asyncio.gather(
            *(self.gateway.select_all(table) for table in self.TABLES)
        )
        bootstrap = _Bootstrap()
        for table, rows in zip(self.TABLES, results):
            parsed = (self._parse(table, row) for row in rows or [])
            bootstrap.rows[table] = [record for record in parsed if record is not None]
        return bootstrap

    async def _load(self, session: int) -> bool:
        self._load_seq += 1
        seq = self._load_seq
        self.loading = True
        self._notify()

        outcome, task = await race(self._fetch_all(), self.timeout)

        if not self._is_current(session) or seq != self._load_seq:
            # Session démontée ou chargement plus récent : résultat ignoré
            return False

        bootstrap: Optional[_Bootstrap] = None
        if outcome == DONE:
            try:
                bootstrap = task.result()
            except Exception as e:
                self.last_error = e
                logger.error("Chargement initial en échec: %s", e)
        else:
            logger.error(
                "Chargement initial: pas de réponse en %.0fs. Base peut-être en pause.",
                self.timeout,
            )

        self._install(bootstrap or _Bootstrap())
        self.degraded = bootstrap is None
        self.timed_out = self.degraded and outcome == TIMEOUT

        self._buffering = False
        pending, self._pending = self._pending, []
        if bootstrap is None:
            # État dégradé : collections vides, rien n'est rejoué
            if pending:
                logger.warning("%d évènement(s) temps réel ignoré(s) après échec du chargement", len(pending))
        else:
            for apply in pending:
                apply()

        self.loading = False
        self._notify()
        return bootstrap is not None

    def _install(self, bootstrap: _Bootstrap) -> None:
        for table in self.TABLES:
            self._rows[table] = {
                record.id: record for record in bootstrap.rows.get(table, [])
            }
        self._companies_view = None
        if bootstrap.rows:
            logger.info(
                "Store chargé: %d eventos, %d empresas, %d negociações, %d contatos",
                *(len(self._rows[t]) for t in self.TABLES),
            )

    # ======================================================
    # Flux temps réel
    # ======================================================
    def _parse(self, table: str, row: Row) -> Optional[SQLModel]:
        model = MODELS_BY_TABLE[table]
        values = {k: v for k, v in row.items() if k not in DERIVED_FIELDS.get(table, ())}
        try:
            return model.model_validate(values)
        except PydanticValidationError as e:
            logger.warning("Linha inválida ignorada em %s (%s): %s", table, row.get("id"), e)
            return None

    def _on_change(self, session: int, event: ChangeEvent) -> None:
        if not self._is_current(session):
            return
        self._schedule(partial(self.apply_change, event))
        self._notify()

    def _schedule(self, apply: Callable[[], None]) -> None:
        if self._buffering:
            self._pending.append(apply)
        else:
            apply()

    def apply_change(self, event: ChangeEvent) -> bool:
        """
        Applique un évènement {INSERT, UPDATE, DELETE} par identité.
        Rejouer le même évènement donne le même état.
        """
        rows = self._rows.get(event.table)
        if rows is None:
            return False

        if event.event_type in ("INSERT", "UPDATE"):
            if not event.new:
                return False
            record = self._parse(event.table, event.new)
            if record is None:
                return False
            rows[record.id] = record
        elif event.event_type == "DELETE":
            key = (event.old or {}).get("id")
            if key is None:
                return False
            rows.pop(str(key), None)
        else:
            logger.debug("Type d'évènement inconnu: %s", event.event_type)
            return False

        if event.table in (Table.COMPANIES, Table.CONTACTS):
            self._companies_view = None
        return True

    def _apply_rows(self, table: str, rows: List[Row]) -> None:
        if not self._active:
            return
        for row in rows:
            self._schedule(partial(self.apply_change, ChangeEvent(table, "UPDATE", new=row)))
        self._notify()

    def _remove_local(self, table: str, record_ids: List[str]) -> None:
        if not self._active:
            return
        for record_id in record_ids:
            event = ChangeEvent(table, "DELETE", old={"id": record_id})
            self._schedule(partial(self.apply_change, event))
        self._notify()

    # ======================================================
    # Écritures (helpers)
    # ======================================================
    async def _write(self, action: str, operation) -> List[Row]:
        try:
            return await operation
        except CRMError:
            raise
        except Exception as e:
            logger.error("Erro ao %s: %s", action, e)
            raise WriteError(f"Erro ao {action}: {_error_message(e)}", e) from e

    def _insert_payload(self, table: str, data: Any) -> Row:
        values = _as_dict(data)
        payload = {
            k: v for k, v in values.items()
            if k not in READ_ONLY_FIELDS and k not in DERIVED_FIELDS.get(table, ())
        }
        if "created_at" in MODELS_BY_TABLE[table].model_fields:
            payload["created_at"] = now_utc()
        return to_jsonable_python(payload)

    def _update_payload(self, table: str, data: Any) -> Row:
        values = _as_dict(data)
        payload = {
            k: v for k, v in values.items()
            if k not in READ_ONLY_FIELDS and k not in DERIVED_FIELDS.get(table, ())
        }
        return to_jsonable_python(payload)

    async def _insert_one(self, table: str, payload: Row, action: str) -> SQLModel:
        rows = await self._write(action, self.gateway.insert(table, [payload]))
        if not rows:
            raise WriteError(f"Erro ao {action}: nenhum registro retornado.")
        self._apply_rows(table, rows)
        record = self._parse(table, rows[0])
        if record is None:
            raise WriteError(f"Erro ao {action}: resposta inválida do servidor.")
        return record

    async def _update(self, table: str, record_id: str, payload: Row, action: str):
        if not payload:
            return self._rows[table].get(record_id)
        rows = await self._write(action, self.gateway.update(table, record_id, payload))
        self._apply_rows(table, rows)
        return self._parse(table, rows[0]) if rows else None

    async def _delete(self, table: str, record_id: str, action: str) -> None:
        await self._write(action, self.gateway.delete(table, record_id))
        self._remove_local(table, [record_id])

    async def _delete_dependents(self, table: str, column: str, value: str, action: str) -> None:
        await self._write(action, self.gateway.delete_where(table, column, value))
        stale = [
            record_id for record_id, record in self._rows[table].items()
            if getattr(record, column, None) == value
        ]
        self._remove_local(table, stale)

    # ======================================================
    # Events
    # ======================================================
    async def add_event(self, data: Any) -> Event:
        payload = self._insert_payload(Table.EVENTS, data)
        if _is_blank(payload.get("name")):
            raise ValidationError("Dê um nome para o evento.")
        return await self._insert_one(Table.EVENTS, payload, "criar evento")

    async def update_event(self, event_id: str, updates: Any) -> Optional[Event]:
        payload = self._update_payload(Table.EVENTS, updates)
        if "name" in payload and _is_blank(payload["name"]):
            raise ValidationError("Dê um nome para o evento.")
        return await self._update(Table.EVENTS, event_id, payload, "atualizar evento")

    async def delete_event(self, event_id: str) -> None:
        # Les négociations de l'évènement partent avec lui (pas d'orphelins)
        await self._delete_dependents(
            Table.RELATIONS, "event_id", event_id, "excluir negociações do evento"
        )
        await self._delete(Table.EVENTS, event_id, "excluir evento")

    async def archive_event(self, event_id: str) -> Optional[Event]:
        return await self._update(Table.EVENTS, event_id, {"archived": True}, "arquivar evento")

    async def unarchive_event(self, event_id: str) -> Optional[Event]:
        return await self._update(Table.EVENTS, event_id, {"archived": False}, "desarquivar evento")

    # ======================================================
    # Companies
    # ======================================================
    async def add_company(self, data: Any) -> Company:
        """
        Écriture en deux temps : l'entreprise d'abord (id généré par le
        backend), puis ses contacts valides en lot. L'échec de la seconde
        étape n'annule pas la première : simple avertissement.
        """
        values = _as_dict(data)
        contacts = values.pop("contacts", None) or []
        payload = self._insert_payload(Table.COMPANIES, values)
        if _is_blank(payload.get("name")):
            raise ValidationError("Dê um nome para a empresa.")

        company = await self._insert_one(Table.COMPANIES, payload, "criar empresa")

        to_insert = []
        for contact in contacts:
            contact = _as_dict(contact)
            if _is_blank(contact.get("name")):
                continue
            # id fourni par le front supprimé : c'est le backend qui l'attribue
            row = {k: contact.get(k) for k in CONTACT_FIELDS if k in contact}
            row["name"] = row["name"].strip()
            row["company_id"] = company.id
            to_insert.append(to_jsonable_python(row))

        if to_insert:
            try:
                rows = await self.gateway.insert(Table.CONTACTS, to_insert)
            except Exception as e:
                logger.warning(
                    "Empresa %s criada, mas os contatos não foram salvos: %s",
                    company.id, _error_message(e),
                )
            else:
                self._apply_rows(Table.CONTACTS, rows)

        return self.company(company.id) or company

    async def update_company(self, company_id: str, updates: Any) -> Optional[Company]:
        payload = self._update_payload(Table.COMPANIES, updates)
        if "name" in payload and _is_blank(payload["name"]):
            raise ValidationError("Dê um nome para a empresa.")
        updated = await self._update(Table.COMPANIES, company_id, payload, "atualizar empresa")
        return self.company(company_id) or updated

    async def delete_company(self, company_id: str) -> None:
        await self._delete_dependents(
            Table.RELATIONS, "company_id", company_id, "excluir negociações da empresa"
        )
        await self._delete_dependents(
            Table.CONTACTS, "company_id", company_id, "excluir contatos da empresa"
        )
        await self._delete(Table.COMPANIES, company_id, "excluir empresa")

    async def archive_company(self, company_id: str) -> Optional[Company]:
        return await self._update(
            Table.COMPANIES, company_id, {"archived": True}, "arquivar empresa"
        )

    async def unarchive_company(self, company_id: str) -> Optional[Company]:
        return await self._update(
            Table.COMPANIES, company_id, {"archived": False}, "desarquivar empresa"
        )

    # ======================================================
    # Relations (négociations)
    # ======================================================
    def find_relation(self, event_id: str, company_id: str) -> Optional[Relation]:
        for relation in self._rows[Table.RELATIONS].values():
            if relation.event_id == event_id and relation.company_id == company_id:
                return relation
        return None

    async def add_relation(self, data: Any) -> Relation:
        payload = self._insert_payload(Table.RELATIONS, data)
        event_id = payload.get("event_id")
        company_id = payload.get("company_id")
        if _is_blank(event_id) or _is_blank(company_id):
            raise ValidationError("Selecione um evento e uma empresa.")

        payload.setdefault("status", SponsorshipStatus.CONTATO_FEITO)
        if not SponsorshipStatus.is_valid(payload["status"]):
            raise ValidationError(f"Status inválido: {payload['status']}")
        payload["value_expected"] = payload.get("value_expected") or 0
        payload["value_closed"] = payload.get("value_closed") or 0

        # Réservation synchrone : deux appels concurrents ne peuvent pas écrire le même couple
        pair = (event_id, company_id)
        if pair in self._linking or self.find_relation(event_id, company_id) is not None:
            raise DuplicateRelationError(event_id, company_id)
        self._linking.add(pair)

        # created_at == updated_at à la création
        payload["updated_at"] = payload["created_at"]
        logger.info("Vinculando empresa %s ao evento %s", company_id, event_id)
        try:
            return await self._insert_one(Table.RELATIONS, payload, "vincular")
        finally:
            self._linking.discard(pair)

    async def update_relation(self, relation_id: str, updates: Any) -> Optional[Relation]:
        """
        updated_at est toujours réécrit, quoi qu'envoie l'appelant, et ne
        recule jamais par rapport à la valeur connue.
        """
        payload = self._update_payload(Table.RELATIONS, updates)
        if "status" in payload and not SponsorshipStatus.is_valid(payload["status"]):
            raise ValidationError(f"Status inválido: {payload['status']}")

        stamp = now_utc()
        previous = self._rows[Table.RELATIONS].get(relation_id)
        known = _aware(previous.updated_at) if previous is not None else None
        if known is not None and known > stamp:
            stamp = known
        payload["updated_at"] = stamp.isoformat()

        return await self._update(Table.RELATIONS, relation_id, payload, "atualizar")

    async def delete_relation(self, relation_id: str) -> None:
        await self._delete(Table.RELATIONS, relation_id, "excluir negociação")

    async def archive_relation(self, relation_id: str) -> Optional[Relation]:
        return await self._update(
            Table.RELATIONS, relation_id, {"archived": True}, "arquivar negociação"
        )

    async def unarchive_relation(self, relation_id: str) -> Optional[Relation]:
        return await self._update(
            Table.RELATIONS, relation_id, {"archived": False}, "desarquivar negociação"
        )

    async def link_company(
        self,
        event_id: str,
        *,
        company_id: Optional[str] = None,
        new_company: Any = None,
        status: str = SponsorshipStatus.CONTATO_FEITO,
        value_expected: float = 0,
    ) -> Relation:
        """
        Vincule une entreprise (existante ou créée à la volée) à un évènement.
        La validation se fait avant toute écriture.
        """
        if new_company is not None:
            if _is_blank(_as_dict(new_company).get("name")):
                raise ValidationError("Dê um nome para a empresa.")
        elif _is_blank(company_id):
            raise ValidationError("Selecione uma empresa.")
        if not SponsorshipStatus.is_valid(status):
            raise ValidationError(f"Status inválido: {status}")

        if new_company is not None:
            company = await self.add_company(new_company)
            company_id = company.id

        return await self.add_relation({
            "event_id": event_id,
            "company_id": company_id,
            "status": status,
            "value_expected": float(value_expected or 0),
            "next_action": "",
            "next_action_date": None,
            "responsible": "",
        })

    # ======================================================
    # Contacts
    # ======================================================
    async def add_contact(self, data: Any) -> Optional[Contact]:
        payload = self._insert_payload(Table.CONTACTS, data)
        company_id = payload.get("company_id")
        if _is_blank(company_id):
            raise ValidationError("Contato sem empresa.")
        if _is_blank(payload.get("name")):
            raise ValidationError("Dê um nome para o contato.")

        rows = await self._write("adicionar contato", self.gateway.insert(Table.CONTACTS, [payload]))
        self._apply_rows(Table.CONTACTS, rows)
        # Relecture immédiate plutôt que d'attendre l'écho du flux
        await self.refresh_company_contacts(company_id)
        return self._parse(Table.CONTACTS, rows[0]) if rows else None

    async def update_contact(
        self, contact_id: str, updates: Any, company_id: Optional[str] = None
    ) -> Optional[Contact]:
        existing = await self._write(
            "atualizar contato", self.gateway.select_where(Table.CONTACTS, "id", contact_id)
        )
        if not existing:
            raise NotFoundError(Table.CONTACTS, contact_id)

        payload = self._update_payload(Table.CONTACTS, updates)
        if "name" in payload and _is_blank(payload["name"]):
            raise ValidationError("Dê um nome para o contato.")
        updated = await self._update(Table.CONTACTS, contact_id, payload, "atualizar contato")
        if company_id:
            await self.refresh_company_contacts(company_id)
        return updated

    async def delete_contact(self, contact_id: str, company_id: Optional[str] = None) -> None:
        await self._delete(Table.CONTACTS, contact_id, "excluir contato")
        if company_id:
            await self.refresh_company_contacts(company_id)

    async def refresh_company_contacts(self, company_id: str) -> List[Contact]:
        """
        Resynchronisation faisant autorité : les contacts connus de
        l'entreprise sont remplacés en bloc par ceux du backend.
        """
        try:
            rows = await self.gateway.select_where(Table.CONTACTS, "company_id", company_id)
        except Exception as e:
            logger.error("Recarga dos contatos da empresa %s falhou: %s", company_id, e)
            company = self.company(company_id)
            return company.contacts if company else []

        fresh = [c for c in (self._parse(Table.CONTACTS, row) for row in rows or []) if c]
        if self._active:
            self._schedule(partial(self._replace_contacts, company_id, fresh))
            self._notify()
        return fresh

    def _replace_contacts(self, company_id: str, fresh: List[Contact]) -> None:
        rows = self._rows[Table.CONTACTS]
        for contact_id in [k for k, c in rows.items() if c.company_id == company_id]:
            del rows[contact_id]
        for contact in fresh:
            rows.pop(contact.id, None)
            rows[contact.id] = contact
        self._companies_view = None
