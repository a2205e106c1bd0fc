import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, Callable, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, Response
from jinja2 import Environment, FileSystemLoader, select_autoescape
from supabase import AuthError

from .audit import AuditLogReader
from .config import Settings, get_settings
from .dashboard import (
    active_companies,
    active_events,
    archived_companies,
    archived_events,
    archived_relations,
    company_relations,
    csv_filename,
    dashboard as build_dashboard,
    event_relations,
    relations_to_csv,
)
from .database import Backend, DataGateway, IdentityProvider, supabase_session
from .formatting import format_date_range
from .exceptions import (
    AuditUnavailableError,
    CRMError,
    DuplicateRelationError,
    NotFoundError,
    ValidationError,
    WriteError,
)
from .models import (
    CompanyCreate,
    ContactCreate,
    Credentials,
    EventCreate,
    RelationCreate,
    SponsorLink,
    SponsorshipStatus,
)
from .session import SessionGuard, SessionState
from .store import SyncStore

logger = logging.getLogger(__name__)


# ======================================================
# Templating
# ======================================================
BASE_DIR = os.path.dirname(__file__)
TEMPLATES_DIR = os.path.join(BASE_DIR, "templates")

env = Environment(
    loader=FileSystemLoader(TEMPLATES_DIR),
    autoescape=select_autoescape(["html", "xml"])
)


def render_template(name: str, context: dict, status_code: int = 200) -> HTMLResponse:
    template = env.get_template(name)
    return HTMLResponse(template.render(**context), status_code=status_code)


# ======================================================
# Runtime : garde de session -> store
# ======================================================
class Runtime:
    """
    Regroupe les composants d'une instance de l'app. Le store démarre quand
    la session est établie et se démonte quand elle disparaît.
    """

    def __init__(self, gateway: DataGateway, identity: IdentityProvider, settings: Settings):
        self.store = SyncStore(gateway, timeout=settings.store_timeout)
        self.guard = SessionGuard(identity, timeout=settings.session_timeout)
        self.audit = AuditLogReader(gateway, limit=settings.audit_limit)
        self.guard.add_listener(self._on_session)

    async def _on_session(self, state: str, session: Optional[Any]) -> None:
        if state == SessionState.AUTHENTICATED:
            await self.store.start()
        elif state == SessionState.UNAUTHENTICATED:
            await self.store.stop()

    async def start(self) -> str:
        state = await self.guard.start()
        await self.guard.wait_listeners()
        return state

    async def close(self) -> None:
        await self.guard.close()
        await self.store.stop()


class BackendUnavailable(Exception):
    def __init__(self, reason: str, timeout: float):
        self.reason = reason
        self.timeout = timeout
        super().__init__(reason)


# ======================================================
# Dépendances
# ======================================================
def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def require_session(runtime: Runtime = Depends(get_runtime)) -> Runtime:
    state = runtime.guard.state
    if state == SessionState.UNREACHABLE:
        raise BackendUnavailable("session", runtime.guard.timeout)
    if state == SessionState.INITIALIZING:
        raise HTTPException(503, "Carregando Sistema...")
    if state == SessionState.UNAUTHENTICATED:
        raise HTTPException(401, "Sessão não encontrada. Faça login.")
    return runtime


def get_store(runtime: Runtime = Depends(require_session)) -> SyncStore:
    store = runtime.store
    if store.degraded:
        raise BackendUnavailable("store", store.timeout)
    if store.loading or not store.active:
        raise HTTPException(503, "Carregando dados...")
    return store


def _found(record, label: str):
    if record is None:
        raise HTTPException(404, f"{label} não encontrado(a)")
    return record


router = APIRouter()


# ======================================================
# Session
# ======================================================
@router.get("/session")
def session_status(runtime: Runtime = Depends(get_runtime)):
    guard = runtime.guard
    user = guard.user
    return {
        "state": guard.state,
        "user_id": getattr(user, "id", None),
        "email": getattr(user, "email", None),
    }


@router.post("/session/retry")
async def session_retry(runtime: Runtime = Depends(get_runtime)):
    state = await runtime.guard.retry()
    await runtime.guard.wait_listeners()
    return {"state": state}


@router.post("/session/sign-in")
async def session_sign_in(credentials: Credentials, runtime: Runtime = Depends(get_runtime)):
    if runtime.guard.state == SessionState.UNREACHABLE:
        raise BackendUnavailable("session", runtime.guard.timeout)
    try:
        await runtime.guard.sign_in(credentials.email.strip(), credentials.password)
    except AuthError as e:
        logger.info("Login recusado para %s: %s", credentials.email, e)
        raise HTTPException(401, "E-mail ou senha inválidos.")
    await runtime.guard.wait_listeners()
    return {"ok": True}


@router.post("/session/sign-out")
async def session_sign_out(runtime: Runtime = Depends(get_runtime)):
    await runtime.guard.sign_out()
    await runtime.guard.wait_listeners()
    return {"ok": True}


# ======================================================
# Store
# ======================================================
@router.get("/store")
def store_status(runtime: Runtime = Depends(require_session)):
    store = runtime.store
    return {
        "active": store.active,
        "loading": store.loading,
        "timed_out": store.timed_out,
        "degraded": store.degraded,
    }


@router.post("/store/reload")
async def store_reload(runtime: Runtime = Depends(require_session)):
    ok = await runtime.store.reload()
    return {"ok": ok, "timed_out": runtime.store.timed_out}


# ======================================================
# Dashboard & listes
# ======================================================
@router.get("/dashboard")
def dashboard_view(event_id: Optional[str] = None, store: SyncStore = Depends(get_store)):
    snapshot = store.snapshot()
    stats = build_dashboard(snapshot, event_id)
    event = store.event(stats.event_id) if stats.event_id else None
    return {
        "event": event,
        "period": format_date_range(event.start_date, event.end_date) if event else None,
        "events": active_events(snapshot.events),
        "sponsors": stats.sponsors,
        "counts": stats.counts,
        "labels": SponsorshipStatus.LABELS,
        "total_expected": stats.total_expected,
        "total_closed": stats.total_closed,
        "pendencies": stats.pendencies,
        "next_actions": stats.next_actions,
    }


@router.get("/archived")
def archived_view(store: SyncStore = Depends(get_store)):
    snapshot = store.snapshot()
    return {
        "events": archived_events(snapshot.events),
        "companies": archived_companies(snapshot.companies),
        "relations": archived_relations(snapshot),
    }


@router.get("/history")
async def history_view(runtime: Runtime = Depends(require_session)):
    views = await runtime.audit.fetch_views()
    return [
        {
            "id": v.log.id,
            "action": v.action_label,
            "table": v.table_label,
            "record": v.record_ref,
            "actor": v.actor,
            "when": v.when,
            "kind": v.summary.kind,
            "message": v.summary.message,
            "fields": [{"field": k, "value": val} for k, val in v.summary.fields],
            "changes": [
                {"field": c.field, "before": c.before_display, "after": c.after_display}
                for c in v.summary.changes
            ],
        }
        for v in views
    ]


# ======================================================
# Events
# ======================================================
@router.get("/events")
def events_list(store: SyncStore = Depends(get_store)):
    return active_events(store.events)


@router.post("/events", status_code=201)
async def events_create(data: EventCreate, store: SyncStore = Depends(get_store)):
    return await store.add_event(data)


@router.get("/events/{event_id}")
def events_detail(event_id: str, store: SyncStore = Depends(get_store)):
    return _found(store.event(event_id), "Evento")


@router.patch("/events/{event_id}")
async def events_update(
    event_id: str, updates: Dict[str, Any] = Body(...), store: SyncStore = Depends(get_store)
):
    return _found(await store.update_event(event_id, updates), "Evento")


@router.delete("/events/{event_id}", status_code=204)
async def events_delete(event_id: str, store: SyncStore = Depends(get_store)):
    await store.delete_event(event_id)
    return Response(status_code=204)


@router.post("/events/{event_id}/archive")
async def events_archive(event_id: str, store: SyncStore = Depends(get_store)):
    return _found(await store.archive_event(event_id), "Evento")


@router.post("/events/{event_id}/unarchive")
async def events_unarchive(event_id: str, store: SyncStore = Depends(get_store)):
    return _found(await store.unarchive_event(event_id), "Evento")


@router.get("/events/{event_id}/relations")
def events_relations(
    event_id: str,
    search: str = "",
    status: Optional[str] = None,
    store: SyncStore = Depends(get_store),
):
    _found(store.event(event_id), "Evento")
    return event_relations(store.snapshot(), event_id, search, status)


@router.get("/events/{event_id}/relations.csv", response_class=PlainTextResponse)
def events_relations_csv(
    event_id: str,
    search: str = "",
    status: Optional[str] = None,
    store: SyncStore = Depends(get_store),
):
    event = _found(store.event(event_id), "Evento")
    snapshot = store.snapshot()
    content = relations_to_csv(
        event_relations(snapshot, event_id, search, status), snapshot.companies
    )
    return PlainTextResponse(
        content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{csv_filename(event)}"'},
    )


@router.post("/events/{event_id}/sponsors", status_code=201)
async def events_link_sponsor(
    event_id: str, link: SponsorLink, store: SyncStore = Depends(get_store)
):
    _found(store.event(event_id), "Evento")
    return await store.link_company(
        event_id,
        company_id=link.company_id,
        new_company=link.new_company,
        status=link.status,
        value_expected=link.value_expected,
    )


# ======================================================
# Companies & contacts
# ======================================================
@router.get("/companies")
def companies_list(search: str = "", store: SyncStore = Depends(get_store)):
    return active_companies(store.companies, search)


@router.post("/companies", status_code=201)
async def companies_create(data: CompanyCreate, store: SyncStore = Depends(get_store)):
    return await store.add_company(data)


@router.get("/companies/{company_id}")
def companies_detail(company_id: str, store: SyncStore = Depends(get_store)):
    company = _found(store.company(company_id), "Empresa")
    return {
        "company": company,
        "relations": company_relations(store.snapshot(), company_id),
    }


@router.patch("/companies/{company_id}")
async def companies_update(
    company_id: str, updates: Dict[str, Any] = Body(...), store: SyncStore = Depends(get_store)
):
    return _found(await store.update_company(company_id, updates), "Empresa")


@router.delete("/companies/{company_id}", status_code=204)
async def companies_delete(company_id: str, store: SyncStore = Depends(get_store)):
    await store.delete_company(company_id)
    return Response(status_code=204)


@router.post("/companies/{company_id}/archive")
async def companies_archive(company_id: str, store: SyncStore = Depends(get_store)):
    return _found(await store.archive_company(company_id), "Empresa")


@router.post("/companies/{company_id}/unarchive")
async def companies_unarchive(company_id: str, store: SyncStore = Depends(get_store)):
    return _found(await store.unarchive_company(company_id), "Empresa")


@router.post("/companies/{company_id}/contacts", status_code=201)
async def companies_add_contact(
    company_id: str, data: ContactCreate, store: SyncStore = Depends(get_store)
):
    await store.add_contact({**data.model_dump(exclude_unset=True), "company_id": company_id})
    return _found(store.company(company_id), "Empresa")


@router.post("/companies/{company_id}/contacts/refresh")
async def companies_refresh_contacts(company_id: str, store: SyncStore = Depends(get_store)):
    return await store.refresh_company_contacts(company_id)


@router.patch("/contacts/{contact_id}")
async def contacts_update(
    contact_id: str,
    updates: Dict[str, Any] = Body(...),
    company_id: Optional[str] = None,
    store: SyncStore = Depends(get_store),
):
    return await store.update_contact(contact_id, updates, company_id)


@router.delete("/contacts/{contact_id}", status_code=204)
async def contacts_delete(
    contact_id: str, company_id: Optional[str] = None, store: SyncStore = Depends(get_store)
):
    await store.delete_contact(contact_id, company_id)
    return Response(status_code=204)


# ======================================================
# Relations
# ======================================================
@router.post("/relations", status_code=201)
async def relations_create(data: RelationCreate, store: SyncStore = Depends(get_store)):
    return await store.add_relation(data)


@router.patch("/relations/{relation_id}")
async def relations_update(
    relation_id: str, updates: Dict[str, Any] = Body(...), store: SyncStore = Depends(get_store)
):
    return _found(await store.update_relation(relation_id, updates), "Negociação")


@router.delete("/relations/{relation_id}", status_code=204)
async def relations_delete(relation_id: str, store: SyncStore = Depends(get_store)):
    await store.delete_relation(relation_id)
    return Response(status_code=204)


@router.post("/relations/{relation_id}/archive")
async def relations_archive(relation_id: str, store: SyncStore = Depends(get_store)):
    return _found(await store.archive_relation(relation_id), "Negociação")


@router.post("/relations/{relation_id}/unarchive")
async def relations_unarchive(relation_id: str, store: SyncStore = Depends(get_store)):
    return _found(await store.unarchive_relation(relation_id), "Negociação")


# ======================================================
# Healthcheck
# ======================================================
@router.get("/health")
def health(runtime: Runtime = Depends(get_runtime)):
    return {"session": runtime.guard.state, "store_degraded": runtime.store.degraded}


# ======================================================
# App
# ======================================================
BackendFactory = Callable[[Settings], AsyncContextManager[Backend]]


def _status_for(exc: CRMError) -> int:
    if isinstance(exc, DuplicateRelationError):
        return 409
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, AuditUnavailableError):
        return 503
    if isinstance(exc, WriteError):
        return 502
    return 500


def create_app(
    backend_factory: Optional[BackendFactory] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or get_settings()
        logging.basicConfig(
            level=cfg.log_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
        factory = backend_factory or supabase_session
        async with factory(cfg) as backend:
            runtime = Runtime(backend.gateway, backend.identity, cfg)
            app.state.runtime = runtime
            logger.info("Sponsor CRM: verificando sessão")
            await runtime.start()
            try:
                yield
            finally:
                logger.info("Sponsor CRM: encerrando")
                await runtime.close()

    app = FastAPI(title="Sponsor CRM", lifespan=lifespan)

    @app.exception_handler(CRMError)
    async def crm_error_handler(request: Request, exc: CRMError):
        return JSONResponse({"detail": str(exc)}, status_code=_status_for(exc))

    @app.exception_handler(BackendUnavailable)
    async def unavailable_handler(request: Request, exc: BackendUnavailable):
        retry_url = "/session/retry" if exc.reason == "session" else "/store/reload"
        return render_template(
            "unavailable.html",
            {"request": request, "reason": exc.reason, "timeout": exc.timeout, "retry_url": retry_url},
            status_code=503,
        )

    app.include_router(router)
    return app


app = create_app()
