"""
Lecture du journal d'audit (append-only) et mise en forme des différences.

Indépendant du store : chaque ouverture de la vue déclenche une lecture,
aucune écriture, aucun abonnement.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from .config import get_settings
from .database import DataGateway
from .exceptions import AuditUnavailableError
from .formatting import format_currency, format_date_display, format_datetime
from .models import AuditAction, AuditLog, Table

logger = logging.getLogger(__name__)

# Jamais listés à la création : identifiant, horodatages, auteur
INSERT_EXCLUDED = {"id", "created_at", "updated_at", "user_id"}
UPDATE_EXCLUDED = {"updated_at"}

EMPTY = "vazio"
NO_DETAILS = "Sem detalhes."
NO_CHANGES = "Nenhuma alteração visível nos dados."

ACTION_LABELS = {
    AuditAction.INSERT: "CRIADO",
    AuditAction.UPDATE: "EDITADO",
    AuditAction.DELETE: "EXCLUÍDO",
}

TABLE_LABELS = {
    Table.EVENTS: "Evento",
    Table.COMPANIES: "Empresa",
    Table.RELATIONS: "Negociação",
    Table.CONTACTS: "Contato",
}

MISSING = object()

SETUP_HINT = (
    "A tabela de auditoria ainda não foi criada no banco de dados. "
    "Execute o script setup_audit_logs.sql no SQL Editor do Supabase para ativar o histórico."
)


# ======================================================
# Formatage des valeurs
# ======================================================
def _is_money(key: str) -> bool:
    return key.startswith("value")


def _is_date(key: str) -> bool:
    return key.endswith("_date") or key.endswith("_at") or key == "date"


def format_value(key: str, value: Any) -> str:
    if value is MISSING or value is None or value == "":
        return EMPTY
    if isinstance(value, bool):
        return "Sim" if value else "Não"
    if _is_money(key) and isinstance(value, (int, float, str)):
        return format_currency(value)
    if _is_date(key) and isinstance(value, str):
        return format_date_display(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def _serialize(value: Any) -> Optional[str]:
    # Une clé absente n'équivaut pas à null
    if value is MISSING:
        return None
    return json.dumps(value, sort_keys=True, default=str)


# ======================================================
# Différences
# ======================================================
@dataclass(frozen=True)
class FieldChange:
    field: str
    before: Any
    after: Any

    @property
    def before_display(self) -> str:
        return format_value(self.field, self.before)

    @property
    def after_display(self) -> str:
        return format_value(self.field, self.after)


@dataclass
class ChangeSummary:
    kind: str                               # INSERT | UPDATE | DELETE | NONE
    fields: List[Tuple[str, str]] = field(default_factory=list)   # INSERT
    changes: List[FieldChange] = field(default_factory=list)      # UPDATE
    message: Optional[str] = None           # DELETE / aucun changement


def _inserted_fields(new_data: Dict[str, Any]) -> List[Tuple[str, str]]:
    fields = []
    for key, value in new_data.items():
        if key in INSERT_EXCLUDED or key.endswith("_id"):
            continue
        if value is None or value == "":
            continue
        fields.append((key, format_value(key, value)))
    return fields


def _deleted_line(old_data: Dict[str, Any]) -> str:
    label = old_data.get("name") or old_data.get("title") or f"ID: {old_data.get('id')}"
    return f"{label} excluído."


def diff_records(
    old_data: Optional[Dict[str, Any]], new_data: Optional[Dict[str, Any]]
) -> List[FieldChange]:
    old_data = old_data or {}
    new_data = new_data or {}
    keys = list(old_data)
    keys += [k for k in new_data if k not in old_data]

    changes = []
    for key in keys:
        if key in UPDATE_EXCLUDED:
            continue
        before = old_data.get(key, MISSING)
        after = new_data.get(key, MISSING)
        if _serialize(before) != _serialize(after):
            changes.append(FieldChange(
                key,
                None if before is MISSING else before,
                None if after is MISSING else after,
            ))
    return changes


def describe_changes(
    old_data: Optional[Dict[str, Any]], new_data: Optional[Dict[str, Any]]
) -> ChangeSummary:
    if not old_data and not new_data:
        return ChangeSummary(kind="NONE", message=NO_DETAILS)
    if not old_data:
        return ChangeSummary(kind=AuditAction.INSERT, fields=_inserted_fields(new_data))
    if not new_data:
        return ChangeSummary(kind=AuditAction.DELETE, message=_deleted_line(old_data))

    changes = diff_records(old_data, new_data)
    if not changes:
        return ChangeSummary(kind=AuditAction.UPDATE, message=NO_CHANGES)
    return ChangeSummary(kind=AuditAction.UPDATE, changes=changes)


# ======================================================
# Présentation d'une ligne
# ======================================================
def short_id(value: Optional[str]) -> str:
    return value.split("-")[0] if value else ""


@dataclass
class AuditEntryView:
    log: AuditLog
    action_label: str
    table_label: str
    record_ref: str
    actor: str
    when: str
    summary: ChangeSummary


def present(log: AuditLog) -> AuditEntryView:
    return AuditEntryView(
        log=log,
        action_label=ACTION_LABELS.get(log.action, log.action),
        table_label=TABLE_LABELS.get(log.table_name, log.table_name),
        record_ref=f"{short_id(log.record_id)}...",
        actor=short_id(log.user_id) or "Sistema",
        when=format_datetime(log.created_at),
        summary=describe_changes(log.old_data, log.new_data),
    )


# ======================================================
# Lecteur
# ======================================================
def _is_missing_table(exc: Exception) -> bool:
    code = getattr(exc, "code", None)
    message = getattr(exc, "message", None) or str(exc)
    return code == "42P01" or "schema cache" in (message or "")


class AuditLogReader:
    def __init__(self, gateway: DataGateway, limit: Optional[int] = None):
        self.gateway = gateway
        self.limit = limit or get_settings().audit_limit

    async def fetch(self) -> List[AuditLog]:
        """Les N dernières lignes, de la plus récente à la plus ancienne."""
        try:
            rows = await self.gateway.select_recent(Table.AUDIT_LOGS, "created_at", self.limit)
        except Exception as e:
            if _is_missing_table(e):
                logger.warning("Tabela de auditoria ausente: %s", e)
                raise AuditUnavailableError(SETUP_HINT) from e
            logger.error("Erro ao carregar o histórico: %s", e)
            raise

        logs = []
        for row in rows:
            try:
                logs.append(AuditLog.model_validate(row))
            except PydanticValidationError as e:
                logger.warning("Linha de auditoria ignorada (%s): %s", row.get("id"), e)
        return logs

    async def fetch_views(self) -> List[AuditEntryView]:
        return [present(log) for log in await self.fetch()]
