# sponsorcrm/models.py
from __future__ import annotations
from typing import Any, Dict, List, Optional
from datetime import date, datetime, timezone

from sqlmodel import SQLModel, Field


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


# ---- Constantes "enum" simples (conformes au reste de l'app) ----
class Table:
    EVENTS = "events"
    COMPANIES = "companies"
    RELATIONS = "event_companies"
    CONTACTS = "contacts"
    AUDIT_LOGS = "audit_logs"


class SponsorshipStatus:
    CONTATO_FEITO = "CONTATO_FEITO"
    NEGOCIACAO = "NEGOCIACAO"
    PENDENCIA_A_RESOLVER = "PENDENCIA_A_RESOLVER"  # interruption, pas une étape
    CONTRATO_ENVIADO = "CONTRATO_ENVIADO"
    CONTRATO_ASSINADO = "CONTRATO_ASSINADO"
    FECHADO_PAGO = "FECHADO_PAGO"
    PERDIDO = "PERDIDO"  # échec terminal

    # Ordre de progression habituel (aucune transition n'est imposée)
    ORDER = (
        CONTATO_FEITO,
        NEGOCIACAO,
        PENDENCIA_A_RESOLVER,
        CONTRATO_ENVIADO,
        CONTRATO_ASSINADO,
        FECHADO_PAGO,
        PERDIDO,
    )

    LABELS = {
        CONTATO_FEITO: "Contato Feito",
        NEGOCIACAO: "Em Negociação",
        PENDENCIA_A_RESOLVER: "Pendência!",
        CONTRATO_ENVIADO: "Contrato Enviado",
        CONTRATO_ASSINADO: "Contrato Assinado",
        FECHADO_PAGO: "Fechado & Pago",
        PERDIDO: "Perdido",
    }

    # Exclus des "prochaines actions" du dashboard
    CLOSED = {FECHADO_PAGO, PERDIDO}

    @classmethod
    def is_valid(cls, status: Any) -> bool:
        return status in cls.ORDER


class AuditAction:
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


# ---- Modèles ----
class Event(SQLModel):
    id: str
    name: str
    start_date: Optional[date] = None
    end_date: Optional[date] = None  # end >= start non vérifié
    city: Optional[str] = None
    venue: Optional[str] = None
    notes: Optional[str] = None
    archived: bool = False
    created_at: Optional[datetime] = None


class Contact(SQLModel):
    id: str
    company_id: str
    name: str = ""
    email: Optional[str] = None
    whatsapp: Optional[str] = None
    role: Optional[str] = None


class Company(SQLModel):
    id: str
    name: str
    segment: Optional[str] = None
    notes: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    archived: bool = False
    created_at: Optional[datetime] = None

    # Copie dérivée, jamais persistée : la source de vérité reste la table contacts
    contacts: List[Contact] = Field(default_factory=list)


class Relation(SQLModel):
    """
    Négociation de parrainage entre une entreprise et un événement.
    Au plus une relation par couple (event_id, company_id).
    """
    id: str
    event_id: str
    company_id: str
    status: str = SponsorshipStatus.CONTATO_FEITO
    value_expected: float = 0
    value_closed: float = 0
    next_action: Optional[str] = None
    next_action_date: Optional[date] = None
    responsible: Optional[str] = None
    archived: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AuditLog(SQLModel):
    """
    Ligne du journal d'audit (append-only, alimenté par des triggers côté base).
    """
    id: str
    table_name: str
    record_id: str
    action: str
    old_data: Optional[Dict[str, Any]] = None
    new_data: Optional[Dict[str, Any]] = None
    user_id: Optional[str] = None
    created_at: datetime


# Table distante -> modèle
MODELS_BY_TABLE = {
    Table.EVENTS: Event,
    Table.COMPANIES: Company,
    Table.RELATIONS: Relation,
    Table.CONTACTS: Contact,
}

# Champs que le client ne doit jamais écrire lui-même
READ_ONLY_FIELDS = {"id", "created_at"}
DERIVED_FIELDS = {Table.COMPANIES: {"contacts"}}


# ---- Payloads d'entrée (création) ----
class EventCreate(SQLModel):
    name: str
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    city: Optional[str] = None
    venue: Optional[str] = None
    notes: Optional[str] = None


class ContactDraft(SQLModel):
    """
    Contact saisi dans le formulaire d'entreprise ; l'id éventuel est
    celui du front et n'est jamais envoyé au backend.
    """
    id: Optional[str] = None
    name: str = ""
    email: Optional[str] = None
    whatsapp: Optional[str] = None
    role: Optional[str] = None


class ContactCreate(SQLModel):
    """company_id est imposé par la route quand il y en a une."""
    company_id: Optional[str] = None
    name: str = ""
    email: Optional[str] = None
    whatsapp: Optional[str] = None
    role: Optional[str] = None


class CompanyCreate(SQLModel):
    name: str
    segment: Optional[str] = None
    notes: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    contacts: List[ContactDraft] = Field(default_factory=list)


class RelationCreate(SQLModel):
    event_id: str
    company_id: str
    status: str = SponsorshipStatus.CONTATO_FEITO
    value_expected: float = 0
    value_closed: float = 0
    next_action: Optional[str] = None
    next_action_date: Optional[date] = None
    responsible: Optional[str] = None


class SponsorLink(SQLModel):
    """Vincular patrocinador : entreprise existante OU nouvelle entreprise."""
    company_id: Optional[str] = None
    new_company: Optional[CompanyCreate] = None
    status: str = SponsorshipStatus.CONTATO_FEITO
    value_expected: float = 0


class Credentials(SQLModel):
    email: str
    password: str
