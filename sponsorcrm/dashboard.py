"""
Projections en lecture sur un instantané du store : listes actives /
archivées, tableau de bord, filtres et export CSV.

Les négociations orphelines (évènement ou entreprise disparus) sont
écartées partout.
"""
import csv
import io
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence

from .models import Company, Event, Relation, SponsorshipStatus
from .store import StoreSnapshot

NEXT_ACTIONS_LIMIT = 5

CSV_HEADERS = [
    "Empresa",
    "Status",
    "Valor Esperado",
    "Valor Fechado",
    "Próxima Ação",
    "Data Ação",
]


def _by_id(items: Iterable) -> Dict[str, object]:
    return {item.id: item for item in items}


def _amount(value: Optional[float]) -> float:
    return float(value or 0)


def _sort_by_date(value: Optional[date]):
    # Sans date : en dernier
    return (value is None, value or date.min)


# ======================================================
# Listes
# ======================================================
def active_events(events: Sequence[Event]) -> List[Event]:
    visible = [e for e in events if not e.archived]
    return sorted(visible, key=lambda e: _sort_by_date(e.start_date))


def archived_events(events: Sequence[Event]) -> List[Event]:
    return [e for e in events if e.archived]


def active_companies(companies: Sequence[Company], search: str = "") -> List[Company]:
    needle = search.strip().lower()
    return [
        c for c in companies
        if not c.archived and (not needle or needle in c.name.lower())
    ]


def archived_companies(companies: Sequence[Company]) -> List[Company]:
    return [c for c in companies if c.archived]


def valid_relations(snapshot: StoreSnapshot) -> List[Relation]:
    events = _by_id(snapshot.events)
    companies = _by_id(snapshot.companies)
    return [
        r for r in snapshot.relations
        if r.event_id in events and r.company_id in companies
    ]


def archived_relations(snapshot: StoreSnapshot) -> List[Relation]:
    return [r for r in valid_relations(snapshot) if r.archived]


def event_relations(
    snapshot: StoreSnapshot,
    event_id: str,
    search: str = "",
    status: Optional[str] = None,
) -> List[Relation]:
    """Négociations actives d'un évènement, filtrées par nom d'entreprise et statut."""
    companies = _by_id(snapshot.companies)
    needle = search.strip().lower()
    result = []
    for relation in valid_relations(snapshot):
        if relation.event_id != event_id or relation.archived:
            continue
        if status and status != "all" and relation.status != status:
            continue
        if needle and needle not in companies[relation.company_id].name.lower():
            continue
        result.append(relation)
    return result


def company_relations(snapshot: StoreSnapshot, company_id: str) -> List[Relation]:
    return [
        r for r in valid_relations(snapshot)
        if r.company_id == company_id and not r.archived
    ]


# ======================================================
# Tableau de bord
# ======================================================
@dataclass
class DashboardStats:
    event_id: Optional[str]
    relations: List[Relation] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
    total_expected: float = 0
    total_closed: float = 0
    pendencies: List[Relation] = field(default_factory=list)
    next_actions: List[Relation] = field(default_factory=list)

    @property
    def sponsors(self) -> int:
        return len(self.relations)


def dashboard(snapshot: StoreSnapshot, event_id: Optional[str] = None) -> DashboardStats:
    """
    event_id=None : vue générale (tous les évènements).
    """
    relations = [r for r in valid_relations(snapshot) if not r.archived]
    if event_id and event_id != "all":
        relations = [r for r in relations if r.event_id == event_id]
    else:
        event_id = None

    counts = {status: 0 for status in SponsorshipStatus.ORDER}
    total_expected = 0.0
    total_closed = 0.0
    for relation in relations:
        counts[relation.status] = counts.get(relation.status, 0) + 1
        total_expected += _amount(relation.value_expected)
        total_closed += _amount(relation.value_closed)

    pendencies = [
        r for r in relations if r.status == SponsorshipStatus.PENDENCIA_A_RESOLVER
    ]
    upcoming = [
        r for r in relations
        if r.next_action and r.status not in SponsorshipStatus.CLOSED
    ]
    upcoming.sort(key=lambda r: _sort_by_date(r.next_action_date))

    return DashboardStats(
        event_id=event_id,
        relations=relations,
        counts=counts,
        total_expected=total_expected,
        total_closed=total_closed,
        pendencies=pendencies,
        next_actions=upcoming[:NEXT_ACTIONS_LIMIT],
    )


# ======================================================
# Export CSV
# ======================================================
def _number(value: Optional[float]) -> str:
    amount = _amount(value)
    return str(int(amount)) if amount.is_integer() else str(amount)


def relations_to_csv(relations: Sequence[Relation], companies: Sequence[Company]) -> str:
    names = {c.id: c.name for c in companies}
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for r in relations:
        writer.writerow([
            names.get(r.company_id, ""),
            r.status,
            _number(r.value_expected),
            _number(r.value_closed),
            r.next_action or "",
            r.next_action_date.isoformat() if r.next_action_date else "",
        ])
    return buffer.getvalue()


def csv_filename(event: Event) -> str:
    return f"patrocinadores_{'_'.join(event.name.split())}.csv"
