"""
Formatage pt-BR des dates et montants.

Les dates "YYYY-MM-DD" sont traitées comme des dates calendaires pures :
aucune conversion de fuseau, sinon l'affichage recule d'un jour.
"""
import re
from datetime import date, datetime, timezone
from typing import Any, Optional, Union

_ISO_DAY = re.compile(r"^\d{4}-\d{2}-\d{2}$")

DateLike = Union[str, date, datetime, None]


def _parse(value: DateLike) -> Optional[Union[date, datetime]]:
    if value is None or value == "":
        return None
    if isinstance(value, (date, datetime)):
        return value
    text = str(value).strip()
    if _ISO_DAY.match(text):
        return date.fromisoformat(text)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed


def format_date_display(value: DateLike) -> str:
    """YYYY-MM-DD ou ISO -> DD/MM/YYYY (jour UTC pour les horodatages)."""
    if value is None or value == "":
        return ""
    parsed = _parse(value)
    if parsed is None:
        return str(value)
    return parsed.strftime("%d/%m/%Y")


def format_date_range(start: DateLike, end: DateLike) -> str:
    if not start:
        return "Data não definida"
    first = format_date_display(start)
    if not end or end == start:
        return first
    return f"{first} a {format_date_display(end)}"


def format_datetime(value: DateLike) -> str:
    """Horodatage du journal : "dd/mm/yyyy às HH:MM"."""
    parsed = _parse(value)
    if parsed is None:
        return "" if value is None else str(value)
    if not isinstance(parsed, datetime):
        return parsed.strftime("%d/%m/%Y")
    return parsed.strftime("%d/%m/%Y às %H:%M")


def format_currency(value: Any) -> str:
    """1234.5 -> "R$ 1.234,50"."""
    try:
        amount = float(value or 0)
    except (TypeError, ValueError):
        return str(value)
    text = f"{abs(amount):,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    sign = "-" if amount < 0 else ""
    return f"{sign}R$ {text}"
