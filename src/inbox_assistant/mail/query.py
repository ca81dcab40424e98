"""Gmail search query construction from the inbox filter form."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any

from inbox_assistant.conventions import GMAIL_BASE_QUERY


def _gmail_date(value: date) -> str:
    return value.strftime("%Y/%m/%d")


def _parse_date(raw: str, name: str) -> date:
    try:
        return date.fromisoformat(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an ISO date (YYYY-MM-DD), got {raw!r}") from e


@dataclass
class MailFilter:
    """Inbox filters. Dates are ISO ``YYYY-MM-DD`` strings."""

    subject: str = ""
    contains: str = ""
    single_date: str = ""
    date_start: str = ""
    date_end: str = ""
    senders: list[str] = field(default_factory=list)

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> MailFilter:
        """Build from query parameters (``senders`` is comma separated)."""
        senders_raw = params.get("senders") or ""
        return cls(
            subject=params.get("subject") or "",
            contains=params.get("contains") or "",
            single_date=params.get("singleDate") or "",
            date_start=params.get("dateStart") or "",
            date_end=params.get("dateEnd") or "",
            senders=[s.strip() for s in senders_raw.split(",") if s.strip()],
        )


def build_query(filters: MailFilter | None = None, base: str = GMAIL_BASE_QUERY) -> str:
    """Translate filters into a Gmail ``q`` string.

    A single date wins over a range. ``before:`` is exclusive in Gmail, so
    the end date is pushed one day forward.

    Raises ValueError on malformed dates.
    """
    parts = [base] if base else []
    if filters is None:
        return " ".join(parts)

    if filters.subject:
        parts.append(f"subject:{filters.subject}")
    if filters.contains:
        parts.append(filters.contains)
    if filters.senders:
        parts.append("(" + " OR ".join(f"from:{s}" for s in filters.senders) + ")")

    if filters.single_date:
        day = _parse_date(filters.single_date, "singleDate")
        parts.append(f"after:{_gmail_date(day)}")
        parts.append(f"before:{_gmail_date(day + timedelta(days=1))}")
    else:
        if filters.date_start:
            start = _parse_date(filters.date_start, "dateStart")
            parts.append(f"after:{_gmail_date(start)}")
        if filters.date_end:
            end = _parse_date(filters.date_end, "dateEnd")
            parts.append(f"before:{_gmail_date(end + timedelta(days=1))}")

    return " ".join(parts)
