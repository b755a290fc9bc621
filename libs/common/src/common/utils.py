from __future__ import annotations

import math
from datetime import UTC, datetime

SECONDS_PER_DAY = 86400


def now_utc() -> datetime:
    return datetime.now(UTC)


def now_utc_iso() -> str:
    return now_utc().isoformat()


def normalize_whitespace(text: str) -> str:
    return " ".join(text.split())


def normalize_terms(values: list[str] | None) -> list[str]:
    """Collapse whitespace, drop blanks and duplicates while keeping first-seen order."""
    seen: set[str] = set()
    terms: list[str] = []
    for value in values or []:
        term = normalize_whitespace(str(value))
        if not term or term in seen:
            continue
        seen.add(term)
        terms.append(term)
    return terms


def parse_iso_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        normalized = value.replace("Z", "+00:00")
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def to_utc_iso(value: str | None) -> str | None:
    """Re-render a parseable timestamp in canonical UTC form; other values pass through."""
    parsed = parse_iso_datetime(value)
    if parsed is None:
        return value
    return parsed.astimezone(UTC).isoformat()


def days_until(moment: datetime, now: datetime | None = None) -> int:
    reference = now or now_utc()
    return math.ceil((moment - reference).total_seconds() / SECONDS_PER_DAY)
