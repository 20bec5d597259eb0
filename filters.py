"""Search, filter, sort and summary helpers for the public pages and admin sections.

Everything here works on rows already loaded by a controller; nothing talks
to the backend.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from reconciler import AnimalStatus, Entity

# group -> (lowest age, highest age); None is open-ended
AGE_GROUPS = {
    "young": (None, 2),
    "adult": (3, 6),
    "senior": (7, None),
}
RULE_SORTS = ("date-desc", "date-asc", "title-asc", "title-desc")

DONATION_SEARCH = ("name", "email")
VOLUNTEER_SEARCH = ("name", "email")
MESSAGE_SEARCH = ("name", "email", "message")
ADOPTION_SEARCH = ("name", "email", "reason")


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        try:
            ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _contains(value: Any, term: str) -> bool:
    return isinstance(value, str) and term in value.lower()


def in_age_group(age: Optional[int], group: str) -> bool:
    if not group or group == "all":
        return True
    bounds = AGE_GROUPS.get(group)
    if bounds is None or age is None:
        return False
    low, high = bounds
    return (low is None or age >= low) and (high is None or age <= high)


def filter_animals(
    entities: Iterable[Entity],
    search: str = "",
    species: str = "all",
    age_group: str = "all",
    status: Optional[str] = None,
) -> List[Entity]:
    """Adopt page filter: name or breed search, species, age bucket."""
    term = (search or "").strip().lower()
    species = (species or "all").lower()
    result = []
    for animal in entities:
        if status and animal.current_status != status:
            continue
        if term and not (_contains(animal.name, term) or _contains(animal.breed, term)):
            continue
        if species != "all" and (animal.species or "").lower() != species:
            continue
        if not in_age_group(animal.age, age_group):
            continue
        result.append(animal)
    return result


def available_animals(entities: Iterable[Entity]) -> List[Entity]:
    return [e for e in entities if e.current_status == AnimalStatus.AVAILABLE.value]


def text_search(
    rows: Iterable[Mapping[str, Any]],
    term: str,
    fields: Sequence[str],
    exact_fields: Sequence[str] = ("phone",),
) -> List[Mapping[str, Any]]:
    """Case-insensitive substring search over `fields`; `exact_fields` (phone numbers) match as typed."""
    raw = (term or "").strip()
    if not raw:
        return list(rows)
    lowered = raw.lower()
    result = []
    for row in rows:
        if any(_contains(row.get(f), lowered) for f in fields) or any(
            isinstance(row.get(f), str) and raw in row[f] for f in exact_fields
        ):
            result.append(row)
    return result


def filter_found_animals(
    rows: Iterable[Mapping[str, Any]],
    search: str = "",
    species: str = "all",
    location: str = "",
) -> List[Mapping[str, Any]]:
    term = (search or "").strip().lower()
    species = (species or "all").lower()
    place = (location or "").strip().lower()
    result = []
    for row in rows:
        if term and not any(
            _contains(row.get(f), term) for f in ("pet_name", "species", "description", "last_seen_location")
        ):
            continue
        if species != "all" and (row.get("species") or "").lower() != species:
            continue
        if place and not _contains(row.get("last_seen_location"), place):
            continue
        result.append(row)
    return result


# --- Government rules ---

def parse_tags(text: Optional[str]) -> List[str]:
    """'a, b,,c ' -> ['a', 'b', 'c']"""
    if not text:
        return []
    return [tag.strip() for tag in text.split(",") if tag.strip()]


def published_rules(rows: Iterable[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    return [r for r in rows if r.get("published")]


def jurisdictions(rules: Iterable[Mapping[str, Any]]) -> List[str]:
    return list(dict.fromkeys(r["jurisdiction"] for r in rules if r.get("jurisdiction")))


def _rule_date(rule: Mapping[str, Any]) -> datetime:
    return parse_timestamp(rule.get("effective_date")) or datetime.fromtimestamp(0, timezone.utc)


def filter_rules(
    rules: Iterable[Mapping[str, Any]],
    search: str = "",
    jurisdiction: str = "all",
    sort: str = "date-desc",
) -> List[Mapping[str, Any]]:
    term = (search or "").strip().lower()
    result = []
    for rule in rules:
        if term and not (
            _contains(rule.get("title"), term)
            or _contains(rule.get("summary"), term)
            or any(_contains(tag, term) for tag in rule.get("tags") or [])
            or _contains(rule.get("jurisdiction"), term)
        ):
            continue
        if jurisdiction and jurisdiction != "all" and rule.get("jurisdiction") != jurisdiction:
            continue
        result.append(rule)

    if sort == "date-asc":
        result.sort(key=_rule_date)
    elif sort == "title-asc":
        result.sort(key=lambda r: (r.get("title") or "").casefold())
    elif sort == "title-desc":
        result.sort(key=lambda r: (r.get("title") or "").casefold(), reverse=True)
    else:
        result.sort(key=_rule_date, reverse=True)
    return result


# --- Section summaries ---

def donation_totals(rows: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
    rows = list(rows)
    successful = [r for r in rows if str(r.get("payment_status", "")).lower() in ("success", "completed")]
    pending = [r for r in rows if str(r.get("payment_status", "")).lower() == "pending"]
    return {
        "count": len(rows),
        "total": sum(_amount(r) for r in rows),
        "successful_count": len(successful),
        "successful_total": sum(_amount(r) for r in successful),
        "pending_count": len(pending),
    }


def _amount(row: Mapping[str, Any]) -> float:
    try:
        return float(row.get("amount") or 0)
    except (TypeError, ValueError):
        return 0.0


def volunteer_split(rows: Iterable[Mapping[str, Any]]) -> Dict[str, List[Mapping[str, Any]]]:
    rows = list(rows)
    return {
        "experienced": [r for r in rows if r.get("experience_with_animals")],
        "new": [r for r in rows if not r.get("experience_with_animals")],
    }


def message_counts(rows: Iterable[Mapping[str, Any]], now: Optional[datetime] = None) -> Dict[str, int]:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    week_ago = now - timedelta(days=7)
    counts = {"total": 0, "today": 0, "week": 0, "unread": 0}
    for row in rows:
        counts["total"] += 1
        if not row.get("read_status"):
            counts["unread"] += 1
        ts = parse_timestamp(row.get("created_at"))
        if ts is None:
            continue
        if ts.astimezone(now.tzinfo).date() == now.date():
            counts["today"] += 1
        if ts >= week_ago:
            counts["week"] += 1
    return counts


def dashboard_stats(
    animals: Sequence[Entity],
    donations: Sequence[Mapping[str, Any]],
    volunteers: Sequence[Mapping[str, Any]],
    contacts: Sequence[Mapping[str, Any]],
    adoptions: Sequence[Mapping[str, Any]],
) -> Dict[str, Any]:
    return {
        "total_animals": len(animals),
        "available_animals": len([a for a in animals if a.current_status == AnimalStatus.AVAILABLE.value]),
        "adopted_animals": len([a for a in animals if a.current_status == AnimalStatus.ADOPTED.value]),
        "under_care_animals": len([a for a in animals if a.current_status == AnimalStatus.UNDER_CARE.value]),
        "dual_sourced_animals": len([a for a in animals if a.dual_sourced]),
        "total_donations": sum(_amount(d) for d in donations),
        "total_volunteers": len(volunteers),
        "total_messages": len(contacts),
        "unread_messages": len([c for c in contacts if not c.get("read_status")]),
        "total_adoptions": len(adoptions),
        "pending_adoptions": len([a for a in adoptions if (a.get("status") or "pending") == "pending"]),
    }


ACTIVITY_TITLES = {
    "adoption": "New adoption request",
    "donation": "Donation received",
    "volunteer": "New volunteer application",
    "contact": "New contact message",
    "animal": "New animal added",
}


def _activity_details(kind: str, row: Mapping[str, Any]) -> str:
    name = row.get("name") or ""
    if kind == "animal":
        return name
    if kind == "donation":
        return f"₹{_amount(row):,.0f} from {name}"
    return f"from {name}"


def recent_activities(
    rows_by_kind: Mapping[str, Iterable[Mapping[str, Any]]],
    per_kind: int = 3,
    limit: int = 6,
) -> List[Dict[str, Any]]:
    """Newest rows of each kind, merged and cut to `limit`."""
    activities = []
    epoch = datetime.fromtimestamp(0, timezone.utc)
    for kind, rows in rows_by_kind.items():
        newest = sorted(rows, key=lambda r: parse_timestamp(r.get("created_at")) or epoch, reverse=True)
        for row in newest[:per_kind]:
            activities.append({
                "id": f"{kind}-{row.get('id')}",
                "type": kind,
                "title": ACTIVITY_TITLES.get(kind, kind.title()),
                "time": parse_timestamp(row.get("created_at")) or epoch,
                "details": _activity_details(kind, row),
            })
    activities.sort(key=lambda a: a["time"], reverse=True)
    return activities[:limit]
