"""Merge the adopt_animals and rescued_animals tables into one animal view.

The same animal may be listed in either table or in both. Rows are joined
on their name, compared case-insensitively; when both tables carry an animal
the rescued_animals values win for every field they actually hold, except
the display name, which keeps the spelling seen first. Each
merged Entity remembers which rows it came from (its provenance) so status
changes can be written back to every one of them.
"""
import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel

from errors import ValidationError
from validators import ANIMAL_STATUSES

logger = logging.getLogger("shelter.reconciler")

ADOPT_TABLE = "adopt_animals"
RESCUED_TABLE = "rescued_animals"


class Source(str, Enum):
    ADOPT = ADOPT_TABLE
    RESCUED = RESCUED_TABLE


class AnimalStatus(str, Enum):
    AVAILABLE = "Available"
    ADOPTED = "Adopted"
    UNDER_CARE = "Under Care"


class ProvenanceRef(BaseModel):
    source: Source
    record_id: str


class Entity(BaseModel):
    key: str
    name: str
    species: Optional[str] = None
    breed: Optional[str] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    rescue_date: Optional[str] = None
    story: Optional[str] = None
    health_status: Optional[str] = None
    current_status: Optional[str] = None
    image_url: Optional[str] = None
    created_at: Optional[str] = None
    provenance: List[ProvenanceRef] = []
    dual_sourced: bool = False

    def record_id(self, source: Source) -> Optional[str]:
        return next((p.record_id for p in self.provenance if p.source == source), None)

    @property
    def sources(self) -> List[str]:
        return [p.source.value for p in self.provenance]


class Diagnostic(BaseModel):
    source: Source
    record_id: Optional[str] = None
    reason: str


class ReconcileResult(BaseModel):
    entities: List[Entity] = []
    diagnostics: List[Diagnostic] = []

    def by_key(self) -> Dict[str, Entity]:
        return {e.key: e for e in self.entities}


# Entity field -> column, per table. Story lives in different columns.
FIELD_COLUMNS: Dict[Source, Dict[str, Tuple[str, ...]]] = {
    Source.ADOPT: {"story": ("description",)},
    Source.RESCUED: {"story": ("rescue_story", "description")},
}
COPIED_FIELDS = (
    "name", "species", "breed", "age", "gender", "rescue_date",
    "health_status", "current_status", "image_url", "created_at",
)


def entity_key(name: Any) -> Optional[str]:
    """Join key for a name, or None when the name is missing or blank."""
    if not isinstance(name, str) or not name.strip():
        return None
    return name.lower()


def _coerce_age(value: Any) -> Optional[int]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _fields_from_row(row: Mapping[str, Any], source: Source) -> Dict[str, Any]:
    """Every entity field the row actually holds (null columns are left out)."""
    fields: Dict[str, Any] = {}
    for name in COPIED_FIELDS:
        value = row.get(name)
        if name == "age":
            value = _coerce_age(value)
        if value is not None:
            fields[name] = value
    for name, columns in FIELD_COLUMNS[source].items():
        for column in columns:
            if row.get(column) is not None:
                fields[name] = row[column]
                break
    return fields


def merge(adopt_rows: Iterable[Mapping[str, Any]], rescued_rows: Iterable[Mapping[str, Any]]) -> ReconcileResult:
    merged: Dict[str, Entity] = {}
    diagnostics: List[Diagnostic] = []

    def reject(source: Source, row: Mapping[str, Any], reason: str) -> None:
        record_id = row.get("id")
        diag = Diagnostic(source=source, record_id=str(record_id) if record_id is not None else None, reason=reason)
        diagnostics.append(diag)
        logger.warning("Skipped %s row %s: %s", source.value, diag.record_id, reason)

    for source, rows in ((Source.ADOPT, adopt_rows), (Source.RESCUED, rescued_rows)):
        for row in rows:
            key = entity_key(row.get("name"))
            if key is None:
                reject(source, row, "missing name")
                continue
            if row.get("id") is None:
                reject(source, row, "missing id")
                continue
            ref = ProvenanceRef(source=source, record_id=str(row["id"]))
            fields = _fields_from_row(row, source)
            current = merged.get(key)
            if current is None:
                merged[key] = Entity(key=key, provenance=[ref], **fields)
                continue
            if current.record_id(source) is not None:
                reject(source, row, f"duplicate name '{row['name']}' in {source.value}")
                continue
            # the name is the join key; the first spelling seen is kept for display
            fields.pop("name", None)
            data = current.model_dump()
            data.update(fields)
            data["provenance"] = current.provenance + [ref]
            data["dual_sourced"] = True
            merged[key] = Entity(**data)

    return ReconcileResult(entities=list(merged.values()), diagnostics=diagnostics)


def parse_status(value: Any) -> AnimalStatus:
    """Accept only the exact wire strings; anything else is rejected before a write."""
    if isinstance(value, AnimalStatus):
        return value
    if isinstance(value, str) and value in ANIMAL_STATUSES:
        return AnimalStatus(value)
    raise ValidationError({"current_status": f"Invalid status {value!r}; expected one of {', '.join(ANIMAL_STATUSES)}"})


def status_targets(entity: Entity, status: Any) -> List[Tuple[str, str, Dict[str, Any]]]:
    """One (collection, record_id, patch) per provenance member."""
    value = parse_status(status).value
    return [(p.source.value, p.record_id, {"current_status": value}) for p in entity.provenance]


def entity_patch_for(source: Source, patch: Mapping[str, Any]) -> Dict[str, Any]:
    """Translate an entity-level edit into the columns of one table."""
    columns: Dict[str, Any] = {}
    for name, value in patch.items():
        if name in ("key", "provenance", "dual_sourced", "created_at"):
            continue
        if name == "story":
            for column in FIELD_COLUMNS[source]["story"]:
                columns[column] = value
            continue
        columns[name] = value
    return columns
