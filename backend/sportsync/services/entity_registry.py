"""
backend/sportsync/services/entity_registry.py

Purpose:
    Declarative per-entity registry used by the generic unifier, grouper,
    repository and sync orchestrator. Each entity type declares its compared
    fields, foreign keys, allowed filters, optional grouping and the fields an
    operator may override by hand. No per-entity branching lives elsewhere.

Dependencies:
    - dataclasses
    - datetime
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Literal

FieldKind = Literal["text", "code", "result", "number", "bool", "date", "timestamp"]
FilterKind = Literal["int", "str", "date", "bool"]
FilterOp = Literal["eq", "gte_day", "lte_day"]


class UnknownEntityTypeError(ValueError):
    """Raised for an entity type the registry does not know."""


class InvalidFilterError(ValueError):
    """Raised when a filter key is not allowed or its value is malformed."""


@dataclass(frozen=True)
class FieldSpec:
    name: str
    kind: FieldKind = "text"
    # None, missing, "" and whitespace-only compare equal when set.
    blank_as_null: bool = False
    required: bool = False


@dataclass(frozen=True)
class ForeignKeySpec:
    source_field: str
    target_entity: str
    local_field: str
    required: bool = True


@dataclass(frozen=True)
class FilterSpec:
    kind: FilterKind
    local_field: str
    op: FilterOp = "eq"


@dataclass(frozen=True)
class GroupSpec:
    key_fields: tuple[str, ...]
    display_fields: tuple[str, ...] = ()
    sort_field: str | None = None
    descending: bool = False


@dataclass(frozen=True)
class EntitySpec:
    entity_type: str
    collection: str
    fields: tuple[FieldSpec, ...]
    foreign_keys: tuple[ForeignKeySpec, ...] = ()
    # Provider fields persisted as-is but never compared.
    stored_fields: tuple[str, ...] = ()
    filters: dict[str, FilterSpec] = field(default_factory=dict)
    required_filters: tuple[str, ...] = ()
    group: GroupSpec | None = None
    override_fields: tuple[str, ...] = ()
    override_marker: str | None = None
    override_actor_field: str | None = None
    state_field: str | None = None
    terminal_states: frozenset[str] = frozenset()
    # Terminal states whose outcome feeds settlement.
    settlement_states: frozenset[str] = frozenset()
    # Required filters that split the data into disjoint slices; lock scope.
    lock_filters: tuple[str, ...] = ()

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(spec.name for spec in self.fields)

    def field_spec(self, name: str) -> FieldSpec | None:
        for spec in self.fields:
            if spec.name == name:
                return spec
        return None

    @property
    def supports_override(self) -> bool:
        return bool(self.override_fields and self.override_marker)


_IMAGE = FieldSpec("image_path", "text", blank_as_null=True)

ENTITY_SPECS: dict[str, EntitySpec] = {
    "countries": EntitySpec(
        entity_type="countries",
        collection="countries",
        fields=(
            FieldSpec("name", "text", required=True),
            FieldSpec("iso2", "code", blank_as_null=True),
            FieldSpec("iso3", "code", blank_as_null=True),
            _IMAGE,
        ),
        stored_fields=("continent_external_id",),
    ),
    "leagues": EntitySpec(
        entity_type="leagues",
        collection="leagues",
        fields=(
            FieldSpec("name", "text", required=True),
            _IMAGE,
            FieldSpec("type", "text", blank_as_null=True),
            FieldSpec("short_code", "code", blank_as_null=True),
        ),
        foreign_keys=(
            ForeignKeySpec("country_external_id", "countries", "country_id", required=False),
        ),
        filters={"country_external_id": FilterSpec("int", "country_external_id")},
    ),
    "seasons": EntitySpec(
        entity_type="seasons",
        collection="seasons",
        fields=(
            FieldSpec("name", "text", required=True),
            FieldSpec("starting_at", "date", blank_as_null=True),
            FieldSpec("ending_at", "date", blank_as_null=True),
            FieldSpec("is_current", "bool"),
        ),
        foreign_keys=(ForeignKeySpec("league_external_id", "leagues", "league_id"),),
        filters={"league_external_id": FilterSpec("int", "league_external_id")},
    ),
    "teams": EntitySpec(
        entity_type="teams",
        collection="teams",
        fields=(
            FieldSpec("name", "text", required=True),
            FieldSpec("short_code", "code", blank_as_null=True),
            _IMAGE,
            FieldSpec("type", "text", blank_as_null=True),
            FieldSpec("founded", "number", blank_as_null=True),
        ),
        foreign_keys=(
            ForeignKeySpec("country_external_id", "countries", "country_id", required=False),
        ),
        filters={"country_external_id": FilterSpec("int", "country_external_id")},
    ),
    "bookmakers": EntitySpec(
        entity_type="bookmakers",
        collection="bookmakers",
        fields=(FieldSpec("name", "text", required=True),),
    ),
    "fixtures": EntitySpec(
        entity_type="fixtures",
        collection="fixtures",
        fields=(
            FieldSpec("name", "text", required=True),
            FieldSpec("starting_at", "timestamp", required=True),
            FieldSpec("state", "code", required=True),
            FieldSpec("result", "result", blank_as_null=True),
            FieldSpec("home_score", "number", blank_as_null=True),
            FieldSpec("away_score", "number", blank_as_null=True),
        ),
        foreign_keys=(
            ForeignKeySpec("league_external_id", "leagues", "league_id"),
            ForeignKeySpec("season_external_id", "seasons", "season_id", required=False),
            ForeignKeySpec("home_team_external_id", "teams", "home_team_id"),
            ForeignKeySpec("away_team_external_id", "teams", "away_team_id"),
        ),
        stored_fields=("stage", "round", "has_odds", "league_name", "country_name"),
        filters={
            "from": FilterSpec("date", "starting_at", op="gte_day"),
            "to": FilterSpec("date", "starting_at", op="lte_day"),
            "league_external_id": FilterSpec("int", "league_external_id"),
        },
        required_filters=("from", "to"),
        override_fields=("state", "result", "home_score", "away_score"),
        override_marker="score_overridden_at",
        override_actor_field="score_overridden_by",
        state_field="state",
        terminal_states=frozenset({"FT", "AET", "FT_PEN", "CAN", "INT", "AWARDED", "WO"}),
        settlement_states=frozenset({"FT", "AET", "FT_PEN", "AWARDED"}),
    ),
    "odds": EntitySpec(
        entity_type="odds",
        collection="odds",
        fields=(
            FieldSpec("label", "text", required=True),
            FieldSpec("value", "number", required=True),
            FieldSpec("winning", "bool"),
        ),
        foreign_keys=(
            ForeignKeySpec("fixture_external_id", "fixtures", "fixture_id"),
            ForeignKeySpec("bookmaker_external_id", "bookmakers", "bookmaker_id", required=False),
        ),
        stored_fields=(
            "market_external_id",
            "market_name",
            "bookmaker_name",
            "fixture_name",
            "starting_at",
            "probability",
            "total",
            "handicap",
            "sort_order",
        ),
        filters={"fixture_external_id": FilterSpec("int", "fixture_external_id")},
        required_filters=("fixture_external_id",),
        lock_filters=("fixture_external_id",),
        group=GroupSpec(
            key_fields=("fixture_external_id", "market_external_id"),
            display_fields=("fixture_name", "market_name", "starting_at"),
            sort_field="starting_at",
        ),
    ),
}


def get_entity_spec(entity_type: str) -> EntitySpec:
    spec = ENTITY_SPECS.get(str(entity_type or "").strip().lower())
    if spec is None:
        raise UnknownEntityTypeError(
            f"Unknown entity type '{entity_type}'. Allowed: {', '.join(sorted(ENTITY_SPECS))}."
        )
    return spec


def _coerce_filter(name: str, kind: FilterKind, value: Any) -> Any:
    if kind == "int":
        if isinstance(value, bool):
            raise InvalidFilterError(f"Filter '{name}' must be an integer.")
        try:
            return int(str(value).strip())
        except (TypeError, ValueError) as exc:
            raise InvalidFilterError(f"Filter '{name}' must be an integer.") from exc
    if kind == "date":
        if isinstance(value, date):
            return value.isoformat()[:10]
        try:
            return date.fromisoformat(str(value).strip()).isoformat()
        except ValueError as exc:
            raise InvalidFilterError(f"Filter '{name}' must be a YYYY-MM-DD date.") from exc
    if kind == "bool":
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in {"true", "1", "yes"}:
            return True
        if text in {"false", "0", "no"}:
            return False
        raise InvalidFilterError(f"Filter '{name}' must be a boolean.")
    text = str(value).strip()
    if not text:
        raise InvalidFilterError(f"Filter '{name}' must not be empty.")
    return text


def validate_filters(spec: EntitySpec, filters: dict[str, Any] | None) -> dict[str, Any]:
    """Return coerced filters or raise InvalidFilterError before any fetch happens."""
    raw = {key: value for key, value in (filters or {}).items() if value is not None and value != ""}
    unknown = sorted(set(raw) - set(spec.filters))
    if unknown:
        allowed = ", ".join(sorted(spec.filters)) or "none"
        raise InvalidFilterError(
            f"Unsupported filter(s) for {spec.entity_type}: {', '.join(unknown)}. Allowed: {allowed}."
        )
    coerced = {name: _coerce_filter(name, spec.filters[name].kind, value) for name, value in raw.items()}
    missing = [name for name in spec.required_filters if name not in coerced]
    if missing:
        raise InvalidFilterError(
            f"Missing required filter(s) for {spec.entity_type}: {', '.join(missing)}."
        )
    if "from" in coerced and "to" in coerced and coerced["from"] > coerced["to"]:
        raise InvalidFilterError("Filter 'from' must not be after 'to'.")
    return coerced


def scope_key(spec: EntitySpec, filters: dict[str, Any]) -> str:
    """Canonical scope string for locks and batch rows.

    Only ``spec.lock_filters`` count. Date windows and optional filters
    select overlapping record sets, so two runs that differ only in them
    must contend for the same lock ("all").
    """
    parts = [(name, filters[name]) for name in sorted(spec.lock_filters) if filters.get(name) is not None]
    if not parts:
        return "all"
    return ",".join(f"{name}={value}" for name, value in parts)
