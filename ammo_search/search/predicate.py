"""
Typed retrieval predicates.

A predicate is a tree of `Condition` leaves combined with `AllOf` / `AnyOf`.
Trees are immutable and compile to a single SQLAlchemy boolean expression
over `Product`; only whitelisted product columns can be referenced.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Tuple, Union

from sqlalchemy import and_, false, func, or_, true
from sqlalchemy.sql.elements import ColumnElement

from ammo_search.db.models import Product


class Op(str, Enum):
    CONTAINS = "contains"  # case-insensitive substring
    EQUALS = "equals"  # case-insensitive equality
    GTE = "gte"
    LTE = "lte"
    IS = "is"  # boolean flag


FILTERABLE_FIELDS: Dict[str, Any] = {
    "caliber_norm": Product.caliber_norm,
    "purpose": Product.purpose,
    "brand": Product.brand,
    "case_material": Product.case_material,
    "grain_weight": Product.grain_weight,
    "bullet_type": Product.bullet_type,
    "pressure_rating": Product.pressure_rating,
    "muzzle_velocity_fps": Product.muzzle_velocity_fps,
    "is_subsonic": Product.is_subsonic,
    "short_barrel_optimized": Product.short_barrel_optimized,
    "low_flash": Product.low_flash,
    "match_grade": Product.match_grade,
    "name": Product.name,
    "description": Product.description,
}


@dataclass(frozen=True)
class Condition:
    field: str
    op: Op
    value: Any

    def __post_init__(self):
        if self.field not in FILTERABLE_FIELDS:
            raise ValueError(f"Field '{self.field}' cannot be filtered on")


@dataclass(frozen=True)
class AllOf:
    conditions: Tuple["Predicate", ...] = ()


@dataclass(frozen=True)
class AnyOf:
    conditions: Tuple["Predicate", ...] = ()


Predicate = Union[Condition, AllOf, AnyOf]


def _like_pattern(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def to_sql(predicate: Predicate) -> ColumnElement:
    """Compile a predicate tree into a SQLAlchemy boolean expression."""
    if isinstance(predicate, AllOf):
        if not predicate.conditions:
            return true()
        return and_(*(to_sql(c) for c in predicate.conditions))

    if isinstance(predicate, AnyOf):
        if not predicate.conditions:
            return false()
        return or_(*(to_sql(c) for c in predicate.conditions))

    column = FILTERABLE_FIELDS[predicate.field]
    if predicate.op == Op.CONTAINS:
        return column.ilike(_like_pattern(str(predicate.value)), escape="\\")
    if predicate.op == Op.EQUALS:
        return func.lower(column) == str(predicate.value).lower()
    if predicate.op == Op.GTE:
        return column >= predicate.value
    if predicate.op == Op.LTE:
        return column <= predicate.value
    if predicate.op == Op.IS:
        return column.is_(bool(predicate.value))
    raise ValueError(f"Unsupported operator: {predicate.op}")


def conditions_count(predicate: Predicate) -> int:
    """Number of leaf conditions in a predicate tree."""
    if isinstance(predicate, Condition):
        return 1
    return sum(conditions_count(c) for c in predicate.conditions)


def describe(predicate: Predicate) -> Any:
    """Plain-data form of a predicate for logs and metadata."""
    if isinstance(predicate, Condition):
        return {"field": predicate.field, "op": predicate.op.value, "value": predicate.value}
    key = "all_of" if isinstance(predicate, AllOf) else "any_of"
    return {key: [describe(c) for c in predicate.conditions]}
