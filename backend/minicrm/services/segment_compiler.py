"""
Segment Rule Compiler
=====================

Turns a declarative segment rule into two equivalent forms:

- an in-memory predicate over a Customer (``CompiledSegment.matches``)
- a SQLAlchemy filter pushed down to the store (``CompiledSegment.where_clause``)

Usage:
    segment = compile_rule({
        "operator": "AND",
        "conditions": [
            {"field": "totalSpends", "operator": ">", "value": "10000"},
            {"field": "visits", "operator": ">=", "value": 5},
        ],
    })
    stmt = select(func.count(Customer.id)).where(segment.where_clause())

Values are coerced once, while compiling, into typed condition variants.
Relative-date cutoffs (``inactive_days``/``active_days``) are taken from the
wall clock each time a predicate or filter is produced.
"""

import math
import operator as op
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy import Float, and_, literal, or_
from sqlalchemy.sql.elements import ColumnElement

from minicrm.errors import SegmentRuleError
from minicrm.models import Customer, CustomerTag


# =============================================================================
# FIELDS & OPERATORS
# =============================================================================

NUMERIC = "numeric"
DATE = "date"
STRING = "string"
MULTI = "multi"  # a set of strings (tags)


@dataclass(frozen=True)
class FieldSpec:
    name: str
    attribute: str
    kind: str

    @property
    def column(self):
        return getattr(Customer, self.attribute)


_SPEND = FieldSpec("spend", "total_spends", NUMERIC)

FIELDS: Dict[str, FieldSpec] = {
    "spend": _SPEND,
    "totalSpends": _SPEND,
    "visits": FieldSpec("visits", "visits", NUMERIC),
    "lastVisit": FieldSpec("lastVisit", "last_visit", DATE),
    "createdAt": FieldSpec("createdAt", "created_at", DATE),
    "email": FieldSpec("email", "email", STRING),
    "name": FieldSpec("name", "name", STRING),
    "tags": FieldSpec("tags", "tags", MULTI),
}

LAST_VISIT = FIELDS["lastVisit"]

COMBINATORS = ("AND", "OR")

_COMPARE = {
    ">": op.gt,
    "<": op.lt,
    ">=": op.ge,
    "<=": op.le,
    "=": op.eq,
    "!=": op.ne,
}

COMPARISON_OPERATORS = (">", "<", ">=", "<=")
EQUALITY_OPERATORS = ("=", "!=")
TEXT_OPERATORS = ("contains", "not_contains", "starts_with", "ends_with")
MEMBERSHIP_OPERATORS = ("in", "not_in")
RELATIVE_DATE_OPERATORS = ("inactive_days", "active_days")

OPERATORS = (
    COMPARISON_OPERATORS
    + EQUALITY_OPERATORS
    + TEXT_OPERATORS
    + MEMBERSHIP_OPERATORS
    + RELATIVE_DATE_OPERATORS
    + ("between", "exists")
)

# Which operators make sense for which kind of field
_APPLICABLE = {
    NUMERIC: set(COMPARISON_OPERATORS + EQUALITY_OPERATORS + MEMBERSHIP_OPERATORS + ("between", "exists")),
    DATE: set(COMPARISON_OPERATORS + EQUALITY_OPERATORS + ("between", "exists")),
    STRING: set(EQUALITY_OPERATORS + TEXT_OPERATORS + MEMBERSHIP_OPERATORS + ("exists",)),
    MULTI: set(EQUALITY_OPERATORS + TEXT_OPERATORS + MEMBERSHIP_OPERATORS + ("exists",)),
}


def utcnow() -> datetime:
    return datetime.utcnow()


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _float_literal(value: float):
    # Typed as Float so an Integer column is not allowed to truncate 4.5 to 4 on bind.
    return literal(value, Float)


# =============================================================================
# CONDITION VARIANTS
# =============================================================================

@dataclass(frozen=True)
class NumericCondition:
    field: FieldSpec
    operator: str
    value: float
    upper: Optional[float] = None

    def matches(self, customer, now: datetime) -> bool:
        actual = getattr(customer, self.field.attribute)
        if actual is None:
            return self.operator == "!="
        actual = float(actual)
        if self.operator == "between":
            return self.value <= actual <= self.upper
        return _COMPARE[self.operator](actual, self.value)

    def clause(self, now: datetime) -> ColumnElement:
        column = self.field.column
        value = _float_literal(self.value)
        if self.operator == "between":
            return column.between(value, _float_literal(self.upper))
        if self.operator == "!=":
            return or_(column.is_(None), column != value)
        return _COMPARE[self.operator](column, value)


@dataclass(frozen=True)
class DateCondition:
    field: FieldSpec
    operator: str
    value: Optional[datetime] = None
    upper: Optional[datetime] = None
    days: Optional[int] = None

    def _resolve(self, now: datetime) -> Tuple[str, datetime]:
        if self.days is not None:
            cutoff = now - timedelta(days=self.days)
            return ("<" if self.operator == "inactive_days" else ">="), cutoff
        return self.operator, self.value

    def matches(self, customer, now: datetime) -> bool:
        comparison, value = self._resolve(now)
        actual = getattr(customer, self.field.attribute)
        if actual is None:
            return comparison == "!="
        actual = _naive_utc(actual)
        if comparison == "between":
            return value <= actual <= self.upper
        return _COMPARE[comparison](actual, value)

    def clause(self, now: datetime) -> ColumnElement:
        comparison, value = self._resolve(now)
        column = self.field.column
        if comparison == "between":
            return column.between(value, self.upper)
        if comparison == "!=":
            return or_(column.is_(None), column != value)
        return _COMPARE[comparison](column, value)


@dataclass(frozen=True)
class StringCondition:
    field: FieldSpec
    operator: str
    value: str

    @property
    def negated(self) -> bool:
        return self.operator in ("!=", "not_contains")

    def _hit(self, text: str) -> bool:
        if self.operator in EQUALITY_OPERATORS:
            return text == self.value
        haystack, needle = text.lower(), self.value.lower()
        if self.operator == "starts_with":
            return haystack.startswith(needle)
        if self.operator == "ends_with":
            return haystack.endswith(needle)
        return needle in haystack

    def _hit_clause(self, column) -> ColumnElement:
        if self.operator in EQUALITY_OPERATORS:
            return column == self.value
        if self.operator == "starts_with":
            return column.istartswith(self.value, autoescape=True)
        if self.operator == "ends_with":
            return column.iendswith(self.value, autoescape=True)
        return column.icontains(self.value, autoescape=True)

    def matches(self, customer, now: datetime) -> bool:
        if self.field.kind == MULTI:
            hit = any(self._hit(tag) for tag in customer.tags)
        else:
            actual = getattr(customer, self.field.attribute)
            if actual is None:
                return self.negated
            hit = self._hit(actual)
        return not hit if self.negated else hit

    def clause(self, now: datetime) -> ColumnElement:
        if self.field.kind == MULTI:
            hit = Customer.tag_links.any(self._hit_clause(CustomerTag.tag))
            return ~hit if self.negated else hit
        column = self.field.column
        hit = self._hit_clause(column)
        if self.negated:
            return or_(column.is_(None), ~hit)
        return hit


@dataclass(frozen=True)
class SetCondition:
    field: FieldSpec
    operator: str
    values: Tuple[Any, ...]

    @property
    def negated(self) -> bool:
        return self.operator == "not_in"

    def matches(self, customer, now: datetime) -> bool:
        if self.field.kind == MULTI:
            hit = any(tag in self.values for tag in customer.tags)
        else:
            actual = getattr(customer, self.field.attribute)
            if actual is None:
                return self.negated
            if self.field.kind == NUMERIC:
                actual = float(actual)
            hit = actual in self.values
        return not hit if self.negated else hit

    def clause(self, now: datetime) -> ColumnElement:
        if self.field.kind == MULTI:
            hit = Customer.tag_links.any(CustomerTag.tag.in_(self.values))
            return ~hit if self.negated else hit
        column = self.field.column
        values = self.values
        if self.field.kind == NUMERIC:
            values = [_float_literal(value) for value in values]
        if self.negated:
            return or_(column.is_(None), column.not_in(values))
        return column.in_(values)


@dataclass(frozen=True)
class ExistsCondition:
    field: FieldSpec
    present: bool

    def matches(self, customer, now: datetime) -> bool:
        if self.field.kind == MULTI:
            has_value = bool(customer.tags)
        else:
            has_value = getattr(customer, self.field.attribute) is not None
        return has_value == self.present

    def clause(self, now: datetime) -> ColumnElement:
        if self.field.kind == MULTI:
            has_value = Customer.tag_links.any()
            return has_value if self.present else ~has_value
        column = self.field.column
        return column.is_not(None) if self.present else column.is_(None)


Condition = Union[NumericCondition, DateCondition, StringCondition, SetCondition, ExistsCondition]


# =============================================================================
# COMPILED SEGMENT
# =============================================================================

@dataclass(frozen=True)
class CompiledSegment:
    combinator: str
    conditions: Tuple[Condition, ...]

    def predicate(self, now: Optional[datetime] = None) -> Callable[[Any], bool]:
        """Return ``matches(customer) -> bool`` with relative dates pinned to ``now``."""
        now = now or utcnow()
        combine = all if self.combinator == "AND" else any

        def matches(customer) -> bool:
            return combine(condition.matches(customer, now) for condition in self.conditions)

        return matches

    def matches(self, customer, now: Optional[datetime] = None) -> bool:
        return self.predicate(now)(customer)

    def where_clause(self, now: Optional[datetime] = None) -> ColumnElement:
        """Store-native filter, equivalent to ``predicate`` for the same ``now``."""
        now = now or utcnow()
        clauses = [condition.clause(now) for condition in self.conditions]
        return and_(*clauses) if self.combinator == "AND" else or_(*clauses)


# =============================================================================
# VALUE COERCION
# =============================================================================

def _as_float(value: Any, field: str) -> float:
    if isinstance(value, bool):
        raise SegmentRuleError(f"Expected a number for '{field}', got {value!r}")
    try:
        number = float(value.strip() if isinstance(value, str) else value)
    except (TypeError, ValueError):
        raise SegmentRuleError(f"Expected a number for '{field}', got {value!r}")
    if not math.isfinite(number):
        raise SegmentRuleError(f"Expected a finite number for '{field}', got {value!r}")
    return number


def _as_datetime(value: Any, field: str) -> datetime:
    if isinstance(value, datetime):
        return _naive_utc(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return _naive_utc(datetime.fromisoformat(text))
        except ValueError:
            pass
    raise SegmentRuleError(f"Expected an ISO date for '{field}', got {value!r}")


def _as_days(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise SegmentRuleError(f"Expected a whole number of days for '{field}', got {value!r}")
    try:
        days = int(value.strip()) if isinstance(value, str) else int(value)
    except (TypeError, ValueError):
        raise SegmentRuleError(f"Expected a whole number of days for '{field}', got {value!r}")
    if days < 0 or (isinstance(value, float) and not value.is_integer()):
        raise SegmentRuleError(f"Expected a whole number of days for '{field}', got {value!r}")
    return days


def _as_text(value: Any, field: str) -> str:
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise SegmentRuleError(f"Expected text for '{field}', got {value!r}")
    return str(value)


def _as_list(value: Any, field: str) -> List[Any]:
    if isinstance(value, (list, tuple)):
        items = [item.strip() if isinstance(item, str) else item for item in value]
    elif isinstance(value, str):
        items = [item.strip() for item in value.split(",")]
    else:
        raise SegmentRuleError(f"Expected a list or comma-separated values for '{field}'")
    items = [item for item in items if item != ""]
    if not items:
        raise SegmentRuleError(f"At least one value is required for '{field}'")
    return items


def _as_bool(value: Any, field: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise SegmentRuleError(f"Expected true or false for '{field}', got {value!r}")


def _as_range(value: Any, field: str, parse: Callable[[Any, str], Any]) -> Tuple[Any, Any]:
    items = _as_list(value, field)
    if len(items) != 2:
        raise SegmentRuleError(f"'between' on '{field}' needs exactly two values: min,max")
    return parse(items[0], field), parse(items[1], field)


# =============================================================================
# COMPILER
# =============================================================================

def compile_condition(raw: Dict[str, Any]) -> Condition:
    """Validate one ``{field, operator, value}`` mapping into a typed condition."""
    if not isinstance(raw, dict):
        raise SegmentRuleError("Each condition must be an object")

    field_name = raw.get("field")
    operator = raw.get("operator")
    value = raw.get("value")

    field = FIELDS.get(field_name) if isinstance(field_name, str) else None
    if field is None:
        raise SegmentRuleError(f"Invalid field: {field_name}")
    if operator not in OPERATORS:
        raise SegmentRuleError(f"Invalid operator: {operator}")
    if value is None or (isinstance(value, str) and value.strip() == ""):
        raise SegmentRuleError("Value is required for all conditions")

    # Relative dates always measure time since the last visit
    if operator in RELATIVE_DATE_OPERATORS:
        return DateCondition(LAST_VISIT, operator, days=_as_days(value, field_name))

    if operator not in _APPLICABLE[field.kind]:
        raise SegmentRuleError(f"Operator '{operator}' cannot be applied to field '{field_name}'")

    if operator == "exists":
        return ExistsCondition(field, _as_bool(value, field_name))

    if field.kind == NUMERIC:
        if operator in MEMBERSHIP_OPERATORS:
            values = tuple(_as_float(item, field_name) for item in _as_list(value, field_name))
            return SetCondition(field, operator, values)
        if operator == "between":
            low, high = _as_range(value, field_name, _as_float)
            return NumericCondition(field, operator, low, high)
        return NumericCondition(field, operator, _as_float(value, field_name))

    if field.kind == DATE:
        if operator == "between":
            low, high = _as_range(value, field_name, _as_datetime)
            return DateCondition(field, operator, value=low, upper=high)
        return DateCondition(field, operator, value=_as_datetime(value, field_name))

    # STRING and MULTI
    if operator in MEMBERSHIP_OPERATORS:
        values = tuple(_as_text(item, field_name) for item in _as_list(value, field_name))
        return SetCondition(field, operator, values)
    return StringCondition(field, operator, _as_text(value, field_name))


def compile_rule(raw: Any) -> CompiledSegment:
    """
    Validate and compile a segment rule.

    Raises:
        SegmentRuleError: unknown field/operator, operator not applicable to
            the field, missing value, or a value that cannot be coerced.
    """
    if hasattr(raw, "model_dump"):
        raw = raw.model_dump()
    if not isinstance(raw, dict):
        raise SegmentRuleError("Rules must be an object")

    combinator = raw.get("operator")
    if combinator not in COMBINATORS:
        raise SegmentRuleError("Operator must be AND or OR")

    conditions = raw.get("conditions")
    if not isinstance(conditions, list) or not conditions:
        raise SegmentRuleError("Conditions must be a non-empty array")

    return CompiledSegment(
        combinator=combinator,
        conditions=tuple(compile_condition(condition) for condition in conditions),
    )
