"""
Rule trigger conditions as a small tagged-variant language.

A condition is one of:
- Threshold: compare a numeric signal metric against a value
- TimeElapsed: a signal timestamp is at least N minutes in the past
- And / Or: combine nested conditions
- Not: negate a nested condition

Conditions are plain pydantic models discriminated by ``kind`` so they
round-trip through JSON storage and are validated on load. The
interpreter is ``evaluate_condition``; a metric or timestamp missing from
the signal makes the leaf evaluate to False.

Example:
    ```python
    cond = And(of=[
        Threshold(field="seo_score", op="lt", value=70),
        TimeElapsed(field="last_optimized_at", minutes=60 * 24),
    ])
    evaluate_condition(cond, signal)
    ```
"""

import operator
from datetime import datetime, timezone
from typing import Annotated, Any, Callable, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from change_governor.actions.types import EntityType, utcnow


class EntitySignal(BaseModel):
    """
    Current catalog/customer signals for one entity.

    Attributes:
        entity_id: Entity the signals describe
        entity_type: Kind of entity
        metrics: Numeric signals (e.g. seo_score, conversion_rate)
        timestamps: Named instants (e.g. last_optimized_at, abandoned_at)
        attributes: Free-form context handed to the proposal generator
    """

    entity_id: str
    entity_type: EntityType = EntityType.PRODUCT
    metrics: dict[str, float] = Field(default_factory=dict)
    timestamps: dict[str, datetime] = Field(default_factory=dict)
    attributes: dict[str, Any] = Field(default_factory=dict)


_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "lt": operator.lt,
    "lte": operator.le,
    "gt": operator.gt,
    "gte": operator.ge,
    "eq": operator.eq,
    "ne": operator.ne,
}


class Threshold(BaseModel):
    """Compare ``metrics[field]`` against ``value``."""

    kind: Literal["threshold"] = "threshold"
    field: str
    op: Literal["lt", "lte", "gt", "gte", "eq", "ne"]
    value: float


class TimeElapsed(BaseModel):
    """True when ``timestamps[field]`` is at least ``minutes`` old."""

    kind: Literal["time_elapsed"] = "time_elapsed"
    field: str
    minutes: float = Field(..., ge=0)


class And(BaseModel):
    kind: Literal["and"] = "and"
    of: list["Condition"]


class Or(BaseModel):
    kind: Literal["or"] = "or"
    of: list["Condition"]


class Not(BaseModel):
    kind: Literal["not"] = "not"
    of: "Condition"


Condition = Annotated[
    Union[Threshold, TimeElapsed, And, Or, Not],
    Field(discriminator="kind"),
]

And.model_rebuild()
Or.model_rebuild()
Not.model_rebuild()

CONDITION_ADAPTER: TypeAdapter[Condition] = TypeAdapter(Condition)


def parse_condition(data: dict[str, Any]) -> Condition:
    """Validate a stored condition dict."""
    return CONDITION_ADAPTER.validate_python(data)


def evaluate_condition(
    condition: Condition,
    signal: EntitySignal,
    now: datetime | None = None,
) -> bool:
    """
    Evaluate a condition against an entity's signals.

    Args:
        condition: Condition tree to evaluate
        signal: Signals for one entity
        now: Reference time for TimeElapsed (defaults to current UTC time)

    Returns:
        True if the condition holds
    """
    now = now or utcnow()

    if isinstance(condition, Threshold):
        metric = signal.metrics.get(condition.field)
        if metric is None:
            return False
        return _OPERATORS[condition.op](metric, condition.value)

    if isinstance(condition, TimeElapsed):
        stamp = signal.timestamps.get(condition.field)
        if stamp is None:
            return False
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=timezone.utc)
        return (now - stamp).total_seconds() >= condition.minutes * 60

    if isinstance(condition, And):
        return all(evaluate_condition(c, signal, now) for c in condition.of)

    if isinstance(condition, Or):
        return any(evaluate_condition(c, signal, now) for c in condition.of)

    if isinstance(condition, Not):
        return not evaluate_condition(condition.of, signal, now)

    raise TypeError(f"Unknown condition variant: {type(condition).__name__}")
