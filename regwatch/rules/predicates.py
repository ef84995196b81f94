"""``applies_when`` predicate grammar.

A predicate is a JSON tree of ``{"op": ...}`` nodes. Validation goes through
a pydantic discriminated union; ``evaluate`` walks a validated tree against a
context dict using dotted field paths ("entity.type", "txn.amount").
"""

import json
from datetime import date
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as SchemaValidationError

ALWAYS_TRUE: dict[str, Any] = {"op": "true"}


class _Node(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class TrueNode(_Node):
    op: Literal["true"]


class FalseNode(_Node):
    op: Literal["false"]


class AndNode(_Node):
    op: Literal["and"]
    args: list["Predicate"] = Field(..., min_length=1)


class OrNode(_Node):
    op: Literal["or"]
    args: list["Predicate"] = Field(..., min_length=1)


class NotNode(_Node):
    op: Literal["not"]
    arg: "Predicate"


class CompareNode(_Node):
    op: Literal["eq", "neq", "gt", "gte", "lt", "lte"]
    field: str = Field(..., min_length=1)
    value: Any


class InNode(_Node):
    op: Literal["in"]
    field: str = Field(..., min_length=1)
    values: list[Any]


class BetweenNode(_Node):
    op: Literal["between"]
    field: str = Field(..., min_length=1)
    gte: Any = None
    lte: Any = None


class ExistsNode(_Node):
    op: Literal["exists"]
    field: str = Field(..., min_length=1)


class DateInEffectNode(_Node):
    op: Literal["date_in_effect"]
    date_field: str = Field(..., min_length=1, alias="dateField")
    on: str | None = None


Predicate = Annotated[
    Union[
        TrueNode,
        FalseNode,
        AndNode,
        OrNode,
        NotNode,
        CompareNode,
        InNode,
        BetweenNode,
        ExistsNode,
        DateInEffectNode,
    ],
    Field(discriminator="op"),
]

for _model in (AndNode, OrNode, NotNode):
    _model.model_rebuild()

_adapter: TypeAdapter[Any] = TypeAdapter(Predicate)


def parse_predicate(value: dict[str, Any] | str) -> BaseModel:
    """Validate a predicate tree.

    Raises:
        pydantic.ValidationError, json.JSONDecodeError
    """
    if isinstance(value, str):
        value = json.loads(value)
    return _adapter.validate_python(value)


def validate_applies_when(value: Any) -> tuple[dict[str, Any], str | None]:
    """Return ``(predicate, None)`` if valid, else ``(ALWAYS_TRUE, error)``."""
    try:
        node = parse_predicate(value)
    except (SchemaValidationError, json.JSONDecodeError, TypeError) as e:
        return dict(ALWAYS_TRUE), f"invalid applies_when replaced with true: {e}"
    return node.model_dump(by_alias=True, exclude_none=True), None


def _lookup(context: dict[str, Any], path: str) -> Any:
    current: Any = context
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def _compare(left: Any, op: str, right: Any) -> bool:
    if left is None:
        return False
    try:
        if op == "eq":
            return left == right
        if op == "neq":
            return left != right
        if op == "gt":
            return left > right
        if op == "gte":
            return left >= right
        if op == "lt":
            return left < right
        if op == "lte":
            return left <= right
    except TypeError:
        return False
    return False


def evaluate(predicate: dict[str, Any] | BaseModel, context: dict[str, Any]) -> bool:
    """Evaluate a predicate; a missing field makes a comparison false."""
    node = predicate if isinstance(predicate, BaseModel) else parse_predicate(predicate)

    match node:
        case TrueNode():
            return True
        case FalseNode():
            return False
        case AndNode(args=args):
            return all(evaluate(arg, context) for arg in args)
        case OrNode(args=args):
            return any(evaluate(arg, context) for arg in args)
        case NotNode(arg=arg):
            return not evaluate(arg, context)
        case CompareNode(op=op, field=field, value=value):
            return _compare(_lookup(context, field), op, value)
        case InNode(field=field, values=values):
            return _lookup(context, field) in values
        case BetweenNode(field=field, gte=low, lte=high):
            current = _lookup(context, field)
            if current is None:
                return False
            return (low is None or _compare(current, "gte", low)) and (
                high is None or _compare(current, "lte", high)
            )
        case ExistsNode(field=field):
            return _lookup(context, field) is not None
        case DateInEffectNode(date_field=date_field, on=on):
            raw = _lookup(context, date_field)
            if raw is None:
                return False
            as_of = on or context.get("as_of") or date.today().isoformat()
            return str(raw)[:10] <= str(as_of)[:10]
    return False
