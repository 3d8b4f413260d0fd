"""Kyverno ``{{ }}`` variables and condition blocks.

Variables are JMESPath expressions evaluated with the :mod:`jmespath`
library against a background-scan context (``request.object`` is the
resource, ``element``/``elementIndex`` are bound inside ``foreach``).  A
handful of Kyverno's custom functions are registered next to the JMESPath
built-ins.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
from collections.abc import Mapping, Sequence
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Any

import jmespath
from jmespath import functions
from jmespath.exceptions import JMESPathError
from kubernetes.utils import parse_quantity

from scancore.errors import EvaluationError
from scancore.models import ResolvedResource

__all__ = [
    "ScanFunctions",
    "as_number",
    "conditions_hold",
    "resource_context",
    "search",
    "substitute",
    "wildcard_match",
]

_VARIABLE = re.compile(r"\{\{(.+?)\}\}", re.DOTALL)


class ScanFunctions(functions.Functions):
    """Kyverno's string helpers on top of the JMESPath built-ins."""

    @functions.signature({"types": ["string"]})
    def _func_to_upper(self, text):
        return text.upper()

    @functions.signature({"types": ["string"]})
    def _func_to_lower(self, text):
        return text.lower()

    @functions.signature({"types": ["string"]}, {"types": ["string"]})
    def _func_trim(self, text, cutset):
        return text.strip(cutset)

    @functions.signature({"types": ["string"]}, {"types": ["string"]})
    def _func_split(self, text, separator):
        return text.split(separator)

    @functions.signature({"types": ["string"]}, {"types": ["string"]})
    def _func_equal_fold(self, left, right):
        return left.casefold() == right.casefold()

    @functions.signature({"types": ["string"]}, {"types": ["string", "number"]})
    def _func_regex_match(self, pattern, value):
        try:
            return re.search(pattern, str(value)) is not None
        except re.error as exc:
            raise EvaluationError(f"regex_match: invalid pattern {pattern!r}: {exc}") from exc

    @functions.signature({"types": ["string"]}, {"types": ["number"]})
    def _func_truncate(self, text, length):
        return text[: max(int(length), 0)]

    @functions.signature({"types": ["string"]})
    def _func_base64_decode(self, text):
        try:
            return base64.b64decode(text, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise EvaluationError(f"base64_decode: {exc}") from exc


_OPTIONS = jmespath.Options(custom_functions=ScanFunctions())


@lru_cache(maxsize=256)
def _compile(expression: str):
    try:
        return jmespath.compile(expression)
    except JMESPathError as exc:
        raise EvaluationError(f"invalid JMESPath expression {expression!r}: {exc}") from exc


def search(expression: str, context: Mapping[str, Any]) -> Any:
    """Evaluate one JMESPath ``expression``; a missing path yields ``None``."""

    try:
        return _compile(expression.strip()).search(context, options=_OPTIONS)
    except JMESPathError as exc:
        raise EvaluationError(f"failed to evaluate {expression.strip()!r}: {exc}") from exc


def resource_context(resource: ResolvedResource) -> dict[str, Any]:
    return {
        "request": {
            "object": dict(resource.document),
            "namespace": resource.namespace,
            "operation": "BACKGROUND",
        }
    }


def substitute(value: Any, context: Mapping[str, Any]) -> Any:
    """Replace ``{{ expr }}`` variables in ``value``, recursing into maps and lists.

    A string that is exactly one variable takes the variable's value and
    type; otherwise each variable is rendered into the surrounding text.
    """

    if isinstance(value, Mapping):
        return {key: substitute(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [substitute(item, context) for item in value]
    if not isinstance(value, str) or "{{" not in value:
        return value

    stripped = value.strip()
    first = _VARIABLE.match(stripped)
    if first is not None and first.end() == len(stripped):
        return search(first.group(1), context)
    return _VARIABLE.sub(lambda found: _render(search(found.group(1), context)), value)


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True)


def conditions_hold(block: Any, context: Mapping[str, Any], *, rule_name: str) -> bool:
    """Return whether a ``preconditions``/``deny.conditions`` block holds.

    A bare list is treated as ``all``; an empty block always holds.
    """

    if not block:
        return True
    if isinstance(block, list):
        block = {"all": block}
    if not isinstance(block, Mapping):
        raise EvaluationError(f"rule {rule_name}: conditions must be a list or an any/all mapping")

    held = True
    if block.get("any"):
        held = any(_condition(entry, context, rule_name) for entry in block["any"])
    if held and block.get("all"):
        held = all(_condition(entry, context, rule_name) for entry in block["all"])
    return held


def _condition(entry: Any, context: Mapping[str, Any], rule_name: str) -> bool:
    if not isinstance(entry, Mapping) or "operator" not in entry:
        raise EvaluationError(f"rule {rule_name}: condition needs key, operator and value")
    operator = str(entry["operator"])
    handler = _OPERATORS.get(operator.lower())
    if handler is None:
        raise EvaluationError(f"rule {rule_name}: unsupported condition operator {operator!r}")
    key = substitute(entry.get("key"), context)
    value = substitute(entry.get("value"), context)
    return handler(key, value, rule_name)


def _equals(key: Any, value: Any, rule_name: str) -> bool:
    if isinstance(key, bool) or isinstance(value, bool):
        return _text(key) == _text(value)
    left, right = as_number(key), as_number(value)
    if left is not None and right is not None and not (isinstance(key, str) and isinstance(value, str)):
        return left == right
    if isinstance(key, str) and isinstance(value, str):
        return wildcard_match(key, value)
    return key == value


def _members(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, Sequence) and not isinstance(value, str):
        return list(value)
    return [value]


def _contained(item: Any, candidates: list[Any]) -> bool:
    return any(_equals(item, candidate, "") for candidate in candidates)


def _any_in(key: Any, value: Any, rule_name: str) -> bool:
    candidates = _members(value)
    return any(_contained(item, candidates) for item in _members(key))


def _all_in(key: Any, value: Any, rule_name: str) -> bool:
    candidates = _members(value)
    items = _members(key)
    return bool(items) and all(_contained(item, candidates) for item in items)


def _any_not_in(key: Any, value: Any, rule_name: str) -> bool:
    candidates = _members(value)
    return any(not _contained(item, candidates) for item in _members(key))


def _all_not_in(key: Any, value: Any, rule_name: str) -> bool:
    candidates = _members(value)
    return all(not _contained(item, candidates) for item in _members(key))


def _ordered(compare):
    def handler(key: Any, value: Any, rule_name: str) -> bool:
        left, right = as_number(key), as_number(value)
        if left is None or right is None:
            raise EvaluationError(
                f"rule {rule_name}: cannot compare {key!r} with {value!r} numerically"
            )
        return compare(left, right)

    return handler


_OPERATORS = {
    "equals": _equals,
    "notequals": lambda key, value, rule_name: not _equals(key, value, rule_name),
    "in": _all_in,
    "notin": _all_not_in,
    "anyin": _any_in,
    "allin": _all_in,
    "anynotin": _any_not_in,
    "allnotin": _all_not_in,
    "greaterthan": _ordered(lambda left, right: left > right),
    "greaterthanorequals": _ordered(lambda left, right: left >= right),
    "lessthan": _ordered(lambda left, right: left < right),
    "lessthanorequals": _ordered(lambda left, right: left <= right),
}


def _text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip().lower() if value is not None else ""


def as_number(value: Any) -> Decimal | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str) and value.strip():
        try:
            return Decimal(parse_quantity(value.strip()))
        except (ValueError, TypeError, InvalidOperation):
            return None
    return None


def wildcard_match(text: str, pattern: str) -> bool:
    regex = "".join(".*" if char == "*" else "." if char == "?" else re.escape(char) for char in pattern)
    return re.fullmatch(regex, text, flags=re.DOTALL) is not None
