"""Built-in rule evaluator covering Kyverno match blocks and validate rules.

``pattern``/``anyPattern``, ``deny`` conditions, ``foreach`` and
preconditions are evaluated here, with ``{{ }}`` variables resolved by
:mod:`scancore.conditions`.  CEL, podSecurity, manifests and assert rules
are reported as :class:`~scancore.errors.EvaluationError`; callers may plug
a fuller engine in through :class:`~scancore.interfaces.RuleEvaluator`.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence
from decimal import Decimal
from typing import Any

from scancore.cancellation import CancellationToken
from scancore.conditions import (
    as_number,
    conditions_hold,
    resource_context,
    search,
    substitute,
    wildcard_match,
)
from scancore.errors import EvaluationError
from scancore.interfaces import RuleVerdict
from scancore.models import (
    PolicyDefinition,
    PolicyRule,
    PolicyScope,
    ResolvedResource,
    RuleKind,
    RuleStatus,
    split_api_version,
)

__all__ = ["PatternEvaluator", "match_resource", "validate_pattern"]

LOGGER = logging.getLogger(__name__)

_UNSUPPORTED_VALIDATE_KEYS = ("cel", "podSecurity", "manifests", "assert")
_UNSUPPORTED_FILTER_KEYS = ("subjects", "roles", "clusterRoles")
_ANCHOR = re.compile(r"^(?P<anchor>\(|=\(|X\(|\^\(|<\()(?P<key>.+)\)$")
_OPERATORS = (">=", "<=", "!=", ">", "<", "!")


class _Mismatch(Exception):
    def __init__(self, path: str) -> None:
        super().__init__(path)
        self.path = path


class _ConditionNotMet(Exception):
    def __init__(self, path: str) -> None:
        super().__init__(path)
        self.path = path


class PatternEvaluator:
    """Evaluate validate rules against one resolved resource."""

    def evaluate(
        self,
        policy: PolicyDefinition,
        rule: PolicyRule,
        resource: ResolvedResource,
        *,
        cancel: CancellationToken | None = None,
    ) -> RuleVerdict:
        if cancel is not None:
            cancel.raise_if_cancelled(f"rule {rule.name}")

        if (
            policy.scope is PolicyScope.NAMESPACED
            and policy.namespace
            and resource.namespace != policy.namespace
        ):
            return RuleVerdict(RuleStatus.SKIP, "resource is outside the policy namespace")
        if not match_resource(rule.match, resource, rule_name=rule.name):
            return RuleVerdict(RuleStatus.SKIP, "rule does not match the resource")
        if rule.exclude and match_resource(rule.exclude, resource, rule_name=rule.name):
            return RuleVerdict(RuleStatus.SKIP, "resource is excluded by the rule")

        context = resource_context(resource)
        if not conditions_hold(rule.raw.get("preconditions"), context, rule_name=rule.name):
            return RuleVerdict(RuleStatus.SKIP, "preconditions not met")
        if rule.kind is not RuleKind.VALIDATE:
            return RuleVerdict(
                RuleStatus.SKIP,
                f"{rule.kind.value} rules are recorded but not applied during scans",
            )
        body = rule.body
        if not body:
            raise EvaluationError(f"rule {rule.name} has no validate, mutate or generate block")
        message = str(substitute(body.get("message") or "", context))

        if "foreach" in body:
            return self._foreach(rule, body["foreach"], context, message)
        for key in _UNSUPPORTED_VALIDATE_KEYS:
            if key in body:
                raise EvaluationError(
                    f"rule {rule.name}: validate.{key} is not supported by the built-in evaluator"
                )
        return self._validate(rule, body, resource.document, context, message)

    def _validate(
        self,
        rule: PolicyRule,
        body: Mapping[str, Any],
        document: Any,
        context: Mapping[str, Any],
        message: str,
    ) -> RuleVerdict:
        if "pattern" in body:
            status, path = _check(substitute(body["pattern"], context), document, rule.name)
            if status is RuleStatus.PASS:
                return RuleVerdict(status, f"validation rule '{rule.name}' passed.")
            if status is RuleStatus.SKIP:
                return RuleVerdict(
                    status,
                    f"rule {rule.name} skipped: conditional anchor mismatch at path {path}",
                )
            return RuleVerdict(
                status,
                f"validation error: {message}. rule {rule.name} failed at path {path}",
            )

        if "anyPattern" in body:
            patterns = substitute(body["anyPattern"], context)
            if not isinstance(patterns, Sequence) or isinstance(patterns, str) or not patterns:
                raise EvaluationError(f"rule {rule.name}: anyPattern must be a non-empty list")
            failures: list[str] = []
            skipped = 0
            for index, pattern in enumerate(patterns):
                status, path = _check(pattern, document, rule.name)
                if status is RuleStatus.PASS:
                    return RuleVerdict(
                        status,
                        f"validation rule '{rule.name}' anyPattern[{index}] passed.",
                    )
                if status is RuleStatus.SKIP:
                    skipped += 1
                else:
                    failures.append(f"rule {rule.name}[{index}] failed at path {path}")
            if not failures and skipped:
                return RuleVerdict(
                    RuleStatus.SKIP,
                    f"rule {rule.name} skipped: no anyPattern condition matched",
                )
            return RuleVerdict(
                RuleStatus.FAIL,
                f"validation error: {message}. {' '.join(failures)}",
            )

        if "deny" in body:
            deny = body["deny"] or {}
            if not isinstance(deny, Mapping):
                raise EvaluationError(f"rule {rule.name}: deny must be a mapping")
            # A deny block without conditions always denies.
            if conditions_hold(deny.get("conditions"), context, rule_name=rule.name):
                return RuleVerdict(RuleStatus.FAIL, message or f"rule {rule.name} denied the resource")
            return RuleVerdict(RuleStatus.PASS, f"validation rule '{rule.name}' passed.")

        raise EvaluationError(f"rule {rule.name}: validate block has no pattern, anyPattern or deny")

    def _foreach(
        self,
        rule: PolicyRule,
        entries: Any,
        context: Mapping[str, Any],
        message: str,
    ) -> RuleVerdict:
        if not isinstance(entries, list) or not entries:
            raise EvaluationError(f"rule {rule.name}: foreach must be a non-empty list")
        applied = 0
        for entry in entries:
            if not isinstance(entry, Mapping) or not entry.get("list"):
                raise EvaluationError(f"rule {rule.name}: each foreach entry needs a list expression")
            if "foreach" in entry:
                raise EvaluationError(f"rule {rule.name}: nested foreach is not supported")
            expression = str(entry["list"]).strip()
            if expression.startswith("{{") and expression.endswith("}}"):
                expression = expression[2:-2]
            elements = search(expression, context)
            if elements is None:
                continue
            if not isinstance(elements, list):
                raise EvaluationError(f"rule {rule.name}: foreach list {expression!r} is not a list")

            for index, element in enumerate(elements):
                scoped = {**context, "element": element, "elementIndex": index}
                if not conditions_hold(entry.get("preconditions"), scoped, rule_name=rule.name):
                    continue
                verdict = self._validate(rule, entry, element, scoped, message)
                if verdict.status is RuleStatus.FAIL:
                    return verdict
                if verdict.status is RuleStatus.PASS:
                    applied += 1

        if not applied:
            return RuleVerdict(RuleStatus.SKIP, f"rule {rule.name} skipped: no foreach element applied")
        return RuleVerdict(RuleStatus.PASS, f"validation rule '{rule.name}' passed.")


def _check(pattern: Any, document: Mapping[str, Any], rule_name: str) -> tuple[RuleStatus, str]:
    try:
        validate_pattern(pattern, document, "/", rule_name=rule_name)
    except _ConditionNotMet as exc:
        return RuleStatus.SKIP, exc.path
    except _Mismatch as exc:
        return RuleStatus.FAIL, exc.path
    return RuleStatus.PASS, ""


# ---------------------------------------------------------------------------
# match / exclude
# ---------------------------------------------------------------------------


def match_resource(block: Mapping[str, Any], resource: ResolvedResource, *, rule_name: str) -> bool:
    """Return whether a ``match``/``exclude`` block selects ``resource``.

    An empty block selects every resource.
    """

    if not block:
        return True
    matched = True
    if "any" in block:
        filters = block.get("any") or []
        matched = matched and any(
            _filter_matches(entry, resource, rule_name) for entry in filters
        )
    if "all" in block:
        filters = block.get("all") or []
        matched = matched and all(
            _filter_matches(entry, resource, rule_name) for entry in filters
        )
    if "resources" in block:
        matched = matched and _filter_matches(block, resource, rule_name)
    return matched


def _filter_matches(entry: Mapping[str, Any], resource: ResolvedResource, rule_name: str) -> bool:
    for key in _UNSUPPORTED_FILTER_KEYS:
        if entry.get(key):
            raise EvaluationError(
                f"rule {rule_name}: match on {key} requires admission request context"
            )
    description = entry.get("resources") or {}
    if description.get("namespaceSelector"):
        raise EvaluationError(
            f"rule {rule_name}: namespaceSelector is not supported by the built-in evaluator"
        )

    kinds = description.get("kinds") or []
    if kinds and not any(_kind_matches(ref, resource) for ref in kinds):
        return False

    names = list(description.get("names") or [])
    if description.get("name"):
        names.append(description["name"])
    if names and not any(wildcard_match(resource.name, pattern) for pattern in names):
        return False

    namespaces = description.get("namespaces") or []
    if namespaces and not any(wildcard_match(resource.namespace, pattern) for pattern in namespaces):
        return False

    annotations = description.get("annotations") or {}
    resource_annotations = resource.metadata.get("annotations") or {}
    for key, pattern in annotations.items():
        if key not in resource_annotations or not wildcard_match(
            str(resource_annotations[key]), str(pattern)
        ):
            return False

    selector = description.get("selector")
    if selector and not _selector_matches(selector, resource.labels):
        return False
    return True


def _kind_matches(kind_ref: str, resource: ResolvedResource) -> bool:
    parts = str(kind_ref).split("/")
    if not wildcard_match(resource.kind, parts[-1]):
        return False
    group, version = split_api_version(resource.api_version)
    if len(parts) == 2:
        return wildcard_match(version, parts[0])
    if len(parts) >= 3:
        return wildcard_match(group, parts[-3]) and wildcard_match(version, parts[-2])
    return True


def _selector_matches(selector: Mapping[str, Any], labels: Mapping[str, str]) -> bool:
    for key, value in (selector.get("matchLabels") or {}).items():
        if labels.get(key) != str(value):
            return False
    for expression in selector.get("matchExpressions") or []:
        key = expression.get("key")
        operator = expression.get("operator")
        values = [str(value) for value in expression.get("values") or []]
        present = key in labels
        if operator == "In" and not (present and labels[key] in values):
            return False
        if operator == "NotIn" and present and labels[key] in values:
            return False
        if operator == "Exists" and not present:
            return False
        if operator == "DoesNotExist" and present:
            return False
    return True


# ---------------------------------------------------------------------------
# validate.pattern
# ---------------------------------------------------------------------------


def validate_pattern(pattern: Any, value: Any, path: str, *, rule_name: str = "") -> None:
    """Check ``value`` against a Kyverno pattern.

    Raises ``_Mismatch`` on a violation and ``_ConditionNotMet`` when a
    conditional anchor does not hold.
    """

    if isinstance(pattern, Mapping):
        if not isinstance(value, Mapping):
            raise _Mismatch(path)
        _validate_map(pattern, value, path, rule_name)
    elif isinstance(pattern, list):
        _validate_list(pattern, value, path, rule_name)
    elif not _match_scalar(pattern, value, rule_name):
        raise _Mismatch(path)


def _validate_map(
    pattern: Mapping[str, Any],
    resource: Mapping[str, Any],
    path: str,
    rule_name: str,
) -> None:
    # Conditional anchors gate the rest of the map, so they run first.
    plain: list[tuple[str, str | None, Any]] = []
    for raw_key, sub_pattern in pattern.items():
        anchor, key = _split_anchor(str(raw_key))
        child = f"{path}{key}/"
        if anchor in ("(", "^("):
            if key not in resource:
                raise _ConditionNotMet(child)
            try:
                validate_pattern(sub_pattern, resource[key], child, rule_name=rule_name)
            except _Mismatch as exc:
                raise _ConditionNotMet(exc.path) from exc
        else:
            plain.append((key, anchor, sub_pattern))

    for key, anchor, sub_pattern in plain:
        child = f"{path}{key}/"
        if anchor == "X(":
            if key in resource:
                raise _Mismatch(child)
        elif anchor == "=(":
            if key in resource:
                validate_pattern(sub_pattern, resource[key], child, rule_name=rule_name)
        elif anchor == "<(":
            _validate_existence(sub_pattern, resource.get(key), child, rule_name)
        else:
            if key not in resource:
                raise _Mismatch(child)
            validate_pattern(sub_pattern, resource[key], child, rule_name=rule_name)


def _validate_list(pattern: list[Any], value: Any, path: str, rule_name: str) -> None:
    if not isinstance(value, list):
        raise _Mismatch(path)
    if not pattern:
        return
    element_pattern = pattern[0]
    if isinstance(element_pattern, Mapping):
        applicable = 0
        for index, element in enumerate(value):
            try:
                validate_pattern(element_pattern, element, f"{path}{index}/", rule_name=rule_name)
            except _ConditionNotMet:
                continue
            applicable += 1
        if value and not applicable:
            raise _ConditionNotMet(path)
        return
    if len(value) < len(pattern):
        raise _Mismatch(path)
    for index, sub_pattern in enumerate(pattern):
        validate_pattern(sub_pattern, value[index], f"{path}{index}/", rule_name=rule_name)


def _validate_existence(pattern: Any, value: Any, path: str, rule_name: str) -> None:
    if not isinstance(value, list) or not isinstance(pattern, list) or not pattern:
        raise _Mismatch(path)
    for index, element in enumerate(value):
        try:
            validate_pattern(pattern[0], element, f"{path}{index}/", rule_name=rule_name)
        except (_Mismatch, _ConditionNotMet):
            continue
        return
    raise _Mismatch(path)


def _split_anchor(raw_key: str) -> tuple[str | None, str]:
    matched = _ANCHOR.match(raw_key)
    if matched is None:
        return None, raw_key
    return matched.group("anchor"), matched.group("key")


def _match_scalar(pattern: Any, value: Any, rule_name: str) -> bool:
    if pattern is None:
        return value is None or value == "" or value == {} or value == []
    if isinstance(pattern, bool):
        if isinstance(value, bool):
            return value is pattern
        return isinstance(value, str) and value.strip().lower() == str(pattern).lower()
    if isinstance(pattern, (int, float)):
        number = as_number(value)
        return number is not None and number == Decimal(str(pattern))
    if isinstance(pattern, str):
        if "{{" in pattern:
            raise EvaluationError(
                f"rule {rule_name}: unresolved variable in pattern value {pattern!r}"
            )
        text = _scalar_text(value)
        if text is None:
            return False
        return any(
            all(_match_expression(part.strip(), text, value) for part in alternative.split("&"))
            for alternative in pattern.split("|")
        )
    return pattern == value


def _match_expression(expression: str, text: str, value: Any) -> bool:
    for operator in _OPERATORS:
        if expression.startswith(operator):
            operand = expression[len(operator):].strip()
            break
    else:
        return _equals(expression, text, value)

    if operator == "!":
        return not wildcard_match(text, operand)
    if operator == "!=":
        return not _equals(operand, text, value)
    left = as_number(value)
    right = as_number(operand)
    if left is None or right is None:
        return False
    if operator == ">":
        return left > right
    if operator == "<":
        return left < right
    if operator == ">=":
        return left >= right
    return left <= right


def _equals(expression: str, text: str, value: Any) -> bool:
    if not isinstance(value, str) and not isinstance(value, bool):
        left = as_number(value)
        right = as_number(expression)
        if left is not None and right is not None:
            return left == right
    return wildcard_match(text, expression)


def _scalar_text(value: Any) -> str | None:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else str(value)
    if isinstance(value, str):
        return value
    return None
