"""Evaluation of branch predicates against execution data.

Predicates are a JsonLogic subset::

    {"==": [{"var": "user.plan"}, "premium"]}
    {"and": [{">=": [{"var": "age"}, 18]}, {"in": [{"var": "country"}, ["DE", "AT"]]}]}

plus two shorthands: ``{"product_package": "A"}`` (equality on a field) and
``{"field": "email", "operator": "contains", "value": "@acme"}``.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping

from .constants import PRODUCT_KEYS

_MISSING = object()


def truthy(value: Any) -> bool:
    """JsonLogic truthiness: empty lists and strings are false, so is zero."""
    if isinstance(value, (list, tuple, dict, str)):
        return len(value) > 0
    return bool(value)


def resolve_var(data: Mapping[str, Any], path: Any, default: Any = None) -> Any:
    """Look up a dotted path (``"user.plan"``) in ``data``."""
    if path is None or path == "":
        return data
    current: Any = data
    for part in str(path).split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return default
    return current


def resolve_field(data: Mapping[str, Any], field: str) -> Any:
    """Resolve a shorthand field, falling back across product key aliases."""
    value = resolve_var(data, field, _MISSING)
    if value is _MISSING and field in PRODUCT_KEYS:
        for alias in PRODUCT_KEYS:
            value = resolve_var(data, alias, _MISSING)
            if value is not _MISSING:
                break
    return None if value is _MISSING else value


def _loose_equals(a: Any, b: Any) -> bool:
    if a == b:
        return True
    if isinstance(a, (int, float)) and isinstance(b, str) or isinstance(b, (int, float)) and isinstance(a, str):
        try:
            return float(a) == float(b)
        except (TypeError, ValueError):
            return False
    return False


def _compare(op: Callable[[Any, Any], bool]) -> Callable[..., bool]:
    def run(*args: Any) -> bool:
        if len(args) < 2:
            return False
        try:
            # between form: {"<": [1, x, 10]}
            return all(op(args[i], args[i + 1]) for i in range(len(args) - 1))
        except (TypeError, ValueError):
            return False

    return run


def _contains(container: Any, item: Any) -> bool:
    if container is None:
        return False
    if isinstance(container, str):
        return str(item) in container
    try:
        return item in container
    except TypeError:
        return False


_BINARY: Dict[str, Callable[..., Any]] = {
    "==": lambda a, b: _loose_equals(a, b),
    "!=": lambda a, b: not _loose_equals(a, b),
    "===": lambda a, b: a == b and type(a) is type(b),
    "!==": lambda a, b: not (a == b and type(a) is type(b)),
    ">": _compare(lambda a, b: a > b),
    ">=": _compare(lambda a, b: a >= b),
    "<": _compare(lambda a, b: a < b),
    "<=": _compare(lambda a, b: a <= b),
    "in": lambda item, container: _contains(container, item),
}

FIELD_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": lambda actual, expected: actual == expected,
    "not_equals": lambda actual, expected: actual != expected,
    "contains": lambda actual, expected: actual is not None and str(expected) in str(actual),
    "not_contains": lambda actual, expected: actual is None or str(expected) not in str(actual),
    "greater_than": _compare(lambda a, b: float(a) > float(b)),
    "less_than": _compare(lambda a, b: float(a) < float(b)),
    "greater_than_or_equal": _compare(lambda a, b: float(a) >= float(b)),
    "less_than_or_equal": _compare(lambda a, b: float(a) <= float(b)),
    "in": lambda actual, expected: isinstance(expected, list) and actual in expected,
    "not_in": lambda actual, expected: isinstance(expected, list) and actual not in expected,
    "starts_with": lambda actual, expected: actual is not None and str(actual).startswith(str(expected)),
    "ends_with": lambda actual, expected: actual is not None and str(actual).endswith(str(expected)),
}

OPERATORS = frozenset(_BINARY) | {"!", "!!", "and", "or", "var"}


def _as_list(args: Any) -> List[Any]:
    return list(args) if isinstance(args, (list, tuple)) else [args]


def evaluate(expr: Any, data: Mapping[str, Any]) -> Any:
    """Evaluate ``expr`` and return its raw value."""
    if isinstance(expr, list):
        return [evaluate(item, data) for item in expr]
    if not isinstance(expr, dict) or not expr:
        return expr

    if "field" in expr and "operator" in expr:
        op = FIELD_OPERATORS.get(expr["operator"])
        if op is None:
            raise ValueError(f"unknown operator {expr['operator']!r}")
        return op(resolve_field(data, expr["field"]), evaluate(expr.get("value"), data))

    if len(expr) != 1 or next(iter(expr)) not in OPERATORS:
        # shorthand equality: every key must match
        return all(
            _loose_equals(resolve_field(data, key), evaluate(value, data))
            for key, value in expr.items()
        )

    op, raw_args = next(iter(expr.items()))
    if op == "var":
        args = _as_list(raw_args)
        path = evaluate(args[0], data) if args else None
        default = evaluate(args[1], data) if len(args) > 1 else None
        return resolve_var(data, path, default)
    if op == "and":
        value: Any = True
        for arg in _as_list(raw_args):
            value = evaluate(arg, data)
            if not truthy(value):
                return value
        return value
    if op == "or":
        value = False
        for arg in _as_list(raw_args):
            value = evaluate(arg, data)
            if truthy(value):
                return value
        return value

    args = [evaluate(arg, data) for arg in _as_list(raw_args)]
    if op == "!":
        return not truthy(args[0] if args else None)
    if op == "!!":
        return truthy(args[0] if args else None)
    return _BINARY[op](*args)


def matches(predicate: Any, data: Mapping[str, Any]) -> bool:
    """Return ``True`` when ``predicate`` holds for ``data``."""
    return truthy(evaluate(predicate, data))


def check(predicate: Any) -> List[str]:
    """Return structural problems with ``predicate`` without evaluating it."""
    errors: List[str] = []
    if isinstance(predicate, dict):
        if "field" in predicate and "operator" in predicate:
            if predicate["operator"] not in FIELD_OPERATORS:
                errors.append(
                    f"unknown operator {predicate['operator']!r}; expected one of "
                    + ", ".join(sorted(FIELD_OPERATORS))
                )
            return errors
        if len(predicate) == 1:
            op, args = next(iter(predicate.items()))
            if op in OPERATORS and op != "var":
                for arg in _as_list(args):
                    errors.extend(check(arg))
    elif isinstance(predicate, list):
        for item in predicate:
            errors.extend(check(item))
    return errors
