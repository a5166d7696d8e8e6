"""Label selector evaluation for namespace sharing rules."""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from typing import Any

_NAME = re.compile(r"^([A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?)?$")
_DNS_SUBDOMAIN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")

_Requirement = Callable[[Mapping[str, str]], bool]


class InvalidSelectorError(ValueError):
    """The label selector is malformed."""


def _validate_key(key: str) -> None:
    prefix, sep, name = key.rpartition("/")
    if sep and (not prefix or len(prefix) > 253 or not _DNS_SUBDOMAIN.match(prefix)):
        raise InvalidSelectorError(f"invalid label key {key!r}: bad prefix")
    if not name or len(name) > 63 or not _NAME.match(name):
        raise InvalidSelectorError(f"invalid label key {key!r}")


def _validate_value(value: str) -> None:
    if len(value) > 63 or not _NAME.match(value):
        raise InvalidSelectorError(f"invalid label value {value!r}")


def _requirement(key: str, operator: str, values: list[str]) -> _Requirement:
    _validate_key(key)
    if operator in ("In", "NotIn"):
        if not values:
            raise InvalidSelectorError(f"values must be non-empty for operator {operator}")
        for value in values:
            _validate_value(value)
        allowed = frozenset(values)
        if operator == "In":
            return lambda labels: key in labels and labels[key] in allowed
        return lambda labels: key not in labels or labels[key] not in allowed
    if operator in ("Exists", "DoesNotExist"):
        if values:
            raise InvalidSelectorError(f"values must be empty for operator {operator}")
        if operator == "Exists":
            return lambda labels: key in labels
        return lambda labels: key not in labels
    raise InvalidSelectorError(f"{operator!r} is not a valid label selector operator")


def _compile(selector: Mapping[str, Any]) -> list[_Requirement]:
    requirements = []
    for key, value in (selector.get("matchLabels") or {}).items():
        requirements.append(_requirement(str(key), "In", [str(value)]))
    for expr in selector.get("matchExpressions") or []:
        requirements.append(
            _requirement(
                str(expr.get("key", "")),
                str(expr.get("operator", "")),
                [str(v) for v in expr.get("values") or []],
            )
        )
    return requirements


def selector_matches(selector: Mapping[str, Any] | None, labels: Mapping[str, str] | None) -> bool:
    """Tell whether a label set satisfies a selector.

    A missing selector matches nothing; an empty one matches everything.
    """
    if selector is None:
        return False
    requirements = _compile(selector)
    have = dict(labels or {})
    return all(req(have) for req in requirements)