from __future__ import annotations

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional

from trialrunner.exceptions import SelectorError

_NAME_RE = re.compile(r"^[A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?$")
_PREFIX_RE = re.compile(r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$")
_MAX_NAME = 63
_MAX_PREFIX = 253


def _validate_key(key: str) -> None:
    prefix, sep, name = key.rpartition("/")
    if sep and (not prefix or len(prefix) > _MAX_PREFIX or not _PREFIX_RE.match(prefix)):
        raise SelectorError(f"invalid label key {key!r}: bad prefix")
    if not name or len(name) > _MAX_NAME or not _NAME_RE.match(name):
        raise SelectorError(f"invalid label key {key!r}")


def _validate_value(key: str, value: str) -> None:
    if value == "":
        return
    if len(value) > _MAX_NAME or not _NAME_RE.match(value):
        raise SelectorError(f"invalid value {value!r} for label {key!r}")


@dataclass(frozen=True, slots=True)
class LabelSelector:
    """
    Equality-based label selector. An empty selector matches everything.
    """
    match_labels: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        labels: dict[str, str] = {}
        for k, v in dict(self.match_labels).items():
            if not isinstance(k, str) or not isinstance(v, str):
                raise SelectorError(f"label selector entries must be strings, got {k!r}={v!r}")
            _validate_key(k)
            _validate_value(k, v)
            labels[k] = v
        object.__setattr__(self, "match_labels", MappingProxyType(labels))

    @property
    def empty(self) -> bool:
        return not self.match_labels

    def matches(self, labels: Optional[Mapping[str, str]]) -> bool:
        labels = labels or {}
        return all(labels.get(k) == v for k, v in self.match_labels.items())

    def to_dict(self) -> dict[str, str]:
        return dict(self.match_labels)

    @staticmethod
    def from_dict(d: Optional[Mapping[str, Any]]) -> "LabelSelector":
        return LabelSelector(match_labels=dict(d or {}))

    def __str__(self) -> str:
        return ",".join(f"{k}={v}" for k, v in sorted(self.match_labels.items()))
