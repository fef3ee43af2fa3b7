from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from trialrunner.serialization import dump_time, load_time

DEFAULT_ATTEMPTS = 3


class ConditionType(str, Enum):
    STABLE = "Stable"
    PATCHED = "Patched"
    OBSERVED = "Observed"
    FAILED = "Failed"
    COMPLETE = "Complete"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


def format_decimal(value: float) -> str:
    """
    Shortest exact decimal text for a float, without exponent ("12.3", "5", "0.0000001").
    """
    text = format(Decimal(repr(float(value))), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


@dataclass(frozen=True, slots=True)
class TrialKey:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(slots=True)
class TargetRef:
    kind: str
    name: str
    namespace: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "name": self.name, "namespace": self.namespace}

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "TargetRef":
        return TargetRef(kind=str(d["kind"]), name=str(d["name"]), namespace=str(d.get("namespace") or ""))


@dataclass(slots=True)
class PatchOperation:
    target_ref: TargetRef
    wait: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"target_ref": self.target_ref.to_dict(), "wait": self.wait}

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "PatchOperation":
        return PatchOperation(target_ref=TargetRef.from_dict(d["target_ref"]), wait=bool(d.get("wait", True)))


@dataclass(slots=True)
class Condition:
    type: ConditionType
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "status": self.status.value,
            "reason": self.reason,
            "message": self.message,
            "last_transition_time": dump_time(self.last_transition_time),
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Condition":
        return Condition(
            type=ConditionType(d["type"]),
            status=ConditionStatus(d["status"]),
            reason=str(d.get("reason") or ""),
            message=str(d.get("message") or ""),
            last_transition_time=load_time(d.get("last_transition_time")),
        )


@dataclass(slots=True)
class Value:
    name: str
    value: str = ""
    error: str = ""
    attempts_remaining: int = DEFAULT_ATTEMPTS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "error": self.error,
            "attempts_remaining": self.attempts_remaining,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Value":
        return Value(
            name=str(d["name"]),
            value=str(d.get("value") or ""),
            error=str(d.get("error") or ""),
            attempts_remaining=int(d.get("attempts_remaining", DEFAULT_ATTEMPTS)),
        )


@dataclass(slots=True)
class WorkloadTemplate:
    """
    What the run workload executes. Unset fields fall back to process-wide defaults.
    """
    image: Optional[str] = None
    image_pull_policy: Optional[str] = None
    command: List[str] = field(default_factory=list)
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    backoff_limit: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "image": self.image,
            "image_pull_policy": self.image_pull_policy,
            "command": list(self.command),
            "args": list(self.args),
            "env": dict(self.env),
            "backoff_limit": self.backoff_limit,
        }

    @staticmethod
    def from_dict(d: Optional[Dict[str, Any]]) -> "WorkloadTemplate":
        d = d or {}
        return WorkloadTemplate(
            image=d.get("image"),
            image_pull_policy=d.get("image_pull_policy"),
            command=[str(x) for x in d.get("command") or []],
            args=[str(x) for x in d.get("args") or []],
            env={str(k): str(v) for k, v in (d.get("env") or {}).items()},
            backoff_limit=None if d.get("backoff_limit") is None else int(d["backoff_limit"]),
        )


@dataclass(slots=True)
class Trial:
    namespace: str
    name: str
    experiment: str
    experiment_namespace: Optional[str] = None
    # Namespace pod metrics are read from; the trial namespace when unset.
    target_namespace: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    assignments: Dict[str, Any] = field(default_factory=dict)
    patch_operations: List[PatchOperation] = field(default_factory=list)
    values: List[Value] = field(default_factory=list)
    conditions: List[Condition] = field(default_factory=list)
    start_time: Optional[datetime] = None
    completion_time: Optional[datetime] = None
    start_time_offset_s: Optional[float] = None
    initializers: List[str] = field(default_factory=list)
    workload_template: WorkloadTemplate = field(default_factory=WorkloadTemplate)
    deletion_timestamp: Optional[datetime] = None
    phase: str = ""

    @property
    def key(self) -> TrialKey:
        return TrialKey(self.namespace, self.name)

    @property
    def experiment_key(self) -> TrialKey:
        return TrialKey(self.experiment_namespace or self.namespace, self.experiment)

    def get_condition(self, ctype: ConditionType) -> Optional[Condition]:
        for c in self.conditions:
            if c.type == ctype:
                return c
        return None

    def find_or_create_value(self, name: str, attempts: int = DEFAULT_ATTEMPTS) -> Value:
        for v in self.values:
            if v.name == name:
                return v
        v = Value(name=name, attempts_remaining=attempts)
        self.values.append(v)
        return v

    # -----------------------------
    # (De)serialization
    # -----------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": 1,
            "namespace": self.namespace,
            "name": self.name,
            "experiment": self.experiment,
            "experiment_namespace": self.experiment_namespace,
            "target_namespace": self.target_namespace,
            "labels": dict(self.labels),
            "assignments": dict(self.assignments),
            "patch_operations": [p.to_dict() for p in self.patch_operations],
            "values": [v.to_dict() for v in self.values],
            "conditions": [c.to_dict() for c in self.conditions],
            "start_time": dump_time(self.start_time),
            "completion_time": dump_time(self.completion_time),
            "start_time_offset_s": self.start_time_offset_s,
            "initializers": list(self.initializers),
            "workload_template": self.workload_template.to_dict(),
            "deletion_timestamp": dump_time(self.deletion_timestamp),
            "phase": self.phase,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Trial":
        offset = d.get("start_time_offset_s")
        return Trial(
            namespace=str(d["namespace"]),
            name=str(d["name"]),
            experiment=str(d["experiment"]),
            experiment_namespace=d.get("experiment_namespace"),
            target_namespace=d.get("target_namespace"),
            labels={str(k): str(v) for k, v in (d.get("labels") or {}).items()},
            assignments=dict(d.get("assignments") or {}),
            patch_operations=[PatchOperation.from_dict(p) for p in d.get("patch_operations") or []],
            values=[Value.from_dict(v) for v in d.get("values") or []],
            conditions=[Condition.from_dict(c) for c in d.get("conditions") or []],
            start_time=load_time(d.get("start_time")),
            completion_time=load_time(d.get("completion_time")),
            start_time_offset_s=None if offset is None else float(offset),
            initializers=[str(x) for x in d.get("initializers") or []],
            workload_template=WorkloadTemplate.from_dict(d.get("workload_template")),
            deletion_timestamp=load_time(d.get("deletion_timestamp")),
            phase=str(d.get("phase") or ""),
        )
