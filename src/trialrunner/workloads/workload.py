from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from trialrunner.serialization import dump_time, load_time
from trialrunner.trials import TrialKey, WorkloadTemplate

# Label contract shared by run and setup workloads. Internal convention, not
# user-configurable: discovery never relies on user-supplied selectors.
LABEL_EXPERIMENT = "trialrunner.io/experiment"
LABEL_TRIAL = "trialrunner.io/trial"
LABEL_TRIAL_ROLE = "trialrunner.io/trial-role"

ROLE_SETUP = "trialSetup"
ROLE_RUN = "trialRun"


class UnitPhase(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


class ContainerStateKind(str, Enum):
    WAITING = "waiting"
    RUNNING = "running"
    TERMINATED = "terminated"


@dataclass(slots=True)
class ContainerState:
    name: str
    state: ContainerStateKind = ContainerStateKind.WAITING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    reason: str = ""
    restart_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "started_at": dump_time(self.started_at),
            "finished_at": dump_time(self.finished_at),
            "exit_code": self.exit_code,
            "reason": self.reason,
            "restart_count": self.restart_count,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "ContainerState":
        return ContainerState(
            name=str(d.get("name") or ""),
            state=ContainerStateKind(d.get("state") or ContainerStateKind.WAITING.value),
            started_at=load_time(d.get("started_at")),
            finished_at=load_time(d.get("finished_at")),
            exit_code=None if d.get("exit_code") is None else int(d["exit_code"]),
            reason=str(d.get("reason") or ""),
            restart_count=int(d.get("restart_count") or 0),
        )


@dataclass(slots=True)
class ExecutionUnit:
    """One execution unit (pod) of a workload, as reported by the platform."""
    namespace: str
    name: str
    labels: Dict[str, str] = field(default_factory=dict)
    phase: UnitPhase = UnitPhase.PENDING
    reason: str = ""
    message: str = ""
    containers: List[ContainerState] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "namespace": self.namespace,
            "name": self.name,
            "labels": dict(self.labels),
            "phase": self.phase.value,
            "reason": self.reason,
            "message": self.message,
            "containers": [c.to_dict() for c in self.containers],
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "ExecutionUnit":
        return ExecutionUnit(
            namespace=str(d["namespace"]),
            name=str(d["name"]),
            labels={str(k): str(v) for k, v in (d.get("labels") or {}).items()},
            phase=UnitPhase(d.get("phase") or UnitPhase.PENDING.value),
            reason=str(d.get("reason") or ""),
            message=str(d.get("message") or ""),
            containers=[ContainerState.from_dict(c) for c in d.get("containers") or []],
        )


@dataclass(slots=True)
class WorkloadCondition:
    type: str
    status: str
    reason: str = ""
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "status": self.status, "reason": self.reason, "message": self.message}

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "WorkloadCondition":
        return WorkloadCondition(
            type=str(d["type"]),
            status=str(d["status"]),
            reason=str(d.get("reason") or ""),
            message=str(d.get("message") or ""),
        )


@dataclass(slots=True)
class Workload:
    """
    A run (or setup) workload. `owner` links it to its trial for cascading
    deletion; the status fields are written by the platform only.
    """
    namespace: str
    name: str
    labels: Dict[str, str] = field(default_factory=dict)
    owner: Optional[TrialKey] = None
    unit_selector: Dict[str, str] = field(default_factory=dict)
    template: WorkloadTemplate = field(default_factory=WorkloadTemplate)
    start_time: Optional[datetime] = None
    completion_time: Optional[datetime] = None
    conditions: List[WorkloadCondition] = field(default_factory=list)

    @property
    def role(self) -> str:
        return self.labels.get(LABEL_TRIAL_ROLE, "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "namespace": self.namespace,
            "name": self.name,
            "labels": dict(self.labels),
            "owner": None if self.owner is None else {"namespace": self.owner.namespace, "name": self.owner.name},
            "unit_selector": dict(self.unit_selector),
            "template": self.template.to_dict(),
            "start_time": dump_time(self.start_time),
            "completion_time": dump_time(self.completion_time),
            "conditions": [c.to_dict() for c in self.conditions],
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Workload":
        owner = d.get("owner")
        return Workload(
            namespace=str(d["namespace"]),
            name=str(d["name"]),
            labels={str(k): str(v) for k, v in (d.get("labels") or {}).items()},
            owner=None if not owner else TrialKey(str(owner["namespace"]), str(owner["name"])),
            unit_selector={str(k): str(v) for k, v in (d.get("unit_selector") or {}).items()},
            template=WorkloadTemplate.from_dict(d.get("template")),
            start_time=load_time(d.get("start_time")),
            completion_time=load_time(d.get("completion_time")),
            conditions=[WorkloadCondition.from_dict(c) for c in d.get("conditions") or []],
        )


@dataclass(slots=True)
class Service:
    """An externally reachable endpoint that metric queries can be sent to."""
    namespace: str
    name: str
    host: str
    labels: Dict[str, str] = field(default_factory=dict)
    ports: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "namespace": self.namespace,
            "name": self.name,
            "host": self.host,
            "labels": dict(self.labels),
            "ports": dict(self.ports),
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Service":
        return Service(
            namespace=str(d["namespace"]),
            name=str(d["name"]),
            host=str(d["host"]),
            labels={str(k): str(v) for k, v in (d.get("labels") or {}).items()},
            ports={str(k): int(v) for k, v in (d.get("ports") or {}).items()},
        )
