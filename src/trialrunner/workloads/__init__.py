"""
Workload API.

- Run/setup workloads, execution units and services
- The workload status aggregator (time bounds and failure reports)
- The run workload builder
- Metastore-backed persistence (WorkloadStore)
"""

from __future__ import annotations

from .workload import (
    LABEL_EXPERIMENT,
    LABEL_TRIAL,
    LABEL_TRIAL_ROLE,
    ROLE_RUN,
    ROLE_SETUP,
    ContainerState,
    ContainerStateKind,
    ExecutionUnit,
    Service,
    UnitPhase,
    Workload,
    WorkloadCondition,
)
from .status import FailureReport, WorkloadObservation, earliest_time, latest_time, observe_workload
from .builder import WorkloadBuilder, assignment_env_name
from .store import SERVICES_ROOT, UNITS_ROOT, WORKLOADS_ROOT, WorkloadStore

__all__ = [
    "LABEL_EXPERIMENT",
    "LABEL_TRIAL",
    "LABEL_TRIAL_ROLE",
    "ROLE_RUN",
    "ROLE_SETUP",
    "ContainerState",
    "ContainerStateKind",
    "ExecutionUnit",
    "Service",
    "UnitPhase",
    "Workload",
    "WorkloadCondition",
    "FailureReport",
    "WorkloadObservation",
    "earliest_time",
    "latest_time",
    "observe_workload",
    "WorkloadBuilder",
    "assignment_env_name",
    "WorkloadStore",
    "WORKLOADS_ROOT",
    "UNITS_ROOT",
    "SERVICES_ROOT",
]
