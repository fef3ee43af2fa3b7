from __future__ import annotations

from typing import Callable, Dict, List, Optional, Union

from trialrunner.selectors import LabelSelector
from trialrunner.trials import Metric, MetricType
from trialrunner.workloads import ExecutionUnit, Service, WorkloadStore

Target = Union[List[ExecutionUnit], List[Service], None]
TargetResolver = Callable[[WorkloadStore, Metric, str], Target]


def _no_target(workloads: WorkloadStore, metric: Metric, namespace: str) -> Target:
    return None


def _units(workloads: WorkloadStore, metric: Metric, namespace: str) -> Target:
    return workloads.list_units(namespace, LabelSelector.from_dict(metric.selector))


def _services(workloads: WorkloadStore, metric: Metric, namespace: str) -> Target:
    # Services are looked up in every namespace, not just the trial's.
    return workloads.list_services(LabelSelector.from_dict(metric.selector))


TARGET_RESOLVERS: Dict[MetricType, TargetResolver] = {
    MetricType.LOCAL: _no_target,
    MetricType.PODS: _units,
    MetricType.PROMETHEUS: _services,
    MetricType.JSONPATH: _services,
}


def resolve_target(workloads: WorkloadStore, metric: Metric, namespace: str) -> Target:
    """
    Resolve what `metric` is captured against. Raises SelectorError for a
    malformed selector; store errors propagate.
    """
    resolver: Optional[TargetResolver] = TARGET_RESOLVERS.get(metric.type)
    if resolver is None:
        raise ValueError(f"No target resolver for metric type {metric.type!r}")
    return resolver(workloads, metric, namespace)
