# src/trialrunner/workloads/store.py
from __future__ import annotations

import logging
from typing import Any, Callable, Optional, TypeVar

from trialrunner.exceptions import ObjectNotFoundError
from trialrunner.metastore import Metastore
from trialrunner.selectors import LabelSelector
from trialrunner.trials import TrialKey
from .workload import ExecutionUnit, Service, Workload

logger = logging.getLogger(__name__)

WORKLOADS_ROOT = "/workloads"
UNITS_ROOT = "/units"
SERVICES_ROOT = "/services"

T = TypeVar("T")


def workload_path(namespace: str, name: str) -> str:
    return f"{WORKLOADS_ROOT}/{namespace}/{name}"


def unit_path(namespace: str, name: str) -> str:
    return f"{UNITS_ROOT}/{namespace}/{name}"


def service_path(namespace: str, name: str) -> str:
    return f"{SERVICES_ROOT}/{namespace}/{name}"


class WorkloadStore:
    """
    Persistence for run/setup workloads, their execution units and the
    services that metric queries resolve to.

    The controller only creates workloads and reads everything else; status
    fields, units and services are written by the platform side (`put_*`).
    """

    def __init__(self, metastore: Metastore):
        self.metastore = metastore
        metastore.ensure_structure([WORKLOADS_ROOT, UNITS_ROOT, SERVICES_ROOT])

    def _list(
            self,
            root: str,
            namespace: Optional[str],
            decode: Callable[[dict[str, Any]], T],
    ) -> list[T]:
        namespaces = [namespace] if namespace is not None else sorted(self.metastore.list_members(root))
        out: list[T] = []
        for ns in namespaces:
            for name in sorted(self.metastore.list_members(f"{root}/{ns}")):
                raw = self.metastore.get_key(f"{root}/{ns}/{name}")
                if raw is None:
                    continue
                if not isinstance(raw, dict):
                    raise TypeError(f"Unexpected payload type at {root}/{ns}/{name}: {type(raw)}")
                out.append(decode(raw))
        return out

    # -----------------------------
    # Workloads
    # -----------------------------

    def create(self, workload: Workload) -> None:
        """Create a workload; raises ObjectExistsError if the name is taken."""
        self.metastore.create_key(workload_path(workload.namespace, workload.name), workload.to_dict())
        logger.info("Created workload %s/%s", workload.namespace, workload.name)

    def put(self, workload: Workload) -> None:
        self.metastore.update_key(workload_path(workload.namespace, workload.name), workload.to_dict())

    def get(self, namespace: str, name: str) -> Workload:
        raw = self.metastore.get_key(workload_path(namespace, name))
        if raw is None:
            raise ObjectNotFoundError(f"Workload {namespace}/{name} not found")
        return Workload.from_dict(raw)

    def list(self, namespace: Optional[str] = None, selector: Optional[LabelSelector] = None) -> list[Workload]:
        workloads = self._list(WORKLOADS_ROOT, namespace, Workload.from_dict)
        if selector is None:
            return workloads
        return [w for w in workloads if selector.matches(w.labels)]

    def delete_owned(self, owner: TrialKey) -> int:
        """Cascade a trial deletion to its workloads. Returns the number removed."""
        removed = 0
        for w in self.list(owner.namespace):
            if w.owner == owner and self.metastore.drop_key(workload_path(w.namespace, w.name)):
                removed += 1
        if removed:
            logger.info("Deleted %d workload(s) owned by trial %s", removed, owner)
        return removed

    # -----------------------------
    # Execution units
    # -----------------------------

    def put_unit(self, unit: ExecutionUnit) -> None:
        self.metastore.update_key(unit_path(unit.namespace, unit.name), unit.to_dict())

    def list_units(self, namespace: str, selector: Optional[LabelSelector] = None) -> list[ExecutionUnit]:
        units = self._list(UNITS_ROOT, namespace, ExecutionUnit.from_dict)
        if selector is None:
            return units
        return [u for u in units if selector.matches(u.labels)]

    def units_for(self, workload: Workload) -> Optional[list[ExecutionUnit]]:
        """
        Execution units of `workload`, or None when it declares no unit
        selector (the unit view is unavailable and workload times apply).
        """
        if not workload.unit_selector:
            return None
        return self.list_units(workload.namespace, LabelSelector(workload.unit_selector))

    # -----------------------------
    # Services
    # -----------------------------

    def put_service(self, service: Service) -> None:
        self.metastore.update_key(service_path(service.namespace, service.name), service.to_dict())

    def list_services(self, selector: Optional[LabelSelector] = None, namespace: Optional[str] = None) -> list[Service]:
        services = self._list(SERVICES_ROOT, namespace, Service.from_dict)
        if selector is None:
            return services
        return [s for s in services if selector.matches(s.labels)]
