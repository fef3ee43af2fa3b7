from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class MetricType(str, Enum):
    LOCAL = "local"
    PODS = "pods"
    PROMETHEUS = "prometheus"
    JSONPATH = "jsonpath"


@dataclass(slots=True)
class Metric:
    name: str
    type: MetricType = MetricType.LOCAL
    query: str = ""
    selector: Dict[str, str] = field(default_factory=dict)
    scheme: str = "http"
    port: Optional[Union[int, str]] = None
    path: str = ""
    minimize: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type.value,
            "query": self.query,
            "selector": dict(self.selector),
            "scheme": self.scheme,
            "port": self.port,
            "path": self.path,
            "minimize": self.minimize,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Metric":
        return Metric(
            name=str(d["name"]),
            type=MetricType(d.get("type") or MetricType.LOCAL.value),
            query=str(d.get("query") or ""),
            selector={str(k): str(v) for k, v in (d.get("selector") or {}).items()},
            scheme=str(d.get("scheme") or "http"),
            port=d.get("port"),
            path=str(d.get("path") or ""),
            minimize=bool(d.get("minimize", True)),
        )


@dataclass(slots=True)
class Experiment:
    """
    The parent definition of a set of trials. Only the metric declarations
    matter to the trial controller.
    """
    namespace: str
    name: str
    metrics: List[Metric] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": 1,
            "namespace": self.namespace,
            "name": self.name,
            "metrics": [m.to_dict() for m in self.metrics],
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Experiment":
        return Experiment(
            namespace=str(d["namespace"]),
            name=str(d["name"]),
            metrics=[Metric.from_dict(m) for m in d.get("metrics") or []],
        )
