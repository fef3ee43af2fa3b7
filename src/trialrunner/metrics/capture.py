# src/trialrunner/metrics/capture.py
"""
One metric collection attempt per call.

`capture()` returns (value, stddev) or raises CaptureError. A CaptureError
with retry_after_s > 0 is transient and must not consume an attempt; any
other CaptureError does.
"""
from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx

from trialrunner.config import MetricsSettings
from trialrunner.exceptions import TrialRunnerError
from trialrunner.trials import Metric, MetricType, Trial
from trialrunner.workloads import ExecutionUnit, Service, UnitPhase
from .targets import Target

logger = logging.getLogger(__name__)

_PATH_TOKEN = re.compile(r"\.([^.\[\]]+)|\[(\d+)\]")


class CaptureError(TrialRunnerError):
    def __init__(
            self,
            message: str,
            *,
            retry_after_s: float = 0.0,
            address: str = "",
            query: str = "",
            completion_time: Optional[datetime] = None,
    ):
        super().__init__(message)
        self.message = message
        self.retry_after_s = retry_after_s
        self.address = address
        self.query = query
        self.completion_time = completion_time

    @property
    def retryable(self) -> bool:
        return self.retry_after_s > 0


def _to_float(text: Any, what: str) -> float:
    try:
        return float(text)
    except (TypeError, ValueError) as exc:
        raise CaptureError(f"{what} is not numeric: {text!r}") from exc


def _error_detail(resp: httpx.Response) -> str:
    # Prometheus reports query errors as {"status": "error", "error": "..."}.
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return resp.text[:200]


def extract_field(doc: Any, path: str) -> Any:
    """
    Evaluate a dotted field path such as ".a.b[0].c" (optionally wrapped in
    "{...}") against a decoded JSON document.
    """
    expr = path.strip()
    if expr.startswith("{") and expr.endswith("}"):
        expr = expr[1:-1].strip()
    if not expr.startswith(".") and not expr.startswith("["):
        expr = "." + expr

    pos = 0
    current = doc
    while pos < len(expr):
        m = _PATH_TOKEN.match(expr, pos)
        if m is None:
            raise KeyError(f"invalid field path {path!r} at offset {pos}")
        key, index = m.group(1), m.group(2)
        if key is not None:
            if not isinstance(current, dict) or key not in current:
                raise KeyError(f"field {key!r} not found")
            current = current[key]
        else:
            i = int(index)
            if not isinstance(current, list) or i >= len(current):
                raise KeyError(f"index {i} out of range")
            current = current[i]
        pos = m.end()
    return current


class MetricCaptureClient:
    """
    Dispatches a capture to the strategy for the metric type. HTTP based
    strategies share one httpx client; pass `http_client` to inject a
    transport (tests use httpx.MockTransport).
    """

    def __init__(self, settings: MetricsSettings, http_client: Optional[httpx.Client] = None):
        self._settings = settings
        self._owns_client = http_client is None
        self._http = http_client if http_client is not None else httpx.Client(timeout=settings.timeout_s)
        self._strategies: Dict[MetricType, Callable[[Metric, Trial, Target], tuple[float, float]]] = {
            MetricType.LOCAL: self._capture_local,
            MetricType.PODS: self._capture_pods,
            MetricType.PROMETHEUS: self._capture_prometheus,
            MetricType.JSONPATH: self._capture_jsonpath,
        }

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def capture(self, metric: Metric, trial: Trial, target: Target) -> tuple[float, float]:
        strategy = self._strategies.get(metric.type)
        if strategy is None:
            raise CaptureError(f"unknown metric type {metric.type!r}", query=metric.query)
        return strategy(metric, trial, target)

    # -----------------------------
    # Strategies
    # -----------------------------

    def _format(self, metric: Metric, values: Dict[str, Any], completion_time: Optional[datetime]) -> float:
        try:
            text = metric.query.format(**values)
        except (KeyError, IndexError, ValueError) as exc:
            raise CaptureError(
                f"metric {metric.name!r}: cannot evaluate query: {exc}",
                query=metric.query,
                completion_time=completion_time,
            ) from exc
        try:
            return _to_float(text.strip(), f"metric {metric.name!r}")
        except CaptureError as exc:
            exc.query = metric.query
            exc.completion_time = completion_time
            raise

    def _capture_local(self, metric: Metric, trial: Trial, target: Target) -> tuple[float, float]:
        start, end = trial.start_time, trial.completion_time
        duration = (end - start).total_seconds() if start is not None and end is not None else 0.0
        values = {
            "start_time": start.timestamp() if start is not None else 0.0,
            "completion_time": end.timestamp() if end is not None else 0.0,
            "duration": duration,
        }
        return self._format(metric, values, end), 0.0

    def _capture_pods(self, metric: Metric, trial: Trial, target: Target) -> tuple[float, float]:
        units: Sequence[ExecutionUnit] = target or []  # type: ignore[assignment]
        values = {
            "count": len(units),
            "running": sum(1 for u in units if u.phase == UnitPhase.RUNNING),
            "succeeded": sum(1 for u in units if u.phase == UnitPhase.SUCCEEDED),
            "failed": sum(1 for u in units if u.phase == UnitPhase.FAILED),
            "restarts": sum(c.restart_count for u in units for c in u.containers),
        }
        return self._format(metric, values, trial.completion_time), 0.0

    def _base_url(self, metric: Metric, target: Target, trial: Trial) -> str:
        services: List[Service] = list(target or [])  # type: ignore[arg-type]
        if not services:
            raise CaptureError(
                f"metric {metric.name!r}: no services match selector {metric.selector}",
                query=metric.query,
                completion_time=trial.completion_time,
            )
        service = services[0]

        port: Optional[int]
        if isinstance(metric.port, int):
            port = metric.port
        elif isinstance(metric.port, str) and metric.port.isdigit():
            port = int(metric.port)
        elif isinstance(metric.port, str) and metric.port:
            port = service.ports.get(metric.port)
            if port is None:
                raise CaptureError(
                    f"metric {metric.name!r}: service {service.namespace}/{service.name} has no port {metric.port!r}",
                    query=metric.query,
                    completion_time=trial.completion_time,
                )
        elif service.ports:
            port = next(iter(service.ports.values()))
        else:
            port = self._settings.default_port
        return f"{metric.scheme}://{service.host}:{port}"

    def _get_json(self, url: str, metric: Metric, trial: Trial, params: Optional[Dict[str, Any]] = None) -> Any:
        diag = dict(address=url, query=metric.query, completion_time=trial.completion_time)
        try:
            resp = self._http.get(url, params=params)
        except httpx.TransportError as exc:
            raise CaptureError(
                f"metric {metric.name!r}: {url} unreachable: {exc}",
                retry_after_s=self._settings.retry_after_s,
                **diag,
            ) from exc
        if resp.status_code >= 500:
            raise CaptureError(
                f"metric {metric.name!r}: {url} returned {resp.status_code}",
                retry_after_s=self._settings.retry_after_s,
                **diag,
            )
        if resp.status_code >= 400:
            raise CaptureError(
                f"metric {metric.name!r}: {url} returned {resp.status_code}: {_error_detail(resp)}",
                **diag,
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise CaptureError(f"metric {metric.name!r}: {url} returned invalid JSON", **diag) from exc

    def _capture_prometheus(self, metric: Metric, trial: Trial, target: Target) -> tuple[float, float]:
        url = self._base_url(metric, target, trial) + "/api/v1/query"
        params: Dict[str, Any] = {"query": metric.query}
        if trial.completion_time is not None:
            params["time"] = f"{trial.completion_time.timestamp():.3f}"

        body = self._get_json(url, metric, trial, params)
        diag = dict(address=url, query=metric.query, completion_time=trial.completion_time)
        if not isinstance(body, dict) or body.get("status") != "success":
            err = body.get("error") if isinstance(body, dict) else None
            raise CaptureError(f"metric {metric.name!r}: query failed: {err or 'unknown error'}", **diag)

        data = body.get("data") or {}
        result_type = data.get("resultType")
        result = data.get("result")
        if result_type == "scalar" and isinstance(result, list) and len(result) == 2:
            sample = result
        elif result_type == "vector" and isinstance(result, list):
            if not result:
                # The series may not have been scraped yet.
                raise CaptureError(
                    f"metric {metric.name!r}: query returned no data",
                    retry_after_s=self._settings.retry_after_s,
                    **diag,
                )
            if len(result) > 1:
                raise CaptureError(f"metric {metric.name!r}: query returned {len(result)} series", **diag)
            sample = result[0].get("value") or []
        else:
            raise CaptureError(f"metric {metric.name!r}: unsupported result type {result_type!r}", **diag)

        if len(sample) != 2:
            raise CaptureError(f"metric {metric.name!r}: malformed sample {sample!r}", **diag)
        try:
            return _to_float(sample[1], f"metric {metric.name!r}"), 0.0
        except CaptureError as exc:
            exc.address, exc.query, exc.completion_time = url, metric.query, trial.completion_time
            raise

    def _capture_jsonpath(self, metric: Metric, trial: Trial, target: Target) -> tuple[float, float]:
        path = metric.path if metric.path.startswith("/") or not metric.path else "/" + metric.path
        url = self._base_url(metric, target, trial) + path

        body = self._get_json(url, metric, trial)
        diag = dict(address=url, query=metric.query, completion_time=trial.completion_time)
        try:
            raw = extract_field(body, metric.query)
        except KeyError as exc:
            raise CaptureError(f"metric {metric.name!r}: {exc.args[0]}", **diag) from exc
        try:
            return _to_float(raw, f"metric {metric.name!r}"), 0.0
        except CaptureError as exc:
            exc.address, exc.query, exc.completion_time = url, metric.query, trial.completion_time
            raise
