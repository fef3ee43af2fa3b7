# src/trialrunner/stability.py
"""
Stability probing for patch operations.

A probe answers "has this patch taken observable effect?". It returns None
when the target has settled, raises StabilityError with a positive
`retry_after_s` when it should be asked again later, and raises anything
else (including StabilityError with no delay) when the rollout can never
settle.

RolloutProber reads the patched object directly with a single `get`. It is
meant to run on its own metastore connection, which may carry narrower
credentials than the controller's: it must never list or watch.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Protocol

from trialrunner.exceptions import ObjectNotFoundError, TrialRunnerError
from trialrunner.metastore import Metastore
from trialrunner.trials import PatchOperation, TargetRef

logger = logging.getLogger(__name__)

TARGETS_ROOT = "/targets"


class StabilityError(TrialRunnerError):
    """The patch target has not settled yet (retry_after_s > 0) or never will (0)."""

    def __init__(self, message: str, retry_after_s: float = 0.0):
        super().__init__(message)
        self.message = message
        self.retry_after_s = retry_after_s

    @property
    def retryable(self) -> bool:
        return self.retry_after_s > 0


class StabilityProber(Protocol):
    def probe(self, operation: PatchOperation, namespace: str) -> None:
        ...


def target_path(ref: TargetRef, namespace: str) -> str:
    return f"{TARGETS_ROOT}/{ref.namespace or namespace}/{ref.kind}/{ref.name}"


def _int(d: Dict[str, Any], key: str) -> int:
    return int(d.get(key) or 0)


def _generation_observed(obj: Dict[str, Any]) -> bool:
    status = obj.get("status") or {}
    observed = _int(status, "observed_generation")
    return _int(obj, "generation") <= observed


def _desired_replicas(obj: Dict[str, Any]) -> Optional[int]:
    replicas = (obj.get("spec") or {}).get("replicas")
    return None if replicas is None else int(replicas)


class RolloutProber:
    def __init__(self, reader: Metastore, retry_after_s: float = 5.0):
        self._reader = reader
        self._retry_after_s = retry_after_s
        self._rules: Dict[str, Callable[[str, Dict[str, Any]], None]] = {
            "Deployment": self._deployment,
            "StatefulSet": self._stateful_set,
            "DaemonSet": self._daemon_set,
        }

    def _wait(self, message: str) -> StabilityError:
        return StabilityError(message, retry_after_s=self._retry_after_s)

    def probe(self, operation: PatchOperation, namespace: str) -> None:
        ref = operation.target_ref
        path = target_path(ref, namespace)
        rule = self._rules.get(ref.kind)

        obj = self._reader.get_key(path)
        if obj is None:
            raise ObjectNotFoundError(f"{ref.kind} {ref.namespace or namespace}/{ref.name} not found")
        if rule is None:
            # No rollout semantics for this kind; the patch is in effect once written.
            return
        if not isinstance(obj, dict):
            raise TypeError(f"Unexpected target payload type at {path}: {type(obj)}")

        rule(ref.name, obj)
        logger.debug("%s %s is stable", ref.kind, ref.name)

    # -----------------------------
    # Rollout rules
    # -----------------------------

    def _deployment(self, name: str, obj: Dict[str, Any]) -> None:
        if not _generation_observed(obj):
            raise self._wait(f"Waiting for deployment {name!r} spec update to be observed")

        status = obj.get("status") or {}
        for cond in status.get("conditions") or []:
            if cond.get("type") == "Progressing" and cond.get("reason") == "ProgressDeadlineExceeded":
                raise StabilityError(f"deployment {name!r} exceeded its progress deadline")

        desired = _desired_replicas(obj)
        total = _int(status, "replicas")
        updated = _int(status, "updated_replicas")
        available = _int(status, "available_replicas")
        if desired is not None and updated < desired:
            raise self._wait(
                f"Waiting for deployment {name!r} rollout to finish: "
                f"{updated} out of {desired} new replicas have been updated"
            )
        if total > updated:
            raise self._wait(
                f"Waiting for deployment {name!r} rollout to finish: "
                f"{total - updated} old replicas are pending termination"
            )
        if available < updated:
            raise self._wait(
                f"Waiting for deployment {name!r} rollout to finish: "
                f"{available} of {updated} updated replicas are available"
            )

    def _stateful_set(self, name: str, obj: Dict[str, Any]) -> None:
        if not _generation_observed(obj):
            raise self._wait(f"Waiting for statefulset {name!r} spec update to be observed")

        status = obj.get("status") or {}
        desired = _desired_replicas(obj)
        ready = _int(status, "ready_replicas")
        if desired is not None and ready < desired:
            raise self._wait(f"Waiting for {desired - ready} pods to be ready in statefulset {name!r}")
        if status.get("update_revision") != status.get("current_revision"):
            raise self._wait(
                f"Waiting for statefulset {name!r} rolling update to complete: "
                f"{_int(status, 'updated_replicas')} pods at revision {status.get('update_revision')}"
            )

    def _daemon_set(self, name: str, obj: Dict[str, Any]) -> None:
        if not _generation_observed(obj):
            raise self._wait(f"Waiting for daemon set {name!r} spec update to be observed")

        status = obj.get("status") or {}
        desired = _int(status, "desired_number_scheduled")
        updated = _int(status, "updated_number_scheduled")
        available = _int(status, "number_available")
        if updated < desired:
            raise self._wait(
                f"Waiting for daemon set {name!r} rollout to finish: "
                f"{updated} out of {desired} new pods have been updated"
            )
        if available < desired:
            raise self._wait(
                f"Waiting for daemon set {name!r} rollout to finish: "
                f"{available} of {desired} updated pods are available"
            )
