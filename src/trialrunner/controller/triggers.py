# src/trialrunner/controller/triggers.py
"""
Change notifications that drive reconcile passes.

Two thin adapters feed the same queue: one maps trial changes to the
trial's key, the other maps workload and execution unit changes to the
owning trial's key. All reconcile logic lives in TrialReconciler.
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Mapping, Optional, Set

from trialrunner.metastore import Metastore
from trialrunner.trials import TRIALS_ROOT, TrialKey
from trialrunner.workloads import LABEL_TRIAL, UNITS_ROOT, WORKLOADS_ROOT, WorkloadStore

logger = logging.getLogger(__name__)


def trial_key_for_workload(namespace: str, doc: Mapping[str, Any]) -> Optional[TrialKey]:
    """
    Owning trial of a workload or execution unit document: the owner link
    when present, otherwise the trial label.
    """
    owner = doc.get("owner")
    if owner:
        return TrialKey(str(owner["namespace"]), str(owner["name"]))
    trial = (doc.get("labels") or {}).get(LABEL_TRIAL)
    if trial:
        return TrialKey(namespace, str(trial))
    return None


class _TreeWatcher:
    """
    Watches a two-level tree `<root>/<namespace>/<name>` and calls
    `on_change(namespace, name, value)` for every data change and
    `on_removed(namespace, name)` when a name disappears.
    """

    def __init__(
            self,
            metastore: Metastore,
            root: str,
            on_change: Callable[[str, str, Any], None],
            on_removed: Optional[Callable[[str, str], None]] = None,
    ) -> None:
        self._metastore = metastore
        self._root = root
        self._on_change = on_change
        self._on_removed = on_removed
        self._lock = threading.Lock()
        self._namespaces: Set[str] = set()
        self._names: Dict[str, Set[str]] = {}
        self._stopped = threading.Event()

    def start(self) -> None:
        self._metastore.ensure_structure([self._root])
        self._metastore.watch_members_with_callback(self._root, self._namespaces_changed)

    def stop(self) -> None:
        self._stopped.set()

    def _namespaces_changed(self, namespaces: list[str], _path: str) -> bool:
        if self._stopped.is_set():
            return False
        with self._lock:
            new = [ns for ns in namespaces if ns not in self._namespaces]
            self._namespaces.update(new)
        for ns in new:
            self._metastore.watch_members_with_callback(
                f"{self._root}/{ns}",
                lambda names, _p, ns=ns: self._names_changed(ns, names),
            )
        return True

    def _names_changed(self, namespace: str, names: list[str]) -> bool:
        if self._stopped.is_set():
            return False
        with self._lock:
            known = self._names.setdefault(namespace, set())
            added = [n for n in names if n not in known]
            removed = [n for n in known if n not in names]
            known.difference_update(removed)
            known.update(added)

        for name in added:
            self._metastore.watch_with_callback(
                f"{self._root}/{namespace}/{name}",
                lambda value, _p, ns=namespace, n=name: self._data_changed(ns, n, value),
            )
        if self._on_removed is not None:
            for name in removed:
                self._on_removed(namespace, name)
        return True

    def _data_changed(self, namespace: str, name: str, value: Any) -> bool:
        if self._stopped.is_set():
            return False
        with self._lock:
            if name not in self._names.get(namespace, ()):
                # Removed and possibly re-created; the new watch takes over.
                return False
        self._on_change(namespace, name, value)
        return True


class TrialTriggers:
    """
    Enqueues a trial whenever it, one of its workloads or one of its
    execution units changes. Removing a trial removes the workloads it owns.
    """

    def __init__(self, metastore: Metastore, workloads: WorkloadStore, enqueue: Callable[[TrialKey], None]):
        self._workloads = workloads
        self._enqueue = enqueue
        self._watchers = [
            _TreeWatcher(metastore, TRIALS_ROOT, self._trial_changed, self._trial_removed),
            _TreeWatcher(metastore, WORKLOADS_ROOT, self._workload_changed),
            _TreeWatcher(metastore, UNITS_ROOT, self._workload_changed),
        ]

    def start(self) -> None:
        for w in self._watchers:
            w.start()

    def stop(self) -> None:
        for w in self._watchers:
            w.stop()

    def _trial_changed(self, namespace: str, name: str, _value: Any) -> None:
        self._enqueue(TrialKey(namespace, name))

    def _trial_removed(self, namespace: str, name: str) -> None:
        self._workloads.delete_owned(TrialKey(namespace, name))

    def _workload_changed(self, namespace: str, name: str, value: Any) -> None:
        if not isinstance(value, dict):
            return
        key = trial_key_for_workload(namespace, value)
        if key is None:
            logger.debug("Ignoring %s/%s: no owning trial", namespace, name)
            return
        self._enqueue(key)
