# src/trialrunner/controller/manager.py
from __future__ import annotations

import logging
import socket
import uuid
from contextlib import contextmanager
from threading import Event, Thread
from time import monotonic
from typing import Iterator, Optional

from trialrunner.config import AppSettings
from trialrunner.metastore import Metastore, ZkConnectionManager
from trialrunner.metrics import MetricCaptureClient
from trialrunner.stability import RolloutProber
from trialrunner.trials import ExperimentStore, TrialKey, TrialStore
from trialrunner.workloads import WorkloadBuilder, WorkloadStore
from .queue import ExponentialBackoff, WorkQueue
from .reconciler import TrialReconciler
from .triggers import TrialTriggers

logger = logging.getLogger(__name__)

LEADER_ELECTION_PATH = "/controller/leader_election"


class ControllerManager:
    """
    Runs reconcile passes for all trials while this process holds leadership.

    - Leader-elected: several managers may run; only the leader reconciles.
    - Triggers enqueue trial keys on trial, workload and unit changes.
    - `max_concurrent_reconciles` worker threads drain the queue; the queue
      guarantees at most one in-flight pass per trial.
    - A pass that raises is logged and retried with per-key exponential
      backoff; the backoff resets after the next clean pass.
    """

    def __init__(
            self,
            *,
            metastore: Metastore,
            reconciler: TrialReconciler,
            workloads: WorkloadStore,
            settings: AppSettings,
            candidate_id: Optional[str] = None,
    ) -> None:
        self._metastore = metastore
        self._reconciler = reconciler
        self._workloads = workloads
        self._settings = settings.controller
        self._candidate_id = candidate_id or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"

        self._stop = Event()
        self.queue: WorkQueue[TrialKey] = WorkQueue()
        self._backoff: ExponentialBackoff[TrialKey] = ExponentialBackoff(
            self._settings.backoff_base_s, self._settings.backoff_max_s
        )
        self._workers: list[Thread] = []

        self._election = metastore.make_leader_election(
            root_path=LEADER_ELECTION_PATH,
            candidate_id=self._candidate_id,
            metadata={"hostname": socket.gethostname()},
        )

    @property
    def candidate_id(self) -> str:
        return self._candidate_id

    def request_stop(self, timeout_s: Optional[float] = None) -> None:
        self._stop.set()
        self.queue.shutdown()
        self._election.cancel()

        deadline = None if timeout_s is None else monotonic() + timeout_s
        for t in list(self._workers):
            remaining = None if deadline is None else max(0.0, deadline - monotonic())
            t.join(timeout=remaining)

        still_alive = [t for t in self._workers if t.is_alive()]
        if still_alive:
            logger.warning("Controller shutdown: %d workers still busy after timeout.", len(still_alive))

    def run_forever(self) -> None:
        logger.info("Controller %s starting leader election.", self._candidate_id)
        self._election.run(self._on_lead)

    # ------------------------------------------------------------------ #
    # Leader loop
    # ------------------------------------------------------------------ #

    def _on_lead(self) -> None:
        logger.info("Controller %s is leader.", self._candidate_id)

        triggers = TrialTriggers(self._metastore, self._workloads, self.queue.add)
        triggers.start()

        self._workers = [
            Thread(target=self._worker_loop, name=f"reconcile-{i}", daemon=True)
            for i in range(self._settings.max_concurrent_reconciles)
        ]
        for t in self._workers:
            t.start()

        try:
            while not self._stop.is_set() and not self._metastore.stopped:
                self._stop.wait(self._settings.dequeue_timeout_s)
        finally:
            triggers.stop()
            self.queue.shutdown()
            for t in self._workers:
                t.join()
            logger.info("Controller %s relinquishing leadership.", self._candidate_id)

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            key = self.queue.get(timeout=self._settings.dequeue_timeout_s)
            if key is None:
                if self.queue.shutting_down:
                    return
                continue
            self.process(key)

    def process(self, key: TrialKey) -> None:
        """Run one reconcile pass for `key` and schedule the follow-up."""
        try:
            result = self._reconciler.reconcile(key)
        except Exception as exc:
            delay = self._backoff.when(key)
            logger.exception("Reconcile of trial %s failed; retrying in %.3fs: %r", key, delay, exc)
            self.queue.add_after(key, delay)
            return
        finally:
            self.queue.done(key)

        if result.requeue and not result.requeue_after_s:
            # Immediate requeues share the per-key error backoff.
            self.queue.add_after(key, self._backoff.when(key))
            return

        self._backoff.forget(key)
        if result.requeue_after_s:
            self.queue.add_after(key, result.requeue_after_s)


@contextmanager
def make_manager(settings: AppSettings, *, candidate_id: Optional[str] = None) -> Iterator[ControllerManager]:
    """
    Wire a ControllerManager from settings: the shared metastore connection,
    a separate read-only connection for stability probes, the stores, the
    capture client and the reconciler. Connections are closed on exit.
    """
    connection = ZkConnectionManager(settings.zookeeper)
    stab = settings.stability
    probe_settings = settings.zookeeper.model_copy(
        update={
            "auth_scheme": stab.auth_scheme or settings.zookeeper.auth_scheme,
            "auth_credentials": stab.auth_credentials or settings.zookeeper.auth_credentials,
        }
    )
    probe_connection = ZkConnectionManager(probe_settings)
    capture = MetricCaptureClient(settings.metrics)

    connection.start()
    probe_connection.start()
    try:
        group = settings.zookeeper.default_group
        metastore = Metastore(connection=connection, group=group)
        workloads = WorkloadStore(metastore)
        reconciler = TrialReconciler(
            trials=TrialStore(metastore),
            experiments=ExperimentStore(metastore),
            workloads=workloads,
            prober=RolloutProber(Metastore(connection=probe_connection, group=group), stab.retry_after_s),
            capture=capture,
            builder=WorkloadBuilder(settings.workload),
            settings=settings.controller,
        )
        yield ControllerManager(
            metastore=metastore,
            reconciler=reconciler,
            workloads=workloads,
            settings=settings,
            candidate_id=candidate_id,
        )
    finally:
        capture.close()
        probe_connection.stop()
        connection.stop()
