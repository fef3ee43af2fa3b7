# src/trialrunner/controller/reconciler.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from trialrunner.config import ControllerSettings
from trialrunner.exceptions import ObjectExistsError, ObjectNotFoundError, TrialRunnerError
from trialrunner.metastore import MetastoreConflictError, VersionToken
from trialrunner.metrics import CaptureError, MetricCaptureClient, resolve_target
from trialrunner.selectors import LabelSelector
from trialrunner.serialization import utcnow
from trialrunner.stability import StabilityError, StabilityProber
from trialrunner.trials import (
    ConditionStatus,
    ConditionType,
    ExperimentStore,
    Trial,
    TrialKey,
    TrialStore,
    apply_condition,
    check_condition,
    format_decimal,
    is_finished,
    summarize_phase,
)
from trialrunner.workloads import (
    LABEL_EXPERIMENT,
    LABEL_TRIAL,
    ROLE_SETUP,
    Workload,
    WorkloadBuilder,
    WorkloadStore,
    earliest_time,
    latest_time,
    observe_workload,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Result:
    """Outcome of one reconcile pass: whether, and how soon, to run the trial again."""
    requeue: bool = False
    requeue_after_s: Optional[float] = None


class TrialReconciler:
    """
    The per-trial state machine.

    Every pass re-reads the trial, performs at most one state-advancing
    mutation, commits it with the version token read at the start of the
    pass and returns. Progress comes from the next pass, never from a
    loop inside this one. A commit that loses against a concurrent writer
    is dropped and the trial is requeued so the decision is recomputed on
    fresh data.

    Collaborators:
    - `prober` answers whether a patch operation has taken effect;
    - `capture` takes one metric sample from a resolved target;
    - `builder` produces the run workload when none exists yet.
    """

    def __init__(
            self,
            *,
            trials: TrialStore,
            experiments: ExperimentStore,
            workloads: WorkloadStore,
            prober: StabilityProber,
            capture: MetricCaptureClient,
            builder: WorkloadBuilder,
            settings: ControllerSettings,
            clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._trials = trials
        self._experiments = experiments
        self._workloads = workloads
        self._prober = prober
        self._capture = capture
        self._builder = builder
        self._settings = settings
        self._clock = clock

    # ------------------------------------------------------------------ #
    # Entry point
    # ------------------------------------------------------------------ #

    def reconcile(self, key: TrialKey) -> Result:
        now = self._clock()

        try:
            trial, version = self._trials.get(key)
        except ObjectNotFoundError:
            return Result()

        if is_finished(trial) or trial.deletion_timestamp is not None:
            return Result()

        result = self._stabilize(trial, version, now)
        if result is not None:
            return result

        result = self._run(trial, version, now)
        if result is not None:
            return result

        if trial.completion_time is not None:
            return self._observe(trial, version, now)

        return Result()

    # ------------------------------------------------------------------ #
    # Patch stabilization
    # ------------------------------------------------------------------ #

    def _stabilize(self, trial: Trial, version: VersionToken, now: datetime) -> Optional[Result]:
        wait_s = 0.0
        waiting_changed = False
        for op in trial.patch_operations:
            if not op.wait:
                continue

            try:
                self._prober.probe(op, trial.namespace)
            except StabilityError as exc:
                if exc.retry_after_s <= 0:
                    return self._fail(trial, version, now, "WaitFailed", str(exc))
                if exc.retry_after_s > wait_s:
                    waiting_changed |= apply_condition(
                        trial, ConditionType.STABLE, ConditionStatus.FALSE, "Waiting", str(exc), now
                    )
                    wait_s = exc.retry_after_s
                # A later fatal probe must not be masked by this one.
                continue
            except Exception as exc:
                return self._fail(trial, version, now, "WaitFailed", str(exc))

            op.wait = False
            apply_condition(trial, ConditionType.STABLE, ConditionStatus.FALSE, "", "", now)
            logger.debug("Trial %s: %s %s is stable", trial.key, op.target_ref.kind, op.target_ref.name)
            return self._commit(trial, version)

        if wait_s > 0:
            if waiting_changed:
                result = self._commit(trial, version)
                if result.requeue:
                    return result
            return Result(requeue_after_s=wait_s)

        stable, _ = check_condition(trial, ConditionType.STABLE, ConditionStatus.TRUE)
        if not stable:
            apply_condition(trial, ConditionType.STABLE, ConditionStatus.TRUE, "", "", now)
            logger.debug("Trial %s is stable", trial.key)
            return self._commit(trial, version)

        # TODO: drop the grace window once the premature-run race after a Stable transition is understood.
        cond = trial.get_condition(ConditionType.STABLE)
        grace = timedelta(seconds=self._settings.stable_grace_s)
        if cond is not None and cond.last_transition_time is not None and cond.last_transition_time + grace > now:
            return Result(requeue_after_s=self._settings.stable_grace_s)

        return None

    # ------------------------------------------------------------------ #
    # Run workload
    # ------------------------------------------------------------------ #

    def _ready_for_workload(self, trial: Trial) -> bool:
        patched_unknown, _ = check_condition(trial, ConditionType.PATCHED, ConditionStatus.UNKNOWN)
        return not patched_unknown and not trial.initializers

    def _run_workloads(self, trial: Trial) -> list[Workload]:
        selector = LabelSelector({LABEL_EXPERIMENT: trial.experiment, LABEL_TRIAL: trial.name})
        return [w for w in self._workloads.list(trial.namespace, selector) if w.role != ROLE_SETUP]

    def _run(self, trial: Trial, version: VersionToken, now: datetime) -> Optional[Result]:
        if trial.start_time is not None and trial.completion_time is not None:
            # The run is over; workloads are never created or re-read again.
            return None

        if not self._ready_for_workload(trial):
            logger.debug("Trial %s is not ready for a run workload", trial.key)
            return Result()

        workloads = self._run_workloads(trial)
        if not workloads:
            workload = self._builder.build(trial)
            try:
                self._workloads.create(workload)
            except ObjectExistsError:
                # Created by a concurrent pass, or not yet visible to the list.
                return Result(requeue=True)
            logger.info("Trial %s: created run workload %s/%s", trial.key, workload.namespace, workload.name)
            return Result()

        for workload in workloads:
            obs = observe_workload(workload, self._workloads.units_for(workload))
            if obs.inconsistent:
                logger.debug("Trial %s: workload %s not yet corroborated by its units", trial.key, workload.name)
                return Result(requeue=True)

            dirty = False
            if obs.failures:
                failure = obs.failures[0]
                dirty |= apply_condition(
                    trial, ConditionType.FAILED, ConditionStatus.TRUE, failure.reason, failure.message, now
                )
                logger.info("Trial %s failed: %s %s", trial.key, failure.reason, failure.message)

            start = latest_time(trial.start_time, obs.started_at, trial.start_time_offset_s)
            if start != trial.start_time:
                trial.start_time = start
                dirty = True

            finish = earliest_time(trial.completion_time, obs.finished_at)
            if finish != trial.completion_time:
                trial.completion_time = finish
                dirty = True

            if dirty:
                return self._commit(trial, version)

        return None

    # ------------------------------------------------------------------ #
    # Metric collection
    # ------------------------------------------------------------------ #

    def _observe(self, trial: Trial, version: VersionToken, now: datetime) -> Result:
        experiment = self._experiments.get(trial.experiment_key)

        if experiment.metrics:
            _, found = check_condition(trial, ConditionType.OBSERVED, ConditionStatus.UNKNOWN)
            if not found:
                apply_condition(trial, ConditionType.OBSERVED, ConditionStatus.UNKNOWN, "", "", now)
                return self._commit(trial, version)

        for metric in experiment.metrics:
            value = trial.find_or_create_value(metric.name, self._settings.default_attempts)
            if value.attempts_remaining == 0:
                continue

            error: Optional[Exception] = None
            try:
                target = resolve_target(self._workloads, metric, trial.target_namespace or trial.namespace)
                sample, stddev = self._capture.capture(metric, trial, target)
            except CaptureError as exc:
                if exc.retry_after_s > 0:
                    logger.debug("Trial %s: metric %s not available yet: %s", trial.key, metric.name, exc)
                    return Result(requeue_after_s=exc.retry_after_s)
                error = exc
            except TrialRunnerError as exc:
                error = exc
            else:
                value.attempts_remaining = 0
                value.value = format_decimal(sample)
                if stddev != 0:
                    value.error = format_decimal(stddev)
                apply_condition(trial, ConditionType.OBSERVED, ConditionStatus.FALSE, "", "", now)
                logger.debug("Trial %s: captured %s=%s", trial.key, metric.name, value.value)
                return self._commit(trial, version)

            value.attempts_remaining -= 1
            if value.attempts_remaining == 0:
                if isinstance(error, CaptureError):
                    logger.error(
                        "Metric collection failed for trial %s: %s (address=%s, query=%s, completionTime=%s)",
                        trial.key, error, error.address, error.query, error.completion_time,
                    )
                else:
                    logger.error("Metric collection failed for trial %s: %s", trial.key, error)
                return self._fail(trial, version, now, "MetricFailed", str(error))

            logger.warning(
                "Trial %s: metric %s capture failed (%d attempts left): %s",
                trial.key, metric.name, value.attempts_remaining, error,
            )
            apply_condition(trial, ConditionType.OBSERVED, ConditionStatus.FALSE, "", "", now)
            return self._commit(trial, version)

        observed, found = check_condition(trial, ConditionType.OBSERVED, ConditionStatus.TRUE)
        if found and not observed:
            apply_condition(trial, ConditionType.OBSERVED, ConditionStatus.TRUE, "", "", now)
        apply_condition(trial, ConditionType.COMPLETE, ConditionStatus.TRUE, "", "", now)
        logger.info("Trial %s completed", trial.key)
        return self._commit(trial, version)

    # ------------------------------------------------------------------ #
    # Commit
    # ------------------------------------------------------------------ #

    def _fail(self, trial: Trial, version: VersionToken, now: datetime, reason: str, message: str) -> Result:
        apply_condition(trial, ConditionType.FAILED, ConditionStatus.TRUE, reason, message, now)
        logger.info("Trial %s failed: %s: %s", trial.key, reason, message)
        return self._commit(trial, version)

    def _commit(self, trial: Trial, version: VersionToken) -> Result:
        trial.phase = summarize_phase(trial)
        try:
            self._trials.update(trial, expected=version)
        except MetastoreConflictError:
            logger.debug("Trial %s changed during reconcile; requeueing", trial.key)
            return Result(requeue=True)
        return Result()
