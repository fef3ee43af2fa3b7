from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import pytest

from trialrunner.config import ControllerSettings, WorkloadSettings
from trialrunner.controller import Result, TrialReconciler
from trialrunner.exceptions import ObjectNotFoundError
from trialrunner.metrics import CaptureError
from trialrunner.stability import StabilityError
from trialrunner.trials import (
    Condition,
    ConditionStatus,
    ConditionType,
    Experiment,
    ExperimentStore,
    Metric,
    MetricType,
    PatchOperation,
    TargetRef,
    Trial,
    TrialKey,
    TrialStore,
    Value,
    trial_path,
)
from trialrunner.workloads import (
    LABEL_EXPERIMENT,
    LABEL_TRIAL,
    LABEL_TRIAL_ROLE,
    ROLE_RUN,
    ROLE_SETUP,
    ContainerState,
    ContainerStateKind,
    ExecutionUnit,
    UnitPhase,
    Workload,
    WorkloadBuilder,
    WorkloadCondition,
    WorkloadStore,
)

from conftest import T0, at

KEY = TrialKey("ns", "t1")
RUN_LABELS = {LABEL_EXPERIMENT: "exp", LABEL_TRIAL: "t1", LABEL_TRIAL_ROLE: ROLE_RUN}


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ScriptedProber:
    """Pops one outcome per probe of a target name: None (stable) or an exception to raise."""

    def __init__(self, outcomes: dict[str, list[Any]] | None = None) -> None:
        self.outcomes = outcomes or {}
        self.calls: list[str] = []
        self.side_effect = None

    def probe(self, operation: PatchOperation, namespace: str) -> None:
        name = operation.target_ref.name
        self.calls.append(name)
        if self.side_effect is not None:
            self.side_effect()
        outcome = self.outcomes[name].pop(0)
        if isinstance(outcome, Exception):
            raise outcome


class ScriptedCapture:
    """Pops one outcome per capture: a (value, stddev) tuple or an exception to raise."""

    def __init__(self, *outcomes: Any) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[str] = []
        self.targets: list[Any] = []

    def capture(self, metric: Metric, trial: Trial, target: Any) -> tuple[float, float]:
        self.calls.append(metric.name)
        self.targets.append(target)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@dataclass
class Harness:
    metastore: Any
    trials: TrialStore
    experiments: ExperimentStore
    workloads: WorkloadStore
    clock: FakeClock
    prober: ScriptedProber = field(default_factory=ScriptedProber)
    capture: ScriptedCapture = field(default_factory=ScriptedCapture)

    @property
    def reconciler(self) -> TrialReconciler:
        return TrialReconciler(
            trials=self.trials,
            experiments=self.experiments,
            workloads=self.workloads,
            prober=self.prober,
            capture=self.capture,  # type: ignore[arg-type]
            builder=WorkloadBuilder(WorkloadSettings()),
            settings=ControllerSettings(stable_grace_s=1.0),
            clock=self.clock,
        )

    def reconcile(self) -> Result:
        return self.reconciler.reconcile(KEY)

    def trial(self) -> Trial:
        return self.trials.load(KEY)

    def version(self) -> int:
        return self.trials.get(KEY)[1].value


@pytest.fixture
def h(metastore) -> Harness:
    return Harness(
        metastore=metastore,
        trials=TrialStore(metastore),
        experiments=ExperimentStore(metastore),
        workloads=WorkloadStore(metastore),
        clock=FakeClock(T0),
    )


def _status(trial: Trial, ctype: ConditionType) -> ConditionStatus | None:
    c = trial.get_condition(ctype)
    return None if c is None else c.status


def _settled(**kw: Any) -> Trial:
    """A trial whose Stable condition settled long ago."""
    conditions = [Condition(ConditionType.STABLE, ConditionStatus.TRUE, last_transition_time=at(-100))]
    return Trial(namespace="ns", name="t1", experiment="exp", conditions=conditions, **kw)


def _finished_run(h: Harness, metrics: list[Metric]) -> None:
    """A settled trial whose run workload finished at t=5s."""
    h.experiments.store(Experiment(namespace="ns", name="exp", metrics=metrics))
    h.trials.create(_settled(start_time=at(1), completion_time=at(5)))
    h.workloads.put(Workload(namespace="ns", name="t1", labels=RUN_LABELS, owner=KEY,
                             start_time=at(1), completion_time=at(5)))


def _op(name: str) -> PatchOperation:
    return PatchOperation(target_ref=TargetRef(kind="Deployment", name=name))


# ---------------------------------------------------------------------------
# Terminal / missing
# ---------------------------------------------------------------------------

def test_missing_trial_is_a_no_op(h) -> None:
    assert h.reconcile() == Result()


@pytest.mark.parametrize(
    "trial",
    [
        Trial(namespace="ns", name="t1", experiment="exp", patch_operations=[_op("a")], deletion_timestamp=at(0)),
        Trial(namespace="ns", name="t1", experiment="exp", patch_operations=[_op("a")],
              conditions=[Condition(ConditionType.FAILED, ConditionStatus.TRUE, "WaitFailed")]),
        Trial(namespace="ns", name="t1", experiment="exp", patch_operations=[_op("a")],
              conditions=[Condition(ConditionType.COMPLETE, ConditionStatus.TRUE)]),
    ],
    ids=["deleted", "failed", "complete"],
)
def test_finished_or_deleted_trial_is_left_alone(h, trial) -> None:
    h.trials.create(trial)
    before = h.version()

    assert h.reconcile() == Result()

    assert h.prober.calls == []
    assert h.version() == before


# ---------------------------------------------------------------------------
# Patch stabilization
# ---------------------------------------------------------------------------

def test_single_patch_progression(h) -> None:
    h.trials.create(Trial(namespace="ns", name="t1", experiment="exp", patch_operations=[_op("a"), _op("b")]))
    h.prober.outcomes = {"a": [None], "b": [None]}

    assert h.reconcile() == Result()

    t = h.trial()
    assert h.prober.calls == ["a"]
    assert [op.wait for op in t.patch_operations] == [False, True]
    assert len(t.conditions) == 1
    stable = t.get_condition(ConditionType.STABLE)
    assert (stable.status, stable.reason) == (ConditionStatus.FALSE, "")


def test_retryable_probes_keep_scanning_and_wait_for_largest_delay(h) -> None:
    h.trials.create(Trial(namespace="ns", name="t1", experiment="exp", patch_operations=[_op("a"), _op("b")]))
    h.prober.outcomes = {"a": [StabilityError("slow a", 3.0)], "b": [StabilityError("slow b", 7.0)]}

    assert h.reconcile() == Result(requeue_after_s=7.0)

    t = h.trial()
    stable = t.get_condition(ConditionType.STABLE)
    assert (stable.status, stable.reason, stable.message) == (ConditionStatus.FALSE, "Waiting", "slow b")
    assert [op.wait for op in t.patch_operations] == [True, True]
    assert t.phase == "Waiting"


def test_fatal_probe_is_not_masked_by_earlier_retry(h) -> None:
    h.trials.create(Trial(namespace="ns", name="t1", experiment="exp", patch_operations=[_op("a"), _op("b")]))
    h.prober.outcomes = {"a": [StabilityError("slow", 3.0)], "b": [RuntimeError("target vanished")]}

    assert h.reconcile() == Result()

    failed = h.trial().get_condition(ConditionType.FAILED)
    assert (failed.status, failed.reason, failed.message) == (ConditionStatus.TRUE, "WaitFailed", "target vanished")
    assert h.prober.calls == ["a", "b"]


def test_stability_error_without_delay_is_fatal(h) -> None:
    h.trials.create(Trial(namespace="ns", name="t1", experiment="exp", patch_operations=[_op("a")]))
    h.prober.outcomes = {"a": [StabilityError("deadline exceeded")]}

    h.reconcile()

    assert h.trial().get_condition(ConditionType.FAILED).reason == "WaitFailed"


def test_unchanged_wait_is_not_rewritten(h) -> None:
    h.trials.create(Trial(namespace="ns", name="t1", experiment="exp", patch_operations=[_op("a")]))
    h.prober.outcomes = {"a": [StabilityError("rolling", 5.0), StabilityError("rolling", 5.0)]}

    assert h.reconcile() == Result(requeue_after_s=5.0)
    before = h.version()

    assert h.reconcile() == Result(requeue_after_s=5.0)
    assert h.version() == before
    assert h.prober.calls == ["a", "a"]


def test_commit_conflict_discards_pass_and_requeues(h) -> None:
    h.trials.create(Trial(namespace="ns", name="t1", experiment="exp", patch_operations=[_op("a")]))
    h.prober.outcomes = {"a": [None]}
    # A concurrent writer touches the trial while the probe is in flight.
    h.prober.side_effect = lambda: h.metastore.update_key(trial_path(KEY), h.trial().to_dict())

    assert h.reconcile() == Result(requeue=True)

    assert h.trial().patch_operations[0].wait is True
    assert h.trial().conditions == []


def test_stable_promotion_then_grace_window(h) -> None:
    h.trials.create(Trial(namespace="ns", name="t1", experiment="exp"))

    assert h.reconcile() == Result()
    assert _status(h.trial(), ConditionType.STABLE) == ConditionStatus.TRUE

    before = h.version()
    assert h.reconcile() == Result(requeue_after_s=1.0)
    assert h.version() == before
    assert h.workloads.list("ns") == []

    h.clock.advance(1.5)
    h.reconcile()
    assert [w.name for w in h.workloads.list("ns")] == ["t1"]


# ---------------------------------------------------------------------------
# Run workload
# ---------------------------------------------------------------------------

def test_no_workload_while_patches_are_pending_evaluation(h) -> None:
    t = _settled()
    t.conditions.append(Condition(ConditionType.PATCHED, ConditionStatus.UNKNOWN))
    h.trials.create(t)

    assert h.reconcile() == Result()
    assert h.workloads.list("ns") == []


def test_no_workload_while_initializers_pending(h) -> None:
    h.trials.create(_settled(initializers=["setup-create"]))

    assert h.reconcile() == Result()
    assert h.workloads.list("ns") == []


def test_creates_exactly_one_owned_run_workload_ignoring_setup(h) -> None:
    h.trials.create(_settled())
    h.workloads.put(Workload(namespace="ns", name="t1-create",
                             labels={**RUN_LABELS, LABEL_TRIAL_ROLE: ROLE_SETUP}, owner=KEY))

    assert h.reconcile() == Result()

    run = h.workloads.get("ns", "t1")
    assert run.owner == KEY
    assert run.labels[LABEL_TRIAL_ROLE] == ROLE_RUN

    # The new workload is discovered on the next pass; nothing else is created.
    h.reconcile()
    assert sorted(w.name for w in h.workloads.list("ns")) == ["t1", "t1-create"]


def test_name_clash_on_create_requeues(h) -> None:
    h.trials.create(_settled())
    h.workloads.put(Workload(namespace="ns", name="t1"))

    assert h.reconcile() == Result(requeue=True)


def test_uncorroborated_workload_requeues_without_mutation(h) -> None:
    h.trials.create(_settled())
    h.workloads.put(Workload(namespace="ns", name="t1", labels=RUN_LABELS, owner=KEY,
                             unit_selector={LABEL_TRIAL: "t1"}, start_time=at(1)))
    before = h.version()

    assert h.reconcile() == Result(requeue=True)
    assert h.version() == before


def test_workload_failure_fails_trial(h) -> None:
    h.trials.create(_settled())
    h.workloads.put(Workload(
        namespace="ns", name="t1", labels=RUN_LABELS, owner=KEY, start_time=at(1),
        conditions=[WorkloadCondition("Failed", "True", "BackoffLimitExceeded", "Job has reached the backoff limit")],
    ))

    h.reconcile()

    t = h.trial()
    failed = t.get_condition(ConditionType.FAILED)
    assert (failed.reason, failed.message) == ("BackoffLimitExceeded", "Job has reached the backoff limit")
    assert t.start_time == at(1)
    assert t.phase == "Failed"


def test_start_time_offset_applies_to_start_only(h) -> None:
    h.trials.create(_settled(start_time_offset_s=30.0))
    h.workloads.put(Workload(namespace="ns", name="t1", labels=RUN_LABELS, owner=KEY,
                             start_time=at(1), completion_time=at(90)))
    h.experiments.store(Experiment(namespace="ns", name="exp"))

    h.reconcile()

    t = h.trial()
    assert (t.start_time, t.completion_time) == (at(31), at(90))


def test_recorded_run_is_never_recreated(h) -> None:
    h.experiments.store(Experiment(namespace="ns", name="exp", metrics=[Metric(name="latency")]))
    h.trials.create(_settled(start_time=at(1), completion_time=at(5)))

    assert h.reconcile() == Result()

    assert h.workloads.list("ns") == []
    assert _status(h.trial(), ConditionType.OBSERVED) == ConditionStatus.UNKNOWN


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

def test_no_metric_fast_path(h) -> None:
    _finished_run(h, metrics=[])

    h.reconcile()

    t = h.trial()
    assert _status(t, ConditionType.COMPLETE) == ConditionStatus.TRUE
    assert t.get_condition(ConditionType.OBSERVED) is None
    assert h.capture.calls == []


def test_attempt_budget_exhaustion_with_transient_failure_in_between(h) -> None:
    _finished_run(h, metrics=[Metric(name="latency")])
    h.capture = ScriptedCapture(
        CaptureError("boom"),
        CaptureError("target warming up", retry_after_s=5.0),
        CaptureError("boom"),
        CaptureError("boom"),
    )

    h.reconcile()
    assert _status(h.trial(), ConditionType.OBSERVED) == ConditionStatus.UNKNOWN

    h.reconcile()
    assert h.trial().values == [Value(name="latency", attempts_remaining=2)]
    assert _status(h.trial(), ConditionType.OBSERVED) == ConditionStatus.FALSE

    before = h.version()
    assert h.reconcile() == Result(requeue_after_s=5.0)
    assert h.version() == before
    assert h.trial().values[0].attempts_remaining == 2

    h.reconcile()
    assert h.trial().values[0].attempts_remaining == 1

    h.reconcile()
    t = h.trial()
    assert t.values[0].attempts_remaining == 0
    failed = t.get_condition(ConditionType.FAILED)
    assert (failed.status, failed.reason, failed.message) == (ConditionStatus.TRUE, "MetricFailed", "boom")

    h.reconcile()
    assert len(h.capture.calls) == 4


def test_resolution_error_counts_as_capture_failure(h) -> None:
    _finished_run(h, metrics=[Metric(name="pods", type=MetricType.PODS, selector={"bad key!": "x"})])

    h.reconcile()
    h.reconcile()

    assert h.trial().values[0].attempts_remaining == 2
    assert h.capture.calls == []


def test_pods_metric_reads_units_from_target_namespace(h) -> None:
    h.experiments.store(Experiment(namespace="ns", name="exp",
                                   metrics=[Metric(name="cpu", type=MetricType.PODS, selector={"app": "web"})]))
    h.trials.create(_settled(start_time=at(1), completion_time=at(5), target_namespace="apps"))
    h.workloads.put_unit(ExecutionUnit(namespace="apps", name="web-1", labels={"app": "web"}))
    h.workloads.put_unit(ExecutionUnit(namespace="ns", name="web-2", labels={"app": "web"}))
    h.capture = ScriptedCapture((0.5, 0.0))

    h.reconcile()
    h.reconcile()

    assert [[u.namespace for u in target] for target in h.capture.targets] == [["apps"]]
    assert h.trial().values[0].value == "0.5"


def test_success_records_value_and_stddev(h) -> None:
    _finished_run(h, metrics=[Metric(name="throughput"), Metric(name="latency")])
    h.capture = ScriptedCapture((1500.0, 2.5), (0.25, 0.0))

    for _ in range(3):
        h.reconcile()

    t = h.trial()
    assert t.values == [
        Value(name="throughput", value="1500", error="2.5", attempts_remaining=0),
        Value(name="latency", value="0.25", error="", attempts_remaining=0),
    ]
    assert h.capture.calls == ["throughput", "latency"]

    h.reconcile()
    t = h.trial()
    assert _status(t, ConditionType.OBSERVED) == ConditionStatus.TRUE
    assert _status(t, ConditionType.COMPLETE) == ConditionStatus.TRUE


def test_missing_experiment_propagates(h) -> None:
    h.trials.create(_settled(start_time=at(1), completion_time=at(5)))
    h.workloads.put(Workload(namespace="ns", name="t1", labels=RUN_LABELS, owner=KEY,
                             start_time=at(1), completion_time=at(5)))

    with pytest.raises(ObjectNotFoundError):
        h.reconcile()


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------

def _unit(state: ContainerState, phase: UnitPhase) -> ExecutionUnit:
    return ExecutionUnit(namespace="ns", name="t1-x7k2p", labels={LABEL_TRIAL: "t1", LABEL_TRIAL_ROLE: ROLE_RUN},
                         phase=phase, containers=[state])


def test_end_to_end(h) -> None:
    h.experiments.store(Experiment(namespace="ns", name="exp", metrics=[Metric(name="latency")]))
    h.trials.create(Trial(namespace="ns", name="t1", experiment="exp"))
    h.capture = ScriptedCapture((12.3, 0.0))

    h.reconcile()                                    # Stable=True
    h.clock.advance(2)
    h.reconcile()                                    # run workload created
    workload = h.workloads.get("ns", "t1")

    # Platform: the workload starts running.
    h.workloads.put_unit(_unit(ContainerState("main", ContainerStateKind.RUNNING, started_at=at(2)), UnitPhase.RUNNING))
    workload.start_time = at(2)
    h.workloads.put(workload)
    h.reconcile()
    assert h.trial().start_time == at(2)
    assert h.trial().phase == "Running"

    # Platform: the workload finishes at t=5s.
    h.workloads.put_unit(_unit(
        ContainerState("main", ContainerStateKind.TERMINATED, started_at=at(2), finished_at=at(5), exit_code=0),
        UnitPhase.SUCCEEDED,
    ))
    workload.completion_time = at(5)
    h.workloads.put(workload)
    h.reconcile()
    assert h.trial().completion_time == at(5)

    h.reconcile()                                    # Observed=Unknown
    h.reconcile()                                    # latency captured
    h.reconcile()                                    # Observed=True, Complete=True

    t = h.trial()
    assert _status(t, ConditionType.STABLE) == ConditionStatus.TRUE
    assert _status(t, ConditionType.OBSERVED) == ConditionStatus.TRUE
    assert _status(t, ConditionType.COMPLETE) == ConditionStatus.TRUE
    assert t.values == [Value(name="latency", value="12.3", attempts_remaining=0)]
    assert t.phase == "Completed"

    assert h.reconcile() == Result()
    assert h.capture.calls == ["latency"]
