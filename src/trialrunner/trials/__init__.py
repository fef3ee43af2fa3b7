"""
Trial API.

- Dataclasses representing trials, their patch operations, conditions and values
- The condition ledger (apply/check helpers)
- Experiment definitions (metric declarations)
- Metastore-backed persistence (TrialStore, ExperimentStore)
"""

from __future__ import annotations

from .trial import (
    DEFAULT_ATTEMPTS,
    Condition,
    ConditionStatus,
    ConditionType,
    PatchOperation,
    TargetRef,
    Trial,
    TrialKey,
    Value,
    WorkloadTemplate,
    format_decimal,
)
from .conditions import apply_condition, check_condition, is_finished, summarize_phase
from .experiment import Experiment, Metric, MetricType
from .store import (
    EXPERIMENTS_ROOT,
    TRIALS_ROOT,
    ExperimentStore,
    TrialStore,
    experiment_path,
    trial_path,
)

__all__ = [
    "DEFAULT_ATTEMPTS",
    "Condition",
    "ConditionStatus",
    "ConditionType",
    "PatchOperation",
    "TargetRef",
    "Trial",
    "TrialKey",
    "Value",
    "WorkloadTemplate",
    "format_decimal",
    "apply_condition",
    "check_condition",
    "is_finished",
    "summarize_phase",
    "Experiment",
    "Metric",
    "MetricType",
    "ExperimentStore",
    "TrialStore",
    "experiment_path",
    "trial_path",
    "TRIALS_ROOT",
    "EXPERIMENTS_ROOT",
]
