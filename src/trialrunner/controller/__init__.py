from __future__ import annotations

from .reconciler import Result, TrialReconciler
from .queue import ExponentialBackoff, WorkQueue
from .triggers import TrialTriggers, trial_key_for_workload
from .manager import LEADER_ELECTION_PATH, ControllerManager, make_manager

__all__ = [
    "Result",
    "TrialReconciler",
    "ExponentialBackoff",
    "WorkQueue",
    "TrialTriggers",
    "trial_key_for_workload",
    "ControllerManager",
    "make_manager",
    "LEADER_ELECTION_PATH",
]
