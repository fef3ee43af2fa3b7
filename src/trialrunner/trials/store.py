# src/trialrunner/trials/store.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from trialrunner.exceptions import ObjectNotFoundError
from trialrunner.metastore import Metastore, VersionToken
from trialrunner.selectors import LabelSelector
from trialrunner.serialization import utcnow
from .experiment import Experiment
from .trial import Trial, TrialKey

TRIALS_ROOT = "/trials"
EXPERIMENTS_ROOT = "/experiments"


def trial_path(key: TrialKey) -> str:
    return f"{TRIALS_ROOT}/{key.namespace}/{key.name}"


def experiment_path(key: TrialKey) -> str:
    return f"{EXPERIMENTS_ROOT}/{key.namespace}/{key.name}"


class TrialStore:
    """
    Persistence for trials. Each trial is a SINGLE key so that spec and status
    commit together; the znode version is the optimistic-concurrency token.

    Writes never retry on conflict: a stale decision must be recomputed by the
    next reconcile pass, not replayed.
    """

    def __init__(self, metastore: Metastore):
        self.metastore = metastore
        metastore.ensure_structure([TRIALS_ROOT])

    def get(self, key: TrialKey) -> tuple[Trial, VersionToken]:
        raw, version = self.metastore.get_key_with_version(trial_path(key))
        if raw is None or version is None:
            raise ObjectNotFoundError(f"Trial {key} not found")
        if not isinstance(raw, dict):
            raise TypeError(f"Unexpected trial payload type: {type(raw)}")
        return Trial.from_dict(raw), version

    def load(self, key: TrialKey) -> Trial:
        trial, _ = self.get(key)
        return trial

    def create(self, trial: Trial) -> None:
        self.metastore.create_key(trial_path(trial.key), trial.to_dict())

    def update(self, trial: Trial, *, expected: VersionToken) -> None:
        """
        CAS write; raises MetastoreConflictError if the trial changed since `expected` was read.
        """
        self.metastore.update_key(trial_path(trial.key), trial.to_dict(), expected=expected)

    def mark_deleted(self, key: TrialKey, now: Optional[datetime] = None) -> None:
        trial, version = self.get(key)
        if trial.deletion_timestamp is None:
            trial.deletion_timestamp = now or utcnow()
            self.update(trial, expected=version)

    def delete(self, key: TrialKey) -> bool:
        return self.metastore.drop_key(trial_path(key))

    def list_namespaces(self) -> list[str]:
        return sorted(self.metastore.list_members(TRIALS_ROOT))

    def list_keys(self, namespace: Optional[str] = None) -> list[TrialKey]:
        namespaces = [namespace] if namespace is not None else self.list_namespaces()
        keys: list[TrialKey] = []
        for ns in namespaces:
            keys.extend(TrialKey(ns, name) for name in sorted(self.metastore.list_members(f"{TRIALS_ROOT}/{ns}")))
        return keys

    def list(self, namespace: Optional[str] = None, selector: Optional[LabelSelector] = None) -> list[Trial]:
        trials: list[Trial] = []
        for key in self.list_keys(namespace):
            try:
                trial = self.load(key)
            except ObjectNotFoundError:
                # Trial disappeared between list and load; ignore.
                continue
            if selector is None or selector.matches(trial.labels):
                trials.append(trial)
        return trials


class ExperimentStore:
    """
    Read-through access to experiment definitions; nothing is cached.
    """

    def __init__(self, metastore: Metastore):
        self.metastore = metastore
        metastore.ensure_structure([EXPERIMENTS_ROOT])

    def store(self, experiment: Experiment) -> None:
        self.metastore.update_key(
            experiment_path(TrialKey(experiment.namespace, experiment.name)),
            experiment.to_dict(),
        )

    def get(self, key: TrialKey) -> Experiment:
        raw: Any = self.metastore.get_key(experiment_path(key))
        if raw is None:
            raise ObjectNotFoundError(f"Experiment {key} not found")
        if not isinstance(raw, dict):
            raise TypeError(f"Unexpected experiment payload type: {type(raw)}")
        return Experiment.from_dict(raw)
