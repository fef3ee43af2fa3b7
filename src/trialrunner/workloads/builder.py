from __future__ import annotations

import re
from typing import Any, Dict

from trialrunner.config import WorkloadSettings
from trialrunner.trials import Trial, WorkloadTemplate
from .workload import LABEL_EXPERIMENT, LABEL_TRIAL, LABEL_TRIAL_ROLE, ROLE_RUN, Workload

_ENV_INVALID = re.compile(r"[^A-Za-z0-9_]")


def assignment_env_name(name: str) -> str:
    """Environment variable name for a parameter assignment ("cpu.limit" -> "CPU_LIMIT")."""
    return _ENV_INVALID.sub("_", name).upper()


class WorkloadBuilder:
    """
    Builds the run workload for a trial. The label and owner contract is
    fixed here; the template comes from the trial, falling back to the
    process-wide defaults in `WorkloadSettings`.
    """

    def __init__(self, defaults: WorkloadSettings):
        self._defaults = defaults

    def run_labels(self, trial: Trial) -> Dict[str, str]:
        return {
            LABEL_EXPERIMENT: trial.experiment,
            LABEL_TRIAL: trial.name,
            LABEL_TRIAL_ROLE: ROLE_RUN,
        }

    def _env(self, trial: Trial) -> Dict[str, str]:
        env: Dict[str, str] = {}
        assignments: Dict[str, Any] = trial.assignments
        for name in sorted(assignments):
            env[assignment_env_name(name)] = str(assignments[name])
        # Explicit template env wins over assignments.
        env.update(trial.workload_template.env)
        return env

    def build(self, trial: Trial) -> Workload:
        t = trial.workload_template
        labels = {**trial.labels, **self.run_labels(trial)}
        template = WorkloadTemplate(
            image=t.image or self._defaults.default_image,
            image_pull_policy=t.image_pull_policy or self._defaults.image_pull_policy,
            command=list(t.command),
            args=list(t.args),
            env=self._env(trial),
            backoff_limit=self._defaults.backoff_limit if t.backoff_limit is None else t.backoff_limit,
        )
        return Workload(
            namespace=trial.namespace,
            name=trial.name,
            labels=labels,
            owner=trial.key,
            unit_selector={LABEL_TRIAL: trial.name, LABEL_TRIAL_ROLE: ROLE_RUN},
            template=template,
        )
