from __future__ import annotations


class TrialRunnerError(Exception):
    pass


class ObjectNotFoundError(TrialRunnerError):
    """Raised when a stored object (trial, experiment, workload, ...) does not exist."""
    pass


class ObjectExistsError(TrialRunnerError):
    """Raised when creating an object whose key is already taken."""
    pass


class SelectorError(TrialRunnerError, ValueError):
    """Raised when a label selector cannot be constructed."""
    pass
