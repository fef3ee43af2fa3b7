from __future__ import annotations

from datetime import datetime

from .trial import Condition, ConditionStatus, ConditionType, Trial


def apply_condition(
        trial: Trial,
        ctype: ConditionType,
        status: ConditionStatus,
        reason: str,
        message: str,
        now: datetime,
) -> bool:
    """
    Upsert a condition on the trial. The transition time only moves when
    (status, reason, message) differs from what is stored. Returns True if
    anything changed.
    """
    for c in trial.conditions:
        if c.type != ctype:
            continue
        if c.status == status and c.reason == reason and c.message == message:
            return False
        c.status = status
        c.reason = reason
        c.message = message
        c.last_transition_time = now
        return True

    trial.conditions.append(
        Condition(type=ctype, status=status, reason=reason, message=message, last_transition_time=now)
    )
    return True


def check_condition(trial: Trial, ctype: ConditionType, status: ConditionStatus) -> tuple[bool, bool]:
    """
    Returns (matches, found): `found` is False if the condition type was never
    set; `matches` reports whether its current status equals `status`.
    """
    c = trial.get_condition(ctype)
    if c is None:
        return False, False
    return c.status == status, True


def is_finished(trial: Trial) -> bool:
    complete, _ = check_condition(trial, ConditionType.COMPLETE, ConditionStatus.TRUE)
    failed, _ = check_condition(trial, ConditionType.FAILED, ConditionStatus.TRUE)
    return complete or failed


def summarize_phase(trial: Trial) -> str:
    """Human-readable phase for listings; derived, never read back by the controller."""
    if check_condition(trial, ConditionType.FAILED, ConditionStatus.TRUE)[0]:
        return "Failed"
    if check_condition(trial, ConditionType.COMPLETE, ConditionStatus.TRUE)[0]:
        return "Completed"

    observed = trial.get_condition(ConditionType.OBSERVED)
    if observed is not None and observed.status != ConditionStatus.TRUE:
        return "Capturing Metrics"
    if trial.completion_time is not None:
        return "Finished"
    if trial.start_time is not None:
        return "Running"

    stable = trial.get_condition(ConditionType.STABLE)
    if stable is not None and stable.status != ConditionStatus.TRUE:
        return "Waiting" if stable.reason == "Waiting" else "Stabilizing"
    if stable is not None or trial.get_condition(ConditionType.PATCHED) is not None:
        return "Pending"
    return "Created"
