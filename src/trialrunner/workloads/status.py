from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from .workload import ContainerStateKind, ExecutionUnit, UnitPhase, Workload


@dataclass(frozen=True, slots=True)
class FailureReport:
    reason: str
    message: str = ""


@dataclass(slots=True)
class WorkloadObservation:
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    failures: List[FailureReport] = field(default_factory=list)
    inconsistent: bool = False


def latest_time(
        current: Optional[datetime],
        candidate: Optional[datetime],
        offset_s: Optional[float] = None,
) -> Optional[datetime]:
    """
    Latest-wins merge for the recorded start time. The offset is applied to the
    candidate only when it replaces the current value.
    """
    if candidate is None:
        return current
    if current is None or current < candidate:
        if offset_s:
            return candidate + timedelta(seconds=offset_s)
        return candidate
    return current


def earliest_time(current: Optional[datetime], candidate: Optional[datetime]) -> Optional[datetime]:
    """Earliest-wins merge for the recorded completion time."""
    if candidate is None:
        return current
    if current is None or candidate < current:
        return candidate
    return current


def _scan_units(units: Iterable[ExecutionUnit]) -> tuple[Optional[datetime], Optional[datetime]]:
    started: Optional[datetime] = None
    finished: Optional[datetime] = None
    for unit in units:
        for c in unit.containers:
            if c.state == ContainerStateKind.RUNNING:
                started = earliest_time(started, c.started_at)
            elif c.state == ContainerStateKind.TERMINATED:
                started = earliest_time(started, c.started_at)
                if c.finished_at is not None and (finished is None or finished < c.finished_at):
                    finished = c.finished_at
    return started, finished


def observe_workload(workload: Workload, units: Optional[List[ExecutionUnit]]) -> WorkloadObservation:
    """
    Derive execution time bounds and failure reports for one run workload.

    Unit-level container timestamps are preferred. When `units` is None (no
    unit view available) the workload-level times are used as-is. If the
    workload already reports a start or finish that the units do not yet
    show, the observation is flagged `inconsistent` and carries nothing else;
    callers re-poll without mutating state.
    """
    if units is None:
        started, finished = workload.start_time, workload.completion_time
    else:
        started, finished = _scan_units(units)
        if (started is None and workload.start_time is not None) or (
                finished is None and workload.completion_time is not None):
            return WorkloadObservation(inconsistent=True)

    failures: List[FailureReport] = []
    for unit in units or []:
        if unit.phase == UnitPhase.FAILED:
            failures.append(FailureReport(reason=unit.reason, message=unit.message))
    for cond in workload.conditions:
        if cond.type == "Failed" and cond.status == "True":
            failures.append(FailureReport(reason=cond.reason, message=cond.message))

    return WorkloadObservation(started_at=started, finished_at=finished, failures=failures)
