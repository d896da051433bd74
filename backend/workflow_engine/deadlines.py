"""
Issueflow - Deadline Constraint Engine

Keeps the issue -> phase -> task date hierarchy consistent.

Two kinds of outcome:
  - rejection: a value the caller is setting directly would break a bound
    (ValidationError, nothing is mutated)
  - clamp: an ancestor bound tightened after descendants were scheduled;
    descendants are silently pulled in and the change is reported back
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Iterable, List, Optional

from errors import ValidationError
from models import DependencyRef, Issue, Phase
from workflow_engine.dependencies import resolve_dependency_finish_date

logger = logging.getLogger("issueflow.deadlines")


@dataclass(frozen=True)
class ClampChange:
    """One field moved by a cascading clamp"""
    entity: str  # "phase" or "task"
    entity_id: str
    field: str
    old_value: Optional[date]
    new_value: Optional[date]


def effective_limit(issue: Issue, phase: Phase) -> Optional[date]:
    """Tightest of the issue and phase deadlines, ignoring absent bounds."""
    bounds = [d for d in (issue.deadline, phase.deadline) if d is not None]
    return min(bounds) if bounds else None


def ensure_phase_deadline_within_issue(issue: Issue, deadline: Optional[date]) -> None:
    """Reject a phase deadline later than the issue deadline."""
    if issue.deadline is None or deadline is None:
        return
    if deadline > issue.deadline:
        raise ValidationError(
            "ISS-DATE-001",
            f"phase deadline {deadline} is after issue deadline {issue.deadline}",
        )


def apply_issue_deadline_constraints(issue: Issue) -> List[ClampChange]:
    """Pull phase and task dates in under a (newly tightened) issue deadline."""
    changes: List[ClampChange] = []
    if issue.deadline is None:
        return changes
    for phase in issue.phases:
        if phase.deadline is not None and phase.deadline > issue.deadline:
            changes.append(ClampChange("phase", phase.id, "deadline", phase.deadline, issue.deadline))
            phase.deadline = issue.deadline
        changes.extend(clamp_task_deadlines(issue, phase))
    if changes:
        logger.info(f"Clamped {len(changes)} date(s) under issue {issue.id} deadline {issue.deadline}")
    return changes


def clamp_task_deadlines(issue: Issue, phase: Phase) -> List[ClampChange]:
    changes: List[ClampChange] = []
    limit = effective_limit(issue, phase)
    if limit is None:
        return changes
    for task in phase.tasks:
        if task.due_date is not None and task.due_date > limit:
            changes.append(ClampChange("task", task.id, "due_date", task.due_date, limit))
            task.due_date = limit
        # Start only follows the due date down
        if task.start_date is not None and task.due_date is not None and task.start_date > task.due_date:
            changes.append(ClampChange("task", task.id, "start_date", task.start_date, task.due_date))
            task.start_date = task.due_date
    return changes


def validate_task_dates(
    issue: Issue,
    phase: Phase,
    start_date: Optional[date],
    due_date: Optional[date],
    dependencies: Iterable[DependencyRef] = (),
) -> None:
    """Check effective task dates against ordering, deadlines and dependencies."""
    if start_date is not None and due_date is not None and start_date > due_date:
        raise ValidationError("ISS-DATE-002", f"start {start_date} is after due {due_date}")

    limit = effective_limit(issue, phase)
    if due_date is not None and limit is not None and due_date > limit:
        raise ValidationError("ISS-DATE-003", f"due {due_date} is after deadline {limit}")

    if start_date is None:
        return
    for dependency in dependencies:
        finish = resolve_dependency_finish_date(issue, dependency)
        if finish is not None and start_date < finish:
            raise ValidationError(
                "ISS-DATE-004",
                f"start {start_date} is before {dependency} finishes on {finish}",
            )


def ensure_clamped_starts_satisfied(issue: Issue, changes: Iterable[ClampChange]) -> None:
    """Re-check the dependencies of tasks whose start date a clamp pulled earlier.

    The clamp itself never fails; the edit that tightened the bound is rejected
    instead when a moved start would precede a dependency's finish date.
    """
    moved = {c.entity_id for c in changes if c.entity == "task" and c.field == "start_date"}
    if not moved:
        return
    for phase in issue.phases:
        for task in phase.tasks:
            if task.id in moved:
                validate_task_dates(issue, phase, task.start_date, task.due_date, task.dependency_refs)
