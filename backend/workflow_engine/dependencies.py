"""
Issueflow - Dependency Validator & Tracker

Tasks may wait on another task, a phase, or a whole issue. The finish date of
a dependency target bounds the dependent task's start date. Targets are
resolved inside the current issue graph only; anything foreign is attributed
through an injected lookup when change notifications are written.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, List, Optional, Protocol, Set

from errors import NotFoundError, ValidationError
from models import ActivityType, DependencyRef, Issue, Phase, Task, TaskDependencyType

logger = logging.getLogger("issueflow.dependencies")


class ActivitySink(Protocol):
    async def record(self, issue_id: str, activity_type: ActivityType, summary: str) -> None: ...


class IssueLookup(Protocol):
    async def find_owning_issue_id(self, ref: DependencyRef) -> str: ...


@dataclass
class DependencyDiff:
    added: List[DependencyRef] = field(default_factory=list)
    removed: List[DependencyRef] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.added and not self.removed


# ============================================================
# RESOLUTION
# ============================================================

def resolve_dependency_finish_date(issue: Issue, dependency: DependencyRef) -> Optional[date]:
    """Date a dependency target is expected to be finished by.

    TASK:  task due date, else its phase deadline, else the issue deadline
    PHASE: phase deadline, else the issue deadline
    ISSUE: the issue deadline (other issues are not loaded here)
    """
    if dependency.type == TaskDependencyType.TASK:
        for phase in issue.phases:
            task = phase.find_task(dependency.target_id)
            if task is not None:
                return _first_set(task.due_date, phase.deadline, issue.deadline)
        raise NotFoundError("ISS-NF-004", f"task {dependency.target_id}")
    if dependency.type == TaskDependencyType.PHASE:
        phase = issue.find_phase(dependency.target_id)
        if phase is None:
            raise NotFoundError("ISS-NF-004", f"phase {dependency.target_id}")
        return _first_set(phase.deadline, issue.deadline)
    return issue.deadline


def _first_set(*values):
    return next((v for v in values if v is not None), None)


# ============================================================
# VALIDATION
# ============================================================

def ensure_no_self_dependency(task_id: str, dependencies: Iterable[DependencyRef]) -> None:
    for ref in dependencies:
        if ref.type == TaskDependencyType.TASK and ref.target_id == task_id:
            raise ValidationError("ISS-DEP-001", f"task {task_id}")


def targets_moved_by_task(task: Task) -> Set[DependencyRef]:
    return {DependencyRef(TaskDependencyType.TASK, task.id)}


def targets_moved_by_phase(phase: Phase) -> Set[DependencyRef]:
    """The phase itself plus undated tasks that inherit its deadline."""
    targets = {DependencyRef(TaskDependencyType.PHASE, phase.id)}
    targets.update(
        DependencyRef(TaskDependencyType.TASK, t.id) for t in phase.tasks if t.due_date is None
    )
    return targets


def targets_moved_by_issue(issue: Issue) -> Set[DependencyRef]:
    """The issue plus every phase and task that falls back to its deadline."""
    targets = {DependencyRef(TaskDependencyType.ISSUE, issue.id)}
    for phase in issue.phases:
        if phase.deadline is None:
            targets.update(targets_moved_by_phase(phase))
    return targets


def ensure_dependents_satisfied(issue: Issue, targets: Iterable[DependencyRef]) -> None:
    """Re-check only the tasks that wait on one of the moved targets.

    ISSUE dependencies all resolve to this issue's deadline, so any moved
    ISSUE target re-checks every ISSUE dependency.
    """
    targets = set(targets)
    if not targets:
        return
    issue_moved = any(t.type == TaskDependencyType.ISSUE for t in targets)
    for task in issue.iter_tasks():
        if task.start_date is None:
            continue
        for ref in task.dependency_refs:
            if ref not in targets and not (issue_moved and ref.type == TaskDependencyType.ISSUE):
                continue
            finish = resolve_dependency_finish_date(issue, ref)
            if finish is not None and task.start_date < finish:
                raise ValidationError(
                    "ISS-DEP-002",
                    f"task {task.id} starts {task.start_date} but {ref} now finishes {finish}",
                )


# ============================================================
# CHANGE TRACKING
# ============================================================

def diff_dependencies(
    previous: Iterable[DependencyRef],
    current: Iterable[DependencyRef],
) -> DependencyDiff:
    """Set difference on (type, target id), keeping first-seen order."""
    previous = list(dict.fromkeys(previous))
    current = list(dict.fromkeys(current))
    before, after = set(previous), set(current)
    return DependencyDiff(
        added=[ref for ref in current if ref not in before],
        removed=[ref for ref in previous if ref not in after],
    )


def local_owner_id(issue: Issue, ref: DependencyRef) -> Optional[str]:
    if ref.type == TaskDependencyType.TASK:
        return issue.id if issue.find_task(ref.target_id) is not None else None
    if ref.type == TaskDependencyType.PHASE:
        return issue.id if issue.find_phase(ref.target_id) is not None else None
    return issue.id if ref.target_id == issue.id else None


async def record_dependency_changes(
    source_issue: Issue,
    task: Task,
    added: Iterable[DependencyRef],
    removed: Iterable[DependencyRef],
    recorder: ActivitySink,
    lookup: Optional[IssueLookup] = None,
) -> None:
    """Write one activity per changed dependency, plus one on the target's issue.

    Best effort: a failed owner lookup only drops the second record, and a
    failing recorder never stops the remaining notifications.
    """
    changes = [(ref, True) for ref in added] + [(ref, False) for ref in removed]
    for ref, was_added in changes:
        activity_type = (
            ActivityType.TASK_DEPENDENCY_ADDED if was_added else ActivityType.TASK_DEPENDENCY_REMOVED
        )
        verb = "now depends on" if was_added else "no longer depends on"
        await _record(recorder, source_issue.id, activity_type, f"Task '{task.title}' {verb} {ref}")

        owner_id = local_owner_id(source_issue, ref)
        if owner_id is None and lookup is not None:
            try:
                owner_id = await lookup.find_owning_issue_id(ref)
            except NotFoundError:
                logger.warning(f"Dependency target {ref} not found; notification kept on {source_issue.id} only")
            except Exception:
                logger.warning(f"Owner lookup for {ref} failed", exc_info=True)
        if owner_id is not None and owner_id != source_issue.id:
            await _record(
                recorder,
                owner_id,
                activity_type,
                f"Task '{task.title}' in issue {source_issue.id} {verb} {ref}",
            )


async def _record(recorder: ActivitySink, issue_id: str, activity_type: ActivityType, summary: str) -> None:
    try:
        await recorder.record(issue_id, activity_type, summary)
    except Exception:
        logger.warning(f"Dropped dependency activity {activity_type.value} for issue {issue_id}", exc_info=True)
