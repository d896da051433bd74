"""
Issueflow - Workflow Status State Machine

Issue status is never stored independently: it is recomputed from the phases
after every phase or task mutation. Phases may run concurrently, so when
several are in progress the most mature one decides the status.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from errors import NotFoundError, ValidationError
from models import (
    REQUIRED_PHASE_KINDS, Issue, IssueStatus, Phase, PhaseKind, PhaseStatus, TaskStatus,
)

logger = logging.getLogger("issueflow.workflow")

# Most mature first
IN_PROGRESS_STATUS_BY_KIND = [
    (PhaseKind.ROLLOUT, IssueStatus.IN_ROLLOUT),
    (PhaseKind.ACCEPTANCE_TEST, IssueStatus.IN_TEST),
    (PhaseKind.DEVELOPMENT, IssueStatus.IN_DEVELOPMENT),
    (PhaseKind.INVESTIGATION, IssueStatus.IN_ANALYSIS),
    (PhaseKind.PROPOSE_SOLUTION, IssueStatus.IN_ANALYSIS),
]


def required_kinds_present(issue: Issue) -> bool:
    kinds = {PhaseKind.parse(p.kind) for p in issue.phases}
    return REQUIRED_PHASE_KINDS <= kinds


def derive_issue_status(issue: Issue) -> IssueStatus:
    phases = list(issue.phases)
    if not phases:
        return IssueStatus.CREATED
    statuses = [p.status for p in phases]
    if PhaseStatus.FAILED in statuses:
        return IssueStatus.FAILED
    if all(s == PhaseStatus.DONE for s in statuses) and required_kinds_present(issue):
        return IssueStatus.DONE
    active_kinds = {PhaseKind.parse(p.kind) for p in phases if p.status == PhaseStatus.IN_PROGRESS}
    for kind, status in IN_PROGRESS_STATUS_BY_KIND:
        if kind in active_kinds:
            return status
    return IssueStatus.NOT_ACTIVE


def refresh_status(issue: Issue) -> IssueStatus:
    """Re-derive and store the issue status; returns the new value.

    An abandoned issue without phases has nothing to derive from and stays FAILED.
    """
    previous = issue.status
    if not issue.phases and previous == IssueStatus.FAILED:
        return previous
    issue.status = derive_issue_status(issue)
    if previous != issue.status:
        logger.info(f"Issue {issue.id} status {_name(previous)} -> {issue.status.value}")
    return issue.status


def _name(status) -> str:
    return status.value if isinstance(status, IssueStatus) else str(status)


def _get_phase(issue: Issue, phase_id: str) -> Phase:
    phase = issue.find_phase(phase_id)
    if phase is None:
        raise NotFoundError("ISS-NF-002", f"phase {phase_id}")
    return phase


# ============================================================
# TRANSITIONS
# ============================================================

def close(issue: Issue) -> IssueStatus:
    if any(p.status != PhaseStatus.DONE for p in issue.phases):
        raise ValidationError("ISS-WF-001", f"issue {issue.id}")
    if not required_kinds_present(issue):
        missing = sorted(k.value for k in REQUIRED_PHASE_KINDS - {PhaseKind.parse(p.kind) for p in issue.phases})
        raise ValidationError("ISS-WF-002", ", ".join(missing))
    return refresh_status(issue)


def abandon(issue: Issue) -> IssueStatus:
    if not issue.phases:
        issue.status = IssueStatus.FAILED
        return issue.status
    for phase in issue.phases:
        if phase.status != PhaseStatus.DONE:
            phase.status = PhaseStatus.FAILED
    return refresh_status(issue)


def fail_phase(issue: Issue, phase_id: str) -> IssueStatus:
    _get_phase(issue, phase_id).status = PhaseStatus.FAILED
    return refresh_status(issue)


def reopen_phase(issue: Issue, phase_id: str) -> IssueStatus:
    _get_phase(issue, phase_id).status = PhaseStatus.IN_PROGRESS
    return refresh_status(issue)


def complete_phase(
    issue: Issue,
    phase: Phase,
    completion_comment: Optional[str] = None,
    completion_artifact_url: Optional[str] = None,
) -> IssueStatus:
    """Mark a phase DONE; all tasks must be done and a comment recorded."""
    open_tasks = [t.id for t in phase.tasks if t.status != TaskStatus.DONE]
    if open_tasks:
        raise ValidationError("ISS-WF-003", f"{len(open_tasks)} open task(s) in phase {phase.id}")
    comment = completion_comment if completion_comment is not None else phase.completion_comment
    if comment is None or not comment.strip():
        raise ValidationError("ISS-WF-004", f"phase {phase.id}")
    phase.completion_comment = comment.strip()
    if completion_artifact_url is not None:
        phase.completion_artifact_url = completion_artifact_url
    phase.status = PhaseStatus.DONE
    return refresh_status(issue)


# ============================================================
# ACTION DECISIONS
# ============================================================

@dataclass(frozen=True)
class ActionDecision:
    allowed: bool
    reason: Optional[str] = None


def _decision(allowed: bool, reason: str) -> ActionDecision:
    return ActionDecision(allowed=allowed, reason=None if allowed else reason)


def issue_actions(issue: Issue, can_modify: bool = True) -> Dict[str, ActionDecision]:
    all_done = all(p.status == PhaseStatus.DONE for p in issue.phases)
    close_allowed = can_modify and all_done and required_kinds_present(issue)
    return {
        "CLOSE_ISSUE": _decision(close_allowed, "Incomplete or missing required phases block closure"),
        "ABANDON_ISSUE": _decision(can_modify, "No permission to abandon issue"),
    }


def phase_actions(issue: Issue, phase_id: str, can_modify: bool = True) -> Dict[str, ActionDecision]:
    phase = issue.find_phase(phase_id)
    if phase is None:
        return {}
    all_tasks_done = all(t.status == TaskStatus.DONE for t in phase.tasks)
    mark_done = can_modify and all_tasks_done and phase.status != PhaseStatus.DONE
    fail = can_modify and phase.status != PhaseStatus.FAILED
    reopen = can_modify and phase.status == PhaseStatus.FAILED
    return {
        "MARK_DONE": _decision(mark_done, "Open tasks or insufficient permission"),
        "FAIL_PHASE": _decision(fail, "Phase already failed or insufficient permission"),
        "REOPEN_PHASE": _decision(reopen, "Phase is not failed or insufficient permission"),
    }


def task_actions(issue: Issue, phase_id: str, task_id: str, can_modify: bool = True) -> Dict[str, ActionDecision]:
    phase = issue.find_phase(phase_id)
    task = phase.find_task(task_id) if phase is not None else None
    if task is None:
        return {}
    mark_done = can_modify and task.status != TaskStatus.DONE
    return {
        "MARK_DONE": _decision(mark_done, "Task already done or insufficient permission"),
    }
