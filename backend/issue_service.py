# issue_service.py - Write-side issue service
# Every mutation follows the same path:
#   load graph -> structural change -> deadlines -> dependencies -> status -> save -> activity
import os
import logging
from contextlib import asynccontextmanager
from typing import List, Optional, Tuple

from activity import ActivityRecorder
from errors import IssueflowError, NotFoundError, ValidationError
from models import (
    ActivityType, Issue, IssueActivity, IssueStatus, Phase, PhaseKind, PhaseStatus,
    Task, TaskDependency, TaskStatus, new_uuid,
)
from repository import IssueRepository, SessionIssueLookup
from schemas import (
    AddPhaseCommand, AddTaskCommand, CreateIssueCommand, CreatePhaseCommand,
    IssueSummaryOut, MyWorkOut, PhaseWorkOut, TaskWorkOut,
    UpdateIssueCommand, UpdatePhaseCommand, UpdateTaskCommand,
)
from workflow_engine.deadlines import (
    apply_issue_deadline_constraints, clamp_task_deadlines, ensure_clamped_starts_satisfied,
    ensure_phase_deadline_within_issue, validate_task_dates,
)
from workflow_engine.dependencies import (
    diff_dependencies, ensure_dependents_satisfied, ensure_no_self_dependency,
    record_dependency_changes, targets_moved_by_issue, targets_moved_by_phase,
    targets_moved_by_task,
)
from workflow_engine import workflow

logger = logging.getLogger("issueflow.service")

DEFAULT_PHASE_NAME = os.getenv("DEFAULT_PHASE_NAME", "Development")

Activity = Tuple[str, ActivityType, str]


class IssueService:
    """Issue mutations with the workflow consistency rules applied.

    Validation errors are raised before anything is committed. Activity is
    written after the commit and never fails the operation.
    """

    def __init__(self, session_maker, recorder=None, lookup=None):
        self._session_maker = session_maker
        self.recorder = recorder or ActivityRecorder(session_maker)
        self.lookup = lookup or SessionIssueLookup(session_maker)

    # ── Plumbing ─────────────────────────────────────────────

    @asynccontextmanager
    async def _editing(self, issue_id: str):
        """Load an issue, yield it for mutation, commit only if the block succeeds."""
        async with self._session_maker() as session:
            repo = IssueRepository(session)
            try:
                issue = await repo.get(issue_id)
                yield issue
            except IssueflowError as e:
                logger.debug(f"Rejected change to issue {issue_id}: {e}")
                raise
            await repo.save(issue)

    async def _publish(self, activities: List[Activity]) -> None:
        for issue_id, activity_type, summary in activities:
            try:
                await self.recorder.record(issue_id, activity_type, summary)
            except Exception:
                logger.warning(f"Dropped activity {activity_type.value} for issue {issue_id}", exc_info=True)

    @staticmethod
    def _get_phase(issue: Issue, phase_id: str) -> Phase:
        phase = issue.find_phase(phase_id)
        if phase is None:
            raise NotFoundError("ISS-NF-002", f"phase {phase_id}")
        return phase

    @staticmethod
    def _get_task(phase: Phase, task_id: str) -> Task:
        task = phase.find_task(task_id)
        if task is None:
            raise NotFoundError("ISS-NF-003", f"task {task_id}")
        return task

    @staticmethod
    def _new_phase(command: CreatePhaseCommand) -> Phase:
        return Phase(
            id=new_uuid(),
            name=command.name,
            assignee_id=command.assignee_id,
            status=PhaseStatus.NOT_STARTED,
            kind=command.kind,
            deadline=command.deadline,
        )

    # ── Reads ────────────────────────────────────────────────

    async def get_issue(self, issue_id: str) -> Issue:
        async with self._session_maker() as session:
            return await IssueRepository(session).get(issue_id)

    async def list_issues(
        self,
        owner_id: Optional[str] = None,
        assignee_id: Optional[str] = None,
        member_id: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> List[Issue]:
        async with self._session_maker() as session:
            return await IssueRepository(session).list(owner_id, assignee_id, member_id, project_id)

    async def history(self, issue_id: str) -> List[IssueActivity]:
        return await self.recorder.history(issue_id)

    async def my_work(self, user_id: str) -> MyWorkOut:
        """Issues the user owns plus the phases and tasks assigned to them."""
        issues = await self.list_issues(member_id=user_id)
        work = MyWorkOut()
        for issue in issues:
            if issue.owner_id == user_id:
                work.owned_issues.append(IssueSummaryOut(
                    id=issue.id,
                    title=issue.title,
                    owner_id=issue.owner_id,
                    project_id=issue.project_id,
                    status=issue.status.value,
                    phase_count=len(issue.phases),
                ))
            for phase in issue.phases:
                if phase.assignee_id == user_id:
                    work.assigned_phases.append(PhaseWorkOut(
                        issue_id=issue.id,
                        phase_id=phase.id,
                        phase_name=phase.name,
                        status=phase.status.value,
                    ))
                work.assigned_tasks.extend(
                    TaskWorkOut(
                        issue_id=issue.id,
                        phase_id=phase.id,
                        task_id=task.id,
                        task_title=task.title,
                        status=task.status.value,
                    )
                    for task in phase.tasks
                    if task.assignee_id == user_id
                )
        return work

    # ── Issues ───────────────────────────────────────────────

    async def create_issue(self, command: CreateIssueCommand) -> Issue:
        issue = Issue(
            id=new_uuid(),
            title=command.title,
            description=command.description,
            owner_id=command.owner_id,
            project_id=command.project_id,
            deadline=command.deadline,
            status=IssueStatus.CREATED,
        )
        phases = command.phases or [
            CreatePhaseCommand(
                name=DEFAULT_PHASE_NAME,
                assignee_id=command.owner_id,
                kind=PhaseKind.DEVELOPMENT,
            )
        ]
        for phase_command in phases:
            ensure_phase_deadline_within_issue(issue, phase_command.deadline)
            issue.phases.append(self._new_phase(phase_command))
        workflow.refresh_status(issue)

        async with self._session_maker() as session:
            await IssueRepository(session).save(issue)
        logger.info(f"Created issue {issue.id} with {len(issue.phases)} phase(s)")
        await self._publish([(issue.id, ActivityType.ISSUE_CREATED, f"Issue '{issue.title}' created")])
        return issue

    async def update_issue(self, issue_id: str, command: UpdateIssueCommand) -> Issue:
        fields = command.model_dump(exclude_unset=True)
        async with self._editing(issue_id) as issue:
            changed = []
            for name in ("title", "description", "owner_id", "project_id"):
                if name not in fields or getattr(issue, name) == fields[name]:
                    continue
                if fields[name] is None and name != "project_id":
                    continue
                setattr(issue, name, fields[name])
                changed.append(name)

            if "deadline" in fields and fields["deadline"] != issue.deadline:
                issue.deadline = fields["deadline"]
                changed.append("deadline")
                ensure_clamped_starts_satisfied(issue, apply_issue_deadline_constraints(issue))
                ensure_dependents_satisfied(issue, targets_moved_by_issue(issue))
            workflow.refresh_status(issue)

        if changed:
            await self._publish([
                (issue.id, ActivityType.ISSUE_UPDATED, f"Updated {', '.join(changed)}"),
            ])
        return issue

    async def assign_owner(self, issue_id: str, owner_id: str) -> Issue:
        async with self._editing(issue_id) as issue:
            issue.owner_id = owner_id
        await self._publish([(issue.id, ActivityType.OWNER_ASSIGNED, f"Owner set to {owner_id}")])
        return issue

    async def close_issue(self, issue_id: str) -> Issue:
        async with self._editing(issue_id) as issue:
            workflow.close(issue)
        await self._publish([(issue.id, ActivityType.ISSUE_CLOSED, "Issue closed")])
        return issue

    async def abandon_issue(self, issue_id: str) -> Issue:
        async with self._editing(issue_id) as issue:
            workflow.abandon(issue)
        await self._publish([(issue.id, ActivityType.ISSUE_ABANDONED, "Issue abandoned")])
        return issue

    # ── Phases ───────────────────────────────────────────────

    async def add_phase(self, issue_id: str, command: AddPhaseCommand) -> Issue:
        async with self._editing(issue_id) as issue:
            ensure_phase_deadline_within_issue(issue, command.deadline)
            phase = self._new_phase(command)
            issue.phases.append(phase)
            workflow.refresh_status(issue)
        await self._publish([(issue.id, ActivityType.PHASE_ADDED, f"Phase '{phase.name}' added")])
        return issue

    async def assign_phase_assignee(self, issue_id: str, phase_id: str, assignee_id: str) -> Issue:
        async with self._editing(issue_id) as issue:
            phase = self._get_phase(issue, phase_id)
            phase.assignee_id = assignee_id
        await self._publish([
            (issue.id, ActivityType.PHASE_ASSIGNED, f"Phase '{phase.name}' assigned to {assignee_id}"),
        ])
        return issue

    async def update_phase(self, issue_id: str, phase_id: str, command: UpdatePhaseCommand) -> Issue:
        fields = command.model_dump(exclude_unset=True)
        activities: List[Activity] = []
        async with self._editing(issue_id) as issue:
            phase = self._get_phase(issue, phase_id)
            changed = []
            if fields.get("name") and fields["name"] != phase.name:
                phase.name = fields["name"]
                changed.append("name")
            if fields.get("assignee_id") and fields["assignee_id"] != phase.assignee_id:
                phase.assignee_id = fields["assignee_id"]
                changed.append("assignee")
                activities.append((issue.id, ActivityType.PHASE_ASSIGNED,
                                   f"Phase '{phase.name}' assigned to {phase.assignee_id}"))
            if "kind" in fields and fields["kind"] != phase.kind:
                phase.kind = fields["kind"]
                changed.append("kind")

            if "deadline" in fields and fields["deadline"] != phase.deadline:
                ensure_phase_deadline_within_issue(issue, fields["deadline"])
                phase.deadline = fields["deadline"]
                changed.append("deadline")
                ensure_clamped_starts_satisfied(issue, clamp_task_deadlines(issue, phase))
                ensure_dependents_satisfied(issue, targets_moved_by_phase(phase))

            status = fields.get("status")
            if status == PhaseStatus.DONE and phase.status != PhaseStatus.DONE:
                workflow.complete_phase(
                    issue, phase,
                    fields.get("completion_comment"),
                    fields.get("completion_artifact_url"),
                )
                activities.append((issue.id, ActivityType.PHASE_COMPLETED,
                                   f"Phase '{phase.name}' completed: {phase.completion_comment}"))
            else:
                if status is not None and status != phase.status:
                    phase.status = status
                    changed.append("status")
                if "completion_comment" in fields:
                    comment = fields["completion_comment"]
                    if phase.status == PhaseStatus.DONE and (comment is None or not comment.strip()):
                        raise ValidationError("ISS-WF-004", f"phase {phase.id}")
                    phase.completion_comment = comment
                    changed.append("completion comment")
                if "completion_artifact_url" in fields:
                    phase.completion_artifact_url = fields["completion_artifact_url"]
                    changed.append("completion artifact")
            workflow.refresh_status(issue)

        if changed:
            activities.insert(0, (issue.id, ActivityType.PHASE_UPDATED,
                                  f"Phase '{phase.name}' updated: {', '.join(changed)}"))
        await self._publish(activities)
        return issue

    async def fail_phase(self, issue_id: str, phase_id: str) -> Issue:
        async with self._editing(issue_id) as issue:
            workflow.fail_phase(issue, phase_id)
        await self._publish([(issue.id, ActivityType.PHASE_FAILED, "Phase failed")])
        return issue

    async def reopen_phase(self, issue_id: str, phase_id: str) -> Issue:
        async with self._editing(issue_id) as issue:
            workflow.reopen_phase(issue, phase_id)
        await self._publish([(issue.id, ActivityType.PHASE_REOPENED, "Phase reopened")])
        return issue

    # ── Tasks ────────────────────────────────────────────────

    async def add_task(self, issue_id: str, phase_id: str, command: AddTaskCommand) -> Issue:
        dependencies = list(dict.fromkeys(command.dependencies))
        async with self._editing(issue_id) as issue:
            phase = self._get_phase(issue, phase_id)
            if phase.status == PhaseStatus.DONE:
                raise ValidationError("ISS-WF-005", f"phase {phase.id}")
            validate_task_dates(issue, phase, command.start_date, command.due_date, dependencies)
            task = Task(
                id=new_uuid(),
                issue_id=issue.id,
                title=command.title,
                assignee_id=command.assignee_id,
                status=TaskStatus.NOT_STARTED,
                start_date=command.start_date,
                due_date=command.due_date,
            )
            for ref in dependencies:
                task.dependencies.append(TaskDependency.from_ref(ref))
            phase.tasks.append(task)
            workflow.refresh_status(issue)

        await self._publish([(issue.id, ActivityType.TASK_ADDED, f"Task '{task.title}' added to '{phase.name}'")])
        await record_dependency_changes(issue, task, dependencies, [], self.recorder, self.lookup)
        return issue

    async def update_task(
        self, issue_id: str, phase_id: str, task_id: str, command: UpdateTaskCommand,
    ) -> Issue:
        fields = command.model_dump(exclude_unset=True)
        activities: List[Activity] = []
        diff = None
        async with self._editing(issue_id) as issue:
            phase = self._get_phase(issue, phase_id)
            task = self._get_task(phase, task_id)

            # Validate against the effective post-update values
            start_date = fields["start_date"] if "start_date" in fields else task.start_date
            due_date = fields["due_date"] if "due_date" in fields else task.due_date
            if command.dependencies is not None:
                dependencies = list(dict.fromkeys(command.dependencies))
            else:
                dependencies = task.dependency_refs
            ensure_no_self_dependency(task.id, dependencies)
            validate_task_dates(issue, phase, start_date, due_date, dependencies)

            status = fields.get("status")
            if phase.status == PhaseStatus.DONE and status is not None and status != TaskStatus.DONE:
                raise ValidationError("ISS-WF-005", f"phase {phase.id}; reopen it before reopening tasks")

            changed = []
            if fields.get("title") and fields["title"] != task.title:
                task.title = fields["title"]
                changed.append("title")
            if "assignee_id" in fields and fields["assignee_id"] != task.assignee_id:
                task.assignee_id = fields["assignee_id"]
                activities.append((issue.id, ActivityType.TASK_ASSIGNED,
                                   f"Task '{task.title}' assigned to {task.assignee_id or 'nobody'}"))
            if status is not None and status != task.status:
                task.status = status
                changed.append("status")
                if status == TaskStatus.DONE:
                    activities.append((issue.id, ActivityType.TASK_COMPLETED, f"Task '{task.title}' completed"))
            if start_date != task.start_date:
                task.start_date = start_date
                changed.append("start date")
            due_moved = due_date != task.due_date
            if due_moved:
                task.due_date = due_date
                changed.append("due date")

            if command.dependencies is not None:
                diff = diff_dependencies(task.dependency_refs, dependencies)
                removed = set(diff.removed)
                for dependency in list(task.dependencies):
                    if dependency.ref in removed:
                        task.dependencies.remove(dependency)
                for ref in diff.added:
                    task.dependencies.append(TaskDependency.from_ref(ref))

            if due_moved:
                ensure_dependents_satisfied(issue, targets_moved_by_task(task))
            workflow.refresh_status(issue)

        if changed:
            activities.insert(0, (issue.id, ActivityType.TASK_UPDATED,
                                  f"Task '{task.title}' updated: {', '.join(changed)}"))
        await self._publish(activities)
        if diff is not None and not diff.is_empty:
            await record_dependency_changes(issue, task, diff.added, diff.removed, self.recorder, self.lookup)
        return issue
