# repository.py - Load/save access to issue graphs
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from errors import NotFoundError
from models import DependencyRef, Issue, Phase, Task, TaskDependencyType


class IssueRepository:
    """Persistence for whole issue graphs, one session per logical operation.

    Phases, tasks and dependencies are eager-loaded with the issue, so the
    workflow engine can walk the graph without further I/O.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, issue_id: str) -> Issue:
        result = await self.session.execute(select(Issue).where(Issue.id == issue_id))
        issue = result.scalar_one_or_none()
        if issue is None:
            raise NotFoundError("ISS-NF-001", f"issue {issue_id}")
        return issue

    async def list(
        self,
        owner_id: Optional[str] = None,
        assignee_id: Optional[str] = None,
        member_id: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> List[Issue]:
        query = select(Issue)
        if owner_id:
            query = query.where(Issue.owner_id == owner_id)
        if project_id:
            query = query.where(Issue.project_id == project_id)
        query = query.order_by(Issue.created_at.asc())
        result = await self.session.execute(query)
        issues = list(result.scalars().all())

        # Assignment lives on the loaded graph
        if assignee_id:
            issues = [i for i in issues if any(p.assignee_id == assignee_id for p in i.phases)]
        if member_id:
            issues = [i for i in issues if _is_member(i, member_id)]
        return issues

    async def save(self, issue: Issue) -> Issue:
        self.session.add(issue)
        await self.session.commit()
        return issue

    async def find_owning_issue_id(self, ref: DependencyRef) -> str:
        """Which issue a dependency target belongs to, across the whole store."""
        if ref.type == TaskDependencyType.TASK:
            query = select(Task.issue_id).where(Task.id == ref.target_id)
        elif ref.type == TaskDependencyType.PHASE:
            query = select(Phase.issue_id).where(Phase.id == ref.target_id)
        else:
            query = select(Issue.id).where(Issue.id == ref.target_id)
        owner_id = (await self.session.execute(query)).scalar_one_or_none()
        if owner_id is None:
            raise NotFoundError("ISS-NF-004", str(ref))
        return owner_id


def _is_member(issue: Issue, user_id: str) -> bool:
    if issue.owner_id == user_id:
        return True
    for phase in issue.phases:
        if phase.assignee_id == user_id:
            return True
        if any(t.assignee_id == user_id for t in phase.tasks):
            return True
    return False


class SessionIssueLookup:
    """Cross-issue target lookup that opens a short-lived session per call"""

    def __init__(self, session_maker):
        self._session_maker = session_maker

    async def find_owning_issue_id(self, ref: DependencyRef) -> str:
        async with self._session_maker() as session:
            return await IssueRepository(session).find_owning_issue_id(ref)
