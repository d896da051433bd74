# tests/conftest.py - Shared test fixtures
import os
import uuid
from datetime import date
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

# Use SQLite for tests
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test.db"

from models import (
    Base, Issue, IssueStatus, Phase, PhaseKind, PhaseStatus, Task, TaskDependency,
    TaskStatus, DependencyRef,
)
from database import build_session_maker
from issue_service import IssueService
from repository import SessionIssueLookup


# ============================================================
# IN-MEMORY GRAPH BUILDERS
# ============================================================

def make_issue(deadline: Optional[date] = None, owner_id: str = "owner-1", **kwargs) -> Issue:
    return Issue(
        id=kwargs.pop("id", str(uuid.uuid4())),
        title=kwargs.pop("title", "Checkout fails on retry"),
        description="",
        owner_id=owner_id,
        status=kwargs.pop("status", IssueStatus.CREATED),
        deadline=deadline,
        **kwargs,
    )


def add_phase(
    issue: Issue,
    kind: Optional[PhaseKind] = PhaseKind.DEVELOPMENT,
    status: PhaseStatus = PhaseStatus.NOT_STARTED,
    deadline: Optional[date] = None,
    assignee_id: str = "dev-1",
    name: Optional[str] = None,
) -> Phase:
    phase = Phase(
        id=str(uuid.uuid4()),
        name=name or (kind.value.title() if kind else "Phase"),
        assignee_id=assignee_id,
        status=status,
        kind=kind,
        deadline=deadline,
    )
    issue.phases.append(phase)
    return phase


def add_task(
    issue: Issue,
    phase: Phase,
    start_date: Optional[date] = None,
    due_date: Optional[date] = None,
    status: TaskStatus = TaskStatus.NOT_STARTED,
    depends_on=(),
    title: str = "Task",
    assignee_id: Optional[str] = None,
) -> Task:
    task = Task(
        id=str(uuid.uuid4()),
        issue_id=issue.id,
        title=title,
        assignee_id=assignee_id,
        status=status,
        start_date=start_date,
        due_date=due_date,
    )
    for ref in depends_on:
        task.dependencies.append(TaskDependency.from_ref(ref))
    phase.tasks.append(task)
    return task


def make_full_issue(status: PhaseStatus = PhaseStatus.DONE) -> Issue:
    """Issue with every required phase kind in the given status"""
    issue = make_issue()
    for kind in (PhaseKind.INVESTIGATION, PhaseKind.DEVELOPMENT, PhaseKind.ACCEPTANCE_TEST, PhaseKind.ROLLOUT):
        add_phase(issue, kind=kind, status=status)
    return issue


# ============================================================
# ACTIVITY DOUBLES
# ============================================================

class FakeRecorder:
    """Collects activity records in memory"""

    def __init__(self):
        self.records = []

    async def record(self, issue_id, activity_type, summary):
        self.records.append((issue_id, activity_type, summary))

    def for_issue(self, issue_id):
        return [r for r in self.records if r[0] == issue_id]

    def types_for(self, issue_id):
        return [r[1] for r in self.for_issue(issue_id)]


class FailingRecorder(FakeRecorder):
    """Recorder whose store is down; every attempt is kept before it raises"""

    def __init__(self):
        super().__init__()
        self.attempts = []

    async def record(self, issue_id, activity_type, summary):
        self.attempts.append((issue_id, activity_type, summary))
        raise RuntimeError("activity store unavailable")


class FakeLookup:
    """Maps dependency refs to owning issue ids"""

    def __init__(self, owners=None, error: Optional[Exception] = None):
        self.owners = dict(owners or {})
        self.error = error
        self.calls = []

    async def find_owning_issue_id(self, ref: DependencyRef) -> str:
        self.calls.append(ref)
        if self.error is not None:
            raise self.error
        return self.owners[ref]


# ============================================================
# DATABASE
# ============================================================

@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_maker(db_engine):
    return build_session_maker(db_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def recorder():
    return FakeRecorder()


@pytest_asyncio.fixture
async def service(session_maker, recorder):
    """Issue service backed by SQLite, with activity captured in memory"""
    return IssueService(session_maker, recorder=recorder, lookup=SessionIssueLookup(session_maker))
