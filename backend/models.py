# models.py - Issue / phase / task entity graph for Issueflow
# - String UUID primary keys everywhere
# - Phases and tasks keep an explicit position so collections stay ordered
# - Back-references (phase.issue, task.phase) let the workflow engine walk up the tree
# - Activity log is append-only
# - Comments are append-only; one read marker per (issue, user)

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, Date, DateTime, Enum as SQLEnum, ForeignKey, Integer, Text, Index,
    UniqueConstraint,
)
from sqlalchemy.ext.orderinglist import ordering_list
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


# ============================================================
# ENUMS
# ============================================================

class IssueStatus(str, PyEnum):
    CREATED = "CREATED"
    NOT_ACTIVE = "NOT_ACTIVE"
    IN_ANALYSIS = "IN_ANALYSIS"
    IN_DEVELOPMENT = "IN_DEVELOPMENT"
    IN_TEST = "IN_TEST"
    IN_ROLLOUT = "IN_ROLLOUT"
    DONE = "DONE"
    FAILED = "FAILED"


class PhaseStatus(str, PyEnum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    FAILED = "FAILED"
    DONE = "DONE"


class PhaseKind(str, PyEnum):
    INVESTIGATION = "INVESTIGATION"
    PROPOSE_SOLUTION = "PROPOSE_SOLUTION"
    DEVELOPMENT = "DEVELOPMENT"
    ACCEPTANCE_TEST = "ACCEPTANCE_TEST"
    ROLLOUT = "ROLLOUT"

    @property
    def is_analysis(self) -> bool:
        return self in (PhaseKind.INVESTIGATION, PhaseKind.PROPOSE_SOLUTION)

    @classmethod
    def parse(cls, value):
        """Lenient lookup: blank or unknown kinds map to None instead of raising."""
        if value is None or isinstance(value, cls):
            return value
        value = str(value).strip()
        if not value:
            return None
        try:
            return cls(value.upper())
        except ValueError:
            return None


REQUIRED_PHASE_KINDS = frozenset({
    PhaseKind.INVESTIGATION,
    PhaseKind.DEVELOPMENT,
    PhaseKind.ACCEPTANCE_TEST,
    PhaseKind.ROLLOUT,
})


class TaskStatus(str, PyEnum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    PAUSED = "PAUSED"
    ABANDONED = "ABANDONED"
    DONE = "DONE"


class TaskDependencyType(str, PyEnum):
    TASK = "TASK"
    PHASE = "PHASE"
    ISSUE = "ISSUE"


@dataclass(frozen=True)
class DependencyRef:
    """Identity of a task dependency: the (type, target id) pair"""
    type: TaskDependencyType
    target_id: str

    def __str__(self):
        return f"{self.type.value} {self.target_id}"


class ActivityType(str, PyEnum):
    ISSUE_CREATED = "ISSUE_CREATED"
    ISSUE_UPDATED = "ISSUE_UPDATED"
    ISSUE_CLOSED = "ISSUE_CLOSED"
    ISSUE_ABANDONED = "ISSUE_ABANDONED"
    OWNER_ASSIGNED = "OWNER_ASSIGNED"
    PHASE_ADDED = "PHASE_ADDED"
    PHASE_UPDATED = "PHASE_UPDATED"
    PHASE_ASSIGNED = "PHASE_ASSIGNED"
    PHASE_COMPLETED = "PHASE_COMPLETED"
    PHASE_FAILED = "PHASE_FAILED"
    PHASE_REOPENED = "PHASE_REOPENED"
    TASK_ADDED = "TASK_ADDED"
    TASK_UPDATED = "TASK_UPDATED"
    TASK_ASSIGNED = "TASK_ASSIGNED"
    TASK_COMPLETED = "TASK_COMPLETED"
    TASK_DEPENDENCY_ADDED = "TASK_DEPENDENCY_ADDED"
    TASK_DEPENDENCY_REMOVED = "TASK_DEPENDENCY_REMOVED"


# ============================================================
# ISSUES
# ============================================================

class Issue(Base):
    """Top-level unit of work; owns an ordered list of phases"""
    __tablename__ = "issues"

    id = Column(String, primary_key=True, default=new_uuid)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    owner_id = Column(String, nullable=False, index=True)
    project_id = Column(String, nullable=True, index=True)
    status = Column(SQLEnum(IssueStatus), nullable=False, default=IssueStatus.CREATED, index=True)
    deadline = Column(Date, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    phases = relationship(
        "Phase",
        back_populates="issue",
        order_by="Phase.position",
        collection_class=ordering_list("position"),
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def find_phase(self, phase_id):
        return next((p for p in self.phases if p.id == phase_id), None)

    def find_task(self, task_id):
        for phase in self.phases:
            for task in phase.tasks:
                if task.id == task_id:
                    return task
        return None

    def iter_tasks(self):
        for phase in self.phases:
            yield from phase.tasks

    def __repr__(self):
        return f"<Issue {self.id} {self.status}>"


class Phase(Base):
    """A named stage of an issue with its own assignee, status and tasks"""
    __tablename__ = "issue_phases"

    id = Column(String, primary_key=True, default=new_uuid)
    issue_id = Column(String, ForeignKey("issues.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    name = Column(String, nullable=False)
    assignee_id = Column(String, nullable=False, index=True)
    status = Column(SQLEnum(PhaseStatus), nullable=False, default=PhaseStatus.NOT_STARTED)
    kind = Column(SQLEnum(PhaseKind), nullable=True, index=True)
    deadline = Column(Date, nullable=True)
    completion_comment = Column(Text, nullable=True)
    completion_artifact_url = Column(String, nullable=True)

    # Relationships
    issue = relationship("Issue", back_populates="phases")
    tasks = relationship(
        "Task",
        back_populates="phase",
        order_by="Task.position",
        collection_class=ordering_list("position"),
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def find_task(self, task_id):
        return next((t for t in self.tasks if t.id == task_id), None)

    def __repr__(self):
        return f"<Phase {self.id} {self.kind} {self.status}>"


class Task(Base):
    """Smallest unit of work inside a phase"""
    __tablename__ = "issue_tasks"

    id = Column(String, primary_key=True, default=new_uuid)
    phase_id = Column(String, ForeignKey("issue_phases.id", ondelete="CASCADE"), nullable=False, index=True)
    issue_id = Column(String, nullable=False, index=True)  # Denormalised for cross-issue lookups
    position = Column(Integer, nullable=False, default=0)
    title = Column(String, nullable=False)
    assignee_id = Column(String, nullable=True, index=True)
    status = Column(SQLEnum(TaskStatus), nullable=False, default=TaskStatus.NOT_STARTED)
    start_date = Column(Date, nullable=True)
    due_date = Column(Date, nullable=True)

    # Relationships
    phase = relationship("Phase", back_populates="tasks")
    dependencies = relationship(
        "TaskDependency",
        back_populates="task",
        order_by="TaskDependency.position",
        collection_class=ordering_list("position"),
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def dependency_refs(self):
        return [d.ref for d in self.dependencies]

    def __repr__(self):
        return f"<Task {self.id} {self.status}>"


class TaskDependency(Base):
    """Edge from a task to the task, phase or issue it waits on"""
    __tablename__ = "issue_task_dependencies"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("issue_tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    dependency_type = Column(SQLEnum(TaskDependencyType), nullable=False)
    target_id = Column(String, nullable=False, index=True)

    task = relationship("Task", back_populates="dependencies")

    @property
    def ref(self) -> DependencyRef:
        return DependencyRef(type=self.dependency_type, target_id=self.target_id)

    @classmethod
    def from_ref(cls, ref: DependencyRef) -> "TaskDependency":
        return cls(id=new_uuid(), dependency_type=ref.type, target_id=ref.target_id)


# ============================================================
# ACTIVITY
# ============================================================

class IssueActivity(Base):
    """Append-only activity feed entry for an issue"""
    __tablename__ = "issue_activity"

    id = Column(String, primary_key=True, default=new_uuid)
    issue_id = Column(String, nullable=False, index=True)
    activity_type = Column(String, nullable=False)  # ActivityType value
    summary = Column(Text, nullable=False)
    actor_id = Column(String, nullable=True)
    occurred_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_activity_issue_time", "issue_id", "occurred_at"),
    )


class IssueComment(Base):
    """Discussion entry on an issue"""
    __tablename__ = "issue_comments"

    id = Column(String, primary_key=True, default=new_uuid)
    issue_id = Column(String, ForeignKey("issues.id", ondelete="CASCADE"), nullable=False, index=True)
    author_id = Column(String, nullable=False)
    body = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_comment_issue_time", "issue_id", "created_at"),
    )


class IssueCommentRead(Base):
    """How far a user has read an issue's comment thread"""
    __tablename__ = "issue_comment_reads"

    id = Column(String, primary_key=True, default=new_uuid)
    issue_id = Column(String, ForeignKey("issues.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String, nullable=False)
    last_read_at = Column(DateTime(timezone=True), nullable=False)
    last_read_comment_id = Column(String, nullable=True)

    __table_args__ = (
        UniqueConstraint("issue_id", "user_id", name="uq_comment_read_issue_user"),
    )
