# schemas.py - Command objects accepted by the services, and the read views they return
from datetime import date
from typing import Optional, List

from pydantic import BaseModel, Field, field_validator

from models import DependencyRef, PhaseKind, PhaseStatus, TaskStatus


# ── Phases ───────────────────────────────────────────────────

class CreatePhaseCommand(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    assignee_id: str
    kind: Optional[PhaseKind] = None
    deadline: Optional[date] = None

    @field_validator("kind", mode="before")
    @classmethod
    def parse_kind(cls, v):
        return PhaseKind.parse(v)


class AddPhaseCommand(CreatePhaseCommand):
    pass


class UpdatePhaseCommand(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    assignee_id: Optional[str] = None
    status: Optional[PhaseStatus] = None
    completion_comment: Optional[str] = None
    completion_artifact_url: Optional[str] = None
    kind: Optional[PhaseKind] = None
    deadline: Optional[date] = None

    @field_validator("kind", mode="before")
    @classmethod
    def parse_kind(cls, v):
        return PhaseKind.parse(v)


# ── Issues ───────────────────────────────────────────────────

class CreateIssueCommand(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    description: str = ""
    owner_id: str
    project_id: Optional[str] = None
    deadline: Optional[date] = None
    phases: List[CreatePhaseCommand] = Field(default_factory=list)


class UpdateIssueCommand(BaseModel):
    """Partial update; a field explicitly set to None clears it."""
    title: Optional[str] = Field(None, min_length=1, max_length=500)
    description: Optional[str] = None
    owner_id: Optional[str] = None
    project_id: Optional[str] = None
    deadline: Optional[date] = None


# ── Tasks ────────────────────────────────────────────────────

class AddTaskCommand(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    assignee_id: Optional[str] = None
    start_date: Optional[date] = None
    due_date: Optional[date] = None
    dependencies: List[DependencyRef] = Field(default_factory=list)


class UpdateTaskCommand(BaseModel):
    """Partial update; `dependencies`, when given, replaces the whole set."""
    title: Optional[str] = Field(None, min_length=1, max_length=500)
    assignee_id: Optional[str] = None
    status: Optional[TaskStatus] = None
    start_date: Optional[date] = None
    due_date: Optional[date] = None
    dependencies: Optional[List[DependencyRef]] = None


# ── Comments ─────────────────────────────────────────────────

class AddCommentCommand(BaseModel):
    body: str = Field(..., min_length=1, max_length=10000)

    @field_validator("body")
    @classmethod
    def body_not_blank(cls, v):
        if not v.strip():
            raise ValueError("comment body must not be blank")
        return v


class CommentOut(BaseModel):
    id: str
    issue_id: str
    author_id: str
    body: str
    created_at: str
    read_by: List[str] = []
    unread_by: List[str] = []


class IssueCommentsOut(BaseModel):
    comments: List[CommentOut] = []
    unread_count: int = 0
    last_read_at: Optional[str] = None
    latest_comment_at: Optional[str] = None
    first_unread_comment_id: Optional[str] = None


class CommentReadOut(BaseModel):
    last_read_at: str
    last_read_comment_id: Optional[str] = None
    unread_count: int = 0
    latest_comment_at: Optional[str] = None


# ── My work ──────────────────────────────────────────────────

class IssueSummaryOut(BaseModel):
    id: str
    title: str
    owner_id: str
    project_id: Optional[str] = None
    status: str
    phase_count: int = 0


class PhaseWorkOut(BaseModel):
    issue_id: str
    phase_id: str
    phase_name: str
    status: str


class TaskWorkOut(BaseModel):
    issue_id: str
    phase_id: str
    task_id: str
    task_title: str
    status: str


class MyWorkOut(BaseModel):
    owned_issues: List[IssueSummaryOut] = []
    assigned_phases: List[PhaseWorkOut] = []
    assigned_tasks: List[TaskWorkOut] = []
