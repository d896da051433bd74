# comments.py - Issue comment thread with per-user read tracking
# - Comments are append-only and ordered by creation time
# - Each user keeps one read marker per issue; a comment is read by a user
#   once their marker is at or after the comment's creation time
# - The people who should read a thread are the issue owner plus every
#   phase and task assignee
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import select

from errors import NotFoundError
from models import Issue, IssueComment, IssueCommentRead, new_uuid, utcnow
from repository import IssueRepository
from schemas import AddCommentCommand, CommentOut, CommentReadOut, IssueCommentsOut

logger = logging.getLogger("issueflow.comments")


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)


def _ts(dt: Optional[datetime]) -> Optional[str]:
    dt = _aware(dt)
    return dt.isoformat() if dt is not None else None


def relevant_user_ids(issue: Issue) -> List[str]:
    user_ids = {issue.owner_id}
    for phase in issue.phases:
        user_ids.add(phase.assignee_id)
        user_ids.update(t.assignee_id for t in phase.tasks if t.assignee_id)
    return sorted(u for u in user_ids if u)


class IssueCommentService:
    """Comment thread of an issue, one session per call."""

    def __init__(self, session_maker):
        self._session_maker = session_maker

    # ── Plumbing ─────────────────────────────────────────────

    @staticmethod
    async def _comments(session, issue_id: str) -> List[IssueComment]:
        result = await session.execute(
            select(IssueComment)
            .where(IssueComment.issue_id == issue_id)
            .order_by(IssueComment.created_at.asc())
        )
        return list(result.scalars().all())

    @staticmethod
    async def _read_markers(session, issue_id: str) -> Dict[str, IssueCommentRead]:
        result = await session.execute(
            select(IssueCommentRead).where(IssueCommentRead.issue_id == issue_id)
        )
        return {r.user_id: r for r in result.scalars().all()}

    @staticmethod
    def _to_out(comment: IssueComment, users: List[str], read_at: Dict[str, datetime]) -> CommentOut:
        created_at = _aware(comment.created_at)
        read_by = [u for u in users if u in read_at and read_at[u] >= created_at]
        return CommentOut(
            id=comment.id,
            issue_id=comment.issue_id,
            author_id=comment.author_id,
            body=comment.body,
            created_at=_ts(comment.created_at),
            read_by=read_by,
            unread_by=[u for u in users if u not in read_by],
        )

    # ── Operations ───────────────────────────────────────────

    async def list_comments(self, issue_id: str, user_id: Optional[str] = None) -> IssueCommentsOut:
        """Thread in creation order, with unread state for `user_id` when given."""
        async with self._session_maker() as session:
            issue = await IssueRepository(session).get(issue_id)
            comments = await self._comments(session, issue_id)
            markers = await self._read_markers(session, issue_id)

        users = relevant_user_ids(issue)
        read_at = {u: _aware(m.last_read_at) for u, m in markers.items()}
        last_read_at = read_at.get(user_id) if user_id else None

        if last_read_at is None:
            unread = comments
        else:
            unread = [c for c in comments if _aware(c.created_at) > last_read_at]
        return IssueCommentsOut(
            comments=[self._to_out(c, users, read_at) for c in comments],
            unread_count=len(unread),
            last_read_at=_ts(last_read_at),
            latest_comment_at=_ts(comments[-1].created_at) if comments else None,
            first_unread_comment_id=unread[0].id if unread else None,
        )

    async def add_comment(self, issue_id: str, author_id: str, command: AddCommentCommand) -> CommentOut:
        async with self._session_maker() as session:
            issue = await IssueRepository(session).get(issue_id)
            comment = IssueComment(
                id=new_uuid(),
                issue_id=issue_id,
                author_id=author_id,
                body=command.body,
                created_at=utcnow(),
            )
            session.add(comment)
            await session.commit()
            markers = await self._read_markers(session, issue_id)

        logger.info(f"Comment {comment.id} added to issue {issue_id} by {author_id}")
        read_at = {u: _aware(m.last_read_at) for u, m in markers.items()}
        return self._to_out(comment, relevant_user_ids(issue), read_at)

    async def mark_read(
        self, issue_id: str, user_id: str, last_read_comment_id: Optional[str] = None,
    ) -> CommentReadOut:
        """Move the user's read marker to now; defaults the comment to the latest one."""
        async with self._session_maker() as session:
            await IssueRepository(session).get(issue_id)
            comments = await self._comments(session, issue_id)
            if last_read_comment_id is not None and all(c.id != last_read_comment_id for c in comments):
                raise NotFoundError("ISS-NF-005", f"comment {last_read_comment_id}")
            latest = comments[-1] if comments else None

            now = utcnow()
            marker = (await self._read_markers(session, issue_id)).get(user_id)
            if marker is None:
                marker = IssueCommentRead(id=new_uuid(), issue_id=issue_id, user_id=user_id)
                session.add(marker)
            marker.last_read_at = now
            marker.last_read_comment_id = last_read_comment_id or (latest.id if latest else None)
            await session.commit()

        logger.debug(f"User {user_id} read issue {issue_id} comments up to {marker.last_read_comment_id}")
        return CommentReadOut(
            last_read_at=_ts(now),
            last_read_comment_id=marker.last_read_comment_id,
            unread_count=0,
            latest_comment_at=_ts(latest.created_at) if latest else None,
        )
