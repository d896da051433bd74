# activity.py - Fire-and-forget issue activity feed
import logging
from typing import List, Optional

from sqlalchemy import select

from models import ActivityType, IssueActivity, new_uuid, utcnow

logger = logging.getLogger("issueflow.activity")


class ActivityRecorder:
    """Appends activity rows in a session of its own.

    Runs after the triggering mutation has been committed; a failure here is
    logged and dropped so it can never undo or fail that mutation.
    """

    def __init__(self, session_maker, actor_id: Optional[str] = None):
        self._session_maker = session_maker
        self.actor_id = actor_id

    async def record(self, issue_id: str, activity_type: ActivityType, summary: str) -> None:
        type_name = activity_type.value if isinstance(activity_type, ActivityType) else str(activity_type)
        try:
            async with self._session_maker() as session:
                session.add(IssueActivity(
                    id=new_uuid(),
                    issue_id=issue_id,
                    activity_type=type_name,
                    summary=summary,
                    actor_id=self.actor_id,
                    occurred_at=utcnow(),
                ))
                await session.commit()
        except Exception:
            logger.warning(f"Dropped activity {type_name} for issue {issue_id}", exc_info=True)
            return
        logger.debug(f"Activity {type_name} on {issue_id}: {summary}")

    async def history(self, issue_id: str) -> List[IssueActivity]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(IssueActivity)
                .where(IssueActivity.issue_id == issue_id)
                .order_by(IssueActivity.occurred_at.asc())
            )
            return list(result.scalars().all())
