from datetime import datetime
from datetime import timezone

from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import DateTime
from sqlalchemy import Integer
from sqlalchemy import String
from sqlalchemy import Text

from taskboard.db import Base
from taskboard.errors import TaskNotFound


def utcnow():
    return datetime.now(timezone.utc)


class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, default="", nullable=False)
    completed = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    @staticmethod
    def paginate(db, page=1, limit=10):
        """Return ``(tasks, total)`` for one page, open tasks first then newest."""
        page = max(1, page)
        total = db.query(Task).count()
        tasks = (
            db.query(Task)
            .order_by(Task.completed.asc(), Task.created_at.desc(), Task.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return tasks, total

    @staticmethod
    def get_or_404(db, task_id: int) -> "Task":
        task = db.get(Task, task_id)
        if not task:
            raise TaskNotFound(task_id)
        return task
