import logging
import math

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Query
from fastapi import Response
from fastapi import status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from taskboard.db import get_db
from taskboard.models import Task
from taskboard.schemas import Pagination
from taskboard.schemas import TaskCreate
from taskboard.schemas import TaskPage
from taskboard.schemas import TaskRead
from taskboard.schemas import TaskUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tasks", tags=["tasks"])


@router.get("", response_model=TaskPage, response_class=JSONResponse)
def list_tasks(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    tasks, total = Task.paginate(db, page=page, limit=limit)
    return TaskPage(
        data=[TaskRead.model_validate(task) for task in tasks],
        pagination=Pagination(
            page=page, limit=limit, total=total, total_pages=math.ceil(total / limit)
        ),
    )


@router.get("/{task_id}", response_model=TaskRead, response_class=JSONResponse)
def get_task(task_id: int, db: Session = Depends(get_db)):
    return Task.get_or_404(db, task_id)


@router.post(
    "",
    response_model=TaskRead,
    response_class=JSONResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_task(payload: TaskCreate, db: Session = Depends(get_db)):
    task = Task(title=payload.title, description=payload.description)
    db.add(task)
    db.commit()
    db.refresh(task)
    logger.info(f"Created task {task.id}")
    return task


@router.put("/{task_id}", response_model=TaskRead, response_class=JSONResponse)
def update_task(task_id: int, payload: TaskUpdate, db: Session = Depends(get_db)):
    task = Task.get_or_404(db, task_id)

    for field, value in payload.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(task, field, value)

    db.add(task)
    db.commit()
    db.refresh(task)
    return task


@router.post("/{task_id}/toggle", response_model=TaskRead, response_class=JSONResponse)
def toggle_task(task_id: int, db: Session = Depends(get_db)):
    task = Task.get_or_404(db, task_id)
    task.completed = not task.completed
    db.commit()
    db.refresh(task)
    return task


@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(task_id: int, db: Session = Depends(get_db)):
    task = Task.get_or_404(db, task_id)
    db.delete(task)
    db.commit()
    logger.info(f"Deleted task {task_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
