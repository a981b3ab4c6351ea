from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session as DBSession

from .clock import Clock, ms_to_datetime, system_clock
from .errors import NotFoundError, ValidationError
from .models import Subtask, Todo, isoformat

SUBTASK_NOT_FOUND = "Subtask not found"
TODO_NOT_FOUND = "Todo not found"


def subtask_to_dict(subtask: Subtask) -> dict:
    return {
        "id": subtask.id,
        "todo_id": subtask.todo_id,
        "title": subtask.title,
        "completed": subtask.completed,
        "order": subtask.order,
        "created_at": isoformat(subtask.created_at),
        "updated_at": isoformat(subtask.updated_at),
    }


def _owned_todo(db: DBSession, user_id: int, todo_id: int) -> Todo:
    todo = db.get(Todo, todo_id)
    if todo is None or todo.user_id != user_id:
        raise NotFoundError(TODO_NOT_FOUND)
    return todo


def _owned_subtask(db: DBSession, user_id: int, subtask_id: int) -> Subtask:
    subtask = db.get(Subtask, subtask_id)
    if subtask is None or subtask.user_id != user_id:
        raise NotFoundError(SUBTASK_NOT_FOUND)
    return subtask


def _clean_title(title: str) -> str:
    title = (title or "").strip()
    if not title:
        raise ValidationError("Subtask title must not be empty")
    return title


def list_by_todo_id(db: DBSession, user_id: int, todo_id: int) -> list[dict]:
    subtasks = db.scalars(
        select(Subtask)
        .where(Subtask.todo_id == todo_id, Subtask.user_id == user_id)
        .order_by(Subtask.order, Subtask.created_at, Subtask.id)
    )
    return [subtask_to_dict(s) for s in subtasks]


def count_by_todo_ids(db: DBSession, user_id: int, todo_ids: list[int]) -> dict[int, tuple[int, int]]:
    """(total, completed) per todo id; todos without subtasks get (0, 0)."""
    counts = {todo_id: (0, 0) for todo_id in todo_ids}
    if not todo_ids:
        return counts
    rows = db.execute(
        select(Subtask.todo_id, Subtask.completed, func.count(Subtask.id))
        .where(Subtask.todo_id.in_(todo_ids), Subtask.user_id == user_id)
        .group_by(Subtask.todo_id, Subtask.completed)
    ).all()
    for todo_id, completed, n in rows:
        total, done = counts[todo_id]
        counts[todo_id] = (total + n, done + (n if completed else 0))
    return counts


def create_subtask(
    db: DBSession,
    user_id: int,
    todo_id: int,
    title: str,
    order: Optional[int] = None,
    clock: Clock = system_clock,
) -> dict:
    _owned_todo(db, user_id, todo_id)
    title = _clean_title(title)
    if order is None:
        order = db.scalar(
            select(func.count(Subtask.id)).where(Subtask.todo_id == todo_id, Subtask.user_id == user_id)
        ) or 0

    now = ms_to_datetime(clock())
    subtask = Subtask(
        user_id=user_id,
        todo_id=todo_id,
        title=title,
        completed=False,
        order=order,
        created_at=now,
        updated_at=now,
    )
    db.add(subtask)
    db.commit()
    return subtask_to_dict(subtask)


def update_subtask(
    db: DBSession,
    user_id: int,
    subtask_id: int,
    title: Optional[str] = None,
    completed: Optional[bool] = None,
    order: Optional[int] = None,
    clock: Clock = system_clock,
) -> dict:
    subtask = _owned_subtask(db, user_id, subtask_id)
    if title is not None:
        subtask.title = _clean_title(title)
    if completed is not None:
        subtask.completed = completed
    if order is not None:
        subtask.order = order
    subtask.updated_at = ms_to_datetime(clock())
    db.commit()
    return subtask_to_dict(subtask)


def toggle_subtask_completed(
    db: DBSession, user_id: int, subtask_id: int, completed: bool, clock: Clock = system_clock
) -> dict:
    return update_subtask(db, user_id, subtask_id, completed=completed, clock=clock)


def delete_subtask(db: DBSession, user_id: int, subtask_id: int) -> None:
    subtask = _owned_subtask(db, user_id, subtask_id)
    db.delete(subtask)
    db.commit()


def reorder_subtasks(
    db: DBSession,
    user_id: int,
    todo_id: int,
    items: list[tuple[int, int]],
    clock: Clock = system_clock,
) -> None:
    """Apply `(subtask_id, order)` pairs in one commit.

    The whole batch is rejected when any id is repeated or does not belong
    to this todo and user, so a client with a stale list cannot half-apply
    its reorder.
    """
    _owned_todo(db, user_id, todo_id)
    if not items:
        return

    ids = [subtask_id for subtask_id, _ in items]
    found = {
        s.id: s
        for s in db.scalars(
            select(Subtask).where(
                Subtask.id.in_(ids),
                Subtask.todo_id == todo_id,
                Subtask.user_id == user_id,
            )
        )
    }
    if len(set(ids)) != len(ids) or len(found) != len(ids):
        raise ValidationError("The subtask list has changed, please refresh and try again")

    now = ms_to_datetime(clock())
    for subtask_id, order in items:
        found[subtask_id].order = order
        found[subtask_id].updated_at = now
    db.commit()
