"""
todos.py - Todo listing, counts, reminders and CRUD

Lists are always ordered important-first, then newest-first, with the id
as the last tiebreak so that offset pagination is stable. The list-type
predicates here are shared by `list_todos` and `get_list_counts`; the
sidebar counts and the lists must never disagree.
"""

import math
from itertools import islice
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import case, delete, func, select
from sqlalchemy.orm import Session as DBSession

from .auth import AuthUser
from .blobs import BlobStore
from .clock import Clock, ms_to_datetime, ms_to_iso, parse_timestamp, system_clock, timestamp_to_ms
from .errors import NotFoundError, ValidationError
from .logging import get_logger
from .models import Subtask, Todo, TodoTag, isoformat
from .reminders import MAX_REMINDER_MINUTES, REMINDER_OPTIONS, format_reminder_label
from .subtasks import count_by_todo_ids
from .tags import list_tags, load_tags_for_todos, sync_todo_tags

logger = get_logger(__name__)

LIST_TYPES = ("my-day", "important", "planned", "tasks")
DEFAULT_LIST = "my-day"
MAX_LIMIT = 200

DEFAULT_LOOKBACK_SECONDS = 300
MIN_LOOKBACK_SECONDS = 60
MAX_LOOKBACK_SECONDS = 3600

# Uploaded blobs no todo refers to are kept this long before collection.
UNATTACHED_BLOB_GRACE_SECONDS = 60 * 60 * 24

TODO_NOT_FOUND = "Todo not found"

_UPDATABLE = {
    "title",
    "description",
    "completed",
    "important",
    "due_date",
    "reminder_minutes_before",
    "tag_ids",
}


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def normalize_reminder_minutes(value: Any) -> Optional[int]:
    """None passes through; numbers are floored and clamped at zero.

    Values above `MAX_REMINDER_MINUTES` are rejected rather than clamped.
    """
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("Reminder time is invalid")
    if not math.isfinite(value) or value > MAX_REMINDER_MINUTES:
        raise ValidationError("Reminder time is invalid")
    return max(0, math.floor(value))


def normalize_due_date(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    try:
        parse_timestamp(value)
    except ValueError:
        raise ValidationError("Due date is not a valid timestamp")
    return value.strip()


def _clean_title(title: str) -> str:
    title = (title or "").strip()
    if not title:
        raise ValidationError("Title must not be empty")
    return title


def _normalize_list_type(list_type: Optional[str]) -> str:
    if list_type is None:
        return DEFAULT_LIST
    if list_type not in LIST_TYPES:
        raise ValidationError(f"Unknown list type: {list_type}")
    return list_type


def _normalize_limit(limit: Optional[int]) -> Optional[int]:
    if limit is None or limit <= 0:
        return None
    return min(int(limit), MAX_LIMIT)


def _normalize_lookback(seconds: Optional[float]) -> int:
    if seconds is None or not math.isfinite(seconds):
        return DEFAULT_LOOKBACK_SECONDS
    return max(MIN_LOOKBACK_SECONDS, min(math.floor(seconds), MAX_LOOKBACK_SECONDS))


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def _resolve_url(blobs: BlobStore, storage_id: str) -> Optional[str]:
    try:
        return blobs.get_url(storage_id)
    except Exception:
        logger.warning("Could not resolve URL for blob %s", storage_id, exc_info=True)
        return None


def todo_to_dict(todo: Todo, blobs: BlobStore) -> dict:
    return {
        "id": todo.id,
        "user_id": todo.user_id,
        "title": todo.title,
        "description": todo.description,
        "completed": todo.completed,
        "important": todo.important,
        "due_date": todo.due_date,
        "reminder_minutes_before": todo.reminder_minutes_before,
        "attachments": [
            {
                "storage_id": a["storage_id"],
                "name": a["name"],
                "content_type": a.get("content_type"),
                "size": a["size"],
                "url": _resolve_url(blobs, a["storage_id"]),
            }
            for a in (todo.attachments or [])
        ],
        "created_at": isoformat(todo.created_at),
        "updated_at": isoformat(todo.updated_at),
    }


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def list_clause(list_type: str):
    """SQL predicate of a list type."""
    if list_type == "important":
        return (Todo.completed.is_(False)) & (Todo.important.is_(True))
    if list_type == "planned":
        return (Todo.completed.is_(False)) & (Todo.due_date.is_not(None))
    # "my-day" and "tasks" share the same predicate
    return Todo.completed.is_(False)


def matches_list(todo: Todo, list_type: str) -> bool:
    if todo.completed:
        return False
    if list_type == "important":
        return todo.important
    if list_type == "planned":
        return todo.due_date is not None
    return True


def list_todos(
    db: DBSession,
    blobs: BlobStore,
    user_id: int,
    search: Optional[str] = None,
    list_type: Optional[str] = None,
    tag_id: Optional[int] = None,
    offset: int = 0,
    limit: Optional[int] = None,
) -> list[dict]:
    list_type = _normalize_list_type(list_type)
    offset = max(0, offset or 0)
    limit = _normalize_limit(limit)
    needle = (search or "").strip().lower()

    stmt = select(Todo).where(Todo.user_id == user_id)

    if tag_id is not None:
        tagged = select(TodoTag.todo_id).where(TodoTag.tag_id == tag_id, TodoTag.user_id == user_id)
        if db.scalars(tagged.limit(1)).first() is None:
            return []
        stmt = stmt.where(Todo.id.in_(tagged))

    stmt = stmt.where(list_clause(list_type)).order_by(
        Todo.important.desc(), Todo.created_at.desc(), Todo.id.desc()
    )

    if needle:
        # title matching happens here rather than in SQL so that case folding
        # is Unicode-aware on every backend
        matches = (t for t in db.scalars(stmt) if needle in t.title.lower())
        stop = offset + limit if limit is not None else None
        page = list(islice(matches, offset, stop))
    else:
        page = list(db.scalars(stmt.offset(offset).limit(limit)))

    todo_ids = [t.id for t in page]
    tags_by_todo = load_tags_for_todos(db, user_id, todo_ids)
    counts_by_todo = count_by_todo_ids(db, user_id, todo_ids)

    items = []
    for todo in page:
        item = todo_to_dict(todo, blobs)
        total, done = counts_by_todo[todo.id]
        item["tags"] = tags_by_todo[todo.id]
        item["subtask_count"] = total
        item["subtask_completed_count"] = done
        items.append(item)
    return items


def get_list_counts(db: DBSession, user_id: int) -> dict:
    """Per-list totals from one pass over the user's open todos."""
    total, important, planned = db.execute(
        select(
            func.count(Todo.id),
            func.coalesce(func.sum(case((Todo.important.is_(True), 1), else_=0)), 0),
            func.coalesce(func.sum(case((Todo.due_date.is_not(None), 1), else_=0)), 0),
        ).where(Todo.user_id == user_id, Todo.completed.is_(False))
    ).one()
    return {
        "my_day": total,
        "important": important,
        "planned": planned,
        "tasks": total,
    }


def get_due_todo_reminders(
    db: DBSession,
    user_id: int,
    lookback_seconds: Optional[float] = None,
    clock: Clock = system_clock,
) -> list[dict]:
    """Reminders that fell due within the last `lookback_seconds`.

    A reminder fires at `due_date - reminder_minutes_before`; it is reported
    while `remind_at <= now` and no more than the lookback window ago.
    Clients poll this, so a reminder may show up once per poll in the window.
    """
    lookback_ms = _normalize_lookback(lookback_seconds) * 1000
    now = clock()

    candidates = db.scalars(
        select(Todo).where(
            Todo.user_id == user_id,
            Todo.completed.is_(False),
            Todo.due_date.is_not(None),
            Todo.reminder_minutes_before.is_not(None),
        )
    )

    due = []
    for todo in candidates:
        try:
            due_ms = timestamp_to_ms(todo.due_date)
        except ValueError:
            logger.warning("Todo %s has an unparseable due date %r", todo.id, todo.due_date)
            continue
        remind_at = due_ms - todo.reminder_minutes_before * 60_000
        if remind_at > now or now - remind_at > lookback_ms:
            continue
        due.append((remind_at, todo))

    due.sort(key=lambda pair: (pair[0], pair[1].id))
    return [
        {
            "id": todo.id,
            "title": todo.title,
            "due_date": todo.due_date,
            "reminder_minutes_before": todo.reminder_minutes_before,
            "remind_at": ms_to_iso(remind_at),
            "label": format_reminder_label(todo.reminder_minutes_before),
        }
        for remind_at, todo in due
    ]


def get_todos_page_data(
    db: DBSession,
    blobs: BlobStore,
    user: AuthUser,
    page_size: int,
) -> dict:
    """Everything the main page needs on first load."""
    return {
        "todos": list_todos(db, blobs, user.id, list_type=DEFAULT_LIST, limit=page_size),
        "tags": list_tags(db, user.id),
        "counts": get_list_counts(db, user.id),
        "reminder_options": [
            {"value": value, "label": format_reminder_label(value)} for value in REMINDER_OPTIONS
        ],
        "user": {"id": user.id, "email": user.email},
    }


def _owned_todo(db: DBSession, user_id: int, todo_id: int) -> Todo:
    todo = db.get(Todo, todo_id)
    if todo is None or todo.user_id != user_id:
        raise NotFoundError(TODO_NOT_FOUND)
    return todo


def get_todo(db: DBSession, blobs: BlobStore, user_id: int, todo_id: int) -> dict:
    return todo_to_dict(_owned_todo(db, user_id, todo_id), blobs)


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

def _clean_attachments(blobs: BlobStore, attachments: Optional[Iterable[Mapping[str, Any]]]) -> list[dict]:
    cleaned = []
    for a in attachments or []:
        if not blobs.exists(a["storage_id"]):
            raise ValidationError(f"Attachment {a.get('name') or a['storage_id']} was not uploaded")
        cleaned.append(
            {
                "storage_id": a["storage_id"],
                "name": a["name"],
                "content_type": a.get("content_type"),
                "size": int(a["size"]),
            }
        )
    return cleaned


def create_todo(
    db: DBSession,
    blobs: BlobStore,
    user_id: int,
    title: str,
    description: Optional[str] = None,
    due_date: Optional[str] = None,
    important: bool = False,
    reminder_minutes_before: Optional[float] = None,
    attachments: Optional[Iterable[Mapping[str, Any]]] = None,
    tag_ids: Optional[Iterable[int]] = None,
    clock: Clock = system_clock,
) -> dict:
    title = _clean_title(title)
    due_date = normalize_due_date(due_date)
    reminder = normalize_reminder_minutes(reminder_minutes_before)
    if due_date is None:
        reminder = None

    now = ms_to_datetime(clock())
    todo = Todo(
        user_id=user_id,
        title=title,
        description=description,
        completed=False,
        important=bool(important),
        due_date=due_date,
        reminder_minutes_before=reminder,
        attachments=_clean_attachments(blobs, attachments),
        created_at=now,
        updated_at=now,
    )
    db.add(todo)
    db.flush()

    if tag_ids:
        sync_todo_tags(db, user_id, todo.id, tag_ids, clock=clock, commit=False)
    db.commit()
    return todo_to_dict(todo, blobs)


def update_todo(
    db: DBSession,
    blobs: BlobStore,
    user_id: int,
    todo_id: int,
    changes: Mapping[str, Any],
    clock: Clock = system_clock,
) -> dict:
    """Apply a partial update. Keys absent from `changes` are left alone;
    a `None` value clears a nullable field. Clearing the due date clears the
    reminder too."""
    unknown = set(changes) - _UPDATABLE
    if unknown:
        raise ValidationError(f"Unknown field(s): {', '.join(sorted(unknown))}")

    todo = _owned_todo(db, user_id, todo_id)

    if "title" in changes:
        todo.title = _clean_title(changes["title"])
    if "description" in changes:
        todo.description = changes["description"]
    if "completed" in changes and changes["completed"] is not None:
        todo.completed = bool(changes["completed"])
    if "important" in changes and changes["important"] is not None:
        todo.important = bool(changes["important"])
    if "due_date" in changes:
        todo.due_date = normalize_due_date(changes["due_date"])
    if "reminder_minutes_before" in changes:
        todo.reminder_minutes_before = normalize_reminder_minutes(changes["reminder_minutes_before"])
    if todo.due_date is None:
        todo.reminder_minutes_before = None
    todo.updated_at = ms_to_datetime(clock())

    if changes.get("tag_ids") is not None:
        sync_todo_tags(db, user_id, todo.id, changes["tag_ids"], clock=clock, commit=False)
    db.commit()
    return todo_to_dict(todo, blobs)


def set_todo_completed(
    db: DBSession, blobs: BlobStore, user_id: int, todo_id: int, completed: bool, clock: Clock = system_clock
) -> dict:
    return update_todo(db, blobs, user_id, todo_id, {"completed": completed}, clock=clock)


def set_todo_important(
    db: DBSession, blobs: BlobStore, user_id: int, todo_id: int, important: bool, clock: Clock = system_clock
) -> dict:
    return update_todo(db, blobs, user_id, todo_id, {"important": important}, clock=clock)


def delete_todo(db: DBSession, blobs: BlobStore, user_id: int, todo_id: int) -> None:
    """Delete a todo with its tag associations, subtasks and attachment blobs.

    Deleting a missing (or foreign) todo does nothing. Blob removal is
    best-effort: the rows are gone even if a file cannot be removed.
    """
    todo = db.get(Todo, todo_id)
    if todo is None or todo.user_id != user_id:
        return
    storage_ids = [a["storage_id"] for a in (todo.attachments or [])]

    tags_removed = db.execute(
        delete(TodoTag).where(TodoTag.todo_id == todo_id, TodoTag.user_id == user_id)
    ).rowcount
    subtasks_removed = db.execute(
        delete(Subtask).where(Subtask.todo_id == todo_id, Subtask.user_id == user_id)
    ).rowcount
    db.delete(todo)
    db.commit()

    for storage_id in storage_ids:
        try:
            blobs.delete(storage_id)
        except Exception:
            logger.warning("Failed to delete blob %s of todo %s", storage_id, todo_id, exc_info=True)

    logger.info(
        "Deleted todo %s (%s tag link(s), %s subtask(s), %d attachment(s))",
        todo_id,
        tags_removed,
        subtasks_removed,
        len(storage_ids),
    )


def collect_unattached_blobs(
    db: DBSession,
    blobs: BlobStore,
    clock: Clock = system_clock,
    grace_seconds: int = UNATTACHED_BLOB_GRACE_SECONDS,
) -> int:
    """Delete stored blobs that no todo references and that are older than
    `grace_seconds`, so uploads still waiting for their todo survive."""
    referenced = {
        a["storage_id"]
        for attachments in db.scalars(select(Todo.attachments))
        for a in (attachments or [])
    }
    cutoff = clock() - grace_seconds * 1000
    stale = [
        storage_id
        for storage_id, stored_at in blobs.iter_objects()
        if storage_id not in referenced and stored_at <= cutoff
    ]
    for storage_id in stale:
        blobs.delete(storage_id)
    if stale:
        logger.info("Collected %d unattached blob(s)", len(stale))
    return len(stale)
