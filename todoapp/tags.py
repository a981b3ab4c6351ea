import unicodedata
from typing import Iterable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session as DBSession

from .clock import Clock, ms_to_datetime, system_clock
from .errors import DuplicateResource, NotFoundError, ValidationError
from .logging import get_logger
from .models import DEFAULT_TAG_COLOR, Tag, Todo, TodoTag, isoformat

logger = get_logger(__name__)

TAG_NOT_FOUND = "Tag not found"
TAG_EXISTS = "A tag with this name already exists"


def tag_sort_key(name: str) -> tuple[str, str]:
    """Collation key for tag names: compatibility-normalized, case-folded, then exact."""
    return unicodedata.normalize("NFKC", name).casefold(), name


def tag_to_dict(tag: Tag) -> dict:
    return {
        "id": tag.id,
        "user_id": tag.user_id,
        "name": tag.name,
        "color": tag.color,
        "created_at": isoformat(tag.created_at),
        "updated_at": isoformat(tag.updated_at),
    }


def _sorted(tags: Iterable[dict]) -> list[dict]:
    return sorted(tags, key=lambda t: tag_sort_key(t["name"]))


def _clean_name(name: str) -> str:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Tag name must not be empty")
    return name


def _name_taken(db: DBSession, user_id: int, name: str, exclude_id: Optional[int] = None) -> bool:
    query = db.query(Tag.id).filter(Tag.user_id == user_id, Tag.name == name)
    if exclude_id is not None:
        query = query.filter(Tag.id != exclude_id)
    return query.first() is not None


def _owned_tag(db: DBSession, user_id: int, tag_id: int) -> Tag:
    tag = db.get(Tag, tag_id)
    if tag is None or tag.user_id != user_id:
        raise NotFoundError(TAG_NOT_FOUND)
    return tag


def list_tags(db: DBSession, user_id: int) -> list[dict]:
    tags = db.scalars(select(Tag).where(Tag.user_id == user_id))
    return _sorted(tag_to_dict(t) for t in tags)


def list_tags_with_counts(db: DBSession, user_id: int) -> list[dict]:
    counts = dict(
        db.execute(
            select(TodoTag.tag_id, func.count(TodoTag.id))
            .where(TodoTag.user_id == user_id)
            .group_by(TodoTag.tag_id)
        ).all()
    )
    result = []
    for tag in db.scalars(select(Tag).where(Tag.user_id == user_id)):
        item = tag_to_dict(tag)
        item["todo_count"] = counts.get(tag.id, 0)
        result.append(item)
    return _sorted(result)


def create_tag(
    db: DBSession,
    user_id: int,
    name: str,
    color: Optional[str] = None,
    clock: Clock = system_clock,
) -> dict:
    name = _clean_name(name)
    if _name_taken(db, user_id, name):
        raise DuplicateResource(TAG_EXISTS)

    now = ms_to_datetime(clock())
    tag = Tag(user_id=user_id, name=name, color=color or DEFAULT_TAG_COLOR, created_at=now, updated_at=now)
    db.add(tag)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateResource(TAG_EXISTS)
    return tag_to_dict(tag)


def update_tag(
    db: DBSession,
    user_id: int,
    tag_id: int,
    name: Optional[str] = None,
    color: Optional[str] = None,
    clock: Clock = system_clock,
) -> dict:
    tag = _owned_tag(db, user_id, tag_id)
    if name is not None:
        name = _clean_name(name)
        if _name_taken(db, user_id, name, exclude_id=tag.id):
            raise DuplicateResource(TAG_EXISTS)
        tag.name = name
    if color is not None:
        tag.color = color
    tag.updated_at = ms_to_datetime(clock())
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateResource(TAG_EXISTS)
    return tag_to_dict(tag)


def delete_tag(db: DBSession, user_id: int, tag_id: int) -> None:
    tag = _owned_tag(db, user_id, tag_id)
    db.execute(delete(TodoTag).where(TodoTag.tag_id == tag.id, TodoTag.user_id == user_id))
    db.delete(tag)
    db.commit()


def load_tags_for_todos(db: DBSession, user_id: int, todo_ids: list[int]) -> dict[int, list[dict]]:
    """Tags of each todo, sorted by name. Associations of other users are skipped."""
    grouped: dict[int, list[dict]] = {todo_id: [] for todo_id in todo_ids}
    if not todo_ids:
        return grouped
    rows = db.execute(
        select(TodoTag.todo_id, Tag)
        .join(Tag, Tag.id == TodoTag.tag_id)
        .where(
            TodoTag.todo_id.in_(todo_ids),
            TodoTag.user_id == user_id,
            Tag.user_id == user_id,
        )
    ).all()
    for todo_id, tag in rows:
        grouped[todo_id].append(tag_to_dict(tag))
    return {todo_id: _sorted(tags) for todo_id, tags in grouped.items()}


def get_todo_tags(db: DBSession, user_id: int, todo_id: int) -> list[dict]:
    return load_tags_for_todos(db, user_id, [todo_id])[todo_id]


def sync_todo_tags(
    db: DBSession,
    user_id: int,
    todo_id: int,
    tag_ids: Iterable[int],
    clock: Clock = system_clock,
    commit: bool = True,
) -> None:
    """Make the todo's tag set equal `tag_ids`.

    Only the difference is written: missing associations are inserted and
    extra ones deleted. Tag ids the user does not own are ignored.
    """
    todo = db.get(Todo, todo_id)
    if todo is None or todo.user_id != user_id:
        raise NotFoundError("Todo not found")

    target = list(dict.fromkeys(tag_ids))
    target_set = set(target)

    existing = db.scalars(
        select(TodoTag).where(TodoTag.todo_id == todo_id, TodoTag.user_id == user_id)
    ).all()
    existing_tag_ids = {m.tag_id for m in existing}

    for mapping in existing:
        if mapping.tag_id not in target_set:
            db.delete(mapping)

    missing = [tag_id for tag_id in target if tag_id not in existing_tag_ids]
    if missing:
        owned = set(db.scalars(select(Tag.id).where(Tag.id.in_(missing), Tag.user_id == user_id)))
        now = ms_to_datetime(clock())
        for tag_id in missing:
            if tag_id in owned:
                db.add(TodoTag(user_id=user_id, todo_id=todo_id, tag_id=tag_id, created_at=now))

    if commit:
        db.commit()
    else:
        db.flush()
