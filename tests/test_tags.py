import pytest
from sqlalchemy import select

from todoapp import tags, todos
from todoapp.errors import DuplicateResource, NotFoundError, ValidationError
from todoapp.models import DEFAULT_TAG_COLOR, TodoTag


def names(items):
    return [t["name"] for t in items]


def test_create_uses_default_color(db, user, clock):
    tag = tags.create_tag(db, user.id, "  work ", clock=clock)
    assert tag["name"] == "work"
    assert tag["color"] == DEFAULT_TAG_COLOR
    assert tags.create_tag(db, user.id, "home", color="#ff0000", clock=clock)["color"] == "#ff0000"


def test_create_rejects_blank_name(db, user, clock):
    with pytest.raises(ValidationError):
        tags.create_tag(db, user.id, "   ", clock=clock)


def test_names_are_unique_per_user(db, user, other_user, clock):
    tags.create_tag(db, user.id, "work", clock=clock)
    with pytest.raises(DuplicateResource):
        tags.create_tag(db, user.id, "work", clock=clock)
    # another user may reuse the name
    assert tags.create_tag(db, other_user.id, "work", clock=clock)["user_id"] == other_user.id


def test_rename_to_taken_name_conflicts(db, user, clock):
    tags.create_tag(db, user.id, "work", clock=clock)
    home = tags.create_tag(db, user.id, "home", clock=clock)
    with pytest.raises(DuplicateResource):
        tags.update_tag(db, user.id, home["id"], name="work", clock=clock)

    # renaming a tag to its own name is fine
    assert tags.update_tag(db, user.id, home["id"], name="home", color="#00ff00", clock=clock)["color"] == "#00ff00"


def test_update_and_delete_of_foreign_tag(db, user, other_user, clock):
    theirs = tags.create_tag(db, other_user.id, "theirs", clock=clock)
    with pytest.raises(NotFoundError):
        tags.update_tag(db, user.id, theirs["id"], name="mine", clock=clock)
    with pytest.raises(NotFoundError):
        tags.delete_tag(db, user.id, theirs["id"])


def test_list_is_sorted_case_insensitively(db, user, other_user, clock):
    for name in ["beta", "Gamma", "alpha", "Äpfel"]:
        tags.create_tag(db, user.id, name, clock=clock)
    tags.create_tag(db, other_user.id, "aaa", clock=clock)
    assert names(tags.list_tags(db, user.id)) == ["alpha", "beta", "Gamma", "Äpfel"]


def test_counts(db, blobs, user, clock):
    work = tags.create_tag(db, user.id, "work", clock=clock)
    tags.create_tag(db, user.id, "idle", clock=clock)
    todos.create_todo(db, blobs, user.id, "one", tag_ids=[work["id"]], clock=clock)
    todos.create_todo(db, blobs, user.id, "two", tag_ids=[work["id"]], clock=clock)

    counted = {t["name"]: t["todo_count"] for t in tags.list_tags_with_counts(db, user.id)}
    assert counted == {"idle": 0, "work": 2}


def test_delete_removes_associations(db, blobs, user, clock):
    work = tags.create_tag(db, user.id, "work", clock=clock)
    todo = todos.create_todo(db, blobs, user.id, "one", tag_ids=[work["id"]], clock=clock)

    tags.delete_tag(db, user.id, work["id"])

    assert tags.list_tags(db, user.id) == []
    assert tags.get_todo_tags(db, user.id, todo["id"]) == []
    assert db.scalars(select(TodoTag)).all() == []
    assert todos.get_todo(db, blobs, user.id, todo["id"])["title"] == "one"


def test_sync_writes_only_the_difference(db, blobs, user, clock):
    a, b, c = (tags.create_tag(db, user.id, n, clock=clock) for n in "abc")
    todo = todos.create_todo(db, blobs, user.id, "t", clock=clock)

    tags.sync_todo_tags(db, user.id, todo["id"], [a["id"], b["id"]], clock=clock)
    kept = db.scalars(select(TodoTag).where(TodoTag.tag_id == b["id"])).one()

    tags.sync_todo_tags(db, user.id, todo["id"], [b["id"], c["id"]], clock=clock)

    assert names(tags.get_todo_tags(db, user.id, todo["id"])) == ["b", "c"]
    # the unchanged association row survives the sync
    assert db.scalars(select(TodoTag).where(TodoTag.tag_id == b["id"])).one().id == kept.id


def test_sync_ignores_foreign_tags_and_duplicates(db, blobs, user, other_user, clock):
    mine = tags.create_tag(db, user.id, "mine", clock=clock)
    theirs = tags.create_tag(db, other_user.id, "theirs", clock=clock)
    todo = todos.create_todo(db, blobs, user.id, "t", clock=clock)

    tags.sync_todo_tags(db, user.id, todo["id"], [mine["id"], mine["id"], theirs["id"], 9999], clock=clock)

    assert names(tags.get_todo_tags(db, user.id, todo["id"])) == ["mine"]
    assert len(db.scalars(select(TodoTag)).all()) == 1


def test_sync_on_foreign_todo_is_not_found(db, blobs, user, other_user, clock):
    mine = tags.create_tag(db, user.id, "mine", clock=clock)
    theirs = todos.create_todo(db, blobs, other_user.id, "t", clock=clock)
    with pytest.raises(NotFoundError):
        tags.sync_todo_tags(db, user.id, theirs["id"], [mine["id"]], clock=clock)
