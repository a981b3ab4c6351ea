import pytest

from todoapp import subtasks, todos
from todoapp.errors import NotFoundError, ValidationError


@pytest.fixture
def todo(db, blobs, user, clock):
    return todos.create_todo(db, blobs, user.id, "Pack for trip", clock=clock)


def titles(items):
    return [s["title"] for s in items]


def test_order_defaults_to_position(db, user, todo, clock):
    first = subtasks.create_subtask(db, user.id, todo["id"], "passport", clock=clock)
    second = subtasks.create_subtask(db, user.id, todo["id"], "charger", clock=clock)
    assert (first["order"], second["order"]) == (0, 1)
    assert first["completed"] is False


def test_listing_follows_order(db, user, todo, clock):
    subtasks.create_subtask(db, user.id, todo["id"], "last", order=5, clock=clock)
    subtasks.create_subtask(db, user.id, todo["id"], "first", order=0, clock=clock)
    subtasks.create_subtask(db, user.id, todo["id"], "middle", order=2, clock=clock)
    assert titles(subtasks.list_by_todo_id(db, user.id, todo["id"])) == ["first", "middle", "last"]


def test_create_requires_owned_todo(db, user, other_user, todo, clock):
    with pytest.raises(NotFoundError):
        subtasks.create_subtask(db, other_user.id, todo["id"], "sneaky", clock=clock)
    with pytest.raises(ValidationError):
        subtasks.create_subtask(db, user.id, todo["id"], "  ", clock=clock)


def test_update_toggle_delete(db, user, todo, clock):
    s = subtasks.create_subtask(db, user.id, todo["id"], "socks", clock=clock)

    updated = subtasks.update_subtask(db, user.id, s["id"], title="wool socks", clock=clock)
    assert updated["title"] == "wool socks"
    assert subtasks.toggle_subtask_completed(db, user.id, s["id"], True, clock=clock)["completed"] is True

    subtasks.delete_subtask(db, user.id, s["id"])
    assert subtasks.list_by_todo_id(db, user.id, todo["id"]) == []
    with pytest.raises(NotFoundError):
        subtasks.delete_subtask(db, user.id, s["id"])


def test_foreign_subtask_is_not_found(db, user, other_user, todo, clock):
    s = subtasks.create_subtask(db, user.id, todo["id"], "socks", clock=clock)
    with pytest.raises(NotFoundError):
        subtasks.update_subtask(db, other_user.id, s["id"], title="mine", clock=clock)
    with pytest.raises(NotFoundError):
        subtasks.toggle_subtask_completed(db, other_user.id, s["id"], True, clock=clock)


def test_reorder(db, user, todo, clock):
    a, b, c = (subtasks.create_subtask(db, user.id, todo["id"], t, clock=clock) for t in "abc")
    subtasks.reorder_subtasks(db, user.id, todo["id"], [(c["id"], 0), (a["id"], 1), (b["id"], 2)], clock=clock)
    assert titles(subtasks.list_by_todo_id(db, user.id, todo["id"])) == ["c", "a", "b"]


@pytest.mark.parametrize("bad", ["duplicate", "unknown", "other_todo"])
def test_reorder_rejects_whole_batch(db, blobs, user, todo, clock, bad):
    a, b = (subtasks.create_subtask(db, user.id, todo["id"], t, clock=clock) for t in "ab")
    other = todos.create_todo(db, blobs, user.id, "other", clock=clock)
    stray = subtasks.create_subtask(db, user.id, other["id"], "stray", clock=clock)

    items = [(b["id"], 0), (a["id"], 1)]
    if bad == "duplicate":
        items.append((a["id"], 2))
    elif bad == "unknown":
        items.append((9999, 2))
    else:
        items.append((stray["id"], 2))

    with pytest.raises(ValidationError):
        subtasks.reorder_subtasks(db, user.id, todo["id"], items, clock=clock)
    assert titles(subtasks.list_by_todo_id(db, user.id, todo["id"])) == ["a", "b"]


def test_counts_by_todo(db, user, todo, clock):
    a = subtasks.create_subtask(db, user.id, todo["id"], "a", clock=clock)
    subtasks.create_subtask(db, user.id, todo["id"], "b", clock=clock)
    subtasks.toggle_subtask_completed(db, user.id, a["id"], True, clock=clock)
    assert subtasks.count_by_todo_ids(db, user.id, [todo["id"], 12345]) == {todo["id"]: (2, 1), 12345: (0, 0)}
