from typing import Annotated, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StringConstraints

from .reminders import MAX_REMINDER_MINUTES

ListType = Literal["my-day", "important", "planned", "tasks"]

HexColor = Annotated[str, StringConstraints(pattern=r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")]


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

class Credentials(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6, max_length=256)


class SignInRequest(BaseModel):
    email: str
    password: str


class PasswordChangeRequest(BaseModel):
    current_password: str
    new_password: str = Field(min_length=6, max_length=256)


class UserOut(BaseModel):
    id: int
    email: str


class AuthResponse(BaseModel):
    error: Optional[str] = None
    user: Optional[UserOut] = None


# ---------------------------------------------------------------------------
# Todos
# ---------------------------------------------------------------------------

class AttachmentIn(BaseModel):
    storage_id: str
    name: str = Field(min_length=1)
    content_type: Optional[str] = None
    size: int = Field(ge=0)


class AttachmentOut(AttachmentIn):
    url: Optional[str] = None


class TodoCreate(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    due_date: Optional[str] = None
    important: bool = False
    reminder_minutes_before: Optional[float] = Field(None, le=MAX_REMINDER_MINUTES)
    attachments: list[AttachmentIn] = []
    tag_ids: Optional[list[int]] = None


class TodoUpdate(BaseModel):
    """Partial update: only the fields present in the body are applied."""

    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = None
    description: Optional[str] = None
    completed: Optional[bool] = None
    important: Optional[bool] = None
    due_date: Optional[str] = None
    reminder_minutes_before: Optional[float] = Field(None, le=MAX_REMINDER_MINUTES)
    tag_ids: Optional[list[int]] = None


class CompletedFlag(BaseModel):
    completed: bool


class ImportantFlag(BaseModel):
    important: bool


class TagOut(BaseModel):
    id: int
    user_id: int
    name: str
    color: str
    created_at: str
    updated_at: str
    todo_count: Optional[int] = None


class TodoOut(BaseModel):
    id: int
    user_id: int
    title: str
    description: Optional[str]
    completed: bool
    important: bool
    due_date: Optional[str]
    reminder_minutes_before: Optional[int]
    attachments: list[AttachmentOut]
    created_at: str
    updated_at: str


class TodoListItem(TodoOut):
    tags: list[TagOut]
    subtask_count: int
    subtask_completed_count: int


class ListCounts(BaseModel):
    my_day: int
    important: int
    planned: int
    tasks: int


class DueReminder(BaseModel):
    id: int
    title: str
    due_date: str
    reminder_minutes_before: int
    remind_at: str
    label: str


class ReminderOption(BaseModel):
    value: Optional[int]
    label: str


class TodosPageData(BaseModel):
    todos: list[TodoListItem]
    tags: list[TagOut]
    counts: ListCounts
    reminder_options: list[ReminderOption]
    user: UserOut


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------

class TagCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    color: Optional[HexColor] = None


class TagUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    color: Optional[HexColor] = None


class TagIds(BaseModel):
    tag_ids: list[int]


# ---------------------------------------------------------------------------
# Subtasks
# ---------------------------------------------------------------------------

class SubtaskCreate(BaseModel):
    title: str = Field(min_length=1)
    order: Optional[int] = None


class SubtaskUpdate(BaseModel):
    title: Optional[str] = None
    completed: Optional[bool] = None
    order: Optional[int] = None


class SubtaskOrder(BaseModel):
    id: int
    order: int


class SubtaskReorder(BaseModel):
    subtasks: list[SubtaskOrder]


class SubtaskOut(BaseModel):
    id: int
    todo_id: int
    title: str
    completed: bool
    order: int
    created_at: str
    updated_at: str


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------

class UploadTarget(BaseModel):
    upload_url: str


class UploadResult(BaseModel):
    storage_id: str
