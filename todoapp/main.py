import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import FileResponse, JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as DBSession

from . import schemas
from . import subtasks as subtask_service
from . import tags as tag_service
from . import todos as todo_service
from .auth import AuthResult, AuthUser, SessionManager
from .blobs import BlobStore
from .clock import Clock, system_clock
from .config import Settings
from .cookies import CookieJar, get_cookie_jar
from .db import Base, get_db, make_engine, make_session_factory
from .errors import AuthRequired, StorageFailure, TodoAppError
from .logging import configure_logging, get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_sessions(request: Request) -> SessionManager:
    return request.app.state.sessions


def get_blobs(request: Request) -> BlobStore:
    return request.app.state.blobs


def get_clock(request: Request) -> Clock:
    return request.app.state.clock


def current_user(
    sessions: SessionManager = Depends(get_sessions),
    db: DBSession = Depends(get_db),
    jar: CookieJar = Depends(get_cookie_jar),
) -> AuthUser:
    return sessions.require_user(db, jar)


def _auth_response(result: AuthResult) -> JSONResponse | dict:
    if not result.ok:
        return JSONResponse(status_code=400, content={"error": result.error, "user": None})
    return {"error": None, "user": {"id": result.user.id, "email": result.user.email}}


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

@router.post("/auth/signup", response_model=schemas.AuthResponse)
def sign_up(
    payload: schemas.Credentials,
    sessions: SessionManager = Depends(get_sessions),
    db: DBSession = Depends(get_db),
    jar: CookieJar = Depends(get_cookie_jar),
):
    return _auth_response(sessions.sign_up(db, jar, payload.email, payload.password))


@router.post("/auth/signin", response_model=schemas.AuthResponse)
def sign_in(
    payload: schemas.SignInRequest,
    sessions: SessionManager = Depends(get_sessions),
    db: DBSession = Depends(get_db),
    jar: CookieJar = Depends(get_cookie_jar),
):
    return _auth_response(sessions.sign_in(db, jar, payload.email, payload.password))


@router.post("/auth/signout")
def sign_out(
    sessions: SessionManager = Depends(get_sessions),
    db: DBSession = Depends(get_db),
    jar: CookieJar = Depends(get_cookie_jar),
):
    sessions.sign_out(db, jar)
    return {"success": True}


@router.get("/auth/me", response_model=Optional[schemas.UserOut])
def me(
    sessions: SessionManager = Depends(get_sessions),
    db: DBSession = Depends(get_db),
    jar: CookieJar = Depends(get_cookie_jar),
):
    user = sessions.get_current_user(db, jar)
    if user is None:
        return None
    return {"id": user.id, "email": user.email}


@router.post("/auth/password", response_model=schemas.AuthResponse)
def change_password(
    payload: schemas.PasswordChangeRequest,
    user: AuthUser = Depends(current_user),
    sessions: SessionManager = Depends(get_sessions),
    db: DBSession = Depends(get_db),
    jar: CookieJar = Depends(get_cookie_jar),
):
    result = sessions.change_password(db, jar, user, payload.current_password, payload.new_password)
    return _auth_response(result)


# ---------------------------------------------------------------------------
# Todos
# ---------------------------------------------------------------------------

@router.get("/todos", response_model=list[schemas.TodoListItem])
def list_todos(
    q: Optional[str] = None,
    list_type: schemas.ListType = Query("my-day", alias="list"),
    tag_id: Optional[int] = None,
    offset: int = 0,
    limit: Optional[int] = None,
    user: AuthUser = Depends(current_user),
    db: DBSession = Depends(get_db),
    blobs: BlobStore = Depends(get_blobs),
):
    return todo_service.list_todos(
        db, blobs, user.id, search=q, list_type=list_type, tag_id=tag_id, offset=offset, limit=limit
    )


@router.get("/todos/counts", response_model=schemas.ListCounts)
def todo_counts(user: AuthUser = Depends(current_user), db: DBSession = Depends(get_db)):
    return todo_service.get_list_counts(db, user.id)


@router.get("/todos/reminders", response_model=list[schemas.DueReminder])
def due_reminders(
    lookback_seconds: Optional[float] = None,
    user: AuthUser = Depends(current_user),
    db: DBSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return todo_service.get_due_todo_reminders(db, user.id, lookback_seconds, clock=clock)


@router.get("/todos/page-data", response_model=schemas.TodosPageData)
def page_data(
    request: Request,
    user: AuthUser = Depends(current_user),
    db: DBSession = Depends(get_db),
    blobs: BlobStore = Depends(get_blobs),
):
    return todo_service.get_todos_page_data(db, blobs, user, request.app.state.settings.TODOS_PAGE_SIZE)


@router.post("/todos", response_model=schemas.TodoOut, status_code=201)
def create_todo(
    payload: schemas.TodoCreate,
    user: AuthUser = Depends(current_user),
    db: DBSession = Depends(get_db),
    blobs: BlobStore = Depends(get_blobs),
    clock: Clock = Depends(get_clock),
):
    return todo_service.create_todo(
        db,
        blobs,
        user.id,
        title=payload.title,
        description=payload.description,
        due_date=payload.due_date,
        important=payload.important,
        reminder_minutes_before=payload.reminder_minutes_before,
        attachments=[a.model_dump() for a in payload.attachments],
        tag_ids=payload.tag_ids,
        clock=clock,
    )


@router.get("/todos/{todo_id}", response_model=schemas.TodoOut)
def get_todo(
    todo_id: int,
    user: AuthUser = Depends(current_user),
    db: DBSession = Depends(get_db),
    blobs: BlobStore = Depends(get_blobs),
):
    return todo_service.get_todo(db, blobs, user.id, todo_id)


@router.patch("/todos/{todo_id}", response_model=schemas.TodoOut)
def update_todo(
    todo_id: int,
    payload: schemas.TodoUpdate,
    user: AuthUser = Depends(current_user),
    db: DBSession = Depends(get_db),
    blobs: BlobStore = Depends(get_blobs),
    clock: Clock = Depends(get_clock),
):
    changes = payload.model_dump(exclude_unset=True)
    return todo_service.update_todo(db, blobs, user.id, todo_id, changes, clock=clock)


@router.post("/todos/{todo_id}/completed", response_model=schemas.TodoOut)
def set_completed(
    todo_id: int,
    payload: schemas.CompletedFlag,
    user: AuthUser = Depends(current_user),
    db: DBSession = Depends(get_db),
    blobs: BlobStore = Depends(get_blobs),
    clock: Clock = Depends(get_clock),
):
    return todo_service.set_todo_completed(db, blobs, user.id, todo_id, payload.completed, clock=clock)


@router.post("/todos/{todo_id}/important", response_model=schemas.TodoOut)
def set_important(
    todo_id: int,
    payload: schemas.ImportantFlag,
    user: AuthUser = Depends(current_user),
    db: DBSession = Depends(get_db),
    blobs: BlobStore = Depends(get_blobs),
    clock: Clock = Depends(get_clock),
):
    return todo_service.set_todo_important(db, blobs, user.id, todo_id, payload.important, clock=clock)


@router.delete("/todos/{todo_id}", status_code=204)
def delete_todo(
    todo_id: int,
    user: AuthUser = Depends(current_user),
    db: DBSession = Depends(get_db),
    blobs: BlobStore = Depends(get_blobs),
):
    todo_service.delete_todo(db, blobs, user.id, todo_id)


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------

@router.get("/tags", response_model=list[schemas.TagOut])
def list_tags(
    with_counts: bool = False,
    user: AuthUser = Depends(current_user),
    db: DBSession = Depends(get_db),
):
    if with_counts:
        return tag_service.list_tags_with_counts(db, user.id)
    return tag_service.list_tags(db, user.id)


@router.post("/tags", response_model=schemas.TagOut, status_code=201)
def create_tag(
    payload: schemas.TagCreate,
    user: AuthUser = Depends(current_user),
    db: DBSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return tag_service.create_tag(db, user.id, payload.name, payload.color, clock=clock)


@router.patch("/tags/{tag_id}", response_model=schemas.TagOut)
def update_tag(
    tag_id: int,
    payload: schemas.TagUpdate,
    user: AuthUser = Depends(current_user),
    db: DBSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return tag_service.update_tag(db, user.id, tag_id, payload.name, payload.color, clock=clock)


@router.delete("/tags/{tag_id}", status_code=204)
def delete_tag(tag_id: int, user: AuthUser = Depends(current_user), db: DBSession = Depends(get_db)):
    tag_service.delete_tag(db, user.id, tag_id)


@router.get("/todos/{todo_id}/tags", response_model=list[schemas.TagOut])
def todo_tags(todo_id: int, user: AuthUser = Depends(current_user), db: DBSession = Depends(get_db)):
    return tag_service.get_todo_tags(db, user.id, todo_id)


@router.put("/todos/{todo_id}/tags", response_model=list[schemas.TagOut])
def sync_todo_tags(
    todo_id: int,
    payload: schemas.TagIds,
    user: AuthUser = Depends(current_user),
    db: DBSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    tag_service.sync_todo_tags(db, user.id, todo_id, payload.tag_ids, clock=clock)
    return tag_service.get_todo_tags(db, user.id, todo_id)


# ---------------------------------------------------------------------------
# Subtasks
# ---------------------------------------------------------------------------

@router.get("/todos/{todo_id}/subtasks", response_model=list[schemas.SubtaskOut])
def list_subtasks(todo_id: int, user: AuthUser = Depends(current_user), db: DBSession = Depends(get_db)):
    return subtask_service.list_by_todo_id(db, user.id, todo_id)


@router.post("/todos/{todo_id}/subtasks", response_model=schemas.SubtaskOut, status_code=201)
def create_subtask(
    todo_id: int,
    payload: schemas.SubtaskCreate,
    user: AuthUser = Depends(current_user),
    db: DBSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return subtask_service.create_subtask(db, user.id, todo_id, payload.title, payload.order, clock=clock)


@router.put("/todos/{todo_id}/subtasks/order", status_code=204)
def reorder_subtasks(
    todo_id: int,
    payload: schemas.SubtaskReorder,
    user: AuthUser = Depends(current_user),
    db: DBSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    items = [(s.id, s.order) for s in payload.subtasks]
    subtask_service.reorder_subtasks(db, user.id, todo_id, items, clock=clock)


@router.patch("/subtasks/{subtask_id}", response_model=schemas.SubtaskOut)
def update_subtask(
    subtask_id: int,
    payload: schemas.SubtaskUpdate,
    user: AuthUser = Depends(current_user),
    db: DBSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return subtask_service.update_subtask(
        db, user.id, subtask_id, payload.title, payload.completed, payload.order, clock=clock
    )


@router.post("/subtasks/{subtask_id}/completed", response_model=schemas.SubtaskOut)
def toggle_subtask(
    subtask_id: int,
    payload: schemas.CompletedFlag,
    user: AuthUser = Depends(current_user),
    db: DBSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return subtask_service.toggle_subtask_completed(db, user.id, subtask_id, payload.completed, clock=clock)


@router.delete("/subtasks/{subtask_id}", status_code=204)
def delete_subtask(subtask_id: int, user: AuthUser = Depends(current_user), db: DBSession = Depends(get_db)):
    subtask_service.delete_subtask(db, user.id, subtask_id)


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------

@router.post("/attachments/upload-url", response_model=schemas.UploadTarget)
def create_upload_url(user: AuthUser = Depends(current_user), blobs: BlobStore = Depends(get_blobs)):
    return {"upload_url": blobs.upload_url(blobs.create_upload_target())}


@router.post("/attachments/upload/{token}", response_model=schemas.UploadResult)
async def upload_attachment(
    token: str,
    request: Request,
    user: AuthUser = Depends(current_user),
    blobs: BlobStore = Depends(get_blobs),
):
    data = await request.body()
    content_type = request.headers.get("content-type")
    storage_id = await asyncio.to_thread(blobs.store, token, data, content_type)
    return {"storage_id": storage_id}


@router.get("/attachments/{storage_id}")
def download_attachment(
    storage_id: str,
    user: AuthUser = Depends(current_user),
    blobs: BlobStore = Depends(get_blobs),
):
    path, content_type = blobs.open(storage_id)
    return FileResponse(path, media_type=content_type or "application/octet-stream")


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

def create_app(settings: Optional[Settings] = None, clock: Optional[Clock] = None) -> FastAPI:
    """Build the application. Engine, blob store and clock are created here once."""
    settings = settings or Settings()
    configure_logging(settings.LOG_LEVEL)

    engine = make_engine(settings.DATABASE_URL)
    Base.metadata.create_all(bind=engine)

    app = FastAPI(title="Todo", version="0.1.0")
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = make_session_factory(engine)
    app.state.clock = clock or system_clock
    app.state.blobs = BlobStore(settings.BLOB_DIR, max_bytes=settings.MAX_ATTACHMENT_BYTES, clock=app.state.clock)
    app.state.sessions = SessionManager(
        clock=app.state.clock,
        cookie_name=settings.SESSION_COOKIE_NAME,
        max_age_seconds=settings.SESSION_MAX_AGE_SECONDS,
    )

    @app.exception_handler(TodoAppError)
    async def app_error_handler(request: Request, exc: TodoAppError):
        response = JSONResponse(status_code=exc.status_code, content={"detail": exc.message})
        if isinstance(exc, AuthRequired):
            response.delete_cookie(
                settings.SESSION_COOKIE_NAME,
                path="/",
                secure=settings.is_production,
                httponly=True,
                samesite="lax",
            )
        return response

    @app.exception_handler(SQLAlchemyError)
    async def storage_error_handler(request: Request, exc: SQLAlchemyError):
        logger.exception("Storage failure on %s %s", request.method, request.url.path)
        failure = StorageFailure()
        return JSONResponse(status_code=failure.status_code, content={"detail": failure.message})

    @app.on_event("startup")
    def _collect_unattached_blobs():
        db = app.state.session_factory()
        try:
            todo_service.collect_unattached_blobs(db, app.state.blobs, clock=app.state.clock)
        finally:
            db.close()

    @app.get("/health")
    def health():
        return {"status": "ok"}

    app.include_router(router)
    logger.info("Application ready (database %s)", engine.url.render_as_string(hide_password=True))
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("todoapp.main:create_app", factory=True, host="0.0.0.0", port=8000)
