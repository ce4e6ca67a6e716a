"""
FastAPI Backend with Server-Sent Events for the Task Board

REST endpoints for boards, columns, tasks and attachments, plus SSE streams
that tell clients when to refetch. Every mutation commits through
BoardDatabase first and only then notifies the EventHub; a failed
notification never changes the response of the mutation.

The owner identity is an opaque token resolved upstream and passed in the
X-Client-Id header (or ?uid= for EventSource clients that cannot set headers).
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse

from .attachments import AttachmentStore
from .database import BoardDatabase, now_str
from .errors import CapacityExceededError, InvalidNameError, NotFoundError
from .models import (
    BoardIn, BoardOut, ColumnIn, ColumnMove, ColumnOut, HealthResponse,
    MetricsResponse, ReorderItem, TaskIn, TaskMove, TaskOut,
)
from .monitoring import background_tasks, performance_monitor
from .realtime import EventHub, EventType, SseConnection
from .settings import Settings

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = Settings.from_env()

db_instance: Optional[BoardDatabase] = None
attachment_store: Optional[AttachmentStore] = None

hub = EventHub(
    reconnect_ms=settings.sse_reconnect_ms,
    max_pending=settings.sse_max_pending,
    on_broadcast=performance_monitor.record_broadcast_time,
)


def get_database() -> BoardDatabase:
    if db_instance is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return db_instance


def get_attachments() -> AttachmentStore:
    if attachment_store is None:
        raise HTTPException(status_code=503, detail="Attachment storage not available")
    return attachment_store


def get_hub() -> EventHub:
    return hub


def require_owner(x_client_id: Optional[str] = Header(None, alias="X-Client-Id")) -> str:
    if x_client_id is None or not x_client_id.strip():
        raise HTTPException(status_code=400, detail="X-Client-Id header required")
    return x_client_id.strip()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database and start heartbeat/retention workers."""
    global db_instance, attachment_store

    try:
        db_instance = BoardDatabase(settings.database_path, settings.max_columns_per_board)
        attachment_store = AttachmentStore(settings.upload_dir)
        logger.info(f"Database initialized: {settings.database_path}")
        await background_tasks.start_background_tasks(
            db_instance, hub, attachment_store,
            heartbeat_interval=settings.heartbeat_interval,
            retention_days=settings.retention_days,
        )
    except Exception as e:
        logger.error(f"Failed to initialize task board backend: {e}")
        raise

    yield

    try:
        await background_tasks.stop_background_tasks()
    except Exception as e:
        logger.error(f"Error stopping background tasks: {e}")

    hub.close_all()
    if db_instance:
        db_instance.close()
        logger.info("Database connection closed")


app = FastAPI(
    title="Task Board API",
    description="Kanban boards with ordered columns and tasks and SSE dirty events",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Notification helpers
# ---------------------------------------------------------------------------

def notify_owner(events: EventHub, uid: str, event_type: EventType) -> None:
    try:
        events.emit_boards(uid, event_type)
    except Exception as e:
        logger.error(f"Failed to emit {event_type.wire()} for {uid}: {e}")


def notify_boards(events: EventHub, board_ids, event_type: EventType) -> None:
    for board_id in board_ids:
        try:
            events.emit_board(board_id, event_type)
        except Exception as e:
            logger.error(f"Failed to emit {event_type.wire()} for board {board_id}: {e}")


def _require_board(db: BoardDatabase, uid: str, board_id: int) -> dict:
    board = db.get_board(board_id, uid)
    if board is None:
        raise NotFoundError("board", board_id)
    return board


def _require_column(db: BoardDatabase, uid: str, column_id: int, board_id: Optional[int] = None) -> dict:
    column = db.get_column(column_id)
    if (column is None or not db.owns_column(uid, column_id)
            or (board_id is not None and column["board_id"] != board_id)):
        raise NotFoundError("column", column_id)
    return column


def _require_task(db: BoardDatabase, uid: str, task_id: int) -> dict:
    task = db.get_task(task_id)
    if task is None or not db.owns_task(uid, task_id):
        raise NotFoundError("task", task_id)
    return task


def _sync_attachments(db: BoardDatabase, store: AttachmentStore, task_id: int) -> dict:
    """Record the files actually present in the task folder on the task."""
    return db.set_task_attachments(task_id, store.list_files(task_id))


# ---------------------------------------------------------------------------
# Health and metrics
# ---------------------------------------------------------------------------

@app.get("/healthz", response_model=HealthResponse)
def health_check(db: BoardDatabase = Depends(get_database), events: EventHub = Depends(get_hub)):
    try:
        database_connected = db.ping()
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        database_connected = False

    return HealthResponse(
        status="healthy" if database_connected else "degraded",
        database_connected=database_connected,
        active_sse_connections=events.connection_count(),
        timestamp=now_str(),
    )


@app.get("/api/metrics", response_model=MetricsResponse)
def get_performance_metrics(events: EventHub = Depends(get_hub)):
    return MetricsResponse(**performance_monitor.get_metrics(events))


# ---------------------------------------------------------------------------
# Boards
# ---------------------------------------------------------------------------

@app.get("/api/v1/boards", response_model=List[BoardOut])
def list_boards(uid: str = Depends(require_owner), db: BoardDatabase = Depends(get_database)):
    db.touch_owner(uid)
    return db.list_boards(uid)


@app.get("/api/v1/boards/{board_id}", response_model=BoardOut)
def get_board(board_id: int, uid: str = Depends(require_owner),
              db: BoardDatabase = Depends(get_database)):
    return _require_board(db, uid, board_id)


@app.post("/api/v1/boards", response_model=BoardOut, status_code=201)
def create_board(payload: BoardIn, uid: str = Depends(require_owner),
                 db: BoardDatabase = Depends(get_database),
                 events: EventHub = Depends(get_hub)):
    board = db.create_board(uid, payload.name)
    notify_owner(events, uid, EventType.BOARDS_CREATED)
    return board


@app.put("/api/v1/boards/reorder", status_code=204)
def reorder_boards(items: List[ReorderItem], uid: str = Depends(require_owner),
                   db: BoardDatabase = Depends(get_database),
                   events: EventHub = Depends(get_hub)):
    if db.reorder_boards(uid, [(item.id, item.position) for item in items]):
        notify_owner(events, uid, EventType.BOARDS_UPDATED)
    return Response(status_code=204)


@app.put("/api/v1/boards/{board_id}", response_model=BoardOut)
def rename_board(board_id: int, payload: BoardIn, uid: str = Depends(require_owner),
                 db: BoardDatabase = Depends(get_database),
                 events: EventHub = Depends(get_hub)):
    board = db.rename_board(uid, board_id, payload.name)
    notify_owner(events, uid, EventType.BOARDS_UPDATED)
    return board


@app.delete("/api/v1/boards/{board_id}", status_code=204)
def delete_board(board_id: int, uid: str = Depends(require_owner),
                 db: BoardDatabase = Depends(get_database),
                 store: AttachmentStore = Depends(get_attachments),
                 events: EventHub = Depends(get_hub)):
    task_ids = db.delete_board(uid, board_id)
    store.delete_task_folders(task_ids)
    notify_owner(events, uid, EventType.BOARDS_DELETED)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Columns
# ---------------------------------------------------------------------------

@app.get("/api/v1/boards/{board_id}/columns", response_model=List[ColumnOut])
def list_columns(board_id: int, uid: str = Depends(require_owner),
                 db: BoardDatabase = Depends(get_database)):
    _require_board(db, uid, board_id)
    return db.list_columns(board_id)


@app.get("/api/v1/boards/{board_id}/columns/{column_id}", response_model=ColumnOut)
def get_column(board_id: int, column_id: int, uid: str = Depends(require_owner),
               db: BoardDatabase = Depends(get_database)):
    return _require_column(db, uid, column_id, board_id)


@app.post("/api/v1/boards/{board_id}/columns", response_model=ColumnOut, status_code=201)
def create_column(board_id: int, payload: ColumnIn, uid: str = Depends(require_owner),
                  db: BoardDatabase = Depends(get_database),
                  events: EventHub = Depends(get_hub)):
    _require_board(db, uid, board_id)
    column = db.create_column(board_id, payload.name)
    notify_boards(events, [board_id], EventType.COLUMNS_CHANGED)
    return column


@app.put("/api/v1/boards/{board_id}/columns/move", status_code=204)
def move_column(board_id: int, payload: ColumnMove, uid: str = Depends(require_owner),
                db: BoardDatabase = Depends(get_database),
                events: EventHub = Depends(get_hub)):
    _require_column(db, uid, payload.column_id, board_id)
    result = db.move_column(payload.column_id, payload.target_position)
    if result["changed"]:
        notify_boards(events, [result["board_id"]], EventType.COLUMNS_CHANGED)
    return Response(status_code=204)


@app.put("/api/v1/boards/{board_id}/columns/{column_id}", response_model=ColumnOut)
def rename_column(board_id: int, column_id: int, payload: ColumnIn,
                  uid: str = Depends(require_owner),
                  db: BoardDatabase = Depends(get_database),
                  events: EventHub = Depends(get_hub)):
    _require_column(db, uid, column_id, board_id)
    column = db.rename_column(column_id, payload.name)
    notify_boards(events, [board_id], EventType.COLUMNS_CHANGED)
    return column


@app.delete("/api/v1/boards/{board_id}/columns/{column_id}", status_code=204)
def delete_column(board_id: int, column_id: int, uid: str = Depends(require_owner),
                  db: BoardDatabase = Depends(get_database),
                  store: AttachmentStore = Depends(get_attachments),
                  events: EventHub = Depends(get_hub)):
    _require_column(db, uid, column_id, board_id)
    result = db.delete_column(column_id)
    store.delete_task_folders(result["task_ids"])
    notify_boards(events, [result["board_id"]], EventType.COLUMNS_CHANGED)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

@app.get("/api/v1/tasks", response_model=List[TaskOut])
def list_all_tasks(uid: str = Depends(require_owner), db: BoardDatabase = Depends(get_database)):
    return db.list_tasks_for_owner(uid)


@app.get("/api/v1/tasks/column/{column_id}", response_model=List[TaskOut])
def list_column_tasks(column_id: int, uid: str = Depends(require_owner),
                      db: BoardDatabase = Depends(get_database)):
    _require_column(db, uid, column_id)
    return db.list_tasks(column_id)


@app.get("/api/v1/tasks/{task_id}", response_model=TaskOut)
def get_task(task_id: int, uid: str = Depends(require_owner),
             db: BoardDatabase = Depends(get_database)):
    return _require_task(db, uid, task_id)


@app.post("/api/v1/tasks", response_model=TaskOut, status_code=201)
def create_task(payload: TaskIn, uid: str = Depends(require_owner),
                db: BoardDatabase = Depends(get_database),
                events: EventHub = Depends(get_hub)):
    column = _require_column(db, uid, payload.column_id)
    task = db.create_task(
        payload.column_id, payload.title, payload.description, payload.completed,
        payload.due_date.isoformat() if payload.due_date else None,
    )
    notify_boards(events, [column["board_id"]], EventType.TASKS_CHANGED)
    return task


@app.put("/api/v1/tasks/reorder", status_code=204)
def reorder_tasks(items: List[ReorderItem], uid: str = Depends(require_owner),
                  db: BoardDatabase = Depends(get_database),
                  events: EventHub = Depends(get_hub)):
    for item in items:
        _require_task(db, uid, item.id)
    board_ids = db.reorder_tasks([(item.id, item.position) for item in items])
    notify_boards(events, board_ids, EventType.TASKS_CHANGED)
    return Response(status_code=204)


@app.put("/api/v1/tasks/move", status_code=204)
def move_task(payload: TaskMove, uid: str = Depends(require_owner),
              db: BoardDatabase = Depends(get_database),
              events: EventHub = Depends(get_hub)):
    _require_task(db, uid, payload.task_id)
    _require_column(db, uid, payload.target_column_id)
    result = db.move_task(payload.task_id, payload.target_column_id)
    if result["changed"]:
        notify_boards(events, result["board_ids"], EventType.TASKS_CHANGED)
    return Response(status_code=204)


@app.put("/api/v1/tasks/{task_id}", response_model=TaskOut)
def update_task(task_id: int, payload: TaskIn, uid: str = Depends(require_owner),
                db: BoardDatabase = Depends(get_database),
                events: EventHub = Depends(get_hub)):
    _require_task(db, uid, task_id)
    _require_column(db, uid, payload.column_id)
    result = db.update_task(
        task_id, payload.title, payload.description, payload.completed,
        payload.due_date.isoformat() if payload.due_date else None,
        column_id=payload.column_id,
    )
    notify_boards(events, result["board_ids"], EventType.TASKS_CHANGED)
    return result["task"]


@app.delete("/api/v1/tasks/column/{column_id}", status_code=204)
def delete_column_tasks(column_id: int, uid: str = Depends(require_owner),
                        db: BoardDatabase = Depends(get_database),
                        store: AttachmentStore = Depends(get_attachments),
                        events: EventHub = Depends(get_hub)):
    _require_column(db, uid, column_id)
    result = db.delete_tasks_in_column(column_id)
    store.delete_task_folders(result["task_ids"])
    notify_boards(events, [result["board_id"]], EventType.TASKS_CHANGED)
    return Response(status_code=204)


@app.delete("/api/v1/tasks/{task_id}", status_code=204)
def delete_task(task_id: int, uid: str = Depends(require_owner),
                db: BoardDatabase = Depends(get_database),
                store: AttachmentStore = Depends(get_attachments),
                events: EventHub = Depends(get_hub)):
    _require_task(db, uid, task_id)
    board_id = db.delete_task(task_id)
    store.delete_task_folder(task_id)
    notify_boards(events, [board_id], EventType.TASKS_CHANGED)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------

@app.put("/api/v1/tasks/{task_id}/attachments/{filename}", response_model=TaskOut)
async def upload_attachment(task_id: int, filename: str, request: Request,
                            uid: str = Depends(require_owner),
                            db: BoardDatabase = Depends(get_database),
                            store: AttachmentStore = Depends(get_attachments),
                            events: EventHub = Depends(get_hub)):
    """Store the raw request body as an attachment of the task."""
    await run_in_threadpool(_require_task, db, uid, task_id)
    data = await request.body()
    await run_in_threadpool(store.save, task_id, filename, data)
    task = await run_in_threadpool(_sync_attachments, db, store, task_id)
    notify_boards(events, [task["board_id"]], EventType.TASKS_CHANGED)
    return task


@app.get("/api/v1/tasks/{task_id}/attachments/{filename}")
def download_attachment(task_id: int, filename: str, uid: str = Depends(require_owner),
                        db: BoardDatabase = Depends(get_database),
                        store: AttachmentStore = Depends(get_attachments)):
    _require_task(db, uid, task_id)
    path = store.path_for(task_id, filename)
    if not path.is_file():
        raise HTTPException(status_code=404, detail="Attachment not found")
    return FileResponse(path, filename=path.name)


@app.delete("/api/v1/tasks/{task_id}/attachments/{filename}", response_model=TaskOut)
def delete_attachment(task_id: int, filename: str, uid: str = Depends(require_owner),
                      db: BoardDatabase = Depends(get_database),
                      store: AttachmentStore = Depends(get_attachments),
                      events: EventHub = Depends(get_hub)):
    _require_task(db, uid, task_id)
    store.delete(task_id, filename)
    task = _sync_attachments(db, store, task_id)
    notify_boards(events, [task["board_id"]], EventType.TASKS_CHANGED)
    return task


# ---------------------------------------------------------------------------
# Server-Sent Events
# ---------------------------------------------------------------------------

async def event_stream(connection: SseConnection):
    """
    Drain a subscriber connection into the HTTP response.

    Waiting happens on the event loop, so open streams never occupy the
    threadpool the REST endpoints run in. Starlette cancels this generator
    when the client goes away; the finally block then removes the connection
    from its registry.
    """
    try:
        async for frame in connection.frames():
            yield frame
    finally:
        connection.complete()


def _sse_response(connection: SseConnection) -> StreamingResponse:
    return StreamingResponse(
        event_stream(connection),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


def _resolve_uid(uid_param: Optional[str], uid_header: Optional[str]) -> Optional[str]:
    if uid_param is not None and uid_param.strip():
        return uid_param.strip()
    if uid_header is not None and uid_header.strip():
        return uid_header.strip()
    return None


@app.get("/api/v1/events")
def subscribe_global(uid: Optional[str] = Query(None),
                     x_client_id: Optional[str] = Header(None, alias="X-Client-Id"),
                     db: BoardDatabase = Depends(get_database),
                     events: EventHub = Depends(get_hub)):
    owner_uid = _resolve_uid(uid, x_client_id)
    if owner_uid is None:
        raise HTTPException(status_code=400, detail="uid required")
    db.touch_owner(owner_uid)
    return _sse_response(events.subscribe_global(owner_uid))


@app.get("/api/v1/events/board/{board_id}")
def subscribe_board(board_id: int, uid: Optional[str] = Query(None),
                    x_client_id: Optional[str] = Header(None, alias="X-Client-Id"),
                    db: BoardDatabase = Depends(get_database),
                    events: EventHub = Depends(get_hub)):
    owner_uid = _resolve_uid(uid, x_client_id)
    if owner_uid is not None and not db.owns_board(owner_uid, board_id):
        raise HTTPException(status_code=404, detail="Board not found")
    return _sse_response(events.subscribe_board(board_id))


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(CapacityExceededError)
async def capacity_handler(request, exc: CapacityExceededError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(InvalidNameError)
async def invalid_name_handler(request, exc: InvalidNameError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    """Global exception handler for unhandled errors."""
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("taskboard.api:app", host="0.0.0.0", port=8000, log_level="info")
