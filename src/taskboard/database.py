"""
Task Board Database Layer

SQLite storage for owners, boards, columns and tasks. Every mutating call runs
in one explicit transaction that performs the ordering writes of the
ReorderEngine, so readers never observe a scope with duplicate or missing
positions.

One cross-thread connection in autocommit mode is shared by all request
threads; an RLock serializes statements and transactions on it.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .backfill import PositionBackfill
from .errors import CapacityExceededError, NotFoundError
from .monitoring import timed_query
from .ordering import BOARDS, COLUMNS, TASKS, EntityKind, ReorderEngine

logger = logging.getLogger(__name__)

DEFAULT_MAX_COLUMNS = 5


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def now_str() -> str:
    return format_timestamp(datetime.now(timezone.utc))


class BoardDatabase:
    """
    SQLite database holding the owner -> board -> column -> task hierarchy.

    Features:
    - WAL mode for concurrent read/write access
    - All-or-nothing transactions around every ordering change
    - Lazy one-time backfill of legacy rows without positions
    - ON DELETE CASCADE from owners down to tasks
    """

    def __init__(self, db_path: str, max_columns_per_board: int = DEFAULT_MAX_COLUMNS):
        """
        Args:
            db_path: Path to SQLite database file
            max_columns_per_board: Column capacity of a single board
        """
        self.db_path = Path(db_path)
        self.max_columns_per_board = max_columns_per_board
        self.engine = ReorderEngine()
        self.backfill = PositionBackfill()
        self._connection_lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_database()

    def _initialize_database(self) -> None:
        try:
            # Autocommit mode; transactions are opened explicitly
            self._connection = sqlite3.connect(
                str(self.db_path),
                isolation_level=None,
                check_same_thread=False
            )
            self._connection.row_factory = sqlite3.Row

            cursor = self._connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.execute("PRAGMA foreign_keys=ON")

            self._create_schema()
        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to initialize database at {self.db_path}: {e}")

    def _create_schema(self) -> None:
        cursor = self._connection.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS owners (
                uid TEXT PRIMARY KEY,
                created_at TEXT NOT NULL,
                last_active_at TEXT NOT NULL
            )
        """)

        # position stays nullable so legacy rows can be backfilled lazily
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS boards (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                position INTEGER,
                owner_uid TEXT NOT NULL REFERENCES owners(uid) ON DELETE CASCADE,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS board_columns (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                position INTEGER,
                board_id INTEGER NOT NULL REFERENCES boards(id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS tasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                description TEXT,
                completed INTEGER NOT NULL DEFAULT 0,
                position INTEGER,
                due_date TEXT,
                created_at TEXT NOT NULL,
                attachments TEXT NOT NULL DEFAULT '[]',
                column_id INTEGER NOT NULL REFERENCES board_columns(id) ON DELETE CASCADE
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_boards_owner ON boards(owner_uid, position)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_columns_board ON board_columns(board_id, position)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tasks_column ON tasks(column_id, position)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_owners_last_active ON owners(last_active_at)")

    @contextmanager
    def _transaction(self):
        """Explicit transaction holding the connection lock for its whole duration."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            try:
                yield cursor
                cursor.execute("COMMIT")
            except Exception:
                cursor.execute("ROLLBACK")
                raise

    @contextmanager
    def _reading(self):
        with self._connection_lock:
            yield self._connection.cursor()

    def _ensure_positions(self, kind: EntityKind, scope_id) -> None:
        """
        Backfill a scope once per process. Must be called outside any
        transaction: lock order is scope lock, then connection lock.
        """
        def run():
            with self._transaction() as cursor:
                return self.engine.backfill_if_missing(cursor, kind, scope_id)

        self.backfill.ensure((kind.label, scope_id), run)

    def _scope_id(self, kind: EntityKind, item_id: int):
        with self._reading() as cursor:
            return self.engine.scope_of(cursor, kind, item_id)[0]

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _board_dict(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "name": row["name"],
            "position": row["position"],
            "owner_uid": row["owner_uid"],
            "created_at": row["created_at"],
        }

    @staticmethod
    def _column_dict(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "name": row["name"],
            "position": row["position"],
            "board_id": row["board_id"],
        }

    @staticmethod
    def _task_dict(row: sqlite3.Row) -> Dict[str, Any]:
        try:
            attachments = json.loads(row["attachments"] or "[]")
        except (TypeError, json.JSONDecodeError):
            attachments = []
        return {
            "id": row["id"],
            "title": row["title"],
            "description": row["description"],
            "completed": bool(row["completed"]),
            "position": row["position"],
            "due_date": row["due_date"],
            "created_at": row["created_at"],
            "attachments": attachments,
            "column_id": row["column_id"],
            "board_id": row["board_id"],
        }

    _TASK_SELECT = """
        SELECT t.id, t.title, t.description, t.completed, t.position, t.due_date,
               t.created_at, t.attachments, t.column_id, c.board_id
        FROM tasks t
        JOIN board_columns c ON c.id = t.column_id
    """

    # ------------------------------------------------------------------
    # Owners
    # ------------------------------------------------------------------

    def _upsert_owner(self, cursor: sqlite3.Cursor, uid: str) -> None:
        current_time_str = now_str()
        cursor.execute("""
            INSERT INTO owners (uid, created_at, last_active_at) VALUES (?, ?, ?)
            ON CONFLICT(uid) DO UPDATE SET last_active_at = excluded.last_active_at
        """, (uid, current_time_str, current_time_str))

    def touch_owner(self, uid: str) -> None:
        """Record activity for an owner, creating the account on first sight."""
        with self._transaction() as cursor:
            self._upsert_owner(cursor, uid)

    def get_owner(self, uid: str) -> Optional[Dict[str, Any]]:
        with self._reading() as cursor:
            cursor.execute("SELECT uid, created_at, last_active_at FROM owners WHERE uid = ?", (uid,))
            row = cursor.fetchone()
            return dict(row) if row else None

    def list_inactive_owners(self, cutoff: datetime) -> List[str]:
        with self._reading() as cursor:
            cursor.execute(
                "SELECT uid FROM owners WHERE last_active_at < ? ORDER BY uid",
                (format_timestamp(cutoff),)
            )
            return [row["uid"] for row in cursor.fetchall()]

    def delete_owner(self, uid: str) -> List[int]:
        """
        Delete an owner and, by cascade, all of their boards, columns and tasks.

        Returns:
            Ids of the deleted tasks, for attachment cleanup
        """
        with self._transaction() as cursor:
            self.engine.require_scope(cursor, BOARDS, uid)
            cursor.execute("""
                SELECT t.id FROM tasks t
                JOIN board_columns c ON c.id = t.column_id
                JOIN boards b ON b.id = c.board_id
                WHERE b.owner_uid = ?
            """, (uid,))
            task_ids = [row["id"] for row in cursor.fetchall()]
            cursor.execute("SELECT id FROM boards WHERE owner_uid = ?", (uid,))
            board_ids = [row["id"] for row in cursor.fetchall()]
            cursor.execute("""
                SELECT c.id FROM board_columns c JOIN boards b ON b.id = c.board_id
                WHERE b.owner_uid = ?
            """, (uid,))
            column_ids = [row["id"] for row in cursor.fetchall()]
            cursor.execute("DELETE FROM owners WHERE uid = ?", (uid,))

        self.backfill.forget((BOARDS.label, uid))
        for board_id in board_ids:
            self.backfill.forget((COLUMNS.label, board_id))
        for column_id in column_ids:
            self.backfill.forget((TASKS.label, column_id))
        return task_ids

    # ------------------------------------------------------------------
    # Boards
    # ------------------------------------------------------------------

    @timed_query("list_boards")
    def list_boards(self, uid: str) -> List[Dict[str, Any]]:
        self._ensure_positions(BOARDS, uid)
        with self._reading() as cursor:
            cursor.execute("""
                SELECT id, name, position, owner_uid, created_at FROM boards
                WHERE owner_uid = ?
                ORDER BY position IS NULL, position, id
            """, (uid,))
            return [self._board_dict(row) for row in cursor.fetchall()]

    def get_board(self, board_id: int, uid: Optional[str] = None) -> Optional[Dict[str, Any]]:
        with self._reading() as cursor:
            cursor.execute(
                "SELECT id, name, position, owner_uid, created_at FROM boards WHERE id = ?",
                (board_id,)
            )
            row = cursor.fetchone()
        if row is None or (uid is not None and row["owner_uid"] != uid):
            return None
        return self._board_dict(row)

    def owns_board(self, uid: str, board_id: int) -> bool:
        return self.get_board(board_id, uid) is not None

    def _require_owned_board(self, cursor: sqlite3.Cursor, uid: str, board_id: int) -> None:
        owner_uid, _ = self.engine.scope_of(cursor, BOARDS, board_id)
        if owner_uid != uid:
            raise NotFoundError(BOARDS.label, board_id)

    def create_board(self, uid: str, name: str) -> Dict[str, Any]:
        """Create a board at the tail of the owner's board list."""
        self._ensure_positions(BOARDS, uid)
        with self._transaction() as cursor:
            self._upsert_owner(cursor, uid)
            position = self.engine.append(cursor, BOARDS, uid)
            cursor.execute("""
                INSERT INTO boards (name, position, owner_uid, created_at) VALUES (?, ?, ?, ?)
            """, (name, position, uid, now_str()))
            board_id = cursor.lastrowid

        logger.info(f"Board {board_id} created for {uid} at position {position}")
        return self.get_board(board_id)

    def rename_board(self, uid: str, board_id: int, name: str) -> Dict[str, Any]:
        with self._transaction() as cursor:
            self._require_owned_board(cursor, uid, board_id)
            cursor.execute("UPDATE boards SET name = ? WHERE id = ?", (name, board_id))
        return self.get_board(board_id)

    @timed_query("reorder_boards")
    def reorder_boards(self, uid: str, items: Iterable[Tuple[int, int]]) -> bool:
        """
        Bulk reorder of an owner's boards from (board_id, position) pairs.

        Raises:
            NotFoundError: If any board is missing or owned by someone else
        """
        self._ensure_positions(BOARDS, uid)
        with self._transaction() as cursor:
            changed = self.engine.bulk_reorder(cursor, BOARDS, items, allowed_scopes={uid})
        return bool(changed)

    def delete_board(self, uid: str, board_id: int) -> List[int]:
        """
        Delete a board with its columns and tasks, then compact the owner's boards.

        Returns:
            Ids of the deleted tasks, for attachment cleanup
        """
        self._ensure_positions(BOARDS, uid)
        with self._transaction() as cursor:
            self._require_owned_board(cursor, uid, board_id)
            cursor.execute("SELECT id FROM board_columns WHERE board_id = ?", (board_id,))
            column_ids = [row["id"] for row in cursor.fetchall()]
            cursor.execute("""
                SELECT t.id FROM tasks t JOIN board_columns c ON c.id = t.column_id
                WHERE c.board_id = ?
            """, (board_id,))
            task_ids = [row["id"] for row in cursor.fetchall()]
            self.engine.delete_and_compact(cursor, BOARDS, board_id)

        self.backfill.forget((COLUMNS.label, board_id))
        for column_id in column_ids:
            self.backfill.forget((TASKS.label, column_id))
        logger.info(f"Board {board_id} deleted ({len(column_ids)} columns, {len(task_ids)} tasks)")
        return task_ids

    # ------------------------------------------------------------------
    # Columns
    # ------------------------------------------------------------------

    def list_columns(self, board_id: int) -> List[Dict[str, Any]]:
        with self._reading() as cursor:
            self.engine.require_scope(cursor, COLUMNS, board_id)
        self._ensure_positions(COLUMNS, board_id)
        with self._reading() as cursor:
            cursor.execute("""
                SELECT id, name, position, board_id FROM board_columns
                WHERE board_id = ?
                ORDER BY position IS NULL, position, id
            """, (board_id,))
            return [self._column_dict(row) for row in cursor.fetchall()]

    def get_column(self, column_id: int) -> Optional[Dict[str, Any]]:
        with self._reading() as cursor:
            cursor.execute(
                "SELECT id, name, position, board_id FROM board_columns WHERE id = ?",
                (column_id,)
            )
            row = cursor.fetchone()
            return self._column_dict(row) if row else None

    def create_column(self, board_id: int, name: str) -> Dict[str, Any]:
        """
        Create a column at the tail of a board.

        Raises:
            NotFoundError: If the board does not exist
            CapacityExceededError: If the board already holds the maximum of columns
        """
        self._ensure_positions(COLUMNS, board_id)
        with self._transaction() as cursor:
            self.engine.require_scope(cursor, COLUMNS, board_id)
            if self.engine.count(cursor, COLUMNS, board_id) >= self.max_columns_per_board:
                raise CapacityExceededError("columns", self.max_columns_per_board)
            position = self.engine.append(cursor, COLUMNS, board_id)
            cursor.execute(
                "INSERT INTO board_columns (name, position, board_id) VALUES (?, ?, ?)",
                (name, position, board_id)
            )
            column_id = cursor.lastrowid
        return self.get_column(column_id)

    def rename_column(self, column_id: int, name: str) -> Dict[str, Any]:
        with self._transaction() as cursor:
            self.engine.scope_of(cursor, COLUMNS, column_id)
            cursor.execute("UPDATE board_columns SET name = ? WHERE id = ?", (name, column_id))
        return self.get_column(column_id)

    @timed_query("move_column")
    def move_column(self, column_id: int, target_position: int) -> Dict[str, Any]:
        """
        Move a column inside its board; out-of-range targets are clamped.

        Returns:
            Dict with board_id and whether the order changed
        """
        board_id = self._scope_id(COLUMNS, column_id)
        self._ensure_positions(COLUMNS, board_id)
        with self._transaction() as cursor:
            changed = self.engine.move_within_scope(cursor, COLUMNS, column_id, target_position)
            board_id, _ = self.engine.scope_of(cursor, COLUMNS, column_id)
        return {"board_id": board_id, "changed": changed}

    def delete_column(self, column_id: int) -> Dict[str, Any]:
        """
        Delete a column with its tasks and compact the board's columns.

        Returns:
            Dict with board_id and the deleted task ids
        """
        board_id = self._scope_id(COLUMNS, column_id)
        self._ensure_positions(COLUMNS, board_id)
        with self._transaction() as cursor:
            cursor.execute("SELECT id FROM tasks WHERE column_id = ?", (column_id,))
            task_ids = [row["id"] for row in cursor.fetchall()]
            board_id = self.engine.delete_and_compact(cursor, COLUMNS, column_id)

        self.backfill.forget((TASKS.label, column_id))
        return {"board_id": board_id, "task_ids": task_ids}

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def list_tasks(self, column_id: int) -> List[Dict[str, Any]]:
        with self._reading() as cursor:
            self.engine.require_scope(cursor, TASKS, column_id)
        self._ensure_positions(TASKS, column_id)
        with self._reading() as cursor:
            cursor.execute(self._TASK_SELECT + """
                WHERE t.column_id = ?
                ORDER BY t.position IS NULL, t.position, t.id
            """, (column_id,))
            return [self._task_dict(row) for row in cursor.fetchall()]

    @timed_query("list_tasks_for_owner")
    def list_tasks_for_owner(self, uid: str) -> List[Dict[str, Any]]:
        """All tasks of an owner ordered by board, column and task position."""
        with self._reading() as cursor:
            cursor.execute(self._TASK_SELECT + """
                JOIN boards b ON b.id = c.board_id
                WHERE b.owner_uid = ?
                ORDER BY b.position, b.id, c.position, c.id, t.position, t.id
            """, (uid,))
            return [self._task_dict(row) for row in cursor.fetchall()]

    def get_task(self, task_id: int) -> Optional[Dict[str, Any]]:
        with self._reading() as cursor:
            cursor.execute(self._TASK_SELECT + " WHERE t.id = ?", (task_id,))
            row = cursor.fetchone()
            return self._task_dict(row) if row else None

    def owns_column(self, uid: str, column_id: int) -> bool:
        with self._reading() as cursor:
            cursor.execute("""
                SELECT 1 FROM board_columns c JOIN boards b ON b.id = c.board_id
                WHERE c.id = ? AND b.owner_uid = ?
            """, (column_id, uid))
            return cursor.fetchone() is not None

    def owns_task(self, uid: str, task_id: int) -> bool:
        with self._reading() as cursor:
            cursor.execute("""
                SELECT 1 FROM tasks t
                JOIN board_columns c ON c.id = t.column_id
                JOIN boards b ON b.id = c.board_id
                WHERE t.id = ? AND b.owner_uid = ?
            """, (task_id, uid))
            return cursor.fetchone() is not None

    def _board_of_column(self, cursor: sqlite3.Cursor, column_id: int) -> int:
        return self.engine.scope_of(cursor, COLUMNS, column_id)[0]

    def create_task(self, column_id: int, title: str, description: Optional[str] = None,
                    completed: bool = False, due_date: Optional[str] = None) -> Dict[str, Any]:
        """Create a task at the tail of a column."""
        self._ensure_positions(TASKS, column_id)
        with self._transaction() as cursor:
            self.engine.require_scope(cursor, TASKS, column_id)
            position = self.engine.append(cursor, TASKS, column_id)
            cursor.execute("""
                INSERT INTO tasks (title, description, completed, position, due_date,
                                   created_at, column_id)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (title, description, int(completed), position, due_date, now_str(), column_id))
            task_id = cursor.lastrowid
        return self.get_task(task_id)

    def update_task(self, task_id: int, title: str, description: Optional[str] = None,
                    completed: bool = False, due_date: Optional[str] = None,
                    column_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Update task content. A different column_id moves the task to the tail
        of that column in the same transaction.

        Returns:
            Dict with the updated task and the ids of every board touched
        """
        source_column_id = self._scope_id(TASKS, task_id)
        self._ensure_positions(TASKS, source_column_id)
        if column_id is not None:
            self._ensure_positions(TASKS, column_id)

        with self._transaction() as cursor:
            self.engine.scope_of(cursor, TASKS, task_id)
            cursor.execute("""
                UPDATE tasks SET title = ?, description = ?, completed = ?, due_date = ?
                WHERE id = ?
            """, (title, description, int(completed), due_date, task_id))
            board_ids = [self._board_of_column(cursor, source_column_id)]
            if column_id is not None and self.engine.move_across_scope(cursor, TASKS, task_id, column_id):
                destination_board_id = self._board_of_column(cursor, column_id)
                if destination_board_id not in board_ids:
                    board_ids.append(destination_board_id)

        return {"task": self.get_task(task_id), "board_ids": board_ids}

    @timed_query("move_task")
    def move_task(self, task_id: int, column_id: int) -> Dict[str, Any]:
        """
        Move a task to the tail of another column.

        Returns:
            Dict with whether anything changed and the ids of every board touched
        """
        source_column_id = self._scope_id(TASKS, task_id)
        self._ensure_positions(TASKS, source_column_id)
        self._ensure_positions(TASKS, column_id)

        with self._transaction() as cursor:
            source_column_id, _ = self.engine.scope_of(cursor, TASKS, task_id)
            changed = self.engine.move_across_scope(cursor, TASKS, task_id, column_id)
            board_ids = [self._board_of_column(cursor, source_column_id)]
            destination_board_id = self._board_of_column(cursor, column_id)
            if destination_board_id not in board_ids:
                board_ids.append(destination_board_id)

        return {"changed": changed, "board_ids": board_ids if changed else []}

    @timed_query("reorder_tasks")
    def reorder_tasks(self, items: Iterable[Tuple[int, int]]) -> List[int]:
        """
        Bulk reorder of tasks from (task_id, position) pairs, possibly spanning
        several columns.

        Returns:
            Ids of the boards whose task order changed
        """
        items = [(int(task_id), int(position)) for task_id, position in items]
        for column_id in {self._scope_id(TASKS, task_id) for task_id, _ in items}:
            self._ensure_positions(TASKS, column_id)

        with self._transaction() as cursor:
            changed_columns = self.engine.bulk_reorder(cursor, TASKS, items)
            board_ids = []
            for column_id in changed_columns:
                board_id = self._board_of_column(cursor, column_id)
                if board_id not in board_ids:
                    board_ids.append(board_id)
        return board_ids

    def delete_task(self, task_id: int) -> int:
        """Delete a task and compact its column. Returns the board id."""
        column_id = self._scope_id(TASKS, task_id)
        self._ensure_positions(TASKS, column_id)
        with self._transaction() as cursor:
            column_id = self.engine.delete_and_compact(cursor, TASKS, task_id)
            return self._board_of_column(cursor, column_id)

    def delete_tasks_in_column(self, column_id: int) -> Dict[str, Any]:
        with self._transaction() as cursor:
            board_id = self._board_of_column(cursor, column_id)
            cursor.execute("SELECT id FROM tasks WHERE column_id = ?", (column_id,))
            task_ids = [row["id"] for row in cursor.fetchall()]
            cursor.execute("DELETE FROM tasks WHERE column_id = ?", (column_id,))
        return {"board_id": board_id, "task_ids": task_ids}

    def set_task_attachments(self, task_id: int, filenames: List[str]) -> Dict[str, Any]:
        with self._transaction() as cursor:
            self.engine.scope_of(cursor, TASKS, task_id)
            cursor.execute(
                "UPDATE tasks SET attachments = ? WHERE id = ?",
                (json.dumps(list(filenames)), task_id)
            )
        return self.get_task(task_id)

    # ------------------------------------------------------------------
    # Bulk import
    # ------------------------------------------------------------------

    def import_board(self, uid: str, name: str,
                     columns: List[Tuple[str, List[Dict[str, Any]]]]) -> Dict[str, Any]:
        """
        Create a board with its columns and tasks in one transaction.

        Args:
            uid: Owner identity
            name: Board name
            columns: (column name, task dicts) pairs in display order; task dicts
                carry title, description, completed and due_date

        Returns:
            Dict with the new board id and creation statistics

        Raises:
            CapacityExceededError: If more columns are given than a board may hold
        """
        if len(columns) > self.max_columns_per_board:
            raise CapacityExceededError("columns", self.max_columns_per_board)

        stats = {"board_id": None, "columns_created": 0, "tasks_created": 0}
        self._ensure_positions(BOARDS, uid)

        with self._transaction() as cursor:
            self._upsert_owner(cursor, uid)
            cursor.execute("""
                INSERT INTO boards (name, position, owner_uid, created_at) VALUES (?, ?, ?, ?)
            """, (name, self.engine.append(cursor, BOARDS, uid), uid, now_str()))
            board_id = cursor.lastrowid
            stats["board_id"] = board_id

            for column_name, tasks in columns:
                cursor.execute(
                    "INSERT INTO board_columns (name, position, board_id) VALUES (?, ?, ?)",
                    (column_name, self.engine.append(cursor, COLUMNS, board_id), board_id)
                )
                column_id = cursor.lastrowid
                stats["columns_created"] += 1

                for task in tasks:
                    cursor.execute("""
                        INSERT INTO tasks (title, description, completed, position, due_date,
                                           created_at, column_id)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                    """, (
                        task["title"],
                        task.get("description"),
                        int(bool(task.get("completed", False))),
                        self.engine.append(cursor, TASKS, column_id),
                        task.get("due_date"),
                        now_str(),
                        column_id,
                    ))
                    stats["tasks_created"] += 1

        return stats

    # ------------------------------------------------------------------
    # Invariant checks
    # ------------------------------------------------------------------

    def verify_scope(self, kind: EntityKind, scope_id) -> bool:
        """True when the scope's positions are exactly 0..n-1."""
        with self._reading() as cursor:
            return self.engine.is_scope_contiguous(cursor, kind, scope_id)

    def ping(self) -> bool:
        with self._reading() as cursor:
            cursor.execute("SELECT 1")
            return cursor.fetchone()[0] == 1

    def close(self):
        """Close database connection."""
        with self._connection_lock:
            if self._connection:
                self._connection.close()
                self._connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
