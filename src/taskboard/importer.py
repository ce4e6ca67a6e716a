"""
YAML Board Importer

Creates a complete board (columns and their tasks) from a YAML document in a
single transaction. Positions are appended exactly as interactive creation
would assign them, and the column capacity of a board is enforced.

Expected structure:

    name: Sprint 12
    columns:
      - name: To do
        tasks:
          - title: Write release notes
            description: Optional text
            completed: false
            due_date: 2026-11-01
"""

import logging
from typing import Any, Dict, List, Tuple

import yaml

from .database import BoardDatabase

logger = logging.getLogger(__name__)


def _require_text(data: Dict[str, Any], key: str, where: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{where} requires a non-empty '{key}'")
    return value.strip()


def _parse_task(task_data: Any) -> Dict[str, Any]:
    if not isinstance(task_data, dict):
        raise ValueError("Each task must be a mapping")
    due_date = task_data.get("due_date")
    return {
        "title": _require_text(task_data, "title", "Task"),
        "description": task_data.get("description"),
        "completed": bool(task_data.get("completed", False)),
        "due_date": str(due_date) if due_date is not None else None,
    }


def import_board(db: BoardDatabase, uid: str, yaml_data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Import one board for an owner.

    The whole document is validated before anything is written, then the
    board is created in a single database transaction.

    Args:
        db: BoardDatabase instance
        uid: Owner identity
        yaml_data: Parsed YAML board structure

    Returns:
        Dict with the new board id and creation statistics

    Raises:
        ValueError: For malformed structure
        CapacityExceededError: If more columns are given than a board may hold
    """
    if not isinstance(yaml_data, dict):
        raise ValueError("Board document must be a mapping")
    board_name = _require_text(yaml_data, "name", "Board")

    columns_data = yaml_data.get("columns") or []
    if not isinstance(columns_data, list):
        raise ValueError("YAML 'columns' must be a list")

    columns: List[Tuple[str, List[Dict[str, Any]]]] = []
    for column_data in columns_data:
        if not isinstance(column_data, dict):
            raise ValueError("Each column must be a mapping")
        column_name = _require_text(column_data, "name", "Column")
        tasks = column_data.get("tasks") or []
        if not isinstance(tasks, list):
            raise ValueError(f"Tasks of column '{column_name}' must be a list")
        columns.append((column_name, [_parse_task(task) for task in tasks]))

    stats = db.import_board(uid, board_name, columns)
    logger.info(
        f"Imported board '{board_name}' for {uid}: "
        f"{stats['columns_created']} columns, {stats['tasks_created']} tasks"
    )
    return stats


def import_board_from_file(db: BoardDatabase, uid: str, file_path: str) -> Dict[str, Any]:
    """Read a YAML file and import it as a board."""
    with open(file_path, "r", encoding="utf-8") as handle:
        yaml_data = yaml.safe_load(handle)
    return import_board(db, uid, yaml_data)
