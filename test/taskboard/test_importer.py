"""
Tests for the YAML board importer.
"""

from unittest.mock import patch

import pytest
import yaml

from taskboard.errors import CapacityExceededError
from taskboard.importer import import_board, import_board_from_file
from taskboard.ordering import COLUMNS, TASKS

from conftest import OWNER, positions, titles


@pytest.fixture
def board_yaml():
    return {
        "name": "Sprint 12",
        "columns": [
            {"name": "To do", "tasks": [
                {"title": "Write notes", "description": "release"},
                {"title": "Tag build", "due_date": "2026-11-01"},
            ]},
            {"name": "Done", "tasks": [{"title": "Plan", "completed": True}]},
            {"name": "Later"},
        ],
    }


class TestImportBoard:

    def test_creates_ordered_board(self, db, board_yaml):
        stats = import_board(db, OWNER, board_yaml)

        assert stats["columns_created"] == 3
        assert stats["tasks_created"] == 3
        columns = db.list_columns(stats["board_id"])
        assert [c["name"] for c in columns] == ["To do", "Done", "Later"]
        assert positions(columns) == [0, 1, 2]

        todo = db.list_tasks(columns[0]["id"])
        assert titles(todo) == ["Write notes", "Tag build"]
        assert positions(todo) == [0, 1]
        assert todo[1]["due_date"] == "2026-11-01"
        assert db.list_tasks(columns[1]["id"])[0]["completed"] is True
        assert db.verify_scope(COLUMNS, stats["board_id"])
        assert db.verify_scope(TASKS, columns[2]["id"])

    def test_normalizes_before_writing(self, db):
        data = {"name": " Trimmed ", "columns": [
            {"name": "Col", "tasks": [{"title": " Task ", "due_date": 20261101}]},
        ]}
        with patch.object(db, "import_board", wraps=db.import_board) as writer:
            import_board(db, OWNER, data)

        writer.assert_called_once_with(OWNER, "Trimmed", [
            ("Col", [{"title": "Task", "description": None, "completed": False, "due_date": "20261101"}]),
        ])

    def test_appends_after_existing_boards(self, db, board_yaml):
        db.create_board(OWNER, "Existing")
        stats = import_board(db, OWNER, board_yaml)
        assert db.get_board(stats["board_id"])["position"] == 1

    def test_too_many_columns(self, db):
        data = {"name": "Wide", "columns": [{"name": f"C{i}"} for i in range(6)]}
        with pytest.raises(CapacityExceededError):
            import_board(db, OWNER, data)
        assert db.list_boards(OWNER) == []

    def test_malformed_task_rolls_back(self, db):
        data = {"name": "Broken", "columns": [
            {"name": "Ok", "tasks": [{"title": "fine"}]},
            {"name": "Bad", "tasks": [{"description": "no title"}]},
        ]}
        with pytest.raises(ValueError):
            import_board(db, OWNER, data)
        assert db.list_boards(OWNER) == []

    @pytest.mark.parametrize("data", [None, [], {"columns": []}, {"name": "x", "columns": "nope"}])
    def test_invalid_documents(self, db, data):
        with pytest.raises(ValueError):
            import_board(db, OWNER, data)

    def test_from_file(self, db, tmp_path, board_yaml):
        path = tmp_path / "board.yaml"
        path.write_text(yaml.safe_dump(board_yaml), encoding="utf-8")

        stats = import_board_from_file(db, OWNER, str(path))

        assert db.get_board(stats["board_id"])["name"] == "Sprint 12"
