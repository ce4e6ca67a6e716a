"""
Command line entry point for the task board backend.

    taskboard serve --port 8000
    taskboard import-board board.yaml --uid <owner>
"""

import logging
import os
import sys

import click

from .database import BoardDatabase
from .errors import BoardError
from .importer import import_board_from_file
from .settings import Settings

logger = logging.getLogger(__name__)


@click.group()
@click.option("--verbose", is_flag=True, help="Enable debug logging")
def main(verbose: bool):
    """Task board backend with SSE dirty events."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Interface to bind")
@click.option("--port", default=8000, show_default=True, type=int, help="Port to bind")
@click.option("--db-path", default=None, help="SQLite database path (overrides DATABASE_PATH)")
def serve(host: str, port: int, db_path):
    """Run the HTTP API and SSE streams with uvicorn."""
    import uvicorn

    if db_path:
        os.environ["DATABASE_PATH"] = db_path
    click.echo(f"Task board API on http://{host}:{port}")
    uvicorn.run("taskboard.api:app", host=host, port=port, log_level="info")


@main.command("import-board")
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--uid", required=True, help="Owner identity receiving the board")
@click.option("--db-path", default=None, help="SQLite database path (overrides DATABASE_PATH)")
def import_board_command(file_path: str, uid: str, db_path):
    """Create a board with its columns and tasks from a YAML file."""
    settings = Settings.from_env()
    db = BoardDatabase(db_path or settings.database_path, settings.max_columns_per_board)
    try:
        stats = import_board_from_file(db, uid, file_path)
    except (ValueError, BoardError) as e:
        click.echo(f"Import failed: {e}", err=True)
        sys.exit(1)
    finally:
        db.close()

    click.echo(
        f"Imported board {stats['board_id']}: "
        f"{stats['columns_created']} columns, {stats['tasks_created']} tasks"
    )


if __name__ == "__main__":
    main()
