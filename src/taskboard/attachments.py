"""
Local filesystem storage for task attachments.

Files live under <base_dir>/<task_id>/<sanitized filename>. Names are
sanitized and resolved paths checked before anything touches the disk.
"""

import logging
import re
import shutil
from pathlib import Path
from typing import Iterable, List

from .errors import InvalidNameError

logger = logging.getLogger(__name__)

MAX_FILENAME_LENGTH = 255
_CONTROL_CHARS = re.compile(r"[\r\n\t]")
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def sanitize_filename(name: str) -> str:
    """
    Reduce a client-supplied filename to a safe basename.

    Raises:
        InvalidNameError: For empty names and the special names "." and ".."
    """
    if name is None:
        raise InvalidNameError("Invalid filename")
    base = re.split(r"[\\/]", name)[-1]
    base = _CONTROL_CHARS.sub("_", base)
    base = _UNSAFE_CHARS.sub("_", base)
    base = base[:MAX_FILENAME_LENGTH]
    if base in (".", "..") or not base.strip():
        raise InvalidNameError("Invalid filename")
    return base


class AttachmentStore:
    """Stores attachment files per task id."""

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def task_dir(self, task_id: int) -> Path:
        return self.base_dir / str(int(task_id))

    def path_for(self, task_id: int, filename: str) -> Path:
        """Resolved path of an attachment; rejects anything escaping the task folder."""
        folder = self.task_dir(task_id)
        path = (folder / sanitize_filename(filename)).resolve()
        if path.parent != folder:
            raise InvalidNameError(f"Path traversal rejected: {filename!r}")
        return path

    def save(self, task_id: int, filename: str, data: bytes) -> str:
        path = self.path_for(task_id, filename)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.info(f"Stored attachment {path.name} for task {task_id} ({len(data)} bytes)")
        return path.name

    def delete(self, task_id: int, filename: str) -> str:
        """Remove one attachment; drops the task folder once it is empty."""
        path = self.path_for(task_id, filename)
        path.unlink(missing_ok=True)
        folder = path.parent
        if folder.exists() and not any(folder.iterdir()):
            folder.rmdir()
        return path.name

    def delete_task_folder(self, task_id: int) -> None:
        """Best-effort recursive removal of a task's attachment folder."""
        folder = self.task_dir(task_id)
        if not folder.exists():
            return
        try:
            shutil.rmtree(folder)
        except OSError as e:
            logger.warning(f"Failed to delete attachment folder for task {task_id}: {e}")

    def delete_task_folders(self, task_ids: Iterable[int]) -> None:
        for task_id in task_ids:
            self.delete_task_folder(task_id)

    def list_files(self, task_id: int) -> List[str]:
        folder = self.task_dir(task_id)
        if not folder.exists():
            return []
        return sorted(p.name for p in folder.iterdir() if p.is_file())
