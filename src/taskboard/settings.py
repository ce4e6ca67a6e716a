"""Runtime configuration read from environment variables."""

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    database_path: str = "taskboard.db"
    upload_dir: str = "uploads"
    retention_days: int = 90
    heartbeat_interval: float = 25.0
    sse_reconnect_ms: int = 3000
    sse_max_pending: int = 256
    max_columns_per_board: int = 5

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment, falling back to defaults."""
        return cls(
            database_path=os.getenv("DATABASE_PATH", cls.database_path),
            upload_dir=os.getenv("UPLOAD_DIR", cls.upload_dir),
            retention_days=int(os.getenv("RETENTION_DAYS", cls.retention_days)),
            heartbeat_interval=float(os.getenv("HEARTBEAT_INTERVAL", cls.heartbeat_interval)),
            sse_reconnect_ms=int(os.getenv("SSE_RECONNECT_MS", cls.sse_reconnect_ms)),
            sse_max_pending=int(os.getenv("SSE_MAX_PENDING", cls.sse_max_pending)),
            max_columns_per_board=int(
                os.getenv("MAX_COLUMNS_PER_BOARD", cls.max_columns_per_board)
            ),
        )
