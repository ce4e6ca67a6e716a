"""
Pydantic models for task board API request/response validation.
"""

from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def _clean_name(value: str) -> str:
    if value is None or not value.strip():
        raise ValueError("Name cannot be empty")
    return value.strip()


class BoardIn(BaseModel):
    """Request model for creating or renaming a board."""
    name: str = Field(max_length=200)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        return _clean_name(v)


class ColumnIn(BaseModel):
    """Request model for creating or renaming a column."""
    name: str = Field(max_length=200)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        return _clean_name(v)


class TaskIn(BaseModel):
    """Request model for creating or updating a task."""
    title: str = Field(max_length=255)
    description: Optional[str] = Field(None, max_length=500)
    completed: bool = False
    due_date: Optional[date] = None
    column_id: int

    @field_validator("title")
    @classmethod
    def validate_title(cls, v):
        return _clean_name(v)


class ReorderItem(BaseModel):
    """One entry of a bulk reorder request."""
    id: int
    position: int


class ColumnMove(BaseModel):
    """Single column move; out-of-range targets are clamped."""
    column_id: int = Field(alias="kanbanColumnId")
    target_position: int = Field(alias="targetPosition")

    model_config = {"populate_by_name": True}


class TaskMove(BaseModel):
    """
    Cross-column task move. The task always lands at the tail of the target
    column; target_position is accepted for client compatibility and ignored.
    """
    task_id: int = Field(alias="taskId")
    target_column_id: int = Field(alias="targetColumnId")
    target_position: Optional[int] = Field(None, alias="targetPosition")

    model_config = {"populate_by_name": True}


class BoardOut(BaseModel):
    id: int
    name: str
    position: Optional[int]


class ColumnOut(BaseModel):
    id: int
    name: str
    position: Optional[int]
    board_id: int


class TaskOut(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    completed: bool
    position: Optional[int]
    due_date: Optional[str] = None
    created_at: str
    attachments: List[str] = []
    column_id: int
    board_id: int


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""
    status: str
    database_connected: bool
    active_sse_connections: int
    timestamp: str


class MetricsResponse(BaseModel):
    """Response model for performance metrics endpoint."""
    connections: Dict[str, Any]
    database: Dict[str, Any]
    retention: Dict[str, Any]
    system: Dict[str, Any]
