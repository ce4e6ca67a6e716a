"""
Exception hierarchy for the task board core.

Every error raised inside a database transaction aborts that transaction
wholesale, so no partial renumbering is ever persisted.
"""


class BoardError(Exception):
    """Base class for task board failures."""


class NotFoundError(BoardError, LookupError):
    """A referenced board, column, task or owner scope does not exist."""

    def __init__(self, kind: str, identifier):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class CapacityExceededError(BoardError):
    """A scope already holds its maximum number of members."""

    def __init__(self, kind: str, limit: int):
        self.kind = kind
        self.limit = limit
        super().__init__(f"Maximum number of {kind} ({limit}) reached")


class InvalidNameError(BoardError, ValueError):
    """Attachment filename is unusable or escapes its folder."""
