"""
Positional Ordering Engine

Keeps the three nested collections of the board (boards of an owner, columns
of a board, tasks of a column) unique, contiguous and renumberable. The
ledger helpers at the top are pure; ReorderEngine applies them through an
open transaction cursor so every operation commits or aborts as a unit.

Positions are 0-based for every entity kind.
"""

import sqlite3
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .errors import NotFoundError

POSITION_BASE = 0

Member = Tuple[int, Optional[int]]


@dataclass(frozen=True)
class EntityKind:
    """Describes one ordered collection and the scope that groups it."""
    label: str
    table: str
    scope_column: str
    name_column: str
    scope_label: str
    scope_table: str
    scope_key: str


BOARDS = EntityKind(
    label="board",
    table="boards",
    scope_column="owner_uid",
    name_column="name",
    scope_label="owner",
    scope_table="owners",
    scope_key="uid",
)

COLUMNS = EntityKind(
    label="column",
    table="board_columns",
    scope_column="board_id",
    name_column="name",
    scope_label="board",
    scope_table="boards",
    scope_key="id",
)

TASKS = EntityKind(
    label="task",
    table="tasks",
    scope_column="column_id",
    name_column="title",
    scope_label="column",
    scope_table="board_columns",
    scope_key="id",
)


# ---------------------------------------------------------------------------
# Position ledger
# ---------------------------------------------------------------------------

def next_position(positions: Iterable[Optional[int]]) -> int:
    """Tail position for a scope: max + 1, or the base when the scope is empty."""
    present = [p for p in positions if p is not None]
    if not present:
        return POSITION_BASE
    return max(present) + 1


def clamp_position(target: int, other_count: int) -> int:
    """Clamp a requested position into [base, base + other_count]."""
    return max(POSITION_BASE, min(int(target), POSITION_BASE + other_count))


def sequential_positions(count: int) -> List[int]:
    return list(range(POSITION_BASE, POSITION_BASE + count))


def is_contiguous(positions: Iterable[Optional[int]]) -> bool:
    """True when positions are exactly {base, ..., base + n - 1}, each once."""
    values = list(positions)
    if any(p is None for p in values):
        return False
    return sorted(values) == sequential_positions(len(values))


def bulk_order(members: Sequence[Member], targets: Dict[int, int]) -> List[int]:
    """
    Final member order for a bulk reorder.

    Each member sorts by its client-supplied target when present, otherwise by
    its current position; ties go to the lower id. Members without any
    position sort last.
    """
    def sort_key(member: Member):
        member_id, position = member
        key = targets.get(member_id, position)
        return (key is None, key if key is not None else 0, member_id)

    return [member_id for member_id, _ in sorted(members, key=sort_key)]


def backfill_order(rows: Sequence[Tuple[int, Optional[str]]]) -> List[int]:
    """Legacy order: case-insensitive name, missing names last, then id."""
    def sort_key(row):
        member_id, name = row
        return (name is None, (name or "").casefold(), member_id)

    return [member_id for member_id, _ in sorted(rows, key=sort_key)]


def is_sequential(order: Sequence[int], positions: Dict[int, Optional[int]]) -> bool:
    """True when every id in order already sits at its sequential position."""
    return all(
        positions.get(member_id) == POSITION_BASE + index
        for index, member_id in enumerate(order)
    )


# ---------------------------------------------------------------------------
# Reorder engine
# ---------------------------------------------------------------------------

class ReorderEngine:
    """
    Generic ordering operations parameterized by EntityKind.

    Every method expects a cursor inside an open transaction; callers own
    BEGIN/COMMIT so that errors roll back all position writes of a call.
    """

    def members(self, cursor: sqlite3.Cursor, kind: EntityKind, scope_id) -> List[Member]:
        """Scope members as (id, position), ordered by position then id."""
        cursor.execute(f"""
            SELECT id, position FROM {kind.table}
            WHERE {kind.scope_column} = ?
            ORDER BY position IS NULL, position, id
        """, (scope_id,))
        return [(row[0], row[1]) for row in cursor.fetchall()]

    def scope_of(self, cursor: sqlite3.Cursor, kind: EntityKind, item_id: int) -> Tuple[object, Optional[int]]:
        """Return (scope_id, position) for an item or raise NotFoundError."""
        cursor.execute(
            f"SELECT {kind.scope_column}, position FROM {kind.table} WHERE id = ?",
            (item_id,)
        )
        row = cursor.fetchone()
        if row is None:
            raise NotFoundError(kind.label, item_id)
        return row[0], row[1]

    def require_scope(self, cursor: sqlite3.Cursor, kind: EntityKind, scope_id) -> None:
        cursor.execute(
            f"SELECT 1 FROM {kind.scope_table} WHERE {kind.scope_key} = ?",
            (scope_id,)
        )
        if cursor.fetchone() is None:
            raise NotFoundError(kind.scope_label, scope_id)

    def count(self, cursor: sqlite3.Cursor, kind: EntityKind, scope_id) -> int:
        cursor.execute(
            f"SELECT COUNT(*) FROM {kind.table} WHERE {kind.scope_column} = ?",
            (scope_id,)
        )
        return cursor.fetchone()[0]

    def append(self, cursor: sqlite3.Cursor, kind: EntityKind, scope_id) -> int:
        """Position a new member of scope_id should take."""
        cursor.execute(
            f"SELECT MAX(position) FROM {kind.table} WHERE {kind.scope_column} = ?",
            (scope_id,)
        )
        return next_position([cursor.fetchone()[0]])

    def move_within_scope(self, cursor: sqlite3.Cursor, kind: EntityKind,
                          item_id: int, target_position: int) -> bool:
        """
        Move an item to target_position inside its own scope.

        The target is clamped into range and the whole scope is renumbered
        from the base. Returns False, without writing, when the item already
        sits at the clamped target of a contiguous scope.
        """
        scope_id, _ = self.scope_of(cursor, kind, item_id)
        members = self.members(cursor, kind, scope_id)
        positions = dict(members)

        others = [member_id for member_id, _ in members if member_id != item_id]
        index = clamp_position(target_position, len(others)) - POSITION_BASE
        order = others[:index] + [item_id] + others[index:]

        if is_sequential(order, positions):
            return False

        self._write_order(cursor, kind, order, positions)
        return True

    def move_across_scope(self, cursor: sqlite3.Cursor, kind: EntityKind,
                          item_id: int, destination_scope_id) -> bool:
        """
        Append an item at the tail of another scope and close the gap it left.

        Moving into the current scope is a no-op and returns False.
        """
        source_scope_id, old_position = self.scope_of(cursor, kind, item_id)
        self.require_scope(cursor, kind, destination_scope_id)
        if source_scope_id == destination_scope_id:
            return False

        new_position = self.append(cursor, kind, destination_scope_id)
        cursor.execute(f"""
            UPDATE {kind.table} SET {kind.scope_column} = ?, position = ?
            WHERE id = ?
        """, (destination_scope_id, new_position, item_id))

        if old_position is not None:
            self._close_gap(cursor, kind, source_scope_id, old_position)
        return True

    def delete_and_compact(self, cursor: sqlite3.Cursor, kind: EntityKind, item_id: int):
        """Delete an item and shift every later member down by one. Returns the scope id."""
        scope_id, position = self.scope_of(cursor, kind, item_id)
        cursor.execute(f"DELETE FROM {kind.table} WHERE id = ?", (item_id,))
        if position is not None:
            self._close_gap(cursor, kind, scope_id, position)
        return scope_id

    def bulk_reorder(self, cursor: sqlite3.Cursor, kind: EntityKind,
                     assignments: Iterable[Tuple[int, int]],
                     allowed_scopes: Optional[Set] = None) -> List:
        """
        Apply client-supplied target positions across one or more scopes.

        Unmentioned members keep their relative order. Each affected scope is
        written in two phases: first every position moves into the disjoint
        negative range, then final sequential positions are written, so no
        two members ever share a position.

        Returns the ids of the scopes whose order changed.
        """
        targets: Dict[int, int] = {}
        for item_id, position in assignments:
            targets[int(item_id)] = int(position)
        if not targets:
            return []

        scopes: List = []
        for item_id in targets:
            scope_id, _ = self.scope_of(cursor, kind, item_id)
            if allowed_scopes is not None and scope_id not in allowed_scopes:
                raise NotFoundError(kind.label, item_id)
            if scope_id not in scopes:
                scopes.append(scope_id)

        changed = []
        for scope_id in scopes:
            members = self.members(cursor, kind, scope_id)
            positions = dict(members)
            order = bulk_order(members, targets)
            if is_sequential(order, positions):
                continue

            cursor.execute(f"""
                UPDATE {kind.table} SET position = -1 - position
                WHERE {kind.scope_column} = ? AND position IS NOT NULL
            """, (scope_id,))
            for index, member_id in enumerate(order):
                cursor.execute(
                    f"UPDATE {kind.table} SET position = ? WHERE id = ?",
                    (POSITION_BASE + index, member_id)
                )
            changed.append(scope_id)
        return changed

    def backfill_if_missing(self, cursor: sqlite3.Cursor, kind: EntityKind, scope_id) -> bool:
        """
        Assign positions to a scope holding legacy rows without one.

        The whole scope is renumbered by case-insensitive name. Returns True
        when anything was written.
        """
        cursor.execute(f"""
            SELECT id, position, {kind.name_column} FROM {kind.table}
            WHERE {kind.scope_column} = ?
        """, (scope_id,))
        rows = cursor.fetchall()
        if not any(row[1] is None for row in rows):
            return False

        order = backfill_order([(row[0], row[2]) for row in rows])
        self._write_order(cursor, kind, order, {row[0]: row[1] for row in rows})
        return True

    def is_scope_contiguous(self, cursor: sqlite3.Cursor, kind: EntityKind, scope_id) -> bool:
        return is_contiguous(position for _, position in self.members(cursor, kind, scope_id))

    def _write_order(self, cursor: sqlite3.Cursor, kind: EntityKind,
                     order: Sequence[int], positions: Dict[int, Optional[int]]) -> None:
        for index, member_id in enumerate(order):
            target = POSITION_BASE + index
            if positions.get(member_id) != target:
                cursor.execute(
                    f"UPDATE {kind.table} SET position = ? WHERE id = ?",
                    (target, member_id)
                )

    def _close_gap(self, cursor: sqlite3.Cursor, kind: EntityKind, scope_id, position: int) -> None:
        cursor.execute(f"""
            UPDATE {kind.table} SET position = position - 1
            WHERE {kind.scope_column} = ? AND position > ?
        """, (scope_id, position))
