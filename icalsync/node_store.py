from __future__ import annotations

import asyncio
import secrets
import sqlite3
import threading
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol, Sequence, Union

from icalsync.records import RecordBlock


Order = Union[int, str]

_UID_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_uid() -> str:
    return "".join(secrets.choice(_UID_ALPHABET) for _ in range(9))


class StoreError(Exception):
    pass


class NodeNotFoundError(StoreError):
    """The node (or parent) does not exist, or is not visible yet."""


class LocationExistsError(StoreError):
    """A location with this path already exists."""


@dataclass
class StoreNode:
    id: str
    text: str
    children: list["StoreNode"] = field(default_factory=list)


class NodeStore(Protocol):
    """Async CRUD boundary over a hierarchical node store."""

    async def get_children(self, location_id: str) -> list[StoreNode]: ...

    async def get_location_id(self, path: str) -> Optional[str]: ...

    async def list_locations_with_prefix(self, prefix: str) -> list[str]: ...

    async def create_location(self, path: str, initial_tree: Optional[Sequence[RecordBlock]] = None) -> str: ...

    async def create_node(self, parent_id: str, order: Order, block: RecordBlock) -> str: ...

    async def update_node(self, node_id: str, text: str) -> None: ...

    async def delete_node(self, node_id: str) -> None: ...


class SqliteNodeStore:
    """SQLite implementation of :class:`NodeStore`.

    Locations are parentless nodes with a unique ``path``. Blocking SQL runs
    on a worker thread via ``asyncio.to_thread``. The same file also keeps
    the history of sync runs.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS nodes (
            id TEXT PRIMARY KEY,
            parent_id TEXT,
            path TEXT UNIQUE,
            text TEXT NOT NULL DEFAULT '',
            position INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_nodes_parent ON nodes(parent_id, position);

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            events_synced INTEGER NOT NULL,
            failed_sources INTEGER NOT NULL,
            failed_locations INTEGER NOT NULL,
            created INTEGER NOT NULL,
            updated INTEGER NOT NULL,
            properties_changed INTEGER NOT NULL DEFAULT 0,
            deleted INTEGER NOT NULL
        );
        """
        with self._lock:
            with closing(self._connect()) as conn:
                conn.executescript(schema_sql)

    # -- synchronous primitives -------------------------------------------

    def _node_exists(self, conn: sqlite3.Connection, node_id: str) -> bool:
        row = conn.execute("SELECT 1 FROM nodes WHERE id = ?", (node_id,)).fetchone()
        return row is not None

    def _children_sync(self, conn: sqlite3.Connection, parent_id: str) -> list[StoreNode]:
        rows = conn.execute(
            """
            SELECT id, text
            FROM nodes
            WHERE parent_id = ?
            ORDER BY position, rowid
            """,
            (parent_id,),
        ).fetchall()
        return [
            StoreNode(id=row["id"], text=row["text"], children=self._children_sync(conn, row["id"]))
            for row in rows
        ]

    def get_children_sync(self, location_id: str) -> list[StoreNode]:
        with self._lock:
            with closing(self._connect()) as conn:
                return self._children_sync(conn, location_id)

    def get_location_id_sync(self, path: str) -> Optional[str]:
        with self._lock:
            with closing(self._connect()) as conn:
                row = conn.execute("SELECT id FROM nodes WHERE path = ?", (path,)).fetchone()
        return str(row["id"]) if row else None

    def list_locations_with_prefix_sync(self, prefix: str) -> list[str]:
        with self._lock:
            with closing(self._connect()) as conn:
                rows = conn.execute(
                    """
                    SELECT path
                    FROM nodes
                    WHERE path IS NOT NULL AND substr(path, 1, ?) = ?
                    ORDER BY path
                    """,
                    (len(prefix), prefix),
                ).fetchall()
        return [str(row["path"]) for row in rows]

    def _insert_tree(self, conn: sqlite3.Connection, parent_id: str, position: int, block: RecordBlock) -> str:
        node_id = generate_uid()
        now = _utc_now()
        conn.execute(
            """
            INSERT INTO nodes(id, parent_id, path, text, position, created_at, updated_at)
            VALUES (?, ?, NULL, ?, ?, ?, ?)
            """,
            (node_id, parent_id, block.text, position, now, now),
        )
        for index, child in enumerate(block.children):
            self._insert_tree(conn, node_id, index, child)
        return node_id

    def create_location_sync(self, path: str, initial_tree: Optional[Sequence[RecordBlock]] = None) -> str:
        location_id = generate_uid()
        now = _utc_now()
        with self._lock:
            with closing(self._connect()) as conn, conn:
                try:
                    conn.execute(
                        """
                        INSERT INTO nodes(id, parent_id, path, text, position, created_at, updated_at)
                        VALUES (?, NULL, ?, ?, 0, ?, ?)
                        """,
                        (location_id, path, path, now, now),
                    )
                except sqlite3.IntegrityError as exc:
                    raise LocationExistsError(f"Location {path!r} already exists") from exc
                for index, block in enumerate(initial_tree or []):
                    self._insert_tree(conn, location_id, index, block)
        return location_id

    def create_node_sync(self, parent_id: str, order: Order, block: RecordBlock) -> str:
        with self._lock:
            with closing(self._connect()) as conn, conn:
                if not self._node_exists(conn, parent_id):
                    raise NodeNotFoundError(f"Parent {parent_id!r} not found")
                row = conn.execute(
                    "SELECT COALESCE(MAX(position), -1) AS last FROM nodes WHERE parent_id = ?",
                    (parent_id,),
                ).fetchone()
                last = int(row["last"]) + 1
                if order == "last":
                    position = last
                else:
                    position = max(0, min(int(order), last))
                    conn.execute(
                        "UPDATE nodes SET position = position + 1 WHERE parent_id = ? AND position >= ?",
                        (parent_id, position),
                    )
                return self._insert_tree(conn, parent_id, position, block)

    def update_node_sync(self, node_id: str, text: str) -> None:
        with self._lock:
            with closing(self._connect()) as conn, conn:
                cursor = conn.execute(
                    "UPDATE nodes SET text = ?, updated_at = ? WHERE id = ?",
                    (text, _utc_now(), node_id),
                )
                if cursor.rowcount == 0:
                    raise NodeNotFoundError(f"Node {node_id!r} not found")

    def delete_node_sync(self, node_id: str) -> None:
        with self._lock:
            with closing(self._connect()) as conn, conn:
                if not self._node_exists(conn, node_id):
                    raise NodeNotFoundError(f"Node {node_id!r} not found")
                conn.execute(
                    """
                    WITH RECURSIVE subtree(id) AS (
                        SELECT ?
                        UNION ALL
                        SELECT nodes.id FROM nodes JOIN subtree ON nodes.parent_id = subtree.id
                    )
                    DELETE FROM nodes WHERE id IN (SELECT id FROM subtree)
                    """,
                    (node_id,),
                )

    # -- async boundary ---------------------------------------------------

    async def get_children(self, location_id: str) -> list[StoreNode]:
        return await asyncio.to_thread(self.get_children_sync, location_id)

    async def get_location_id(self, path: str) -> Optional[str]:
        return await asyncio.to_thread(self.get_location_id_sync, path)

    async def list_locations_with_prefix(self, prefix: str) -> list[str]:
        return await asyncio.to_thread(self.list_locations_with_prefix_sync, prefix)

    async def create_location(self, path: str, initial_tree: Optional[Sequence[RecordBlock]] = None) -> str:
        return await asyncio.to_thread(self.create_location_sync, path, initial_tree)

    async def create_node(self, parent_id: str, order: Order, block: RecordBlock) -> str:
        return await asyncio.to_thread(self.create_node_sync, parent_id, order, block)

    async def update_node(self, node_id: str, text: str) -> None:
        await asyncio.to_thread(self.update_node_sync, node_id, text)

    async def delete_node(self, node_id: str) -> None:
        await asyncio.to_thread(self.delete_node_sync, node_id)

    # -- sync run history -------------------------------------------------

    def start_sync_run(self, *, trigger: str, message: str = "running") -> int:
        with self._lock:
            with closing(self._connect()) as conn, conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(
                        run_at, trigger, status, message, duration_ms, events_synced,
                        failed_sources, failed_locations, created, updated, deleted
                    )
                    VALUES (?, ?, 'running', ?, 0, 0, 0, 0, 0, 0, 0)
                    """,
                    (_utc_now(), trigger, message),
                )
                return int(cursor.lastrowid)

    def finish_sync_run(self, *, run_id: int, result: Any) -> None:
        with self._lock:
            with closing(self._connect()) as conn, conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, message = ?, duration_ms = ?, events_synced = ?, failed_sources = ?,
                        failed_locations = ?, created = ?, updated = ?, properties_changed = ?, deleted = ?
                    WHERE id = ?
                    """,
                    (
                        str(result.status),
                        str(result.message),
                        int(result.duration_ms),
                        int(result.events_synced),
                        int(result.failed_sources),
                        int(result.failed_locations),
                        int(result.created),
                        int(result.updated),
                        int(result.properties_changed),
                        int(result.deleted),
                        int(run_id),
                    ),
                )

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with closing(self._connect()) as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, message, duration_ms, events_synced,
                           failed_sources, failed_locations, created, updated, properties_changed, deleted
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]
