import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiosqlite


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def utc_now() -> str:
    return to_iso(datetime.now(timezone.utc))


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def _json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except ValueError:
        return default


def _node_from_row(row: aiosqlite.Row) -> Dict[str, Any]:
    node = dict(row)
    node["dimensions"] = _json_loads(node.get("dimensions"), [])
    node["metadata"] = _json_loads(node.get("metadata"), {})
    return node


def _edge_from_row(row: aiosqlite.Row) -> Dict[str, Any]:
    edge = dict(row)
    edge["context"] = _json_loads(edge.get("context"), {})
    return edge


class Database:
    """Async SQLite store for delegation rows and the knowledge graph they operate on."""

    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS agent_delegations(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL UNIQUE,
                    task TEXT NOT NULL,
                    context TEXT,
                    expected_outcome TEXT,
                    status TEXT NOT NULL DEFAULT 'queued',
                    summary TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_agent_delegations_status
                    ON agent_delegations(status, updated_at);
                CREATE TABLE IF NOT EXISTS nodes(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    description TEXT,
                    content TEXT,
                    link TEXT,
                    dimensions TEXT,
                    chunk_status TEXT,
                    chunk TEXT,
                    metadata TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS edges(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    from_node_id INTEGER NOT NULL,
                    to_node_id INTEGER NOT NULL,
                    context TEXT,
                    source TEXT,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_edges_pair ON edges(from_node_id, to_node_id);
                """
            )

            async def column_exists(table: str, column: str) -> bool:
                cursor = await db.execute(f"PRAGMA table_info({table})")
                rows = await cursor.fetchall()
                await cursor.close()
                return any(row[1] == column for row in rows)

            async def ensure_column(table: str, column: str, decl: str) -> None:
                if not await column_exists(table, column):
                    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")

            await ensure_column("agent_delegations", "agent_type", "TEXT NOT NULL DEFAULT 'worker'")
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> int:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(query, params)
            await db.commit()
            changed = cursor.rowcount
            await cursor.close()
            return changed

    async def insert(self, query: str, params: Tuple[Any, ...] = ()) -> int:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(query, params)
            await db.commit()
            row_id = cursor.lastrowid
            await cursor.close()
            return int(row_id)

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    # Nodes

    async def insert_node(
        self,
        title: str,
        *,
        description: Optional[str] = None,
        content: Optional[str] = None,
        link: Optional[str] = None,
        dimensions: Optional[List[str]] = None,
        chunk: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        now = utc_now()
        node_id = await self.insert(
            "INSERT INTO nodes(title, description, content, link, dimensions, chunk_status, chunk, metadata, "
            "created_at, updated_at) VALUES (?,?,?,?,?,?,?,?,?,?)",
            (
                title,
                description,
                content,
                link,
                _json_dumps(dimensions or []),
                "chunked" if chunk else None,
                chunk,
                _json_dumps(metadata or {}),
                now,
                now,
            ),
        )
        node = await self.get_node(node_id)
        assert node is not None
        return node

    async def get_node(self, node_id: int) -> Optional[Dict[str, Any]]:
        row = await self.fetchone("SELECT * FROM nodes WHERE id=?", (node_id,))
        return _node_from_row(row) if row else None

    async def get_nodes(self, node_ids: Iterable[int]) -> List[Dict[str, Any]]:
        ids = [int(nid) for nid in node_ids]
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        rows = await self.fetchall(f"SELECT * FROM nodes WHERE id IN ({placeholders})", tuple(ids))
        by_id = {row["id"]: _node_from_row(row) for row in rows}
        return [by_id[nid] for nid in ids if nid in by_id]

    async def update_node(
        self,
        node_id: int,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        append_content: Optional[str] = None,
        dimensions: Optional[List[str]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Apply a partial update; content is appended, never replaced."""
        node = await self.get_node(node_id)
        if not node:
            return None
        content = node.get("content") or ""
        if append_content:
            content = f"{content}\n\n{append_content}".strip() if content else append_content
        await self.execute(
            "UPDATE nodes SET title=?, description=?, content=?, dimensions=?, updated_at=? WHERE id=?",
            (
                title if title is not None else node["title"],
                description if description is not None else node.get("description"),
                content or None,
                _json_dumps(dimensions if dimensions is not None else node.get("dimensions") or []),
                utc_now(),
                node_id,
            ),
        )
        return await self.get_node(node_id)

    async def search_nodes(
        self,
        query: str = "",
        *,
        dimensions: Optional[List[str]] = None,
        limit: int = 10,
    ) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if query.strip():
            like = f"%{query.strip()}%"
            clauses.append("(title LIKE ? OR description LIKE ? OR content LIKE ?)")
            params.extend([like, like, like])
        for dim in dimensions or []:
            clauses.append("dimensions LIKE ?")
            params.append(f'%"{dim}"%')
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self.fetchall(
            f"SELECT * FROM nodes {where} ORDER BY updated_at DESC LIMIT ?",
            (*params, limit),
        )
        return [_node_from_row(row) for row in rows]

    async def search_chunks(self, query: str, limit: int = 5) -> List[Dict[str, Any]]:
        terms = [t for t in query.lower().split() if len(t) > 2]
        if not terms:
            return []
        clause = " OR ".join("lower(chunk) LIKE ?" for _ in terms)
        rows = await self.fetchall(
            f"SELECT id, title, chunk FROM nodes WHERE chunk IS NOT NULL AND ({clause})",
            tuple(f"%{t}%" for t in terms),
        )
        scored = []
        for row in rows:
            text = (row["chunk"] or "").lower()
            score = sum(text.count(t) for t in terms)
            scored.append((score, {"node_id": row["id"], "title": row["title"], "text": row["chunk"]}))
        scored.sort(key=lambda item: item[0], reverse=True)
        return [item for _, item in scored[:limit]]

    # Edges

    async def insert_edge(
        self,
        from_node_id: int,
        to_node_id: int,
        *,
        context: Optional[Dict[str, Any]] = None,
        source: str = "agent",
    ) -> Dict[str, Any]:
        edge_id = await self.insert(
            "INSERT INTO edges(from_node_id, to_node_id, context, source, created_at) VALUES (?,?,?,?,?)",
            (from_node_id, to_node_id, _json_dumps(context or {}), source, utc_now()),
        )
        row = await self.fetchone("SELECT * FROM edges WHERE id=?", (edge_id,))
        assert row is not None
        return _edge_from_row(row)

    async def edge_exists(self, from_node_id: int, to_node_id: int) -> bool:
        row = await self.fetchone(
            "SELECT 1 FROM edges WHERE from_node_id=? AND to_node_id=? LIMIT 1",
            (from_node_id, to_node_id),
        )
        return row is not None

    async def list_edges(self, node_id: Optional[int] = None, limit: int = 25) -> List[Dict[str, Any]]:
        if node_id is None:
            rows = await self.fetchall("SELECT * FROM edges ORDER BY id DESC LIMIT ?", (limit,))
        else:
            rows = await self.fetchall(
                "SELECT * FROM edges WHERE from_node_id=? OR to_node_id=? ORDER BY id DESC LIMIT ?",
                (node_id, node_id, limit),
            )
        return [_edge_from_row(row) for row in rows]
