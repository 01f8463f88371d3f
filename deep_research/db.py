import asyncio
import json
import uuid
import weakref
from typing import Any, List, Optional, Tuple

from .schemas import KnowledgeEntry, OrchestrationResult, ResearchPlan, utc_iso

import aiosqlite


class SessionNotFound(KeyError):
    """No research session is stored under the requested id."""


class Database:
    def __init__(self, path: str):
        self.path = path
        # Locks live only while a writer holds or awaits them.
        self._session_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS research_sessions(
                    id TEXT PRIMARY KEY,
                    query TEXT,
                    status TEXT,
                    plan_json TEXT,
                    result_json TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS knowledge_entries(
                    id TEXT,
                    session_id TEXT,
                    content TEXT,
                    sources_json TEXT,
                    relevance REAL,
                    timestamp TEXT,
                    PRIMARY KEY (session_id, id)
                );
                CREATE TABLE IF NOT EXISTS events(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT,
                    seq INTEGER,
                    event_type TEXT,
                    payload_json TEXT,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_knowledge_session ON knowledge_entries(session_id);
                CREATE INDEX IF NOT EXISTS idx_events_session ON events(session_id, seq);
                """
            )
            await db.commit()

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[session_id] = lock
        return lock

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> int:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount

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

    def _session_row(self, row: aiosqlite.Row) -> dict:
        return {
            "id": row["id"],
            "query": row["query"],
            "status": row["status"],
            "plan": json.loads(row["plan_json"]) if row["plan_json"] else None,
            "result": json.loads(row["result_json"]) if row["result_json"] else None,
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    async def create_session(self, query: str, plan: ResearchPlan) -> dict:
        session_id = f"session_{uuid.uuid4().hex}"
        now = utc_iso()
        await self.execute(
            "INSERT INTO research_sessions(id, query, status, plan_json, result_json, created_at, updated_at) "
            "VALUES (?,?,?,?,?,?,?)",
            (session_id, query, "planning", plan.model_dump_json(), None, now, now),
        )
        return await self.get_session(session_id)

    async def update_session(
        self,
        session_id: str,
        *,
        status: Optional[str] = None,
        plan: Optional[ResearchPlan] = None,
        result: Optional[OrchestrationResult] = None,
    ) -> dict:
        """Apply the given fields; writes to one session are serialised, last writer wins."""
        async with self._lock_for(session_id):
            sets = ["updated_at=?"]
            params: List[Any] = [utc_iso()]
            if status is not None:
                sets.append("status=?")
                params.append(status)
            if plan is not None:
                sets.append("plan_json=?")
                params.append(plan.model_dump_json())
            if result is not None:
                sets.append("result_json=?")
                params.append(result.model_dump_json())
            params.append(session_id)
            changed = await self.execute(
                f"UPDATE research_sessions SET {', '.join(sets)} WHERE id=?", tuple(params)
            )
            if not changed:
                raise SessionNotFound(session_id)
        return await self.get_session(session_id)

    async def get_session(self, session_id: str) -> dict:
        row = await self.fetchone(
            "SELECT id, query, status, plan_json, result_json, created_at, updated_at "
            "FROM research_sessions WHERE id=?",
            (session_id,),
        )
        if not row:
            raise SessionNotFound(session_id)
        return self._session_row(row)

    async def list_sessions(self, limit: int = 50) -> List[dict]:
        rows = await self.fetchall(
            "SELECT id, query, status, created_at, updated_at FROM research_sessions "
            "ORDER BY created_at DESC LIMIT ?",
            (limit,),
        )
        return [
            {
                "id": row["id"],
                "query": row["query"],
                "status": row["status"],
                "created_at": row["created_at"],
                "updated_at": row["updated_at"],
            }
            for row in rows
        ]

    async def add_knowledge(self, session_id: str, entry: KnowledgeEntry) -> dict:
        async with self._lock_for(session_id):
            await self.execute(
                "INSERT OR REPLACE INTO knowledge_entries(id, session_id, content, sources_json, relevance, timestamp) "
                "VALUES (?,?,?,?,?,?)",
                (
                    entry.id,
                    session_id,
                    entry.content,
                    json.dumps([source.model_dump() for source in entry.sources]),
                    entry.relevance,
                    entry.timestamp,
                ),
            )
        return entry.model_copy(update={"session_id": session_id}).model_dump()

    async def get_knowledge(self, session_id: str) -> List[KnowledgeEntry]:
        rows = await self.fetchall(
            "SELECT id, session_id, content, sources_json, relevance, timestamp FROM knowledge_entries "
            "WHERE session_id=? ORDER BY relevance DESC, timestamp ASC",
            (session_id,),
        )
        return [
            KnowledgeEntry(
                id=row["id"],
                session_id=row["session_id"],
                content=row["content"],
                sources=json.loads(row["sources_json"] or "[]"),
                relevance=row["relevance"],
                timestamp=row["timestamp"],
            )
            for row in rows
        ]

    async def next_event_seq(self, session_id: str) -> int:
        row = await self.fetchone("SELECT MAX(seq) as max_seq FROM events WHERE session_id=?", (session_id,))
        max_seq = row["max_seq"] if row and row["max_seq"] is not None else 0
        return int(max_seq) + 1

    async def add_event(self, session_id: str, event_type: str, payload: dict) -> dict:
        async with self._lock_for(f"events:{session_id}"):
            seq = await self.next_event_seq(session_id)
            created_at = utc_iso()
            await self.execute(
                "INSERT INTO events(session_id, seq, event_type, payload_json, created_at) VALUES (?,?,?,?,?)",
                (session_id, seq, event_type, json.dumps(payload), created_at),
            )
        return {
            "session_id": session_id,
            "seq": seq,
            "event_type": event_type,
            "payload": payload,
            "created_at": created_at,
        }

    async def list_events(self, session_id: str, after_seq: int = 0) -> List[dict]:
        rows = await self.fetchall(
            "SELECT seq, event_type, payload_json, created_at FROM events WHERE session_id=? AND seq>? ORDER BY seq ASC",
            (session_id, after_seq),
        )
        return [
            {
                "session_id": session_id,
                "seq": row["seq"],
                "event_type": row["event_type"],
                "payload": json.loads(row["payload_json"] or "{}"),
                "created_at": row["created_at"],
            }
            for row in rows
        ]
