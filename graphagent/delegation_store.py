import logging
import random
import string
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import aiosqlite

from .db import Database, _json_dumps, _json_loads, to_iso, utc_now
from .schemas import AgentType, Delegation, TerminalStatus
from .streaming import (
    AGENT_DELEGATION_CREATED,
    AGENT_DELEGATION_DELETED,
    AGENT_DELEGATION_UPDATED,
    EventBus,
)

logger = logging.getLogger("uvicorn.error")

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_session_id() -> str:
    suffix = "".join(random.choices(_ID_ALPHABET, k=6))
    return f"delegation_{int(time.time() * 1000)}_{suffix}"


def _row_to_delegation(row: aiosqlite.Row) -> Delegation:
    data: Dict[str, Any] = dict(row)
    context = _json_loads(data.get("context"), [])
    data["context"] = [str(item) for item in context] if isinstance(context, list) else []
    data["agent_type"] = data.get("agent_type") or "worker"
    return Delegation(**data)


class DelegationLedger:
    """Durable record of delegations and their queued -> in_progress -> terminal lifecycle.

    Every state change is announced on the global event bus; the ledger never talks to the
    per-session stream broadcaster.
    """

    def __init__(self, db: Database, bus: Optional[EventBus] = None):
        self.db = db
        self.bus = bus

    async def _notify(self, event_type: str, delegation: Optional[Delegation]) -> None:
        if self.bus is None or delegation is None:
            return
        await self.bus.emit(event_type, {"delegation": delegation.model_dump(mode="json")})

    async def create(
        self,
        task: str,
        context: Optional[List[str]] = None,
        expected_outcome: Optional[str] = None,
        agent_type: AgentType = "worker",
    ) -> Delegation:
        session_id = new_session_id()
        now = utc_now()
        entries = [str(item) for item in context or []]
        row_id = await self.db.insert(
            "INSERT INTO agent_delegations(session_id, task, context, expected_outcome, status, agent_type, "
            "created_at, updated_at) VALUES (?,?,?,?,?,?,?,?)",
            (
                session_id,
                task,
                _json_dumps(entries),
                expected_outcome,
                "queued",
                agent_type,
                now,
                now,
            ),
        )
        delegation = Delegation(
            id=row_id,
            session_id=session_id,
            task=task,
            context=entries,
            expected_outcome=expected_outcome,
            status="queued",
            agent_type=agent_type,
            created_at=now,
            updated_at=now,
        )
        await self._notify(AGENT_DELEGATION_CREATED, delegation)
        return delegation

    async def get(self, session_id: str) -> Optional[Delegation]:
        row = await self.db.fetchone("SELECT * FROM agent_delegations WHERE session_id=?", (session_id,))
        return _row_to_delegation(row) if row else None

    async def mark_in_progress(self, session_id: str) -> Optional[Delegation]:
        changed = await self.db.execute(
            "UPDATE agent_delegations SET status='in_progress', updated_at=? WHERE session_id=? AND status='queued'",
            (utc_now(), session_id),
        )
        delegation = await self.get(session_id)
        if changed:
            await self._notify(AGENT_DELEGATION_UPDATED, delegation)
        return delegation

    async def touch(self, session_id: str) -> bool:
        changed = await self.db.execute(
            "UPDATE agent_delegations SET updated_at=? WHERE session_id=? AND status='in_progress'",
            (utc_now(), session_id),
        )
        return changed > 0

    async def complete(
        self,
        session_id: str,
        summary: str,
        status: TerminalStatus = "completed",
    ) -> Optional[Delegation]:
        """Move a live delegation to a terminal status. Terminal rows are left untouched."""
        if status not in ("completed", "failed"):
            raise ValueError(f"invalid terminal status: {status}")
        # A queued row passes through in_progress so observers never see a skipped state.
        await self.mark_in_progress(session_id)
        changed = await self.db.execute(
            "UPDATE agent_delegations SET status=?, summary=?, updated_at=? "
            "WHERE session_id=? AND status='in_progress'",
            (status, summary, utc_now(), session_id),
        )
        delegation = await self.get(session_id)
        if changed:
            await self._notify(AGENT_DELEGATION_UPDATED, delegation)
        elif delegation is not None:
            logger.info("Delegation %s already %s; completion ignored", session_id, delegation.status)
        return delegation

    async def list_recent(self, limit: int = 20) -> List[Delegation]:
        rows = await self.db.fetchall(
            "SELECT * FROM agent_delegations ORDER BY created_at DESC, id DESC LIMIT ?",
            (limit,),
        )
        return [_row_to_delegation(row) for row in rows]

    async def list_active(self, include_completed: bool = True, limit: int = 100) -> List[Delegation]:
        if include_completed:
            rows = await self.db.fetchall(
                "SELECT * FROM agent_delegations ORDER BY updated_at DESC, id DESC LIMIT ?",
                (limit,),
            )
        else:
            rows = await self.db.fetchall(
                "SELECT * FROM agent_delegations WHERE status IN ('queued','in_progress') "
                "ORDER BY updated_at DESC, id DESC LIMIT ?",
                (limit,),
            )
        return [_row_to_delegation(row) for row in rows]

    async def delete(self, session_id: str) -> bool:
        delegation = await self.get(session_id)
        changed = await self.db.execute("DELETE FROM agent_delegations WHERE session_id=?", (session_id,))
        if changed:
            await self._notify(AGENT_DELEGATION_DELETED, delegation)
        return changed > 0

    async def cleanup_stale_sessions(self, timeout_minutes: int = 15) -> List[str]:
        cutoff = to_iso(datetime.now(timezone.utc) - timedelta(minutes=timeout_minutes))
        rows = await self.db.fetchall(
            "SELECT session_id FROM agent_delegations WHERE status='in_progress' AND updated_at < ?",
            (cutoff,),
        )
        summary = f"Task timed out (exceeded {timeout_minutes} minutes)"
        reaped: List[str] = []
        for row in rows:
            session_id = row["session_id"]
            # Re-check the predicate so a run touched since the scan survives.
            changed = await self.db.execute(
                "UPDATE agent_delegations SET status='failed', summary=?, updated_at=? "
                "WHERE session_id=? AND status='in_progress' AND updated_at < ?",
                (summary, utc_now(), session_id, cutoff),
            )
            if changed:
                reaped.append(session_id)
                await self._notify(AGENT_DELEGATION_UPDATED, await self.get(session_id))
        if reaped:
            logger.info("Reaped %s stale delegation(s)", len(reaped))
        return reaped

    async def cleanup_stale(self, timeout_minutes: int = 15) -> int:
        return len(await self.cleanup_stale_sessions(timeout_minutes))
