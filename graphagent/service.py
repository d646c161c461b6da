import asyncio
import logging
from typing import Any, Dict, List, Optional

from .capsule import FocusState, build_capsule, split_context
from .classifier import TaskClassifier
from .config import AppSettings
from .db import Database
from .delegation_store import DelegationLedger
from .errors import DelegationError
from .executor import PlannerExecutor, UsageRecorder, WorkerExecutor
from .llm import ChatClient
from .schemas import AgentType, Delegation, ExecutionResult
from .streaming import DelegationStreamBroadcaster, EventBus
from .tavily import TavilyClient
from .tools import ToolContext, build_registry

logger = logging.getLogger("uvicorn.error")


class LinkedStopEvent(asyncio.Event):
    """Stop signal for a nested run: set when either it or its parent's signal is set."""

    def __init__(self, parent: Optional[asyncio.Event] = None):
        super().__init__()
        self.parent = parent

    def is_set(self) -> bool:
        return super().is_set() or (self.parent is not None and self.parent.is_set())


class DelegationService:
    """Wires the ledger, broadcaster and executors together and tracks in-process runs."""

    def __init__(
        self,
        db: Database,
        llm: ChatClient,
        web: TavilyClient,
        settings: AppSettings,
        *,
        bus: Optional[EventBus] = None,
        broadcaster: Optional[DelegationStreamBroadcaster] = None,
        classifier: Optional[TaskClassifier] = None,
        usage_recorder: Optional[UsageRecorder] = None,
    ):
        self.db = db
        self.settings = settings
        self.ledger = DelegationLedger(db, bus)
        self.broadcaster = broadcaster or DelegationStreamBroadcaster()
        self.registry = build_registry(db, web, delegate=self.delegate_to_worker)
        self.planner = PlannerExecutor(
            llm, self.ledger, self.broadcaster, settings, self.registry, db, classifier, usage_recorder
        )
        self.worker = WorkerExecutor(llm, self.ledger, self.broadcaster, settings, self.registry, db, usage_recorder)
        self.run_tasks: Dict[str, asyncio.Task] = {}
        self.stop_events: Dict[str, asyncio.Event] = {}

    def apply_settings(self, settings: AppSettings) -> None:
        self.settings = settings
        self.planner.settings = settings
        self.worker.settings = settings

    def executor_for(self, agent_type: AgentType):
        return self.planner if agent_type == "planner" else self.worker

    async def resolve_focus(self, node_ids: List[int], active_id: Optional[int] = None) -> Optional[FocusState]:
        ids = list(dict.fromkeys(node_ids))
        if active_id is not None and active_id not in ids:
            ids.append(active_id)
        if not ids:
            return None
        return FocusState(nodes=await self.db.get_nodes(ids), active_id=active_id)

    async def create_delegation(
        self,
        task: str,
        context: Optional[List[str]] = None,
        expected_outcome: Optional[str] = None,
        agent_type: AgentType = "planner",
        focus: Optional[FocusState] = None,
    ) -> Delegation:
        entries = list(context or [])
        references, _ = split_context(entries)
        if focus is not None or references:
            _, entries = await build_capsule(focus, entries, self.db.get_nodes)
        return await self.ledger.create(task, entries, expected_outcome, agent_type)

    async def execute(
        self,
        delegation: Delegation,
        *,
        workflow_key: Optional[str] = None,
        workflow_node_id: Optional[int] = None,
        focus: Optional[FocusState] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> ExecutionResult:
        executor = self.executor_for(delegation.agent_type)
        return await executor.execute(
            delegation.session_id,
            delegation.task,
            delegation.context,
            delegation.expected_outcome,
            workflow_key,
            workflow_node_id,
            focus=focus,
            stop_event=stop_event,
        )

    def start(
        self,
        delegation: Delegation,
        *,
        workflow_key: Optional[str] = None,
        workflow_node_id: Optional[int] = None,
        focus: Optional[FocusState] = None,
    ) -> asyncio.Task:
        session_id = delegation.session_id
        stop_event = asyncio.Event()
        self.stop_events[session_id] = stop_event

        async def run_and_cleanup() -> None:
            try:
                await self.execute(
                    delegation,
                    workflow_key=workflow_key,
                    workflow_node_id=workflow_node_id,
                    focus=focus,
                    stop_event=stop_event,
                )
            except Exception:
                # The executor already marked the row failed; keep the host alive.
                logger.exception("Delegation %s failed", session_id)
            finally:
                self.run_tasks.pop(session_id, None)
                self.stop_events.pop(session_id, None)

        task = asyncio.create_task(run_and_cleanup())
        self.run_tasks[session_id] = task
        return task

    async def delegate_to_worker(
        self,
        task: str,
        entries: List[str],
        expected_outcome: Optional[str],
        ctx: ToolContext,
    ) -> ExecutionResult:
        """Run a nested worker delegation to completion on behalf of a planner tool call."""
        delegation = await self.ledger.create(task, entries, expected_outcome, "worker")
        session_id = delegation.session_id
        stop_event = LinkedStopEvent(ctx.stop_event)
        self.stop_events[session_id] = stop_event
        logger.info("Planner %s delegated %s", ctx.session_id, session_id)
        try:
            return await self.worker.execute(
                session_id,
                task,
                delegation.context,
                expected_outcome,
                ctx.workflow_key,
                ctx.workflow_node_id,
                focus=ctx.focus,
                stop_event=stop_event,
            )
        except DelegationError as exc:
            failed = await self.ledger.get(session_id)
            summary = (failed.summary if failed and failed.summary else None) or f"Worker failed: {exc.message}"
            return ExecutionResult(session_id=session_id, status="failed", summary=summary)
        finally:
            self.stop_events.pop(session_id, None)

    async def stop(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Signal a run to stop. Returns None when the session is unknown."""
        delegation = await self.ledger.get(session_id)
        stop_event = self.stop_events.get(session_id)
        if delegation is None:
            if stop_event is not None:
                stop_event.set()
                return {"ok": True, "status": "stopping"}
            return None
        if delegation.is_terminal:
            return {"ok": True, "status": delegation.status}
        if stop_event is not None:
            stop_event.set()
            return {"ok": True, "status": "stopping"}
        # No run in this process owns the row.
        await self.ledger.complete(session_id, "Stopped by user", "failed")
        return {"ok": True, "status": "failed"}

    async def reap(self, timeout_minutes: Optional[int] = None) -> List[str]:
        timeout = timeout_minutes if timeout_minutes is not None else self.settings.stale_timeout_minutes
        reaped = await self.ledger.cleanup_stale_sessions(timeout)
        if self.settings.cancel_on_reap:
            for session_id in reaped:
                stop_event = self.stop_events.get(session_id)
                if stop_event is not None:
                    stop_event.set()
        return reaped

    async def run_reaper(self) -> None:
        interval = self.settings.reaper_interval_s
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reap()
            except Exception:
                logger.exception("Stale delegation sweep failed")

    async def shutdown(self) -> None:
        for stop_event in list(self.stop_events.values()):
            stop_event.set()
        tasks = list(self.run_tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
