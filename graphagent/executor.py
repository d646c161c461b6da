import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from . import agents
from .capsule import FocusState, parse_capsule_node_ids
from .classifier import (
    DIRECT_EDIT_WORKFLOW,
    READ_ONLY_CONSTRAINT,
    Classification,
    HeuristicClassifier,
    RunBudget,
    TaskClassifier,
)
from .config import AppSettings, EndpointConfig
from .db import Database
from .delegation_store import DelegationLedger
from .errors import (
    BudgetExceededError,
    DelegationCancelledError,
    DelegationError,
    DuplicateEdgeDelegationError,
    EmptySummaryError,
    NoWritesPerformedError,
    PlanningRequiredError,
    ToolExecutionError,
    UnknownToolError,
)
from .llm import ChatClient
from .schemas import (
    AgentType,
    AssistantMessage,
    ExecutionResult,
    LLMTurn,
    TerminalStatus,
    TextDelta,
    ToolCall,
    ToolInputStart,
    ToolOutputAvailable,
    Usage,
    UsageReport,
)
from .streaming import DelegationStreamBroadcaster
from .tool_summaries import summarize_tool_execution
from .tools import DELEGATION_TOOL, PLANNING_TOOL, ToolContext, ToolSet, planner_tools, worker_tools

logger = logging.getLogger("uvicorn.error")

UsageRecorder = Callable[[UsageReport], Awaitable[None]]

QUERY_TOOLS = ("web_search", "search_content_embeddings")
EXTRACTION_TOOLS = ("website_extract",)
DIRECT_EDIT_WORKER_TOOLS = ("create_edge", "update_node")

_TASK_NODE_RE = re.compile(r"\[NODE:(\d+)")
_FROM_NODE_RE = re.compile(r"from_node_id\D+(\d+)", re.IGNORECASE)
_TO_NODE_RE = re.compile(r"to_node_id\D+(\d+)", re.IGNORECASE)
_EDGE_CREATED_RE = re.compile(r"Created edge|Edge created", re.IGNORECASE)
_NODE_UPDATED_RE = re.compile(r"Updated node|Appended|content updated", re.IGNORECASE)
_SUMMARY_LABEL_RE = re.compile(r"^(task:|actions:|node:|context sources used:|follow-up:)", re.IGNORECASE)


async def log_usage(report: UsageReport) -> None:
    logger.info(
        "Usage %s (%s, %s): prompt=%s completion=%s tools=%s",
        report.session_id,
        report.agent_type,
        report.model,
        report.prompt_tokens,
        report.completion_tokens,
        ",".join(report.tools_used) or "-",
    )


def normalize_query(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return " ".join(value.lower().split())


def tool_signature(name: str, params: Dict[str, Any]) -> str:
    normalized = dict(params or {})
    if name in QUERY_TOOLS and "query" in normalized:
        normalized["query"] = normalize_query(normalized["query"])
    return json.dumps({"tool": name, "input": normalized}, sort_keys=True, default=str)


def extract_edge_key(params: Dict[str, Any]) -> Optional[Tuple[int, int]]:
    """Directed node pair a delegation targets, from ``[NODE:id`` refs or from/to ids in context."""
    task = params.get("task")
    if isinstance(task, str):
        refs = _TASK_NODE_RE.findall(task)
        if len(refs) >= 2:
            return int(refs[0]), int(refs[1])
    from_id: Optional[int] = None
    to_id: Optional[int] = None
    for entry in params.get("context") or []:
        if not isinstance(entry, str):
            continue
        from_match = _FROM_NODE_RE.search(entry)
        to_match = _TO_NODE_RE.search(entry)
        if from_match:
            from_id = int(from_match.group(1))
        if to_match:
            to_id = int(to_match.group(1))
    if from_id is not None and to_id is not None:
        return from_id, to_id
    return None


def build_task_prompt(
    task: str,
    context: List[str],
    expected_outcome: Optional[str],
    closing: str,
    constraint: Optional[str] = None,
) -> str:
    sections = [f"Task: {task}"]
    if context:
        sections.append("Context:\n- " + "\n- ".join(context))
    if expected_outcome:
        sections.append(f"Expected outcome: {expected_outcome}")
    if constraint:
        sections.append(constraint)
    sections.append(closing)
    return "\n\n".join(sections)


def parse_sources_line(summary: str) -> Tuple[Optional[str], List[int]]:
    for line in summary.splitlines():
        line = line.strip()
        if line.lower().startswith("context sources used:"):
            ids: List[int] = []
            for match in re.findall(r"\d+", line):
                if int(match) not in ids:
                    ids.append(int(match))
            return line, ids
    return None, []


def validate_worker_summary(summary: str, expected_node_ids: List[int]) -> Optional[str]:
    """Return the reason a worker summary is unusable, or None when it passes."""
    lines = [line.strip() for line in summary.strip().splitlines() if line.strip()]
    if not lines:
        return "Worker returned an empty summary."
    result_index = next((i for i, line in enumerate(lines) if line.lower().startswith("result:")), None)
    if result_index is None:
        return "Missing or empty Result line in worker summary."
    if not lines[result_index][len("result:"):].strip():
        following = lines[result_index + 1] if result_index + 1 < len(lines) else ""
        if not following or _SUMMARY_LABEL_RE.match(following):
            return "Missing or empty Result line in worker summary."
    if not any(line.lower().startswith("follow-up:") for line in lines):
        return "Missing Follow-up line in worker summary."
    sources_line, ids = parse_sources_line(summary)
    if sources_line is None:
        return 'Missing "Context sources used" line. Workers must list node IDs they referenced.'
    if expected_node_ids and not ids:
        return "Worker did not cite any node IDs even though a capsule was provided."
    return None


@dataclass
class _CachedResult:
    output: str
    summary: str
    status: str


@dataclass
class _Outcome:
    output: str
    summary: str
    status: str = "complete"
    raw: Any = None
    reused: bool = False
    executed: bool = False


@dataclass
class _PlannerRun:
    session_id: str
    task: str
    classification: Classification
    budget: RunBudget
    tools: ToolSet
    ctx: ToolContext
    messages: List[Dict[str, Any]]
    workflow_key: Optional[str] = None
    workflow_node_id: Optional[int] = None
    stop_event: Optional[asyncio.Event] = None
    usage: Usage = field(default_factory=Usage)
    cache: Dict[str, _CachedResult] = field(default_factory=dict)
    pending_turns: List[Dict[str, Any]] = field(default_factory=list)
    tools_used: List[str] = field(default_factory=list)
    execution_summaries: List[str] = field(default_factory=list)
    seen_summaries: Set[str] = field(default_factory=set)
    edge_keys: Set[Tuple[int, int]] = field(default_factory=set)
    web_queries: Set[str] = field(default_factory=set)
    embedding_queries: Set[str] = field(default_factory=set)
    has_plan: bool = False
    plan_reminder_sent: bool = False
    total_delegations: int = 0
    direct_writes: int = 0
    did_create_edge: bool = False
    did_update_node: bool = False
    iterations_without_write: int = 0
    write_nudge_sent: bool = False

    @property
    def can_delegate(self) -> bool:
        return bool(self.tools.delegation_tools())

    @property
    def writes_done(self) -> int:
        # Runs that cannot delegate edit the graph themselves.
        return self.total_delegations if self.can_delegate else self.direct_writes


class _ExecutorBase:
    agent_type: AgentType = "worker"
    label = "Agent"

    def __init__(
        self,
        llm: ChatClient,
        ledger: DelegationLedger,
        broadcaster: DelegationStreamBroadcaster,
        settings: AppSettings,
        usage_recorder: Optional[UsageRecorder] = None,
    ):
        self.llm = llm
        self.ledger = ledger
        self.broadcaster = broadcaster
        self.settings = settings
        self.usage_recorder = usage_recorder or log_usage

    @property
    def endpoint(self) -> EndpointConfig:
        if self.agent_type == "planner":
            return self.settings.planner_endpoint
        return self.settings.worker_endpoint

    async def _emit(self, event: Any) -> None:
        await self.broadcaster.broadcast(event.session_id, event)

    def _check_cancelled(self, session_id: str, stop_event: Optional[asyncio.Event]) -> None:
        if stop_event is not None and stop_event.is_set():
            raise DelegationCancelledError(f"Delegation {session_id} was cancelled")

    async def _stream(
        self,
        session_id: str,
        messages: List[Dict[str, Any]],
        usage: Usage,
        tools: Optional[ToolSet] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMTurn:
        async def on_text(chunk: str) -> None:
            await self._emit(TextDelta(session_id=session_id, delta=chunk))

        endpoint = self.endpoint
        schemas = tools.schemas() if tools else None
        turn = await self.llm.stream_turn(
            endpoint.base_url,
            endpoint.model_id,
            messages,
            tools=schemas or None,
            max_tokens=max_tokens or self.settings.turn_max_tokens,
            on_text=on_text,
        )
        usage.add(turn.usage)
        return turn

    async def _request_summary(
        self,
        session_id: str,
        messages: List[Dict[str, Any]],
        usage: Usage,
        instruction: str,
        max_tokens: Optional[int] = None,
    ) -> str:
        async def on_text(chunk: str) -> None:
            await self._emit(TextDelta(session_id=session_id, delta=chunk))

        messages.append({"role": "user", "content": instruction})
        endpoint = self.endpoint
        turn = await self.llm.complete_text(
            endpoint.base_url,
            endpoint.model_id,
            messages,
            max_tokens=max_tokens or self.settings.final_summary_max_tokens,
            on_text=on_text,
        )
        usage.add(turn.usage)
        return turn.text

    @staticmethod
    def _assistant_turn(turn: LLMTurn) -> Dict[str, Any]:
        return {
            "role": "assistant",
            "content": turn.text or None,
            "tool_calls": [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.raw_arguments or json.dumps(call.arguments)},
                }
                for call in turn.tool_calls
            ],
        }

    @staticmethod
    def _tool_message(call: ToolCall, outcome: _Outcome) -> Dict[str, Any]:
        content = outcome.output if outcome.status == "complete" else f"Error: {outcome.output}"
        return {"role": "tool", "tool_call_id": call.id, "content": content}

    async def _emit_output(self, session_id: str, call: ToolCall, outcome: _Outcome) -> None:
        await self._emit(
            ToolOutputAvailable(
                session_id=session_id,
                tool_call_id=call.id,
                tool_name=call.name,
                status="error" if outcome.status == "error" else "complete",
                output=outcome.raw if outcome.raw is not None else outcome.output,
                summary=outcome.summary,
                reused=outcome.reused,
            )
        )

    async def _report_usage(
        self,
        session_id: str,
        usage: Usage,
        tools_used: List[str],
        workflow_key: Optional[str],
        workflow_node_id: Optional[int],
    ) -> None:
        report = UsageReport(
            session_id=session_id,
            agent_type=self.agent_type,
            model=self.endpoint.model_id,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            tools_used=tools_used,
            workflow_key=workflow_key,
            workflow_node_id=workflow_node_id,
        )
        try:
            await self.usage_recorder(report)
        except Exception as exc:
            logger.warning("Usage recorder failed for %s: %s", session_id, exc)

    async def _fail(self, session_id: str, exc: BaseException) -> None:
        message = exc.message if isinstance(exc, DelegationError) else (str(exc) or exc.__class__.__name__)
        text = f"{self.label} failed: {message}"
        await self._emit(AssistantMessage(session_id=session_id))
        await self._emit(TextDelta(session_id=session_id, delta=text))
        await self.ledger.complete(session_id, text, "failed")

    @staticmethod
    def _build_output(tool_name: str, summary: str, result: Any) -> Tuple[str, bool]:
        summary = summary.strip()
        if isinstance(result, dict) and result.get("success") is False:
            error = result.get("error") if isinstance(result.get("error"), str) else ""
            return summary or error or f"{tool_name} failed.", True
        if isinstance(result, str):
            return result.strip() or summary or f"{tool_name} completed.", False
        return summary or f"{tool_name} completed.", False


class PlannerExecutor(_ExecutorBase):
    """Bounded plan/act loop for the heavy agent class.

    The planner reasons with read tools, delegates concrete writes to workers, and produces the
    final summary recorded on the delegation.
    """

    agent_type: AgentType = "planner"
    label = "Planner"

    def __init__(
        self,
        llm: ChatClient,
        ledger: DelegationLedger,
        broadcaster: DelegationStreamBroadcaster,
        settings: AppSettings,
        registry: ToolSet,
        db: Database,
        classifier: Optional[TaskClassifier] = None,
        usage_recorder: Optional[UsageRecorder] = None,
    ):
        super().__init__(llm, ledger, broadcaster, settings, usage_recorder)
        self.tools = planner_tools(registry)
        self.db = db
        self.classifier: TaskClassifier = classifier or HeuristicClassifier()

    def shape_tools(self, classification: Classification, workflow_key: Optional[str] = None) -> ToolSet:
        tools = self.tools
        if classification.is_workflow:
            tools = tools.without(*[name for name in tools.write_tools() if name != "update_node"])
        else:
            tools = tools.without(*tools.write_tools())
        if classification.analysis_only:
            tools = tools.without(*tools.write_tools(), *tools.delegation_tools())
        if workflow_key == DIRECT_EDIT_WORKFLOW:
            tools = tools.without(*tools.delegation_tools())
        return tools

    def seed_messages(
        self,
        task: str,
        context: List[str],
        expected_outcome: Optional[str],
        classification: Classification,
    ) -> List[Dict[str, Any]]:
        prompt = build_task_prompt(
            task,
            context,
            expected_outcome,
            "Return a structured summary following the format in your system prompt "
            "(Task/Actions/Result/Nodes/Follow-up).",
            READ_ONLY_CONSTRAINT if classification.analysis_only else None,
        )
        return [
            {"role": "system", "content": agents.PLANNER_SYSTEM},
            {"role": "user", "content": prompt},
        ]

    async def execute(
        self,
        session_id: str,
        task: str,
        context: Optional[List[str]] = None,
        expected_outcome: Optional[str] = None,
        workflow_key: Optional[str] = None,
        workflow_node_id: Optional[int] = None,
        *,
        focus: Optional[FocusState] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> ExecutionResult:
        context = list(context or [])
        usage = Usage()
        run: Optional[_PlannerRun] = None
        try:
            await self.ledger.mark_in_progress(session_id)
            classification = self.classifier.classify(task, expected_outcome, workflow_key)
            tools = self.shape_tools(classification, workflow_key)
            run = _PlannerRun(
                session_id=session_id,
                task=task,
                classification=classification,
                budget=RunBudget.for_classification(classification),
                tools=tools,
                ctx=ToolContext(
                    session_id=session_id,
                    agent_type=self.agent_type,
                    focus=focus,
                    workflow_key=workflow_key,
                    workflow_node_id=workflow_node_id,
                    stop_event=stop_event,
                ),
                messages=self.seed_messages(task, context, expected_outcome, classification),
                workflow_key=workflow_key,
                workflow_node_id=workflow_node_id,
                stop_event=stop_event,
                usage=usage,
            )
            logger.info(
                "Planner %s starting: workflow=%s allow_writes=%s tools=%s",
                session_id,
                classification.is_workflow,
                classification.allow_writes,
                ",".join(tools),
            )
            summary = await self._summarize(run, await self._run_loop(run))
            delegation = await self.ledger.complete(session_id, summary, "completed")
            status: TerminalStatus = "completed"
            if delegation is not None and delegation.status == "failed":
                # Reaped while running; the ledger keeps the terminal status it already has.
                status = "failed"
            logger.info("Planner %s finished (%s chars)", session_id, len(summary))
            return ExecutionResult(session_id=session_id, status=status, summary=summary)
        except Exception as exc:
            logger.warning("Planner %s failed: %s", session_id, exc)
            await self._fail(session_id, exc)
            raise
        finally:
            await self._report_usage(
                session_id,
                usage,
                run.tools_used if run else [],
                workflow_key,
                workflow_node_id,
            )

    async def _run_loop(self, run: _PlannerRun) -> str:
        final_text: Optional[str] = None
        natural_stop = False
        for index in range(run.budget.max_iterations):
            self._check_cancelled(run.session_id, run.stop_event)
            await self.ledger.touch(run.session_id)
            turn = await self._stream(run.session_id, run.messages, run.usage, tools=run.tools)
            logger.info(
                "Planner %s iteration %s/%s finish_reason=%s tool_calls=%s",
                run.session_id,
                index + 1,
                run.budget.max_iterations,
                turn.finish_reason,
                len(turn.tool_calls),
            )
            if not turn.requested_tools:
                final_text = turn.text
                natural_stop = True
                break

            await self._emit(AssistantMessage(session_id=run.session_id))
            run.messages.append(self._assistant_turn(turn))
            executed_tool = False
            tool_messages: List[Dict[str, Any]] = []
            for call in turn.tool_calls:
                self._check_cancelled(run.session_id, run.stop_event)
                outcome = await self._handle_call(run, call)
                executed_tool = executed_tool or outcome.executed
                tool_messages.append(self._tool_message(call, outcome))
            run.messages.extend(tool_messages)
            run.messages.extend(run.pending_turns)
            run.pending_turns.clear()

            instruction = self._check_stop(run, index, executed_tool)
            if instruction is not None:
                final_text = await self._request_summary(run.session_id, run.messages, run.usage, instruction)
                return final_text

        if run.classification.allow_writes and run.writes_done == 0:
            raise NoWritesPerformedError(
                "Planner attempted to summarize a write task without delegating any execution."
            )
        if natural_stop and final_text:
            return final_text
        logger.warning("Planner %s ran out of iterations without a summary", run.session_id)
        return await self._request_summary(run.session_id, run.messages, run.usage, agents.EXHAUSTED_SUMMARY_REQUEST)

    async def _handle_call(self, run: _PlannerRun, call: ToolCall) -> _Outcome:
        if call.name not in run.tools_used:
            run.tools_used.append(call.name)
        await self._emit(
            ToolInputStart(
                session_id=run.session_id,
                tool_call_id=call.id,
                tool_name=call.name,
                input=call.arguments,
            )
        )
        try:
            outcome = await self._dispatch(run, call)
        except PlanningRequiredError as exc:
            if not run.plan_reminder_sent:
                run.plan_reminder_sent = True
                run.pending_turns.append({"role": "user", "content": agents.PLANNING_REMINDER})
            outcome = _Outcome(exc.message, exc.message, status="error")
        except DuplicateEdgeDelegationError as exc:
            outcome = _Outcome(exc.message, exc.message)
        except (UnknownToolError, BudgetExceededError, ToolExecutionError) as exc:
            outcome = _Outcome(exc.message, exc.message, status="error")
        await self._emit_output(run.session_id, call, outcome)
        return outcome

    async def _dispatch(self, run: _PlannerRun, call: ToolCall) -> _Outcome:
        name, params = call.name, call.arguments
        if PLANNING_TOOL in run.tools and not run.has_plan and name != PLANNING_TOOL:
            raise PlanningRequiredError(agents.PLANNING_REQUIRED_WARNING)

        signature = tool_signature(name, params)
        cached = run.cache.get(signature) if name != PLANNING_TOOL else None
        if cached is not None:
            if name == DELEGATION_TOOL and cached.summary:
                self._collect_summary(run, f"[reused] {cached.summary}")
            return _Outcome(cached.output, cached.summary, status=cached.status, reused=True)

        tool = run.tools.get(name)
        if tool is None:
            raise UnknownToolError(f"Tool {name} is not available to the planner.")
        if tool.delegates:
            await self._guard_delegation(run, params)

        try:
            result = await tool.execute(params, run.ctx)
        except Exception as exc:
            logger.warning("Planner %s tool %s raised: %s", run.session_id, name, exc)
            raise ToolExecutionError(str(exc) or "Tool execution failed") from exc

        summary = summarize_tool_execution(name, params, result)
        output, is_error = self._build_output(name, summary, result)
        status = "error" if is_error else "complete"
        if name == PLANNING_TOOL:
            run.has_plan = True
        else:
            run.cache[signature] = _CachedResult(output=output, summary=summary, status=status)
            self._record(run, tool.delegates, tool.writes, name, params, summary, is_error)
        return _Outcome(output, summary, status=status, raw=result, executed=True)

    async def _guard_delegation(self, run: _PlannerRun, params: Dict[str, Any]) -> None:
        if run.total_delegations >= run.budget.max_delegations:
            raise BudgetExceededError(
                f"Delegation budget reached ({run.budget.max_delegations}). Summarize with what you have."
            )
        edge_key = extract_edge_key(params)
        if edge_key is None:
            return
        from_id, to_id = edge_key
        message = None
        if edge_key in run.edge_keys:
            message = f"Skipped duplicate edge delegation for nodes {from_id}→{to_id}."
        else:
            run.edge_keys.add(edge_key)
            if await self.db.edge_exists(from_id, to_id):
                message = f"Edge {from_id}→{to_id} already exists; delegation skipped."
        if message:
            # Skips count as collected material but not as delegations.
            self._collect_summary(run, message)
            raise DuplicateEdgeDelegationError(message)

    @staticmethod
    def _collect_summary(run: _PlannerRun, summary: str) -> bool:
        if summary in run.seen_summaries:
            return False
        run.seen_summaries.add(summary)
        run.execution_summaries.append(summary)
        return True

    def _record(
        self,
        run: _PlannerRun,
        delegates: bool,
        writes: bool,
        name: str,
        params: Dict[str, Any],
        summary: str,
        is_error: bool,
    ) -> None:
        if delegates:
            if summary and self._collect_summary(run, summary):
                run.total_delegations += 1
                self._detect_signals(run, summary)
        elif writes and not is_error:
            run.direct_writes += 1
            if not run.can_delegate:
                run.execution_summaries.append(summary)
            self._detect_signals(run, summary)
        if name == "web_search":
            query = normalize_query(params.get("query"))
            if query:
                run.web_queries.add(query)
        elif name == "search_content_embeddings":
            query = normalize_query(params.get("query"))
            if query:
                run.embedding_queries.add(query)

    @staticmethod
    def _detect_signals(run: _PlannerRun, summary: str) -> None:
        if _EDGE_CREATED_RE.search(summary):
            run.did_create_edge = True
        if _NODE_UPDATED_RE.search(summary):
            run.did_update_node = True

    def _nudge(self, run: _PlannerRun, content: str) -> None:
        logger.info("Planner %s nudged: %s", run.session_id, content)
        run.messages.append({"role": "user", "content": content})

    def _check_stop(self, run: _PlannerRun, index: int, executed_tool: bool) -> Optional[str]:
        """Return the final-summary instruction once the run may stop, else None.

        Completeness nudges are appended to the transcript instead of stopping.
        """
        budget, classification = run.budget, run.classification
        if classification.allow_writes:
            enough = run.has_plan and len(run.execution_summaries) >= budget.min_worker_summaries
        else:
            enough = run.has_plan and executed_tool
        delegation_cap = (
            classification.allow_writes
            and budget.max_delegations > 0
            and run.total_delegations >= budget.max_delegations
        )
        web_cap = len(run.web_queries) >= budget.max_web_searches
        embedding_cap = len(run.embedding_queries) >= budget.max_embedding_searches
        direct_edit = classification.allow_writes and run.workflow_key == DIRECT_EDIT_WORKFLOW

        if direct_edit and run.writes_done == 0:
            run.iterations_without_write += 1
            if not run.write_nudge_sent and run.iterations_without_write >= 4:
                run.write_nudge_sent = True
                target = f" Focus on node [NODE:{run.workflow_node_id}]." if run.workflow_node_id else ""
                self._nudge(run, agents.INTEGRATE_NUDGE_IDLE + target)
                return None
        else:
            run.iterations_without_write = 0

        if direct_edit and run.did_create_edge and not run.did_update_node:
            self._nudge(run, agents.INTEGRATE_NUDGE_EDGES_WITHOUT_UPDATE)
            return None

        ready = (
            delegation_cap
            or web_cap
            or embedding_cap
            or (enough and executed_tool and index >= budget.min_iterations_before_stop)
        )
        if not ready:
            return None
        if direct_edit and not run.did_update_node:
            self._nudge(run, agents.INTEGRATE_NUDGE_BEFORE_SUMMARY)
            return None
        if classification.allow_writes and run.writes_done == 0:
            self._nudge(run, agents.NUDGE_NO_DELEGATION)
            return None

        if delegation_cap:
            return (
                f"You have already delegated the maximum allowed ({budget.max_delegations}). "
                + agents.FINAL_SUMMARY_REQUEST
            )
        if web_cap:
            return (
                f"You have already issued {budget.max_web_searches} distinct web searches. "
                + agents.FINAL_SUMMARY_REQUEST
            )
        if embedding_cap:
            return (
                f"Embedding searches have covered the knowledge base (limit {budget.max_embedding_searches}). "
                + agents.FINAL_SUMMARY_REQUEST
            )
        return agents.FINAL_SUMMARY_REQUEST

    async def _summarize(self, run: _PlannerRun, final_text: str) -> str:
        summary = (final_text or "").strip()
        if len(summary) > self.settings.summary_soft_limit:
            logger.info("Planner %s summary too long (%s chars); condensing", run.session_id, len(summary))
            condensed = await self._request_summary(
                run.session_id,
                run.messages,
                run.usage,
                agents.CONDENSE_REQUEST.format(summary=summary),
                max_tokens=self.settings.condense_max_tokens,
            )
            summary = condensed.strip() or summary
        limit = self.settings.summary_hard_limit
        if len(summary) > limit:
            summary = summary[: limit - 3] + "…"
        if not summary:
            await self._emit(AssistantMessage(session_id=run.session_id))
            await self._emit(
                TextDelta(
                    session_id=run.session_id,
                    delta="The planner attempted to summarize but the response was empty. Check the tool log above.",
                )
            )
            raise EmptySummaryError("Planner returned an empty summary")
        return summary


class WorkerExecutor(_ExecutorBase):
    """Light agent class: executes one concrete delegated task and reports in a fixed template."""

    agent_type: AgentType = "worker"
    label = "Worker"

    def __init__(
        self,
        llm: ChatClient,
        ledger: DelegationLedger,
        broadcaster: DelegationStreamBroadcaster,
        settings: AppSettings,
        registry: ToolSet,
        db: Database,
        usage_recorder: Optional[UsageRecorder] = None,
    ):
        super().__init__(llm, ledger, broadcaster, settings, usage_recorder)
        self.tools = worker_tools(registry)
        self.db = db

    def shape_tools(self, workflow_key: Optional[str] = None) -> ToolSet:
        if workflow_key == DIRECT_EDIT_WORKFLOW:
            return self.tools.only(*DIRECT_EDIT_WORKER_TOOLS)
        return self.tools

    async def execute(
        self,
        session_id: str,
        task: str,
        context: Optional[List[str]] = None,
        expected_outcome: Optional[str] = None,
        workflow_key: Optional[str] = None,
        workflow_node_id: Optional[int] = None,
        *,
        focus: Optional[FocusState] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> ExecutionResult:
        context = list(context or [])
        usage = Usage()
        tools_used: List[str] = []
        try:
            await self.ledger.mark_in_progress(session_id)
            tools = self.shape_tools(workflow_key)
            ctx = ToolContext(
                session_id=session_id,
                agent_type=self.agent_type,
                focus=focus,
                workflow_key=workflow_key,
                workflow_node_id=workflow_node_id,
                stop_event=stop_event,
            )
            messages: List[Dict[str, Any]] = [
                {"role": "system", "content": agents.WORKER_SYSTEM},
                {
                    "role": "user",
                    "content": build_task_prompt(
                        task, context, expected_outcome, "Return only the final summary the planner should see."
                    ),
                },
            ]
            raw_summary, captured = await self._run_loop(
                session_id, task, tools, ctx, messages, usage, tools_used, stop_event
            )
            fallback = (
                captured[-1] if captured else "Completed the delegated task (worker returned no additional summary)."
            )
            summary = raw_summary or fallback
            reason = validate_worker_summary(summary, parse_capsule_node_ids(context))
            status: TerminalStatus = "completed"
            if reason:
                logger.warning("Worker %s summary failed validation: %s", session_id, reason)
                summary = f"{summary}\nValidation: {reason}"
                status = "failed"
            delegation = await self.ledger.complete(session_id, summary, status)
            if delegation is not None and delegation.status == "failed":
                status = "failed"
            return ExecutionResult(session_id=session_id, status=status, summary=summary)
        except Exception as exc:
            logger.warning("Worker %s failed: %s", session_id, exc)
            await self._fail(session_id, exc)
            raise
        finally:
            await self._report_usage(session_id, usage, tools_used, workflow_key, workflow_node_id)

    async def _run_loop(
        self,
        session_id: str,
        task: str,
        tools: ToolSet,
        ctx: ToolContext,
        messages: List[Dict[str, Any]],
        usage: Usage,
        tools_used: List[str],
        stop_event: Optional[asyncio.Event],
    ) -> Tuple[str, List[str]]:
        captured: List[str] = []
        quick_add = "quick add" in task.lower()
        extracted = False
        for index in range(self.settings.worker_max_iterations):
            self._check_cancelled(session_id, stop_event)
            await self.ledger.touch(session_id)
            turn = await self._stream(session_id, messages, usage, tools=tools)
            if not turn.requested_tools:
                if not turn.text.strip():
                    logger.warning("Worker %s returned empty text (finish_reason=%s)", session_id, turn.finish_reason)
                return turn.text.strip(), captured

            await self._emit(AssistantMessage(session_id=session_id))
            messages.append(self._assistant_turn(turn))
            for call in turn.tool_calls:
                self._check_cancelled(session_id, stop_event)
                if call.name not in tools_used:
                    tools_used.append(call.name)
                await self._emit(
                    ToolInputStart(session_id=session_id, tool_call_id=call.id, tool_name=call.name, input=call.arguments)
                )
                if quick_add and extracted and call.name in EXTRACTION_TOOLS:
                    skip = f"Extraction already completed; skipping duplicate {call.name} request."
                    outcome = _Outcome(skip, skip)
                else:
                    outcome = await self._run_tool(tools, ctx, call, captured)
                    if quick_add and call.name in EXTRACTION_TOOLS and outcome.status == "complete":
                        extracted = True
                await self._emit_output(session_id, call, outcome)
                messages.append(self._tool_message(call, outcome))

            if extracted:
                text = await self._request_summary(
                    session_id,
                    messages,
                    usage,
                    "Extraction completed successfully. Provide your final summary now using the required "
                    "format (Task/Actions/Result/Node/Context sources used/Follow-up).",
                )
                return text.strip() or "Extraction completed successfully.", captured
        logger.warning("Worker %s hit the iteration limit without a summary", session_id)
        return "", captured

    async def _run_tool(self, tools: ToolSet, ctx: ToolContext, call: ToolCall, captured: List[str]) -> _Outcome:
        tool = tools.get(call.name)
        if tool is None:
            message = f"Tool {call.name} is not available."
            return _Outcome(message, message, status="error")
        params = call.arguments
        if call.name == "create_edge" and "from_node_id" in params and "to_node_id" in params:
            try:
                from_id, to_id = int(params["from_node_id"]), int(params["to_node_id"])
            except (TypeError, ValueError):
                from_id = to_id = None
            if from_id is not None and to_id is not None and await self.db.edge_exists(from_id, to_id):
                skip = f"Edge already exists between node {from_id} and node {to_id}; skipping create_edge."
                captured.append(skip)
                return _Outcome(skip, skip, raw={"success": True, "skipped": True, "message": skip})
        try:
            result = await tool.execute(params, ctx)
        except Exception as exc:
            logger.warning("Worker %s tool %s raised: %s", ctx.session_id, call.name, exc)
            message = str(exc) or "Tool execution failed"
            return _Outcome(message, message, status="error")
        summary = summarize_tool_execution(call.name, params, result)
        if summary:
            captured.append(summary)
        output, is_error = self._build_output(call.name, summary, result)
        return _Outcome(output, summary, status="error" if is_error else "complete", raw=result, executed=True)
