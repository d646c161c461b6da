from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


DelegationStatus = Literal["queued", "in_progress", "completed", "failed"]
TerminalStatus = Literal["completed", "failed"]
AgentType = Literal["worker", "planner"]
NodeRole = Literal["primary", "secondary", "referenced"]

TERMINAL_STATUSES = ("completed", "failed")


class Delegation(BaseModel):
    id: int
    session_id: str
    task: str
    context: List[str] = Field(default_factory=list)
    expected_outcome: Optional[str] = None
    status: DelegationStatus = "queued"
    summary: Optional[str] = None
    agent_type: AgentType = "worker"
    created_at: str
    updated_at: str

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class NodeSnapshot(BaseModel):
    id: int
    title: str
    link: Optional[str] = None
    dimensions: List[str] = Field(default_factory=list)
    chunk_status: Optional[str] = None
    has_chunks: bool = False
    excerpt: Optional[str] = None
    role: NodeRole


class DelegationCapsule(BaseModel):
    version: int = 1
    generated_at: str
    primary: Optional[NodeSnapshot] = None
    secondary: List[NodeSnapshot] = Field(default_factory=list)
    referenced: List[NodeSnapshot] = Field(default_factory=list)
    focus_count: int = 0

    def snapshots(self) -> List[NodeSnapshot]:
        nodes = [self.primary] if self.primary else []
        return [*nodes, *self.secondary, *self.referenced]

    def node_ids(self) -> List[int]:
        return [snap.id for snap in self.snapshots()]


# Stream events: one variant per kind, discriminated by ``type``.


class ToolInputStart(BaseModel):
    type: Literal["tool-input-start"] = "tool-input-start"
    session_id: str
    tool_call_id: str
    tool_name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class ToolOutputAvailable(BaseModel):
    type: Literal["tool-output-available"] = "tool-output-available"
    session_id: str
    tool_call_id: str
    tool_name: str
    status: Literal["complete", "error"] = "complete"
    output: Any = None
    summary: Optional[str] = None
    reused: bool = False


class TextDelta(BaseModel):
    type: Literal["text-delta"] = "text-delta"
    session_id: str
    delta: str


class AssistantMessage(BaseModel):
    """Marks the start of a new assistant message in the stream."""

    type: Literal["assistant-message"] = "assistant-message"
    session_id: str
    content: str = ""


StreamEvent = Annotated[
    Union[ToolInputStart, ToolOutputAvailable, TextDelta, AssistantMessage],
    Field(discriminator="type"),
]
StreamEventAdapter: TypeAdapter = TypeAdapter(StreamEvent)


def parse_stream_event(payload: Dict[str, Any]) -> StreamEvent:
    return StreamEventAdapter.validate_python(payload)


# LLM service shapes


class ToolCall(BaseModel):
    id: str
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    raw_arguments: str = ""


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0

    def add(self, other: Optional["Usage"]) -> None:
        if other is None:
            return
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens


class LLMTurn(BaseModel):
    text: str = ""
    finish_reason: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)

    @property
    def requested_tools(self) -> bool:
        return self.finish_reason == "tool_calls" and bool(self.tool_calls)


class UsageReport(BaseModel):
    session_id: str
    agent_type: AgentType
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    tools_used: List[str] = Field(default_factory=list)
    workflow_key: Optional[str] = None
    workflow_node_id: Optional[int] = None


class ExecutionResult(BaseModel):
    session_id: str
    status: TerminalStatus
    summary: str


# API bodies


class CreateDelegationRequest(BaseModel):
    task: str
    context: List[str] = Field(default_factory=list)
    expected_outcome: Optional[str] = None
    agent_type: AgentType = "planner"
    workflow_key: Optional[str] = None
    workflow_node_id: Optional[int] = None
    focus_node_ids: List[int] = Field(default_factory=list)
    active_node_id: Optional[int] = None


class CompleteDelegationRequest(BaseModel):
    summary: Optional[str] = None
    status: Optional[TerminalStatus] = None
