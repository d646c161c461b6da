import asyncio
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Mapping, Optional

from .capsule import FocusState, build_capsule
from .db import Database
from .schemas import AgentType, ExecutionResult
from .tavily import TavilyClient

ToolResult = Any
ToolHandler = Callable[[Dict[str, Any], "ToolContext"], Awaitable[ToolResult]]
DelegateFn = Callable[[str, List[str], Optional[str], "ToolContext"], Awaitable[ExecutionResult]]

CORE_TOOLS = ("query_nodes", "get_nodes_by_id", "query_edges", "search_content_embeddings")
PLANNING_TOOL = "think"
DELEGATION_TOOL = "delegate_to_worker"


@dataclass
class ToolContext:
    session_id: str
    agent_type: AgentType
    focus: Optional[FocusState] = None
    workflow_key: Optional[str] = None
    workflow_node_id: Optional[int] = None
    stop_event: Optional[asyncio.Event] = None


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    parameters: Dict[str, Any]
    handler: ToolHandler = field(repr=False)
    writes: bool = False
    delegates: bool = False

    async def execute(self, params: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        return await self.handler(params, ctx)

    def schema(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": self.parameters},
        }


class ToolSet(Mapping[str, Tool]):
    """Immutable name -> tool mapping; shaping returns a new set."""

    def __init__(self, tools: Any = ()):
        items = tools.values() if isinstance(tools, Mapping) else tools
        self._tools: Mapping[str, Tool] = MappingProxyType({tool.name: tool for tool in items})

    def __getitem__(self, name: str) -> Tool:
        return self._tools[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def __repr__(self) -> str:
        return f"ToolSet({list(self._tools)})"

    def without(self, *names: str) -> "ToolSet":
        return ToolSet(tool for name, tool in self._tools.items() if name not in names)

    def only(self, *names: str) -> "ToolSet":
        return ToolSet(tool for name, tool in self._tools.items() if name in names)

    def write_tools(self) -> List[str]:
        return [name for name, tool in self._tools.items() if tool.writes]

    def delegation_tools(self) -> List[str]:
        return [name for name, tool in self._tools.items() if tool.delegates]

    def schemas(self) -> List[Dict[str, Any]]:
        return [tool.schema() for tool in self._tools.values()]


def _ok(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    result: Dict[str, Any] = {"success": True, "data": data}
    if message:
        result["message"] = message
    return result


def _fail(error: str) -> Dict[str, Any]:
    return {"success": False, "error": error}


def _node_brief(node: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": node["id"],
        "title": node.get("title"),
        "link": node.get("link"),
        "dimensions": node.get("dimensions") or [],
        "description": node.get("description"),
    }


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if isinstance(item, (str, int))]


def build_registry(db: Database, web: TavilyClient, delegate: Optional[DelegateFn] = None) -> ToolSet:
    """Every concrete tool; role sets and per-run shaping are derived from this."""

    async def think(params: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        trace = {
            "step": params.get("step"),
            "purpose": params.get("purpose") or "",
            "thoughts": params.get("thoughts") or "",
            "next_action": params.get("next_action") or "",
        }
        return _ok({"trace": trace})

    async def query_nodes(params: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        nodes = await db.search_nodes(
            str(params.get("query") or ""),
            dimensions=_string_list(params.get("dimensions")),
            limit=min(int(params.get("limit") or 10), 25),
        )
        return _ok({"nodes": [_node_brief(n) for n in nodes], "count": len(nodes)})

    async def get_nodes_by_id(params: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        ids = [int(i) for i in params.get("ids") or []]
        if not ids:
            return _fail("ids must be a non-empty list of node IDs")
        nodes = await db.get_nodes(ids)
        payload = [{**_node_brief(n), "content": n.get("content"), "chunk_status": n.get("chunk_status")} for n in nodes]
        return _ok({"nodes": payload, "count": len(payload)})

    async def query_edges(params: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        node_id = params.get("node_id")
        edges = await db.list_edges(int(node_id) if node_id is not None else None, limit=int(params.get("limit") or 25))
        return _ok({"edges": edges, "count": len(edges)})

    async def search_content_embeddings(params: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        query = str(params.get("query") or "").strip()
        if not query:
            return _fail("query is required")
        chunks = await db.search_chunks(query, limit=int(params.get("limit") or 5))
        return _ok({"query": query, "chunks": chunks})

    async def web_search(params: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        query = str(params.get("query") or "").strip()
        if not query:
            return _fail("query is required")
        data = await web.search(query, max_results=min(int(params.get("max_results") or 5), 10))
        if data.get("error"):
            return _fail(f"web search unavailable ({data['error']})")
        return _ok(data)

    async def website_extract(params: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        url = str(params.get("url") or "").strip()
        if not url:
            return _fail("url is required")
        data = await web.extract(url)
        if data.get("error"):
            return _fail(f"extraction failed ({data['error']})")
        node = await db.insert_node(
            data.get("title") or url,
            content=data.get("content"),
            link=url,
            dimensions=_string_list(params.get("dimensions")),
            chunk=data.get("content"),
            metadata={"source": "website_extract", "session_id": ctx.session_id},
        )
        return _ok(_node_brief(node), message=f'Created node [NODE:{node["id"]}] from {url}')

    async def create_node(params: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        title = str(params.get("title") or "").strip()
        if not title:
            return _fail("title is required")
        node = await db.insert_node(
            title,
            description=params.get("description"),
            content=params.get("content"),
            link=params.get("link"),
            dimensions=_string_list(params.get("dimensions")),
            metadata={"session_id": ctx.session_id},
        )
        return _ok(_node_brief(node), message=f'Created node [NODE:{node["id"]}:"{title}"]')

    async def update_node(params: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        node_id = int(params["id"])
        node = await db.update_node(
            node_id,
            title=params.get("title"),
            description=params.get("description"),
            append_content=params.get("content"),
            dimensions=_string_list(params["dimensions"]) if "dimensions" in params else None,
        )
        if node is None:
            return _fail(f"node {node_id} not found")
        return _ok(_node_brief(node), message=f"Updated node [NODE:{node_id}]")

    async def create_edge(params: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        from_id, to_id = int(params["from_node_id"]), int(params["to_node_id"])
        if from_id == to_id:
            return _fail("an edge needs two distinct nodes")
        missing = {from_id, to_id} - {n["id"] for n in await db.get_nodes([from_id, to_id])}
        if missing:
            return _fail(f"node(s) not found: {', '.join(str(m) for m in sorted(missing))}")
        if await db.edge_exists(from_id, to_id):
            return _ok({"from_node_id": from_id, "to_node_id": to_id}, message=f"Edge {from_id}→{to_id} already exists.")
        edge = await db.insert_edge(
            from_id,
            to_id,
            context={"explanation": params.get("explanation") or "", "session_id": ctx.session_id},
        )
        return _ok(edge, message=f"Created edge {from_id} → {to_id}")

    async def delegate_to_worker(params: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        if delegate is None:
            return _fail("delegation is not available in this process")
        task = str(params.get("task") or "").strip()
        if not task:
            return _fail("task is required")
        _, entries = await build_capsule(ctx.focus, _string_list(params.get("context")), db.get_nodes)
        result = await delegate(task, entries, params.get("expected_outcome"), ctx)
        label = "completed the task" if result.status == "completed" else "flagged an issue"
        suffix = result.session_id.rsplit("_", 1)[-1]
        return f"Worker (session {suffix}) {label}:\n\n{result.summary}"

    ids_schema = {"type": "array", "items": {"type": "integer"}}
    tools = [
        Tool(
            "think",
            "Record a planning step before acting. Call this first.",
            {
                "type": "object",
                "properties": {
                    "step": {"type": "integer"},
                    "purpose": {"type": "string"},
                    "thoughts": {"type": "string"},
                    "next_action": {"type": "string"},
                },
                "required": ["purpose", "thoughts"],
            },
            think,
        ),
        Tool(
            "query_nodes",
            "Search knowledge-graph nodes by text and dimension tags.",
            {
                "type": "object",
                "properties": {
                    "query": {"type": "string"},
                    "dimensions": {"type": "array", "items": {"type": "string"}},
                    "limit": {"type": "integer"},
                },
            },
            query_nodes,
        ),
        Tool(
            "get_nodes_by_id",
            "Fetch full node records by ID.",
            {"type": "object", "properties": {"ids": ids_schema}, "required": ["ids"]},
            get_nodes_by_id,
        ),
        Tool(
            "query_edges",
            "List edges, optionally those touching one node.",
            {"type": "object", "properties": {"node_id": {"type": "integer"}, "limit": {"type": "integer"}}},
            query_edges,
        ),
        Tool(
            "search_content_embeddings",
            "Search stored source chunks for passages relevant to a query.",
            {
                "type": "object",
                "properties": {"query": {"type": "string"}, "limit": {"type": "integer"}},
                "required": ["query"],
            },
            search_content_embeddings,
        ),
        Tool(
            "web_search",
            "Search the web for current information.",
            {
                "type": "object",
                "properties": {"query": {"type": "string"}, "max_results": {"type": "integer"}},
                "required": ["query"],
            },
            web_search,
        ),
        Tool(
            "website_extract",
            "Extract a web page and store it as a new node.",
            {
                "type": "object",
                "properties": {"url": {"type": "string"}, "dimensions": {"type": "array", "items": {"type": "string"}}},
                "required": ["url"],
            },
            website_extract,
            writes=True,
        ),
        Tool(
            "create_node",
            "Create a new node.",
            {
                "type": "object",
                "properties": {
                    "title": {"type": "string"},
                    "description": {"type": "string"},
                    "content": {"type": "string"},
                    "link": {"type": "string"},
                    "dimensions": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["title"],
            },
            create_node,
            writes=True,
        ),
        Tool(
            "update_node",
            "Update a node. Content is appended to the existing content.",
            {
                "type": "object",
                "properties": {
                    "id": {"type": "integer"},
                    "title": {"type": "string"},
                    "description": {"type": "string"},
                    "content": {"type": "string"},
                    "dimensions": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["id"],
            },
            update_node,
            writes=True,
        ),
        Tool(
            "create_edge",
            "Create a directed edge between two nodes.",
            {
                "type": "object",
                "properties": {
                    "from_node_id": {"type": "integer"},
                    "to_node_id": {"type": "integer"},
                    "explanation": {"type": "string"},
                },
                "required": ["from_node_id", "to_node_id"],
            },
            create_edge,
            writes=True,
        ),
        Tool(
            DELEGATION_TOOL,
            "Hand a concrete, self-contained task to a worker agent and wait for its summary.",
            {
                "type": "object",
                "properties": {
                    "task": {"type": "string"},
                    "context": {"type": "array", "items": {"type": "string"}, "maxItems": 16},
                    "expected_outcome": {"type": "string"},
                },
                "required": ["task"],
            },
            delegate_to_worker,
            delegates=True,
        ),
    ]
    return ToolSet(tools)


def planner_tools(registry: ToolSet) -> ToolSet:
    return registry.only(*CORE_TOOLS, "web_search", PLANNING_TOOL, DELEGATION_TOOL, "update_node")


def worker_tools(registry: ToolSet) -> ToolSet:
    return registry.without(*registry.delegation_tools())
