import json
from typing import Any, Dict, Optional


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _clip(value: str, limit: int = 180) -> str:
    if len(value) <= limit:
        return value
    return value[: limit - 1] + "…"


def _query_label(args: Dict[str, Any], data: Dict[str, Any]) -> str:
    query = _text(args.get("query")) or _text(data.get("query"))
    return f' for "{_clip(query, 60)}"' if query else ""


def _summarize_think(args: Dict[str, Any], data: Dict[str, Any]) -> str:
    trace = data.get("trace") or args
    step = trace.get("step") or args.get("step")
    purpose = _text(trace.get("purpose") or args.get("purpose")) or "planning"
    thoughts = _text(trace.get("thoughts") or args.get("thoughts"))
    next_action = _text(trace.get("next_action") or args.get("next_action"))
    summary = f"Plan{f' step {step}' if step else ''}: {_clip(purpose, 120)}"
    if thoughts:
        summary += f": {_clip(thoughts, 160)}"
    if next_action:
        summary += f". Next: {_clip(next_action, 80)}"
    return summary


def _summarize_web_search(args: Dict[str, Any], data: Dict[str, Any]) -> str:
    results = data.get("results") or []
    if not results:
        return f"Web search{_query_label(args, data)}: no results."
    items = []
    for entry in results[:3]:
        title = _clip(_text(entry.get("title")) or _text(entry.get("url")) or "Result", 80)
        url = _text(entry.get("url"))
        items.append(f"{title} ({url})" if url else title)
    return f"Web search{_query_label(args, data)}: {'; '.join(items)}"


def _summarize_embedding_search(args: Dict[str, Any], data: Dict[str, Any]) -> str:
    chunks = data.get("chunks") or []
    if not chunks:
        return f"Embedding search{_query_label(args, data)}: no matches."
    top = chunks[0]
    node_ref = f" [NODE:{top['node_id']}]" if top.get("node_id") else ""
    preview = _clip(_text(top.get("text")), 160)
    return f"Embedding search{_query_label(args, data)} found {len(chunks)} chunk(s). Top{node_ref}: {preview}"


def _summarize_nodes(data: Dict[str, Any]) -> Optional[str]:
    nodes = data.get("nodes") or []
    if not nodes:
        return None
    labels = ", ".join(_text(node.get("title")) or f"[NODE:{node.get('id')}]" for node in nodes[:3])
    return f"Found {len(nodes)} node(s): {labels}"


def _summarize_edges(data: Dict[str, Any]) -> str:
    edges = data.get("edges") or []
    if not edges:
        return "No edges found."
    edge = edges[0]
    return f"Found {len(edges)} edge(s), e.g., {edge.get('from_node_id')} → {edge.get('to_node_id')}."


def summarize_tool_execution(tool_name: str, args: Optional[Dict[str, Any]], result: Any) -> str:
    """Turn a tool result into the one-line summary shown to observers and cached for replay."""
    fallback = f"{tool_name} completed."
    args = args or {}
    if isinstance(result, str):
        return result.strip() or fallback
    if not isinstance(result, dict):
        return fallback
    if result.get("success") is False:
        return f"{tool_name} failed: {_text(result.get('error')) or 'unknown error'}"
    message = _text(result.get("message"))
    if message:
        return message

    data = result.get("data")
    data = data if isinstance(data, dict) else {}
    if tool_name == "think":
        return _summarize_think(args, data)
    if tool_name == "web_search":
        return _summarize_web_search(args, data)
    if tool_name == "search_content_embeddings":
        return _summarize_embedding_search(args, data)
    if tool_name in ("query_nodes", "get_nodes_by_id"):
        summary = _summarize_nodes(data)
        if summary:
            return summary
    if tool_name == "query_edges":
        return _summarize_edges(data)

    if _text(data.get("formatted_display")):
        return _text(data["formatted_display"])
    if _text(data.get("title")):
        return f'Processed "{_clip(_text(data["title"]), 80)}".'
    if data.get("count") is not None:
        return f"{tool_name} returned {data['count']} item(s)."
    try:
        raw = result.get("data") if result.get("data") is not None else result
        preview = json.dumps(raw, ensure_ascii=True, default=str)
    except (TypeError, ValueError):
        return fallback
    return _clip(preview, 200)
