"""Context capsule: a bounded, role-tagged snapshot of the entities a delegated run works on.

The capsule travels inside a delegation's ``context`` list. Its first entry is a
machine-readable ``CAPSULE_JSON::`` line so nested runs can recover the node IDs; the
remaining capsule entries are directive blocks written for the model.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .db import utc_now
from .schemas import DelegationCapsule, NodeRole, NodeSnapshot

logger = logging.getLogger("uvicorn.error")

CAPSULE_PREFIX = "CAPSULE_JSON::"
MAX_CONTEXT_ENTRIES = 16
EXCERPT_WORDS = 80

_REFERENCE_RE = re.compile(r"^(?:node_id:)?(\d+)$", re.IGNORECASE)

Hydrator = Callable[[List[int]], Awaitable[List[Dict[str, Any]]]]


@dataclass
class FocusState:
    """Entities currently in focus in the UI; ``active_id`` marks the one being viewed."""

    nodes: List[Dict[str, Any]] = field(default_factory=list)
    active_id: Optional[int] = None

    @property
    def ids(self) -> List[int]:
        return [int(node["id"]) for node in self.nodes if node.get("id") is not None]


def truncate_words(text: str, limit: int = EXCERPT_WORDS) -> str:
    words = text.split()
    if len(words) <= limit:
        return text.strip()
    return " ".join(words[:limit]) + "…"


def split_context(entries: Sequence[str]) -> Tuple[List[int], List[str]]:
    """Partition raw context into entity references and passthrough text (order kept)."""
    references: List[int] = []
    passthrough: List[str] = []
    for entry in entries:
        if not isinstance(entry, str):
            continue
        match = _REFERENCE_RE.match(entry.strip())
        if match:
            node_id = int(match.group(1))
            if node_id > 0:
                if node_id not in references:
                    references.append(node_id)
                continue
        passthrough.append(entry)
    return references, passthrough


def build_snapshot(node: Dict[str, Any], role: NodeRole) -> NodeSnapshot:
    text = (node.get("content") or node.get("description") or "").strip()
    source = text or (node.get("link") or "")
    chunk_status = node.get("chunk_status") or "unknown"
    return NodeSnapshot(
        id=int(node["id"]),
        title=node.get("title") or "Untitled",
        link=node.get("link") or None,
        dimensions=list(node.get("dimensions") or []),
        chunk_status=chunk_status,
        has_chunks=chunk_status == "chunked" or bool(node.get("chunk")),
        excerpt=truncate_words(source) if source else None,
        role=role,
    )


def _snapshot_line(snap: NodeSnapshot) -> str:
    dims = ", ".join(snap.dimensions) if snap.dimensions else "none"
    excerpt = (
        f"Excerpt: {snap.excerpt}"
        if snap.excerpt
        else "Excerpt: (no stored content; hydrate via get_nodes_by_id if required)"
    )
    return (
        f'[NODE:{snap.id}:"{snap.title}"] | role={snap.role} | dimensions={dims} '
        f"| chunk_status={snap.chunk_status} | {excerpt}"
    )


def format_capsule(capsule: DelegationCapsule) -> str:
    lines = ["=== DELEGATION CAPSULE ==="]
    if capsule.primary:
        lines += ["Primary focus:", _snapshot_line(capsule.primary)]
    else:
        lines.append("Primary focus: None")
    if capsule.secondary:
        lines.append("Secondary focus nodes:")
        lines += [f"- {_snapshot_line(snap)}" for snap in capsule.secondary]
    else:
        lines.append("Secondary focus nodes: None")
    if capsule.referenced:
        lines.append("Referenced nodes provided in this task:")
        lines += [f"- {_snapshot_line(snap)}" for snap in capsule.referenced]
    lines += [
        "Instructions:",
        "- Use the capsule snapshots as ground truth for node IDs and titles.",
        "- Call get_nodes_by_id if you need the full record beyond the provided excerpt.",
        '- List the node IDs you used in the "Context sources used" line of your final summary.',
        "=== END CAPSULE ===",
    ]
    return "\n".join(lines)


def format_source_block(snap: NodeSnapshot) -> str:
    return "\n".join(
        [
            f"=== SOURCE: NODE {snap.id} ===",
            f'Title: "{snap.title}"',
            f"Role: {snap.role}",
            f"Chunk status: {snap.chunk_status} (has_chunks={str(snap.has_chunks).lower()})",
            f"Link: {snap.link}" if snap.link else "Link: None",
            f"Dimensions: {', '.join(snap.dimensions)}" if snap.dimensions else "Dimensions: None",
            f"Excerpt: {snap.excerpt}"
            if snap.excerpt
            else "Excerpt: (not available); call get_nodes_by_id if you need more context.",
            "=====================",
        ]
    )


async def build_capsule(
    focus: Optional[FocusState],
    context: Sequence[str],
    hydrate: Hydrator,
    max_entries: int = MAX_CONTEXT_ENTRIES,
) -> Tuple[DelegationCapsule, List[str]]:
    """Return the capsule and the enriched context list handed to the ledger."""
    focus = focus or FocusState()
    references, passthrough = split_context(context)

    focus_by_id: Dict[int, Dict[str, Any]] = {}
    for node in focus.nodes:
        if node.get("id") is not None:
            focus_by_id[int(node["id"])] = node

    missing = [nid for nid in references if nid not in focus_by_id]
    referenced_nodes: List[Dict[str, Any]] = []
    if missing:
        referenced_nodes = [node for node in await hydrate(missing) if node]
        found = {int(node["id"]) for node in referenced_nodes}
        for nid in missing:
            if nid not in found:
                logger.warning("Capsule reference %s could not be hydrated", nid)

    ambient = list(focus_by_id.values())
    primary_node = focus_by_id.get(focus.active_id) if focus.active_id is not None else None
    if primary_node is None and ambient:
        primary_node = ambient[0]

    capsule = DelegationCapsule(
        generated_at=utc_now(),
        primary=build_snapshot(primary_node, "primary") if primary_node else None,
        secondary=[
            build_snapshot(node, "secondary")
            for node in ambient
            if primary_node is None or node["id"] != primary_node["id"]
        ],
        referenced=[build_snapshot(node, "referenced") for node in referenced_nodes],
        focus_count=len(focus.nodes),
    )

    entries = [
        CAPSULE_PREFIX + capsule.model_dump_json(),
        format_capsule(capsule),
        *[format_source_block(snap) for snap in capsule.snapshots()],
        *passthrough,
    ]
    return capsule, entries[:max_entries]


def parse_capsule(context: Sequence[str]) -> Optional[DelegationCapsule]:
    for entry in context:
        if isinstance(entry, str) and entry.startswith(CAPSULE_PREFIX):
            try:
                return DelegationCapsule.model_validate(json.loads(entry[len(CAPSULE_PREFIX):]))
            except ValueError:
                logger.warning("Ignoring malformed capsule entry")
                return None
    return None


def parse_capsule_node_ids(context: Sequence[str]) -> List[int]:
    capsule = parse_capsule(context)
    return capsule.node_ids() if capsule else []
