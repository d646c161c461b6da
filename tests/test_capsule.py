import json

import pytest

from graphagent.capsule import (
    CAPSULE_PREFIX,
    MAX_CONTEXT_ENTRIES,
    FocusState,
    build_capsule,
    parse_capsule_node_ids,
    split_context,
    truncate_words,
)
from graphagent.db import Database


def test_split_context_separates_references_from_text():
    refs, passthrough = split_context(["12", " 7 ", "node_id:12", "0", "see node 3", "00", "-4"])
    assert refs == [12, 7]
    assert passthrough == ["0", "see node 3", "00", "-4"]


def test_truncate_words_caps_at_limit():
    text = " ".join(f"w{i}" for i in range(100))
    truncated = truncate_words(text, 80)
    assert truncated.endswith("…")
    assert len(truncated.rstrip("…").split()) == 80
    assert truncate_words("short text") == "short text"


@pytest.mark.asyncio
async def test_capsule_assigns_roles(db: Database):
    active = await db.insert_node("Active", content="Active body")
    other = await db.insert_node("Other focus")
    referenced = await db.insert_node("Referenced", chunk="chunked body")

    focus = FocusState(nodes=[other, active], active_id=active["id"])
    capsule, entries = await build_capsule(focus, [str(referenced["id"]), "Extra note"], db.get_nodes)

    assert capsule.primary.id == active["id"]
    assert [s.id for s in capsule.secondary] == [other["id"]]
    assert [s.id for s in capsule.referenced] == [referenced["id"]]
    assert capsule.referenced[0].has_chunks is True
    assert capsule.focus_count == 2

    assert entries[0].startswith(CAPSULE_PREFIX)
    assert json.loads(entries[0][len(CAPSULE_PREFIX):])["primary"]["title"] == "Active"
    assert "=== DELEGATION CAPSULE ===" in entries[1]
    assert entries[-1] == "Extra note"
    assert parse_capsule_node_ids(entries) == [active["id"], other["id"], referenced["id"]]


@pytest.mark.asyncio
async def test_capsule_without_active_uses_first_focus_node(db: Database):
    first = await db.insert_node("First")
    second = await db.insert_node("Second")
    capsule, _ = await build_capsule(FocusState(nodes=[first, second]), [], db.get_nodes)
    assert capsule.primary.id == first["id"]
    assert [s.id for s in capsule.secondary] == [second["id"]]


@pytest.mark.asyncio
async def test_capsule_skips_unknown_references_and_caps_entries(db: Database):
    capsule, entries = await build_capsule(None, ["999"] + [f"note {i}" for i in range(30)], db.get_nodes)
    assert capsule.primary is None
    assert capsule.referenced == []
    assert len(entries) == MAX_CONTEXT_ENTRIES


def test_parse_capsule_node_ids_without_capsule():
    assert parse_capsule_node_ids(["plain context"]) == []
    assert parse_capsule_node_ids([CAPSULE_PREFIX + "{not json"]) == []
