from graphagent.tool_summaries import summarize_tool_execution


def test_failure_and_message_take_precedence():
    assert summarize_tool_execution("create_edge", {}, {"success": False, "error": "node 9 missing"}) == (
        "create_edge failed: node 9 missing"
    )
    assert summarize_tool_execution("update_node", {}, {"success": True, "message": "Updated node [NODE:3]"}) == (
        "Updated node [NODE:3]"
    )


def test_think_summary_includes_step_and_next_action():
    result = {"success": True, "data": {"trace": {"step": 2, "purpose": "Find nodes", "thoughts": "Search first"}}}
    summary = summarize_tool_execution("think", {"next_action": "query_nodes"}, result)
    assert summary == "Plan step 2: Find nodes: Search first. Next: query_nodes"


def test_search_summaries():
    web = {"success": True, "data": {"query": "heat pumps", "results": [{"title": "Guide", "url": "https://x.test"}]}}
    assert summarize_tool_execution("web_search", {"query": "heat pumps"}, web) == (
        'Web search for "heat pumps": Guide (https://x.test)'
    )
    empty = {"success": True, "data": {"chunks": []}}
    assert summarize_tool_execution("search_content_embeddings", {"query": "x"}, empty) == (
        'Embedding search for "x": no matches.'
    )


def test_node_and_edge_listings():
    nodes = {"success": True, "data": {"nodes": [{"id": 1, "title": "A"}, {"id": 2, "title": ""}], "count": 2}}
    assert summarize_tool_execution("query_nodes", {}, nodes) == "Found 2 node(s): A, [NODE:2]"
    edges = {"success": True, "data": {"edges": [], "count": 0}}
    assert summarize_tool_execution("query_edges", {}, edges) == "No edges found."


def test_string_and_generic_results():
    assert summarize_tool_execution("delegate_to_worker", {}, "  Worker done  ") == "Worker done"
    assert summarize_tool_execution("custom", {}, None) == "custom completed."
    preview = summarize_tool_execution("custom", {}, {"success": True, "data": {"blob": "x" * 500}})
    assert len(preview) == 200
    assert preview.endswith("…")
