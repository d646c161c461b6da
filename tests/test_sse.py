import asyncio
import json

import pytest
from asgi_lifespan import LifespanManager

from graphagent.main import stream_delegation, stream_global_events
from graphagent.schemas import TextDelta


def decode(chunk) -> dict:
    line = chunk.decode("utf-8") if isinstance(chunk, (bytes, bytearray)) else chunk
    return json.loads(line.replace("data:", "").strip())


@pytest.mark.asyncio
async def test_delegation_stream_sends_handshake_then_events(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        broadcaster = app.state.service.broadcaster
        response = await stream_delegation("delegation_1", broadcaster=broadcaster)
        first = await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1)
        assert decode(first) == {"type": "CONNECTION_ESTABLISHED", "session_id": "delegation_1"}
        assert broadcaster.connection_count("delegation_1") == 1

        async def emit_event():
            await asyncio.sleep(0.01)
            await broadcaster.broadcast("delegation_1", TextDelta(session_id="delegation_1", delta="hello"))

        task = asyncio.create_task(emit_event())
        chunk = await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1)
        assert decode(chunk) == {"type": "text-delta", "session_id": "delegation_1", "delta": "hello"}
        await task
        await response.body_iterator.aclose()
        assert broadcaster.connection_count("delegation_1") == 0


@pytest.mark.asyncio
async def test_global_sse_stream_receives_ledger_event(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        bus = app.state.bus
        response = await stream_global_events(bus=bus)

        async def create_delegation():
            await asyncio.sleep(0.01)
            await app.state.service.ledger.create("Observed task")

        task = asyncio.create_task(create_delegation())
        chunk = await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1)
        payload = decode(chunk)
        assert payload["type"] == "AGENT_DELEGATION_CREATED"
        assert payload["data"]["delegation"]["task"] == "Observed task"
        await task
        await response.body_iterator.aclose()
