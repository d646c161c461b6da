import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from .errors import LLMServiceError
from .schemas import LLMTurn, ToolCall, Usage

logger = logging.getLogger("uvicorn.error")

ALLOWED_ROLES = {"system", "user", "assistant", "tool"}

TextCallback = Callable[[str], Awaitable[None]]


class ChatClient:
    """Streaming client for OpenAI-compatible ``/chat/completions`` endpoints with tool calling."""

    def __init__(self, api_key: Optional[str] = None, max_output_tokens: Optional[int] = None, timeout: float = 120):
        self.api_key = api_key
        self.max_output_tokens = max_output_tokens
        self.client = httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict) or msg.get("role") not in ALLOWED_ROLES:
                continue
            role = msg["role"]
            content = msg.get("content")
            if role == "assistant" and msg.get("tool_calls"):
                sanitized.append({"role": role, "content": content or None, "tool_calls": msg["tool_calls"]})
                continue
            if role == "tool":
                if not msg.get("tool_call_id"):
                    continue
                text = content if isinstance(content, str) else json.dumps(content, ensure_ascii=True)
                sanitized.append({"role": role, "tool_call_id": msg["tool_call_id"], "content": text})
                continue
            if content is None:
                continue
            if not isinstance(content, str):
                content = json.dumps(content, ensure_ascii=True)
            if not content.strip():
                continue
            sanitized.append({"role": role, "content": content})
        return sanitized

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            for key in ("error", "detail", "message"):
                if isinstance(data.get(key), str) and data[key].strip():
                    return data[key]
        return json.dumps(data, ensure_ascii=True)

    async def stream_turn(
        self,
        base_url: str,
        model: str,
        messages: List[Dict[str, Any]],
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
        max_tokens: int = 2048,
        temperature: float = 0.2,
        on_text: Optional[TextCallback] = None,
    ) -> LLMTurn:
        """Run one streamed completion, forwarding text chunks to ``on_text`` as they arrive."""
        if self.max_output_tokens:
            max_tokens = min(max_tokens, self.max_output_tokens)
        payload: Dict[str, Any] = {
            "model": model,
            "messages": self._sanitize_messages(messages),
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if not payload["messages"]:
            raise ValueError("messages must include at least one non-empty entry")
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        url = f"{base_url.rstrip('/')}/chat/completions"

        text_parts: List[str] = []
        partial_calls: Dict[int, Dict[str, str]] = {}
        finish_reason: Optional[str] = None
        usage = Usage()
        try:
            async with self.client.stream("POST", url, json=payload, headers=self._headers()) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    detail = self._extract_error_detail(resp)
                    raise LLMServiceError(
                        f"LLM service returned {resp.status_code}: {detail}",
                        status_code=resp.status_code,
                    )
                async for line in resp.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    chunk = line[len("data:"):].strip()
                    if chunk == "[DONE]":
                        break
                    try:
                        data = json.loads(chunk)
                    except ValueError:
                        logger.warning("Skipping malformed stream chunk from %s", url)
                        continue
                    if isinstance(data.get("usage"), dict):
                        usage = Usage(
                            prompt_tokens=int(data["usage"].get("prompt_tokens") or 0),
                            completion_tokens=int(data["usage"].get("completion_tokens") or 0),
                        )
                    for choice in data.get("choices") or []:
                        delta = choice.get("delta") or {}
                        content = delta.get("content")
                        if content:
                            text_parts.append(content)
                            if on_text is not None:
                                await on_text(content)
                        for call_delta in delta.get("tool_calls") or []:
                            slot = partial_calls.setdefault(
                                int(call_delta.get("index", len(partial_calls))),
                                {"id": "", "name": "", "arguments": ""},
                            )
                            function = call_delta.get("function") or {}
                            slot["id"] = call_delta.get("id") or slot["id"]
                            slot["name"] += function.get("name") or ""
                            slot["arguments"] += function.get("arguments") or ""
                        if choice.get("finish_reason"):
                            finish_reason = choice["finish_reason"]
        except httpx.RequestError as exc:
            raise LLMServiceError(f"LLM service request failed: {exc}") from exc

        tool_calls: List[ToolCall] = []
        for index in sorted(partial_calls):
            slot = partial_calls[index]
            try:
                arguments = json.loads(slot["arguments"]) if slot["arguments"].strip() else {}
            except ValueError:
                arguments = {}
            tool_calls.append(
                ToolCall(
                    id=slot["id"] or f"call_{index}",
                    name=slot["name"],
                    arguments=arguments if isinstance(arguments, dict) else {},
                    raw_arguments=slot["arguments"],
                )
            )
        # Some servers report "stop" even when they emitted tool calls.
        if tool_calls and finish_reason in (None, "stop"):
            finish_reason = "tool_calls"
        return LLMTurn(text="".join(text_parts), finish_reason=finish_reason, tool_calls=tool_calls, usage=usage)

    async def complete_text(
        self,
        base_url: str,
        model: str,
        messages: List[Dict[str, Any]],
        *,
        max_tokens: int = 500,
        on_text: Optional[TextCallback] = None,
    ) -> LLMTurn:
        """No-tools completion used for forced summaries and condensing."""
        return await self.stream_turn(base_url, model, messages, tools=None, max_tokens=max_tokens, on_text=on_text)

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
