"""
OpenAI-compatible chat completions backend.

Covers every provider that exposes the ``/chat/completions`` contract, natively
or through a compatibility layer (OpenAI, Anthropic, Gemini). Streams SSE
``data:`` lines and classifies each delta into increments:

  - ``delta.reasoning_content`` -> thinking
  - ``delta.content``           -> token
  - ``delta.tool_calls`` for ``delegate_task`` -> delegate (emitted once the call is complete)
"""
import json
import logging
from typing import AsyncIterator

import httpx

from threadforge.errors import ModelFailure
from threadforge.inference.base import ModelBackend, ModelIncrement, ModelRequest, is_rate_limit_text

logger = logging.getLogger(__name__)

DELEGATE_TOOL = {
    "type": "function",
    "function": {
        "name": "delegate_task",
        "description": (
            "Hand a self-contained task to a specialised sub-agent. The sub-agent works in the "
            "background in its own thread. Available types: systemDesigner, balancingDesigner, "
            "levelDesigner, narrativeDesigner, combatDesigner, technicalDesigner, juniorDesigner, default."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "agent_type": {"type": "string", "description": "Sub-agent type, e.g. levelDesigner."},
                "task": {"type": "string", "description": "Complete task brief for the sub-agent."},
                "wait": {
                    "type": "boolean",
                    "default": False,
                    "description": "If true, wait for the sub-agent's reply before continuing.",
                },
            },
            "required": ["agent_type", "task"],
        },
    },
}


class OpenAICompatBackend(ModelBackend):
    """Backend adapter for OpenAI-compatible chat completion servers."""

    def __init__(self, base_url: str, api_key: str = "", default_timeout: float = 300,
                 transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(base_url, default_timeout)
        self.api_key = api_key
        self._transport = transport

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def stream(self, request: ModelRequest) -> AsyncIterator[ModelIncrement]:
        payload = {
            "model": request.model_name,
            "messages": request.messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if request.allow_delegation:
            payload["tools"] = [DELEGATE_TOOL]
            payload["tool_choice"] = "auto"

        tool_calls: dict[int, dict] = {}
        completion_tokens = 0
        try:
            async with httpx.AsyncClient(timeout=request.timeout or self.default_timeout,
                                         transport=self._transport) as client:
                async with client.stream(
                    "POST", f"{self.base_url}/chat/completions", json=payload, headers=self._headers()
                ) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")[:500]
                        raise _status_failure(resp.status_code, body)
                    async for line in resp.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        data = line[5:].strip()
                        if data == "[DONE]":
                            break
                        try:
                            chunk = json.loads(data)
                        except json.JSONDecodeError:
                            continue
                        err = chunk.get("error")
                        if err:
                            message = str(err.get("message", err)) if isinstance(err, dict) else str(err)
                            yield ModelIncrement.error(message)
                            return
                        usage = chunk.get("usage") or {}
                        completion_tokens = usage.get("completion_tokens", completion_tokens) or completion_tokens
                        choices = chunk.get("choices") or []
                        if not choices:
                            continue
                        delta = choices[0].get("delta") or {}
                        reasoning = delta.get("reasoning_content")
                        if reasoning:
                            yield ModelIncrement.thinking(reasoning)
                        content = delta.get("content")
                        if content:
                            yield ModelIncrement.token(content)
                        for call in delta.get("tool_calls") or []:
                            _merge_tool_call(tool_calls, call)
        except httpx.TimeoutException as e:
            raise ModelFailure(f"model request timed out: {e}", retryable=True) from e
        except httpx.TransportError as e:
            raise ModelFailure(f"model transport error: {e}", retryable=True) from e

        for index in sorted(tool_calls):
            inc = _delegation_from_call(tool_calls[index])
            if inc is not None:
                yield inc
        yield ModelIncrement.done(token_count=completion_tokens)


def _status_failure(status: int, body: str) -> ModelFailure:
    if status == 429 or is_rate_limit_text(body):
        return ModelFailure(f"HTTP {status}: rate limited: {body}", retryable=True, rate_limited=True)
    if status >= 500:
        return ModelFailure(f"HTTP {status}: {body}", retryable=True)
    return ModelFailure(f"HTTP {status}: {body}")


def _merge_tool_call(acc: dict[int, dict], call: dict) -> None:
    """Accumulate a streamed tool-call fragment; arguments arrive in pieces."""
    slot = acc.setdefault(call.get("index", 0), {"name": "", "arguments": ""})
    fn = call.get("function") or {}
    if fn.get("name"):
        slot["name"] = fn["name"]
    if fn.get("arguments"):
        slot["arguments"] += fn["arguments"]


def _delegation_from_call(call: dict) -> ModelIncrement | None:
    if call["name"] != DELEGATE_TOOL["function"]["name"]:
        logger.warning(f"Ignoring unknown tool call '{call['name']}'")
        return None
    try:
        args = json.loads(call["arguments"] or "{}")
    except json.JSONDecodeError:
        logger.warning(f"Ignoring delegate_task call with malformed arguments: {call['arguments'][:200]}")
        return None
    task = str(args.get("task") or "").strip()
    if not task:
        return None
    return ModelIncrement.delegate(str(args.get("agent_type") or "default"), task, wait=bool(args.get("wait")))
