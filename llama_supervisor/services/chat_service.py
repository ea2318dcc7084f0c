"""
Chat Client Module

OpenAI-compatible client for a running llama-server.

Components:
    - ChatClient: streaming and non-streaming /v1/chat/completions calls

Streaming Protocol (Server-Sent Events):
    data: {"choices":[{"delta":{"content":"Hel"},"finish_reason":null}]}
    data: {"choices":[{"delta":{"content":"lo"},"finish_reason":"stop"}]}
    data: [DONE]

    Each content delta is passed to on_chunk(content, False). The [DONE]
    line (or the end of the body) produces on_chunk("", True). Lines that
    are not valid JSON are skipped. Tool-call deltas are merged by index.

Usage:
    client = ChatClient("http://127.0.0.1:2026")
    response = await client.stream_chat(messages, on_chunk=print)
    print(response.content, response.finish_reason)
"""

import json
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import httpx

from ..core.errors import InferenceError
from ..schemas.chat import ChatMessage, ChatResponse, SamplingParams, Tool, ToolCall


logger = logging.getLogger(__name__)


CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
DEFAULT_CHAT_TIMEOUT = 300.0
SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"

ChunkCallback = Callable[[str, bool], Union[None, Awaitable[None]]]


async def _notify(on_chunk: Optional[ChunkCallback], content: str, done: bool) -> None:
    if on_chunk is None:
        return
    result = on_chunk(content, done)
    if inspect.isawaitable(result):
        await result


def _merge_tool_call(calls: Dict[int, Dict[str, Any]], delta: Dict[str, Any]) -> None:
    """Accumulate one streamed tool-call fragment."""
    index = delta.get("index", len(calls))
    call = calls.setdefault(index, {"id": "", "type": "function", "name": "", "arguments": ""})
    if delta.get("id"):
        call["id"] = delta["id"]
    if delta.get("type"):
        call["type"] = delta["type"]
    function = delta.get("function") or {}
    if function.get("name"):
        call["name"] += function["name"]
    if function.get("arguments"):
        call["arguments"] += function["arguments"]


class ChatClient:
    """
    Client for llama-server's chat completions endpoint.

    Attributes:
        base_url: llama-server root URL
        timeout: Default request timeout in seconds
        http_client: Shared AsyncClient (a short-lived one is used if None)
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_CHAT_TIMEOUT,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http_client = http_client

    def _build_body(
        self,
        messages: Sequence[ChatMessage],
        params: SamplingParams,
        stream: bool,
        tools: Optional[Sequence[Tool]] = None,
        model: str = ""
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "messages": [m.model_dump(exclude_none=True) for m in messages],
            "stream": stream,
            "temperature": params.temperature,
            "top_p": params.top_p,
            "max_tokens": params.max_tokens,
        }
        if model:
            body["model"] = model
        if tools:
            body["tools"] = [t.model_dump() for t in tools]
            body["tool_choice"] = "auto"
        return body

    async def stream_chat(
        self,
        messages: Sequence[ChatMessage],
        on_chunk: Optional[ChunkCallback] = None,
        params: Optional[SamplingParams] = None,
        tools: Optional[Sequence[Tool]] = None,
        model: str = "",
        timeout: Optional[float] = None
    ) -> ChatResponse:
        """
        Stream a chat completion.

        Args:
            messages: Conversation to send
            on_chunk: Sync or async callback receiving (content, done)
            params: Sampling parameters (defaults: 0.7 / 0.9 / 4096)
            tools: Functions the model may call (tool_choice "auto")
            model: Optional model name passed through to llama-server
            timeout: Request timeout override in seconds

        Returns:
            ChatResponse with the full content, tool calls and finish reason

        Raises:
            InferenceError: If llama-server rejects the request or the
                connection fails
        """
        body = self._build_body(messages, params or SamplingParams(), True, tools, model)
        url = f"{self.base_url}{CHAT_COMPLETIONS_PATH}"
        request_timeout = timeout or self.timeout

        if self.http_client is not None:
            return await self._stream(self.http_client, url, body, on_chunk, request_timeout)

        async with httpx.AsyncClient() as client:
            return await self._stream(client, url, body, on_chunk, request_timeout)

    async def _stream(
        self,
        client: httpx.AsyncClient,
        url: str,
        body: Dict[str, Any],
        on_chunk: Optional[ChunkCallback],
        timeout: float
    ) -> ChatResponse:
        parts: List[str] = []
        tool_calls: Dict[int, Dict[str, Any]] = {}
        finish_reason: Optional[str] = None
        done = False

        try:
            async with client.stream("POST", url, json=body, timeout=timeout) as response:
                if response.status_code != 200:
                    text = (await response.aread()).decode("utf-8", errors="replace")
                    raise InferenceError(response.status_code, text)

                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith(SSE_DATA_PREFIX):
                        continue

                    data = line[len(SSE_DATA_PREFIX):].strip()
                    if data == SSE_DONE:
                        done = True
                        break

                    try:
                        payload = json.loads(data)
                    except json.JSONDecodeError:
                        logger.debug(f"[Chat] Skipping malformed SSE line: {data[:80]}")
                        continue

                    choices = payload.get("choices") or []
                    if not choices:
                        continue
                    choice = choices[0]
                    delta = choice.get("delta") or {}

                    content = delta.get("content") or ""
                    if content:
                        parts.append(content)
                        await _notify(on_chunk, content, False)

                    for call_delta in delta.get("tool_calls") or []:
                        _merge_tool_call(tool_calls, call_delta)

                    if choice.get("finish_reason"):
                        finish_reason = choice["finish_reason"]

        except httpx.TransportError as e:
            raise InferenceError(0, f"connection to llama-server failed: {e}") from e

        if not done:
            logger.debug("[Chat] Stream closed without [DONE]")
        await _notify(on_chunk, "", True)

        return ChatResponse(
            content="".join(parts),
            tool_calls=[
                ToolCall(
                    id=call["id"],
                    type=call["type"],
                    function={"name": call["name"], "arguments": call["arguments"]},
                )
                for _, call in sorted(tool_calls.items())
            ],
            finish_reason=finish_reason,
        )

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        params: Optional[SamplingParams] = None,
        timeout: Optional[float] = None
    ) -> str:
        """
        Non-streaming completion.

        Returns:
            The assistant message content

        Raises:
            InferenceError: On HTTP errors or a response without choices
        """
        body = self._build_body(messages, params or SamplingParams(), False)
        url = f"{self.base_url}{CHAT_COMPLETIONS_PATH}"
        request_timeout = timeout or self.timeout

        try:
            if self.http_client is not None:
                response = await self.http_client.post(url, json=body, timeout=request_timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(url, json=body, timeout=request_timeout)
        except httpx.TransportError as e:
            raise InferenceError(0, f"connection to llama-server failed: {e}") from e

        if response.status_code != 200:
            raise InferenceError(response.status_code, response.text)

        try:
            payload = response.json()
            return payload["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise InferenceError(response.status_code, f"unexpected response: {response.text}") from e
