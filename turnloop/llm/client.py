"""Content generator over an OpenAI-compatible chat-completions API (httpx).

Conversation contents are translated to chat messages on the way out and
responses are translated back into model-role contents on the way in.
The streaming path parses SSE events and yields one response fragment per
text or reasoning delta; tool calls are assembled across deltas and
emitted as a single fragment once the stream ends.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional, TypeVar

import httpx

from turnloop.api.errors import ApiError
from turnloop.llm.generator import ContentGenerator
from turnloop.llm.types import Content, GenerateContentRequest, GenerateContentResponse, Part, TokenCount
from turnloop.utils.cancellation import CancellationToken
from turnloop.utils.lru import LruCache
from turnloop.utils.tokens import estimate_tokens

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _parse_usage(usage: Optional[Dict[str, Any]]) -> Optional[Dict[str, int]]:
    if not usage:
        return None
    input_tokens = usage.get("prompt_tokens", 0) or 0
    output_tokens = usage.get("completion_tokens", 0) or 0
    reasoning_tokens = 0
    completion_details = usage.get("completion_tokens_details") or {}
    if completion_details:
        reasoning_tokens = completion_details.get("reasoning_tokens", 0) or 0
    return {
        "input": input_tokens,
        "output": output_tokens,
        "reasoning": reasoning_tokens,
        "total": usage.get("total_tokens") or input_tokens + output_tokens,
    }


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        args = json.loads(raw)
    except json.JSONDecodeError:
        return {"raw": raw}
    return args if isinstance(args, dict) else {"value": args}


def _model_content(parts: List[Part]) -> Content:
    return {"role": "model", "parts": parts}


def _system_text(system_instruction: Any) -> Optional[str]:
    if system_instruction is None:
        return None
    if isinstance(system_instruction, str):
        return system_instruction
    if isinstance(system_instruction, dict):
        if "text" in system_instruction:
            return system_instruction["text"]
        return "".join(p.get("text", "") for p in system_instruction.get("parts") or [])
    return str(system_instruction)


class OpenAICompatibleGenerator(ContentGenerator):
    """httpx-based content generator (OpenAI-compatible chat completions)."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: Optional[float] = None,
        stream_idle_timeout: float = 300.0,
        token_cache: Optional[LruCache[str, int]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.stream_idle_timeout = stream_idle_timeout
        self._token_cache = token_cache
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(timeout=timeout, connect=30.0),
        )

    # -----------------------------------------------------------------
    # Request translation
    # -----------------------------------------------------------------

    def _build_tools(self, declarations: Optional[List[Dict[str, Any]]]) -> Optional[List[Dict[str, Any]]]:
        """Build tools in OpenAI format from function declarations."""
        if not declarations:
            return None
        return [
            {
                "type": "function",
                "function": {
                    "name": decl["name"],
                    "description": decl.get("description", ""),
                    "parameters": decl.get("parameters", {"type": "object", "properties": {}}),
                },
            }
            for decl in declarations
        ]

    def _to_messages(self, contents: List[Content], system_instruction: Any = None) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        system = _system_text(system_instruction)
        if system:
            messages.append({"role": "system", "content": system})

        for content in contents:
            parts = content.get("parts") or []
            if content.get("role") == "model":
                text = "".join(p.get("text", "") for p in parts if not p.get("thought"))
                tool_calls = []
                for part in parts:
                    call = part.get("functionCall")
                    if not call:
                        continue
                    tool_calls.append(
                        {
                            "id": call.get("id") or f"call_{uuid.uuid4().hex[:12]}",
                            "type": "function",
                            "function": {
                                "name": call.get("name", ""),
                                "arguments": json.dumps(call.get("args") or {}),
                            },
                        }
                    )
                if not text and not tool_calls:
                    continue
                message: Dict[str, Any] = {"role": "assistant", "content": text or None}
                if tool_calls:
                    message["tool_calls"] = tool_calls
                messages.append(message)
                continue

            texts: List[str] = []
            for part in parts:
                response = part.get("functionResponse")
                if response is not None:
                    messages.append(
                        {
                            "role": "tool",
                            "tool_call_id": response.get("id") or response.get("name", ""),
                            "content": json.dumps(response.get("response") or {}),
                        }
                    )
                elif isinstance(part.get("text"), str):
                    texts.append(part["text"])
                elif "inlineData" in part or "fileData" in part:
                    blob = part.get("inlineData") or part.get("fileData") or {}
                    texts.append(f"[binary content: {blob.get('mimeType', 'unknown')}]")
            if texts:
                messages.append({"role": "user", "content": "\n".join(texts)})
        return messages

    def _build_payload(self, request: GenerateContentRequest, stream: bool) -> Dict[str, Any]:
        config = request.config or {}
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": self._to_messages(request.contents, config.get("system_instruction")),
        }
        if config.get("temperature") is not None:
            payload["temperature"] = config["temperature"]
        if config.get("top_p") is not None:
            payload["top_p"] = config["top_p"]
        if config.get("max_output_tokens"):
            payload["max_tokens"] = config["max_output_tokens"]

        tools = self._build_tools(config.get("tools"))
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"

        if config.get("response_mime_type") == "application/json":
            payload["response_format"] = {"type": "json_object"}

        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        logger.debug(
            "chat request model=%s messages=%d tools=%d stream=%s",
            request.model,
            len(payload["messages"]),
            len(tools or []),
            stream,
        )
        return payload

    # -----------------------------------------------------------------
    # Errors
    # -----------------------------------------------------------------

    @staticmethod
    def _raise_http_error(status_code: int, body: str, headers: httpx.Headers) -> None:
        """Map a non-200 response to :class:`ApiError` and raise."""
        error_msg = body
        try:
            error_json = json.loads(body)
            if isinstance(error_json, dict):
                inner = error_json.get("error")
                if isinstance(inner, dict):
                    error_msg = inner.get("message", body)
        except json.JSONDecodeError:
            pass
        raise ApiError(
            f"HTTP {status_code}: {error_msg}",
            status=status_code,
            headers=dict(headers),
            body=body,
        )

    @staticmethod
    async def _guarded(cancel: Optional[CancellationToken], awaitable: Awaitable[T]) -> T:
        if cancel is None:
            return await awaitable
        return await cancel.guard(awaitable)

    # -----------------------------------------------------------------
    # ContentGenerator
    # -----------------------------------------------------------------

    async def generate_content(self, request: GenerateContentRequest) -> GenerateContentResponse:
        payload = self._build_payload(request, stream=False)
        try:
            response = await self._guarded(request.cancel, self._client.post("/chat/completions", json=payload))
        except httpx.TimeoutException as e:
            raise ApiError(f"Request timed out: {e}") from e
        except httpx.TransportError as e:
            raise ApiError(f"Connection error: {e}") from e

        if response.status_code != 200:
            self._raise_http_error(response.status_code, response.text, response.headers)

        data = response.json()
        parts: List[Part] = []
        finish_reason = ""
        choices = data.get("choices") or []
        if choices:
            choice = choices[0]
            message = choice.get("message") or {}
            finish_reason = choice.get("finish_reason", "") or ""
            reasoning = message.get("reasoning_content")
            if reasoning:
                parts.append({"text": reasoning, "thought": True})
            if message.get("content"):
                parts.append({"text": message["content"]})
            for call in message.get("tool_calls") or []:
                func = call.get("function") or {}
                parts.append(
                    {
                        "functionCall": {
                            "id": call.get("id") or None,
                            "name": func.get("name", "") or "",
                            "args": _parse_arguments(func.get("arguments")),
                        }
                    }
                )

        return GenerateContentResponse(
            content=_model_content(parts) if parts else None,
            usage=_parse_usage(data.get("usage")),
            finish_reason=finish_reason,
            model=data.get("model", request.model),
        )

    async def generate_content_stream(
        self, request: GenerateContentRequest
    ) -> AsyncIterator[GenerateContentResponse]:
        payload = self._build_payload(request, stream=True)
        http_request = self._client.build_request(
            "POST",
            "/chat/completions",
            json=payload,
            timeout=httpx.Timeout(timeout=None, connect=30.0, read=self.stream_idle_timeout),
        )
        try:
            response = await self._guarded(request.cancel, self._client.send(http_request, stream=True))
        except httpx.TimeoutException as e:
            raise ApiError(f"Request timed out: {e}") from e
        except httpx.TransportError as e:
            raise ApiError(f"Connection error: {e}") from e

        if response.status_code != 200:
            try:
                body = (await response.aread()).decode("utf-8", errors="replace")
            finally:
                await response.aclose()
            self._raise_http_error(response.status_code, body, response.headers)

        return self._iter_stream(response, request.model)

    async def _iter_stream(
        self, response: httpx.Response, model: str
    ) -> AsyncIterator[GenerateContentResponse]:
        tc_accum: Dict[int, Dict[str, Any]] = {}
        finish_reason = ""
        usage: Optional[Dict[str, Any]] = None

        try:
            async for raw_line in response.aiter_lines():
                line = raw_line.strip()
                if not line or not line.startswith("data: "):
                    continue
                data_str = line[6:]
                if data_str == "[DONE]":
                    break
                try:
                    chunk = json.loads(data_str)
                except json.JSONDecodeError:
                    continue

                if chunk.get("usage"):
                    usage = chunk["usage"]

                choices = chunk.get("choices") or []
                if not choices:
                    continue
                delta = choices[0].get("delta") or {}
                if choices[0].get("finish_reason"):
                    finish_reason = choices[0]["finish_reason"]

                reasoning = delta.get("reasoning_content")
                if reasoning:
                    yield GenerateContentResponse(
                        content=_model_content([{"text": reasoning, "thought": True}]), model=model
                    )

                text = delta.get("content")
                if text:
                    yield GenerateContentResponse(content=_model_content([{"text": text}]), model=model)

                for tcd in delta.get("tool_calls") or []:
                    idx = tcd.get("index", 0)
                    acc = tc_accum.setdefault(idx, {"id": "", "name": "", "arguments_parts": []})
                    if tcd.get("id"):
                        acc["id"] = tcd["id"]
                    fn = tcd.get("function") or {}
                    if fn.get("name"):
                        acc["name"] = fn["name"]
                    if fn.get("arguments"):
                        acc["arguments_parts"].append(fn["arguments"])
        finally:
            await response.aclose()

        call_parts: List[Part] = []
        for idx in sorted(tc_accum):
            acc = tc_accum[idx]
            call_parts.append(
                {
                    "functionCall": {
                        "id": acc["id"] or None,
                        "name": acc["name"],
                        "args": _parse_arguments("".join(acc["arguments_parts"])),
                    }
                }
            )

        if call_parts or usage or finish_reason:
            yield GenerateContentResponse(
                content=_model_content(call_parts) if call_parts else None,
                usage=_parse_usage(usage),
                finish_reason=finish_reason,
                model=model,
            )

    async def count_tokens(self, request: GenerateContentRequest) -> TokenCount:
        """Estimate tokens locally; chat-completions APIs have no count endpoint."""
        total = 0
        for content in request.contents:
            key = json.dumps(content, sort_keys=True)
            cached = self._token_cache.get(key) if self._token_cache is not None else None
            if cached is None:
                cached = estimate_tokens(key)
                if self._token_cache is not None:
                    self._token_cache.set(key, cached)
            total += cached
        return TokenCount(total_tokens=total)

    async def close(self) -> None:
        await self._client.aclose()
