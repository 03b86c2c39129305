import asyncio
from typing import Any, Dict, List, Optional

import pytest

from turnloop.api import retry as retry_module
from turnloop.config.models import CompressionConfig, EngineConfig, RetryConfig
from turnloop.core.agent import AgentClient
from turnloop.core.chat import AgentChat
from turnloop.core.session import Session
from turnloop.llm.generator import ContentGenerator
from turnloop.llm.types import GenerateContentRequest, GenerateContentResponse, TokenCount
from turnloop.tools.base import Tool, ToolConfirmationDetails, ToolResult
from turnloop.tools.registry import ToolRegistry


# --- response builders ---


def text_response(text: str, usage: Optional[Dict[str, int]] = None) -> GenerateContentResponse:
    return GenerateContentResponse(content={"role": "model", "parts": [{"text": text}]}, usage=usage)


def thought_response(text: str) -> GenerateContentResponse:
    return GenerateContentResponse(content={"role": "model", "parts": [{"text": text, "thought": True}]})


def call_response(name: str, args: Optional[Dict[str, Any]] = None, call_id: Optional[str] = None):
    call: Dict[str, Any] = {"name": name, "args": args or {}}
    if call_id:
        call["id"] = call_id
    return GenerateContentResponse(content={"role": "model", "parts": [{"functionCall": call}]})


class FakeGenerator(ContentGenerator):
    """Scripted content generator (no network).

    ``streams`` holds one entry per streamed request: a list of response
    fragments, or an exception raised when the stream is opened.
    ``responses`` does the same for single-shot requests.
    """

    def __init__(self, streams=None, responses=None, token_count: Optional[int] = 10):
        self.streams: List[Any] = list(streams or [])
        self.responses: List[Any] = list(responses or [])
        self.token_count = token_count
        self.requests: List[GenerateContentRequest] = []
        self.stream_requests: List[GenerateContentRequest] = []
        self.count_requests: List[GenerateContentRequest] = []
        self.closed = False
        self.closed_streams = 0

    async def generate_content(self, request):
        self.requests.append(request)
        if not self.responses:
            raise AssertionError("unexpected generate_content call")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def generate_content_stream(self, request):
        self.stream_requests.append(request)
        if not self.streams:
            raise AssertionError("unexpected generate_content_stream call")
        item = self.streams.pop(0)
        if isinstance(item, BaseException):
            raise item

        async def _iter():
            try:
                for chunk in item:
                    if isinstance(chunk, BaseException):
                        raise chunk
                    yield chunk
            finally:
                self.closed_streams += 1

        return _iter()

    async def count_tokens(self, request):
        self.count_requests.append(request)
        if callable(self.token_count):
            return TokenCount(total_tokens=self.token_count(request))
        return TokenCount(total_tokens=self.token_count)

    async def close(self):
        self.closed = True


class FakeTool(Tool):
    """Tool with a canned result, optional confirmation and optional delay."""

    def __init__(
        self,
        name: str = "echo",
        result: Any = "ok",
        confirm: Optional[ToolConfirmationDetails] = None,
        delay: float = 0.0,
        error: Optional[BaseException] = None,
        invalid: Optional[str] = None,
    ):
        self.name = name
        self.display_name = name
        self.description = f"{name} tool"
        self.result = result
        self.confirm = confirm
        self.delay = delay
        self.error = error
        self.invalid = invalid
        self.calls: List[Dict[str, Any]] = []

    def validate_tool_params(self, params):
        return self.invalid

    async def should_confirm_execute(self, params, cancel):
        return self.confirm

    async def execute(self, params, cancel, update_output=None):
        self.calls.append(dict(params))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return ToolResult(llm_content=self.result, return_display=str(self.result))


@pytest.fixture(autouse=True)
def no_backoff_sleep(monkeypatch: pytest.MonkeyPatch):
    """Record backoff delays instead of sleeping."""
    delays: List[float] = []

    async def fake_delay(seconds):
        delays.append(seconds)

    monkeypatch.setattr(retry_module, "_delay", fake_delay)
    return delays


@pytest.fixture()
def config(tmp_path) -> EngineConfig:
    return EngineConfig(
        model="test-model",
        fallback_model="test-flash",
        working_dir=str(tmp_path),
        include_environment_context=False,
        retry=RetryConfig(max_attempts=3, initial_delay=0.01, max_delay=0.05),
        compression=CompressionConfig(),
    )


@pytest.fixture()
def session(config) -> Session:
    return Session(config=config)


@pytest.fixture()
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture()
def registry() -> ToolRegistry:
    return ToolRegistry()


@pytest.fixture()
def chat(session, generator) -> AgentChat:
    return AgentChat(session, generator)


@pytest.fixture()
def client(session, generator, registry) -> AgentClient:
    return AgentClient(session, generator, registry).initialize()
