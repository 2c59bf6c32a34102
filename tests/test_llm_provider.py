"""
Tests for building provider clients and reading their chunks.
"""

import asyncio
import json

import httpx
import pytest
from langchain_core.messages import AIMessage, AIMessageChunk, HumanMessage, SystemMessage
from langchain_deepseek import ChatDeepSeek
from langchain_ollama import ChatOllama

from errors import AppError, ErrorKind
from models import ModelConfig
from services.llm_provider import (
    LLMFactory,
    message_reasoning,
    message_text,
    message_usage,
    to_langchain_messages,
    upstream_status,
)

from conftest import FakeUpstreamError

WIRE_MODEL = ModelConfig(
    name="Reasoner",
    model_id="reasoner-test",
    provider="openai",
    base_url="http://llm.local/v1",
    api_key="sk-test",
)


def _chunk(delta=None, usage=None):
    body = {
        "id": "chatcmpl-1",
        "object": "chat.completion.chunk",
        "created": 0,
        "model": "reasoner-test",
        "choices": [] if delta is None else [{"index": 0, "delta": delta, "finish_reason": None}],
    }
    if usage is not None:
        body["usage"] = usage
    return body


def _provider(request: httpx.Request) -> httpx.Response:
    """Отвечает так, как отвечает DeepSeek-подобный провайдер."""
    payload = json.loads(request.content)
    usage = {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}

    if payload.get("stream"):
        chunks = [
            _chunk({"role": "assistant", "content": "", "reasoning_content": "think-A "}),
            _chunk({"content": None, "reasoning_content": "think-B"}),
            _chunk({"content": "answer"}),
            _chunk(usage=usage),
        ]
        body = "".join(f"data: {json.dumps(c)}\n\n" for c in chunks) + "data: [DONE]\n\n"
        return httpx.Response(200, content=body.encode(), headers={"content-type": "text/event-stream"})

    return httpx.Response(200, json={
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 0,
        "model": "reasoner-test",
        "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": "answer", "reasoning_content": "think-AB"},
            "finish_reason": "stop",
        }],
        "usage": usage,
    })


@pytest.fixture
async def wire_client():
    client = httpx.AsyncClient(transport=httpx.MockTransport(_provider))
    yield client
    await client.aclose()


class TestLLMFactory:
    """Registry row -> langchain client."""

    def test_openai_compatible(self):
        factory = LLMFactory(temperature=0.2, max_tokens=256, timeout=5.0)
        config = ModelConfig(name="GPT", model_id="gpt-test", provider="openai", base_url="http://llm.local/v1", api_key="sk-x")

        llm = factory.create(config)

        assert isinstance(llm, ChatDeepSeek)
        assert llm.model_name == "gpt-test"
        assert llm.max_retries == 0

    def test_missing_credentials(self):
        config = ModelConfig(name="GPT", model_id="gpt-test", provider="openai", base_url=None, api_key=None)

        with pytest.raises(AppError) as exc_info:
            LLMFactory().create(config)

        assert exc_info.value.kind == ErrorKind.CONFIGURATION

    def test_ollama(self):
        config = ModelConfig(name="Llama", model_id="llama3", provider="ollama")

        llm = LLMFactory().create(config)

        assert isinstance(llm, ChatOllama)
        assert llm.base_url == "http://localhost:11434"


class TestOpenAICompatibleWire:
    """Raw provider responses through the client the factory builds."""

    async def test_stream_keeps_reasoning_channel(self, wire_client):
        llm = LLMFactory(http_async_client=wire_client).create(WIRE_MODEL)

        content, reasoning, usage = "", "", None
        async for chunk in llm.astream([HumanMessage(content="hi")]):
            content += message_text(chunk.content)
            reasoning += message_reasoning(chunk) or ""
            usage = message_usage(chunk) or usage

        assert content == "answer"
        assert reasoning == "think-A think-B"
        assert usage == {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}

    async def test_invoke_keeps_reasoning_channel(self, wire_client):
        llm = LLMFactory(http_async_client=wire_client).create(WIRE_MODEL)

        reply = await llm.ainvoke([HumanMessage(content="hi")])

        assert message_text(reply.content) == "answer"
        assert message_reasoning(reply) == "think-AB"
        assert message_usage(reply)["total_tokens"] == 7


class TestMessageHelpers:
    def test_roles_map_to_message_types(self):
        messages = to_langchain_messages([
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
        ])

        assert [type(m) for m in messages] == [SystemMessage, HumanMessage, AIMessage]

    def test_text_from_parts(self):
        assert message_text("plain") == "plain"
        assert message_text([{"type": "text", "text": "a"}, "b", {"type": "image_url"}]) == "ab"
        assert message_text(None) == ""

    def test_reasoning_channel(self):
        chunk = AIMessageChunk(content="", additional_kwargs={"reasoning_content": "hmm"})
        assert message_reasoning(chunk) == "hmm"
        assert message_reasoning(AIMessageChunk(content="x")) is None

    def test_usage_total_is_sum(self):
        chunk = AIMessageChunk(
            content="",
            usage_metadata={"input_tokens": 4, "output_tokens": 6, "total_tokens": 11},
        )
        assert message_usage(chunk) == {"prompt_tokens": 4, "completion_tokens": 6, "total_tokens": 10}
        assert message_usage(AIMessageChunk(content="x")) is None


class TestUpstreamStatus:
    def test_status_code_attribute(self):
        assert upstream_status(FakeUpstreamError(status_code=429)) == 429

    def test_response_status(self):
        request = httpx.Request("POST", "http://llm.local/v1/chat/completions")
        response = httpx.Response(502, request=request)
        exc = httpx.HTTPStatusError("bad gateway", request=request, response=response)
        assert upstream_status(exc) == 502

    def test_timeouts(self):
        assert upstream_status(asyncio.TimeoutError()) == 504
        assert upstream_status(httpx.ReadTimeout("slow")) == 504

    def test_unknown(self):
        assert upstream_status(RuntimeError("boom")) is None
