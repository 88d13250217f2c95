"""
Unit Tests for the Agent Invocation Adapter

Test coverage for:
- JSON block extraction from free-form output
- CLI backend (real subprocesses via the current interpreter)
- Gemini API backend (httpx.MockTransport)
- Backend selection
"""

import json
import sys

import httpx
import pytest

from idea_pipeline.agent_backend import (
    CliAgentBackend,
    GeminiApiBackend,
    build_agent_backend,
    extract_json_block,
)
from idea_pipeline.config import PipelineConfig


class TestExtractJsonBlock:
    """extract_json_block never raises."""

    def test_plain_object(self):
        assert extract_json_block('{"a": 1}') == {"a": 1}

    def test_surrounded_by_chatter(self):
        text = 'Sure! Here it is:\n```json\n{"title": "X", "n": 2}\n```\nAnything else?'
        assert extract_json_block(text) == {"title": "X", "n": 2}

    def test_braces_inside_strings(self):
        text = 'result: {"overview": "use {curly} braces", "ok": true} trailing }'
        assert extract_json_block(text) == {"overview": "use {curly} braces", "ok": True}

    def test_escaped_quotes(self):
        text = r'{"title": "say \"hi\" {", "x": 1}'
        assert extract_json_block(text) == {"title": 'say "hi" {', "x": 1}

    def test_nested(self):
        assert extract_json_block('{"ideas": [{"title": "a"}, {"title": "b"}]}') == {
            "ideas": [{"title": "a"}, {"title": "b"}]
        }

    @pytest.mark.parametrize("text", [None, "", "no json here", '{"broken": ', "[1, 2, 3]", "{not: json}"])
    def test_unusable_input_returns_none(self, text):
        assert extract_json_block(text) is None


def python_command(code: str):
    return [sys.executable, "-c", code]


class TestCliAgentBackend:
    """Test the CLI backend with real processes."""

    @pytest.mark.asyncio
    async def test_prompt_placeholder(self):
        backend = CliAgentBackend(python_command("import sys; print(sys.argv[1].upper())") + ["{prompt}"])
        assert await backend.invoke("hello") == "HELLO"

    @pytest.mark.asyncio
    async def test_prompt_on_stdin_without_placeholder(self):
        backend = CliAgentBackend(python_command("import sys; print(sys.stdin.read()[::-1])"))
        assert await backend.invoke("abc") == "cba"

    @pytest.mark.asyncio
    async def test_request_json(self):
        code = "print('Result:'); print('{\"title\": \"Idea\"}')"
        backend = CliAgentBackend(python_command(code))
        assert await backend.request_json("anything") == {"title": "Idea"}

    @pytest.mark.asyncio
    async def test_non_zero_exit_returns_none(self):
        backend = CliAgentBackend(python_command("import sys; print('x'); sys.exit(3)"))
        assert await backend.invoke("p") is None

    @pytest.mark.asyncio
    async def test_empty_output_returns_none(self):
        backend = CliAgentBackend(python_command("pass"))
        assert await backend.invoke("p") is None

    @pytest.mark.asyncio
    async def test_missing_binary_returns_none(self):
        backend = CliAgentBackend(["definitely-not-an-agent-binary", "{prompt}"])
        assert await backend.invoke("p") is None

    @pytest.mark.asyncio
    async def test_timeout_returns_none(self):
        backend = CliAgentBackend(python_command("import time; time.sleep(10)"), timeout=0.2)
        assert await backend.invoke("p") is None

    def test_empty_command_rejected(self):
        with pytest.raises(ValueError):
            CliAgentBackend([])


def gemini_transport(status_code=200, body=None, captured=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if captured is not None:
            captured.append(request)
        return httpx.Response(status_code, json=body if body is not None else {})

    return httpx.MockTransport(handler)


class TestGeminiApiBackend:
    """Test the REST backend."""

    @pytest.mark.asyncio
    async def test_success(self):
        captured = []
        body = {"candidates": [{"content": {"parts": [{"text": '{"name": '}, {"text": '"app"}'}]}}]}
        backend = GeminiApiBackend("key-1", model="gemini-test", transport=gemini_transport(body=body, captured=captured))

        assert await backend.request_json("name it") == {"name": "app"}

        request = captured[0]
        assert "gemini-test:generateContent" in str(request.url)
        assert request.url.params["key"] == "key-1"
        assert json.loads(request.content) == {"contents": [{"parts": [{"text": "name it"}]}]}

    @pytest.mark.asyncio
    async def test_http_error_returns_none(self):
        backend = GeminiApiBackend("key", transport=gemini_transport(status_code=500))
        assert await backend.invoke("p") is None

    @pytest.mark.asyncio
    async def test_unexpected_shape_returns_none(self):
        backend = GeminiApiBackend("key", transport=gemini_transport(body={"candidates": []}))
        assert await backend.invoke("p") is None

    def test_requires_key(self):
        with pytest.raises(ValueError):
            GeminiApiBackend("")


class TestBuildAgentBackend:
    """Test backend selection."""

    def test_cli(self):
        backend = build_agent_backend(PipelineConfig())
        assert isinstance(backend, CliAgentBackend)
        assert backend.command[0] == "gemini"

    def test_gemini_api(self):
        backend = build_agent_backend(PipelineConfig(agent_backend="gemini_api", gemini_api_key="k"))
        assert isinstance(backend, GeminiApiBackend)

    def test_unknown(self):
        with pytest.raises(ValueError):
            build_agent_backend(PipelineConfig(agent_backend="carrier_pigeon"))
