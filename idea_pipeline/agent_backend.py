"""
Agent Invocation Adapter

Sends a natural-language instruction to the generative-AI agent and returns
its raw text, or None on any failure (missing binary, non-zero exit, HTTP
error, timeout). Callers treat None and unparsable output the same way: as a
retryable failure.

Backends:
- CliAgentBackend: runs a CLI (default: gemini "<prompt>" --output-format text)
- GeminiApiBackend: calls the Generative Language REST API via httpx

extract_json_block() pulls the structured part out of free-form output.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List, Tuple

import httpx

logger = logging.getLogger("agent_backend")

PROMPT_PLACEHOLDER = "{prompt}"
GEMINI_API_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"


# -----------------------------------------------------------------------------
# Structured Response Extraction
# -----------------------------------------------------------------------------
def _first_balanced_block(text: str) -> Optional[str]:
    """Return the first {...} block with balanced braces, ignoring braces in strings."""
    start = text.find("{")
    if start < 0:
        return None

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start:index + 1]
    return None


def extract_json_block(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Extract the embedded JSON object from agent output.

    Tries the first balanced brace block, then the span from the first '{'
    to the last '}'. Returns None for absent, non-JSON, partial or non-object
    output; never raises.
    """
    if not text:
        return None

    candidates = []
    block = _first_balanced_block(text)
    if block:
        candidates.append(block)
    first, last = text.find("{"), text.rfind("}")
    if 0 <= first < last:
        candidates.append(text[first:last + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


# -----------------------------------------------------------------------------
# Backends
# -----------------------------------------------------------------------------
class AgentBackend(ABC):
    """Narrow interface to the generative-AI agent."""

    name = "agent"

    @abstractmethod
    async def invoke(self, prompt: str) -> Optional[str]:
        """Return the agent's text response, or None on failure."""

    async def request_json(self, prompt: str) -> Optional[Dict[str, Any]]:
        """Invoke and extract the structured response."""
        text = await self.invoke(prompt)
        if not text:
            return None
        data = extract_json_block(text)
        if data is None:
            logger.warning(f"{self.name}: response contained no JSON object ({len(text)} chars)")
        return data


class CliAgentBackend(AgentBackend):
    """
    Runs the agent CLI once per prompt.

    The prompt replaces the {prompt} placeholder in the command; if the
    command has no placeholder the prompt is written to stdin.
    """

    name = "agent-cli"

    def __init__(self, command: List[str], timeout: float = 300.0):
        if not command:
            raise ValueError("Agent command must not be empty")
        self.command = list(command)
        self.timeout = timeout

    def _build_argv(self, prompt: str) -> Tuple[List[str], bool]:
        uses_placeholder = any(PROMPT_PLACEHOLDER in part for part in self.command)
        argv = [part.replace(PROMPT_PLACEHOLDER, prompt) for part in self.command]
        return argv, not uses_placeholder

    async def invoke(self, prompt: str) -> Optional[str]:
        argv, via_stdin = self._build_argv(prompt)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if via_stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            logger.error(f"Agent CLI not found: {argv[0]}")
            return None
        except OSError as e:
            logger.error(f"Failed to start agent CLI: {e}")
            return None

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(prompt.encode("utf-8") if via_stdin else None),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            try:
                process.kill()
                await process.wait()
            except ProcessLookupError:
                pass
            logger.warning(f"Agent CLI timed out after {self.timeout}s - subprocess killed")
            return None
        except asyncio.CancelledError:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            raise

        if process.returncode != 0:
            error = stderr.decode("utf-8", errors="replace").strip()
            logger.warning(f"Agent CLI exited with {process.returncode}: {error[:300]}")
            return None

        text = stdout.decode("utf-8", errors="replace").strip()
        return text or None


class GeminiApiBackend(AgentBackend):
    """Generative Language API (generateContent) over HTTPS."""

    name = "gemini-api"

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-1.5-flash",
        timeout: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_key:
            raise ValueError("Gemini API key is required")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._transport = transport

    async def invoke(self, prompt: str) -> Optional[str]:
        url = GEMINI_API_URL.format(model=self.model)
        payload = {"contents": [{"parts": [{"text": prompt}]}]}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, params={"key": self.api_key}, json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"Gemini API request failed: {e}")
            return None

        if response.status_code != 200:
            logger.warning(f"Gemini API returned {response.status_code}: {response.text[:300]}")
            return None

        try:
            data = response.json()
            parts = data["candidates"][0]["content"]["parts"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.warning(f"Unexpected Gemini API response shape: {e}")
            return None

        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict)).strip()
        return text or None


def build_agent_backend(config) -> AgentBackend:
    """Create the backend selected by config.agent_backend."""
    if config.agent_backend == "gemini_api":
        return GeminiApiBackend(
            api_key=config.gemini_api_key,
            model=config.gemini_model,
            timeout=config.agent_timeout,
        )
    if config.agent_backend == "cli":
        return CliAgentBackend(command=config.agent_command, timeout=config.agent_timeout)
    raise ValueError(f"Unknown agent backend: {config.agent_backend}")
