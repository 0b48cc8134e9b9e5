"""LLM port and the Ollama provider - direct HTTP calls to Ollama API."""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, TypeVar

import httpx

from taskloom.exceptions import LLMAPIError, LLMError, TaskCancelledError
from taskloom.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"


@dataclass(frozen=True)
class ContentBlock:
    """One structured content block of a model turn.

    Frozen: reasoning ("thinking") blocks must reach history exactly as the
    model produced them.
    """

    type: str  # "text", "thinking", "tool_use", "tool_result"
    text: str = ""
    tool_call_id: str = ""
    tool_name: str = ""
    arguments: tuple[tuple[str, Any], ...] = ()
    signature: str = ""

    @property
    def argument_dict(self) -> dict[str, Any]:
        return dict(self.arguments)


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str
    tool_call_id: str | None = None
    tool_name: str | None = None
    blocks: tuple[ContentBlock, ...] = ()


@dataclass
class ToolCall:
    """A tool call from the LLM."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class LLMResponse:
    """Response from the LLM."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    finish_reason: str = "stop"
    blocks: tuple[ContentBlock, ...] = ()

    @property
    def tokens_in(self) -> int:
        return int(self.usage.get("prompt_tokens", 0) or 0)

    @property
    def tokens_out(self) -> int:
        return int(self.usage.get("completion_tokens", 0) or 0)

    @property
    def thinking(self) -> list[str]:
        return [block.text for block in self.blocks if block.type == "thinking" and block.text]


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    model: str = ""
    context_window: int = 65536
    supports_reasoning: bool = False

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> LLMResponse:
        pass

    @abstractmethod
    async def complete_streaming(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> AsyncIterator[str]:
        pass

    @abstractmethod
    def count_tokens(self, text: str) -> int:
        pass


async def race_abort(work: Awaitable[T], abort_event: asyncio.Event | None) -> T:
    """Await work, cancelling it when abort_event fires first."""
    if abort_event is None:
        return await work
    if abort_event.is_set():
        if asyncio.iscoroutine(work):
            work.close()
        raise TaskCancelledError("aborted before request")

    work_task = asyncio.ensure_future(work)
    abort_task = asyncio.ensure_future(abort_event.wait())
    try:
        done, _ = await asyncio.wait(
            {work_task, abort_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if work_task in done:
            return work_task.result()
        work_task.cancel()
        try:
            await work_task
        except asyncio.CancelledError:
            pass
        raise TaskCancelledError("aborted during request")
    finally:
        abort_task.cancel()
        if not work_task.done():
            work_task.cancel()


class OllamaProvider(LLMProvider):
    """Direct Ollama API provider."""

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.1,
        max_tokens: int = 4096,
        api_key: str | None = None,
        context_window: int = 65536,
        supports_reasoning: bool = False,
    ):
        """Initialize Ollama provider.

        Args:
            model: Ollama model name (e.g., 'llama3.2', 'qwen3:32b')
            base_url: Ollama API base URL
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            api_key: Optional API key (Ollama usually doesn't need one locally)
            context_window: Advertised context window in tokens
            supports_reasoning: Whether the model emits thinking output
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key
        self.context_window = context_window
        self.supports_reasoning = supports_reasoning

        self.client = httpx.AsyncClient(
            timeout=120.0,
            follow_redirects=True,
        )

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to Ollama format."""
        result = []
        for msg in messages:
            entry: dict[str, Any] = {"role": msg.role, "content": msg.content or ""}
            if msg.role == "tool" and msg.tool_name:
                entry["tool_name"] = msg.tool_name
            if msg.role == "assistant" and msg.blocks:
                thinking = "".join(b.text for b in msg.blocks if b.type == "thinking")
                if thinking:
                    entry["thinking"] = thinking
                calls = [
                    {"function": {"name": b.tool_name, "arguments": b.argument_dict}}
                    for b in msg.blocks
                    if b.type == "tool_use"
                ]
                if calls:
                    entry["tool_calls"] = calls
            result.append(entry)
        return result

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert tools to Ollama format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description or "",
                    "parameters": tool.parameters or {},
                },
            }
            for tool in tools
            if tool.name
        ]

    def _build_body(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
        temperature: float | None,
        max_tokens: int | None,
        stream: bool,
    ) -> dict[str, Any]:
        options: dict[str, Any] = {
            "num_ctx": self.context_window,
            "temperature": self.temperature if temperature is None else temperature,
        }
        if max_tokens or self.max_tokens:
            options["num_predict"] = max_tokens or self.max_tokens

        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages),
            "stream": stream,
            "options": options,
        }
        if tools:
            body["tools"] = self._convert_tools(tools)
        return body

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> LLMResponse:
        """Generate a completion."""
        url = f"{self.base_url}/api/chat"
        body = self._build_body(messages, tools, temperature, max_tokens, stream=False)

        try:
            log.debug("Calling Ollama", model=self.model, url=url, msg_count=len(body["messages"]))
            response = await race_abort(
                self.client.post(url, json=body, headers=self._headers()),
                abort_event,
            )
            log.debug("Ollama response status", status=response.status_code)

            if not response.is_success:
                raise LLMAPIError(
                    f"Ollama API error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )

            data = response.json()
            message = data.get("message", {}) or {}
            content = message.get("content", "") or ""

            blocks: list[ContentBlock] = []
            if message.get("thinking"):
                blocks.append(ContentBlock(type="thinking", text=str(message["thinking"])))
            if content:
                blocks.append(ContentBlock(type="text", text=content))

            tool_calls = []
            for idx, tc in enumerate(message.get("tool_calls") or []):
                function = tc.get("function", {}) or {}
                arguments = function.get("arguments", {}) or {}
                if isinstance(arguments, str):
                    arguments = json.loads(arguments or "{}")
                call = ToolCall(
                    id=f"ollama_call_{tc.get('id', idx)}",
                    name=function.get("name", ""),
                    arguments=arguments,
                )
                tool_calls.append(call)
                blocks.append(
                    ContentBlock(
                        type="tool_use",
                        tool_call_id=call.id,
                        tool_name=call.name,
                        arguments=tuple(arguments.items()),
                    )
                )

            usage = {
                "prompt_tokens": data.get("prompt_eval_count", 0),
                "completion_tokens": data.get("eval_count", 0),
                "total_tokens": (data.get("prompt_eval_count", 0) + data.get("eval_count", 0)),
            }

            return LLMResponse(
                content=content,
                tool_calls=tool_calls,
                model=self.model,
                usage=usage,
                finish_reason=str(data.get("done_reason") or "stop"),
                blocks=tuple(blocks),
            )

        except (LLMError, TaskCancelledError):
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama HTTP error: {e}")
        except json.JSONDecodeError as e:
            raise LLMError(f"Ollama response decode error: {e}")
        except Exception as e:
            raise LLMError(f"Ollama call failed: {e}")

    async def complete_streaming(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> AsyncIterator[str]:
        """Stream a completion.  Stops quietly when abort_event fires."""
        url = f"{self.base_url}/api/chat"
        body = self._build_body(messages, tools, temperature, max_tokens, stream=True)

        try:
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"Ollama API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    if abort_event is not None and abort_event.is_set():
                        log.debug("Ollama stream aborted", model=self.model)
                        return
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    content = (chunk.get("message", {}) or {}).get("content")
                    if content:
                        yield content
                    if chunk.get("done"):
                        break

        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama streaming error: {e}")
        except Exception as e:
            raise LLMError(f"Ollama stream failed: {e}")

    def count_tokens(self, text: str) -> int:
        """Count tokens (rough estimate for Ollama models)."""
        # ~1 token per 4 characters for English
        return len(text) // 4

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "ollama",
    model: str = "llama3.2",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.1,
    max_tokens: int = 4096,
    context_window: int = 65536,
    supports_reasoning: bool = False,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (only ``ollama`` ships in-tree)
        model: Model name
        api_key: Optional API key
        base_url: Optional base URL
        temperature: Default temperature
        max_tokens: Default max tokens
        context_window: Advertised context window
        supports_reasoning: Whether the model emits thinking output

    Returns:
        Configured LLMProvider instance
    """
    if provider == "ollama":
        return OllamaProvider(
            model=model,
            base_url=base_url or OLLAMA_NATIVE_BASE_URL,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=api_key,
            context_window=context_window,
            supports_reasoning=supports_reasoning,
        )
    raise ValueError(f"Provider '{provider}' not supported. Use 'ollama' or pass a provider instance.")


def provider_from_config() -> LLMProvider:
    """Build a provider from the global configuration."""
    from taskloom.config import get_config

    cfg = get_config()
    return create_provider(
        provider=cfg.model.provider,
        model=cfg.model.model,
        api_key=cfg.model.api_key or None,
        base_url=cfg.model.base_url or None,
        temperature=cfg.model.temperature,
        max_tokens=cfg.model.max_tokens,
        context_window=cfg.model.context_window,
        supports_reasoning=cfg.model.supports_reasoning,
    )
