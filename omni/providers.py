"""Model backends: provider catalog, stream events and the litellm connector."""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator

from .report import ConfigError, ConnectorError

logger = logging.getLogger(__name__)


class Backend(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    MISTRAL = "mistral"
    GROQ = "groq"
    OLLAMA = "ollama"
    OPENROUTER = "openrouter"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ProviderInfo:
    display_name: str
    default_model: str
    models: tuple[str, ...]
    env_keys: tuple[str, ...]
    litellm_prefix: str


PROVIDERS: dict[Backend, ProviderInfo] = {
    Backend.OPENAI: ProviderInfo(
        "OpenAI",
        "gpt-4o",
        ("gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "o1-mini", "o3-mini"),
        ("OPENAI_API_KEY",),
        "openai",
    ),
    Backend.ANTHROPIC: ProviderInfo(
        "Anthropic",
        "claude-sonnet-4-20250514",
        (
            "claude-sonnet-4-20250514",
            "claude-3-5-sonnet-20241022",
            "claude-3-5-haiku-20241022",
            "claude-3-opus-20240229",
        ),
        ("ANTHROPIC_API_KEY",),
        "anthropic",
    ),
    Backend.GOOGLE: ProviderInfo(
        "Google",
        "gemini-2.5-pro-preview-06-05",
        ("gemini-2.5-pro-preview-06-05", "gemini-2.5-flash-preview-05-20", "gemini-2.0-flash"),
        ("GOOGLE_API_KEY", "GOOGLE_GENERATIVE_AI_API_KEY", "GEMINI_API_KEY"),
        "gemini",
    ),
    Backend.MISTRAL: ProviderInfo(
        "Mistral",
        "mistral-large-latest",
        ("mistral-large-latest", "mistral-small-latest", "codestral-latest"),
        ("MISTRAL_API_KEY",),
        "mistral",
    ),
    Backend.GROQ: ProviderInfo(
        "Groq",
        "llama-3.3-70b-versatile",
        ("llama-3.3-70b-versatile", "llama-3.1-8b-instant", "gemma2-9b-it"),
        ("GROQ_API_KEY",),
        "groq",
    ),
    Backend.OLLAMA: ProviderInfo(
        "Ollama",
        "llama3.2",
        ("llama3.2", "llama3.1", "codellama", "qwen2.5-coder"),
        (),
        "ollama_chat",
    ),
    Backend.OPENROUTER: ProviderInfo(
        "OpenRouter",
        "anthropic/claude-3.5-sonnet",
        ("anthropic/claude-3.5-sonnet", "openai/gpt-4o", "meta-llama/llama-3.1-405b-instruct"),
        ("OPENROUTER_API_KEY",),
        "openrouter",
    ),
}

OLLAMA_DEFAULT_HOST = "http://localhost:11434"


def resolve_backend(name) -> Backend:
    try:
        return Backend(str(name).lower())
    except ValueError:
        choices = ", ".join(b.value for b in Backend)
        raise ConfigError(f"unknown provider {name!r} (choose from {choices})") from None


def api_key_for(backend: Backend, env=None) -> str | None:
    env = os.environ if env is None else env
    for key in PROVIDERS[backend].env_keys:
        if env.get(key):
            return env[key]
    return None


def available_providers(env=None) -> list[Backend]:
    """Backends that can be used right now (ollama needs no credentials)."""
    return [b for b in Backend if b is Backend.OLLAMA or api_key_for(b, env)]


def parse_provider_model(value: str) -> tuple[Backend, str] | None:
    """Split "provider:model" or "provider/model" into its parts.

    Returns None when the prefix is not a known backend or the model is empty.
    """
    for sep in (":", "/"):
        if sep not in value:
            continue
        prefix, model = value.split(sep, 1)
        try:
            backend = Backend(prefix.lower())
        except ValueError:
            continue
        if model:
            return backend, model
    return None


# -- Stream events -----------------------------------------------------------


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            self.prompt_tokens + other.prompt_tokens,
            self.completion_tokens + other.completion_tokens,
            self.total_tokens + other.total_tokens,
        )

    def to_dict(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCall:
    """A tool call requested by the model. ``arguments`` is the raw JSON text."""

    id: str
    name: str
    arguments: str


@dataclass(frozen=True)
class ToolResult:
    """A tool the backend executed on its own side; reported, never re-run."""

    id: str
    name: str
    result: dict


@dataclass(frozen=True)
class Finish:
    usage: Usage = field(default_factory=Usage)
    finish_reason: str | None = None


StreamEvent = TextDelta | ToolCall | ToolResult | Finish


_WIRE_KEYS = ("role", "content", "tool_calls", "tool_call_id", "name")


def wire_messages(messages: list[dict]) -> list[dict]:
    """Drop bookkeeping keys and turn orphaned tool messages into user messages."""
    out = []
    open_calls: set[str] = set()
    for msg in messages:
        clean = {k: msg[k] for k in _WIRE_KEYS if k in msg}
        role = clean.get("role")
        if role == "assistant":
            open_calls = {tc["id"] for tc in clean.get("tool_calls") or ()}
        elif role == "tool":
            call_id = clean.get("tool_call_id")
            if call_id not in open_calls:
                clean = {"role": "user", "content": f"[tool result]\n{clean.get('content', '')}"}
            else:
                open_calls.discard(call_id)
        out.append(clean)
    return out


class ModelConnector:
    """One backend's streaming chat capability.

    ``stream`` yields TextDelta, ToolCall and ToolResult events in order and
    ends with exactly one Finish. Failures raise ConnectorError.

    ``usage`` holds the token usage of the latest stream once the backend has
    finished sending it, which can be before every event has been consumed.
    """

    backend: Backend
    model: str
    usage: Usage | None = None

    def stream(self, messages: list[dict], tools: list[dict]) -> AsyncIterator[StreamEvent]:
        raise NotImplementedError

    @property
    def label(self) -> str:
        return f"{self.backend}/{self.model}"


class LiteLLMConnector(ModelConnector):
    def __init__(
        self,
        backend: Backend,
        model: str,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ):
        self.backend = backend
        self.model = model
        self.api_key = api_key or api_key_for(backend)
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.temperature = temperature

    def completion_kwargs(self, messages: list[dict], tools: list[dict]) -> dict:
        info = PROVIDERS[self.backend]
        model = self.model
        if self.backend is Backend.OPENROUTER and model.startswith("openrouter/openrouter/"):
            model = model[len("openrouter/") :]
        kwargs: dict = dict(
            model=f"{info.litellm_prefix}/{model}",
            messages=wire_messages(messages),
            stream=True,
            stream_options={"include_usage": True},
        )
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if self.backend is Backend.OLLAMA:
            kwargs["api_base"] = self.base_url or os.environ.get("OLLAMA_HOST") or OLLAMA_DEFAULT_HOST
        else:
            if self.api_key:
                kwargs["api_key"] = self.api_key
            if self.base_url:
                kwargs["api_base"] = self.base_url
        if self.max_tokens is not None:
            kwargs["max_tokens"] = self.max_tokens
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        return kwargs

    async def stream(self, messages, tools):
        import litellm

        litellm.suppress_debug_info = True
        kwargs = self.completion_kwargs(messages, tools)
        self.usage = None
        logger.debug("calling %s with %d messages", kwargs["model"], len(messages))

        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            raise ConnectorError(f"LLM call failed: {e}") from e

        calls: dict[int, dict] = {}
        usage = Usage()
        finish_reason = None
        try:
            async for chunk in response:
                chunk_usage = getattr(chunk, "usage", None)
                if chunk_usage:
                    usage = Usage(
                        chunk_usage.prompt_tokens or 0,
                        chunk_usage.completion_tokens or 0,
                        chunk_usage.total_tokens or 0,
                    )
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                finish_reason = choice.finish_reason or finish_reason
                delta = choice.delta
                if delta is None:
                    continue
                if delta.content:
                    yield TextDelta(delta.content)
                for tc in getattr(delta, "tool_calls", None) or ():
                    slot = calls.setdefault(tc.index or 0, {"id": "", "name": "", "arguments": ""})
                    if tc.id:
                        slot["id"] = tc.id
                    fn = tc.function
                    if fn is not None:
                        if fn.name:
                            slot["name"] = fn.name
                        if fn.arguments:
                            slot["arguments"] += fn.arguments
        except Exception as e:
            raise ConnectorError(f"LLM stream failed: {e}") from e

        self.usage = usage
        for index in sorted(calls):
            slot = calls[index]
            yield ToolCall(slot["id"] or f"call_{index}", slot["name"], slot["arguments"] or "{}")
        yield Finish(usage, finish_reason)


CONNECTORS: dict[Backend, type[ModelConnector]] = {backend: LiteLLMConnector for backend in Backend}


def create_connector(provider, model: str | None = None, **kwargs) -> ModelConnector:
    """Build the connector for a backend, defaulting to its default model."""
    backend = resolve_backend(provider)
    if backend is not Backend.OLLAMA and not (kwargs.get("api_key") or api_key_for(backend)):
        keys = " or ".join(PROVIDERS[backend].env_keys)
        logger.warning("no API key for %s; set %s", backend, keys)
    return CONNECTORS[backend](backend, model or PROVIDERS[backend].default_model, **kwargs)
