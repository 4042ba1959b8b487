"""Model transport over LiteLLM: streamed and one-shot chat completions."""

import logging
from dataclasses import dataclass, field

import litellm

from .report import AgentError, ConfigError

logger = logging.getLogger(__name__)

PROVIDERS = ("xai", "openrouter", "lmstudio", "generic")
DEFAULT_MODEL = "grok-4-1-fast-reasoning"
LMSTUDIO_URL = "http://127.0.0.1:1234"


class TransportError(AgentError):
    """Network, authentication or API failure on a model call."""


@dataclass
class ModelRequest:
    messages: list[dict]
    model: str
    max_tokens: int | None = None
    temperature: float | None = None
    stream: bool = True


@dataclass
class StreamChunk:
    content: str = ""
    reasoning: str = ""
    usage: dict | None = None
    finish_reason: str | None = None


@dataclass
class ModelReply:
    content: str = ""
    reasoning: str = ""
    usage: dict | None = None
    finish_reason: str | None = None
    extra: dict = field(default_factory=dict)


def _usage_dict(usage) -> dict | None:
    if usage is None:
        return None
    out = {}
    for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
        value = usage.get(key) if isinstance(usage, dict) else getattr(usage, key, None)
        out[key] = value if isinstance(value, int) else 0
    return out


def parse_chunk(chunk) -> StreamChunk | None:
    """Extract the fields we use from a streamed chunk; None when malformed."""
    try:
        usage = _usage_dict(getattr(chunk, "usage", None))
        choices = getattr(chunk, "choices", None) or []
        if not choices:
            return StreamChunk(usage=usage) if usage else None
        choice = choices[0]
        delta = getattr(choice, "delta", None)
        content = getattr(delta, "content", None) or ""
        reasoning = getattr(delta, "reasoning_content", None) or ""
        if not isinstance(content, str) or not isinstance(reasoning, str):
            return None
        return StreamChunk(
            content=content,
            reasoning=reasoning,
            usage=usage,
            finish_reason=getattr(choice, "finish_reason", None),
        )
    except (AttributeError, IndexError, KeyError, TypeError) as e:
        logger.debug("skipping malformed chunk: %s", e)
        return None


class LiteLLMTransport:
    """Sends chat requests through LiteLLM to the configured provider."""

    def __init__(
        self,
        provider: str = "xai",
        base_url: str | None = None,
        api_key: str | None = None,
        request_timeout: float = 60.0,
    ):
        if provider not in PROVIDERS:
            raise ConfigError(f"unknown provider {provider!r}")
        if provider == "generic" and not base_url:
            raise ConfigError("--base-url is required for the generic provider")
        self.provider = provider
        self.base_url = base_url
        self.api_key = api_key
        self.request_timeout = request_timeout
        litellm.suppress_debug_info = True

    def _route(self, model: str) -> tuple[str, dict]:
        if self.provider == "xai":
            bare = model.removeprefix("xai/")
            kwargs = {"api_key": self.api_key}
            if self.base_url:
                kwargs["api_base"] = self.base_url
            return f"xai/{bare}", kwargs
        if self.provider == "openrouter":
            bare = model.removeprefix("openrouter/")
            kwargs = {"api_key": self.api_key}
            if self.base_url:
                kwargs["api_base"] = self.base_url
            return f"openrouter/{bare}", kwargs
        if self.provider == "lmstudio":
            base = self.base_url or LMSTUDIO_URL
            return f"openai/{model}", {"api_base": f"{base}/v1", "api_key": "lm-studio"}
        return f"openai/{model}", {"api_base": self.base_url, "api_key": self.api_key or "none"}

    def _kwargs(self, request: ModelRequest, stream: bool) -> dict:
        model_str, extra = self._route(request.model)
        kwargs = dict(
            model=model_str,
            messages=request.messages,
            stream=stream,
            timeout=self.request_timeout,
            **extra,
        )
        if request.max_tokens is not None:
            kwargs["max_tokens"] = request.max_tokens
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if stream:
            kwargs["stream_options"] = {"include_usage": True}
        return kwargs

    async def stream(self, request: ModelRequest):
        """Yield StreamChunk objects; malformed chunks are skipped."""
        try:
            response = await litellm.acompletion(**self._kwargs(request, stream=True))
            async for raw in response:
                chunk = parse_chunk(raw)
                if chunk is not None:
                    yield chunk
        except Exception as e:
            raise TransportError(f"model call failed: {e}") from e

    async def complete(self, request: ModelRequest) -> ModelReply:
        try:
            response = await litellm.acompletion(**self._kwargs(request, stream=False))
        except Exception as e:
            raise TransportError(f"model call failed: {e}") from e
        try:
            choice = response.choices[0]
            message = choice.message
            content = getattr(message, "content", None) or ""
            reasoning = getattr(message, "reasoning_content", None) or ""
            finish = getattr(choice, "finish_reason", None)
        except (AttributeError, IndexError) as e:
            raise TransportError(f"malformed model response: {e}") from e
        return ModelReply(
            content=content,
            reasoning=reasoning,
            usage=_usage_dict(getattr(response, "usage", None)),
            finish_reason=finish,
        )
