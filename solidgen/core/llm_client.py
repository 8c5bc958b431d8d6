"""
Generation clients for Claude, Gemini and a remote SolidGen service.

Every client exposes the same two calls:

  stream(request)   -> async iterator of StreamEvent: zero or more ``delta``
                       events, then exactly one ``done`` (full code) or
                       ``error`` event
  generate(request) -> LLMResponse, raising ConfigurationError or
                       TransportError instead of yielding an error event

Provider overload (HTTP 529) is retried with linear backoff as long as no
text has been produced yet. Token usage and cost are tracked per call.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Literal

import anthropic
import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from .code_processor import extract_code
from .errors import ConfigurationError, TransportError
from .prompt_builder import ChatMessage

logger = logging.getLogger(__name__)

DEFAULT_CLAUDE_MODEL = "claude-sonnet-4-6"
DEFAULT_GEMINI_MODEL = "gemini-3-pro-preview"

# USD per million tokens: (input, output), matched by model-name substring.
_PRICING: list[tuple[str, tuple[float, float]]] = [
    ("opus", (15.0, 75.0)),
    ("sonnet", (3.0, 15.0)),
    ("haiku", (1.0, 5.0)),
    ("gemini", (1.25, 10.0)),
]


@dataclass(frozen=True)
class UsageInfo:
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    input_cost_per_mtok: float = 0.0
    output_cost_per_mtok: float = 0.0
    cost_usd: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "input_cost_per_mtok": self.input_cost_per_mtok,
            "output_cost_per_mtok": self.output_cost_per_mtok,
            "cost_usd": self.cost_usd,
        }


def compute_usage(model: str, input_tokens: int, output_tokens: int) -> UsageInfo:
    in_cost, out_cost = 0.0, 0.0
    for needle, prices in _PRICING:
        if needle in model.lower():
            in_cost, out_cost = prices
            break
    cost = round(input_tokens / 1_000_000 * in_cost + output_tokens / 1_000_000 * out_cost, 4)
    return UsageInfo(
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        input_cost_per_mtok=in_cost,
        output_cost_per_mtok=out_cost,
        cost_usd=cost,
    )


@dataclass
class LLMResponse:
    code: str
    usage: UsageInfo
    elapsed_seconds: float = 0.0


@dataclass
class GenerationRequest:
    """One model call: the composed system prompt plus the message list.

    ``current_code`` travels alongside so the remote client can let the
    server rebuild the same prompt on its side.
    """

    system: str
    messages: list[ChatMessage]
    current_code: str | None = None


@dataclass
class StreamEvent:
    type: Literal["delta", "done", "error"]
    text: str = ""
    code: str = ""
    error: str = ""
    error_kind: Literal["configuration", "transport"] = "transport"
    usage: UsageInfo | None = None

    @classmethod
    def delta(cls, text: str) -> "StreamEvent":
        return cls(type="delta", text=text)

    @classmethod
    def done(cls, code: str, usage: UsageInfo | None = None) -> "StreamEvent":
        return cls(type="done", code=code, usage=usage)

    @classmethod
    def failed(cls, exc: Exception) -> "StreamEvent":
        kind = "configuration" if isinstance(exc, ConfigurationError) else "transport"
        return cls(type="error", error=str(exc), error_kind=kind)

    def to_wire(self) -> dict[str, Any]:
        if self.type == "delta":
            return {"type": "delta", "text": self.text}
        if self.type == "done":
            return {"type": "done", "code": self.code}
        return {"type": "error", "error": self.error, "kind": self.error_kind}


def _is_overloaded(exc: Exception) -> bool:
    text = f"{exc} {exc!r}".lower()
    return (
        "overloaded" in text
        or "529" in text
        or getattr(exc, "status_code", None) == 529
    )


# ---------------------------------------------------------------------------
# Base client
# ---------------------------------------------------------------------------

class GenerationClient:
    name = "base"

    def __init__(self, max_overload_retries: int = 3, overload_backoff_seconds: float = 15.0):
        self.max_overload_retries = max_overload_retries
        self.overload_backoff_seconds = overload_backoff_seconds

    async def _stream_raw(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        """Provider-specific stream. May raise; must end with a ``done`` event."""
        raise NotImplementedError
        yield  # pragma: no cover

    async def stream(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        produced = False
        for attempt in range(1, self.max_overload_retries + 1):
            try:
                async for event in self._stream_raw(request):
                    if event.type == "delta":
                        produced = True
                    yield event
                    if event.type in ("done", "error"):
                        return
                yield StreamEvent.failed(TransportError("stream ended without a result"))
                return
            except (ConfigurationError, TransportError) as exc:
                yield StreamEvent.failed(exc)
                return
            except Exception as exc:
                if _is_overloaded(exc) and not produced and attempt < self.max_overload_retries:
                    wait = attempt * self.overload_backoff_seconds
                    logger.warning(
                        "%s overloaded (attempt %d/%d), retrying in %.0fs...",
                        self.name, attempt, self.max_overload_retries, wait,
                    )
                    await asyncio.sleep(wait)
                    continue
                logger.error("%s call failed: %s", self.name, exc)
                yield StreamEvent.failed(self._classify(exc))
                return

    def _classify(self, exc: Exception) -> Exception:
        return TransportError(f"{type(exc).__name__}: {exc}")

    async def generate(self, request: GenerationRequest) -> LLMResponse:
        t0 = time.time()
        async for event in self.stream(request):
            if event.type == "done":
                return LLMResponse(
                    code=event.code,
                    usage=event.usage or UsageInfo(),
                    elapsed_seconds=time.time() - t0,
                )
            if event.type == "error":
                if event.error_kind == "configuration":
                    raise ConfigurationError(event.error)
                raise TransportError(event.error)
        raise TransportError("stream ended without a result")


# ---------------------------------------------------------------------------
# Client pool: one SDK client per API key
# ---------------------------------------------------------------------------

_claude_clients: dict[str, anthropic.AsyncAnthropic] = {}
_gemini_clients: dict[str, genai.Client] = {}


def _get_claude_client(api_key: str) -> anthropic.AsyncAnthropic:
    if api_key not in _claude_clients:
        _claude_clients[api_key] = anthropic.AsyncAnthropic(api_key=api_key)
    return _claude_clients[api_key]


def _get_gemini_client(api_key: str) -> genai.Client:
    if api_key not in _gemini_clients:
        _gemini_clients[api_key] = genai.Client(api_key=api_key)
    return _gemini_clients[api_key]


# ---------------------------------------------------------------------------
# Claude
# ---------------------------------------------------------------------------

def claude_messages(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    payload: list[dict[str, Any]] = []
    for msg in messages:
        if msg.image_data and msg.image_mime:
            b64 = base64.b64encode(msg.image_data).decode("utf-8")
            content: Any = [
                {"type": "image", "source": {"type": "base64", "media_type": msg.image_mime, "data": b64}},
                {"type": "text", "text": msg.content},
            ]
        else:
            content = msg.content
        payload.append({"role": msg.role, "content": content})
    return payload


class ClaudeClient(GenerationClient):
    name = "claude"

    def __init__(self, api_key: str, model: str = DEFAULT_CLAUDE_MODEL, max_tokens: int = 16000, **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens

    def _classify(self, exc: Exception) -> Exception:
        if isinstance(exc, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
            return ConfigurationError(f"Claude rejected the API key: {exc}")
        return super()._classify(exc)

    async def _stream_raw(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        if not self.api_key:
            raise ConfigurationError("ANTHROPIC_API_KEY not set")
        client = _get_claude_client(self.api_key)
        has_image = any(m.image_data for m in request.messages)
        logger.info("Calling Claude (%s, image=%s)...", self.model, "yes" if has_image else "no")
        t0 = time.time()

        raw = ""
        async with client.messages.stream(
            model=self.model,
            max_tokens=self.max_tokens,
            system=request.system,
            messages=claude_messages(request.messages),
        ) as stream:
            async for text in stream.text_stream:
                raw += text
                yield StreamEvent.delta(text)
            final = await stream.get_final_message()

        usage = UsageInfo(model=self.model)
        if final is not None and getattr(final, "usage", None):
            usage = compute_usage(self.model, final.usage.input_tokens, final.usage.output_tokens)
            logger.info(
                "Claude (%s) tokens: in=%d, out=%d, cost=$%.4f",
                self.model, usage.input_tokens, usage.output_tokens, usage.cost_usd,
            )
        logger.info("Claude responded: %.1fs, %d chars", time.time() - t0, len(raw))
        yield StreamEvent.done(extract_code(raw), usage)


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------

def gemini_contents(messages: list[ChatMessage]) -> list[genai_types.Content]:
    contents: list[genai_types.Content] = []
    for msg in messages:
        parts: list[genai_types.Part] = []
        if msg.image_data and msg.image_mime:
            parts.append(genai_types.Part.from_bytes(data=msg.image_data, mime_type=msg.image_mime))
        parts.append(genai_types.Part.from_text(text=msg.content))
        contents.append(genai_types.Content(role="model" if msg.role == "assistant" else "user", parts=parts))
    return contents


class GeminiClient(GenerationClient):
    name = "gemini"

    def __init__(self, api_key: str, model: str = DEFAULT_GEMINI_MODEL, max_tokens: int = 65536, **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens

    def _classify(self, exc: Exception) -> Exception:
        if isinstance(exc, genai_errors.ClientError) and getattr(exc, "code", None) in (401, 403):
            return ConfigurationError(f"Gemini rejected the API key: {exc}")
        return super()._classify(exc)

    async def _stream_raw(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        if not self.api_key:
            raise ConfigurationError("GEMINI_API_KEY not set")
        client = _get_gemini_client(self.api_key)
        has_image = any(m.image_data for m in request.messages)
        logger.info("Calling Gemini (%s, image=%s)...", self.model, "yes" if has_image else "no")
        t0 = time.time()

        config = genai_types.GenerateContentConfig(
            system_instruction=request.system,
            maxOutputTokens=self.max_tokens,
            temperature=1.0,
            topP=0.95,
            thinkingConfig=genai_types.ThinkingConfig(thinkingBudget=10000),
        )

        raw = ""
        usage_metadata = None
        async for chunk in await client.aio.models.generate_content_stream(
            model=self.model,
            contents=gemini_contents(request.messages),
            config=config,
        ):
            if chunk.usage_metadata:
                usage_metadata = chunk.usage_metadata
            text = chunk.text
            if text:
                raw += text
                yield StreamEvent.delta(text)

        usage = UsageInfo(model=self.model)
        if usage_metadata is not None:
            usage = compute_usage(
                self.model,
                getattr(usage_metadata, "prompt_token_count", 0) or 0,
                getattr(usage_metadata, "candidates_token_count", 0) or 0,
            )
            logger.info(
                "Gemini tokens: in=%d, out=%d, cost=$%.4f",
                usage.input_tokens, usage.output_tokens, usage.cost_usd,
            )
        logger.info("Gemini responded: %.1fs, %d chars", time.time() - t0, len(raw))
        yield StreamEvent.done(extract_code(raw), usage)


# ---------------------------------------------------------------------------
# Remote SolidGen service (POST /generate, NDJSON when streaming)
# ---------------------------------------------------------------------------

class RemoteGenerationClient(GenerationClient):
    name = "remote"

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"X-API-Key": self.api_key} if self.api_key else {}
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(self.timeout_seconds),
            transport=self.transport,
        )

    @staticmethod
    def _body(request: GenerationRequest) -> dict[str, Any]:
        history = [{"role": m.role, "content": m.content} for m in request.messages]
        body: dict[str, Any] = {"conversation_history": history}
        if request.current_code:
            body["current_script"] = request.current_code
        last = request.messages[-1] if request.messages else None
        if last is not None and last.image_data and last.image_mime:
            body["image_attachment"] = {
                "data": base64.b64encode(last.image_data).decode("ascii"),
                "mime_type": last.image_mime,
            }
        return body

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code in (401, 403):
            raise ConfigurationError(f"remote service rejected the API key ({response.status_code})")
        if response.status_code >= 400:
            raise TransportError(f"remote service returned HTTP {response.status_code}")

    @staticmethod
    def parse_line(line: str) -> StreamEvent | None:
        """One NDJSON line → event, or None for anything non-conforming."""
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            return None
        if not isinstance(obj, dict):
            return None
        kind = obj.get("type")
        if kind == "delta" and isinstance(obj.get("text"), str):
            return StreamEvent.delta(obj["text"])
        if kind == "done" and isinstance(obj.get("code"), str):
            return StreamEvent.done(obj["code"])
        if kind == "error" and isinstance(obj.get("error"), str):
            error_kind = "configuration" if obj.get("kind") == "configuration" else "transport"
            return StreamEvent(type="error", error=obj["error"], error_kind=error_kind)
        return None

    async def _stream_raw(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST", "/generate", params={"stream": "true"}, json=self._body(request)
                ) as response:
                    self._raise_for_status(response)
                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        event = self.parse_line(line)
                        if event is None:
                            logger.warning("Ignoring malformed stream line: %.200s", line)
                            continue
                        yield event
                        if event.type in ("done", "error"):
                            return
        except httpx.HTTPError as exc:
            raise TransportError(f"remote service unreachable: {exc}") from exc

    async def generate(self, request: GenerationRequest) -> LLMResponse:
        t0 = time.time()
        try:
            async with self._client() as client:
                response = await client.post("/generate", json=self._body(request))
        except httpx.HTTPError as exc:
            raise TransportError(f"remote service unreachable: {exc}") from exc
        self._raise_for_status(response)
        try:
            payload = response.json()
        except ValueError:
            raise TransportError("remote service returned a non-JSON response") from None
        code = payload.get("code") if isinstance(payload, dict) else None
        if not isinstance(code, str):
            raise TransportError("remote service response has no 'code' field")
        return LLMResponse(code=code, usage=UsageInfo(model="remote"), elapsed_seconds=time.time() - t0)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def build_generation_client(llm_name: str, settings: Any) -> GenerationClient:
    """Client for ``claude`` / ``claude-opus`` / ``claude-sonnet`` / ``gemini`` / ``remote``."""
    retry = {
        "max_overload_retries": settings.max_overload_retries,
        "overload_backoff_seconds": settings.overload_backoff_seconds,
    }
    if llm_name == "gemini":
        return GeminiClient(settings.gemini_api_key, model=settings.gemini_model, **retry)
    if llm_name == "remote":
        if not settings.remote_generate_url:
            raise ConfigurationError("remote_generate_url not set")
        return RemoteGenerationClient(settings.remote_generate_url, api_key=settings.remote_api_key, **retry)
    model = settings.claude_model
    if llm_name == "claude-opus":
        model = "claude-opus-4-6"
    elif llm_name == "claude-sonnet":
        model = "claude-sonnet-4-6"
    return ClaudeClient(settings.anthropic_api_key, model=model, max_tokens=settings.max_tokens, **retry)




