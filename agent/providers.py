"""
HyperCut Agent - Chat Providers

Chat backends the orchestrator talks to, plus privacy-mode routing.

  1. LMStudioProvider - local OpenAI-compatible /chat/completions endpoint
  2. GeminiProvider  - Google generateContent REST API
  3. RoutedProvider  - tries providers in privacy-mode order with fallback

Routing:
    local-only       -> [lm-studio]
    hybrid           -> [lm-studio, gemini]
    cloud-preferred  -> [gemini, lm-studio]

Privacy mode comes from provider.privacy_mode in config; otherwise it is
cloud-preferred when provider.type is gemini and local-only for anything
else.

All HTTP goes through httpx.AsyncClient. Tests inject an
httpx.MockTransport through ``transport``.

Usage:
    provider = create_routed_provider(config["provider"])
    response = await provider.chat(messages, registry.definitions(), token=token)
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable

import httpx

from agent.cancellation import CancellationToken, is_cancellation_error, run_cancellable
from agent.types import ChatResponse, Message, ToolCall, ToolDefinition

logger = logging.getLogger("hypercut_agent.providers")

LM_STUDIO = "lm-studio"
GEMINI = "gemini"
AVAILABILITY_TIMEOUT_S = 3.0


class ProviderError(Exception):
    """A chat backend failed: HTTP error, timeout, or malformed response."""
    pass


class NoProviderRouteError(ProviderError):
    """No provider in the privacy-mode route is available."""
    pass


@runtime_checkable
class ChatProvider(Protocol):
    name: str

    async def chat(
        self,
        messages: list[Message],
        tools: list[ToolDefinition],
        temperature: float | None = None,
        token: CancellationToken | None = None,
    ) -> ChatResponse:
        ...

    async def is_available(self) -> bool:
        ...


# ═══════════════════════════════════════════════════════════════════
# LM Studio (OpenAI-compatible)
# ═══════════════════════════════════════════════════════════════════

@dataclass
class LMStudioOptions:
    url: str = "http://localhost:1234/v1"
    model: str = "qwen/qwen3-vl-8b"
    timeout_ms: int = 120000
    max_tokens: int = 4096
    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 40
    repeat_penalty: float = 1.1
    stop: list[str] | None = None

    @classmethod
    def from_config(cls, section: dict[str, Any] | None) -> LMStudioOptions:
        section = section or {}
        known = {k: v for k, v in section.items() if k in cls.__dataclass_fields__ and v is not None}
        return cls(**known)


def _to_openai_message(message: Message) -> dict[str, Any]:
    if message.role == "assistant" and message.tool_calls:
        return {
            "role": "assistant",
            "content": message.content,
            "tool_calls": [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.arguments, ensure_ascii=False)},
                }
                for call in message.tool_calls
            ],
        }
    if message.role == "tool":
        return {
            "role": "tool",
            "content": message.content,
            "tool_call_id": message.tool_call_id,
            "name": message.name,
        }
    return {"role": message.role, "content": message.content}


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Discarding unparseable tool arguments: %.200s", raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}


class LMStudioProvider:
    name = LM_STUDIO

    def __init__(self, options: LMStudioOptions | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.options = options or LMStudioOptions()
        self._transport = transport

    def _client(self, timeout_s: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout_s, transport=self._transport)

    def build_request(
        self,
        messages: list[Message],
        tools: list[ToolDefinition],
        temperature: float | None = None,
    ) -> dict[str, Any]:
        o = self.options
        body: dict[str, Any] = {
            "model": o.model,
            "messages": [_to_openai_message(m) for m in messages],
            "tools": [
                {"type": "function", "function": t.to_dict()}
                for t in tools
            ],
            "max_tokens": o.max_tokens,
            "temperature": temperature if temperature is not None else o.temperature,
            "top_p": o.top_p,
            "top_k": o.top_k,
            "repeat_penalty": o.repeat_penalty,
        }
        if o.stop:
            body["stop"] = list(o.stop)
        return body

    async def chat(
        self,
        messages: list[Message],
        tools: list[ToolDefinition],
        temperature: float | None = None,
        token: CancellationToken | None = None,
    ) -> ChatResponse:
        body = self.build_request(messages, tools, temperature)
        async with self._client(self.options.timeout_ms / 1000) as client:
            try:
                resp = await run_cancellable(
                    client.post(f"{self.options.url}/chat/completions", json=body), token)
            except httpx.TimeoutException as e:
                raise ProviderError("LM Studio request timed out") from e
            except httpx.HTTPError as e:
                raise ProviderError(f"LM Studio request failed: {e}") from e

        if resp.status_code >= 400:
            raise ProviderError(f"LM Studio API error: {resp.status_code} {resp.reason_phrase}")
        return self.parse_response(resp.json())

    @staticmethod
    def parse_response(data: dict[str, Any]) -> ChatResponse:
        choices = data.get("choices") or []
        if not choices:
            return ChatResponse(content=None, tool_calls=[], finish_reason="error")
        choice = choices[0]
        message = choice.get("message") or {}
        tool_calls = [
            ToolCall(
                id=str(tc.get("id") or ""),
                name=str((tc.get("function") or {}).get("name") or ""),
                arguments=_parse_arguments((tc.get("function") or {}).get("arguments")),
            )
            for tc in message.get("tool_calls") or []
        ]
        return ChatResponse(
            content=message.get("content"),
            tool_calls=tool_calls,
            finish_reason="tool_calls" if choice.get("finish_reason") == "tool_calls" else "stop",
        )

    async def is_available(self) -> bool:
        try:
            async with self._client(AVAILABILITY_TIMEOUT_S) as client:
                resp = await client.get(f"{self.options.url}/models")
        except httpx.HTTPError as e:
            logger.debug("LM Studio unavailable: %s", e)
            return False
        return resp.status_code < 400


# ═══════════════════════════════════════════════════════════════════
# Gemini
# ═══════════════════════════════════════════════════════════════════

@dataclass
class GeminiOptions:
    api_key: str = ""
    model: str = "gemini-2.5-flash"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    timeout_ms: int = 30000

    @classmethod
    def from_config(cls, section: dict[str, Any] | None) -> GeminiOptions:
        section = section or {}
        known = {k: v for k, v in section.items() if k in cls.__dataclass_fields__ and v is not None}
        return cls(**known)


def _text_parts(content: Any) -> list[dict[str, Any]]:
    if isinstance(content, str):
        return [{"text": content}] if content.strip() else []
    if not isinstance(content, list):
        return []
    parts = []
    for part in content:
        if part.get("type") == "text":
            parts.append({"text": part.get("text", "")})
        elif part.get("type") == "image_url":
            url = (part.get("image_url") or {}).get("url", "")
            if url.startswith("data:") and ";base64," in url:
                mime, b64 = url[5:].split(";base64,", 1)
                parts.append({"inlineData": {"mimeType": mime, "data": b64}})
            else:
                parts.append({"text": f"[image_url] {url}"})
    return parts


class GeminiProvider:
    name = GEMINI

    def __init__(self, options: GeminiOptions | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.options = options or GeminiOptions()
        self._transport = transport

    def _client(self, timeout_s: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout_s, transport=self._transport)

    def build_request(
        self,
        messages: list[Message],
        tools: list[ToolDefinition],
        temperature: float | None = None,
    ) -> dict[str, Any]:
        contents: list[dict[str, Any]] = []
        system: list[str] = []
        for message in messages:
            if message.role == "system":
                system.extend(p["text"] for p in _text_parts(message.content) if p.get("text", "").strip())
                continue
            if message.role == "tool":
                payload = message.content if isinstance(message.content, str) else json.dumps(message.content)
                contents.append({"role": "user", "parts": [{"text": f"[tool:{message.name or 'unknown'}] {payload}"}]})
                continue
            parts = _text_parts(message.content)
            if parts:
                contents.append({"role": "model" if message.role == "assistant" else "user", "parts": parts})

        body: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {"temperature": temperature if temperature is not None else 0.7},
        }
        if system:
            body["systemInstruction"] = {"parts": [{"text": "\n\n".join(system)}]}
        if tools:
            body["tools"] = [{"functionDeclarations": [t.to_dict() for t in tools]}]
        return body

    async def chat(
        self,
        messages: list[Message],
        tools: list[ToolDefinition],
        temperature: float | None = None,
        token: CancellationToken | None = None,
    ) -> ChatResponse:
        o = self.options
        if not o.api_key:
            raise ProviderError("Gemini API key is missing")
        body = self.build_request(messages, tools, temperature)
        if not body["contents"]:
            return ChatResponse(content=None, tool_calls=[], finish_reason="stop")

        url = f"{o.base_url}/models/{o.model}:generateContent"
        async with self._client(o.timeout_ms / 1000) as client:
            try:
                resp = await run_cancellable(client.post(url, params={"key": o.api_key}, json=body), token)
            except httpx.TimeoutException as e:
                raise ProviderError("Gemini request timed out") from e
            except httpx.HTTPError as e:
                raise ProviderError(f"Gemini request failed: {e}") from e

        if resp.status_code >= 400:
            raise ProviderError(f"Gemini API error: {resp.status_code} {resp.reason_phrase}")
        return self.parse_response(resp.json())

    @staticmethod
    def parse_response(data: dict[str, Any]) -> ChatResponse:
        candidates = data.get("candidates") or []
        parts = ((candidates[0].get("content") or {}).get("parts") or []) if candidates else []
        tool_calls = [
            ToolCall(
                id=str(uuid.uuid4()),
                name=part["functionCall"].get("name", ""),
                arguments=dict(part["functionCall"].get("args") or {}),
            )
            for part in parts if "functionCall" in part
        ]
        texts = [p["text"].strip() for p in parts if isinstance(p.get("text"), str) and p["text"].strip()]
        return ChatResponse(
            content="\n".join(texts) if texts else None,
            tool_calls=tool_calls,
            finish_reason="tool_calls" if tool_calls else "stop",
        )

    async def is_available(self) -> bool:
        if not self.options.api_key:
            return False
        try:
            async with self._client(AVAILABILITY_TIMEOUT_S) as client:
                resp = await client.get(f"{self.options.base_url}/models", params={"key": self.options.api_key})
        except httpx.HTTPError as e:
            logger.debug("Gemini unavailable: %s", e)
            return False
        return resp.status_code < 400


# ═══════════════════════════════════════════════════════════════════
# Privacy-mode routing
# ═══════════════════════════════════════════════════════════════════

class PrivacyMode(str, Enum):
    LOCAL_ONLY = "local-only"
    HYBRID = "hybrid"
    CLOUD_PREFERRED = "cloud-preferred"


ROUTES = {
    PrivacyMode.LOCAL_ONLY: [LM_STUDIO],
    PrivacyMode.HYBRID: [LM_STUDIO, GEMINI],
    PrivacyMode.CLOUD_PREFERRED: [GEMINI, LM_STUDIO],
}


@dataclass
class ProviderRoute:
    task_type: str
    privacy_mode: PrivacyMode
    provider_order: list[str]


def resolve_privacy_mode(config: dict[str, Any] | None) -> PrivacyMode:
    config = config or {}
    explicit = config.get("privacy_mode")
    if explicit in {m.value for m in PrivacyMode}:
        return PrivacyMode(explicit)
    return PrivacyMode.CLOUD_PREFERRED if config.get("type") == GEMINI else PrivacyMode.LOCAL_ONLY


def resolve_provider_route(task_type: str, config: dict[str, Any] | None) -> ProviderRoute:
    mode = resolve_privacy_mode(config)
    return ProviderRoute(task_type=task_type, privacy_mode=mode, provider_order=list(ROUTES[mode]))


def create_provider(provider_type: str, config: dict[str, Any] | None = None,
                    transport: httpx.AsyncBaseTransport | None = None) -> ChatProvider:
    """
    Raises:
        ValueError: For an unknown provider type.
    """
    config = config or {}
    if provider_type == LM_STUDIO:
        return LMStudioProvider(LMStudioOptions.from_config(config.get("lm_studio")), transport=transport)
    if provider_type == GEMINI:
        return GeminiProvider(GeminiOptions.from_config(config.get("gemini")), transport=transport)
    raise ValueError(f"Unknown provider type: {provider_type}")


class RoutedProvider:
    """
    Tries each provider of the route in order.

    Unavailable providers are skipped; a provider that fails mid-chat falls
    through to the next one. Cancellation is re-raised immediately.
    """

    name = "routed"

    def __init__(self, providers: list[ChatProvider], privacy_mode: PrivacyMode = PrivacyMode.LOCAL_ONLY):
        self.providers = list(providers)
        self.privacy_mode = privacy_mode

    async def chat(
        self,
        messages: list[Message],
        tools: list[ToolDefinition],
        temperature: float | None = None,
        token: CancellationToken | None = None,
    ) -> ChatResponse:
        last_error: Exception | None = None
        for provider in self.providers:
            if token is not None:
                token.raise_if_cancelled()
            if not await provider.is_available():
                logger.info("Provider %s unavailable, trying next", provider.name)
                continue
            try:
                return await provider.chat(messages, tools, temperature=temperature, token=token)
            except Exception as e:
                if is_cancellation_error(e):
                    raise
                logger.warning("Provider %s failed, falling back: %s", provider.name, e)
                last_error = e
        if last_error is not None:
            raise ProviderError(f"All providers failed: {last_error}") from last_error
        raise NoProviderRouteError("No provider route available")

    async def is_available(self) -> bool:
        for provider in self.providers:
            if await provider.is_available():
                return True
        return False


def create_routed_provider(config: dict[str, Any] | None = None, task_type: str = "planning",
                           transport: httpx.AsyncBaseTransport | None = None) -> RoutedProvider:
    route = resolve_provider_route(task_type, config)
    logger.info("Provider route for %s: %s (%s)", task_type, route.provider_order, route.privacy_mode.value)
    return RoutedProvider(
        [create_provider(name, config, transport=transport) for name in route.provider_order],
        privacy_mode=route.privacy_mode,
    )
