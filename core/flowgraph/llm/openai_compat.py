"""
OpenAI-compatible chat-completion provider over httpx.

Works against any endpoint speaking the ``/chat/completions`` protocol
(OpenRouter, OpenAI, vLLM, LM Studio ...). Model ids are passed through
verbatim, so OpenRouter-style ``provider/model`` ids work unchanged.
"""

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from flowgraph.config import get_api_base, get_api_key
from flowgraph.graph.errors import TRANSIENT_CODES, ProviderError, classify_error, classify_status
from flowgraph.llm.provider import (
    InvokeOptions,
    LLMProvider,
    LLMResponse,
    ModelCapabilities,
    TokenUsage,
    ToolUse,
    infer_capabilities,
)
from flowgraph.llm.stream_events import (
    FinishEvent,
    ReasoningDeltaEvent,
    StreamErrorEvent,
    StreamEvent,
    TextDeltaEvent,
    TextEndEvent,
    ToolCallEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://openrouter.ai/api/v1"


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {"_raw": raw}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


class OpenAICompatibleProvider(LLMProvider):
    """
    Chat-completion provider for OpenAI-compatible HTTP APIs.

    Example:
        provider = OpenAICompatibleProvider(api_key=os.environ["OPENROUTER_API_KEY"])
        response = await provider.invoke(
            [{"role": "user", "content": "Hello"}], model="openai/gpt-4o-mini"
        )
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        timeout: float = 120.0,
        extra_headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Args:
            api_key: Bearer token; read from configuration when omitted
            api_base: Endpoint root; OpenRouter when omitted
            timeout: Request timeout in seconds
            extra_headers: Sent with every request (e.g. HTTP-Referer for OpenRouter)
            client: Pre-built client (tests inject one with a mock transport)
        """
        self.api_key = api_key or get_api_key()
        self.api_base = (api_base or get_api_base() or DEFAULT_API_BASE).rstrip("/")
        headers = {"Content-Type": "application/json", **(extra_headers or {})}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = headers
        self._capabilities: dict[str, ModelCapabilities] = {}

    async def aclose(self) -> None:
        await self._client.aclose()

    def _build_payload(
        self,
        messages: list[dict[str, Any]],
        model: str,
        options: InvokeOptions | None,
        stream: bool,
    ) -> dict[str, Any]:
        options = options or InvokeOptions()
        payload: dict[str, Any] = {"model": model, "messages": messages}
        if options.temperature is not None:
            payload["temperature"] = options.temperature
        if options.max_tokens is not None:
            payload["max_tokens"] = options.max_tokens
        if options.tools:
            payload["tools"] = [t.to_llm_dict() for t in options.tools]
            if options.tool_choice is not None:
                payload["tool_choice"] = options.tool_choice
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    @staticmethod
    def _raise_for_status(response: httpx.Response, body: str) -> None:
        if response.is_success:
            return
        code = classify_status(response.status_code)
        try:
            detail = json.loads(body).get("error", {}).get("message", body)
        except (json.JSONDecodeError, AttributeError):
            detail = body
        raise ProviderError(
            f"HTTP {response.status_code}: {detail}",
            transient=code in TRANSIENT_CODES,
            status_code=response.status_code,
        )

    @staticmethod
    def _wrap_transport_error(e: httpx.HTTPError) -> ProviderError:
        return ProviderError(f"{type(e).__name__}: {e}", transient=classify_error(e) in TRANSIENT_CODES)

    async def invoke(
        self,
        messages: list[dict[str, Any]],
        model: str,
        options: InvokeOptions | None = None,
    ) -> LLMResponse:
        payload = self._build_payload(messages, model, options, stream=False)
        try:
            response = await self._client.post(
                f"{self.api_base}/chat/completions", json=payload, headers=self._headers
            )
        except httpx.HTTPError as e:
            raise self._wrap_transport_error(e) from e
        self._raise_for_status(response, response.text)

        data = response.json()
        choice = (data.get("choices") or [{}])[0]
        message = choice.get("message") or {}
        tool_calls = [
            ToolUse(
                id=call.get("id", ""),
                name=call.get("function", {}).get("name", ""),
                input=_parse_arguments(call.get("function", {}).get("arguments")),
            )
            for call in message.get("tool_calls") or []
        ]
        usage = data.get("usage") or {}
        return LLMResponse(
            content=message.get("content") or "",
            model=data.get("model", model),
            tool_calls=tool_calls,
            usage=TokenUsage(
                input_tokens=usage.get("prompt_tokens", 0),
                output_tokens=usage.get("completion_tokens", 0),
            ),
            stop_reason=choice.get("finish_reason") or "",
            reasoning=message.get("reasoning") or "",
            raw_response=data,
        )

    async def stream(
        self,
        messages: list[dict[str, Any]],
        model: str,
        options: InvokeOptions | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Server-sent-event streaming; tool-call fragments are assembled before they are yielded."""
        payload = self._build_payload(messages, model, options, stream=True)
        text = ""
        stop_reason = ""
        usage: dict[str, Any] = {}
        response_model = model
        partial_calls: dict[int, dict[str, Any]] = {}

        try:
            async with self._client.stream(
                "POST", f"{self.api_base}/chat/completions", json=payload, headers=self._headers
            ) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    self._raise_for_status(response, body)

                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    chunk_text = line[len("data:") :].strip()
                    if chunk_text == "[DONE]":
                        break
                    try:
                        chunk = json.loads(chunk_text)
                    except json.JSONDecodeError:
                        logger.debug(f"Skipping malformed stream chunk: {chunk_text[:80]}")
                        continue

                    if "error" in chunk:
                        error = chunk["error"]
                        message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
                        yield StreamErrorEvent(error=message, recoverable=classify_error(Exception(message)) in TRANSIENT_CODES)
                        return

                    response_model = chunk.get("model", response_model)
                    if chunk.get("usage"):
                        usage = chunk["usage"]
                    for choice in chunk.get("choices") or []:
                        delta = choice.get("delta") or {}
                        if delta.get("reasoning"):
                            yield ReasoningDeltaEvent(content=delta["reasoning"])
                        if delta.get("content"):
                            text += delta["content"]
                            yield TextDeltaEvent(content=delta["content"], snapshot=text)
                        for fragment in delta.get("tool_calls") or []:
                            slot = partial_calls.setdefault(
                                fragment.get("index", 0), {"id": "", "name": "", "arguments": ""}
                            )
                            slot["id"] = fragment.get("id") or slot["id"]
                            function = fragment.get("function") or {}
                            slot["name"] = function.get("name") or slot["name"]
                            slot["arguments"] += function.get("arguments") or ""
                        if choice.get("finish_reason"):
                            stop_reason = choice["finish_reason"]
        except httpx.HTTPError as e:
            raise self._wrap_transport_error(e) from e

        for index in sorted(partial_calls):
            call = partial_calls[index]
            yield ToolCallEvent(
                tool_use_id=call["id"],
                tool_name=call["name"],
                tool_input=_parse_arguments(call["arguments"]),
            )
        yield TextEndEvent(full_text=text)
        yield FinishEvent(
            stop_reason=stop_reason,
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
            model=response_model,
        )

    async def get_capabilities(self, model: str) -> ModelCapabilities:
        """Ask the ``/models`` listing once per model; fall back to name-based inference."""
        if model in self._capabilities:
            return self._capabilities[model]

        capabilities = infer_capabilities(model)
        try:
            response = await self._client.get(f"{self.api_base}/models", headers=self._headers)
            if response.is_success:
                for entry in response.json().get("data", []):
                    if entry.get("id") != model:
                        continue
                    architecture = entry.get("architecture") or {}
                    capabilities = ModelCapabilities(
                        input_modalities=architecture.get("input_modalities") or ["text"],
                        output_modalities=architecture.get("output_modalities") or ["text"],
                        context_length=entry.get("context_length") or capabilities.context_length,
                    )
                    break
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Model listing unavailable, inferring capabilities for {model}: {e}")

        self._capabilities[model] = capabilities
        return capabilities
