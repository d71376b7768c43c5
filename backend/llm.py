import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from groq import APIError, AsyncGroq

import config
from errors import LLMError

logger = logging.getLogger(__name__)

# OpenAI-compatible chat endpoints. Groq goes through its own SDK.
PROVIDER_API_BASES = {
    "openai": "https://api.openai.com/v1",
    "mistral": "https://api.mistral.ai/v1",
    "deepseek": "https://api.deepseek.com/v1",
}


def _provider_keys() -> Dict[str, Optional[str]]:
    return {
        "groq": config.GROQ_API_KEY,
        "openai": config.OPENAI_API_KEY,
        "mistral": config.MISTRAL_API_KEY,
        "deepseek": config.DEEPSEEK_API_KEY,
    }


def _enabled_providers() -> Dict[str, bool]:
    return {name: bool(key) for name, key in _provider_keys().items()}


# --- Groq Client ---
_groq_client: Optional[AsyncGroq] = None
_groq_lock = threading.Lock()


def get_async_groq() -> AsyncGroq:
    global _groq_client
    if _groq_client is None:
        with _groq_lock:
            if _groq_client is None:
                if not config.GROQ_API_KEY:
                    raise LLMError("GROQ_API_KEY is not set")
                _groq_client = AsyncGroq(api_key=config.GROQ_API_KEY, timeout=config.LLM_TIMEOUT_SECONDS)
    return _groq_client


@dataclass
class ToolCall:
    id: str
    name: str
    # Raw JSON text as produced by the model; validated by the tool runner.
    arguments: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "type": "function", "function": {"name": self.name, "arguments": self.arguments}}


@dataclass
class AssistantReply:
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)

    def to_message(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"role": "assistant", "content": self.content or ""}
        if self.tool_calls:
            message["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        return message


def _arguments_text(arguments: Any) -> str:
    if isinstance(arguments, str):
        return arguments
    return json.dumps(arguments or {})


def _reply_from_dict(message: Dict[str, Any]) -> AssistantReply:
    calls = []
    for raw in message.get("tool_calls") or []:
        function = raw.get("function") or {}
        calls.append(
            ToolCall(
                id=raw.get("id") or "",
                name=function.get("name") or "",
                arguments=_arguments_text(function.get("arguments")),
            )
        )
    return AssistantReply(content=message.get("content") or "", tool_calls=calls)


class ChatBackend:
    """
    Chat completion client used by the turn orchestrator.

    ``complete`` drives the tool-calling agent; ``complete_text`` is a plain
    system + prompt completion used for titles, responses and project names.
    """

    def __init__(
        self,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        fast_model: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.provider = (provider or config.AGENT_PROVIDER).lower()
        self.model = model or config.AGENT_MODEL
        self.fast_model = fast_model or config.FAST_MODEL
        self.timeout = config.LLM_TIMEOUT_SECONDS if timeout is None else timeout

    def _check_provider(self) -> None:
        enabled = _enabled_providers()
        if self.provider not in enabled:
            raise LLMError(f"Unsupported provider '{self.provider}'")
        if not enabled[self.provider]:
            raise LLMError(f"Provider '{self.provider}' is not configured")

    async def _groq_chat(self, payload: Dict[str, Any]) -> AssistantReply:
        groq = get_async_groq()
        try:
            completion = await groq.chat.completions.create(**payload)
        except APIError as e:
            raise LLMError(f"LLM error: {e}") from e
        if not completion.choices:
            raise LLMError("LLM returned empty response")
        message = completion.choices[0].message
        calls = [
            ToolCall(id=call.id, name=call.function.name, arguments=_arguments_text(call.function.arguments))
            for call in message.tool_calls or []
        ]
        return AssistantReply(content=message.content or "", tool_calls=calls)

    async def _openai_compat_chat(self, payload: Dict[str, Any]) -> AssistantReply:
        api_base = PROVIDER_API_BASES[self.provider]
        api_key = _provider_keys()[self.provider]
        headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(f"{api_base}/chat/completions", headers=headers, json=payload)
        except httpx.HTTPError as e:
            raise LLMError(f"LLM request failed: {e}") from e
        if response.status_code >= 400:
            raise LLMError(f"LLM error: {response.text}")
        try:
            data = response.json()
            choices = data.get("choices") or []
            if not choices:
                raise LLMError("LLM returned empty response")
            return _reply_from_dict(choices[0].get("message") or {})
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise LLMError(f"LLM returned malformed response: {e}") from e

    async def _chat(self, payload: Dict[str, Any]) -> AssistantReply:
        self._check_provider()
        if self.provider == "groq":
            return await self._groq_chat(payload)
        return await self._openai_compat_chat(payload)

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: float = 0.2,
        max_tokens: int = 8192,
    ) -> AssistantReply:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        return await self._chat(payload)

    async def complete_text(self, system: str, prompt: str, max_tokens: int = 256) -> str:
        reply = await self._chat(
            {
                "model": self.fast_model,
                "messages": [{"role": "system", "content": system}, {"role": "user", "content": prompt}],
                "temperature": 0.3,
                "max_tokens": max_tokens,
            }
        )
        text = (reply.content or "").strip()
        if not text:
            raise LLMError("LLM returned empty response")
        return text


_backend: Optional[ChatBackend] = None
_backend_lock = threading.Lock()


def get_chat_backend() -> ChatBackend:
    global _backend
    if _backend is None:
        with _backend_lock:
            if _backend is None:
                _backend = ChatBackend()
                logger.info("Chat backend ready (provider=%s, model=%s)", _backend.provider, _backend.model)
    return _backend
