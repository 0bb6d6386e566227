"""Streaming client for the OpenAI-compatible assistant gateway.

The gateway answers ``POST /chat/completions`` with a Server-Sent-Events body
of ``data:`` lines carrying ``choices[0].delta.content`` fragments and a final
``data: [DONE]`` sentinel. The model is prompted to request a human operator
with a JSON control object; this module turns that object into a typed
``escalate`` flag so callers never parse reply text themselves.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Sequence

import httpx

from helpdesk.core.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = """You are the support assistant of a hosting provider's helpdesk.

INSTRUCTIONS:
1. If the user asks to connect to an operator, transfer to support, speak to a human,
   or anything similar, reply with this JSON object and nothing else:
   {"action": "escalate", "reason": "User requested human support"}
2. For all other questions be helpful, professional and concise. If you do not know
   something, say so and suggest contacting support.
3. Keep answers under 150 words unless more detail is needed.
4. Always be polite and customer-focused."""

_DECODER = json.JSONDecoder()
_DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True, slots=True)
class ConversationTurn:
    role: str
    content: str

    def to_payload(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True, slots=True)
class AssistantReply:
    """Outcome of one assistant call: either reply text or an escalation request."""

    reply: str | None
    escalate: bool = False


class AssistantError(RuntimeError):
    """Base error for assistant calls that produced no usable reply."""

    reason = "error"


class AssistantRateLimitedError(AssistantError):
    reason = "rate_limited"


class AssistantQuotaExceededError(AssistantError):
    reason = "quota_exceeded"


class AssistantUnavailableError(AssistantError):
    reason = "unavailable"


class AssistantMalformedStreamError(AssistantError):
    reason = "malformed_stream"


class AssistantClient:
    """Send a conversation to the gateway and assemble the streamed reply."""

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: str | None = None,
        timeout: float = 60.0,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._model = model
        self._system_prompt = system_prompt
        self._owns_client = client is None
        if client is None:
            headers = {"Content-Type": "application/json"}
            if api_key:
                headers["Authorization"] = f"Bearer {api_key}"
            client = httpx.AsyncClient(base_url=base_url, timeout=timeout, headers=headers)
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "AssistantClient":
        return cls(
            base_url=settings.assistant_base_url,
            model=settings.assistant_model,
            api_key=settings.assistant_api_key,
            timeout=settings.assistant_timeout_seconds,
        )

    async def close(self) -> None:
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()

    def build_payload(self, conversation: Sequence[ConversationTurn]) -> dict[str, Any]:
        messages = [{"role": "system", "content": self._system_prompt}]
        messages.extend(turn.to_payload() for turn in conversation)
        return {"model": self._model, "messages": messages, "stream": True}

    async def complete(self, conversation: Sequence[ConversationTurn]) -> AssistantReply:
        payload = self.build_payload(conversation)
        try:
            async with self._client.stream("POST", "/chat/completions", json=payload) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise self._error_for_status(response.status_code, body)
                text = await self._collect_stream(response)
        except httpx.HTTPError as exc:
            raise AssistantUnavailableError(f"Assistant gateway unreachable: {exc}") from exc

        return self.interpret(text)

    @staticmethod
    def interpret(text: str) -> AssistantReply:
        """Convert the assembled reply text into a typed envelope."""

        if _requests_escalation(text):
            return AssistantReply(reply=None, escalate=True)
        reply = text.strip()
        if not reply:
            raise AssistantMalformedStreamError("Assistant returned an empty reply")
        return AssistantReply(reply=reply)

    @staticmethod
    async def _collect_stream(response: httpx.Response) -> str:
        fragments: list[str] = []
        async for line in response.aiter_lines():
            line = line.strip()
            if not line or line.startswith(":") or not line.startswith("data:"):
                continue
            data = line[len("data:"):].strip()
            if data == _DONE_SENTINEL:
                return "".join(fragments)
            try:
                chunk = json.loads(data)
            except json.JSONDecodeError as exc:
                raise AssistantMalformedStreamError("Assistant stream carried invalid JSON") from exc
            try:
                content = chunk["choices"][0].get("delta", {}).get("content")
            except (KeyError, IndexError, TypeError, AttributeError) as exc:
                raise AssistantMalformedStreamError("Assistant stream chunk has no choices") from exc
            if content:
                fragments.append(content)
        raise AssistantMalformedStreamError("Assistant stream ended without the completion sentinel")

    @staticmethod
    def _error_for_status(status_code: int, body: str) -> AssistantError:
        logger.warning("Assistant gateway returned %s: %s", status_code, body[:500])
        if status_code == 429:
            return AssistantRateLimitedError("Assistant rate limit exceeded")
        if status_code == 402:
            return AssistantQuotaExceededError("Assistant credits depleted")
        return AssistantUnavailableError(f"Assistant gateway error {status_code}")


def _requests_escalation(text: str) -> bool:
    """Whether any JSON object embedded in ``text`` carries ``"action": "escalate"``."""

    start = text.find("{")
    while start != -1:
        try:
            value, _ = _DECODER.raw_decode(text, start)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict) and value.get("action") == "escalate":
            return True
        start = text.find("{", start + 1)
    return False
