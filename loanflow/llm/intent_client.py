import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from loanflow.core.retry import API, RetryExecutor
from loanflow.errors import ApiError, AuthenticationError, TransientProviderError
from loanflow.observability.logging import log
from loanflow.settings import settings

SYSTEM_PROMPT = (
    "You are a loan onboarding assistant for loans against mutual funds. "
    "Help the customer finish contact verification, KYC, bank verification, mandate setup, "
    "agreement signing and loan creation. When the customer has given what an action needs, "
    "call exactly one function. Otherwise reply briefly and ask for the missing detail. "
    "Never invent reference ids, OTPs or account numbers."
)


@dataclass
class Intent:
    text: Optional[str] = None
    action: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw or "{}")
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def parse_completion(data: Dict[str, Any]) -> Intent:
    message = ((data.get("choices") or [{}])[0] or {}).get("message") or {}
    tool_calls = message.get("tool_calls") or []
    if tool_calls:
        fn = tool_calls[0].get("function") or {}
        if fn.get("name"):
            return Intent(action=fn["name"], params=_parse_arguments(fn.get("arguments")))
    return Intent(text=(message.get("content") or "").strip())


class IntentClient:
    """OpenAI-compatible chat completions with the action catalog passed as tools.

    POST {LLM_BASE_URL}/chat/completions
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        executor: Optional[RetryExecutor] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        # Expect base url to include /v1
        self.base_url = (base_url if base_url is not None else settings.LLM_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.LLM_API_KEY
        self.model = model or settings.LLM_MODEL
        self.executor = executor or RetryExecutor()
        self._client = httpx.AsyncClient(timeout=float(timeout or settings.LLM_REQUEST_TIMEOUT_SEC), transport=transport)

    def _headers(self) -> dict:
        h = {"Content-Type": "application/json"}
        if self.api_key:
            h["Authorization"] = f"Bearer {self.api_key}"
        return h

    async def aclose(self) -> None:
        await self._client.aclose()

    async def resolve(
        self,
        history: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        context: str = "",
    ) -> Intent:
        if not self.base_url:
            raise RuntimeError("LLM_BASE_URL is not set")

        system = SYSTEM_PROMPT + (f"\n\nCurrent onboarding state:\n{context}" if context else "")
        messages = [{"role": "system", "content": system}]
        messages.extend({"role": t.get("role"), "content": t.get("content") or ""} for t in history)
        payload = {
            "model": self.model,
            "messages": messages,
            "tools": tools,
            "tool_choice": "auto",
            "temperature": float(settings.LLM_TEMPERATURE),
        }

        async def _post():
            try:
                resp = await self._client.post(f"{self.base_url}/chat/completions", headers=self._headers(), json=payload)
            except (httpx.TimeoutException, httpx.NetworkError) as e:
                raise TransientProviderError(f"Intent service unreachable: {type(e).__name__}") from e
            if resp.status_code == 401:
                raise AuthenticationError("Intent service rejected the API key")
            if resp.status_code == 429 or resp.status_code >= 500:
                raise TransientProviderError(f"Intent service error {resp.status_code}", status=resp.status_code)
            if resp.status_code >= 400:
                raise ApiError(f"Intent service error {resp.status_code}", status=resp.status_code)
            return resp.json()

        data = await self.executor.execute(_post, API, action="intent_resolution")
        intent = parse_completion(data)
        log(event="intent_resolved", action=intent.action, hasText=bool(intent.text))
        return intent
