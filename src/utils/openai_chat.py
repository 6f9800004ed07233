from __future__ import annotations

from typing import Any, Dict

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.utils.logging import get_logger

log = get_logger(__name__)

OFFLINE_REPLY = "[offline] Unable to call model. Provide key to enable generation."


class OpenAIConfigError(RuntimeError):
    """Raised when the OpenAI-compatible provider is misconfigured."""


@retry(
    wait=wait_exponential(multiplier=1, min=1, max=8),
    stop=stop_after_attempt(3),
    retry=retry_if_exception_type(httpx.TransportError),
    reraise=True,
)
async def _post_chat(base_url: str, api_key: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
    async with httpx.AsyncClient(timeout=30.0) as client:
        response = await client.post(f"{base_url.rstrip('/')}/chat/completions", headers=headers, json=payload)
        response.raise_for_status()
        return response.json()


class OpenAIChatModel:
    """Free-form completions from an OpenAI-compatible chat endpoint."""

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str,
        system_message: str = "You are a helpful assistant.",
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url
        self.system_message = system_message

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def generate(self, prompt: str, *, model_id: str, params: Dict[str, Any]) -> str:
        if not self.enabled:
            log.warning("openai_offline", model=model_id)
            return OFFLINE_REPLY
        if not model_id:
            raise OpenAIConfigError("OPENAI_MODEL is not configured")

        payload: Dict[str, Any] = {
            "model": model_id,
            "messages": [
                {"role": "system", "content": self.system_message},
                {"role": "user", "content": prompt},
            ],
        }
        for name in ("max_tokens", "temperature", "top_p"):
            if params.get(name) is not None:
                payload[name] = params[name]

        data = await _post_chat(self.base_url, self.api_key or "", payload)
        return data.get("choices", [{}])[0].get("message", {}).get("content", "")
