import json
from typing import Any, Dict, List, Optional

import httpx

from .errors import GenerationError
from .http_utils import raise_for_external_status, transport_error

ALLOWED_ROLES = {"system", "user", "assistant"}


class LLMClient:
    """OpenAI-compatible chat completions client."""

    provider = "llm"

    def __init__(self, base_url: str, api_key: Optional[str] = None, max_output_tokens: Optional[int] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.max_output_tokens = max_output_tokens
        self.client = httpx.AsyncClient(timeout=60)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict):
                continue
            role = msg.get("role")
            if role not in ALLOWED_ROLES:
                continue
            content = msg.get("content")
            if content is None:
                continue
            if isinstance(content, str):
                if not content.strip():
                    continue
                cleaned_content = content
            else:
                cleaned_content = json.dumps(content, ensure_ascii=True)
            sanitized.append({"role": role, "content": cleaned_content})
        return sanitized

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.8,
        max_tokens: int = 800,
        response_format: Optional[dict] = None,
        seed: Optional[int] = None,
    ) -> Dict[str, Any]:
        cleaned = self._sanitize_messages(messages)
        if not cleaned:
            raise ValueError("messages must include at least one non-empty entry")
        if not str(model or "").strip():
            raise ValueError("model is required")
        final_max_tokens = max_tokens
        if self.max_output_tokens:
            final_max_tokens = min(max_tokens, self.max_output_tokens)
        payload: Dict[str, Any] = {
            "model": model,
            "messages": cleaned,
            "temperature": temperature,
            "max_tokens": final_max_tokens,
            "stream": False,
        }
        if response_format:
            payload["response_format"] = response_format
        if seed is not None:
            payload["seed"] = seed
        try:
            resp = await self.client.post(f"{self.base_url}/chat/completions", json=payload, headers=self._headers())
        except httpx.RequestError as exc:
            raise transport_error(exc, self.provider) from exc
        raise_for_external_status(resp, self.provider, {"model": model})
        return resp.json()

    async def complete_text(self, model: str, messages: List[Dict[str, Any]], **kwargs: Any) -> str:
        """Return the first choice's message content."""
        data = await self.chat_completion(model, messages, **kwargs)
        choices = (data.get("choices") or []) if isinstance(data, dict) else []
        if not choices:
            raise GenerationError("EMPTY_COMPLETION", "generative service returned no choices", {"model": model})
        message = choices[0].get("message") or {}
        content = message.get("content")
        if not content:
            raise GenerationError("EMPTY_COMPLETION", "generative service returned empty content", {"model": model})
        return content

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
