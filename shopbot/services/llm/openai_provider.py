from typing import List, Optional

import httpx

from shopbot.logging_config import get_logger
from shopbot.services.llm.base import LLMProvider, LLMResponse

logger = get_logger("llm.openai")


class OpenAIError(Exception):
    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        super().__init__(f"OpenAI API error: {status_code} - {body[:200]}")


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions over httpx."""

    base_url = "https://api.openai.com/v1/chat/completions"

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o-mini",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.transport = transport

    async def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.0,
        max_tokens: int = 200,
        json_output: bool = False,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        model = model or self.default_model
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_completion_tokens": max_tokens,
        }
        if json_output:
            payload["response_format"] = {"type": "json_object"}

        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")
        timeout = timeout_seconds if timeout_seconds is not None else 30.0
        async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
            response = await client.post(
                self.base_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json=payload,
            )

        if response.status_code != 200:
            raise OpenAIError(response.status_code, response.text)

        data = response.json()
        content = ""
        choices = data.get("choices") or []
        if choices:
            content = (choices[0].get("message") or {}).get("content") or ""
        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(content=content, model=data.get("model", model), usage=data.get("usage"))
