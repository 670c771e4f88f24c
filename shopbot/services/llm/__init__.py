from shopbot.services.llm.base import LLMProvider, LLMResponse
from shopbot.services.llm.openai_provider import OpenAIProvider

__all__ = ["LLMProvider", "LLMResponse", "OpenAIProvider"]
