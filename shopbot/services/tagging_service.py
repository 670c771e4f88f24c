"""Sentiment/topic tagging of stored customer messages.

Runs detached after the message is persisted. The LLM classifier is tried
first when configured; any failure falls back to the keyword classifier,
which always produces a result.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from shopbot.config import settings
from shopbot.database import SessionRunner
from shopbot.logging_config import get_logger
from shopbot.services.intent_service import Intent, Sentiment, classify_topics, detect_sentiment
from shopbot.services.llm import LLMProvider, OpenAIProvider
from shopbot.services.message_service import merge_message_metadata

logger = get_logger("tagging_service")

ALLOWED_TAGS = {intent.value for intent in Intent}
ALLOWED_SENTIMENTS = {sentiment.value for sentiment in Sentiment}

TAGGING_PROMPT = """You label customer messages sent to an online shop (mostly Mongolian, sometimes English).
Return ONLY a JSON object: {{"sentiment": "...", "tags": [...]}}
- sentiment: one of positive, neutral, negative
- tags: zero or more of {tags}

Message: {message}"""


@dataclass
class TagResult:
    sentiment: str
    tags: List[str] = field(default_factory=list)
    source: str = "keyword"  # keyword, llm

    def as_metadata(self) -> dict:
        return {
            "sentiment": self.sentiment,
            "tags": list(self.tags),
            "tagged_at": datetime.now(timezone.utc).isoformat(),
        }


class TaggingParseError(ValueError):
    pass


def classify_by_keywords(text: str) -> TagResult:
    topics = classify_topics(text)
    return TagResult(
        sentiment=detect_sentiment(text, topics).value,
        tags=[topic.value for topic in topics],
        source="keyword",
    )


def parse_llm_tags(content: str) -> TagResult:
    try:
        data = json.loads(content)
    except (TypeError, json.JSONDecodeError) as e:
        raise TaggingParseError(f"not JSON: {e}") from e
    if not isinstance(data, dict):
        raise TaggingParseError("not a JSON object")

    sentiment = str(data.get("sentiment", "")).strip().lower()
    if sentiment not in ALLOWED_SENTIMENTS:
        raise TaggingParseError(f"unknown sentiment {sentiment!r}")

    raw_tags = data.get("tags") or []
    if not isinstance(raw_tags, list):
        raise TaggingParseError("tags is not a list")
    tags = []
    for tag in raw_tags:
        tag = str(tag).strip().lower()
        if tag in ALLOWED_TAGS and tag not in tags:
            tags.append(tag)
    return TagResult(sentiment=sentiment, tags=tags, source="llm")


def build_default_provider() -> Optional[LLMProvider]:
    if not settings.openai_api_key:
        return None
    return OpenAIProvider(api_key=settings.openai_api_key, default_model=settings.tagging_model)


class MessageTagger:
    def __init__(self, runner: SessionRunner, provider: Optional[LLMProvider] = None):
        self.runner = runner
        self.provider = provider

    async def classify(self, text: str) -> TagResult:
        if self.provider is not None:
            try:
                response = await self.provider.generate(
                    [
                        {
                            "role": "user",
                            "content": TAGGING_PROMPT.format(
                                tags=", ".join(sorted(ALLOWED_TAGS)), message=text
                            ),
                        }
                    ],
                    json_output=True,
                    timeout_seconds=settings.tagging_timeout_seconds,
                )
                return parse_llm_tags(response.content)
            except Exception as e:
                logger.warning(f"LLM tagging failed, using keyword classifier: {e}")
        return classify_by_keywords(text)

    async def tag_message(self, message_id: UUID, text: str) -> TagResult:
        """Classify and merge ``{sentiment, tags, tagged_at}`` into the message metadata."""
        result = await self.classify(text)
        await self.runner.run(merge_message_metadata, message_id, result.as_metadata())
        logger.debug(
            "Message tagged",
            extra={"context": {"message_id": str(message_id), "sentiment": result.sentiment, "source": result.source}},
        )
        return result
