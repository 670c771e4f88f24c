from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from shopbot.logging_config import get_logger

logger = get_logger("chatbot_settings")

DEFAULT_ESCALATION_MESSAGE = (
    "Таны хүсэлтийг бид хүлээн авлаа. Манай менежер тантай удахгүй холбогдоно. Түр хүлээнэ үү!"
)


class ChatbotSettings(BaseModel):
    """Per-store chatbot configuration stored as a JSON blob on the store row."""

    model_config = ConfigDict(extra="ignore")

    welcome_message: Optional[str] = None
    away_message: Optional[str] = None
    tone: str = "friendly"  # friendly, formal, casual
    language: str = "mongolian"
    show_prices: bool = True
    max_products: int = Field(default=5, ge=1, le=10)
    auto_handoff: bool = True
    handoff_keywords: List[str] = Field(default_factory=list)
    escalation_enabled: bool = True
    escalation_threshold: int = Field(default=60, ge=1, le=100)
    escalation_message: Optional[str] = None
    return_policy: Optional[str] = None

    @field_validator("handoff_keywords", mode="before")
    @classmethod
    def _split_keywords(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        if isinstance(value, (list, tuple)):
            return [str(item).strip().lower() for item in value if str(item).strip()]
        return value

    @property
    def resolved_escalation_message(self) -> str:
        return self.escalation_message or DEFAULT_ESCALATION_MESSAGE

    @classmethod
    def from_blob(cls, blob: Optional[dict], *, store_id: Any = None) -> "ChatbotSettings":
        """Validate the raw settings blob, falling back to defaults when it is unusable."""
        if not blob:
            return cls()
        if not isinstance(blob, dict):
            logger.warning(
                "chatbot_settings is not an object, using defaults",
                extra={"context": {"store_id": str(store_id), "type": type(blob).__name__}},
            )
            return cls()
        try:
            return cls.model_validate(blob)
        except ValidationError as e:
            logger.warning(
                "Invalid chatbot_settings, using defaults",
                extra={"context": {"store_id": str(store_id), "errors": e.error_count()}},
            )
            return cls()
