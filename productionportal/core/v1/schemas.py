from typing import Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class ChatRequest(BaseModel):
    """Body of the chat function. language overrides detection when set."""

    message: Optional[str] = None
    conversation_id: Optional[str] = None
    language: Optional[Literal["en", "bn"]] = None

    model_config = ConfigDict(extra="ignore")


class FeedbackRequest(BaseModel):
    message_id: Optional[str] = None
    feedback: Optional[str] = None
    comment: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class IngestRequest(BaseModel):
    document_id: Optional[str] = None
    content: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class EmbeddingRequest(BaseModel):
    text: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class RateLimitRequest(BaseModel):
    action: Literal["login", "reset_password", "invite", "signup"]
    email: Optional[str] = Field(default=None, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    factoryId: Optional[str] = Field(default=None, pattern=r"^[0-9A-Za-z-]{8,64}$")

    model_config = ConfigDict(extra="ignore")


class BillingNotificationRequest(BaseModel):
    type: Optional[str] = None
    factoryId: Optional[str] = None
    email: Optional[str] = None
    factoryName: Optional[str] = None
    daysRemaining: Optional[int] = None

    model_config = ConfigDict(extra="ignore")


class ErrorLogRequest(BaseModel):
    message: str = Field(min_length=1)
    stack: Optional[str] = None
    source: Optional[str] = None
    severity: Literal["error", "warning", "info"] = "error"
    metadata: Optional[dict] = None
    url: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


M = TypeVar("M", bound=BaseModel)


def parse_body(model: Type[M], data, message: str = "Invalid request parameters") -> M:
    """Validate a JSON body, turning pydantic errors into a ValueError."""
    try:
        return model.model_validate(data if isinstance(data, dict) else {})
    except ValidationError as e:
        raise ValueError(message) from e
