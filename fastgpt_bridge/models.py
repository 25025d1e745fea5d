"""
Pydantic models for chat requests, decoded responses and stored sessions.
"""
import json
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageUrl(BaseModel):
    url: str


class ImageUrlPart(BaseModel):
    type: Literal["image_url"] = "image_url"
    image_url: ImageUrl

    @classmethod
    def from_url(cls, url: str) -> "ImageUrlPart":
        return cls(image_url=ImageUrl(url=url))


ContentPart = Annotated[Union[TextPart, ImageUrlPart], Field(discriminator="type")]


class ChatMessage(BaseModel):
    role: Role
    content: Union[str, List[ContentPart]]

    @classmethod
    def user(cls, text: str, image_urls: Optional[List[str]] = None) -> "ChatMessage":
        """Build a user message; plain text unless images are attached."""
        if not image_urls:
            return cls(role=Role.USER, content=text)
        parts: List[Union[TextPart, ImageUrlPart]] = [TextPart(text=text)]
        parts.extend(ImageUrlPart.from_url(url) for url in image_urls)
        return cls(role=Role.USER, content=parts)


class ChatRequest(BaseModel):
    """Body of a POST to the chat completions endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    chat_id: Optional[str] = Field(default=None, alias="chatId")
    response_item_id: Optional[str] = Field(default=None, alias="responseChatItemId")
    messages: List[ChatMessage]
    stream: bool = False
    detail: bool = False
    variables: Optional[dict[str, Any]] = None

    @field_validator("messages")
    @classmethod
    def _messages_not_empty(cls, value: List[ChatMessage]) -> List[ChatMessage]:
        if not value:
            raise ValueError("a chat request needs at least one message")
        return value

    def to_payload(self) -> dict[str, Any]:
        """Wire representation; unset optional identifiers are omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SSEEvent(BaseModel):
    """One `event:`/`data:` pair from a streamed response."""

    name: str
    data: str

    def payload(self) -> Any:
        return json.loads(self.data)


class ChatResponse(BaseModel):
    content: str
    events: List[Tuple[str, str]] = Field(default_factory=list)


class Session(BaseModel):
    id: str
    owner_id: str
    last_modified: datetime
    input_preview: str
    image_count: int = 0
    cleaned: bool = False


class StorageStats(BaseModel):
    owner_id: str
    session_count: int
    image_count: int
    last_activity: Optional[datetime] = None


class CleanupReport(BaseModel):
    sessions_cleaned: int = 0
    files_removed: int = 0


class AskRequest(BaseModel):
    user_id: str
    question: str
    image_urls: List[str] = Field(default_factory=list)

    @field_validator("question")
    @classmethod
    def _question_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("question must not be blank")
        return value


class AskResponse(BaseModel):
    session_id: str
    content: str
    image_path: Optional[str] = None
    event_count: int = 0
