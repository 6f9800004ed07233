from __future__ import annotations

from datetime import UTC, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _now_utc() -> datetime:
    return datetime.now(UTC)


class ApiModel(BaseModel):
    """Base model exposing camelCase field names on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


TurnRole = Literal["user", "assistant"]
GenerationMode = Literal["grounded", "freeform"]
ListingKind = Literal["active", "pinned"]


class Turn(ApiModel):
    role: TurnRole
    content: str
    img: Optional[str] = None


class ChatRecord(ApiModel):
    """Full conversation history of one chat, in conversation order."""

    id: str
    user_id: str
    history: List[Turn] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now_utc)
    updated_at: datetime = Field(default_factory=_now_utc)


class ChatSummary(ApiModel):
    """Listing entry held by exactly one of a user's active or pinned projections."""

    id: str
    title: str
    created_at: datetime = Field(default_factory=_now_utc)


class DocumentRecord(ApiModel):
    id: str
    user_id: str
    file_name: str
    file_url: str = Field(description="object-store location of the uploaded blob")
    content_type: str
    uploaded_at: datetime = Field(default_factory=_now_utc)


class CreateChatRequest(ApiModel):
    text: str = Field(min_length=1)
    assistant_response: str
    img: Optional[str] = None


class AppendChatRequest(ApiModel):
    question: str = Field(min_length=1)
    assistant_response: str
    img: Optional[str] = None


class RenameChatRequest(ApiModel):
    new_title: str = Field(min_length=1)


class PinChatRequest(ApiModel):
    chat_id: str = Field(min_length=1)
    title: Optional[str] = None


class GenerationRequest(ApiModel):
    user_id: str = Field(min_length=1)
    query: str = Field(min_length=1)


class InstantLookupRequest(ApiModel):
    query: str = ""
    data_source: str = ""


class ConverseRequest(ApiModel):
    user_id: str = Field(min_length=1)
    query: str = Field(min_length=1)
    mode: GenerationMode = "grounded"
    chat_id: Optional[str] = None


class ChatCreatedResponse(ApiModel):
    chat_id: str


class MessageResponse(ApiModel):
    message: str


class GenerationResponse(ApiModel):
    response: str


class ConverseResponse(ApiModel):
    chat_id: str
    response: str


class DocumentUrlResponse(ApiModel):
    file_url: str


class IngestionJobEntry(ApiModel):
    status: str
    reason: str
    client_token: Optional[str] = None
    job_id: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=_now_utc)


class IndexJobHistoryResponse(ApiModel):
    jobs: List[IngestionJobEntry] = Field(default_factory=list)
