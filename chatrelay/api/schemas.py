from __future__ import annotations

from datetime import date
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from chatrelay.storage.models import CredentialStatus

MAX_PROMPT_LENGTH = 65536
MAX_TITLE_LENGTH = 255

_VALID_ERROR_CODES = {
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_room",
    "turn_not_found",
    "sensitive_content",
    "no_eligible_credential",
    "adapter_error",
    "persistence_error",
}


class ErrorBody(BaseModel):
    """Error envelope body with a stable code."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _CamelModel(BaseModel):
    """Request bodies use camelCase on the wire."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class ChatOptions(_CamelModel):
    conversation_id: Optional[str] = Field(None, max_length=128)
    parent_message_id: Optional[str] = Field(None, max_length=128)


class ChatProcessRequest(_CamelModel):
    room_id: int
    uuid: int = Field(..., description="Turn sequence id, unique within the room")
    prompt: str = Field("", max_length=MAX_PROMPT_LENGTH)
    regenerate: bool = False
    options: ChatOptions = Field(default_factory=ChatOptions)
    system_message: Optional[str] = Field(None, max_length=MAX_PROMPT_LENGTH)
    model: Optional[str] = Field(None, max_length=128)
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    # the wire name predates the camelCase convention
    top_p: Optional[float] = Field(None, ge=0.0, le=1.0, alias="top_p")

    @field_validator("prompt")
    @classmethod
    def _strip_prompt(cls, value: str) -> str:
        return value.strip()


class ChatAbortRequest(_CamelModel):
    text: str = Field("", max_length=MAX_PROMPT_LENGTH)
    message_id: Optional[str] = Field(None, max_length=128)
    conversation_id: Optional[str] = Field(None, max_length=128)


class RoomCreateRequest(_CamelModel):
    room_id: int
    title: str = Field("New Chat", max_length=MAX_TITLE_LENGTH)


class RoomRenameRequest(_CamelModel):
    room_id: int
    title: str = Field(..., min_length=1, max_length=MAX_TITLE_LENGTH)


class RoomPromptRequest(_CamelModel):
    room_id: int
    prompt: Optional[str] = Field(None, max_length=MAX_PROMPT_LENGTH)


class RoomContextRequest(_CamelModel):
    room_id: int
    using_context: bool


class RoomRequest(_CamelModel):
    room_id: int


class ChatDeleteRequest(_CamelModel):
    room_id: int
    uuid: int
    inversion: bool = Field(
        False, description="True deletes the prompt half, false the response half"
    )


class UserChatModelRequest(_CamelModel):
    chat_model: str = Field(..., min_length=1, max_length=128)


class CredentialUpsertRequest(_CamelModel):
    id: Optional[str] = Field(None, max_length=64)
    key: str = Field(..., min_length=1, max_length=512)
    chat_models: List[str] = Field(..., min_length=1)
    user_roles: List[str] = Field(..., min_length=1)
    remark: str = Field("", max_length=MAX_TITLE_LENGTH)
    base_url: Optional[str] = Field(None, max_length=2048)
    status: CredentialStatus = CredentialStatus.ENABLED


class CredentialStatusRequest(_CamelModel):
    id: str = Field(..., max_length=64)
    status: CredentialStatus


class AuditTestRequest(_CamelModel):
    text: str = Field(..., max_length=MAX_PROMPT_LENGTH)
    sensitive_words: Optional[List[str]] = None


class UsageByDayRequest(_CamelModel):
    start: date
    end: date

    @field_validator("end")
    @classmethod
    def _end_after_start(cls, value: date, info) -> date:
        start = info.data.get("start")
        if start is not None and value < start:
            raise ValueError("end must not be before start")
        return value
