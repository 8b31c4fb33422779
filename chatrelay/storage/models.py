from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import List, Optional, Set


class TurnStatus(str, Enum):
    """Which halves of a turn the user has deleted."""

    ACTIVE = "active"
    PROMPT_DELETED = "prompt_deleted"
    RESPONSE_DELETED = "response_deleted"
    BOTH_DELETED = "both_deleted"

    def without_prompt(self) -> "TurnStatus":
        if self in (TurnStatus.RESPONSE_DELETED, TurnStatus.BOTH_DELETED):
            return TurnStatus.BOTH_DELETED
        return TurnStatus.PROMPT_DELETED

    def without_response(self) -> "TurnStatus":
        if self in (TurnStatus.PROMPT_DELETED, TurnStatus.BOTH_DELETED):
            return TurnStatus.BOTH_DELETED
        return TurnStatus.RESPONSE_DELETED

    @property
    def prompt_visible(self) -> bool:
        return self in (TurnStatus.ACTIVE, TurnStatus.RESPONSE_DELETED)

    @property
    def response_visible(self) -> bool:
        return self in (TurnStatus.ACTIVE, TurnStatus.PROMPT_DELETED)


class CredentialStatus(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated: bool = False

    def is_empty(self) -> bool:
        return not (self.prompt_tokens or self.completion_tokens or self.total_tokens)

    def to_dict(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "estimated": self.estimated,
        }

    @classmethod
    def from_dict(cls, raw: Optional[dict]) -> Optional["Usage"]:
        if not raw:
            return None
        return cls(
            prompt_tokens=int(raw.get("prompt_tokens") or 0),
            completion_tokens=int(raw.get("completion_tokens") or 0),
            total_tokens=int(raw.get("total_tokens") or 0),
            estimated=bool(raw.get("estimated", False)),
        )


@dataclass
class TurnOptions:
    parent_message_id: Optional[str] = None
    message_id: Optional[str] = None
    conversation_id: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "parent_message_id": self.parent_message_id,
            "message_id": self.message_id,
            "conversation_id": self.conversation_id,
            "temperature": self.temperature,
            "top_p": self.top_p,
        }

    @classmethod
    def from_dict(cls, raw: Optional[dict]) -> "TurnOptions":
        raw = raw or {}
        return cls(
            parent_message_id=raw.get("parent_message_id"),
            message_id=raw.get("message_id"),
            conversation_id=raw.get("conversation_id"),
            temperature=raw.get("temperature"),
            top_p=raw.get("top_p"),
        )


@dataclass
class ResponseBranch:
    """One answer to a turn's prompt."""

    response: str = ""
    options: TurnOptions = field(default_factory=TurnOptions)
    usage: Optional[Usage] = None

    def to_dict(self) -> dict:
        return {
            "response": self.response,
            "options": self.options.to_dict(),
            "usage": self.usage.to_dict() if self.usage else None,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "ResponseBranch":
        return cls(
            response=raw.get("response") or "",
            options=TurnOptions.from_dict(raw.get("options")),
            usage=Usage.from_dict(raw.get("usage")),
        )


@dataclass
class Turn:
    """A prompt/response pair addressed by ``(user_id, room_id, seq)``.

    ``current`` is the answer shown to the user. ``previous`` holds the
    answers replaced by regeneration, oldest first; the current answer sits
    conceptually at index ``len(previous)``.
    """

    id: str
    room_id: int
    seq: int
    prompt: str
    # owner of the room; room ids are only unique per user
    user_id: str = ""
    current: ResponseBranch = field(default_factory=ResponseBranch)
    previous: List[ResponseBranch] = field(default_factory=list)
    status: TurnStatus = TurnStatus.ACTIVE
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def response(self) -> str:
        return self.current.response

    @property
    def options(self) -> TurnOptions:
        return self.current.options

    @property
    def response_count(self) -> int:
        return len(self.previous) + 1

    @property
    def has_answer(self) -> bool:
        """True once a backend answer (or an abort text with ids) landed."""
        return bool(self.current.options.message_id)

    def response_at(self, index: int) -> ResponseBranch:
        if index == len(self.previous):
            return self.current
        if 0 <= index < len(self.previous):
            return self.previous[index]
        raise IndexError(f"turn {self.seq} has no response at index {index}")

    def snapshot(self) -> "Turn":
        """Copy that callers can hold without seeing later store writes."""
        return replace(
            self,
            current=replace(self.current, options=replace(self.current.options)),
            previous=list(self.previous),
        )


@dataclass
class Room:
    id: int
    user_id: str
    title: str = "New Chat"
    prompt: Optional[str] = None
    using_context: bool = True
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class User:
    id: str
    email: str
    roles: List[str] = field(default_factory=lambda: ["user"])
    chat_model: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=datetime.utcnow)

    def has_any_role(self, roles: Set[str] | List[str]) -> bool:
        return bool(set(self.roles) & set(roles))


@dataclass
class Credential:
    id: str
    secret: str
    models: Set[str] = field(default_factory=set)
    roles: Set[str] = field(default_factory=set)
    status: CredentialStatus = CredentialStatus.ENABLED
    remark: str = ""
    base_url: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return self.status == CredentialStatus.ENABLED

    @classmethod
    def new(
        cls,
        secret: str,
        models: Set[str] | List[str],
        roles: Set[str] | List[str],
        *,
        remark: str = "",
        base_url: Optional[str] = None,
    ) -> "Credential":
        return cls(
            id=str(uuid.uuid4()),
            secret=secret,
            models=set(models),
            roles=set(roles),
            remark=remark,
            base_url=base_url,
        )


@dataclass
class UsageRecord:
    id: str
    user_id: str
    room_id: int
    turn_id: str
    message_id: Optional[str]
    usage: Usage
    created_at: datetime = field(default_factory=datetime.utcnow)
