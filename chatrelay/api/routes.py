from __future__ import annotations

import json
from datetime import datetime, time
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import StreamingResponse

from chatrelay.api.schemas import (
    AuditTestRequest,
    ChatAbortRequest,
    ChatDeleteRequest,
    ChatProcessRequest,
    CredentialStatusRequest,
    CredentialUpsertRequest,
    Envelope,
    RoomContextRequest,
    RoomCreateRequest,
    RoomPromptRequest,
    RoomRenameRequest,
    RoomRequest,
    UsageByDayRequest,
    UserChatModelRequest,
)
from chatrelay.logging import get_logger, sanitize_error_message
from chatrelay.service.audit import AuditPolicy, audit_prompt
from chatrelay.service.errors import (
    InvalidRoomError,
    NotFoundError,
    ServerError,
    ServiceError,
    TurnNotFoundError,
    ValidationError,
)
from chatrelay.service.orchestrator import ChatTurnRequest, PreparedTurn
from chatrelay.service.runtime import get_runtime
from chatrelay.storage.errors import ConstraintViolation
from chatrelay.storage.models import Credential, Room, Turn, User

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

LOCAL_USER_ID = "local"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _local_user() -> User:
    """Single shared identity used when authentication is switched off."""
    runtime = get_runtime()
    user = runtime.store.get_user(LOCAL_USER_ID)
    if user:
        return user
    try:
        return runtime.store.create_user(
            "local@chatrelay.invalid", user_id=LOCAL_USER_ID, roles=["user"]
        )
    except ConstraintViolation:
        # created concurrently by another request
        return runtime.store.get_user(LOCAL_USER_ID)


def _resolve_user(authorization: Optional[str]) -> Optional[User]:
    runtime = get_runtime()
    if not authorization:
        return None if runtime.settings.auth_required else _local_user()
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    claims = runtime.tokens.verify(token.strip())
    if not claims:
        return None
    user = runtime.store.get_user(str(claims["sub"]))
    if not user or not user.is_active:
        return None
    return user


async def get_user(authorization: Optional[str] = Header(None)) -> User:
    user = _resolve_user(authorization)
    if not user:
        raise _http_error("unauthorized", "invalid or missing token", status_code=401)
    return user


async def get_optional_user(authorization: Optional[str] = Header(None)) -> Optional[User]:
    return _resolve_user(authorization)


async def get_admin_user(user: User = Depends(get_user)) -> User:
    runtime = get_runtime()
    if not user.has_any_role(runtime.settings.privileged_roles):
        raise _http_error("forbidden", "admin role required", status_code=403)
    return user


def _room_payload(room: Room) -> dict:
    return {
        "roomId": room.id,
        "title": room.title,
        "prompt": room.prompt,
        "usingContext": room.using_context,
        "isEdit": False,
    }


def _response_message(turn: Turn, index: int) -> dict:
    branch = turn.response_at(index)
    return {
        "uuid": turn.seq,
        "dateTime": turn.updated_at.isoformat(),
        "text": branch.response,
        "inversion": False,
        "error": False,
        "loading": False,
        "responseCount": turn.response_count,
        "conversationOptions": {
            "parentMessageId": branch.options.message_id,
            "conversationId": branch.options.conversation_id,
        },
        "requestOptions": {
            "prompt": turn.prompt,
            "parentMessageId": branch.options.parent_message_id,
            "options": {
                "parentMessageId": branch.options.message_id,
                "conversationId": branch.options.conversation_id,
            },
        },
        "usage": branch.usage.to_dict() if branch.usage else None,
    }


def _turn_messages(turn: Turn) -> list[dict]:
    messages: list[dict] = []
    if turn.status.prompt_visible:
        messages.append(
            {
                "uuid": turn.seq,
                "dateTime": turn.created_at.isoformat(),
                "text": turn.prompt,
                "inversion": True,
                "error": False,
                "conversationOptions": None,
                "requestOptions": {"prompt": turn.prompt, "options": None},
            }
        )
    if turn.status.response_visible:
        messages.append(_response_message(turn, len(turn.previous)))
    return messages


def _credential_payload(credential: Credential) -> dict:
    secret = credential.secret
    masked = f"{secret[:3]}...{secret[-4:]}" if len(secret) > 10 else "***"
    return {
        "id": credential.id,
        "key": masked,
        "chatModels": sorted(credential.models),
        "userRoles": sorted(credential.roles),
        "status": credential.status.value,
        "remark": credential.remark,
        "baseUrl": credential.base_url,
    }


def _owned_room(user: User, room_id: int) -> Room:
    room = get_runtime().store.get_room(user.id, room_id)
    if room is None:
        raise InvalidRoomError("room not found", detail={"room_id": room_id})
    return room


# chat turns


async def _ndjson_stream(prepared: PreparedTurn):
    runtime = get_runtime()
    try:
        async for chunk in runtime.orchestrator.stream(prepared):
            yield json.dumps(chunk, default=str) + "\n"
    except ServiceError as exc:
        logger.warning(
            "chat_stream_failed",
            user_id=prepared.user.id,
            error_code=exc.error_code,
            message=exc.message,
        )
        yield json.dumps(
            {
                "status": "Fail",
                "code": exc.error_code,
                "message": sanitize_error_message(exc.message),
                "data": None,
                "persisted": False,
            }
        ) + "\n"
    except Exception as exc:
        logger.error(
            "chat_stream_crashed",
            user_id=prepared.user.id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        yield json.dumps(
            {
                "status": "Fail",
                "code": ServerError.error_code,
                "message": "internal server error",
                "data": None,
                "persisted": False,
            }
        ) + "\n"


@router.post("/chat-process", tags=["chat"])
async def chat_process(body: ChatProcessRequest, user: User = Depends(get_user)):
    """Stream one chat turn as NDJSON.

    Rejections (unknown room, audit match, missing credential, unknown
    regenerate target) are returned as error envelopes before streaming
    starts. Once streaming, every response ends with exactly one terminal
    chunk.
    """
    runtime = get_runtime()
    if not body.prompt and not body.regenerate:
        raise ValidationError("prompt is required")
    turn_request = ChatTurnRequest(
        room_id=body.room_id,
        seq=body.uuid,
        prompt=body.prompt,
        regenerate=body.regenerate,
        model=body.model,
        system_prompt=body.system_message,
        temperature=body.temperature,
        top_p=body.top_p,
        parent_message_id=body.options.parent_message_id,
        conversation_id=body.options.conversation_id,
    )
    prepared = runtime.orchestrator.prepare(user, turn_request)
    return StreamingResponse(
        _ndjson_stream(prepared),
        media_type="application/x-ndjson",
    )


@router.post("/chat-abort", response_model=Envelope, tags=["chat"])
async def chat_abort(body: ChatAbortRequest, user: User = Depends(get_user)):
    runtime = get_runtime()
    turn_id = runtime.orchestrator.abort(
        user.id, body.text, body.message_id, body.conversation_id
    )
    return Envelope(status="ok", data={"aborted": turn_id is not None, "turnId": turn_id})


# rooms


@router.get("/chatrooms", response_model=Envelope, tags=["rooms"])
async def list_rooms(user: User = Depends(get_user)):
    rooms = get_runtime().store.list_rooms(user.id)
    return Envelope(status="ok", data=[_room_payload(r) for r in rooms])


@router.post("/room-create", response_model=Envelope, tags=["rooms"])
async def create_room(body: RoomCreateRequest, user: User = Depends(get_user)):
    room = get_runtime().store.create_room(user.id, body.room_id, body.title)
    logger.info("room_created", user_id=user.id, room_id=room.id)
    return Envelope(status="ok", data=_room_payload(room))


@router.post("/room-rename", response_model=Envelope, tags=["rooms"])
async def rename_room(body: RoomRenameRequest, user: User = Depends(get_user)):
    room = get_runtime().store.rename_room(user.id, body.room_id, body.title)
    if room is None:
        raise InvalidRoomError("room not found", detail={"room_id": body.room_id})
    return Envelope(status="ok", data=_room_payload(room))


@router.post("/room-prompt", response_model=Envelope, tags=["rooms"])
async def update_room_prompt(body: RoomPromptRequest, user: User = Depends(get_user)):
    if not get_runtime().store.update_room_prompt(user.id, body.room_id, body.prompt or None):
        raise InvalidRoomError("room not found", detail={"room_id": body.room_id})
    return Envelope(status="ok", data={"roomId": body.room_id, "prompt": body.prompt})


@router.post("/room-context", response_model=Envelope, tags=["rooms"])
async def update_room_context(body: RoomContextRequest, user: User = Depends(get_user)):
    if not get_runtime().store.update_room_using_context(
        user.id, body.room_id, body.using_context
    ):
        raise InvalidRoomError("room not found", detail={"room_id": body.room_id})
    return Envelope(
        status="ok", data={"roomId": body.room_id, "usingContext": body.using_context}
    )


@router.post("/room-delete", response_model=Envelope, tags=["rooms"])
async def delete_room(body: RoomRequest, user: User = Depends(get_user)):
    if not get_runtime().store.delete_room(user.id, body.room_id):
        raise InvalidRoomError("room not found", detail={"room_id": body.room_id})
    logger.info("room_deleted", user_id=user.id, room_id=body.room_id)
    return Envelope(status="ok", data={"roomId": body.room_id})


# history


@router.get("/chat-history", response_model=Envelope, tags=["history"])
async def chat_history(
    room_id: int = Query(..., alias="roomId"),
    last_id: Optional[int] = Query(None, alias="lastId"),
    user: User = Depends(get_user),
):
    """Page of turns older than ``lastId`` (newest page when omitted), oldest first."""
    room = _owned_room(user, room_id)
    turns = get_runtime().store.list_turns(
        room.id, user_id=user.id, before_seq=last_id, limit=20
    )
    messages: list[dict] = []
    for turn in turns:
        messages.extend(_turn_messages(turn))
    return Envelope(status="ok", data=messages)


@router.get("/chat-response-history", response_model=Envelope, tags=["history"])
async def chat_response_history(
    room_id: int = Query(..., alias="roomId"),
    seq: int = Query(..., alias="uuid"),
    index: int = Query(..., ge=0),
    user: User = Depends(get_user),
):
    room = _owned_room(user, room_id)
    turn = get_runtime().store.get_turn(room.id, seq, user_id=user.id)
    if turn is None:
        raise TurnNotFoundError("turn not found", detail={"room_id": room_id, "seq": seq})
    try:
        payload = _response_message(turn, index)
    except IndexError:
        raise NotFoundError(
            "response not found",
            detail={"seq": seq, "index": index, "responseCount": turn.response_count},
        )
    return Envelope(status="ok", data=payload)


@router.post("/chat-delete", response_model=Envelope, tags=["history"])
async def chat_delete(body: ChatDeleteRequest, user: User = Depends(get_user)):
    room = _owned_room(user, body.room_id)
    if not get_runtime().store.delete_turn_half(
        room.id, body.uuid, user_id=user.id, prompt=body.inversion
    ):
        raise TurnNotFoundError(
            "turn not found", detail={"room_id": body.room_id, "seq": body.uuid}
        )
    return Envelope(status="ok", data={"roomId": body.room_id, "uuid": body.uuid})


@router.post("/chat-clear", response_model=Envelope, tags=["history"])
async def chat_clear(body: RoomRequest, user: User = Depends(get_user)):
    room = _owned_room(user, body.room_id)
    removed = get_runtime().store.clear_room(room.id, user_id=user.id)
    return Envelope(status="ok", data={"roomId": room.id, "removed": removed})


@router.post("/chat-clear-all", response_model=Envelope, tags=["history"])
async def chat_clear_all(user: User = Depends(get_user)):
    removed = get_runtime().store.delete_all_rooms(user.id)
    logger.info("rooms_cleared", user_id=user.id, removed=removed)
    return Envelope(status="ok", data={"removed": removed})


# session and preferences


@router.post("/session", response_model=Envelope, tags=["session"])
async def session(user: Optional[User] = Depends(get_optional_user)):
    runtime = get_runtime()
    data: dict[str, Any] = {
        "auth": runtime.settings.auth_required,
        "defaultModel": runtime.settings.default_chat_model,
        "chatModels": [],
        "user": None,
    }
    if user is not None:
        data["chatModels"] = [
            {**entry, "allowed": entry["credentials"] > 0}
            for entry in runtime.credentials.available_models(user)
        ]
        data["user"] = {
            "id": user.id,
            "email": user.email,
            "roles": user.roles,
            "chatModel": user.chat_model or runtime.settings.default_chat_model,
        }
    return Envelope(status="ok", data=data)


@router.post("/user-chat-model", response_model=Envelope, tags=["session"])
async def update_user_chat_model(body: UserChatModelRequest, user: User = Depends(get_user)):
    runtime = get_runtime()
    if body.chat_model not in runtime.settings.chat_models:
        raise ValidationError(
            "unknown chat model", detail={"chatModel": body.chat_model}
        )
    runtime.store.update_user_chat_model(user.id, body.chat_model)
    return Envelope(status="ok", data={"chatModel": body.chat_model})


# admin


@router.get("/setting-keys", response_model=Envelope, tags=["admin"])
async def list_credentials(_: User = Depends(get_admin_user)):
    credentials = get_runtime().credentials.list()
    return Envelope(status="ok", data=[_credential_payload(c) for c in credentials])


@router.post("/setting-key-upsert", response_model=Envelope, tags=["admin"])
async def upsert_credential(body: CredentialUpsertRequest, _: User = Depends(get_admin_user)):
    credential = get_runtime().credentials.upsert(
        secret=body.key,
        models=body.chat_models,
        roles=body.user_roles,
        credential_id=body.id,
        remark=body.remark,
        base_url=body.base_url,
        status=body.status,
    )
    return Envelope(status="ok", data=_credential_payload(credential))


@router.post("/setting-key-status", response_model=Envelope, tags=["admin"])
async def update_credential_status(
    body: CredentialStatusRequest, _: User = Depends(get_admin_user)
):
    get_runtime().credentials.set_status(body.id, body.status)
    return Envelope(status="ok", data={"id": body.id, "status": body.status.value})


@router.post("/audit-test", response_model=Envelope, tags=["admin"])
async def audit_test(body: AuditTestRequest, _: User = Depends(get_admin_user)):
    policy = get_runtime().audit_policy
    if body.sensitive_words is not None:
        policy = AuditPolicy(
            enabled=True,
            sensitive_words=body.sensitive_words,
            privileged_roles=policy.privileged_roles,
        )
    return Envelope(
        status="ok",
        data={
            "matched": audit_prompt(policy, body.text),
            "word": policy.matched_word(body.text) if policy.enabled else None,
            "enabled": policy.enabled,
        },
    )


@router.post("/statistics/by-day", response_model=Envelope, tags=["statistics"])
async def usage_by_day(body: UsageByDayRequest, user: User = Depends(get_user)):
    start = datetime.combine(body.start, time.min)
    end = datetime.combine(body.end, time.max)
    rows = get_runtime().store.usage_by_day(user.id, start, end)
    totals = {
        key: sum(row[key] for row in rows)
        for key in ("prompt_tokens", "completion_tokens", "total_tokens")
    }
    return Envelope(
        status="ok",
        data={
            "days": [
                {
                    "date": row["date"],
                    "promptTokens": row["prompt_tokens"],
                    "completionTokens": row["completion_tokens"],
                    "totalTokens": row["total_tokens"],
                }
                for row in rows
            ],
            "promptTokens": totals["prompt_tokens"],
            "completionTokens": totals["completion_tokens"],
            "totalTokens": totals["total_tokens"],
        },
    )
