from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, List, Optional

from chatrelay.config import Settings
from chatrelay.logging import get_logger, sanitize_error_message
from chatrelay.service.audit import AuditPolicy, audit_prompt
from chatrelay.service.cancellation import CancelHandle, CancellationRegistry
from chatrelay.service.completion import (
    CompletionBackend,
    CompletionRequest,
    FinalResult,
    PartialEvent,
)
from chatrelay.service.credentials import CredentialPool
from chatrelay.service.errors import (
    CompletionError,
    ConflictError,
    InvalidRoomError,
    PersistenceError,
    SensitiveContentError,
    TurnNotFoundError,
)
from chatrelay.storage.errors import ConstraintViolation
from chatrelay.storage.models import (
    Credential,
    ResponseBranch,
    Room,
    Turn,
    TurnOptions,
    Usage,
    User,
)

logger = get_logger(__name__)


class TurnOutcome(str, Enum):
    DONE = "done"
    FAILED = "failed"
    ABORTED = "aborted"
    DISCONNECTED = "disconnected"


@dataclass
class ChatTurnRequest:
    room_id: int
    seq: int
    prompt: str
    regenerate: bool = False
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    parent_message_id: Optional[str] = None
    conversation_id: Optional[str] = None


@dataclass
class PreparedTurn:
    """Everything resolved before a turn may touch the store or the network."""

    user: User
    room: Room
    request: ChatTurnRequest
    model: str
    credential: Credential
    system_prompt: str
    context: List[dict] = field(default_factory=list)
    # turn being regenerated, as read during preparation
    existing: Optional[Turn] = None

    @property
    def prompt(self) -> str:
        if self.existing is not None and not self.request.prompt:
            return self.existing.prompt
        return self.request.prompt


def format_chunk(
    message_id: Optional[str],
    conversation_id: Optional[str],
    text: str,
    finish_reason: Optional[str] = None,
    *,
    parent_message_id: Optional[str] = None,
) -> dict:
    return {
        "role": "assistant",
        "id": message_id,
        "parentMessageId": parent_message_id,
        "conversationId": conversation_id,
        "text": text,
        "detail": {"choices": [{"finish_reason": finish_reason}]},
    }


async def _next_event(iterator):
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


async def _discard(task: Optional[asyncio.Future]) -> None:
    if task is None:
        return
    if task.done():
        if not task.cancelled():
            task.exception()
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


class ChatTurnOrchestrator:
    """Runs one chat turn: credential, streaming, cancellation and persistence.

    ``prepare`` performs every check that can reject a turn and writes
    nothing. ``stream`` then owns the turn until it reaches a terminal
    state, yielding chunks for the client and writing the turn and usage
    exactly once.
    """

    def __init__(
        self,
        *,
        store,
        credentials: CredentialPool,
        backend: CompletionBackend,
        registry: CancellationRegistry,
        audit_policy: AuditPolicy,
        settings: Settings,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.backend = backend
        self.registry = registry
        self.audit_policy = audit_policy
        self.settings = settings

    def _context_for(self, room: Room, before_seq: int) -> List[dict]:
        if not room.using_context or self.settings.max_context_turns <= 0:
            return []
        messages: List[dict] = []
        for turn in self.store.list_turns(
            room.id,
            user_id=room.user_id,
            before_seq=before_seq,
            limit=self.settings.max_context_turns,
        ):
            if turn.status.prompt_visible and turn.prompt:
                messages.append({"role": "user", "content": turn.prompt})
            if turn.status.response_visible and turn.response:
                messages.append({"role": "assistant", "content": turn.response})
        return messages

    def prepare(self, user: User, request: ChatTurnRequest) -> PreparedTurn:
        room = self.store.get_room(user.id, request.room_id)
        if room is None:
            raise InvalidRoomError(
                "room not found", detail={"room_id": request.room_id}
            )

        privileged = user.has_any_role(self.audit_policy.privileged_roles)
        if not privileged and audit_prompt(self.audit_policy, request.prompt):
            logger.warning(
                "turn_rejected_sensitive", user_id=user.id, room_id=room.id
            )
            raise SensitiveContentError(
                "prompt contains sensitive content; please revise it"
            )

        model = request.model or user.chat_model or self.settings.default_chat_model
        credential = self.credentials.select(user, model)

        existing = self.store.get_turn(room.id, request.seq, user_id=user.id)
        if request.regenerate and existing is None:
            raise TurnNotFoundError(
                "turn not found", detail={"room_id": room.id, "seq": request.seq}
            )
        if not request.regenerate and existing is not None:
            raise ConflictError(
                "turn already exists", detail={"room_id": room.id, "seq": request.seq}
            )

        system_prompt = (
            room.prompt or request.system_prompt or self.settings.default_system_prompt
        )
        return PreparedTurn(
            user=user,
            room=room,
            request=request,
            model=model,
            credential=credential,
            system_prompt=system_prompt,
            context=self._context_for(room, request.seq),
            existing=existing if request.regenerate else None,
        )

    def _begin(self, prepared: PreparedTurn) -> Turn:
        if prepared.existing is not None:
            return prepared.existing
        request = prepared.request
        options = TurnOptions(
            parent_message_id=request.parent_message_id,
            conversation_id=request.conversation_id,
            temperature=request.temperature,
            top_p=request.top_p,
        )
        try:
            return self.store.create_turn(
                request.seq,
                prepared.prompt,
                prepared.room.id,
                options,
                user_id=prepared.user.id,
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        except Exception as exc:
            logger.error(
                "turn_create_failed",
                room_id=prepared.room.id,
                seq=request.seq,
                error=str(exc),
            )
            raise PersistenceError("failed to record turn") from exc

    def _completion_request(self, prepared: PreparedTurn) -> CompletionRequest:
        request = prepared.request
        return CompletionRequest(
            model=prepared.model,
            prompt=prepared.prompt,
            system_prompt=prepared.system_prompt,
            context=list(prepared.context),
            temperature=request.temperature,
            top_p=request.top_p,
            parent_message_id=request.parent_message_id,
            conversation_id=request.conversation_id,
        )

    async def stream(self, prepared: PreparedTurn) -> AsyncIterator[dict]:
        """Drive the backend and yield client chunks, ending with one terminal chunk."""

        turn = self._begin(prepared)
        user = prepared.user
        parent_id = prepared.request.parent_message_id
        handle = self.registry.register(user.id, turn.id)
        logger.info(
            "turn_started",
            user_id=user.id,
            room_id=turn.room_id,
            seq=turn.seq,
            turn_id=turn.id,
            model=prepared.model,
            regenerate=prepared.existing is not None,
        )

        events = self.backend.stream(self._completion_request(prepared), prepared.credential)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.turn_timeout_seconds
        cancel_wait = asyncio.ensure_future(handle.wait())
        next_task: Optional[asyncio.Future] = None
        # only a FinalResult makes the turn done
        outcome = TurnOutcome.FAILED
        final: Optional[FinalResult] = None
        last: Optional[PartialEvent] = None
        error: Optional[CompletionError] = None
        try:
            while True:
                if handle.cancelled:
                    outcome = TurnOutcome.ABORTED
                    break
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise CompletionError(
                        "completion timed out",
                        detail={"timeout_seconds": self.settings.turn_timeout_seconds},
                    )
                next_task = asyncio.ensure_future(_next_event(events))
                done, _ = await asyncio.wait(
                    {next_task, cancel_wait},
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if next_task not in done:
                    await _discard(next_task)
                    next_task = None
                    if cancel_wait in done:
                        outcome = TurnOutcome.ABORTED
                        break
                    raise CompletionError(
                        "completion timed out",
                        detail={"timeout_seconds": self.settings.turn_timeout_seconds},
                    )
                event = next_task.result()
                next_task = None
                if handle.cancelled:
                    outcome = TurnOutcome.ABORTED
                    break
                if event is None:
                    raise CompletionError("completion ended without a result")
                if isinstance(event, FinalResult):
                    final = event
                    outcome = TurnOutcome.DONE
                    break
                last = event
                yield format_chunk(
                    event.id,
                    event.conversation_id,
                    event.text,
                    event.finish_reason,
                    parent_message_id=parent_id,
                )
        except CompletionError as exc:
            outcome = TurnOutcome.FAILED
            error = exc
        except (asyncio.CancelledError, GeneratorExit):
            outcome = TurnOutcome.DISCONNECTED
            raise
        except Exception as exc:
            logger.error(
                "completion_stream_crashed",
                turn_id=turn.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            outcome = TurnOutcome.FAILED
            error = CompletionError(
                sanitize_error_message(str(exc)),
                detail={"upstream": type(exc).__name__},
            )
        finally:
            await _discard(next_task)
            await _discard(cancel_wait)
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()
            persisted = self._finalize(prepared, turn, handle, outcome, final, last, error)

        yield self._terminal_chunk(prepared, outcome, final, last, error, persisted)

    def _finalize(
        self,
        prepared: PreparedTurn,
        turn: Turn,
        handle: CancelHandle,
        outcome: TurnOutcome,
        final: Optional[FinalResult],
        last: Optional[PartialEvent],
        error: Optional[CompletionError],
    ) -> bool:
        """Write the terminal state of the turn. Returns False if the store failed."""

        self.registry.deregister(prepared.user.id, handle)
        usage: Optional[Usage] = None
        if final is not None:
            text, message_id, conversation_id = final.text, final.id, final.conversation_id
            usage = final.usage
        elif last is not None:
            text, message_id, conversation_id = last.text, last.id, last.conversation_id
        elif outcome == TurnOutcome.FAILED and error is not None:
            text, message_id = error.message, None
            conversation_id = prepared.request.conversation_id
        else:
            logger.info(
                "turn_finalized",
                turn_id=turn.id,
                outcome=outcome.value,
                written=False,
            )
            return True

        previous: Optional[List[ResponseBranch]] = None
        existing = prepared.existing
        if existing is not None and existing.has_answer:
            previous = list(existing.previous) + [existing.current]

        try:
            self.store.update_turn(
                turn.id, text, message_id, conversation_id, usage, previous
            )
            if usage is not None and not usage.is_empty():
                self.store.insert_usage(
                    prepared.user.id, turn.room_id, turn.id, message_id, usage
                )
        except Exception as exc:
            logger.error(
                "turn_persist_failed",
                turn_id=turn.id,
                outcome=outcome.value,
                error=str(exc),
            )
            return False
        logger.info(
            "turn_finalized",
            turn_id=turn.id,
            outcome=outcome.value,
            written=True,
            branches=len(previous) if previous is not None else len(turn.previous),
            total_tokens=usage.total_tokens if usage else 0,
        )
        return True

    def _terminal_chunk(
        self,
        prepared: PreparedTurn,
        outcome: TurnOutcome,
        final: Optional[FinalResult],
        last: Optional[PartialEvent],
        error: Optional[CompletionError],
        persisted: bool,
    ) -> dict:
        parent_id = prepared.request.parent_message_id
        if outcome == TurnOutcome.DONE and final is not None:
            chunk = format_chunk(
                final.id,
                final.conversation_id,
                final.text,
                final.finish_reason,
                parent_message_id=parent_id,
            )
            chunk["detail"]["usage"] = final.usage.to_dict()
            chunk["persisted"] = persisted
            return chunk
        if outcome == TurnOutcome.FAILED and error is not None:
            return {
                "status": "Fail",
                "code": error.error_code,
                "message": error.message,
                "data": format_chunk(
                    last.id if last else None,
                    last.conversation_id if last else prepared.request.conversation_id,
                    last.text if last else "",
                    "error",
                    parent_message_id=parent_id,
                ),
                "persisted": persisted,
            }
        chunk = format_chunk(
            last.id if last else None,
            last.conversation_id if last else prepared.request.conversation_id,
            last.text if last else "",
            TurnOutcome.ABORTED.value,
            parent_message_id=parent_id,
        )
        chunk["persisted"] = persisted
        return chunk

    def abort(
        self,
        user_id: str,
        text: str,
        message_id: Optional[str],
        conversation_id: Optional[str],
    ) -> Optional[str]:
        """Cancel the user's in-flight turn and record the caller's closing text.

        Returns the aborted turn id, or None when nothing was in flight.
        """

        turn_id = self.registry.signal(user_id)
        if turn_id is None:
            logger.info("turn_abort_noop", user_id=user_id)
            return None
        try:
            self.store.update_turn(turn_id, text, message_id, conversation_id, None)
        except Exception as exc:
            logger.error("turn_abort_persist_failed", turn_id=turn_id, error=str(exc))
            raise PersistenceError(
                "failed to record aborted turn", detail={"turn_id": turn_id}
            ) from exc
        logger.info("turn_aborted", user_id=user_id, turn_id=turn_id, message_id=message_id)
        return turn_id
