"""Scripted completion backend and turn harness shared by the test modules."""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, List, Optional

from chatrelay.config import CompletionBackendMode, Settings
from chatrelay.service.audit import AuditPolicy
from chatrelay.service.cancellation import CancellationRegistry
from chatrelay.service.completion import FinalResult, PartialEvent
from chatrelay.service.credentials import CredentialPool
from chatrelay.service.orchestrator import ChatTurnOrchestrator
from chatrelay.storage.memory import MemoryStore
from chatrelay.storage.models import Credential, Room, Usage, User

HANG = object()


class ScriptedBackend:
    """Completion backend that replays a fixed list of steps.

    A step is a ``PartialEvent`` or ``FinalResult`` to yield, an exception
    to raise, or ``HANG`` to block until the consumer gives up.
    """

    mode = CompletionBackendMode.STUB

    def __init__(self, steps: Optional[List[Any]] = None) -> None:
        self.steps = list(steps or [])
        self.requests: list = []
        self.closed = False

    async def stream(self, request, credential):
        self.requests.append((request, credential))
        try:
            for step in self.steps:
                await asyncio.sleep(0)
                if step is HANG:
                    await asyncio.Event().wait()
                elif isinstance(step, BaseException):
                    raise step
                else:
                    yield step
        finally:
            self.closed = True


def partial(text: str, message_id: str = "msg-1", conversation_id: str = "conv-1") -> PartialEvent:
    return PartialEvent(id=message_id, conversation_id=conversation_id, text=text)


def final(
    text: str,
    usage: Optional[Usage] = None,
    message_id: str = "msg-1",
    conversation_id: str = "conv-1",
) -> FinalResult:
    return FinalResult(
        id=message_id,
        conversation_id=conversation_id,
        text=text,
        usage=usage or Usage(),
    )


@dataclass
class TurnHarness:
    store: MemoryStore
    registry: CancellationRegistry
    backend: ScriptedBackend
    settings: Settings
    audit_policy: AuditPolicy
    credentials: CredentialPool
    orchestrator: ChatTurnOrchestrator
    user: User
    room: Room
    credential: Credential
    admin: Optional[User] = None
    extra: dict = field(default_factory=dict)

    def turn(self, seq: int, room_id: Optional[int] = None, user: Optional[User] = None):
        owner = user or self.user
        return self.store.get_turn(room_id or self.room.id, seq, user_id=owner.id)


def build_harness(
    steps: Optional[List[Any]] = None,
    *,
    audit_words: Optional[List[str]] = None,
    settings_overrides: Optional[dict] = None,
) -> TurnHarness:
    settings = Settings(
        test_mode=True,
        use_memory_store=True,
        chat_models=["gpt-3.5-turbo", "gpt-4o"],
        default_chat_model="gpt-3.5-turbo",
        audit_enabled=bool(audit_words),
        audit_sensitive_words=audit_words or [],
        **(settings_overrides or {}),
    )
    store = MemoryStore()
    user = store.create_user("alice@example.com", user_id="user-1")
    admin = store.create_user("root@example.com", user_id="admin-1", roles=["admin"])
    room = store.create_room(user.id, 1001, "Arithmetic")
    store.create_room(admin.id, 2001, "Admin room")
    credential = store.upsert_credential(
        Credential.new("sk-test-key-1111", ["gpt-3.5-turbo", "gpt-4o"], ["user", "admin"])
    )
    registry = CancellationRegistry()
    backend = ScriptedBackend(steps)
    audit_policy = AuditPolicy.from_settings(settings)
    credentials = CredentialPool(store, settings.chat_models, rng=random.Random(7))
    orchestrator = ChatTurnOrchestrator(
        store=store,
        credentials=credentials,
        backend=backend,
        registry=registry,
        audit_policy=audit_policy,
        settings=settings,
    )
    return TurnHarness(
        store=store,
        registry=registry,
        backend=backend,
        settings=settings,
        audit_policy=audit_policy,
        credentials=credentials,
        orchestrator=orchestrator,
        user=user,
        room=room,
        credential=credential,
        admin=admin,
    )


async def collect(agen) -> list:
    return [chunk async for chunk in agen]


async def wait_until(predicate, *, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)
