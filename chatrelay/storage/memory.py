from __future__ import annotations

import threading
import uuid
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from chatrelay.logging import get_logger
from chatrelay.storage.errors import ConstraintViolation, RecordNotFound
from chatrelay.storage.models import (
    Credential,
    CredentialStatus,
    ResponseBranch,
    Room,
    Turn,
    TurnOptions,
    TurnStatus,
    Usage,
    UsageRecord,
    User,
)


class MemoryStore:
    """In-memory backing store for tests and single-process development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # (user_id, room_id) -> room
        self.rooms: Dict[Tuple[str, int], Room] = {}
        self.turns: Dict[str, Turn] = {}
        # (user_id, room_id, seq) -> turn id
        self.turn_index: Dict[Tuple[str, int, int], str] = {}
        self.usage_records: List[UsageRecord] = []
        self.credentials: Dict[str, Credential] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()

    # users
    def create_user(
        self,
        email: str,
        *,
        roles: Optional[Iterable[str]] = None,
        chat_model: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if any(u.email == email for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"email": email})
            user = User(
                id=user_id or str(uuid.uuid4()),
                email=email,
                roles=list(roles or ["user"]),
                chat_model=chat_model,
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def update_user_chat_model(self, user_id: str, chat_model: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.chat_model = chat_model
            return user

    def update_user_roles(self, user_id: str, roles: Iterable[str]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.roles = list(roles)
            return user

    # rooms
    def create_room(self, user_id: str, room_id: int, title: str = "New Chat") -> Room:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("room owner missing", {"user_id": user_id})
            if (user_id, room_id) in self.rooms:
                raise ConstraintViolation("room already exists", {"room_id": room_id})
            room = Room(id=room_id, user_id=user_id, title=title)
            self.rooms[(user_id, room_id)] = room
            return replace(room)

    def get_room(self, user_id: str, room_id: int) -> Optional[Room]:
        with self._data_lock:
            room = self.rooms.get((user_id, room_id))
            return replace(room) if room else None

    def list_rooms(self, user_id: str) -> List[Room]:
        with self._data_lock:
            rooms = [replace(r) for r in self.rooms.values() if r.user_id == user_id]
        rooms.sort(key=lambda r: r.created_at)
        return rooms

    def _owned_room(self, user_id: str, room_id: int) -> Optional[Room]:
        return self.rooms.get((user_id, room_id))

    def rename_room(self, user_id: str, room_id: int, title: str) -> Optional[Room]:
        with self._data_lock:
            room = self._owned_room(user_id, room_id)
            if not room:
                return None
            room.title = title
            return replace(room)

    def update_room_prompt(self, user_id: str, room_id: int, prompt: Optional[str]) -> bool:
        with self._data_lock:
            room = self._owned_room(user_id, room_id)
            if not room:
                return False
            room.prompt = prompt
            return True

    def update_room_using_context(self, user_id: str, room_id: int, using: bool) -> bool:
        with self._data_lock:
            room = self._owned_room(user_id, room_id)
            if not room:
                return False
            room.using_context = using
            return True

    def delete_room(self, user_id: str, room_id: int) -> bool:
        with self._data_lock:
            if not self._owned_room(user_id, room_id):
                return False
            self.clear_room(room_id, user_id=user_id)
            del self.rooms[(user_id, room_id)]
            return True

    def delete_all_rooms(self, user_id: str) -> int:
        with self._data_lock:
            owned = [r.id for r in self.rooms.values() if r.user_id == user_id]
            for room_id in owned:
                self.delete_room(user_id, room_id)
            return len(owned)

    # turns
    def create_turn(
        self, seq: int, prompt: str, room_id: int, options: TurnOptions, *, user_id: str
    ) -> Turn:
        with self._data_lock:
            if (user_id, room_id) not in self.rooms:
                raise ConstraintViolation("room not found", {"room_id": room_id})
            if (user_id, room_id, seq) in self.turn_index:
                raise ConstraintViolation(
                    "turn already exists", {"room_id": room_id, "seq": seq}
                )
            turn = Turn(
                id=str(uuid.uuid4()),
                room_id=room_id,
                seq=seq,
                prompt=prompt,
                user_id=user_id,
                current=ResponseBranch(options=replace(options)),
            )
            self.turns[turn.id] = turn
            self.turn_index[(user_id, room_id, seq)] = turn.id
            return turn.snapshot()

    def get_turn(self, room_id: int, seq: int, *, user_id: str) -> Optional[Turn]:
        with self._data_lock:
            turn_id = self.turn_index.get((user_id, room_id, seq))
            if not turn_id:
                return None
            return self.turns[turn_id].snapshot()

    def get_turn_by_id(self, turn_id: str) -> Optional[Turn]:
        with self._data_lock:
            turn = self.turns.get(turn_id)
            return turn.snapshot() if turn else None

    def list_turns(
        self,
        room_id: int,
        *,
        user_id: str,
        before_seq: Optional[int] = None,
        limit: Optional[int] = 20,
    ) -> List[Turn]:
        """Return the newest ``limit`` visible turns before ``before_seq``, oldest first."""
        with self._data_lock:
            turns = [
                t.snapshot()
                for t in self.turns.values()
                if t.user_id == user_id
                and t.room_id == room_id
                and t.status != TurnStatus.BOTH_DELETED
                and (before_seq is None or t.seq < before_seq)
            ]
        turns.sort(key=lambda t: t.seq)
        if limit is not None:
            turns = turns[-limit:] if limit > 0 else []
        return turns

    def update_turn(
        self,
        turn_id: str,
        text: str,
        message_id: Optional[str],
        conversation_id: Optional[str],
        usage: Optional[Usage],
        previous: Optional[List[ResponseBranch]] = None,
    ) -> Turn:
        """Overwrite the current answer; replace the branch list when given.

        The whole write happens under the data lock so two racing writers
        (stream finalizer and abort) leave one complete state or the other.
        """
        with self._data_lock:
            turn = self.turns.get(turn_id)
            if not turn:
                raise RecordNotFound("turn not found", {"turn_id": turn_id})
            options = replace(
                turn.current.options,
                message_id=message_id,
                conversation_id=conversation_id,
            )
            turn.current = ResponseBranch(
                response=text,
                options=options,
                usage=replace(usage) if usage else None,
            )
            if previous is not None:
                turn.previous = [
                    ResponseBranch.from_dict(branch.to_dict()) for branch in previous
                ]
            turn.updated_at = datetime.utcnow()
            return turn.snapshot()

    def delete_turn_half(
        self, room_id: int, seq: int, *, user_id: str, prompt: bool
    ) -> bool:
        with self._data_lock:
            turn_id = self.turn_index.get((user_id, room_id, seq))
            if not turn_id:
                return False
            turn = self.turns[turn_id]
            turn.status = turn.status.without_prompt() if prompt else turn.status.without_response()
            turn.updated_at = datetime.utcnow()
            return True

    def clear_room(self, room_id: int, *, user_id: str) -> int:
        with self._data_lock:
            doomed = [
                t.id
                for t in self.turns.values()
                if t.user_id == user_id and t.room_id == room_id
            ]
            for turn_id in doomed:
                turn = self.turns.pop(turn_id)
                self.turn_index.pop((turn.user_id, turn.room_id, turn.seq), None)
            return len(doomed)

    # usage
    def insert_usage(
        self,
        user_id: str,
        room_id: int,
        turn_id: str,
        message_id: Optional[str],
        usage: Usage,
    ) -> UsageRecord:
        record = UsageRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            room_id=room_id,
            turn_id=turn_id,
            message_id=message_id,
            usage=replace(usage),
        )
        with self._data_lock:
            self.usage_records.append(record)
        return record

    def list_usage(self, user_id: str) -> List[UsageRecord]:
        with self._data_lock:
            return [r for r in self.usage_records if r.user_id == user_id]

    def usage_by_day(
        self, user_id: str, start: datetime, end: datetime
    ) -> List[dict]:
        totals: Dict[str, Dict[str, int]] = defaultdict(
            lambda: {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
        )
        for record in self.list_usage(user_id):
            if not (start <= record.created_at <= end):
                continue
            day = totals[record.created_at.date().isoformat()]
            day["prompt_tokens"] += record.usage.prompt_tokens
            day["completion_tokens"] += record.usage.completion_tokens
            day["total_tokens"] += record.usage.total_tokens
        return [{"date": day, **counts} for day, counts in sorted(totals.items())]

    # credentials
    def list_credentials(self) -> List[Credential]:
        with self._data_lock:
            return [replace(c, models=set(c.models), roles=set(c.roles)) for c in self.credentials.values()]

    def get_credential(self, credential_id: str) -> Optional[Credential]:
        with self._data_lock:
            cred = self.credentials.get(credential_id)
            return replace(cred, models=set(cred.models), roles=set(cred.roles)) if cred else None

    def upsert_credential(self, credential: Credential) -> Credential:
        with self._data_lock:
            stored = replace(
                credential, models=set(credential.models), roles=set(credential.roles)
            )
            self.credentials[stored.id] = stored
            return replace(stored)

    def update_credential_status(
        self, credential_id: str, status: CredentialStatus
    ) -> bool:
        with self._data_lock:
            cred = self.credentials.get(credential_id)
            if not cred:
                return False
            cred.status = CredentialStatus(status)
            return True
