from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        roles JSONB NOT NULL DEFAULT '["user"]',
        chat_model TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_room (
        id BIGINT NOT NULL,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        prompt TEXT,
        using_context BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_turn (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        room_id BIGINT NOT NULL,
        seq BIGINT NOT NULL,
        prompt TEXT NOT NULL,
        response TEXT NOT NULL DEFAULT '',
        options JSONB NOT NULL DEFAULT '{}',
        usage JSONB,
        previous JSONB NOT NULL DEFAULT '[]',
        status TEXT NOT NULL DEFAULT 'active',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (user_id, room_id, seq),
        FOREIGN KEY (user_id, room_id) REFERENCES chat_room (user_id, id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_usage (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        room_id BIGINT NOT NULL,
        turn_id TEXT NOT NULL,
        message_id TEXT,
        prompt_tokens INTEGER NOT NULL,
        completion_tokens INTEGER NOT NULL,
        total_tokens INTEGER NOT NULL,
        estimated BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS chat_usage_user_created ON chat_usage (user_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS api_credential (
        id TEXT PRIMARY KEY,
        secret TEXT NOT NULL,
        models JSONB NOT NULL DEFAULT '[]',
        roles JSONB NOT NULL DEFAULT '[]',
        status TEXT NOT NULL DEFAULT 'enabled',
        remark TEXT NOT NULL DEFAULT '',
        base_url TEXT
    )
    """,
)


class PostgresStore:
    """Postgres-backed conversation store.

    Each public method runs in one pooled connection; leaving the
    ``with`` block commits, so every write is a single transaction.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the chat tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @staticmethod
    def _load_json(value: Any, default: Any) -> Any:
        if value is None:
            return default
        if isinstance(value, (dict, list)):
            return value
        try:
            return json.loads(value)
        except (TypeError, ValueError):
            return default

    # row helpers
    def _user_from_row(self, row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            roles=list(self._load_json(row.get("roles"), ["user"])),
            chat_model=row.get("chat_model"),
            is_active=bool(row.get("is_active", True)),
            created_at=row.get("created_at") or datetime.utcnow(),
        )

    @staticmethod
    def _room_from_row(row: dict) -> Room:
        return Room(
            id=int(row["id"]),
            user_id=str(row["user_id"]),
            title=row.get("title") or "New Chat",
            prompt=row.get("prompt"),
            using_context=bool(row.get("using_context", True)),
            created_at=row.get("created_at") or datetime.utcnow(),
        )

    def _turn_from_row(self, row: dict) -> Turn:
        previous = self._load_json(row.get("previous"), [])
        return Turn(
            id=str(row["id"]),
            room_id=int(row["room_id"]),
            seq=int(row["seq"]),
            prompt=row.get("prompt") or "",
            user_id=str(row.get("user_id") or ""),
            current=ResponseBranch(
                response=row.get("response") or "",
                options=TurnOptions.from_dict(self._load_json(row.get("options"), {})),
                usage=Usage.from_dict(self._load_json(row.get("usage"), None)),
            ),
            previous=[ResponseBranch.from_dict(item) for item in previous],
            status=TurnStatus(row.get("status") or TurnStatus.ACTIVE.value),
            created_at=row.get("created_at") or datetime.utcnow(),
            updated_at=row.get("updated_at") or datetime.utcnow(),
        )

    def _credential_from_row(self, row: dict) -> Credential:
        return Credential(
            id=str(row["id"]),
            secret=row["secret"],
            models=set(self._load_json(row.get("models"), [])),
            roles=set(self._load_json(row.get("roles"), [])),
            status=CredentialStatus(row.get("status") or CredentialStatus.ENABLED.value),
            remark=row.get("remark") or "",
            base_url=row.get("base_url"),
        )

    @staticmethod
    def _usage_record_from_row(row: dict) -> UsageRecord:
        return UsageRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            room_id=int(row["room_id"]),
            turn_id=str(row["turn_id"]),
            message_id=row.get("message_id"),
            usage=Usage(
                prompt_tokens=int(row.get("prompt_tokens") or 0),
                completion_tokens=int(row.get("completion_tokens") or 0),
                total_tokens=int(row.get("total_tokens") or 0),
                estimated=bool(row.get("estimated", False)),
            ),
            created_at=row.get("created_at") or datetime.utcnow(),
        )

    # users
    def create_user(
        self,
        email: str,
        *,
        roles: Optional[Iterable[str]] = None,
        chat_model: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> User:
        user = User(
            id=user_id or str(uuid.uuid4()),
            email=email,
            roles=list(roles or ["user"]),
            chat_model=chat_model,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, roles, chat_model, is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        json.dumps(user.roles),
                        user.chat_model,
                        user.is_active,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"email": email})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_chat_model(self, user_id: str, chat_model: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET chat_model = %s WHERE id = %s RETURNING *",
                (chat_model, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_roles(self, user_id: str, roles: Iterable[str]) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET roles = %s WHERE id = %s RETURNING *",
                (json.dumps(list(roles)), user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    # rooms
    def create_room(self, user_id: str, room_id: int, title: str = "New Chat") -> Room:
        room = Room(id=room_id, user_id=user_id, title=title)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO chat_room (id, user_id, title, prompt, using_context, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        room.id,
                        room.user_id,
                        room.title,
                        room.prompt,
                        room.using_context,
                        room.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("room owner missing", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("room already exists", {"room_id": room_id})
        return room

    def get_room(self, user_id: str, room_id: int) -> Optional[Room]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM chat_room WHERE id = %s AND user_id = %s",
                (room_id, user_id),
            ).fetchone()
        return self._room_from_row(row) if row else None

    def list_rooms(self, user_id: str) -> List[Room]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM chat_room WHERE user_id = %s ORDER BY created_at ASC",
                (user_id,),
            ).fetchall()
        return [self._room_from_row(row) for row in rows]

    def rename_room(self, user_id: str, room_id: int, title: str) -> Optional[Room]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE chat_room SET title = %s WHERE id = %s AND user_id = %s RETURNING *",
                (title, room_id, user_id),
            ).fetchone()
        return self._room_from_row(row) if row else None

    def update_room_prompt(self, user_id: str, room_id: int, prompt: Optional[str]) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE chat_room SET prompt = %s WHERE id = %s AND user_id = %s",
                (prompt, room_id, user_id),
            )
            return cur.rowcount > 0

    def update_room_using_context(self, user_id: str, room_id: int, using: bool) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE chat_room SET using_context = %s WHERE id = %s AND user_id = %s",
                (using, room_id, user_id),
            )
            return cur.rowcount > 0

    def delete_room(self, user_id: str, room_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM chat_room WHERE id = %s AND user_id = %s",
                (room_id, user_id),
            )
            return cur.rowcount > 0

    def delete_all_rooms(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM chat_room WHERE user_id = %s", (user_id,))
            return cur.rowcount

    # turns
    def create_turn(
        self, seq: int, prompt: str, room_id: int, options: TurnOptions, *, user_id: str
    ) -> Turn:
        turn = Turn(
            id=str(uuid.uuid4()),
            room_id=room_id,
            seq=seq,
            prompt=prompt,
            user_id=user_id,
            current=ResponseBranch(options=options),
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO chat_turn (id, user_id, room_id, seq, prompt, response, options, previous, status, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        turn.id,
                        turn.user_id,
                        turn.room_id,
                        turn.seq,
                        turn.prompt,
                        "",
                        json.dumps(options.to_dict()),
                        "[]",
                        turn.status.value,
                        turn.created_at,
                        turn.updated_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("room not found", {"room_id": room_id})
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "turn already exists", {"room_id": room_id, "seq": seq}
            )
        return turn

    def get_turn(self, room_id: int, seq: int, *, user_id: str) -> Optional[Turn]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM chat_turn WHERE user_id = %s AND room_id = %s AND seq = %s",
                (user_id, room_id, seq),
            ).fetchone()
        return self._turn_from_row(row) if row else None

    def get_turn_by_id(self, turn_id: str) -> Optional[Turn]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM chat_turn WHERE id = %s", (turn_id,)
            ).fetchone()
        return self._turn_from_row(row) if row else None

    def list_turns(
        self,
        room_id: int,
        *,
        user_id: str,
        before_seq: Optional[int] = None,
        limit: Optional[int] = 20,
    ) -> List[Turn]:
        clauses = ["user_id = %s", "room_id = %s", "status <> %s"]
        params: list[Any] = [user_id, room_id, TurnStatus.BOTH_DELETED.value]
        if before_seq is not None:
            clauses.append("seq < %s")
            params.append(before_seq)
        query = f"SELECT * FROM chat_turn WHERE {' AND '.join(clauses)} ORDER BY seq DESC"
        if limit is not None:
            query += " LIMIT %s"
            params.append(max(limit, 0))
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._turn_from_row(row) for row in reversed(rows)]

    def update_turn(
        self,
        turn_id: str,
        text: str,
        message_id: Optional[str],
        conversation_id: Optional[str],
        usage: Optional[Usage],
        previous: Optional[List[ResponseBranch]] = None,
    ) -> Turn:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM chat_turn WHERE id = %s FOR UPDATE", (turn_id,)
            ).fetchone()
            if not row:
                raise RecordNotFound("turn not found", {"turn_id": turn_id})
            turn = self._turn_from_row(row)
            options = turn.current.options
            options.message_id = message_id
            options.conversation_id = conversation_id
            branches = turn.previous if previous is None else list(previous)
            now = datetime.utcnow()
            conn.execute(
                """
                UPDATE chat_turn
                SET response = %s, options = %s, usage = %s, previous = %s, updated_at = %s
                WHERE id = %s
                """,
                (
                    text,
                    json.dumps(options.to_dict()),
                    json.dumps(usage.to_dict()) if usage else None,
                    json.dumps([branch.to_dict() for branch in branches]),
                    now,
                    turn_id,
                ),
            )
        turn.current = ResponseBranch(response=text, options=options, usage=usage)
        turn.previous = branches
        turn.updated_at = now
        return turn

    def delete_turn_half(
        self, room_id: int, seq: int, *, user_id: str, prompt: bool
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, status FROM chat_turn WHERE user_id = %s AND room_id = %s AND seq = %s FOR UPDATE",
                (user_id, room_id, seq),
            ).fetchone()
            if not row:
                return False
            status = TurnStatus(row["status"])
            status = status.without_prompt() if prompt else status.without_response()
            conn.execute(
                "UPDATE chat_turn SET status = %s, updated_at = now() WHERE id = %s",
                (status.value, row["id"]),
            )
        return True

    def clear_room(self, room_id: int, *, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM chat_turn WHERE user_id = %s AND room_id = %s",
                (user_id, room_id),
            )
            return cur.rowcount

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
            usage=usage,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO chat_usage (id, user_id, room_id, turn_id, message_id, prompt_tokens, completion_tokens, total_tokens, estimated, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    user_id,
                    room_id,
                    turn_id,
                    message_id,
                    usage.prompt_tokens,
                    usage.completion_tokens,
                    usage.total_tokens,
                    usage.estimated,
                    record.created_at,
                ),
            )
        return record

    def list_usage(self, user_id: str) -> List[UsageRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM chat_usage WHERE user_id = %s ORDER BY created_at ASC",
                (user_id,),
            ).fetchall()
        return [self._usage_record_from_row(row) for row in rows]

    def usage_by_day(
        self, user_id: str, start: datetime, end: datetime
    ) -> List[dict]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT to_char(created_at, 'YYYY-MM-DD') AS date,
                       SUM(prompt_tokens) AS prompt_tokens,
                       SUM(completion_tokens) AS completion_tokens,
                       SUM(total_tokens) AS total_tokens
                FROM chat_usage
                WHERE user_id = %s AND created_at >= %s AND created_at <= %s
                GROUP BY 1
                ORDER BY 1
                """,
                (user_id, start, end),
            ).fetchall()
        return [
            {
                "date": row["date"],
                "prompt_tokens": int(row["prompt_tokens"] or 0),
                "completion_tokens": int(row["completion_tokens"] or 0),
                "total_tokens": int(row["total_tokens"] or 0),
            }
            for row in rows
        ]

    # credentials
    def list_credentials(self) -> List[Credential]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM api_credential ORDER BY id").fetchall()
        return [self._credential_from_row(row) for row in rows]

    def get_credential(self, credential_id: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM api_credential WHERE id = %s", (credential_id,)
            ).fetchone()
        return self._credential_from_row(row) if row else None

    def upsert_credential(self, credential: Credential) -> Credential:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO api_credential (id, secret, models, roles, status, remark, base_url)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    secret = EXCLUDED.secret,
                    models = EXCLUDED.models,
                    roles = EXCLUDED.roles,
                    status = EXCLUDED.status,
                    remark = EXCLUDED.remark,
                    base_url = EXCLUDED.base_url
                """,
                (
                    credential.id,
                    credential.secret,
                    json.dumps(sorted(credential.models)),
                    json.dumps(sorted(credential.roles)),
                    CredentialStatus(credential.status).value,
                    credential.remark,
                    credential.base_url,
                ),
            )
        return credential

    def update_credential_status(
        self, credential_id: str, status: CredentialStatus
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE api_credential SET status = %s WHERE id = %s",
                (CredentialStatus(status).value, credential_id),
            )
            return cur.rowcount > 0
