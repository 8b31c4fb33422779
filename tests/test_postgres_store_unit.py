import json
from contextlib import contextmanager
from datetime import datetime

import pytest

from chatrelay.storage.errors import RecordNotFound
from chatrelay.storage.models import CredentialStatus, ResponseBranch, TurnOptions, TurnStatus, Usage
from chatrelay.storage.postgres import _SCHEMA, PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Answers SELECTs from a canned row and records every statement."""

    def __init__(self, row=None):
        self.row = row
        self.statements = []

    def execute(self, query, params=None):
        self.statements.append((" ".join(query.split()), params))
        if query.lstrip().upper().startswith("SELECT"):
            return FakeCursor([self.row] if self.row else [])
        return FakeCursor(rowcount=1)


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _bare_store(pool=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool or DummyPool()
    return store


def _turn_row(**overrides):
    row = {
        "id": "turn-1",
        "user_id": "user-1",
        "room_id": 1001,
        "seq": 3,
        "prompt": "2+2?",
        "response": "4",
        "options": {"message_id": "m1", "conversation_id": "c1", "temperature": 0.2},
        "usage": json.dumps({"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4}),
        "previous": [],
        "status": "active",
        "created_at": datetime(2024, 1, 1),
        "updated_at": datetime(2024, 1, 1),
    }
    row.update(overrides)
    return row


def test_turn_from_row_decodes_json_columns():
    store = _bare_store()
    previous = [ResponseBranch(response="five", options=TurnOptions(message_id="m0")).to_dict()]
    turn = store._turn_from_row(_turn_row(previous=json.dumps(previous), status="prompt_deleted"))

    assert turn.response == "4"
    assert turn.options.message_id == "m1"
    assert turn.options.temperature == 0.2
    assert turn.current.usage.total_tokens == 4
    assert [branch.response for branch in turn.previous] == ["five"]
    assert turn.response_count == 2
    assert turn.status == TurnStatus.PROMPT_DELETED
    assert turn.user_id == "user-1"


def test_load_json_tolerates_garbage():
    assert PostgresStore._load_json(None, []) == []
    assert PostgresStore._load_json("not json", {"x": 1}) == {"x": 1}
    assert PostgresStore._load_json('["a"]', []) == ["a"]


def test_credential_and_user_rows():
    store = _bare_store()
    credential = store._credential_from_row(
        {
            "id": "cred-1",
            "secret": "sk-1",
            "models": '["gpt-4o"]',
            "roles": ["vip"],
            "status": "disabled",
            "remark": None,
            "base_url": None,
        }
    )
    assert credential.models == {"gpt-4o"}
    assert credential.roles == {"vip"}
    assert credential.status == CredentialStatus.DISABLED
    assert credential.remark == ""

    user = store._user_from_row({"id": "u1", "email": "a@example.com", "roles": None})
    assert user.roles == ["user"]
    assert user.is_active is True


def test_update_turn_keeps_options_and_pushes_branches():
    conn = FakeConnection(row=_turn_row())
    store = _bare_store(FakePool(conn))
    pushed = [ResponseBranch(response="4", options=TurnOptions(message_id="m1"))]

    turn = store.update_turn("turn-1", "four", "m2", "c1", Usage(5, 2, 7), pushed)

    assert turn.response == "four"
    assert turn.options.message_id == "m2"
    assert turn.options.temperature == 0.2
    assert turn.response_count == 2

    select, update = conn.statements
    assert "FOR UPDATE" in select[0]
    params = update[1]
    assert params[0] == "four"
    assert json.loads(params[1])["message_id"] == "m2"
    assert json.loads(params[2])["total_tokens"] == 7
    assert json.loads(params[3])[0]["options"]["message_id"] == "m1"
    assert params[-1] == "turn-1"


def test_update_turn_missing_row():
    store = _bare_store(FakePool(FakeConnection(row=None)))
    with pytest.raises(RecordNotFound):
        store.update_turn("missing", "text", None, None, None)


def test_turn_lookups_are_scoped_to_the_room_owner():
    conn = FakeConnection(row=_turn_row())
    store = _bare_store(FakePool(conn))

    turn = store.get_turn(1001, 3, user_id="user-1")
    store.list_turns(1001, user_id="user-1", before_seq=3)
    store.clear_room(1001, user_id="user-1")

    assert turn.user_id == "user-1"
    (get_sql, get_params), (list_sql, list_params), (clear_sql, clear_params) = conn.statements
    assert "user_id = %s AND room_id = %s AND seq = %s" in get_sql
    assert get_params == ("user-1", 1001, 3)
    assert list_params[:2] == ["user-1", 1001]
    assert "user_id = %s AND room_id = %s" in clear_sql
    assert clear_params == ("user-1", 1001)


def test_room_key_includes_owner():
    ddl = [" ".join(statement.split()) for statement in _SCHEMA]
    room = next(s for s in ddl if "CREATE TABLE IF NOT EXISTS chat_room" in s)
    turn = next(s for s in ddl if "CREATE TABLE IF NOT EXISTS chat_turn" in s)
    assert "PRIMARY KEY (user_id, id)" in room
    assert "UNIQUE (user_id, room_id, seq)" in turn
    assert "REFERENCES chat_room (user_id, id)" in turn
