"""End-to-end chat turn behavior against the in-memory store."""

import asyncio
import contextlib

import pytest

from chatrelay.service.errors import (
    CompletionError,
    ConflictError,
    InvalidRoomError,
    NoEligibleCredentialError,
    SensitiveContentError,
    TurnNotFoundError,
)
from chatrelay.service.orchestrator import ChatTurnRequest
from chatrelay.storage.models import CredentialStatus, Usage
from helpers import HANG, build_harness, collect, final, partial, wait_until

ROOM = 1001


def _request(seq=1, prompt="2+2?", **kwargs):
    return ChatTurnRequest(room_id=ROOM, seq=seq, prompt=prompt, **kwargs)


async def _run_scenario_a(h):
    h.backend.steps = [
        partial("2+2"),
        partial("2+2="),
        partial("2+2=4"),
        final("2+2=4", Usage(prompt_tokens=5, completion_tokens=3, total_tokens=8)),
    ]
    prepared = h.orchestrator.prepare(h.user, _request())
    return await collect(h.orchestrator.stream(prepared))


async def _consume_into(agen, sink: list):
    async for chunk in agen:
        sink.append(chunk)


class TestScenarios:
    async def test_new_turn_streams_and_persists_result(self, harness):
        chunks = await _run_scenario_a(harness)

        assert [c["text"] for c in chunks[:-1]] == ["2+2", "2+2=", "2+2=4"]
        terminal = chunks[-1]
        assert terminal["text"] == "2+2=4"
        assert terminal["conversationId"] == "conv-1"
        assert terminal["detail"]["usage"]["total_tokens"] == 8
        assert terminal["persisted"] is True

        turn = harness.turn(1)
        assert turn.response == "2+2=4"
        assert turn.current.usage.total_tokens == 8
        assert turn.options.message_id == "msg-1"
        assert turn.options.conversation_id == "conv-1"
        assert turn.previous == []

        records = harness.store.list_usage(harness.user.id)
        assert len(records) == 1
        assert records[0].turn_id == turn.id
        assert records[0].usage.total_tokens == 8
        assert harness.registry.active(harness.user.id) is None

    async def test_regenerate_pushes_previous_answer(self, harness):
        await _run_scenario_a(harness)
        original = harness.turn(1)

        harness.backend.steps = [
            partial("The answer", message_id="msg-2"),
            final(
                "The answer is 4.",
                Usage(prompt_tokens=5, completion_tokens=5, total_tokens=10),
                message_id="msg-2",
            ),
        ]
        prepared = harness.orchestrator.prepare(
            harness.user, _request(regenerate=True)
        )
        await collect(harness.orchestrator.stream(prepared))

        turn = harness.turn(1)
        assert turn.id == original.id
        assert turn.response == "The answer is 4."
        assert len(turn.previous) == 1
        assert turn.previous[0].response == "2+2=4"
        assert turn.previous[0].options == original.options
        assert turn.response_count == 2
        assert turn.response_at(0).response == "2+2=4"
        assert turn.response_at(1).response == "The answer is 4."
        assert len(harness.store.list_usage(harness.user.id)) == 2

    async def test_regenerations_append_in_order(self, harness):
        await _run_scenario_a(harness)
        for n in range(2, 4):
            harness.backend.steps = [final(f"answer {n}", message_id=f"msg-{n}")]
            prepared = harness.orchestrator.prepare(
                harness.user, _request(regenerate=True)
            )
            await collect(harness.orchestrator.stream(prepared))

        turn = harness.turn(1)
        assert [b.response for b in turn.previous] == ["2+2=4", "answer 2"]
        assert turn.response == "answer 3"

    async def test_abort_before_first_event_keeps_caller_text(self, harness):
        harness.backend.steps = [HANG]
        prepared = harness.orchestrator.prepare(harness.user, _request())
        task = asyncio.create_task(collect(harness.orchestrator.stream(prepared)))
        await wait_until(lambda: harness.registry.active(harness.user.id) is not None)

        turn_id = harness.orchestrator.abort(harness.user.id, "stopped", "m1", "c1")
        chunks = await asyncio.wait_for(task, 2)

        turn = harness.turn(1)
        assert turn_id == turn.id
        assert turn.response == "stopped"
        assert turn.options.message_id == "m1"
        assert turn.options.conversation_id == "c1"
        assert turn.current.usage is None
        assert chunks[-1]["detail"]["choices"][0]["finish_reason"] == "aborted"
        assert harness.store.list_usage(harness.user.id) == []
        assert harness.backend.closed is True


class TestPreflightRejections:
    def test_unknown_room(self, harness):
        with pytest.raises(InvalidRoomError):
            harness.orchestrator.prepare(
                harness.user, ChatTurnRequest(room_id=9999, seq=1, prompt="hi")
            )

    def test_room_of_another_user(self, harness):
        with pytest.raises(InvalidRoomError):
            harness.orchestrator.prepare(
                harness.user, ChatTurnRequest(room_id=2001, seq=1, prompt="hi")
            )

    def test_sensitive_prompt_rejected_without_writes(self):
        h = build_harness(audit_words=["forbidden"])
        with pytest.raises(SensitiveContentError):
            h.orchestrator.prepare(h.user, _request(prompt="tell me the FORBIDDEN thing"))
        assert h.turn(1) is None
        assert h.store.list_usage(h.user.id) == []

    async def test_privileged_role_skips_audit(self):
        h = build_harness([final("ok")], audit_words=["forbidden"])
        prepared = h.orchestrator.prepare(
            h.admin,
            ChatTurnRequest(room_id=2001, seq=1, prompt="the forbidden thing"),
        )
        await collect(h.orchestrator.stream(prepared))
        assert h.turn(1, room_id=2001, user=h.admin).response == "ok"

    def test_no_eligible_credential_creates_nothing(self, harness):
        harness.store.update_credential_status(
            harness.credential.id, CredentialStatus.DISABLED
        )
        with pytest.raises(NoEligibleCredentialError):
            harness.orchestrator.prepare(harness.user, _request())
        assert harness.turn(1) is None
        assert harness.backend.requests == []

    async def test_no_eligible_credential_leaves_regenerate_target_unchanged(self, harness):
        await _run_scenario_a(harness)
        before = harness.turn(1)
        harness.store.update_credential_status(
            harness.credential.id, CredentialStatus.DISABLED
        )
        with pytest.raises(NoEligibleCredentialError):
            harness.orchestrator.prepare(harness.user, _request(regenerate=True))
        after = harness.turn(1)
        assert after.response == before.response
        assert after.previous == before.previous
        assert after.updated_at == before.updated_at

    def test_credential_is_checked_before_the_turn_lookup(self, harness):
        harness.store.update_credential_status(
            harness.credential.id, CredentialStatus.DISABLED
        )
        with pytest.raises(NoEligibleCredentialError):
            harness.orchestrator.prepare(harness.user, _request(seq=42, regenerate=True))

    def test_regenerate_missing_turn(self, harness):
        with pytest.raises(TurnNotFoundError):
            harness.orchestrator.prepare(harness.user, _request(seq=42, regenerate=True))

    async def test_duplicate_new_turn_conflicts(self, harness):
        await _run_scenario_a(harness)
        with pytest.raises(ConflictError):
            harness.orchestrator.prepare(harness.user, _request())


class TestFailures:
    async def test_midstream_failure_keeps_partial_text(self, harness):
        harness.backend.steps = [
            partial("Hel"),
            partial("Hello"),
            CompletionError("upstream reset"),
        ]
        prepared = harness.orchestrator.prepare(harness.user, _request())
        chunks = await collect(harness.orchestrator.stream(prepared))

        terminal = chunks[-1]
        assert terminal["status"] == "Fail"
        assert terminal["code"] == "adapter_error"
        assert terminal["data"]["text"] == "Hello"
        assert terminal["persisted"] is True

        turn = harness.turn(1)
        assert turn.response == "Hello"
        assert turn.options.message_id == "msg-1"
        assert harness.store.list_usage(harness.user.id) == []
        assert harness.registry.active(harness.user.id) is None

    async def test_failure_before_any_text_records_error_message(self, harness):
        harness.backend.steps = [CompletionError("rate limited upstream")]
        prepared = harness.orchestrator.prepare(harness.user, _request())
        chunks = await collect(harness.orchestrator.stream(prepared))

        assert chunks[-1]["message"] == "rate limited upstream"
        turn = harness.turn(1)
        assert turn.response == "rate limited upstream"
        assert turn.has_answer is False

    async def test_unexpected_backend_exception_ends_with_fail_chunk(
        self, harness, monkeypatch
    ):
        harness.backend.steps = [partial("2+2"), ConnectionResetError("peer reset")]
        outcomes = []
        finalize = harness.orchestrator._finalize

        def recording_finalize(prepared, turn, handle, outcome, *rest):
            outcomes.append(outcome.value)
            return finalize(prepared, turn, handle, outcome, *rest)

        monkeypatch.setattr(harness.orchestrator, "_finalize", recording_finalize)
        prepared = harness.orchestrator.prepare(harness.user, _request())
        chunks = await collect(harness.orchestrator.stream(prepared))

        terminal = chunks[-1]
        assert terminal["status"] == "Fail"
        assert terminal["code"] == "adapter_error"
        assert terminal["message"] == "peer reset"
        assert terminal["data"]["text"] == "2+2"
        assert terminal["persisted"] is True
        assert outcomes == ["failed"]
        assert harness.turn(1).response == "2+2"
        assert harness.registry.active(harness.user.id) is None

    async def test_failed_regeneration_moves_good_answer_to_previous(self, harness):
        await _run_scenario_a(harness)
        harness.backend.steps = [CompletionError("rate limited upstream")]
        prepared = harness.orchestrator.prepare(
            harness.user, _request(regenerate=True)
        )
        chunks = await collect(harness.orchestrator.stream(prepared))

        assert chunks[-1]["status"] == "Fail"
        turn = harness.turn(1)
        assert [b.response for b in turn.previous] == ["2+2=4"]
        assert turn.previous[0].options.message_id == "msg-1"
        assert turn.response == "rate limited upstream"
        assert turn.options.message_id is None
        assert turn.response_count == 2

    async def test_turn_timeout_counts_as_failure(self):
        h = build_harness(
            [partial("a"), HANG], settings_overrides={"turn_timeout_seconds": 0.05}
        )
        prepared = h.orchestrator.prepare(h.user, _request())
        chunks = await asyncio.wait_for(collect(h.orchestrator.stream(prepared)), 2)

        assert chunks[-1]["code"] == "adapter_error"
        assert chunks[-1]["message"] == "completion timed out"
        assert h.turn(1).response == "a"

    async def test_store_failure_is_flagged_not_raised(self, harness, monkeypatch):
        harness.backend.steps = [partial("hi"), final("hi", Usage(1, 1, 2))]

        def broken_update(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(harness.store, "update_turn", broken_update)
        prepared = harness.orchestrator.prepare(harness.user, _request())
        chunks = await collect(harness.orchestrator.stream(prepared))

        assert chunks[-1]["text"] == "hi"
        assert chunks[-1]["persisted"] is False
        assert harness.registry.active(harness.user.id) is None

    async def test_client_disconnect_persists_partial(self, harness):
        harness.backend.steps = [partial("Hi"), HANG]
        prepared = harness.orchestrator.prepare(harness.user, _request())
        received: list = []
        task = asyncio.create_task(
            _consume_into(harness.orchestrator.stream(prepared), received)
        )
        await wait_until(lambda: len(received) == 1)

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

        assert harness.turn(1).response == "Hi"
        assert harness.registry.active(harness.user.id) is None


class TestAbort:
    def test_abort_with_nothing_in_flight_is_noop(self, harness):
        assert harness.orchestrator.abort(harness.user.id, "x", "m", "c") is None
        assert harness.orchestrator.abort(harness.user.id, "x", "m", "c") is None
        assert harness.store.turns == {}

    async def test_abort_after_partial_leaves_one_written_state(self, harness):
        harness.backend.steps = [partial("The first"), HANG]
        prepared = harness.orchestrator.prepare(harness.user, _request())
        received: list = []
        task = asyncio.create_task(
            _consume_into(harness.orchestrator.stream(prepared), received)
        )
        await wait_until(lambda: len(received) == 1)

        harness.orchestrator.abort(harness.user.id, "The first", "msg-1", "conv-1")
        await asyncio.wait_for(task, 2)

        turn = harness.turn(1)
        assert turn.response == "The first"
        assert turn.options.message_id == "msg-1"
        assert received[-1]["detail"]["choices"][0]["finish_reason"] == "aborted"

    async def test_new_turn_supersedes_running_turn(self, harness):
        harness.backend.steps = [partial("x"), HANG]
        first = harness.orchestrator.prepare(harness.user, _request(seq=1))
        first_chunks: list = []
        first_task = asyncio.create_task(
            _consume_into(harness.orchestrator.stream(first), first_chunks)
        )
        await wait_until(lambda: len(first_chunks) == 1)

        harness.backend.steps = [final("second answer", message_id="msg-2")]
        second = harness.orchestrator.prepare(harness.user, _request(seq=2, prompt="again"))
        second_chunks = await collect(harness.orchestrator.stream(second))
        await asyncio.wait_for(first_task, 2)

        assert first_chunks[-1]["detail"]["choices"][0]["finish_reason"] == "aborted"
        assert second_chunks[-1]["text"] == "second answer"
        assert harness.turn(1).response == "x"
        assert harness.turn(2).response == "second answer"
        assert harness.registry.active(harness.user.id) is None


class TestContext:
    async def test_prior_turns_replayed(self, harness):
        await _run_scenario_a(harness)
        harness.backend.steps = [final("6")]
        prepared = harness.orchestrator.prepare(harness.user, _request(seq=2, prompt="3+3?"))
        await collect(harness.orchestrator.stream(prepared))

        request, credential = harness.backend.requests[-1]
        assert request.context == [
            {"role": "user", "content": "2+2?"},
            {"role": "assistant", "content": "2+2=4"},
        ]
        assert request.prompt == "3+3?"
        assert credential.id == harness.credential.id

    async def test_deleted_halves_and_disabled_context_skipped(self, harness):
        await _run_scenario_a(harness)
        harness.store.delete_turn_half(ROOM, 1, user_id=harness.user.id, prompt=False)
        prepared = harness.orchestrator.prepare(harness.user, _request(seq=2, prompt="next"))
        assert prepared.context == [{"role": "user", "content": "2+2?"}]

        harness.store.update_room_using_context(harness.user.id, ROOM, False)
        prepared = harness.orchestrator.prepare(harness.user, _request(seq=2, prompt="next"))
        assert prepared.context == []

    def test_room_prompt_overrides_request_system_prompt(self, harness):
        harness.store.update_room_prompt(harness.user.id, ROOM, "You are a pirate.")
        prepared = harness.orchestrator.prepare(
            harness.user, _request(system_prompt="Be formal.")
        )
        assert prepared.system_prompt == "You are a pirate."

    def test_model_falls_back_to_user_preference(self, harness):
        harness.store.update_user_chat_model(harness.user.id, "gpt-4o")
        prepared = harness.orchestrator.prepare(harness.user, _request())
        assert prepared.model == "gpt-4o"
