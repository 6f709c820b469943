"""Tests for the conversation runner.

This module tests the ConversationRunner iteration loop: completion
detection, the nudge protocol, cancellation precedence, error
classification and budget handling.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Mapping, Sequence

import pytest

from parley.ai.orchestration.budget_manager import BudgetManager
from parley.ai.orchestration.cancellation import CancellationToken
from parley.ai.orchestration.conversation import ConversationStore
from parley.ai.orchestration.errors import (
    ErrorCode,
    FatalModelError,
    OperationCancelledError,
    ServiceUnavailableError,
)
from parley.ai.orchestration.runner import (
    FINAL_ANSWER_REQUEST,
    MAX_ITERATIONS_MESSAGE,
    NO_CONTENT_MESSAGE,
    ConversationRunner,
)
from parley.ai.orchestration.types import (
    BudgetAction,
    ContextCleanupResult,
    Message,
    RunnerConfig,
    TokenValidationResult,
    ToolCall,
    ToolCallRequest,
    ToolCallResponse,
    ToolExecutionRequest,
    ToolExecutionResult,
)


# =============================================================================
# Test Fixtures and Mocks
# =============================================================================


class FakeModelClient:
    """Replays scripted responses; exceptions in the script are raised."""

    def __init__(self, responses: Sequence[Any] = (), *, model: Any = None) -> None:
        self._responses = list(responses)
        self.requests: list[ToolCallRequest] = []
        self.model = model

    async def send_request(
        self,
        request: ToolCallRequest,
        cancellation: CancellationToken | None = None,
    ) -> ToolCallResponse:
        self.requests.append(request)
        if not self._responses:
            return ToolCallResponse(content="Default response")
        item = self._responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            result = item(request, cancellation)
            if asyncio.iscoroutine(result):
                result = await result
            return result
        return item

    async def get_current_model(self) -> Any:
        return self.model


class FakeToolExecutor:
    """Runs ``handler`` for every request and records each batch."""

    def __init__(self, handler: Callable[[ToolExecutionRequest], ToolExecutionResult] | None = None) -> None:
        self.handler = handler or (lambda request: ToolExecutionResult.from_success(request.name, f"Result for {request.name}"))
        self.batches: list[list[ToolExecutionRequest]] = []

    async def execute_tools(
        self,
        requests: Sequence[ToolExecutionRequest],
        *,
        cancellation: CancellationToken | None = None,
    ) -> list[ToolExecutionResult]:
        self.batches.append(list(requests))
        return [self.handler(request) for request in requests]


class RecordingObserver:
    def __init__(self, suffix: str = "") -> None:
        self.iterations: list[tuple[int, int]] = []
        self.starts: list[tuple[str, int, int, Mapping[str, Any]]] = []
        self.completions: list[tuple[Any, ...]] = []
        self.suffix = suffix

    def on_iteration_start(self, current: int, maximum: int) -> None:
        self.iterations.append((current, maximum))

    def on_tool_call_start(self, name: str, index: int, total: int, args: Mapping[str, Any]) -> None:
        self.starts.append((name, index, total, args))

    async def on_tool_call_complete(self, *args: Any) -> None:
        self.completions.append(args)

    def get_context_status_suffix(self) -> str:
        return self.suffix


def tool_call(name: str, args: Mapping[str, Any] | None = None, call_id: str = "call_1") -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments_json=json.dumps(dict(args or {})))


def reply(content: str | None = None, *calls: ToolCall) -> ToolCallResponse:
    return ToolCallResponse(content=content, tool_calls=calls)


def completion_result(request: ToolExecutionRequest) -> ToolExecutionResult:
    if request.name == "submit_review":
        return ToolExecutionResult.from_success(
            request.name, str(request.args.get("review_content", "")), {"isCompletion": True}
        )
    return ToolExecutionResult.from_success(request.name, f"Result for {request.name}")


@pytest.fixture
def conversation() -> ConversationStore:
    store = ConversationStore()
    store.add_user_message("Review the diff")
    return store


def make_config(**overrides: Any) -> RunnerConfig:
    values: dict[str, Any] = {"system_prompt": "You are a reviewer.", "max_iterations": 10}
    values.update(overrides)
    return RunnerConfig(**values)


# =============================================================================
# Completion
# =============================================================================


class TestCompletion:
    """Terminal states reached without errors."""

    @pytest.mark.asyncio
    async def test_plain_response_is_final_without_completion_requirement(self, conversation):
        client = FakeModelClient([reply("All good")])
        runner = ConversationRunner(client, FakeToolExecutor())

        result = await runner.run(make_config(), conversation, CancellationToken())

        assert result == "All good"
        assert len(client.requests) == 1
        assert [m.role for m in conversation.history()] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_empty_response_returns_sentinel(self, conversation):
        client = FakeModelClient([reply(None)])
        runner = ConversationRunner(client, FakeToolExecutor())

        assert await runner.run(make_config(), conversation) == NO_CONTENT_MESSAGE

    @pytest.mark.asyncio
    async def test_tool_call_then_answer(self, conversation):
        client = FakeModelClient([reply("x", tool_call("read_file", {"path": "a.py"})), reply("done")])
        executor = FakeToolExecutor()
        runner = ConversationRunner(client, executor)

        result = await runner.run(make_config(), conversation, CancellationToken())

        assert result == "done"
        assert len(client.requests) == 2
        assert len(executor.batches) == 1
        assert executor.batches[0][0].args == {"path": "a.py"}
        roles = [m.role for m in conversation.history()]
        assert roles == ["user", "assistant", "tool", "assistant"]
        tool_message = conversation.history()[2]
        assert tool_message.tool_call_id == "call_1"
        assert tool_message.content == "Result for read_file"

    @pytest.mark.asyncio
    async def test_system_prompt_and_tools_are_sent(self, conversation):
        client = FakeModelClient([reply("ok")])
        schema = {"type": "function", "function": {"name": "read_file", "parameters": {"type": "object"}}}
        runner = ConversationRunner(client, FakeToolExecutor())

        await runner.run(make_config(tools=[schema]), conversation)

        request = client.requests[0]
        assert request.messages[0] == Message.system("You are a reviewer.")
        assert request.messages[1].content == "Review the diff"
        assert request.tools == (schema,)

    @pytest.mark.asyncio
    async def test_completion_flag_ends_loop_regardless_of_tool_name(self, conversation):
        client = FakeModelClient([reply(None, tool_call("finish_up")), reply("never sent")])
        executor = FakeToolExecutor(
            lambda request: ToolExecutionResult.from_success(request.name, "Final answer", {"isCompletion": True})
        )
        runner = ConversationRunner(client, executor)

        result = await runner.run(make_config(), conversation)

        assert result == "Final answer"
        assert len(client.requests) == 1
        assert conversation.last_message() == Message.tool("call_1", "Final answer")

    @pytest.mark.asyncio
    async def test_first_completion_in_batch_wins(self, conversation):
        calls = (
            tool_call("submit_review", {"review_content": "first review"}, "a"),
            tool_call("submit_review", {"review_content": "second review"}, "b"),
        )
        client = FakeModelClient([reply(None, *calls)])
        runner = ConversationRunner(client, FakeToolExecutor(completion_result))

        result = await runner.run(make_config(), conversation)

        assert result == "first review"
        assert len(conversation.messages_by_role("tool")) == 2

    @pytest.mark.asyncio
    async def test_iteration_cap(self, conversation):
        client = FakeModelClient([reply(None, tool_call("read_file", call_id=f"c{i}")) for i in range(5)])
        runner = ConversationRunner(client, FakeToolExecutor())

        result = await runner.run(make_config(max_iterations=3), conversation)

        assert result == MAX_ITERATIONS_MESSAGE
        assert len(client.requests) == 3
        assert runner.hit_max_iterations is True
        assert runner.was_cancelled is False
        assert runner.iteration == 3


# =============================================================================
# Tool Call Handling
# =============================================================================


class TestToolCalls:
    """Tool dispatch and result folding."""

    @pytest.mark.asyncio
    async def test_failed_tool_is_reported_to_model(self, conversation):
        client = FakeModelClient([reply(None, tool_call("grep")), reply("recovered")])
        executor = FakeToolExecutor(lambda request: ToolExecutionResult.from_error(request.name, "boom"))
        runner = ConversationRunner(client, executor)

        result = await runner.run(make_config(), conversation)

        assert result == "recovered"
        assert len(client.requests) == 2
        tool_message = conversation.messages_by_role("tool")[0]
        assert "Error" in (tool_message.content or "")
        assert "boom" in (tool_message.content or "")
        assert client.requests[1].messages[-1] == tool_message

    @pytest.mark.asyncio
    async def test_unparseable_arguments_become_empty(self, conversation):
        broken = ToolCall(id="call_1", name="read_file", arguments_json="{not json")
        client = FakeModelClient([reply(None, broken), reply("done")])
        executor = FakeToolExecutor()
        runner = ConversationRunner(client, executor)

        assert await runner.run(make_config(), conversation) == "done"
        assert executor.batches[0][0].args == {}

    @pytest.mark.asyncio
    async def test_missing_call_ids_are_generated(self, conversation):
        calls = (ToolCall(id="", name="a"), ToolCall(id="", name="b"))
        client = FakeModelClient([reply(None, *calls), reply("done")])
        runner = ConversationRunner(client, FakeToolExecutor())

        await runner.run(make_config(), conversation)

        ids = [m.tool_call_id for m in conversation.messages_by_role("tool")]
        assert ids == ["tool_call_1_0", "tool_call_1_1"]
        assistant = conversation.messages_by_role("assistant")[0]
        assert [call.id for call in assistant.tool_calls or ()] == ids

    @pytest.mark.asyncio
    async def test_results_follow_request_order(self, conversation):
        calls = tuple(tool_call(name, call_id=f"id_{name}") for name in ("first", "second", "third"))
        client = FakeModelClient([reply(None, *calls), reply("done")])
        runner = ConversationRunner(client, FakeToolExecutor())

        await runner.run(make_config(), conversation)

        tool_messages = conversation.messages_by_role("tool")
        assert [m.tool_call_id for m in tool_messages] == ["id_first", "id_second", "id_third"]
        assert [m.content for m in tool_messages] == [
            "Result for first",
            "Result for second",
            "Result for third",
        ]

    @pytest.mark.asyncio
    async def test_observer_hooks_and_suffix(self, conversation):
        client = FakeModelClient([reply(None, tool_call("grep", {"pattern": "TODO"})), reply("done")])
        observer = RecordingObserver(suffix="\n[budget: 80% left]")
        runner = ConversationRunner(client, FakeToolExecutor())

        await runner.run(make_config(max_iterations=4), conversation, observer=observer)

        assert observer.iterations == [(1, 4), (2, 4)]
        assert observer.starts == [("grep", 0, 1, {"pattern": "TODO"})]
        call_id, name, args, result, success, error, duration_ms, metadata = observer.completions[0]
        assert (call_id, name, args, result, success, error) == ("call_1", "grep", {"pattern": "TODO"}, "Result for grep", True, None)
        assert isinstance(duration_ms, int)
        assert metadata == {}
        assert conversation.messages_by_role("tool")[0].content == "Result for grep\n[budget: 80% left]"

    @pytest.mark.asyncio
    async def test_observer_errors_do_not_break_loop(self, conversation):
        class ExplodingObserver:
            def on_iteration_start(self, current, maximum):
                raise RuntimeError("ui went away")

            def get_context_status_suffix(self):
                raise RuntimeError("nope")

        client = FakeModelClient([reply(None, tool_call("grep")), reply("done")])
        runner = ConversationRunner(client, FakeToolExecutor())

        assert await runner.run(make_config(), conversation, observer=ExplodingObserver()) == "done"
        assert conversation.messages_by_role("tool")[0].content == "Result for grep"

    @pytest.mark.asyncio
    async def test_mismatched_result_count_is_treated_as_error(self, conversation):
        class ShortExecutor(FakeToolExecutor):
            async def execute_tools(self, requests, *, cancellation=None):
                return []

        client = FakeModelClient([reply(None, tool_call("grep")), reply("done")])
        runner = ConversationRunner(client, ShortExecutor())

        assert await runner.run(make_config(), conversation) == "done"
        tool_message = conversation.messages_by_role("tool")[0]
        assert tool_message.tool_call_id == "call_1"
        assert (tool_message.content or "").startswith("Error:")


# =============================================================================
# Completion Nudges
# =============================================================================


class TestCompletionNudges:
    """Explicit completion protocol."""

    @pytest.mark.asyncio
    async def test_three_prose_responses_accept_the_third(self, conversation):
        client = FakeModelClient([reply("plan one"), reply("plan two"), reply("final prose")])
        runner = ConversationRunner(client, FakeToolExecutor())

        result = await runner.run(make_config(requires_explicit_completion=True), conversation)

        assert result == "final prose"
        assert len(client.requests) == 3
        nudges = [m for m in conversation.messages_by_role("user")[1:]]
        assert len(nudges) == 2
        assert all("submit_review" in (m.content or "") for m in nudges)

    @pytest.mark.asyncio
    async def test_nudge_names_configured_completion_tool(self, conversation):
        client = FakeModelClient([reply("thinking"), reply(None, tool_call("finish", {"text": "x" * 30}))])
        executor = FakeToolExecutor(
            lambda request: ToolExecutionResult.from_success(request.name, "finished", {"isCompletion": True})
        )
        runner = ConversationRunner(client, executor)

        config = make_config(requires_explicit_completion=True, completion_tool_name="finish")
        assert await runner.run(config, conversation) == "finished"
        assert "`finish`" in (conversation.messages_by_role("user")[1].content or "")

    @pytest.mark.parametrize("max_nudges", [1, 2])
    @pytest.mark.asyncio
    async def test_tool_call_resets_nudge_counter(self, conversation, max_nudges):
        client = FakeModelClient(
            [
                reply("I will look around"),
                reply(None, tool_call("read_file", call_id="c1")),
                reply("Still thinking"),
                reply(None, tool_call("submit_review", {"review_content": "Looks good overall."}, "c2")),
            ]
        )
        runner = ConversationRunner(client, FakeToolExecutor(completion_result), max_nudges=max_nudges)

        result = await runner.run(make_config(requires_explicit_completion=True), conversation)

        assert result == "Looks good overall."
        assert len(client.requests) == 4
        assert runner.completion_nudge_count == 0

    @pytest.mark.asyncio
    async def test_salvages_malformed_completion_payload(self, conversation):
        review = "## Summary\nThe change is safe to merge. Error handling is consistent across modules."
        prose = "Here is my review:\n```json\n" + json.dumps({"review_content": review}) + "\n```"
        client = FakeModelClient([reply(prose)])
        runner = ConversationRunner(client, FakeToolExecutor(), max_nudges=0)

        result = await runner.run(make_config(requires_explicit_completion=True), conversation)

        assert result == review

    @pytest.mark.asyncio
    async def test_short_salvage_falls_back_to_raw_content(self, conversation):
        prose = '{"review_content": "too short"}'
        client = FakeModelClient([reply(prose)])
        runner = ConversationRunner(client, FakeToolExecutor(), max_nudges=0)

        assert await runner.run(make_config(requires_explicit_completion=True), conversation) == prose


# =============================================================================
# Cancellation
# =============================================================================


class TestCancellation:
    """Cancellation wins at every checkpoint."""

    @pytest.mark.asyncio
    async def test_cancelled_before_first_request(self, conversation):
        token = CancellationToken()
        token.cancel()
        client = FakeModelClient([reply("never")])
        runner = ConversationRunner(client, FakeToolExecutor())

        assert await runner.run(make_config(), conversation, token) == ""
        assert runner.was_cancelled is True
        assert client.requests == []

    @pytest.mark.asyncio
    async def test_response_discarded_when_cancelled_during_request(self, conversation):
        token = CancellationToken()

        def respond(request, cancellation):
            token.cancel()
            return reply("a perfectly good answer")

        client = FakeModelClient([respond])
        runner = ConversationRunner(client, FakeToolExecutor())

        assert await runner.run(make_config(), conversation, token) == ""
        assert runner.was_cancelled is True
        assert conversation.messages_by_role("assistant") == ()

    @pytest.mark.asyncio
    async def test_pending_request_is_abandoned(self, conversation):
        token = CancellationToken()

        async def hang(request, cancellation):
            await asyncio.sleep(10)
            return reply("late")

        client = FakeModelClient([hang])
        runner = ConversationRunner(client, FakeToolExecutor())
        asyncio.get_running_loop().call_later(0.01, token.cancel)

        result = await asyncio.wait_for(runner.run(make_config(), conversation, token), timeout=5)

        assert result == ""
        assert runner.was_cancelled is True

    @pytest.mark.asyncio
    async def test_cancellation_beats_completion_from_tool(self, conversation):
        token = CancellationToken()

        def finish_and_cancel(request):
            token.cancel()
            return ToolExecutionResult.from_success(request.name, "Final review", {"isCompletion": True})

        client = FakeModelClient([reply(None, tool_call("submit_review"))])
        runner = ConversationRunner(client, FakeToolExecutor(finish_and_cancel))

        assert await runner.run(make_config(), conversation, token) == ""
        assert runner.was_cancelled is True

    @pytest.mark.asyncio
    async def test_error_racing_cancellation_reports_cancelled(self, conversation):
        token = CancellationToken()

        def fail(request, cancellation):
            token.cancel()
            raise RuntimeError("connection reset")

        client = FakeModelClient([fail])
        runner = ConversationRunner(client, FakeToolExecutor())

        assert await runner.run(make_config(), conversation, token) == ""
        assert runner.was_cancelled is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [OperationCancelledError(), RuntimeError("Request was cancelled upstream")])
    async def test_cancellation_error_without_signal(self, conversation, error):
        client = FakeModelClient([error])
        runner = ConversationRunner(client, FakeToolExecutor())

        assert await runner.run(make_config(), conversation, CancellationToken()) == ""
        assert runner.was_cancelled is True

    @pytest.mark.asyncio
    async def test_cancelled_while_counting_tokens(self, conversation):
        token = CancellationToken()

        class CancellingModel:
            name = "counting"
            max_input_tokens = 1000

            async def count_tokens(self, text, cancellation=None):
                token.cancel()
                raise OperationCancelledError()

        client = FakeModelClient([reply("never")], model=CancellingModel())
        runner = ConversationRunner(client, FakeToolExecutor())

        assert await runner.run(make_config(), conversation, token) == ""
        assert runner.was_cancelled is True
        assert client.requests == []
        assert conversation.messages_by_role("assistant") == ()


# =============================================================================
# Error Classification
# =============================================================================


class TestErrors:
    """Fatal, unavailable and transient failures."""

    @pytest.mark.asyncio
    async def test_fatal_vendor_error_is_raised_and_surfaced(self, conversation):
        raw = 'Request failed: {"error": {"code": "model_not_supported", "message": "The requested model is not supported."}}'
        client = FakeModelClient([RuntimeError(raw)])
        notices: list[str] = []
        runner = ConversationRunner(client, FakeToolExecutor(), notify_user=notices.append)

        with pytest.raises(FatalModelError) as excinfo:
            await runner.run(make_config(), conversation)

        assert excinfo.value.code == ErrorCode.MODEL_NOT_SUPPORTED
        assert notices == [excinfo.value.user_message]
        assert len(client.requests) == 1

    @pytest.mark.asyncio
    async def test_typed_fatal_error_propagates_unchanged(self, conversation):
        error = FatalModelError("Pick another model", ErrorCode.SYSTEM_PROMPT_NOT_SUPPORTED)
        client = FakeModelClient([error])
        runner = ConversationRunner(client, FakeToolExecutor())

        with pytest.raises(FatalModelError) as excinfo:
            await runner.run(make_config(), conversation)

        assert excinfo.value is error

    @pytest.mark.parametrize(
        "error",
        [ServiceUnavailableError("upstream down"), RuntimeError("503 Service Unavailable")],
    )
    @pytest.mark.asyncio
    async def test_service_unavailable_is_rethrown(self, conversation, error):
        client = FakeModelClient([error, reply("never")])
        runner = ConversationRunner(client, FakeToolExecutor())

        with pytest.raises(type(error)):
            await runner.run(make_config(), conversation)
        assert len(client.requests) == 1

    @pytest.mark.asyncio
    async def test_transient_error_is_reported_and_loop_continues(self, conversation):
        client = FakeModelClient([RuntimeError("socket hiccup"), reply("done")])
        runner = ConversationRunner(client, FakeToolExecutor())

        result = await runner.run(make_config(label="Review"), conversation)

        assert result == "done"
        assert len(client.requests) == 2
        error_turn = conversation.messages_by_role("assistant")[0]
        assert (error_turn.content or "").startswith("I encountered an error: [Review] Error in iteration 1")
        assert "socket hiccup" in (error_turn.content or "")

    @pytest.mark.asyncio
    async def test_bad_request_mentioning_system_word_is_transient(self, conversation):
        raw = (
            '400 {"error": {"message": "Unsupported parameter: use the ecosystem-compatible '
            'max_completion_tokens", "type": "invalid_request_error"}}'
        )
        client = FakeModelClient([RuntimeError(raw), reply("done")])
        runner = ConversationRunner(client, FakeToolExecutor())

        assert await runner.run(make_config(), conversation) == "done"
        assert len(client.requests) == 2

    @pytest.mark.parametrize(
        ("runner_kwargs", "expected"),
        [
            ({}, "The selected model does not accept system prompts."),
            ({"model_name": "gpt-x"}, "gpt-x does not accept system prompts."),
        ],
    )
    @pytest.mark.asyncio
    async def test_fatal_message_names_the_model(self, conversation, runner_kwargs, expected):
        raw = '{"error": {"message": "System messages are not supported", "type": "invalid_request_error"}}'
        client = FakeModelClient([RuntimeError(raw)])
        runner = ConversationRunner(client, FakeToolExecutor(), **runner_kwargs)

        with pytest.raises(FatalModelError) as excinfo:
            await runner.run(make_config(), conversation)

        assert excinfo.value.user_message.startswith(expected)

    @pytest.mark.asyncio
    async def test_fatal_message_uses_injected_budget_model(self, conversation):
        class NamedModel:
            name = "budget-model"
            max_input_tokens = 1000

            async def count_tokens(self, text, cancellation=None):
                return 1

        raw = '{"error": {"code": "model_not_supported", "message": "nope"}}'
        client = FakeModelClient([RuntimeError(raw)])
        runner = ConversationRunner(client, FakeToolExecutor(), budget_manager=BudgetManager(NamedModel()))

        with pytest.raises(FatalModelError) as excinfo:
            await runner.run(make_config(), conversation)

        assert excinfo.value.user_message.startswith("budget-model is not supported.")

    @pytest.mark.asyncio
    async def test_transient_error_on_last_iteration_ends_run(self, conversation):
        client = FakeModelClient([RuntimeError("boom")])
        runner = ConversationRunner(client, FakeToolExecutor())

        result = await runner.run(make_config(max_iterations=1), conversation)

        assert "boom" in result
        assert runner.hit_max_iterations is True

    @pytest.mark.asyncio
    async def test_dispatcher_failure_answers_dangling_calls(self, conversation):
        class FailingExecutor(FakeToolExecutor):
            async def execute_tools(self, requests, *, cancellation=None):
                raise RuntimeError("dispatcher crashed")

        calls = (tool_call("a", call_id="x1"), tool_call("b", call_id="x2"))
        client = FakeModelClient([reply(None, *calls), reply("done")])
        runner = ConversationRunner(client, FailingExecutor())

        assert await runner.run(make_config(), conversation) == "done"
        roles = [m.role for m in conversation.history()]
        assert roles == ["user", "assistant", "tool", "tool", "assistant", "assistant"]
        assert all("dispatcher crashed" in (m.content or "") for m in conversation.messages_by_role("tool"))


# =============================================================================
# Budget
# =============================================================================


class StubBudgetManager:
    def __init__(self, action: BudgetAction, cleaned: Sequence[Message] = ()) -> None:
        self.action = action
        self.cleaned = tuple(cleaned)
        self.validations = 0

    async def validate_tokens(self, messages, system_prompt, cancellation=None):
        self.validations += 1
        action = self.action if self.validations == 1 else BudgetAction.NONE
        return TokenValidationResult(
            total_tokens=95,
            max_tokens=100,
            exceeds_warning_threshold=action is not BudgetAction.NONE,
            exceeds_max_tokens=action is BudgetAction.REQUEST_FINAL_ANSWER,
            suggested_action=action,
        )

    async def cleanup_context(self, messages, system_prompt, target_utilization=0.8, cancellation=None):
        return ContextCleanupResult(
            cleaned_messages=self.cleaned,
            tool_results_removed=1,
            assistant_messages_removed=1,
            context_full_message_added=True,
        )


class TestBudget:
    """Context budget actions applied before each request."""

    @pytest.mark.asyncio
    async def test_request_final_answer_appends_prompt(self, conversation):
        client = FakeModelClient([reply("summary")])
        runner = ConversationRunner(
            client, FakeToolExecutor(), budget_manager=StubBudgetManager(BudgetAction.REQUEST_FINAL_ANSWER)
        )

        await runner.run(make_config(), conversation)

        assert client.requests[0].messages[-1] == Message.user(FINAL_ANSWER_REQUEST)

    @pytest.mark.asyncio
    async def test_remove_old_context_replays_cleaned_history(self, conversation):
        cleaned = (Message.user("Review the diff"), Message.user("Previous tool results removed."))
        client = FakeModelClient([reply("summary")])
        runner = ConversationRunner(
            client,
            FakeToolExecutor(),
            budget_manager=StubBudgetManager(BudgetAction.REMOVE_OLD_CONTEXT, cleaned),
        )

        await runner.run(make_config(), conversation)

        assert client.requests[0].messages[1:] == cleaned
        assert conversation.history()[:2] == cleaned

    @pytest.mark.asyncio
    async def test_budget_manager_built_from_current_model(self, conversation):
        class TinyModel:
            name = "tiny"
            max_input_tokens = 10

            async def count_tokens(self, text, cancellation=None):
                return len(text)

        client = FakeModelClient([reply("summary")], model=TinyModel())
        runner = ConversationRunner(client, FakeToolExecutor())

        await runner.run(make_config(), conversation)

        assert client.requests[0].messages[-1].content == FINAL_ANSWER_REQUEST


# =============================================================================
# Reset
# =============================================================================


class TestReset:
    """Runner reuse."""

    def test_reset_without_prior_run(self):
        runner = ConversationRunner(FakeModelClient(), FakeToolExecutor())
        runner.reset()
        assert runner.hit_max_iterations is False
        assert runner.was_cancelled is False

    @pytest.mark.asyncio
    async def test_reset_clears_outcome_flags(self, conversation):
        client = FakeModelClient([reply(None, tool_call("a"))])
        runner = ConversationRunner(client, FakeToolExecutor())
        await runner.run(make_config(max_iterations=1), conversation)
        assert runner.hit_max_iterations is True

        runner.reset()

        assert runner.hit_max_iterations is False
        assert runner.was_cancelled is False
        assert runner.iteration == 0
