"""测试请求处理工作流（端到端，使用推理服务和专家替身）"""

import asyncio

import pytest

from conftest import FakeProvider, FakeSpecialist, make_fake_registry
from tubeguide.core.exceptions import HandlerError, ReasoningTimeoutError, ValidationError
from tubeguide.orchestrator.coordinator import CollaborationCoordinator
from tubeguide.orchestrator.synthesis import ADDITIONAL_INFO_HEADER
from tubeguide.orchestrator.workflow import (
    CONFIRMATION_PROMPT,
    FALLBACK_MESSAGE,
    VALIDATION_MESSAGE,
    RequestWorkflow,
    parse_confirmation,
    sanitize_context,
    sanitize_thread_id,
    validate_query,
)
from tubeguide.router.classifier import QueryClassifier
from tubeguide.specialists.config import SPECIALIST_CONFIGS, SpecialistId

CONFIRM_QUERY = "Do I need to change at Bank for the Northern line?"


def build_workflow(registry, tables, store, *, collaborate=True):
    classifier = QueryClassifier(registry, tables, default_handler="central", timeout=1.0)
    coordinator = CollaborationCoordinator(registry, tables) if collaborate else None
    return RequestWorkflow(classifier, registry, coordinator, store)


@pytest.fixture
def workflow(fake_registry, tables, store):
    return build_workflow(fake_registry, tables, store)


class TestInputHelpers:
    """输入清洗"""

    def test_validate_query(self):
        assert validate_query("  Circle   line\nstatus ") == "Circle line status"
        assert validate_query("x" * 50, max_length=10) == "x" * 10
        for bad in ("", "   ", None, 42):
            with pytest.raises(ValidationError):
                validate_query(bad)

    def test_sanitize_thread_id(self):
        assert sanitize_thread_id("abc$%-def_1") == "abc-def_1"
        assert sanitize_thread_id(None).startswith("thread_")
        assert sanitize_thread_id("$$$").startswith("thread_")

    def test_sanitize_context(self):
        context = {"location": "  Bank  ", "password": "secret", "accessibility": True}
        assert sanitize_context(context) == {"location": "Bank", "accessibility": True}
        assert sanitize_context("nope") == {}

    @pytest.mark.parametrize(
        "answer,expected",
        [("yes", True), ("Yes please", True), (True, True), ("no", False), ("No.", False),
         (False, False), ("maybe", None), ("", None), (None, None)],
    )
    def test_parse_confirmation(self, answer, expected):
        assert parse_confirmation(answer) is expected


class TestRouting:
    """端到端路由"""

    @pytest.mark.asyncio
    async def test_explicit_line_mention(self, workflow, provider, store):
        result = await workflow.run("Circle line status", provider, thread_id="t1")

        assert result["handler_id"] == "circle"
        assert result["confidence"] == 0.95
        assert not result["is_fallback"]
        assert not result["collaborative"]
        assert result["metadata"]["stage_trace"] == [
            "validate", "classify", "invoke", "persist", "finalize",
        ]
        assert result["metadata"]["persisted"]

        messages = await store.history("t1")
        assert [m.role for m in messages] == ["user", "assistant"]
        assert messages[0].content == "Circle line status"
        assert messages[1].handler_id == "circle"
        assert messages[1].confidence == 0.95

    @pytest.mark.asyncio
    async def test_shared_station_arrival(self, workflow, provider):
        result = await workflow.run("next train at Victoria", provider, thread_id="t1")
        assert result["handler_id"] == "district"
        assert result["confidence"] == 0.9
        assert provider.choose_calls == []

    @pytest.mark.asyncio
    async def test_journey_collaboration(self, tables, store):
        registry = make_fake_registry()
        workflow = build_workflow(registry, tables, store)
        provider = FakeProvider(choice="CENTRAL")

        result = await workflow.run(
            "how do I get from Victoria to Oxford Circus", provider, thread_id="t1"
        )

        assert result["handler_id"] == "central"
        assert result["collaborative"]
        assert result["handlers_used"] == ["central", "circle", "district", "victoria"]
        assert result["metadata"]["collaboration_pattern"] == "journey"
        assert ADDITIONAL_INFO_HEADER in result["response"]
        assert result["confidence"] == pytest.approx((0.7 + 0.5 * 3) / 4)

    @pytest.mark.asyncio
    async def test_reasoning_timeout_uses_default(self, workflow, fake_registry):
        provider = FakeProvider(choose_error=ReasoningTimeoutError(1.0))
        result = await workflow.run("how is the service", provider, thread_id="t1")

        assert result["handler_id"] == "central"
        assert result["confidence"] == 0.5
        assert result["is_fallback"]
        assert "timeout" in result["metadata"]["fallback_reason"]
        # 回退决策仍然调用默认专家
        assert len(fake_registry.get("central").calls) == 1

    @pytest.mark.asyncio
    async def test_history_and_context_reach_specialist(self, workflow, provider, fake_registry):
        await workflow.run("Circle line status", provider, thread_id="t1")
        await workflow.run(
            "Circle line status again",
            provider,
            thread_id="t1",
            context={"location": "Bank", "password": "secret"},
        )
        _, context = fake_registry.get("circle").calls[-1]
        assert context.user_context == {"location": "Bank"}
        assert [m["role"] for m in context.history] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_thread_id_generated(self, workflow, provider):
        result = await workflow.run("Circle line status", provider)
        assert result["thread_id"].startswith("thread_")


class TestFilteringAndValidation:
    """过滤与校验"""

    @pytest.mark.asyncio
    async def test_off_topic_is_answered_and_persisted(self, workflow, provider, store, fake_registry):
        result = await workflow.run("Give me a recipe for pancakes", provider, thread_id="t1")

        assert result["handler_id"] == "filter"
        assert result["confidence"] == 1.0
        assert result["metadata"]["filter_type"] == "off_topic"
        assert "invoke" not in result["metadata"]["stage_trace"]
        assert await store.message_count("t1") == 2
        assert all(not s.calls for s in fake_registry)

    @pytest.mark.asyncio
    async def test_empty_query_is_rejected(self, workflow, provider, store, fake_registry):
        result = await workflow.run("   ", provider, thread_id="t1")

        assert result["rejected"]
        assert result["response"] == VALIDATION_MESSAGE
        assert result["error"] == "Query must be a non-empty string"
        assert result["confidence"] == 0.0
        assert result["metadata"]["stage_trace"] == ["validate", "fallback", "finalize"]
        assert await store.message_count("t1") == 0
        assert provider.choose_calls == []
        assert all(not s.calls for s in fake_registry)


class TestHandlerFailure:
    """专家失败后的回退"""

    @pytest.mark.asyncio
    async def test_partial_data_is_kept(self, tables, store, provider):
        failing = FakeSpecialist(
            SPECIALIST_CONFIGS[SpecialistId.CIRCLE],
            error=HandlerError("circle", "arrivals feed down", partial_data={"status": "Minor Delays"}),
        )
        workflow = build_workflow(make_fake_registry(failing), tables, store)

        result = await workflow.run("Circle line status", provider, thread_id="t1")

        assert result["handler_id"] == "fallback"
        assert result["response"] == FALLBACK_MESSAGE
        assert result["structured_data"] == {"status": "Minor Delays"}
        assert result["confidence"] == 0.5
        assert result["is_fallback"]
        assert result["metadata"]["fallback_reason"] == "handler_error"
        assert "fallback" in result["metadata"]["stage_trace"]
        # 回退回答同样持久化
        assert await store.message_count("t1") == 2

    @pytest.mark.asyncio
    async def test_nothing_usable(self, tables, store, provider):
        failing = FakeSpecialist(SPECIALIST_CONFIGS[SpecialistId.CIRCLE], error=RuntimeError("boom"))
        workflow = build_workflow(make_fake_registry(failing), tables, store)

        result = await workflow.run("Circle line status", provider, thread_id="t1")

        assert result["confidence"] == 0.1
        assert result["structured_data"] is None
        assert result["metadata"]["fallback_reason"] == "handler_exception"

    @pytest.mark.asyncio
    async def test_persistence_failure_does_not_fail_request(self, workflow, provider, store):
        await store.close()
        result = await workflow.run("Circle line status", provider, thread_id="t1")
        assert result["handler_id"] == "circle"
        assert not result["metadata"]["persisted"]
        assert "persist_failed" in result["metadata"]["stage_trace"]


class TestConfirmation:
    """多步骤行程的确认环"""

    @pytest.fixture
    def confirm_workflow(self, fake_registry, tables, store):
        return build_workflow(fake_registry, tables, store, collaborate=False)

    @pytest.mark.asyncio
    async def test_awaiting_answer_is_not_persisted(self, confirm_workflow, provider, store):
        result = await confirm_workflow.run(CONFIRM_QUERY, provider, thread_id="t1")

        assert result["handler_id"] == "northern"
        assert result["requires_confirmation"]
        assert result["awaiting_confirmation"]
        assert result["response"].endswith(CONFIRMATION_PROMPT)
        assert result["metadata"]["stage_trace"][-2:] == ["confirm", "finalize"]
        assert await store.message_count("t1") == 0

    @pytest.mark.asyncio
    async def test_unrecognised_answer_prompts_again(self, confirm_workflow, provider, store):
        result = await confirm_workflow.run(CONFIRM_QUERY, provider, thread_id="t1", confirmation="hmm")
        assert result["awaiting_confirmation"]
        assert await store.message_count("t1") == 0

    @pytest.mark.asyncio
    async def test_accepted(self, confirm_workflow, provider, store):
        result = await confirm_workflow.run(CONFIRM_QUERY, provider, thread_id="t1", confirmation="yes")

        assert result["handler_id"] == "northern"
        assert not result["awaiting_confirmation"]
        assert CONFIRMATION_PROMPT not in result["response"]
        assert await store.message_count("t1") == 2

    @pytest.mark.asyncio
    async def test_rejected_retries_once_with_other_handler(
        self, confirm_workflow, store, fake_registry
    ):
        provider = FakeProvider(choice="CENTRAL")
        result = await confirm_workflow.run(CONFIRM_QUERY, provider, thread_id="t1", confirmation="no")

        assert result["handler_id"] == "central"
        assert result["metadata"]["confirmation_retries"] == 1
        assert result["metadata"]["excluded_handlers"] == ["northern"]
        assert result["metadata"]["stage_trace"].count("classify") == 2
        assert len(fake_registry.get("northern").calls) == 1
        assert len(fake_registry.get("central").calls) == 1
        _, choices = provider.choose_calls[0]
        assert "NORTHERN" not in choices

        messages = await store.history("t1")
        assert len(messages) == 2
        assert messages[1].handler_id == "central"

    @pytest.mark.asyncio
    async def test_rejected_handler_is_not_a_collaborator_on_retry(self, workflow, fake_registry, store):
        provider = FakeProvider(choice="CENTRAL")
        result = await workflow.run(CONFIRM_QUERY, provider, thread_id="t1", confirmation="no")

        assert result["handler_id"] == "central"
        assert result["collaborative"]
        assert result["metadata"]["excluded_handlers"] == ["northern"]
        assert "northern" not in result["handlers_used"]
        assert "northern" not in result["metadata"]["collaborators"]
        assert "Northern line" not in result["response"]
        # 只在第一轮作为主专家被调用
        assert len(fake_registry.get("northern").calls) == 1
        assert await store.message_count("t1") == 2

    @pytest.mark.asyncio
    async def test_confirmed_handler_resumes_without_classifying(self, confirm_workflow, store):
        provider = FakeProvider(choice="CENTRAL")
        result = await confirm_workflow.run(
            "Is there an interchange I should use?",
            provider,
            thread_id="t1",
            confirmation="yes",
            confirmed_handler="jubilee",
        )

        assert result["handler_id"] == "jubilee"
        assert result["metadata"]["stage_trace"] == [
            "validate", "invoke", "confirm", "persist", "finalize",
        ]
        assert provider.choose_calls == []
        messages = await store.history("t1")
        assert messages[-1].handler_id == "jubilee"

    @pytest.mark.asyncio
    async def test_unknown_confirmed_handler_is_classified_again(self, confirm_workflow):
        provider = FakeProvider(choice="CENTRAL")
        result = await confirm_workflow.run(
            "Is there an interchange I should use?",
            provider,
            thread_id="t1",
            confirmation="yes",
            confirmed_handler="monorail",
        )

        assert result["handler_id"] == "central"
        assert "classify" in result["metadata"]["stage_trace"]

    @pytest.mark.asyncio
    async def test_confirmation_disabled(self, fake_registry, tables, store, provider):
        classifier = QueryClassifier(fake_registry, tables, default_handler="central")
        workflow = RequestWorkflow(classifier, fake_registry, None, store, enable_confirmation=False)

        result = await workflow.run(CONFIRM_QUERY, provider, thread_id="t1")

        assert result["requires_confirmation"]
        assert not result["awaiting_confirmation"]
        assert "confirm" not in result["metadata"]["stage_trace"]
        assert await store.message_count("t1") == 2


class TestCancellation:
    """取消请求"""

    @pytest.mark.asyncio
    async def test_cancel_during_collaboration_persists_nothing(self, tables, store, provider):
        slow = FakeSpecialist(SPECIALIST_CONFIGS[SpecialistId.DISTRICT], delay=1.0)
        registry = make_fake_registry(slow)
        workflow = build_workflow(registry, tables, store)

        task = asyncio.create_task(
            workflow.run("how do I get from Victoria to Oxford Circus", provider, thread_id="t1")
        )
        # 等到协作专家已开始执行
        while not slow.calls:
            await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert await store.message_count("t1") == 0
        assert await store.get_thread("t1") is None
