"""
Sub-agent delegation tests
"""

import asyncio

import pytest

from deepagent.domain.events.events import EventType
from deepagent.domain.models.agent_config import AgentConfig, SubAgentConfig
from deepagent.domain.models.agent_state import InterruptedSignal, MessageRole
from deepagent.domain.models.errors import ConfigurationError
from deepagent.domain.models.interrupt import Accept, HitlPolicy, Reject
from deepagent.domain.orchestration.core.main_agent import AgentLoopController
from deepagent.domain.orchestration.core.prompts import REJECTED_TOOL_MESSAGE
from deepagent.domain.orchestration.subagent.subagent_router import (
    GENERAL_PURPOSE, SubAgentRouter, nested_thread_id
)
from fixtures.mock_providers import ScriptedLanguageModel, StallingLanguageModel, call, calls, text


def delegate(agent: str, task: str, call_id: str = "d1"):
    return calls(call("task", call_id=call_id, subagent_type=agent, description=task))


def researcher(model, **overrides) -> SubAgentConfig:
    values = dict(name="researcher", description="Digs up facts", instructions="Research carefully", model=model)
    values.update(overrides)
    return SubAgentConfig(**values)


class TestDelegation:

    @pytest.mark.asyncio
    async def test_sub_agent_runs_in_quarantine(self, lookup_tool, checkpointer, collector):
        sub_model = ScriptedLanguageModel([
            calls(call("lookup", call_id="s1", q="bob")),
            text("Bob lives in Paris"),
        ])
        parent_model = ScriptedLanguageModel([
            delegate("researcher", "Where does bob live?"),
            text("Bob lives in Paris."),
        ])
        config = AgentConfig(subagents=[researcher(sub_model, tools=[lookup_tool])])
        controller = AgentLoopController(config, parent_model, checkpointer=checkpointer, broadcasters=[collector])

        response = await controller.handle_message("Research bob", thread_id="t1")

        assert response.content == "Bob lives in Paris."

        # The sub-agent saw only its task description, never the parent's history
        first_sub_request = sub_model.requests[0]
        assert [m.content for m in first_sub_request.messages] == ["Where does bob live?"]
        assert first_sub_request.system_prompt == "Research carefully"

        parent_feedback = parent_model.requests[1].messages[-1]
        assert parent_feedback.role == MessageRole.TOOL
        assert parent_feedback.content == "Bob lives in Paris"

        state = await checkpointer.load("t1")
        assert all(m.tool_call_id != "s1" for m in state.messages)
        assert await checkpointer.list() == ["t1"]

        started = collector.of_type(EventType.SUBAGENT_STARTED)[0]
        assert started.payload["subagent"] == "researcher"
        assert collector.of_type(EventType.SUBAGENT_COMPLETED)[0].payload["iterations"] == 2
        assert any(event.agent == "researcher" for event in collector.events)

    @pytest.mark.asyncio
    async def test_task_tool_is_described(self):
        parent_model = ScriptedLanguageModel([text("nothing to delegate")])
        config = AgentConfig(subagents=[researcher(ScriptedLanguageModel())])
        controller = AgentLoopController(config, parent_model)

        await controller.handle_message("hi", thread_id="t1")

        request = parent_model.requests[0]
        assert request.tool_names() == ["task"]
        assert "- researcher: Digs up facts" in request.system_prompt
        assert "`task`" in request.system_prompt

    @pytest.mark.asyncio
    async def test_unknown_sub_agent_is_recoverable(self):
        parent_model = ScriptedLanguageModel([delegate("nobody", "help"), text("no such helper")])
        config = AgentConfig(subagents=[researcher(ScriptedLanguageModel())])
        controller = AgentLoopController(config, parent_model)

        response = await controller.handle_message("hi", thread_id="t1")

        assert response.is_completed
        feedback = parent_model.requests[1].messages[-1].content
        assert feedback.startswith("Error: Sub-agent 'nobody' not found")
        assert "researcher" in feedback

    @pytest.mark.asyncio
    async def test_failed_sub_agent_reports_to_parent(self, checkpointer):
        class BrokenModel(ScriptedLanguageModel):
            async def send(self, request):
                raise ConnectionError("provider down")

        parent_model = ScriptedLanguageModel([delegate("researcher", "dig"), text("researcher failed")])
        config = AgentConfig(subagents=[researcher(BrokenModel())])
        controller = AgentLoopController(config, parent_model, checkpointer=checkpointer)

        response = await controller.handle_message("hi", thread_id="t1")

        assert response.is_completed
        assert parent_model.requests[1].messages[-1].content.startswith("Error: Sub-agent 'researcher' failed")
        assert await checkpointer.list() == ["t1"]

    @pytest.mark.asyncio
    async def test_sub_agent_exhausting_iterations_reports_to_parent(self, lookup_tool):
        sub_model = ScriptedLanguageModel(default=lambda request: calls(call("lookup", q="more")))
        parent_model = ScriptedLanguageModel([delegate("researcher", "dig"), text("gave up")])
        config = AgentConfig(subagents=[researcher(sub_model, tools=[lookup_tool], max_iterations=1)])
        controller = AgentLoopController(config, parent_model)

        await controller.handle_message("hi", thread_id="t1")

        feedback = parent_model.requests[1].messages[-1].content
        assert "Maximum iterations (1) exceeded" in feedback

    @pytest.mark.asyncio
    async def test_zero_delegation_depth(self):
        sub_model = ScriptedLanguageModel([text("never")])
        parent_model = ScriptedLanguageModel([delegate("researcher", "dig"), text("cannot delegate")])
        config = AgentConfig(subagents=[researcher(sub_model)], max_delegation_depth=0)
        controller = AgentLoopController(config, parent_model)

        await controller.handle_message("hi", thread_id="t1")

        assert sub_model.requests == []
        assert "Maximum delegation depth 0 reached" in parent_model.requests[1].messages[-1].content

    @pytest.mark.asyncio
    async def test_general_purpose_agent(self, lookup_tool):
        parent_model = ScriptedLanguageModel([
            delegate(GENERAL_PURPOSE, "look up bob"),
            text("done"),
        ])
        # The general-purpose agent shares the parent's model
        parent_model.responses.insert(1, text("general answer"))
        config = AgentConfig(tools=[lookup_tool], auto_general_purpose=True)
        controller = AgentLoopController(config, parent_model)

        response = await controller.handle_message("hi", thread_id="t1")

        assert response.content == "done"
        assert parent_model.requests[2].messages[-1].content == "general answer"
        assert parent_model.requests[1].tool_names() == ["lookup"]


class TestDelegatedInterrupts:

    def make_controller(self, checkpointer, parent_model, sub_model, transfer_tool, collector=None, **config):
        banker = SubAgentConfig(
            name="banker",
            description="Moves money",
            model=sub_model,
            tools=[transfer_tool],
            tool_policies={"transfer_money": HitlPolicy(note="Moves money")}
        )
        return AgentLoopController(
            AgentConfig(subagents=[banker], **config),
            parent_model,
            checkpointer=checkpointer,
            broadcasters=[collector] if collector else None
        )

    @pytest.mark.asyncio
    async def test_interrupt_surfaces_and_accept_resumes(self, checkpointer, transfer_tool, collector):
        sub_model = ScriptedLanguageModel([
            calls(call("transfer_money", call_id="inner", amount=50, to="bob")),
            text("Paid bob"),
        ])
        parent_model = ScriptedLanguageModel([delegate("banker", "Pay bob 50", call_id="d1"), text("All paid")])
        controller = self.make_controller(checkpointer, parent_model, sub_model, transfer_tool, collector)

        signal = await controller.handle_message("pay bob", thread_id="t1")

        assert isinstance(signal, InterruptedSignal)
        interrupt = signal.interrupt
        assert interrupt.call_id == "d1"
        assert interrupt.tool_name == "transfer_money"
        assert interrupt.args == {"amount": 50, "to": "bob"}
        assert interrupt.agent_path == ["banker"]
        assert interrupt.delegation.call_id == "inner"
        nested = nested_thread_id("t1", "banker", "d1")
        assert interrupt.delegation.thread_id == nested
        assert await checkpointer.list() == ["t1", nested]
        assert transfer_tool.calls == []

        response = await controller.resume_with_approval(Accept(), thread_id="t1")

        assert response.content == "All paid"
        assert transfer_tool.calls == [{"amount": 50, "to": "bob"}]
        assert parent_model.requests[1].messages[-1].content == "Paid bob"
        assert await checkpointer.list() == ["t1"]
        state = await checkpointer.load("t1")
        assert state.delegated_resumes == {}
        assert collector.of_type(EventType.SUBAGENT_STARTED)[-1].payload["resumed"] is True

    @pytest.mark.asyncio
    async def test_reject_is_forwarded_to_sub_agent(self, checkpointer, transfer_tool):
        sub_model = ScriptedLanguageModel([
            calls(call("transfer_money", call_id="inner", amount=50, to="bob")),
            text("Transfer was declined"),
        ])
        parent_model = ScriptedLanguageModel([delegate("banker", "Pay bob 50"), text("Not paid")])
        controller = self.make_controller(checkpointer, parent_model, sub_model, transfer_tool)
        await controller.handle_message("pay bob", thread_id="t1")

        response = await controller.resume_with_approval(Reject(reason="not today"), thread_id="t1")

        assert response.content == "Not paid"
        assert transfer_tool.calls == []
        assert sub_model.requests[1].messages[-1].content == f"{REJECTED_TOOL_MESSAGE}: not today"
        assert parent_model.requests[1].messages[-1].content == "Transfer was declined"

    @pytest.mark.asyncio
    async def test_resume_after_restart(self, checkpointer, transfer_tool):
        first_sub = ScriptedLanguageModel([calls(call("transfer_money", call_id="inner", amount=5))])
        first = self.make_controller(checkpointer, ScriptedLanguageModel([delegate("banker", "Pay")]), first_sub, transfer_tool)
        await first.handle_message("pay", thread_id="t1")

        second_sub = ScriptedLanguageModel([text("Paid")])
        second_parent = ScriptedLanguageModel([text("Done")])
        restarted = self.make_controller(checkpointer, second_parent, second_sub, transfer_tool)

        response = await restarted.resume_with_approval(Accept(), thread_id="t1")

        assert response.content == "Done"
        assert transfer_tool.calls == [{"amount": 5}]

    @pytest.mark.asyncio
    async def test_timed_out_resume_drops_nested_thread(self, checkpointer, transfer_tool):
        sub_model = StallingLanguageModel([calls(call("transfer_money", call_id="inner", amount=50, to="bob"))])
        parent_model = ScriptedLanguageModel([delegate("banker", "Pay bob 50"), text("Banker timed out")])
        controller = self.make_controller(
            checkpointer, parent_model, sub_model, transfer_tool, subagent_timeout_seconds=0.1
        )
        await controller.handle_message("pay bob", thread_id="t1")
        assert len(await checkpointer.list()) == 2

        response = await controller.resume_with_approval(Accept(), thread_id="t1")

        assert response.content == "Banker timed out"
        assert "timed out" in parent_model.requests[1].messages[-1].content
        assert transfer_tool.calls == [{"amount": 50, "to": "bob"}]
        assert await checkpointer.list() == ["t1"]

    @pytest.mark.asyncio
    async def test_approval_is_not_replayed_after_stopped_resume(self, checkpointer, transfer_tool):
        sub_model = StallingLanguageModel([calls(call("transfer_money", call_id="inner", amount=5))])
        first = self.make_controller(checkpointer, ScriptedLanguageModel([delegate("banker", "Pay")]), sub_model, transfer_tool)
        await first.handle_message("pay", thread_id="t1")

        run = asyncio.ensure_future(first.resume_with_approval(Accept(), thread_id="t1"))
        await asyncio.wait_for(sub_model.stalled.wait(), timeout=5)
        run.cancel()
        with pytest.raises(asyncio.CancelledError):
            await run

        second_parent = ScriptedLanguageModel([text("Could not confirm the payment")])
        restarted = self.make_controller(checkpointer, second_parent, ScriptedLanguageModel(), transfer_tool)
        response = await restarted.resume_with_approval(Accept(), thread_id="t1")

        assert response.content == "Could not confirm the payment"
        assert transfer_tool.calls == [{"amount": 5}]
        assert "no pending approval" in second_parent.requests[0].messages[-1].content
        assert await checkpointer.list() == ["t1"]


class TestSubAgentRouter:

    def test_gated_sub_agent_needs_checkpointer(self, transfer_tool):
        banker = SubAgentConfig(
            name="banker",
            description="Moves money",
            tools=[transfer_tool],
            tool_policies={"transfer_money": HitlPolicy()}
        )

        with pytest.raises(ConfigurationError):
            AgentLoopController(AgentConfig(subagents=[banker]), ScriptedLanguageModel())

    def test_parent_policies_are_inherited(self, checkpointer):
        banker = SubAgentConfig(name="banker", description="Moves money", tool_policies={"refund": HitlPolicy()})
        parent = AgentConfig(
            subagents=[banker],
            tool_policies={"transfer_money": HitlPolicy(), "refund": HitlPolicy(allow_auto=True)}
        )
        router = SubAgentRouter(parent, ScriptedLanguageModel(), checkpointer)

        nested = router.config_for(banker)

        assert set(nested.gated_tools()) == {"transfer_money", "refund"}
        assert nested.max_iterations == parent.max_iterations

    def test_duplicate_sub_agent_names(self):
        with pytest.raises(ValueError):
            AgentConfig(subagents=[
                SubAgentConfig(name="a", description="one"),
                SubAgentConfig(name="a", description="two"),
            ])

    def test_info(self):
        router = SubAgentRouter(AgentConfig(subagents=[researcher(None)]), ScriptedLanguageModel())

        info = router.get_info()

        assert info["subagents"] == ["researcher"]
        assert info["max_depth"] == 3
        assert info["last_active"] is None
