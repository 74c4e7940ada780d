"""
Interrupt manager tests
"""

import pytest

from deepagent.domain.interrupt.interrupt_manager import InterruptManager
from deepagent.domain.models.agent_state import ConversationState
from deepagent.domain.models.errors import ConfigurationError, DuplicateInterrupt, NoSuchInterrupt
from deepagent.domain.models.interrupt import Delegation, HitlPolicy


@pytest.fixture
def manager(checkpointer) -> InterruptManager:
    return InterruptManager(
        {
            "transfer_money": HitlPolicy(note="Moves money"),
            "lookup": HitlPolicy(allow_auto=True),
        },
        checkpointer
    )


class TestInterruptManager:

    def test_gated_tools(self, manager):
        assert manager.gated_tools() == ["transfer_money"]
        assert manager.requires_approval("transfer_money").note == "Moves money"
        assert manager.requires_approval("lookup") is None
        assert manager.requires_approval("unlisted") is None

    def test_gated_tools_need_checkpointer(self):
        with pytest.raises(ConfigurationError):
            InterruptManager({"transfer_money": HitlPolicy()})

    def test_auto_only_policies_need_no_checkpointer(self):
        manager = InterruptManager({"lookup": HitlPolicy(allow_auto=True)})

        assert manager.gated_tools() == []

    def test_create_snapshots_arguments(self, manager):
        state = ConversationState(thread_id="t1")
        arguments = {"amount": 10}

        interrupt = manager.create(state, "c1", "transfer_money", arguments, note="Moves money")
        arguments["amount"] = 99

        assert state.pending_interrupts["c1"] is interrupt
        assert interrupt.args == {"amount": 10}
        assert not interrupt.is_delegated

    def test_duplicate_interrupt(self, manager):
        state = ConversationState(thread_id="t1")
        manager.create(state, "c1", "transfer_money", {})

        with pytest.raises(DuplicateInterrupt):
            manager.create(state, "c1", "transfer_money", {})

    def test_resolve_consumes_once(self, manager):
        state = ConversationState(thread_id="t1")
        manager.create(state, "c1", "transfer_money", {"amount": 1})

        interrupt = manager.resolve(state, "c1")

        assert interrupt.call_id == "c1"
        assert not state.has_pending_interrupts()
        with pytest.raises(NoSuchInterrupt):
            manager.resolve(state, "c1")

    def test_resolve_defaults_to_oldest(self, manager):
        state = ConversationState(thread_id="t1")
        manager.create(state, "c1", "transfer_money", {})
        manager.create(state, "c2", "transfer_money", {})

        assert manager.current(state).call_id == "c1"
        assert manager.resolve(state).call_id == "c1"
        assert manager.current(state).call_id == "c2"

    def test_resolve_without_interrupts(self, manager):
        with pytest.raises(NoSuchInterrupt):
            manager.resolve(ConversationState(thread_id="t1"))

    def test_delegated_interrupt(self, manager):
        state = ConversationState(thread_id="t1")
        delegation = Delegation(agent_name="banker", thread_id="t1/banker/c5", call_id="inner")

        interrupt = manager.create(
            state, "c5", "transfer_money", {"amount": 5}, delegation=delegation, agent_path=["banker"]
        )

        assert interrupt.is_delegated
        assert interrupt.agent_path == ["banker"]
