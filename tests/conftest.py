"""
Pytest configuration and fixtures
"""

import pytest

from deepagent.domain.persistence.checkpointer import InMemoryCheckpointer
from fixtures.mock_providers import CollectingBroadcaster, RecordingTool

TRANSFER_SCHEMA = {
    "type": "object",
    "properties": {
        "amount": {"type": "number"},
        "to": {"type": "string"}
    },
    "required": ["amount"]
}

LOOKUP_SCHEMA = {
    "type": "object",
    "properties": {"q": {"type": "string"}},
    "required": ["q"]
}


@pytest.fixture
def checkpointer() -> InMemoryCheckpointer:
    """Returns a fresh in-memory checkpointer."""
    return InMemoryCheckpointer()


@pytest.fixture
def transfer_tool() -> RecordingTool:
    """Money transfer tool that is usually gated behind approval."""
    return RecordingTool(
        "transfer_money",
        parameters=TRANSFER_SCHEMA,
        result=lambda args: {"status": "sent", "amount": args["amount"]}
    )


@pytest.fixture
def lookup_tool() -> RecordingTool:
    """Harmless lookup tool that runs without approval."""
    return RecordingTool("lookup", parameters=LOOKUP_SCHEMA, result=lambda args: f"result for {args['q']}")


@pytest.fixture
def collector() -> CollectingBroadcaster:
    return CollectingBroadcaster()
