"""
Logging, metrics and tracing broadcaster tests
"""

from unittest.mock import Mock

import pytest
import structlog
from structlog.testing import capture_logs

from deepagent.domain.events.events import AgentEvent, EventDispatcher, EventType
from deepagent.infrastructure.observability.langfuse_tracing import LangfuseBroadcaster
from deepagent.infrastructure.observability.logging import (
    AgentLogger, LoggingBroadcaster, MetricsCollector, add_service_context, setup_logging
)
from fixtures.mock_providers import CollectingBroadcaster


def event(event_type: EventType, run_id: str = "r1", **payload) -> AgentEvent:
    return AgentEvent(type=event_type, thread_id="t1", run_id=run_id, agent="agent", payload=payload)


@pytest.fixture
def restore_structlog():
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


class TestSetupLogging:

    def test_configures_structlog(self, restore_structlog):
        setup_logging(log_level="DEBUG", log_format="console", service_name="tests")

        processors = structlog.get_config()["processors"]
        assert structlog.contextvars.merge_contextvars in processors
        assert add_service_context in processors
        assert structlog.contextvars.get_contextvars()["service"] == "tests"

    def test_service_context_copies_loop_ids(self, restore_structlog):
        structlog.contextvars.bind_contextvars(thread_id="t1", run_id="r1")

        event_dict = add_service_context(None, "info", {"event": "x", "run_id": "explicit"})

        assert event_dict["thread_id"] == "t1"
        assert event_dict["run_id"] == "explicit"
        assert "timestamp" in event_dict


class TestLoggingBroadcaster:

    @pytest.mark.asyncio
    async def test_tool_events_feed_logs_and_metrics(self):
        metrics = MetricsCollector()
        broadcaster = LoggingBroadcaster(AgentLogger("tests"), metrics)

        with capture_logs() as logs:
            await broadcaster.broadcast(event(
                EventType.TOOL_COMPLETED, tool_name="lookup", call_id="c1", duration_ms=12.0, result="ok"
            ))
            await broadcaster.broadcast(event(
                EventType.TOOL_FAILED, tool_name="lookup", call_id="c2", duration_ms=4.0, result="Error: boom"
            ))

        executions = [entry for entry in logs if entry["event"] == "tool_execution"]
        assert [entry["success"] for entry in executions] == [True, False]
        assert executions[1]["error"] == "Error: boom"

        summary = metrics.get_metrics_summary()
        assert summary["tool.success"] == 1
        assert summary["tool.failure"] == 1
        assert summary["latency.tool"]["count"] == 2
        assert summary["latency.tool"]["avg"] == 8.0

    @pytest.mark.asyncio
    async def test_loop_events(self):
        metrics = MetricsCollector()
        broadcaster = LoggingBroadcaster(AgentLogger("tests"), metrics)

        with capture_logs() as logs:
            await broadcaster.broadcast(event(EventType.INTERRUPTED, call_id="c1", tool_name="transfer_money"))
            await broadcaster.broadcast(event(EventType.COMPLETED, iterations=2))

        assert [entry["event"] for entry in logs if entry["event"] != "metric"] == ["interrupt", "agent_event"]
        assert metrics.metrics["loop.interrupted"] == 1
        assert metrics.metrics["loop.completed"] == 1

    def test_iteration_events_are_opt_in(self):
        assert not LoggingBroadcaster().should_broadcast(event(EventType.ITERATION_STARTED))
        assert LoggingBroadcaster(include_iterations=True).should_broadcast(event(EventType.ITERATION_STARTED))


class TestEventDispatcher:

    @pytest.mark.asyncio
    async def test_failing_broadcaster_is_isolated(self):
        class Broken(CollectingBroadcaster):
            id = "broken"

            async def broadcast(self, event):
                raise RuntimeError("offline")

        healthy = CollectingBroadcaster()
        dispatcher = EventDispatcher([Broken(), healthy])

        with capture_logs() as logs:
            await dispatcher.emit(EventType.COMPLETED, "t1", run_id="r1", iterations=1)

        assert healthy.types() == [EventType.COMPLETED]
        assert healthy.events[0].payload == {"iterations": 1}
        assert logs[0]["event"] == "Error broadcasting event"
        assert logs[0]["broadcaster"] == "broken"


class TestLangfuseBroadcaster:

    @pytest.mark.asyncio
    async def test_one_trace_per_run(self):
        client = Mock()
        trace = client.trace.return_value
        broadcaster = LangfuseBroadcaster(client=client, tags=["tests"])

        await broadcaster.broadcast(event(EventType.LOOP_STARTED, resumed=False))
        await broadcaster.broadcast(event(EventType.TOOL_FAILED, tool_name="lookup", result="Error: boom"))
        await broadcaster.broadcast(event(EventType.COMPLETED, iterations=2))

        client.trace.assert_called_once()
        assert client.trace.call_args.kwargs["id"] == "r1"
        assert client.trace.call_args.kwargs["session_id"] == "t1"
        assert client.trace.call_args.kwargs["tags"] == ["tests", "agent"]

        levels = [call.kwargs["level"] for call in trace.event.call_args_list]
        assert levels == ["DEFAULT", "ERROR", "DEFAULT"]
        trace.update.assert_called_once()
        assert trace.update.call_args.kwargs["output"]["status"] == "completed"
        client.flush.assert_called_once()
        assert broadcaster.traces == {}

    @pytest.mark.asyncio
    async def test_interrupt_closes_trace(self):
        client = Mock()
        broadcaster = LangfuseBroadcaster(client=client, flush_on_finish=False)

        await broadcaster.broadcast(event(EventType.INTERRUPTED, call_id="c1"))
        await broadcaster.broadcast(event(EventType.LOOP_STARTED, run_id="r2", resumed=True))

        assert client.trace.call_count == 2
        assert list(broadcaster.traces) == ["r2"]
        client.flush.assert_not_called()
