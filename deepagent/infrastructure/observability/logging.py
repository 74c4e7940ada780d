import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import os

from deepagent.domain.events.events import AgentEvent, EventBroadcaster, EventType


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "deepagent"
) -> None:
    """Setup structured logging configuration"""

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    # Processors for structlog
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    # Add appropriate renderer based on format
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Set service name in context
    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add loop context to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    context = structlog.contextvars.get_contextvars()
    for key in ("thread_id", "run_id", "agent"):
        value = context.get(key)
        if value and key not in event_dict:
            event_dict[key] = value

    return event_dict


class AgentLogger:
    """Specialized logger for agent operations"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_agent_event(
        self,
        event_type: str,
        agent_name: str,
        thread_id: str,
        data: Optional[Dict[str, Any]] = None,
        **kwargs
    ):
        """Log agent-specific events"""

        self.logger.info(
            "agent_event",
            event_type=event_type,
            agent_name=agent_name,
            thread_id=thread_id,
            data=data or {},
            **kwargs
        )

    def log_tool_execution(
        self,
        tool_name: str,
        thread_id: str,
        call_id: Optional[str] = None,
        input_data: Optional[Dict[str, Any]] = None,
        output_data: Optional[Any] = None,
        duration_ms: Optional[float] = None,
        success: bool = True,
        error: Optional[str] = None
    ):
        """Log tool execution events"""

        self.logger.info(
            "tool_execution",
            tool_name=tool_name,
            thread_id=thread_id,
            call_id=call_id,
            input_data=input_data or {},
            output_data=output_data,
            duration_ms=duration_ms,
            success=success,
            error=error
        )

    def log_interrupt(
        self,
        thread_id: str,
        call_id: str,
        tool_name: str,
        agent_path: Optional[list] = None
    ):
        """Log a loop suspension waiting on a human"""

        self.logger.info(
            "interrupt",
            thread_id=thread_id,
            call_id=call_id,
            tool_name=tool_name,
            agent_path=agent_path or []
        )


# Global logger instance
agent_logger = AgentLogger("deepagent")


class MetricsCollector:
    """Collect and export metrics"""

    def __init__(self):
        self.metrics: Dict[str, Any] = {}

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        """Record operation latency"""

        key = f"latency.{operation}"
        if key not in self.metrics:
            self.metrics[key] = {
                "count": 0,
                "sum": 0,
                "min": float('inf'),
                "max": 0
            }

        self.metrics[key]["count"] += 1
        self.metrics[key]["sum"] += duration_ms
        self.metrics[key]["min"] = min(self.metrics[key]["min"], duration_ms)
        self.metrics[key]["max"] = max(self.metrics[key]["max"], duration_ms)

        agent_logger.logger.debug(
            "metric",
            metric_type="latency",
            operation=operation,
            duration_ms=duration_ms,
            tags=tags or {}
        )

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        """Increment a counter metric"""

        self.metrics[name] = self.metrics.get(name, 0) + value

        agent_logger.logger.debug(
            "metric",
            metric_type="counter",
            name=name,
            value=value,
            tags=tags or {}
        )

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get summary of all metrics"""

        summary = {}
        for key, value in self.metrics.items():
            if isinstance(value, dict) and "count" in value:
                # Latency metric
                summary[key] = {
                    "count": value["count"],
                    "avg": value["sum"] / value["count"] if value["count"] > 0 else 0,
                    "min": value["min"] if value["min"] != float('inf') else 0,
                    "max": value["max"]
                }
            else:
                # Counter
                summary[key] = value

        return summary


class LoggingBroadcaster(EventBroadcaster):
    """Logs lifecycle events and feeds tool metrics"""

    id = "logging"

    def __init__(
        self,
        logger: Optional[AgentLogger] = None,
        metrics: Optional[MetricsCollector] = None,
        include_iterations: bool = False
    ):
        self.logger = logger or agent_logger
        self.metrics = metrics or MetricsCollector()
        self.include_iterations = include_iterations

    def should_broadcast(self, event: AgentEvent) -> bool:
        if event.type == EventType.ITERATION_STARTED:
            return self.include_iterations
        return True

    async def broadcast(self, event: AgentEvent) -> None:
        payload = event.payload
        tags = {"agent": event.agent}

        if event.type in (EventType.TOOL_COMPLETED, EventType.TOOL_FAILED):
            success = event.type == EventType.TOOL_COMPLETED
            self.logger.log_tool_execution(
                tool_name=payload.get("tool_name", "unknown"),
                thread_id=event.thread_id,
                call_id=payload.get("call_id"),
                output_data=payload.get("result"),
                duration_ms=payload.get("duration_ms"),
                success=success,
                error=None if success else payload.get("result")
            )
            tags["tool"] = payload.get("tool_name", "unknown")
            if payload.get("duration_ms") is not None:
                self.metrics.record_latency("tool", payload["duration_ms"], tags)
            self.metrics.increment_counter("tool.success" if success else "tool.failure", tags=tags)
            return

        if event.type == EventType.INTERRUPTED:
            self.logger.log_interrupt(
                thread_id=event.thread_id,
                call_id=payload.get("call_id", ""),
                tool_name=payload.get("tool_name", ""),
                agent_path=payload.get("agent_path")
            )
            self.metrics.increment_counter("loop.interrupted", tags=tags)
            return

        if event.type in (EventType.COMPLETED, EventType.FAILED):
            self.metrics.increment_counter(f"loop.{event.type.value}", tags=tags)

        self.logger.log_agent_event(
            event_type=event.type.value,
            agent_name=event.agent,
            thread_id=event.thread_id,
            data=payload,
            run_id=event.run_id
        )
