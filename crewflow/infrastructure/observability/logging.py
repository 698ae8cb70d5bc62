import logging
import os
import sys
from collections import defaultdict, deque
from typing import Any, Deque, Dict, Optional

import structlog


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "crewflow"
) -> None:
    """Setup structured logging configuration"""

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

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
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


class AgentLogger:
    """Specialized logger for crew orchestration events"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_crew_transition(
        self,
        conversation_id: str,
        from_crew: str,
        to_crew: str,
        phase: str,
        reason: Optional[str] = None
    ):
        """Log a change of the active crew"""

        self.logger.info(
            "crew_transition",
            conversation_id=conversation_id,
            from_crew=from_crew,
            to_crew=to_crew,
            phase=phase,
            reason=reason
        )

    def log_tool_execution(
        self,
        tool_name: str,
        conversation_id: str,
        input_data: Dict[str, Any],
        output_data: Optional[Any] = None,
        duration_ms: Optional[float] = None,
        success: bool = True,
        error: Optional[str] = None
    ):
        """Log tool execution events"""

        self.logger.info(
            "tool_execution",
            tool_name=tool_name,
            conversation_id=conversation_id,
            input_data=input_data,
            output_data=output_data,
            duration_ms=duration_ms,
            success=success,
            error=error
        )

    def log_context_update(
        self,
        owner_id: str,
        scope: str,
        key: str,
        action: str
    ):
        """Log context store writes"""

        self.logger.debug(
            "context_update",
            owner_id=owner_id,
            scope=scope,
            key=key,
            action=action
        )

    def log_fields_collected(
        self,
        conversation_id: str,
        crew: str,
        updated: Dict[str, Any],
        exposed: Optional[list] = None
    ):
        """Log field values merged into a conversation"""

        self.logger.info(
            "fields_collected",
            conversation_id=conversation_id,
            crew=crew,
            updated=list(updated.keys()),
            exposed=exposed or []
        )


agent_logger = AgentLogger("crewflow")


class MetricsCollector:
    """In-process counters and latency samples, one series per name and tag set"""

    def __init__(self, max_samples: int = 500):
        self.max_samples = max_samples
        self.counters: Dict[str, int] = defaultdict(int)
        self.latencies: Dict[str, Deque[float]] = {}

    @staticmethod
    def series(name: str, tags: Optional[Dict[str, str]] = None) -> str:
        if not tags:
            return name
        labels = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
        return f"{name}{{{labels}}}"

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        key = self.series(operation, tags)
        samples = self.latencies.setdefault(key, deque(maxlen=self.max_samples))
        samples.append(duration_ms)

        agent_logger.logger.debug("metric", metric_type="latency", series=key, duration_ms=round(duration_ms, 2))

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        key = self.series(name, tags)
        self.counters[key] += value

        agent_logger.logger.debug("metric", metric_type="counter", series=key, value=self.counters[key])

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Counters as-is; latencies over the retained samples"""

        latency = {}
        for key, samples in self.latencies.items():
            ordered = sorted(samples)
            latency[key] = {
                "count": len(ordered),
                "avg": sum(ordered) / len(ordered),
                "p95": ordered[min(len(ordered) - 1, int(len(ordered) * 0.95))],
                "max": ordered[-1]
            }
        return {"counters": dict(self.counters), "latency_ms": latency}

    def reset(self):
        self.counters.clear()
        self.latencies.clear()


metrics = MetricsCollector()
