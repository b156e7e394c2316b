import structlog
import logging
import sys
import time
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "flowmind"
) -> None:
    """Setup structured logging configuration"""

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
        force=True
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

    # Configure structlog
    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Set service name in context
    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add service context to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    # Carry the cycle id through everything logged while a cycle runs
    cycle_id = structlog.contextvars.get_contextvars().get("cycle_id")
    if cycle_id:
        event_dict["cycle_id"] = cycle_id

    return event_dict


class FlowMindLogger:
    """Specialized logger for task, tool and cycle records"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_tool_execution(
        self,
        tool_name: str,
        target_id: str,
        duration_ms: Optional[float] = None,
        success: bool = True,
        error: Optional[str] = None
    ):
        """Log tool execution events"""

        self.logger.info(
            "tool_execution",
            tool_name=tool_name,
            target_id=target_id,
            duration_ms=duration_ms,
            success=success,
            error=error
        )

    def log_task_transition(
        self,
        thought_id: str,
        tool_name: str,
        from_status: Optional[str],
        to_status: str,
        error: Optional[str] = None
    ):
        """Log a task lifecycle transition"""

        self.logger.info(
            "task_transition",
            thought_id=thought_id,
            tool_name=tool_name,
            from_status=from_status,
            to_status=to_status,
            error=error
        )

    def log_cycle_summary(
        self,
        tasks: int,
        guides: int,
        suggestions: int,
        considered: int,
        duration_ms: float
    ):
        """Log the outcome of one reasoning cycle"""

        self.logger.info(
            "cycle_summary",
            tasks=tasks,
            guides=guides,
            suggestions=suggestions,
            considered=considered,
            duration_ms=duration_ms
        )


# Global logger instance
flowmind_logger = FlowMindLogger("flowmind")


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
                "sum": 0.0,
                "min": float('inf'),
                "max": 0.0
            }

        self.metrics[key]["count"] += 1
        self.metrics[key]["sum"] += duration_ms
        self.metrics[key]["min"] = min(self.metrics[key]["min"], duration_ms)
        self.metrics[key]["max"] = max(self.metrics[key]["max"], duration_ms)

        flowmind_logger.logger.debug(
            "metric",
            metric_type="latency",
            operation=operation,
            duration_ms=duration_ms,
            tags=tags or {}
        )

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        """Increment a counter metric"""

        if name not in self.metrics:
            self.metrics[name] = 0
        self.metrics[name] += value

        flowmind_logger.logger.debug(
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

    def reset(self):
        """Drop every recorded metric"""
        self.metrics.clear()


def elapsed_ms(started: float) -> float:
    """Milliseconds since a time.perf_counter() reading"""
    return round((time.perf_counter() - started) * 1000.0, 3)


# Global metrics collector
metrics = MetricsCollector()
