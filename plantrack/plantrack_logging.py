"""Logging and observability utilities for PlanTrack.

Structured logging under the ``plantrack`` logger hierarchy, timing of
service-level operations, and observability hooks through which tracker
and workspace events are published to interested listeners.
"""

from __future__ import annotations

import json
import logging as std_logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

ROOT_LOGGER = "plantrack"


def setup_logging(log_level: Union[str, int] = std_logging.INFO, log_file: Optional[Path] = None) -> None:
    """Configure console logging and, optionally, a JSON-lines log file."""
    logger = std_logging.getLogger(ROOT_LOGGER)
    logger.setLevel(log_level)
    logger.handlers.clear()

    console_handler = std_logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(
        std_logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(funcName)s:%(lineno)d - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(console_handler)

    if log_file:
        file_handler = std_logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(std_logging.DEBUG)
        file_handler.setFormatter(JsonFormatter())
        logger.addHandler(file_handler)

    logger.info("PlanTrack logging initialized")


class JsonFormatter(std_logging.Formatter):
    """Render each record as a single JSON object."""

    def format(self, record: std_logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        if hasattr(record, "extra_fields"):
            entry.update(record.extra_fields)
        return json.dumps(entry, default=str)


class PerformanceMonitor:
    """In-memory record of operation timings."""

    def __init__(self):
        self.metrics: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def record_metric(self, name: str, value: Any, tags: Optional[Dict[str, str]] = None) -> None:
        metric = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "name": name,
            "value": value,
            "tags": tags or {},
        }
        with self._lock:
            self.metrics.setdefault(name, []).append(metric)
        std_logging.getLogger(f"{ROOT_LOGGER}.performance").debug(
            f"Metric recorded: {name}={value}", extra={"extra_fields": metric}
        )

    def get_metrics(self, name: Optional[str] = None) -> Dict[str, List[Dict[str, Any]]]:
        with self._lock:
            if name:
                return {name: list(self.metrics.get(name, []))}
            return {key: list(values) for key, values in self.metrics.items()}

    def clear(self) -> None:
        with self._lock:
            self.metrics.clear()


performance_monitor = PerformanceMonitor()


def log_performance(operation_name: str):
    """Decorator timing an operation and recording success or failure."""

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            logger = std_logging.getLogger(f"{ROOT_LOGGER}.performance")
            start_time = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                duration = time.perf_counter() - start_time
                performance_monitor.record_metric(
                    f"{operation_name}_duration",
                    duration,
                    {"status": "error", "error_type": type(e).__name__},
                )
                logger.warning(
                    f"Failed operation: {operation_name} after {duration:.3f}s - {e}",
                    extra={"extra_fields": {
                        "operation": operation_name,
                        "duration": duration,
                        "status": "error",
                        "error_type": type(e).__name__,
                    }},
                )
                raise
            duration = time.perf_counter() - start_time
            performance_monitor.record_metric(
                f"{operation_name}_duration", duration, {"status": "success"}
            )
            logger.debug(
                f"Completed operation: {operation_name} in {duration:.3f}s",
                extra={"extra_fields": {
                    "operation": operation_name,
                    "duration": duration,
                    "status": "success",
                }},
            )
            return result

        return wrapper

    return decorator


@contextmanager
def log_operation(operation_name: str, **extra_fields):
    """Log start, completion and failure of a block of work."""
    logger = std_logging.getLogger(f"{ROOT_LOGGER}.operations")
    start_time = time.perf_counter()
    logger.debug(f"Starting operation: {operation_name}", extra={"extra_fields": {
        "operation": operation_name,
        "status": "started",
        **extra_fields,
    }})
    try:
        yield
    except Exception as e:
        duration = time.perf_counter() - start_time
        logger.warning(f"Failed operation: {operation_name} after {duration:.3f}s - {e}", extra={"extra_fields": {
            "operation": operation_name,
            "status": "failed",
            "duration": duration,
            "error_type": type(e).__name__,
            "error_message": str(e),
            **extra_fields,
        }})
        raise
    duration = time.perf_counter() - start_time
    logger.info(f"Completed operation: {operation_name} in {duration:.3f}s", extra={"extra_fields": {
        "operation": operation_name,
        "status": "completed",
        "duration": duration,
        **extra_fields,
    }})


class ObservabilityHooks:
    """Registry of callbacks fired on plan and tracker events."""

    def __init__(self):
        self.hooks: Dict[str, List[Callable[..., None]]] = {}
        self.logger = std_logging.getLogger(f"{ROOT_LOGGER}.observability")
        self._lock = threading.Lock()

    def register_hook(self, event_type: str, callback: Callable[..., None]) -> None:
        with self._lock:
            self.hooks.setdefault(event_type, []).append(callback)
        self.logger.debug(f"Registered hook for event: {event_type}")

    def unregister_hook(self, event_type: str, callback: Callable[..., None]) -> None:
        with self._lock:
            callbacks = self.hooks.get(event_type, [])
            if callback in callbacks:
                callbacks.remove(callback)

    def trigger_hooks(self, event_type: str, **data) -> None:
        with self._lock:
            callbacks = list(self.hooks.get(event_type, []))
        for hook in callbacks:
            try:
                hook(**data)
            except Exception as e:
                # Listener failures are logged, never propagated.
                self.logger.error(f"Hook failed for event {event_type}: {e}", exc_info=True)

    def log_workflow_event(self, event_type: str, plan_id: Optional[str] = None, **data) -> None:
        """Log an event and fire the hooks registered for it."""
        event_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "plan_id": plan_id,
            **data,
        }
        self.logger.info(f"Workflow event: {event_type}", extra={"extra_fields": event_data})
        self.trigger_hooks(event_type, **{k: v for k, v in event_data.items() if k != "event_type"})


observability_hooks = ObservabilityHooks()


def log_error_with_context(error: Exception, context: Dict[str, Any], **extra_fields) -> None:
    """Log an error together with the operation context it occurred in."""
    logger = std_logging.getLogger(f"{ROOT_LOGGER}.errors")
    error_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error_type": type(error).__name__,
        "error_message": str(error),
        "context": context,
        **extra_fields,
    }
    logger.error(
        f"Error in {context.get('operation', 'unknown operation')}: {error}",
        extra={"extra_fields": error_data},
        exc_info=(type(error), error, error.__traceback__),
    )


def log_plan_imported(plan_id: str, title: str, **extra_fields) -> None:
    observability_hooks.log_workflow_event("plan_imported", plan_id=plan_id, title=title, **extra_fields)


def log_plan_validated(plan_id: Optional[str], is_valid: bool, **extra_fields) -> None:
    observability_hooks.log_workflow_event("plan_validated", plan_id=plan_id, is_valid=is_valid, **extra_fields)


def log_run_started(plan_id: str, run_id: str, ordered: bool, **extra_fields) -> None:
    observability_hooks.log_workflow_event(
        "run_started", plan_id=plan_id, run_id=run_id, ordered=ordered, **extra_fields
    )


def log_node_transition(record, plan_id: Optional[str] = None, run_id: Optional[str] = None) -> None:
    """Publish one committed tracker transition."""
    observability_hooks.log_workflow_event(
        "node_transition",
        plan_id=plan_id,
        run_id=run_id,
        node_path=record.node_path,
        from_state=record.from_state.value,
        to_state=record.to_state.value,
        actor=record.actor,
        note=record.note,
    )
