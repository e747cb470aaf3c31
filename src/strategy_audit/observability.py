"""
Structured Logging for the Audit Pipeline.

Provides machine-parseable log lines for:
- Pipeline phase transitions (discovery, interrogation, analysis, stress test)
- Individual reasoning-provider calls
- Per-run summaries (calls, fallbacks, retries)

Uses Python's logging with JSON payloads embedded in the message.
"""
from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional


# =============================================================================
# Logger Setup
# =============================================================================

logger = logging.getLogger("strategy_audit.observability")


def setup_structured_logging(
    level: int = logging.INFO,
    json_format: bool = False,
) -> None:
    """Configure structured logging for the pipeline.

    Args:
        level: Logging level (default INFO)
        json_format: If True, output bare messages for machine parsing
    """
    handler = logging.StreamHandler()

    if json_format:
        formatter = logging.Formatter('%(message)s')
    else:
        formatter = logging.Formatter(
            '%(asctime)s | %(levelname)s | %(name)s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    handler.setFormatter(formatter)

    package_logger = logging.getLogger("strategy_audit")
    package_logger.handlers = []
    package_logger.addHandler(handler)
    package_logger.setLevel(level)
    package_logger.propagate = False


# =============================================================================
# Structured Log Events
# =============================================================================

@dataclass
class PipelineEvent:
    """Structured log for pipeline phase events."""
    event: str  # "discovery", "interrogation", "analysis", "stress_test"
    session_id: Optional[str] = None
    status: str = "started"  # "started", "completed", "failed"
    details: Optional[Dict[str, Any]] = None
    duration_ms: Optional[float] = None
    timestamp: str = ""

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now().isoformat()


@dataclass
class AgentCallEvent:
    """Structured log for a single reasoning-provider call."""
    agent: str
    model: Optional[str] = None
    prompt_chars: int = 0
    response_chars: int = 0
    duration_ms: Optional[float] = None
    error: Optional[str] = None
    timestamp: str = ""

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now().isoformat()


# =============================================================================
# Logging Functions
# =============================================================================

def log_pipeline_event(
    event: str,
    status: str = "started",
    **kwargs
) -> None:
    """Log a pipeline phase event.

    Args:
        event: Phase name (e.g., "discovery", "analysis")
        status: "started", "completed", or "failed"
        **kwargs: Additional fields (session_id, details, duration_ms)
    """
    pipeline_event = PipelineEvent(event=event, status=status, **kwargs)
    log_data = asdict(pipeline_event)

    if status == "failed":
        logger.error(f"PIPELINE | {json.dumps(log_data, default=str)}")
    else:
        logger.info(f"PIPELINE | {json.dumps(log_data, default=str)}")


def log_agent_call(agent: str, **kwargs) -> None:
    """Log one reasoning-provider call.

    Args:
        agent: Agent or system-instruction label
        **kwargs: model, prompt_chars, response_chars, duration_ms, error
    """
    call = AgentCallEvent(agent=agent, **kwargs)
    log_data = asdict(call)

    if call.error:
        logger.warning(f"AGENT | {json.dumps(log_data)}")
    else:
        logger.info(f"AGENT | {json.dumps(log_data)}")


# =============================================================================
# Context Managers
# =============================================================================

@asynccontextmanager
async def timed_phase(phase_name: str, session_id: Optional[str] = None, **context):
    """Async context manager timing a pipeline phase with structured logging.

    Usage:
        async with timed_phase("discovery", session_id=sid) as timer:
            # do work
            timer["gaps"] = 2
    """
    start_time = time.perf_counter()
    result_data: Dict[str, Any] = {}

    log_pipeline_event(phase_name, status="started", session_id=session_id, details=context)

    try:
        yield result_data
        duration_ms = (time.perf_counter() - start_time) * 1000
        log_pipeline_event(
            phase_name,
            status="completed",
            session_id=session_id,
            duration_ms=round(duration_ms, 2),
            details={**context, **result_data},
        )
    except Exception as e:
        duration_ms = (time.perf_counter() - start_time) * 1000
        log_pipeline_event(
            phase_name,
            status="failed",
            session_id=session_id,
            duration_ms=round(duration_ms, 2),
            details={**context, "error": str(e)},
        )
        raise


# =============================================================================
# Run Summary
# =============================================================================

class RunSummary:
    """Collects counters during one audit run for a final summary line."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.start_time = time.perf_counter()
        self.specialists_run = 0
        self.fallbacks_used = 0
        self.retries = 0
        self.errors: List[str] = []

    def record_specialists(self, run: int, fallbacks: int):
        """Record one specialist round."""
        self.specialists_run += run
        self.fallbacks_used += fallbacks

    def record_retry(self):
        """Record a self-correction retry."""
        self.retries += 1

    def record_error(self, error: str):
        """Record an error."""
        self.errors.append(error)

    def to_dict(self) -> Dict[str, Any]:
        """Return summary as dict."""
        duration_ms = (time.perf_counter() - self.start_time) * 1000
        return {
            "session_id": self.session_id,
            "duration_ms": round(duration_ms, 2),
            "specialists_run": self.specialists_run,
            "fallbacks_used": self.fallbacks_used,
            "retries": self.retries,
            "error_count": len(self.errors),
        }

    def log_summary(self):
        """Log the final summary."""
        logger.info(f"RUN_SUMMARY | {json.dumps(self.to_dict())}")
