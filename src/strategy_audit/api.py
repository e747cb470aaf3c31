"""
HTTP surface for the audit pipeline.

Long-running operations stream server-sent events, one `data: {...}` frame
per StreamEvent. Session problems on /analyze/clarify are reported with a
status code before streaming starts.

Start: uvicorn strategy_audit.api:app --host 0.0.0.0 --port 8080
"""
from __future__ import annotations

import logging
from contextlib import aclosing
from typing import AsyncIterator, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from strategy_audit.config import default_config
from strategy_audit.errors import (
    AuditNotFoundError,
    SessionBusyError,
    SessionNotFoundError,
    UnknownScenarioError,
)
from strategy_audit.models import StreamEvent
from strategy_audit.observability import setup_structured_logging
from strategy_audit.orchestrator import StrategyOrchestrator
from strategy_audit.scenarios import get_scenario, list_scenarios

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class AnalyzeRequest(BaseModel):
    business_context: str = Field(..., min_length=1)
    stress_test: bool = False


class ClarifyRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
    clarification: str = Field(..., min_length=1)


class StressTestRequest(BaseModel):
    report_id: str = Field(..., min_length=1)
    scenario_id: str = Field(..., min_length=1)


app = FastAPI(
    title="Strategy Audit Engine",
    description="Interrogation, multi-specialist scoring and stress testing of business strategies",
    version="0.1.0",
)

_orchestrator: Optional[StrategyOrchestrator] = None


def get_orchestrator() -> StrategyOrchestrator:
    """Lazily build the process-wide orchestrator from configuration."""
    global _orchestrator
    if _orchestrator is None:
        setup_structured_logging()
        _orchestrator = StrategyOrchestrator.from_config(default_config)
    return _orchestrator


async def event_stream(events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    async with aclosing(events):
        async for event in events:
            yield event.to_sse()


def _sse(events: AsyncIterator[StreamEvent]) -> StreamingResponse:
    return StreamingResponse(event_stream(events), media_type="text/event-stream", headers=SSE_HEADERS)


@app.post("/analyze")
async def analyze(
    request: AnalyzeRequest,
    orchestrator: StrategyOrchestrator = Depends(get_orchestrator),
):
    if not request.business_context.strip():
        raise HTTPException(status_code=400, detail="business_context is required")
    return _sse(orchestrator.analyze(request.business_context, stress_test=request.stress_test))


@app.post("/analyze/clarify")
async def clarify(
    request: ClarifyRequest,
    orchestrator: StrategyOrchestrator = Depends(get_orchestrator),
):
    try:
        session = await orchestrator.begin_clarification(request.session_id, request.clarification)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SessionBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _sse(orchestrator.continue_clarification(session))


@app.post("/stress-test")
async def stress_test(
    request: StressTestRequest,
    orchestrator: StrategyOrchestrator = Depends(get_orchestrator),
):
    try:
        scenario = get_scenario(request.scenario_id)
    except UnknownScenarioError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _sse(orchestrator.stress_test(request.report_id, scenario.id))


@app.get("/report/{access_id}")
async def get_report(
    access_id: str,
    orchestrator: StrategyOrchestrator = Depends(get_orchestrator),
):
    try:
        record = await orchestrator.load_report(access_id)
    except AuditNotFoundError:
        raise HTTPException(status_code=404, detail="Report not found or expired.")
    return {
        "id": record.access_id,
        "report": record.report,
        "dimensions": record.dimension_scores,
        "grounded_context": record.grounded_context,
        "business_context": record.business_context,
        "org_name": record.org_name,
        "moat_rationale": record.moat_rationale,
        "stress_test": record.stress_test,
        "created_at": record.created_at.isoformat(),
    }


@app.get("/scenarios")
async def scenarios():
    return [{"id": s.id, "label": s.label} for s in list_scenarios()]


@app.get("/health")
async def health():
    return {"status": "healthy"}
