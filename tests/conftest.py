"""
Shared fixtures: a scripted reasoning provider and canned agent responses.

The scripted provider routes each call by a marker string found in the
system instruction, so one provider can play every agent in a run.
"""
from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from strategy_audit.config import AuditConfig
from strategy_audit.dimensions import DIMENSIONS, SPECIALIST_DIMENSIONS, format_dimension_table


DISCOVERY = "Discovery Intelligence Agent"
INTERROGATOR = "Strategic Interrogator"
SYNTHESIS = "Chief Strategy Officer"
MOAT = "Moat Analyst"
STRESS = "Crisis Stress-Test Analyst"


class ScriptedProvider:
    """Fake reasoning provider.

    routes maps a marker (substring of the system instruction) to:
    - a string: returned as-is
    - a list: items consumed in order (the last one repeats)
    - an Exception instance: raised
    - a callable(system, prompt): its return value is used
    """

    def __init__(
        self,
        routes: Optional[Dict[str, Any]] = None,
        default: str = "",
        delay: float = 0.0,
    ) -> None:
        self.routes = dict(routes or {})
        self.default = default
        self.delay = delay
        self.calls: List[Tuple[str, str]] = []

    async def invoke(self, system_instruction: str, user_prompt: str) -> str:
        self.calls.append((system_instruction, user_prompt))
        if self.delay:
            await asyncio.sleep(self.delay)
        for marker, response in self.routes.items():
            if marker in system_instruction:
                return self._resolve(marker, response, system_instruction, user_prompt)
        return self.default

    def _resolve(self, marker: str, response: Any, system: str, prompt: str) -> str:
        if isinstance(response, list):
            item = response.pop(0) if len(response) > 1 else response[0]
            return self._resolve(marker, item, system, prompt)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(system, prompt)
        return response

    def calls_to(self, marker: str) -> List[Tuple[str, str]]:
        return [c for c in self.calls if marker in c[0]]


def specialist_json(name: str, score: int = 72, confidence: int = 80) -> str:
    return json.dumps({
        "analysis_markdown": f"## {name}\nSolid position.",
        "confidence_score": confidence,
        "data_sources": ["industry benchmark"],
        "dimensions": {d: score for d in SPECIALIST_DIMENSIONS[name]},
    })


def report_with_table(scores: Dict[str, int]) -> str:
    return "# Strategy Audit\n\n## Executive Summary\nStrong local moat.\n\n" + format_dimension_table(scores)


def healthy_routes(score: int = 72) -> Dict[str, Any]:
    """Routes for a run where every agent answers well."""
    routes: Dict[str, Any] = {
        DISCOVERY: json.dumps({
            "findings": "Neighbourhood grocery with loyal student footfall.",
            "gaps": [],
            "is_complete": True,
            "summary": "Found local demand signals.",
        }),
        INTERROGATOR: json.dumps({
            "category": "SaaS",
            "location": 0,
            "competitor": 0,
            "advantage": 0,
            "question": "Who are your customers and where are they?",
            "lens_used": "customer_market",
            "is_auditable": False,
            "strategy_context": "",
        }),
        SYNTHESIS: report_with_table({d: score for d in DIMENSIONS}),
        MOAT: "Exclusive farmer contracts keep supply cheaper than any chain can match.",
        STRESS: json.dumps({"stressed_scores": {}, "mitigations": []}),
    }
    for name in SPECIALIST_DIMENSIONS:
        routes[f"({name})"] = specialist_json(name, score)
    return routes


AUDIT_READY_CONTEXT = (
    "Grocery store near Koramangala, competing with Reliance Smart, "
    "exclusive deal with 3 local farmers"
)


@pytest.fixture
def scripted_provider() -> Callable[..., ScriptedProvider]:
    """Factory for ScriptedProvider instances."""
    return ScriptedProvider


@pytest.fixture
def routes() -> Dict[str, Any]:
    return healthy_routes()


@pytest.fixture
def config() -> AuditConfig:
    return AuditConfig(
        provider="anthropic",
        session_ttl_seconds=3600,
        max_turns=3,
        audit_threshold=70,
        mitigation_threshold=40,
        store_backend="memory",
        report_token_secret="test-secret",
        report_token_length=8,
    )


@pytest.fixture
def markers() -> Dict[str, str]:
    return {
        "discovery": DISCOVERY,
        "interrogator": INTERROGATOR,
        "synthesis": SYNTHESIS,
        "moat": MOAT,
        "stress": STRESS,
    }


@pytest.fixture
def make_routes() -> Callable[..., Dict[str, Any]]:
    """Factory for healthy routes at a given uniform score."""
    return healthy_routes


@pytest.fixture
def specialist_response() -> Callable[..., str]:
    return specialist_json


@pytest.fixture
def report_table() -> Callable[[Dict[str, int]], str]:
    return report_with_table


@pytest.fixture
def audit_ready_context() -> str:
    return AUDIT_READY_CONTEXT
