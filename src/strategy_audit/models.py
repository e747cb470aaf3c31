"""
Pydantic models for the strategy audit pipeline.
"""
from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Interrogation
# =============================================================================


class Lens(str, Enum):
    """Thematic focus of a clarifying question, visited in declaration order."""

    CUSTOMER_MARKET = "customer_market"
    COMPETITOR_MOAT = "competitor_moat"
    OPERATIONS_SUPPLY = "operations_supply"


LENS_ROTATION: List[Lens] = [Lens.CUSTOMER_MARKET, Lens.COMPETITOR_MOAT, Lens.OPERATIONS_SUPPLY]


class IdBreakdown(BaseModel):
    """Per-signal contributions to the information density score."""

    location: int = 0     # 0-30: location or demographic reference
    competitor: int = 0   # 0-30: named competitor or constraint
    advantage: int = 0    # 0-40: unique advantage or proprietary resource

    @property
    def total(self) -> int:
        return min(100, self.location + self.competitor + self.advantage)


class InterrogatorResult(BaseModel):
    """Outcome of one interrogation turn."""

    category: str = "Unknown"
    question: str = ""
    is_auditable: bool = False
    strategy_context: str = ""
    id_score: int = 0
    lens_used: Optional[Lens] = None
    id_breakdown: IdBreakdown = Field(default_factory=IdBreakdown)
    covered_lenses: List[Lens] = Field(default_factory=list)
    # Why the turn was promoted without an LLM verdict, if it was
    forced_reason: Optional[str] = None


class Session(BaseModel):
    """Multi-turn interrogation state.

    enriched_context only ever grows and turn_count only ever increases;
    `locked` marks a clarification turn in flight.
    """

    id: str
    original_context: str
    enriched_context: str
    discovery_findings: str = ""
    gaps: List[str] = Field(default_factory=list)
    turn_count: int = 0
    used_lenses: List[Lens] = Field(default_factory=list)
    asked_questions: List[str] = Field(default_factory=list)
    stress_test: bool = False
    locked: bool = False
    # Stamped by SessionStore.create.
    created_at: datetime = Field(default_factory=datetime.now)
    expires_at: datetime = Field(default_factory=datetime.now)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now()) > self.expires_at


# =============================================================================
# Discovery
# =============================================================================


class DiscoveryResult(BaseModel):
    """Grounding summary produced by the discovery sweep."""

    findings: str = ""
    gaps: List[str] = Field(default_factory=list)
    is_complete: bool = False
    summary: str = ""


# =============================================================================
# Specialists and Audit
# =============================================================================


class SpecialistOutput(BaseModel):
    """Scored analysis returned by one specialist."""

    analysis_markdown: str = ""
    confidence_score: int = 50
    data_sources: List[str] = Field(default_factory=list)
    dimensions: Dict[str, int] = Field(default_factory=dict)
    # True when the response could not be parsed and neutral defaults were used
    fallback: bool = False


class AuditRecord(BaseModel):
    """A finished audit. Written once, read-only afterwards."""

    report_id: str
    business_context: str
    grounded_context: str = ""
    dimension_scores: Dict[str, int] = Field(default_factory=dict)
    specialist_outputs: Dict[str, SpecialistOutput] = Field(default_factory=dict)
    report: str = ""
    stress_test: bool = False
    org_name: str = ""
    moat_rationale: str = ""
    access_token: str = ""
    created_at: datetime = Field(default_factory=datetime.now)

    @property
    def fingerprint(self) -> str:
        return business_fingerprint(self.business_context)

    @property
    def access_id(self) -> str:
        return f"{self.report_id}-{self.access_token}" if self.access_token else self.report_id


def business_fingerprint(business_context: str) -> str:
    """Rough identity of a business: first 80 chars, lowercased."""
    return business_context.strip()[:80].lower()


# =============================================================================
# Stress Testing
# =============================================================================


class Scenario(BaseModel):
    """A fixed crisis scenario."""

    model_config = {"frozen": True}

    id: str
    label: str
    crisis_narrative: str


class MitigationCard(BaseModel):
    """Remediation guidance for a dimension that fell below the threshold."""

    dimension: str
    stressed_score: int
    risk_delta: int
    mitigation_steps: List[str] = Field(default_factory=list)
    crisis_play: str = ""


class StressResult(BaseModel):
    """Recomputed scores for one scenario. Never persisted."""

    scenario_id: str
    scenario_label: str = ""
    original_scores: Dict[str, int]
    stressed_scores: Dict[str, int]
    risk_deltas: Dict[str, int]
    mitigation_cards: List[MitigationCard] = Field(default_factory=list)


# =============================================================================
# Stream Events
# =============================================================================


class EventType(str, Enum):
    """Kinds of events streamed to the caller."""

    SESSION_INIT = "SESSION_INIT"
    DISCOVERY_START = "DISCOVERY_START"
    DISCOVERY_COMPLETE = "DISCOVERY_COMPLETE"
    INTERROGATOR_RESPONSE = "INTERROGATOR_RESPONSE"
    NEED_CLARIFICATION = "NEED_CLARIFICATION"
    AUDIT_UNLOCKED = "AUDIT_UNLOCKED"
    ANALYSIS_START = "ANALYSIS_START"
    REPORT_COMPLETE = "REPORT_COMPLETE"
    STRESS_TEST_START = "STRESS_TEST_START"
    STRESS_TEST_COMPLETE = "STRESS_TEST_COMPLETE"
    ERROR = "ERROR"


class StreamEvent(BaseModel):
    """One phase-completion event in a streamed response."""

    type: EventType
    data: Dict[str, Any] = Field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, **self.data}

    def to_sse(self) -> str:
        """Render as a server-sent event frame."""
        return f"data: {json.dumps(self.to_dict(), default=str)}\n\n"
