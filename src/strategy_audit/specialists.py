"""
Specialist Pool - five independent scoring agents run concurrently.

Each specialist owns exactly three of the fifteen dimensions. A specialist
whose call fails or whose output cannot be parsed contributes neutral
defaults (50 across its dimensions, confidence 50) instead of aborting the
round.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from strategy_audit.dimensions import NEUTRAL_SCORE, SPECIALIST_DIMENSIONS, empty_scores
from strategy_audit.errors import ProviderError
from strategy_audit.models import SpecialistOutput
from strategy_audit.parsing import clamp_score, parse_with_fallback
from strategy_audit.provider import ReasoningProvider

logger = logging.getLogger(__name__)


ASYMMETRIC_PLAY_RULE = """BANNED TACTICS: never suggest marketing campaigns, social media strategies, or discounts.
ASYMMETRIC PLAYS ONLY: every recommendation must exploit a structural advantage a competitor cannot easily copy.
Frame each insight as: "Because [competitor] cannot [do X], you can [asymmetric move] to lock in [segment]." """

STRICT_JSON_RULE = """STRICT MODE: your previous answer could not be scored.
Return ONLY the JSON object. No markdown, no code fences, no prose before or after it.
Every dimension value must be an integer between 0 and 100."""


@dataclass(frozen=True)
class Specialist:
    """A scoring agent for one strategic sub-domain."""

    name: str
    title: str
    focus: Tuple[str, ...]

    @property
    def dimensions(self) -> List[str]:
        return SPECIALIST_DIMENSIONS[self.name]

    def instruction(self, strict: bool = False) -> str:
        focus = "\n".join(f"- {item}" for item in self.focus)
        dims = "\n".join(f'{i}. "{d}"' for i, d in enumerate(self.dimensions, 1))
        schema_dims = ",\n    ".join(f'"{d}": <0-100>' for d in self.dimensions)
        text = (
            f"You are the {self.title} ({self.name}).\n"
            f"Analyse the business context focusing on:\n{focus}\n\n"
            f"{ASYMMETRIC_PLAY_RULE}\n\n"
            f"Score exactly these 3 dimensions (0-100):\n{dims}\n\n"
            "Output EXACTLY this JSON structure, not wrapped in markdown:\n"
            "{\n"
            '  "analysis_markdown": "Your markdown analysis",\n'
            '  "confidence_score": <0-100>,\n'
            '  "data_sources": ["evidence or benchmarks used"],\n'
            f'  "dimensions": {{\n    {schema_dims}\n  }}\n'
            "}"
        )
        if strict:
            text += f"\n\n{STRICT_JSON_RULE}"
        return text


SPECIALISTS: List[Specialist] = [
    Specialist(
        name="market_analyst",
        title="Market Analyst",
        focus=("TAM, SAM and SOM", "Detailed customer personas", "Current and emergent industry trends"),
    ),
    Specialist(
        name="innovation_analyst",
        title="Innovation Analyst",
        focus=("Competitive landscape and benchmarking", "SWOT and Porter's Five Forces", "Three Horizons of Growth"),
    ),
    Specialist(
        name="commercial_analyst",
        title="Commercial Analyst",
        focus=("Pricing strategy and revenue models", "Go-to-market strategy", "Market entry and expansion"),
    ),
    Specialist(
        name="operations_analyst",
        title="Operations Analyst",
        focus=("McKinsey 7S", "Value chain and AI operating model readiness", "ESG assessment"),
    ),
    Specialist(
        name="finance_analyst",
        title="Finance Analyst",
        focus=("Financial modelling and unit economics", "Risk assessment and mitigation", "M&A and inorganic growth"),
    ),
]


def neutral_output(specialist: Specialist) -> SpecialistOutput:
    """Default used when a specialist's response is unusable."""
    return SpecialistOutput(
        analysis_markdown=f"_{specialist.title} analysis unavailable; neutral scores applied._",
        confidence_score=NEUTRAL_SCORE,
        data_sources=[],
        dimensions={d: NEUTRAL_SCORE for d in specialist.dimensions},
        fallback=True,
    )


def _validator(specialist: Specialist):
    def validate(obj: Dict[str, Any]) -> SpecialistOutput:
        raw_dims = obj.get("dimensions")
        if not isinstance(raw_dims, dict):
            raise ValueError("dimensions must be an object")
        lowered = {str(k).strip().lower(): v for k, v in raw_dims.items()}
        if not any(d.lower() in lowered for d in specialist.dimensions):
            raise ValueError(f"none of {specialist.dimensions} present")

        dimensions = {
            d: clamp_score(lowered.get(d.lower()), NEUTRAL_SCORE) for d in specialist.dimensions
        }
        sources = obj.get("data_sources") or []
        if isinstance(sources, str):
            sources = [sources]
        return SpecialistOutput(
            analysis_markdown=str(obj.get("analysis_markdown") or "").strip(),
            confidence_score=clamp_score(obj.get("confidence_score"), NEUTRAL_SCORE),
            data_sources=[str(s) for s in sources],
            dimensions=dimensions,
        )

    return validate


async def run_specialist(
    specialist: Specialist,
    context: str,
    provider: ReasoningProvider,
    strict: bool = False,
) -> SpecialistOutput:
    """
    Run one specialist against the business context.

    Args:
        specialist: Which specialist to run
        context: Business context plus grounding
        provider: Reasoning provider
        strict: Use the JSON-only instruction (self-correction round)

    Returns:
        SpecialistOutput, neutral if the call failed or output was unusable
    """
    prompt = f"Business context:\n{context}"
    try:
        raw = await provider.invoke(specialist.instruction(strict=strict), prompt)
    except ProviderError as e:
        logger.warning(f"{specialist.name} call failed, using neutral scores: {e}")
        return neutral_output(specialist)

    return parse_with_fallback(
        raw,
        lambda: neutral_output(specialist),
        _validator(specialist),
        label=specialist.name,
    )


async def run_specialist_pool(
    context: str,
    provider: ReasoningProvider,
    strict: bool = False,
) -> Tuple[Dict[str, SpecialistOutput], Dict[str, int]]:
    """
    Run all five specialists concurrently and merge their scores.

    Returns only after every specialist has finished.

    Args:
        context: Business context plus grounding
        provider: Reasoning provider
        strict: Use the JSON-only instruction for every specialist

    Returns:
        Tuple of (outputs keyed by specialist name, merged 15-dimension scores)
    """
    results = await asyncio.gather(
        *(run_specialist(s, context, provider, strict=strict) for s in SPECIALISTS),
        return_exceptions=True,
    )

    outputs: Dict[str, SpecialistOutput] = {}
    final_dimensions = empty_scores()
    for specialist, result in zip(SPECIALISTS, results):
        if isinstance(result, Exception):
            logger.error(f"{specialist.name} raised unexpectedly: {result}")
            result = neutral_output(specialist)
        outputs[specialist.name] = result
        for name in specialist.dimensions:
            final_dimensions[name] = result.dimensions.get(name, NEUTRAL_SCORE)

    fallbacks = sum(1 for o in outputs.values() if o.fallback)
    logger.info(f"Specialist round complete: {len(outputs)} run, {fallbacks} fallbacks, strict={strict}")
    return outputs, final_dimensions
