"""
Discovery Sweep - one grounding call before any scoring.

Discovery gathers evidence. Scoring judges it.
These are separate steps.

If the sweep's output cannot be parsed, the result is marked incomplete and
carries generic clarifying questions: asking the user beats analysing with
no grounding.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List

from strategy_audit.dimensions import DIMENSIONS
from strategy_audit.errors import ProviderError
from strategy_audit.models import DiscoveryResult
from strategy_audit.parsing import parse_with_fallback
from strategy_audit.provider import ReasoningProvider

logger = logging.getLogger(__name__)


DISCOVERY_INSTRUCTION = f"""You are a Discovery Intelligence Agent.
Your role is to gather ground-truth signals about the business described by the user
BEFORE any strategic analysis begins.

Conduct a 24-month retrospective of publicly knowable signals:
- QUANTITATIVE: revenue, capex, growth, fundraising, burn-rate signals
- QUALITATIVE: product pivots, new market entries, leadership changes, partnerships
- COMPETITIVE: new entrants, pricing changes, consolidation in the space

Then judge whether the findings cover these strategic dimensions:
{", ".join(DIMENSIONS)}

OUTPUT: raw JSON only, no markdown.
{{
  "findings": "A rich paragraph of discovered intelligence with specific data points",
  "gaps": ["Specific data points that could not be verified"],
  "is_complete": true,
  "summary": "One sentence shown to the user"
}}
If is_complete is false, each gap must be specific enough to ask the user about."""


FALLBACK_GAPS = [
    "Who exactly is your core customer, and where are they located?",
    "Who is your strongest competitor, and what can you do that they cannot?",
]


def fallback_discovery() -> DiscoveryResult:
    """Result used when the sweep produced nothing usable."""
    return DiscoveryResult(
        findings="",
        gaps=list(FALLBACK_GAPS),
        is_complete=False,
        summary="Discovery scan was inconclusive; a few details are needed.",
    )


def _validate_discovery(obj: Dict[str, Any]) -> DiscoveryResult:
    findings = obj.get("findings")
    if not isinstance(findings, str):
        raise ValueError("findings must be a string")

    raw_gaps = obj.get("gaps") or []
    if isinstance(raw_gaps, str):
        raw_gaps = [raw_gaps]
    gaps: List[str] = [str(g).strip() for g in raw_gaps if str(g).strip()]

    is_complete = obj.get("is_complete")
    if not isinstance(is_complete, bool):
        is_complete = not gaps

    return DiscoveryResult(
        findings=findings.strip(),
        gaps=gaps,
        is_complete=is_complete,
        summary=str(obj.get("summary") or "Discovery scan complete.").strip(),
    )


def build_discovery_prompt(business_context: str) -> str:
    return (
        f"Business to analyse:\n{business_context}\n\n"
        "Conduct the 24-month intelligence sweep now."
    )


async def run_discovery(
    business_context: str,
    provider: ReasoningProvider,
) -> DiscoveryResult:
    """
    Run the discovery sweep for a business description.

    Args:
        business_context: The caller's business description
        provider: Reasoning provider to use

    Returns:
        DiscoveryResult; incomplete with generic gaps if the call or parse failed
    """
    try:
        raw = await provider.invoke(DISCOVERY_INSTRUCTION, build_discovery_prompt(business_context))
    except ProviderError as e:
        logger.warning(f"Discovery call failed, asking instead of guessing: {e}")
        return fallback_discovery()

    result = parse_with_fallback(raw, fallback_discovery, _validate_discovery, label="discovery")
    logger.info(
        f"Discovery complete: complete={result.is_complete}, gaps={len(result.gaps)}, "
        f"findings={len(result.findings)} chars"
    )
    return result
