"""
Synthesis Coordinator - merges specialist output into one scored report.

The coordinator is the ONLY component that writes the narrative report.
The report must end with an exact dimension table; scores are re-parsed
from that table so the narrative and the numbers cannot drift apart.

    context -> Specialist Pool (join) -> synthesis -> re-parse scores
            -> degenerate? re-run once in strict mode -> org name, moat rationale
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from strategy_audit.dimensions import (
    DIMENSIONS,
    extract_dimensions,
    format_dimension_table,
    is_degenerate,
)
from strategy_audit.errors import ProviderError
from strategy_audit.models import SpecialistOutput
from strategy_audit.observability import RunSummary
from strategy_audit.provider import ReasoningProvider
from strategy_audit.retry import BoundedRetry
from strategy_audit.specialists import SPECIALISTS, run_specialist_pool

logger = logging.getLogger(__name__)


# =============================================================================
# Prompt Templates
# =============================================================================


SYNTHESIS_INSTRUCTION = """You are a Chief Strategy Officer writing an enterprise strategy audit.

You receive a business context and the analyses of five specialists.
Synthesise them into ONE cohesive, professional markdown report:
1. Executive Summary
2. Market & Trends
3. Strategy & Innovation
4. Commercial Strategy
5. Operations & Execution
6. Finance & Risk

CRITICAL RULES:
- Resolve contradictions between specialists explicitly
- Keep every recommendation asymmetric: exploit what competitors cannot copy
- The report MUST END with the dimension table below, one row per dimension,
  names spelled EXACTLY as given, each followed by an integer 0-100
- Do not add anything after the table"""

SYNTHESIS_PROMPT = """Business context:
{context}

Specialist analyses:
{narratives}

Merged dimension scores:
{table}

Write the report now, ending with the dimension table."""

MOAT_INSTRUCTION = """You are a Moat Analyst.
In 2-3 sentences, explain why the named dimension is this business's strongest
structural advantage and how to defend it. Plain prose, no markdown headings."""


def build_synthesis_prompt(
    context: str,
    outputs: Dict[str, SpecialistOutput],
    scores: Dict[str, int],
) -> str:
    sections = []
    for specialist in SPECIALISTS:
        output = outputs.get(specialist.name)
        if output is None:
            continue
        sections.append(
            f"### {specialist.title} (confidence {output.confidence_score})\n"
            f"{output.analysis_markdown or '_No narrative provided._'}"
        )
    return SYNTHESIS_PROMPT.format(
        context=context,
        narratives="\n\n".join(sections),
        table=format_dimension_table(scores),
    )


def fallback_report(outputs: Dict[str, SpecialistOutput], scores: Dict[str, int]) -> str:
    """Assemble a report directly from specialist narratives."""
    lines = ["# Strategy Audit", ""]
    for specialist in SPECIALISTS:
        output = outputs.get(specialist.name)
        if output is None:
            continue
        lines.append(f"## {specialist.title}")
        lines.append(output.analysis_markdown or "_No narrative provided._")
        lines.append("")
    lines.append("## Dimension Scores")
    lines.append(format_dimension_table(scores))
    return "\n".join(lines)


# =============================================================================
# Secondary Derivations
# =============================================================================

_LEADING_STOPWORDS = {
    "We", "Our", "I", "My", "The", "A", "An", "This", "It", "Us", "They", "Their",
    "In", "At", "Near", "For", "With", "Hi", "Hello",
}
_CAPITALIZED_PHRASE_RE = re.compile(r"\b[A-Z][\w&'.-]*(?:\s+[A-Z][\w&'.-]*)*")


def extract_org_name(text: str, default: str = "Your Business") -> str:
    """First capitalized phrase in the input, ignoring sentence-start filler."""
    for match in _CAPITALIZED_PHRASE_RE.finditer(text):
        words = match.group().split()
        while words and words[0] in _LEADING_STOPWORDS:
            words.pop(0)
        if words:
            return " ".join(words).rstrip(".,")
    return default


def strongest_dimension(scores: Dict[str, int]) -> Optional[str]:
    """Highest-scoring dimension; ties go to catalog order."""
    best = None
    for name in DIMENSIONS:
        if name in scores and (best is None or scores[name] > scores[best]):
            best = name
    return best


async def explain_moat(
    context: str,
    scores: Dict[str, int],
    provider: ReasoningProvider,
) -> str:
    """One call explaining the single strongest dimension."""
    top = strongest_dimension(scores)
    if top is None:
        return ""
    template = f"{top} scored {scores[top]}/100, the strongest dimension in this audit."
    prompt = f"Strongest dimension: {top} ({scores[top]}/100)\n\nBusiness context:\n{context}"
    try:
        text = (await provider.invoke(MOAT_INSTRUCTION, prompt)).strip()
    except ProviderError as e:
        logger.warning(f"Moat rationale call failed: {e}")
        return template
    return text or template


# =============================================================================
# Coordinator
# =============================================================================


@dataclass
class AnalysisRound:
    """One specialist round plus the synthesis built on it."""

    outputs: Dict[str, SpecialistOutput]
    scores: Dict[str, int]
    report: str
    attempt: int = 0


@dataclass
class AnalysisResult:
    """Everything the coordinator produces for one audit."""

    outputs: Dict[str, SpecialistOutput]
    scores: Dict[str, int]
    report: str
    org_name: str
    moat_rationale: str
    retried: bool = False
    warnings: List[str] = field(default_factory=list)


class SynthesisCoordinator:
    """Runs specialists, synthesises the report and self-corrects once."""

    def __init__(self, provider: ReasoningProvider, max_retries: int = 1) -> None:
        self.provider = provider
        self.retry_policy: BoundedRetry[AnalysisRound] = BoundedRetry(
            should_retry=lambda r: is_degenerate(r.scores),
            max_retries=max_retries,
            name="specialist round",
        )

    async def synthesize(
        self,
        context: str,
        outputs: Dict[str, SpecialistOutput],
        scores: Dict[str, int],
    ) -> str:
        """Ask for the narrative report; fall back to assembling it locally."""
        prompt = build_synthesis_prompt(context, outputs, scores)
        try:
            report = (await self.provider.invoke(SYNTHESIS_INSTRUCTION, prompt)).strip()
        except ProviderError as e:
            logger.warning(f"Synthesis call failed, assembling report from specialists: {e}")
            return fallback_report(outputs, scores)
        return report or fallback_report(outputs, scores)

    async def run_round(self, context: str, attempt: int = 0) -> AnalysisRound:
        """One specialist round (strict after the first attempt) plus synthesis."""
        outputs, merged = await run_specialist_pool(context, self.provider, strict=attempt > 0)
        report = await self.synthesize(context, outputs, merged)

        extracted = extract_dimensions(report)
        scores = {**merged, **extracted}
        missing = [d for d in DIMENSIONS if d not in extracted]
        if missing:
            logger.warning(f"Report table missing {len(missing)} dimensions, appending canonical table")
            report = f"{report}\n\n## Dimension Scores\n{format_dimension_table(scores)}"

        return AnalysisRound(outputs=outputs, scores=scores, report=report, attempt=attempt)

    async def run(
        self,
        context: str,
        business_context: Optional[str] = None,
        summary: Optional[RunSummary] = None,
    ) -> AnalysisResult:
        """
        Produce the full analysis for an audit-ready context.

        Args:
            context: Strategy context plus grounding, as given to specialists
            business_context: The user's own words (for the org-name heuristic)
            summary: Optional run counters

        Returns:
            AnalysisResult with merged scores, report and secondary artifacts
        """

        async def attempt(index: int) -> AnalysisRound:
            if index > 0 and summary is not None:
                summary.record_retry()
            result = await self.run_round(context, attempt=index)
            if summary is not None:
                summary.record_specialists(
                    run=len(result.outputs),
                    fallbacks=sum(1 for o in result.outputs.values() if o.fallback),
                )
            return result

        final = await self.retry_policy.run(attempt)

        warnings = []
        if is_degenerate(final.scores):
            warnings.append("Scores remained at defaults after self-correction; treat as low confidence.")

        moat = await explain_moat(context, final.scores, self.provider)
        return AnalysisResult(
            outputs=final.outputs,
            scores=final.scores,
            report=final.report,
            org_name=extract_org_name(business_context or context),
            moat_rationale=moat,
            retried=final.attempt > 0,
            warnings=warnings,
        )
