"""
The fixed 15-dimension catalog and its partition across the five specialists.
"""
from __future__ import annotations

import re
from typing import Dict, List, Mapping

DIMENSIONS: List[str] = [
    "TAM Viability", "Target Precision", "Trend Adoption",
    "Competitive Defensibility", "Model Innovation", "Flywheel Potential",
    "Pricing Power", "CAC/LTV Ratio", "Market Entry Speed",
    "Execution Speed", "Scalability", "ESG Posture",
    "ROI Projection", "Risk Tolerance", "Capital Efficiency",
]

SPECIALIST_DIMENSIONS: Dict[str, List[str]] = {
    "market_analyst": ["TAM Viability", "Target Precision", "Trend Adoption"],
    "innovation_analyst": ["Competitive Defensibility", "Model Innovation", "Flywheel Potential"],
    "commercial_analyst": ["Pricing Power", "CAC/LTV Ratio", "Market Entry Speed"],
    "operations_analyst": ["Execution Speed", "Scalability", "ESG Posture"],
    "finance_analyst": ["ROI Projection", "Risk Tolerance", "Capital Efficiency"],
}

NEUTRAL_SCORE = 50


def _check_partition() -> None:
    seen: List[str] = []
    for names in SPECIALIST_DIMENSIONS.values():
        if len(names) != 3:
            raise AssertionError(f"Each specialist owns exactly 3 dimensions, got {names}")
        seen.extend(names)
    if len(seen) != len(set(seen)) or set(seen) != set(DIMENSIONS):
        raise AssertionError("Specialist dimensions must partition the catalog")


_check_partition()


def empty_scores() -> Dict[str, int]:
    """All 15 dimensions at 0 (never set)."""
    return {name: 0 for name in DIMENSIONS}


def is_degenerate(scores: Mapping[str, int]) -> bool:
    """True when every dimension is either unset (0) or the neutral default (50)."""
    return all(scores.get(name, 0) in (0, NEUTRAL_SCORE) for name in DIMENSIONS)


def format_dimension_table(scores: Mapping[str, int]) -> str:
    """Render the scores as the markdown table the synthesis report ends with."""
    lines = ["| Dimension | Score |", "|---|---|"]
    for name in DIMENSIONS:
        lines.append(f"| {name} | {scores.get(name, 0)} |")
    return "\n".join(lines)


def extract_dimensions(report: str) -> Dict[str, int]:
    """Re-parse dimension scores from report text.

    Matches a dimension name followed, on the same line, by a 1-3 digit
    number. When a name appears several times the last match wins, so the
    closing score table overrides numbers quoted in the narrative.
    """
    dimensions: Dict[str, int] = {}
    for name in DIMENSIONS:
        pattern = re.compile(rf"{re.escape(name)}[^0-9\n]*?(\d{{1,3}})(?!\d)", re.IGNORECASE)
        matches = pattern.findall(report)
        if matches:
            dimensions[name] = min(100, int(matches[-1]))
    return dimensions
