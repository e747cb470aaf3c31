"""
Stress-Test Engine - replays a cached audit against a crisis scenario.

Only the persisted grounding and baseline scores are reused; discovery and
interrogation never run again. Results are transient.

Invariants:
- risk_deltas[d] == stressed_scores[d] - original_scores[d] for all 15 dimensions
- a mitigation card exists for d if and only if stressed_scores[d] < threshold
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from strategy_audit.dimensions import DIMENSIONS, format_dimension_table
from strategy_audit.errors import AuditNotFoundError, ProviderError
from strategy_audit.models import AuditRecord, MitigationCard, Scenario, StressResult
from strategy_audit.parsing import clamp_score, extract_json_object
from strategy_audit.provider import ReasoningProvider
from strategy_audit.scenarios import get_scenario
from strategy_audit.store import AuditMemoryStore

logger = logging.getLogger(__name__)


STRESS_INSTRUCTION = """You are a Crisis Stress-Test Analyst.
Recompute every strategic dimension score for this business under the crisis described.
Scores are integers 0-100; lower means the crisis damages that dimension more.

For every dimension whose new score is below {threshold}, add a mitigation entry with
concrete remediation steps and ONE crisis-response play.

OUTPUT: raw JSON only, no markdown.
{{
  "stressed_scores": {{"TAM Viability": 55, "...": 0}},
  "mitigations": [
    {{"dimension": "CAC/LTV Ratio",
      "mitigation_steps": ["step 1", "step 2", "step 3"],
      "crisis_play": "One decisive crisis-response move"}}
  ]
}}"""


def build_stress_prompt(record: AuditRecord, scenario: Scenario, baseline: Dict[str, int]) -> str:
    grounding = record.grounded_context or "(no external grounding was available)"
    return (
        f"BUSINESS CONTEXT:\n{record.business_context}\n\n"
        f"GROUNDED CONTEXT:\n{grounding}\n\n"
        f"BASELINE SCORES:\n{format_dimension_table(baseline)}\n\n"
        f"{scenario.crisis_narrative}"
    )


def generic_mitigation(dimension: str, scenario: Scenario) -> tuple[List[str], str]:
    """Remediation used when the model gave none for a failing dimension."""
    steps = [
        f"Identify the two drivers of {dimension} most exposed to the {scenario.label.lower()}.",
        "Ring-fence cash and capacity for the customers that drive most of your margin.",
        "Set a 30-day review cadence with explicit trigger metrics for further action.",
    ]
    play = f"Convert the {scenario.label.lower()} into leverage: move first where competitors are forced to retreat."
    return steps, play


def _model_mitigations(obj: Optional[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    by_dimension: Dict[str, Dict[str, Any]] = {}
    if not obj:
        return by_dimension
    entries = obj.get("mitigations") or obj.get("mitigation_cards") or []
    if not isinstance(entries, list):
        return by_dimension
    canonical = {d.lower(): d for d in DIMENSIONS}
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        name = canonical.get(str(entry.get("dimension", "")).strip().lower())
        if name:
            by_dimension[name] = entry
    return by_dimension


def compute_stress_result(
    scenario: Scenario,
    baseline: Dict[str, int],
    raw_output: Optional[str],
    threshold: int = 40,
) -> StressResult:
    """
    Turn provider output into a StressResult.

    Dimensions the model did not rescore keep their baseline value (delta 0).

    Args:
        scenario: The scenario applied
        baseline: Original 15-dimension scores
        raw_output: Free text from the provider (may be None on failure)
        threshold: Scores strictly below this get a mitigation card

    Returns:
        StressResult with exact deltas and threshold-driven mitigation cards
    """
    obj = extract_json_object(raw_output)
    if obj is None:
        logger.warning(f"Stress test {scenario.id}: unparseable output, keeping baseline scores")

    raw_scores = obj.get("stressed_scores") if obj else None
    if not isinstance(raw_scores, dict):
        raw_scores = {}
    lowered = {str(k).strip().lower(): v for k, v in raw_scores.items()}

    original = {d: int(baseline.get(d, 0)) for d in DIMENSIONS}
    stressed = {d: clamp_score(lowered.get(d.lower()), original[d]) for d in DIMENSIONS}
    deltas = {d: stressed[d] - original[d] for d in DIMENSIONS}

    guidance = _model_mitigations(obj)
    cards = []
    for d in DIMENSIONS:
        if stressed[d] >= threshold:
            continue
        entry = guidance.get(d, {})
        steps = entry.get("mitigation_steps") or entry.get("steps") or []
        if isinstance(steps, str):
            steps = [steps]
        play = entry.get("crisis_play") or entry.get("cso_crisis_play") or ""
        default_steps, default_play = generic_mitigation(d, scenario)
        cards.append(MitigationCard(
            dimension=d,
            stressed_score=stressed[d],
            risk_delta=deltas[d],
            mitigation_steps=[str(s) for s in steps] or default_steps,
            crisis_play=str(play) or default_play,
        ))

    return StressResult(
        scenario_id=scenario.id,
        scenario_label=scenario.label,
        original_scores=original,
        stressed_scores=stressed,
        risk_deltas=deltas,
        mitigation_cards=cards,
    )


class StressTestEngine:
    """Recomputes a persisted audit under a crisis scenario."""

    def __init__(
        self,
        provider: ReasoningProvider,
        audit_store: AuditMemoryStore,
        mitigation_threshold: int = 40,
    ) -> None:
        self.provider = provider
        self.audit_store = audit_store
        self.mitigation_threshold = mitigation_threshold

    async def run(self, report_id: str, scenario_id: str) -> StressResult:
        """
        Stress-test a stored audit.

        Raises:
            UnknownScenarioError: If scenario_id is not in the catalog
            AuditNotFoundError: If no audit exists for report_id
        """
        scenario = get_scenario(scenario_id)
        record = await self.audit_store.load(report_id)
        if record is None:
            raise AuditNotFoundError(report_id)
        return await self.run_for_record(record, scenario)

    async def run_for_record(self, record: AuditRecord, scenario: Scenario) -> StressResult:
        baseline = {d: record.dimension_scores.get(d, 0) for d in DIMENSIONS}
        instruction = STRESS_INSTRUCTION.format(threshold=self.mitigation_threshold)
        try:
            raw = await self.provider.invoke(instruction, build_stress_prompt(record, scenario, baseline))
        except ProviderError as e:
            logger.warning(f"Stress test call failed for {record.report_id}: {e}")
            raw = None

        result = compute_stress_result(scenario, baseline, raw, threshold=self.mitigation_threshold)
        logger.info(
            f"Stress test {scenario.id} on {record.report_id}: "
            f"{len(result.mitigation_cards)} dimensions below {self.mitigation_threshold}"
        )
        return result
