"""
Stress-Test Scenario Registry.

Each scenario injects a synthetic crisis into the score recalculation.
The catalog is fixed at import time.
"""
from __future__ import annotations

from typing import Dict, List

from strategy_audit.errors import UnknownScenarioError
from strategy_audit.models import Scenario

SCENARIOS: Dict[str, Scenario] = {
    "RECESSION": Scenario(
        id="RECESSION",
        label="Economic Recession",
        crisis_narrative="""SYNTHETIC CRISIS - ECONOMIC RECESSION:
Assume a severe global economic recession is underway:
- Consumer discretionary spending has dropped 35%
- B2B deal cycles have extended from 3 months to 9+ months
- VC/PE funding has frozen; new rounds are scarce and heavily discounted
- Cost of capital has risen; CAC is up 40% across all digital channels
- Churn has increased by 20-25% across subscription benchmarks
Recalculate how this crisis impacts this specific business.""",
    ),
    "PRICE_WAR": Scenario(
        id="PRICE_WAR",
        label="Competitor Price War",
        crisis_narrative="""SYNTHETIC CRISIS - COMPETITOR PRICE WAR:
A dominant competitor has triggered an aggressive price war:
- The main competitor has cut prices by 50% with runway to sustain losses
- Industry-wide average selling price is compressing 30% per year
- Price-sensitive segments (typically 40-60% of TAM) are defecting
- Sales teams discount to retain accounts, crushing gross margin
- New pipeline has stalled as prospects wait for stability
Recalculate the impact across all 15 strategic dimensions.""",
    ),
    "SCALE_UP": Scenario(
        id="SCALE_UP",
        label="Aggressive Scale-Up",
        crisis_narrative="""SYNTHETIC CRISIS - AGGRESSIVE OPERATIONAL SCALE-UP:
An investor has issued a "triple or die" growth mandate:
- Headcount must grow 3x in 90 days at full-market salaries
- Infrastructure costs scale non-linearly; burn triples before revenue catches up
- Leadership bandwidth is stretched thin across new teams
- Onboarding capacity is overwhelmed; time-to-value degrades by 60%
- Technical and process debt accumulates as shipping speed jumps
Recalculate operational, financial, and execution dimensions under this stress.""",
    ),
    "TALENT": Scenario(
        id="TALENT",
        label="Global Talent Shortage",
        crisis_narrative="""SYNTHETIC CRISIS - GLOBAL TALENT SHORTAGE:
A structural talent shortage in the core skill domain has materialised:
- Hiring cost for senior specialists has doubled (median comp up 80%)
- Time-to-hire has tripled; critical roles sit vacant for 4-6 months
- Competitor poaching is accelerating; key team members have exited
- Remote talent quality is inconsistent; ramp time is 60% longer
- Automation cannot bridge the gap fast enough; R&D velocity drops 35%
Recalculate how this talent crisis degrades each of the 15 dimensions.""",
    ),
}


def get_scenario(scenario_id: str) -> Scenario:
    """Look up a scenario by id (case-insensitive).

    Raises:
        UnknownScenarioError: If the id is not in the catalog
    """
    scenario = SCENARIOS.get((scenario_id or "").strip().upper())
    if scenario is None:
        raise UnknownScenarioError(scenario_id)
    return scenario


def list_scenarios() -> List[Scenario]:
    return list(SCENARIOS.values())
