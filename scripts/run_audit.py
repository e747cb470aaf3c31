#!/usr/bin/env python3
"""
Audit Runner Script.

Runs one strategy audit end-to-end against the configured reasoning provider:
1. Discovery sweep and interrogation on the business description
2. Clarifying questions answered interactively until the audit unlocks
3. Specialist scoring, synthesis and persistence
4. Optional stress test of the finished audit

Usage:
    python scripts/run_audit.py "Grocery store near Koramangala, competing with ..."
    python scripts/run_audit.py --stress RECESSION --verbose "We sell software"
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from strategy_audit.config import AuditConfig
from strategy_audit.models import EventType, StreamEvent
from strategy_audit.orchestrator import StrategyOrchestrator
from strategy_audit.scenarios import SCENARIOS


# =============================================================================
# Logging Setup
# =============================================================================


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the audit run."""
    level = logging.DEBUG if verbose else logging.WARNING

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )

    # Reduce noise from SDK loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("anthropic").setLevel(logging.WARNING)


# =============================================================================
# Event Printing
# =============================================================================


def print_event(event: StreamEvent) -> None:
    data = event.data
    if event.type == EventType.DISCOVERY_COMPLETE:
        print(f"🔍 Discovery: {data.get('summary')}")
        for gap in data.get("gaps", []):
            print(f"   gap: {gap}")
    elif event.type == EventType.INTERROGATOR_RESPONSE:
        print(f"🧭 Density score {data.get('id_score')} (turn {data.get('turn_count')}, "
              f"covered: {', '.join(data.get('covered_lenses', [])) or 'none'})")
    elif event.type == EventType.AUDIT_UNLOCKED:
        print("🔓 Audit unlocked")
    elif event.type == EventType.ANALYSIS_START:
        print("⚙️  Running specialists...")
    elif event.type == EventType.REPORT_COMPLETE:
        print("━" * 60)
        print(data.get("report", ""))
        print("━" * 60)
        print(f"Report id: {data.get('id')}")
        if data.get("moat_rationale"):
            print(f"Moat: {data['moat_rationale']}")
    elif event.type == EventType.STRESS_TEST_COMPLETE:
        print(f"🌪️  Scenario {data.get('scenario_label')}")
        deltas = data.get("risk_deltas", {})
        for name, delta in sorted(deltas.items(), key=lambda kv: kv[1]):
            print(f"   {name:28s} {data['original_scores'][name]:3d} -> "
                  f"{data['stressed_scores'][name]:3d} ({delta:+d})")
        for card in data.get("mitigation_cards", []):
            print(f"   ⚠️  {card['dimension']}: {card['crisis_play']}")
    elif event.type == EventType.ERROR:
        print(f"❌ {data.get('message')}")


# =============================================================================
# Main
# =============================================================================


async def run(context: str, stress_scenario: Optional[str], stress_mode: bool) -> int:
    orchestrator = StrategyOrchestrator.from_config(AuditConfig.from_env())

    pending_question = None
    session_id = None
    access_id = None

    async for event in orchestrator.analyze(context, stress_test=stress_mode):
        print_event(event)
        if event.type == EventType.NEED_CLARIFICATION:
            pending_question = event.data["question"]
            session_id = event.data["session_id"]
        elif event.type == EventType.REPORT_COMPLETE:
            access_id = event.data["id"]
        elif event.type == EventType.ERROR:
            return 1

    while pending_question:
        answer = input(f"\n❓ {pending_question}\n> ").strip()
        pending_question = None
        async for event in orchestrator.clarify(session_id, answer):
            print_event(event)
            if event.type == EventType.NEED_CLARIFICATION:
                pending_question = event.data["question"]
            elif event.type == EventType.REPORT_COMPLETE:
                access_id = event.data["id"]
            elif event.type == EventType.ERROR:
                return 1

    if stress_scenario and access_id:
        async for event in orchestrator.stress_test(access_id, stress_scenario):
            print_event(event)
            if event.type == EventType.ERROR:
                return 1

    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a strategy audit")
    parser.add_argument("context", help="Free-text business description")
    parser.add_argument(
        "--stress",
        choices=sorted(SCENARIOS),
        help="Stress-test the finished audit with this scenario",
    )
    parser.add_argument(
        "--conservative",
        action="store_true",
        help="Score conservatively (stress-test mode for the audit itself)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    args = parser.parse_args()

    setup_logging(args.verbose)
    return asyncio.run(run(args.context, args.stress, args.conservative))


if __name__ == "__main__":
    sys.exit(main())
