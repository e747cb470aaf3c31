"""
Synthesis Coordinator Tests.

Covers the self-correction loop and the secondary derivations:
- all-neutral scores trigger exactly one strict retry
- scores are re-parsed from the report and the table is always complete
- org name and moat rationale have deterministic fallbacks
"""
import asyncio

import pytest

from strategy_audit.coordinator import (
    SynthesisCoordinator,
    explain_moat,
    extract_org_name,
    fallback_report,
    strongest_dimension,
)
from strategy_audit.dimensions import DIMENSIONS, NEUTRAL_SCORE, extract_dimensions
from strategy_audit.errors import ProviderError
from strategy_audit.observability import RunSummary
from strategy_audit.specialists import STRICT_JSON_RULE


SYNTHESIS = "Chief Strategy Officer"
MOAT = "Moat Analyst"


def _specialist_calls(provider):
    return [c for c in provider.calls if "_analyst)" in c[0]]


class TestSelfCorrection:

    def test_healthy_round_is_not_retried(self, scripted_provider, make_routes):
        provider = scripted_provider(make_routes(72))
        result = asyncio.run(SynthesisCoordinator(provider).run("ctx"))

        assert not result.retried
        assert len(_specialist_calls(provider)) == 5
        assert set(result.scores.values()) == {72}
        assert result.warnings == []

    def test_degenerate_round_retried_once_in_strict_mode(self, scripted_provider, make_routes, report_table):
        routes = make_routes(72)
        neutral_report = report_table({d: NEUTRAL_SCORE for d in DIMENSIONS})
        healthy_report = routes[SYNTHESIS]
        routes[SYNTHESIS] = [neutral_report, healthy_report]
        for name in ("market_analyst", "innovation_analyst", "commercial_analyst",
                     "operations_analyst", "finance_analyst"):
            healthy = routes[f"({name})"]
            routes[f"({name})"] = (
                lambda system, prompt, healthy=healthy:
                    healthy if STRICT_JSON_RULE in system else "not json at all"
            )
        provider = scripted_provider(routes)
        summary = RunSummary("s1")

        result = asyncio.run(SynthesisCoordinator(provider).run("ctx", summary=summary))

        specialist_calls = _specialist_calls(provider)
        assert len(specialist_calls) == 10
        assert sum(1 for system, _ in specialist_calls if STRICT_JSON_RULE in system) == 5
        assert result.retried
        assert set(result.scores.values()) == {72}
        assert summary.retries == 1
        assert summary.fallbacks_used == 5

    def test_retry_budget_is_one(self, scripted_provider, make_routes):
        routes = make_routes(72)
        for name in ("market_analyst", "innovation_analyst", "commercial_analyst",
                     "operations_analyst", "finance_analyst"):
            routes[f"({name})"] = ProviderError("down")
        routes[SYNTHESIS] = ProviderError("down")
        provider = scripted_provider(routes)

        result = asyncio.run(SynthesisCoordinator(provider).run("ctx"))

        assert len(_specialist_calls(provider)) == 10
        assert result.retried
        assert set(result.scores.values()) == {NEUTRAL_SCORE}
        assert result.warnings


class TestReportScores:

    def test_scores_reparsed_from_report(self, scripted_provider, make_routes, report_table):
        routes = make_routes(72)
        adjusted = {d: 72 for d in DIMENSIONS}
        adjusted["Pricing Power"] = 41
        routes[SYNTHESIS] = report_table(adjusted)
        provider = scripted_provider(routes)

        result = asyncio.run(SynthesisCoordinator(provider).run("ctx"))

        assert result.scores["Pricing Power"] == 41
        assert extract_dimensions(result.report) == result.scores

    def test_missing_rows_get_canonical_table(self, scripted_provider, make_routes):
        routes = make_routes(72)
        routes[SYNTHESIS] = "# Audit\n\nTAM Viability: 90\n\nA great business."
        provider = scripted_provider(routes)

        result = asyncio.run(SynthesisCoordinator(provider).run("ctx"))

        assert result.scores["TAM Viability"] == 90
        assert result.scores["Scalability"] == 72
        assert extract_dimensions(result.report) == result.scores
        assert len(result.scores) == 15

    def test_synthesis_failure_assembles_report(self, scripted_provider, make_routes):
        routes = make_routes(72)
        routes[SYNTHESIS] = ProviderError("down")
        provider = scripted_provider(routes)

        result = asyncio.run(SynthesisCoordinator(provider).run("ctx"))

        assert "## Market Analyst" in result.report
        assert extract_dimensions(result.report) == result.scores

    def test_fallback_report_contains_table(self):
        scores = {d: 60 for d in DIMENSIONS}
        report = fallback_report({}, scores)
        assert extract_dimensions(report) == scores


class TestOrgName:

    @pytest.mark.parametrize("text,expected", [
        ("Acme Foods runs three bakeries", "Acme Foods"),
        ("We are Bluebird Coffee, a roaster", "Bluebird Coffee"),
        ("The Green Basket is a grocery store", "Green Basket"),
        ("grocery store near koramangala", "Your Business"),
        ("", "Your Business"),
    ])
    def test_heuristic(self, text, expected):
        assert extract_org_name(text) == expected


class TestMoatRationale:

    def test_strongest_dimension_tie_uses_catalog_order(self):
        scores = {d: 60 for d in DIMENSIONS}
        scores["Scalability"] = 88
        scores["Pricing Power"] = 88
        assert strongest_dimension(scores) == "Pricing Power"

    def test_strongest_dimension_empty(self):
        assert strongest_dimension({}) is None

    def test_model_rationale_used(self, scripted_provider):
        provider = scripted_provider({MOAT: "Because nobody else has the farms."})
        scores = {d: 60 for d in DIMENSIONS}
        scores["Competitive Defensibility"] = 90

        text = asyncio.run(explain_moat("ctx", scores, provider))

        assert text == "Because nobody else has the farms."
        assert "Competitive Defensibility (90/100)" in provider.calls[0][1]

    @pytest.mark.parametrize("response", [ProviderError("down"), "   "])
    def test_template_fallback(self, scripted_provider, response):
        provider = scripted_provider({MOAT: response})
        scores = {d: 60 for d in DIMENSIONS}
        scores["ESG Posture"] = 77

        text = asyncio.run(explain_moat("ctx", scores, provider))

        assert text == "ESG Posture scored 77/100, the strongest dimension in this audit."

    def test_org_name_prefers_user_words(self, scripted_provider, make_routes):
        provider = scripted_provider(make_routes(72))
        result = asyncio.run(SynthesisCoordinator(provider).run(
            "Summary written by the interrogator",
            business_context="Acme Foods sells bread",
        ))
        assert result.org_name == "Acme Foods"
        assert result.moat_rationale
