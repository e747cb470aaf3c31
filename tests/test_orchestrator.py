"""
Orchestrator Flow Tests.

End-to-end event streams with a scripted provider:
- audit-ready input goes straight to a report
- thin input asks, and clarification turns promote within the turn budget
- concurrent clarifications on one session: exactly one proceeds
- store failures degrade instead of failing the request
- report access ids are possession tokens
"""
import asyncio

import pytest

from strategy_audit.errors import (
    AuditNotFoundError,
    InvalidAccessTokenError,
    ProviderError,
    SessionBusyError,
    SessionNotFoundError,
    StoreError,
)
from strategy_audit.models import EventType
from strategy_audit.orchestrator import (
    STRESS_TEST_DIRECTIVE,
    StrategyOrchestrator,
    make_access_token,
    split_access_id,
)
from strategy_audit.store import InMemoryAuditStore, InMemorySessionStore


THIN_CONTEXT = "We sell software"
SIGNAL_ANSWER = "Students near the campus, competing with Zoho, exclusive licence from the university"


def _orchestrator(provider, config, **kwargs):
    return StrategyOrchestrator(provider=provider, config=config, **kwargs)


def _collect(stream):
    async def drain():
        return [event async for event in stream]
    return asyncio.run(drain())


def _types(events):
    return [e.type for e in events]


def _last(events, event_type):
    return [e for e in events if e.type == event_type][-1]


class FailingAuditStore(InMemoryAuditStore):
    async def save(self, record):
        raise StoreError("audit backend unreachable")


class FailingSessionStore(InMemorySessionStore):
    async def _write(self, session):
        raise StoreError("session backend unreachable")


# =============================================================================
# Construction
# =============================================================================


class TestConstruction:

    def test_empty_stores_are_kept(self, scripted_provider, routes, config):
        session_store = InMemorySessionStore()
        audit_store = InMemoryAuditStore()
        orc = _orchestrator(
            scripted_provider(routes), config,
            session_store=session_store,
            audit_store=audit_store,
        )

        assert orc.session_store is session_store
        assert orc.audit_store is audit_store
        assert orc.stress_engine.audit_store is audit_store

    def test_default_stores(self, scripted_provider, routes, config):
        orc = _orchestrator(scripted_provider(routes), config)
        assert isinstance(orc.session_store, InMemorySessionStore)
        assert isinstance(orc.audit_store, InMemoryAuditStore)


# =============================================================================
# Analyze
# =============================================================================


class TestAnalyzeReadyInput:

    def test_full_flow_event_order(self, scripted_provider, routes, config, audit_ready_context):
        provider = scripted_provider(routes)
        events = _collect(_orchestrator(provider, config).analyze(audit_ready_context))

        assert _types(events) == [
            EventType.SESSION_INIT,
            EventType.DISCOVERY_START,
            EventType.DISCOVERY_COMPLETE,
            EventType.INTERROGATOR_RESPONSE,
            EventType.AUDIT_UNLOCKED,
            EventType.ANALYSIS_START,
            EventType.REPORT_COMPLETE,
        ]

    def test_report_payload(self, scripted_provider, routes, config, audit_ready_context):
        provider = scripted_provider(routes)
        events = _collect(_orchestrator(provider, config).analyze(audit_ready_context))

        interrogation = _last(events, EventType.INTERROGATOR_RESPONSE).data
        assert interrogation["id_score"] == 100
        assert interrogation["is_auditable"]

        report = _last(events, EventType.REPORT_COMPLETE).data
        assert len(report["dimensions"]) == 15
        assert set(report["dimensions"].values()) == {72}
        assert report["id"] == f"{report['report_id']}-{make_access_token(report['report_id'], 'test-secret')}"
        assert report["moat_rationale"].startswith("Exclusive farmer contracts")
        assert report["retried"] is False

    def test_no_interrogator_call_for_ready_input(self, scripted_provider, routes, config, audit_ready_context):
        provider = scripted_provider(routes)
        _collect(_orchestrator(provider, config).analyze(audit_ready_context))
        assert provider.calls_to("Strategic Interrogator") == []

    def test_specialists_see_grounding(self, scripted_provider, routes, config, audit_ready_context):
        provider = scripted_provider(routes)
        _collect(_orchestrator(provider, config).analyze(audit_ready_context))

        prompts = [p for s, p in provider.calls if "(market_analyst)" in s]
        assert "--- DISCOVERY INTELLIGENCE ---" in prompts[0]
        assert "loyal student footfall" in prompts[0]
        assert STRESS_TEST_DIRECTIVE not in prompts[0]

    def test_stress_test_mode_adds_directive(self, scripted_provider, routes, config, audit_ready_context):
        provider = scripted_provider(routes)
        orc = _orchestrator(provider, config)
        events = _collect(orc.analyze(audit_ready_context, stress_test=True))

        prompts = [p for s, p in provider.calls if "(finance_analyst)" in s]
        assert STRESS_TEST_DIRECTIVE in prompts[0]
        report_id = _last(events, EventType.REPORT_COMPLETE).data["report_id"]
        assert asyncio.run(orc.audit_store.load(report_id)).stress_test

    def test_audit_persisted(self, scripted_provider, routes, config, audit_ready_context):
        provider = scripted_provider(routes)
        orc = _orchestrator(provider, config)
        events = _collect(orc.analyze(audit_ready_context))

        access_id = _last(events, EventType.REPORT_COMPLETE).data["id"]
        record = asyncio.run(orc.load_report(access_id))
        assert record.business_context == audit_ready_context
        assert record.grounded_context == "Neighbourhood grocery with loyal student footfall."
        assert set(record.specialist_outputs) == {
            "market_analyst", "innovation_analyst", "commercial_analyst",
            "operations_analyst", "finance_analyst",
        }

    def test_previous_audit_age_reported(self, scripted_provider, routes, config, audit_ready_context):
        orc = _orchestrator(scripted_provider(routes), config)

        first = _collect(orc.analyze(audit_ready_context))
        second = _collect(orc.analyze(audit_ready_context))

        assert first[0].data["previous_audit_age_days"] is None
        assert second[0].data["previous_audit_age_days"] == 0


class TestAnalyzeThinInput:

    def test_asks_one_question(self, scripted_provider, routes, config):
        provider = scripted_provider(routes)
        orc = _orchestrator(provider, config)
        events = _collect(orc.analyze(THIN_CONTEXT))

        assert _types(events)[-1] == EventType.NEED_CLARIFICATION
        assert EventType.REPORT_COMPLETE not in _types(events)
        clarification = events[-1].data
        assert clarification["question"] == "Who are your customers and where are they?"
        assert clarification["turn_count"] == 1
        assert clarification["session_id"] == events[0].data["session_id"]
        assert provider.calls_to("(market_analyst)") == []

    def test_session_created(self, scripted_provider, routes, config):
        orc = _orchestrator(scripted_provider(routes), config)
        events = _collect(orc.analyze(THIN_CONTEXT))

        session = asyncio.run(orc.session_store.get(events[-1].data["session_id"]))
        assert session.turn_count == 1
        assert session.enriched_context == THIN_CONTEXT
        assert session.asked_questions == ["Who are your customers and where are they?"]
        assert not session.locked

    def test_session_store_failure_still_asks(self, scripted_provider, routes, config):
        store = FailingSessionStore()
        orc = _orchestrator(scripted_provider(routes), config, session_store=store)
        events = _collect(orc.analyze(THIN_CONTEXT))

        assert orc.session_store is store
        assert events[-1].type == EventType.NEED_CLARIFICATION
        assert asyncio.run(store.get(events[-1].data["session_id"])) is None

    def test_discovery_failure_still_proceeds(self, scripted_provider, routes, config):
        routes["Discovery Intelligence Agent"] = "nothing useful"
        orc = _orchestrator(scripted_provider(routes), config)
        events = _collect(orc.analyze(THIN_CONTEXT))

        discovery = _last(events, EventType.DISCOVERY_COMPLETE).data
        assert discovery["is_complete"] is False
        assert len(discovery["gaps"]) == 2
        assert events[-1].type == EventType.NEED_CLARIFICATION


# =============================================================================
# Clarify
# =============================================================================


class TestClarify:

    def _start(self, orc):
        events = _collect(orc.analyze(THIN_CONTEXT))
        return events[-1].data["session_id"]

    def test_second_turn_asks_new_lens(self, scripted_provider, routes, config):
        provider = scripted_provider(routes)
        orc = _orchestrator(provider, config)
        session_id = self._start(orc)

        events = _collect(orc.clarify(session_id, "Mostly accountants"))

        assert _types(events) == [EventType.INTERROGATOR_RESPONSE, EventType.NEED_CLARIFICATION]
        response = events[0].data
        assert response["turn_count"] == 2
        assert response["lens_used"] == "competitor_moat"
        question = events[-1].data["question"]
        assert question != "Who are your customers and where are they?"

        session = asyncio.run(orc.session_store.get(session_id))
        assert not session.locked
        assert session.turn_count == 2
        assert session.enriched_context == f"{THIN_CONTEXT}\n\nMostly accountants"
        assert session.asked_questions[-1] == question

    def test_third_turn_forces_audit(self, scripted_provider, routes, config):
        orc = _orchestrator(scripted_provider(routes), config)
        session_id = self._start(orc)

        _collect(orc.clarify(session_id, "Mostly accountants"))
        events = _collect(orc.clarify(session_id, "Nobody else does it"))

        assert _types(events)[-1] == EventType.REPORT_COMPLETE
        assert _last(events, EventType.INTERROGATOR_RESPONSE).data["forced_reason"] == "turn_budget"
        assert asyncio.run(orc.session_store.get(session_id)) is None

    def test_answer_with_signals_promotes(self, scripted_provider, routes, config):
        orc = _orchestrator(scripted_provider(routes), config)
        session_id = self._start(orc)

        events = _collect(orc.clarify(session_id, SIGNAL_ANSWER))

        assert _last(events, EventType.AUDIT_UNLOCKED).data["id_score"] == 100
        report = _last(events, EventType.REPORT_COMPLETE).data
        record = asyncio.run(orc.load_report(report["id"]))
        assert record.business_context.startswith(THIN_CONTEXT)
        assert "competing with Zoho" in record.business_context

    def test_unknown_session(self, scripted_provider, routes, config):
        orc = _orchestrator(scripted_provider(routes), config)
        with pytest.raises(SessionNotFoundError):
            _collect(orc.clarify("missing", "hello"))

    def test_concurrent_clarify_exactly_one_proceeds(self, scripted_provider, routes, config):
        provider = scripted_provider(routes)
        orc = _orchestrator(provider, config)

        async def scenario():
            first = [e async for e in orc.analyze(THIN_CONTEXT)]
            session_id = first[-1].data["session_id"]
            provider.delay = 0.05

            async def attempt(answer):
                try:
                    return [e async for e in orc.clarify(session_id, answer)]
                except SessionBusyError as e:
                    return e

            return await asyncio.gather(attempt("answer one"), attempt("answer two"))

        results = asyncio.run(scenario())

        busy = [r for r in results if isinstance(r, SessionBusyError)]
        streams = [r for r in results if not isinstance(r, SessionBusyError)]
        assert len(busy) == 1
        assert len(streams) == 1
        assert streams[0][-1].type == EventType.NEED_CLARIFICATION

    def test_lock_released_after_failure(self, scripted_provider, routes, config):
        provider = scripted_provider(routes)
        orc = _orchestrator(provider, config)
        session_id = self._start(orc)

        async def explode(context, **kwargs):
            raise RuntimeError("interrogator crashed")

        original = orc.interrogator.evaluate
        orc.interrogator.evaluate = explode
        events = _collect(orc.clarify(session_id, "answer"))
        orc.interrogator.evaluate = original

        assert events[-1].type == EventType.ERROR
        assert "interrogator crashed" in events[-1].data["message"]
        session = asyncio.run(orc.session_store.get(session_id))
        assert not session.locked

        retry = _collect(orc.clarify(session_id, "second try"))
        assert retry[-1].type in (EventType.NEED_CLARIFICATION, EventType.REPORT_COMPLETE)


    def test_lock_released_when_stream_closed_early(self, scripted_provider, routes, config):
        orc = _orchestrator(scripted_provider(routes), config)
        session_id = self._start(orc)

        async def read_two_then_close():
            stream = orc.clarify(session_id, SIGNAL_ANSWER)
            seen = [await stream.__anext__(), await stream.__anext__()]
            await stream.aclose()
            return seen

        seen = asyncio.run(read_two_then_close())

        assert _types(seen) == [EventType.INTERROGATOR_RESPONSE, EventType.AUDIT_UNLOCKED]
        session = asyncio.run(orc.session_store.get(session_id))
        assert not session.locked
        assert session.turn_count == 2

        retry = _collect(orc.clarify(session_id, "second try"))
        assert retry[-1].type == EventType.REPORT_COMPLETE

    def test_lock_released_when_continuation_closed_before_question(self, scripted_provider, routes, config):
        orc = _orchestrator(scripted_provider(routes), config)
        session_id = self._start(orc)

        async def close_after_first_event():
            session = await orc.begin_clarification(session_id, "Mostly accountants")
            stream = orc.continue_clarification(session)
            first = await stream.__anext__()
            await stream.aclose()
            return first

        first = asyncio.run(close_after_first_event())

        assert first.type == EventType.INTERROGATOR_RESPONSE
        assert not asyncio.run(orc.session_store.get(session_id)).locked


# =============================================================================
# Degradation
# =============================================================================


class TestDegradation:

    def test_audit_store_failure_uses_local_id(self, scripted_provider, routes, config, audit_ready_context):
        orc = _orchestrator(scripted_provider(routes), config, audit_store=FailingAuditStore())
        events = _collect(orc.analyze(audit_ready_context))

        report = _last(events, EventType.REPORT_COMPLETE).data
        assert report["report_id"].startswith("local-")
        assert report["id"].startswith("local-")
        assert len(report["dimensions"]) == 15

    def test_all_specialists_down_still_reports(self, scripted_provider, routes, config, audit_ready_context):
        for name in ("market_analyst", "innovation_analyst", "commercial_analyst",
                     "operations_analyst", "finance_analyst"):
            routes[f"({name})"] = ProviderError("down")
        routes["Chief Strategy Officer"] = ProviderError("down")
        events = _collect(_orchestrator(scripted_provider(routes), config).analyze(audit_ready_context))

        report = _last(events, EventType.REPORT_COMPLETE).data
        assert report["retried"] is True
        assert report["warnings"]
        assert set(report["dimensions"].values()) == {50}

    def test_unexpected_failure_ends_with_error(self, scripted_provider, routes, config, audit_ready_context):
        routes["Discovery Intelligence Agent"] = RuntimeError("kaboom")
        events = _collect(_orchestrator(scripted_provider(routes), config).analyze(audit_ready_context))

        assert events[0].type == EventType.SESSION_INIT
        assert events[-1].type == EventType.ERROR
        assert events[-1].data["message"] == "kaboom"


# =============================================================================
# Stress Tests and Reloads
# =============================================================================


class TestStressAndReload:

    def _audit(self, orc, context):
        events = _collect(orc.analyze(context))
        return _last(events, EventType.REPORT_COMPLETE).data["id"]

    def test_stress_test_stream(self, scripted_provider, routes, config, audit_ready_context):
        routes["Crisis Stress-Test Analyst"] = '{"stressed_scores": {"CAC/LTV Ratio": 30}}'
        orc = _orchestrator(scripted_provider(routes), config)
        access_id = self._audit(orc, audit_ready_context)

        events = _collect(orc.stress_test(access_id, "RECESSION"))

        assert _types(events) == [EventType.STRESS_TEST_START, EventType.STRESS_TEST_COMPLETE]
        result = events[-1].data
        assert result["risk_deltas"]["CAC/LTV Ratio"] == -42
        assert [c["dimension"] for c in result["mitigation_cards"]] == ["CAC/LTV Ratio"]

    def test_stress_test_does_not_rerun_discovery(self, scripted_provider, routes, config, audit_ready_context):
        provider = scripted_provider(routes)
        orc = _orchestrator(provider, config)
        access_id = self._audit(orc, audit_ready_context)
        before = len(provider.calls_to("Discovery Intelligence Agent"))

        _collect(orc.stress_test(access_id, "TALENT"))

        assert len(provider.calls_to("Discovery Intelligence Agent")) == before

    def test_stress_test_unknown_report(self, scripted_provider, routes, config):
        orc = _orchestrator(scripted_provider(routes), config)
        report_id = "deadbeef"
        access_id = f"{report_id}-{orc.access_token_for(report_id)}"

        events = _collect(orc.stress_test(access_id, "RECESSION"))

        assert events[-1].type == EventType.ERROR

    def test_wrong_token_rejected(self, scripted_provider, routes, config, audit_ready_context):
        orc = _orchestrator(scripted_provider(routes), config)
        access_id = self._audit(orc, audit_ready_context)
        report_id = access_id.rpartition("-")[0]

        with pytest.raises(AuditNotFoundError):
            asyncio.run(orc.load_report(f"{report_id}-00000000"))
        with pytest.raises(AuditNotFoundError):
            asyncio.run(orc.load_report(report_id))


class TestAccessTokens:

    def test_token_is_deterministic(self):
        assert make_access_token("abc", "s") == make_access_token("abc", "s")
        assert make_access_token("abc", "s") != make_access_token("abc", "other")
        assert len(make_access_token("abc", "s", length=12)) == 12

    def test_split_round_trip(self):
        token = make_access_token("local-abc", "s")
        assert split_access_id(f"local-abc-{token}", "s") == "local-abc"

    @pytest.mark.parametrize("access_id", ["", "noseparator", "abc-", "-token", "abc-wrongtok"])
    def test_split_rejects(self, access_id):
        with pytest.raises(InvalidAccessTokenError):
            split_access_id(access_id, "s")
