"""
Strategy Orchestrator - User-facing API for the audit pipeline.

Wraps every component behind three streamed operations:

    analyze:  text -> Discovery -> Interrogation -> (question | Specialists -> Synthesis -> Audit store)
    clarify:  session + answer -> Interrogation -> (question | Specialists -> Synthesis -> Audit store)
    stress:   report id + scenario -> Stress-Test Engine -> transient result

Each operation is an async generator of StreamEvents, emitted in phase order
by a single producer. Session errors for clarify are raised by
begin_clarification before any event is produced.

Example usage:
    from strategy_audit.orchestrator import StrategyOrchestrator

    orc = StrategyOrchestrator.from_config()
    async for event in orc.analyze("Grocery store near Koramangala, ..."):
        print(event.to_dict())
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import uuid
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, Optional

from strategy_audit.config import AuditConfig, default_config
from strategy_audit.coordinator import SynthesisCoordinator
from strategy_audit.discovery import run_discovery
from strategy_audit.errors import (
    AuditNotFoundError,
    InvalidAccessTokenError,
    SessionBusyError,
    StoreError,
)
from strategy_audit.interrogator import Interrogator
from strategy_audit.models import (
    AuditRecord,
    EventType,
    InterrogatorResult,
    Session,
    StreamEvent,
)
from strategy_audit.observability import RunSummary, timed_phase
from strategy_audit.provider import ReasoningProvider, build_provider
from strategy_audit.store import (
    AuditMemoryStore,
    InMemoryAuditStore,
    InMemorySessionStore,
    SessionStore,
    build_stores,
)
from strategy_audit.stress import StressTestEngine

logger = logging.getLogger(__name__)


STRESS_TEST_DIRECTIVE = (
    "CRITICAL DIRECTIVE: STRESS TEST mode enabled. Lower ROI projections by 30%, "
    "assume a 10% market dip, and score all dimensions conservatively."
)


# =============================================================================
# Report Access Tokens
# =============================================================================


def make_access_token(report_id: str, secret: str, length: int = 8) -> str:
    """Short possession token for a report id."""
    digest = hashlib.sha256(f"{secret}:{report_id}".encode("utf-8")).hexdigest()
    return digest[:length]


def split_access_id(access_id: str, secret: str, length: int = 8) -> str:
    """
    Verify "<report_id>-<token>" and return the report id.

    Raises:
        InvalidAccessTokenError: If the token is missing or does not match
    """
    report_id, sep, token = (access_id or "").rpartition("-")
    if not sep or not report_id or not token:
        raise InvalidAccessTokenError("Report access id must be <report_id>-<token>")
    expected = make_access_token(report_id, secret, length)
    if not hmac.compare_digest(expected, token):
        raise InvalidAccessTokenError("Report access token does not match")
    return report_id


# =============================================================================
# Orchestrator
# =============================================================================


class StrategyOrchestrator:
    """
    Simple interface to the audit pipeline.

    Sessions and audits live only in the stores; the orchestrator itself
    holds no per-request state.
    """

    def __init__(
        self,
        provider: ReasoningProvider,
        session_store: Optional[SessionStore] = None,
        audit_store: Optional[AuditMemoryStore] = None,
        config: AuditConfig = default_config,
        fast_provider: Optional[ReasoningProvider] = None,
    ) -> None:
        self.config = config
        self.provider = provider
        self.fast_provider = fast_provider or provider
        if session_store is None:
            session_store = InMemorySessionStore(ttl_seconds=config.session_ttl_seconds)
        if audit_store is None:
            audit_store = InMemoryAuditStore()
        self.session_store = session_store
        self.audit_store = audit_store
        self.interrogator = Interrogator(self.fast_provider, config)
        self.coordinator = SynthesisCoordinator(provider)
        self.stress_engine = StressTestEngine(provider, self.audit_store, config.mitigation_threshold)

    @classmethod
    def from_config(cls, config: AuditConfig = default_config) -> "StrategyOrchestrator":
        """Build providers and stores from configuration."""
        session_store, audit_store = build_stores(config)
        return cls(
            provider=build_provider(config),
            session_store=session_store,
            audit_store=audit_store,
            config=config,
            fast_provider=build_provider(config, fast=True),
        )

    # -------------------------------------------------------------------------
    # New audits
    # -------------------------------------------------------------------------

    async def analyze(
        self,
        business_context: str,
        stress_test: bool = False,
    ) -> AsyncIterator[StreamEvent]:
        """
        Start an audit from a free-text business description.

        Yields:
            SESSION_INIT, DISCOVERY_START, DISCOVERY_COMPLETE, INTERROGATOR_RESPONSE,
            then either NEED_CLARIFICATION or the analysis events ending in
            REPORT_COMPLETE. Any failure ends the stream with ERROR.
        """
        business_context = business_context.strip()
        session_id = uuid.uuid4().hex
        summary = RunSummary(session_id)

        yield _event(
            EventType.SESSION_INIT,
            session_id=session_id,
            previous_audit_age_days=await self._previous_audit_age(business_context),
        )

        try:
            yield _event(EventType.DISCOVERY_START)
            async with timed_phase("discovery", session_id=session_id) as timer:
                discovery = await run_discovery(business_context, self.fast_provider)
                timer["gaps"] = len(discovery.gaps)
            yield _event(
                EventType.DISCOVERY_COMPLETE,
                summary=discovery.summary,
                gaps=discovery.gaps,
                is_complete=discovery.is_complete,
            )

            async with timed_phase("interrogation", session_id=session_id, turn=1):
                result = await self.interrogator.evaluate(business_context, turn_count=1)
            yield _event(EventType.INTERROGATOR_RESPONSE, **_interrogation_payload(result, 1))

            if not result.is_auditable:
                session = Session(
                    id=session_id,
                    original_context=business_context,
                    enriched_context=business_context,
                    discovery_findings=discovery.findings,
                    gaps=discovery.gaps,
                    turn_count=1,
                    used_lenses=result.covered_lenses,
                    asked_questions=[result.question],
                    stress_test=stress_test,
                )
                try:
                    await self.session_store.create(session)
                except StoreError as e:
                    logger.warning(f"Session {session_id} not persisted, continuing ephemerally: {e}")
                    summary.record_error(str(e))

                yield _event(
                    EventType.NEED_CLARIFICATION,
                    session_id=session_id,
                    question=result.question,
                    category=result.category,
                    summary=discovery.summary,
                    findings=discovery.findings,
                    gaps=discovery.gaps,
                    turn_count=1,
                )
                summary.log_summary()
                return

            async for event in self._run_analysis(
                session_id=session_id,
                business_context=business_context,
                strategy_context=result.strategy_context,
                grounded_context=discovery.findings,
                id_score=result.id_score,
                stress_test=stress_test,
                summary=summary,
            ):
                yield event

        except Exception as e:
            logger.exception(f"Analyze failed for session {session_id}")
            summary.record_error(str(e))
            summary.log_summary()
            yield _event(EventType.ERROR, message=str(e))

    # -------------------------------------------------------------------------
    # Clarification turns
    # -------------------------------------------------------------------------

    async def begin_clarification(self, session_id: str, answer: str) -> Session:
        """
        Lock the session and record the answer as a new turn.

        Raises:
            SessionNotFoundError: If the session is missing or expired
            SessionBusyError: If another turn is in flight
        """
        answer = answer.strip()

        def append_answer(session: Session) -> Session:
            session.enriched_context = f"{session.enriched_context}\n\n{answer}"
            return session

        updated = await self.session_store.transactional_update(session_id, append_answer)
        if updated is None:
            raise SessionBusyError(session_id)
        logger.info(f"Session {session_id} locked for turn {updated.turn_count}")
        return updated

    async def continue_clarification(self, session: Session) -> AsyncIterator[StreamEvent]:
        """
        Evaluate a locked session's new turn and either ask again or run the audit.

        The lock is always released, or the session deleted on promotion,
        including when the consumer closes the stream early.
        """
        summary = RunSummary(session.id)
        settled = False
        try:
            async with timed_phase("interrogation", session_id=session.id, turn=session.turn_count):
                result = await self.interrogator.evaluate(
                    session.enriched_context,
                    turn_count=session.turn_count,
                    used_lenses=session.used_lenses,
                    asked_questions=session.asked_questions,
                )
            yield _event(
                EventType.INTERROGATOR_RESPONSE,
                **_interrogation_payload(result, session.turn_count),
            )

            if not result.is_auditable:
                def record_question(s: Session) -> Session:
                    s.asked_questions = [*s.asked_questions, result.question]
                    s.used_lenses = list(dict.fromkeys([*s.used_lenses, *result.covered_lenses]))
                    return s

                await self.session_store.release_lock(session.id, record_question)
                settled = True
                yield _event(
                    EventType.NEED_CLARIFICATION,
                    session_id=session.id,
                    question=result.question,
                    category=result.category,
                    findings=session.discovery_findings,
                    gaps=session.gaps,
                    turn_count=session.turn_count,
                )
                summary.log_summary()
                return

            async for event in self._run_analysis(
                session_id=session.id,
                business_context=session.enriched_context,
                strategy_context=result.strategy_context,
                grounded_context=session.discovery_findings,
                id_score=result.id_score,
                stress_test=session.stress_test,
                summary=summary,
            ):
                yield event

            try:
                await self.session_store.delete(session.id)
            except StoreError as e:
                logger.warning(f"Could not delete promoted session {session.id}: {e}")
            settled = True

        except Exception as e:
            logger.exception(f"Clarification failed for session {session.id}")
            summary.record_error(str(e))
            summary.log_summary()
            await self._release_quietly(session.id)
            settled = True
            yield _event(EventType.ERROR, message=str(e))

        finally:
            if not settled:
                logger.warning(f"Clarification stream for session {session.id} ended early, releasing lock")
                await asyncio.shield(self._release_quietly(session.id))

    async def clarify(self, session_id: str, answer: str) -> AsyncIterator[StreamEvent]:
        """begin_clarification + continue_clarification in one stream.

        Session errors surface on the first iteration.
        """
        session = await self.begin_clarification(session_id, answer)
        async with aclosing(self.continue_clarification(session)) as events:
            async for event in events:
                yield event

    # -------------------------------------------------------------------------
    # Stress tests and reloads
    # -------------------------------------------------------------------------

    async def stress_test(self, access_id: str, scenario_id: str) -> AsyncIterator[StreamEvent]:
        """
        Recompute a stored audit under a crisis scenario.

        A missing report is fatal for the request and ends the stream with ERROR.
        """
        yield _event(EventType.STRESS_TEST_START, report_id=access_id, scenario_id=scenario_id)
        try:
            report_id = self.resolve_access_id(access_id)
            async with timed_phase("stress_test", report_id=report_id, scenario=scenario_id):
                result = await self.stress_engine.run(report_id, scenario_id)
            yield _event(EventType.STRESS_TEST_COMPLETE, **result.model_dump())
        except Exception as e:
            logger.error(f"Stress test failed for {access_id}: {e}")
            yield _event(EventType.ERROR, message=str(e))

    async def load_report(self, access_id: str) -> AuditRecord:
        """
        Load a finished audit by its access id.

        Raises:
            AuditNotFoundError: If the token is wrong or the report does not exist
        """
        report_id = self.resolve_access_id(access_id)
        try:
            record = await self.audit_store.load(report_id)
        except StoreError as e:
            logger.warning(f"Audit store unavailable loading {report_id}: {e}")
            record = None
        if record is None:
            raise AuditNotFoundError(access_id)
        return record

    def resolve_access_id(self, access_id: str) -> str:
        try:
            return split_access_id(
                access_id,
                self.config.report_token_secret,
                self.config.report_token_length,
            )
        except InvalidAccessTokenError as e:
            raise AuditNotFoundError(access_id) from e

    def access_token_for(self, report_id: str) -> str:
        return make_access_token(
            report_id,
            self.config.report_token_secret,
            self.config.report_token_length,
        )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _run_analysis(
        self,
        session_id: str,
        business_context: str,
        strategy_context: str,
        grounded_context: str,
        id_score: int,
        stress_test: bool,
        summary: RunSummary,
    ) -> AsyncIterator[StreamEvent]:
        yield _event(EventType.AUDIT_UNLOCKED, session_id=session_id, id_score=id_score)
        yield _event(EventType.ANALYSIS_START, phase="synthesizing")

        context = strategy_context
        if grounded_context:
            context = f"{context}\n\n--- DISCOVERY INTELLIGENCE ---\n{grounded_context}"
        if stress_test:
            context = f"{context}\n\n{STRESS_TEST_DIRECTIVE}"

        async with timed_phase("analysis", session_id=session_id) as timer:
            analysis = await self.coordinator.run(context, business_context=business_context, summary=summary)
            timer["retried"] = analysis.retried

        report_id = uuid.uuid4().hex
        record = AuditRecord(
            report_id=report_id,
            business_context=business_context,
            grounded_context=grounded_context,
            dimension_scores=analysis.scores,
            specialist_outputs=analysis.outputs,
            report=analysis.report,
            stress_test=stress_test,
            org_name=analysis.org_name,
            moat_rationale=analysis.moat_rationale,
            access_token=self.access_token_for(report_id),
        )
        try:
            await self.audit_store.save(record)
        except StoreError as e:
            local_id = f"local-{uuid.uuid4().hex}"
            logger.warning(f"Audit store write skipped, using ephemeral id {local_id}: {e}")
            summary.record_error(str(e))
            record = record.model_copy(update={
                "report_id": local_id,
                "access_token": self.access_token_for(local_id),
            })

        summary.log_summary()
        yield _event(
            EventType.REPORT_COMPLETE,
            id=record.access_id,
            report_id=record.report_id,
            report=record.report,
            dimensions=record.dimension_scores,
            org_name=record.org_name,
            moat_rationale=record.moat_rationale,
            retried=analysis.retried,
            warnings=analysis.warnings,
        )

    async def _previous_audit_age(self, business_context: str) -> Optional[int]:
        try:
            return await self.audit_store.previous_audit_age_days(business_context)
        except StoreError as e:
            logger.warning(f"Previous-audit lookup failed: {e}")
            return None

    async def _release_quietly(self, session_id: str) -> None:
        try:
            await self.session_store.release_lock(session_id)
        except StoreError as e:
            logger.error(f"Could not release lock on session {session_id}: {e}")

    def __repr__(self) -> str:
        return f"StrategyOrchestrator(sessions={self.session_store!r}, audits={self.audit_store!r})"


# =============================================================================
# Helpers
# =============================================================================


def _event(event_type: EventType, **data: Any) -> StreamEvent:
    return StreamEvent(type=event_type, data=data)


def _interrogation_payload(result: InterrogatorResult, turn_count: int) -> Dict[str, Any]:
    return {
        "category": result.category,
        "id_score": result.id_score,
        "id_breakdown": result.id_breakdown.model_dump(),
        "is_auditable": result.is_auditable,
        "lens_used": result.lens_used.value if result.lens_used else None,
        "covered_lenses": [lens.value for lens in result.covered_lenses],
        "forced_reason": result.forced_reason,
        "turn_count": turn_count,
    }