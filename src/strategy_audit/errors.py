"""
Exception hierarchy for the audit engine.

Only AuditNotFoundError is fatal to a streamed request. Provider and store
failures are caught at their call sites and degraded to defaults; session
errors are raised before streaming starts so the HTTP layer can map them to
status codes.
"""
from __future__ import annotations


class StrategyAuditError(Exception):
    """Base class for all audit engine errors."""


class ProviderError(StrategyAuditError):
    """A reasoning-provider call failed."""


class ProviderTimeoutError(ProviderError):
    """A reasoning-provider call exceeded the configured timeout."""


class StoreError(StrategyAuditError):
    """The session or audit store could not be reached."""


class SessionNotFoundError(StrategyAuditError):
    """The session does not exist or has expired."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} expired or not found. Please start a new audit.")
        self.session_id = session_id


class SessionBusyError(StrategyAuditError):
    """A clarification turn is already in flight for this session."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} is already processing a clarification.")
        self.session_id = session_id


class AuditNotFoundError(StrategyAuditError):
    """The referenced audit record does not exist."""

    def __init__(self, report_id: str) -> None:
        super().__init__(f"Audit report {report_id} not found.")
        self.report_id = report_id


class UnknownScenarioError(StrategyAuditError):
    """The requested stress-test scenario is not in the catalog."""

    def __init__(self, scenario_id: str) -> None:
        super().__init__(f"Unknown stress-test scenario: {scenario_id}")
        self.scenario_id = scenario_id


class InvalidAccessTokenError(StrategyAuditError):
    """The possession token appended to a report id does not match."""
