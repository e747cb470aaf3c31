"""
Session and Audit Stores - the only state shared between requests.

SessionStore holds multi-turn interrogation state. Its transactional_update
is a compare-and-set: it refuses to touch a locked session, and otherwise
applies the mutation, bumps turn_count and takes the lock in one step.

AuditMemoryStore holds finished audits. Records are written once and only
read afterwards (report reload, stress tests).

Both come in an in-memory flavour (tests, single process) and a JSON-file
flavour (one document per id, atomic replace on write).
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

from strategy_audit.config import AuditConfig, default_config
from strategy_audit.errors import SessionNotFoundError, StoreError
from strategy_audit.models import AuditRecord, Session, business_fingerprint

logger = logging.getLogger(__name__)

SessionMutator = Callable[[Session], Session]


# =============================================================================
# Session Store
# =============================================================================


class SessionStore(ABC):
    """Persists interrogation sessions with a TTL and a processing lock."""

    def __init__(self, ttl_seconds: int = 60 * 60) -> None:
        self.ttl_seconds = ttl_seconds
        self._lock = asyncio.Lock()

    # Backend primitives ------------------------------------------------------

    @abstractmethod
    async def _read(self, session_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def _write(self, session: Session) -> None:
        ...

    @abstractmethod
    async def _remove(self, session_id: str) -> None:
        ...

    # Public API --------------------------------------------------------------

    async def create(self, session: Session) -> Session:
        """Store a new session, stamping created_at and expires_at.

        Args:
            session: Session to persist (timestamps are overwritten)

        Returns:
            The stored session
        """
        now = datetime.now()
        stored = session.model_copy(update={
            "created_at": now,
            "expires_at": now + timedelta(seconds=self.ttl_seconds),
            "locked": False,
        })
        async with self._lock:
            await self._write(stored)
        return stored

    async def get(self, session_id: str) -> Optional[Session]:
        """Load a session, lazily deleting it if the TTL has passed.

        Returns:
            The session, or None if missing or expired
        """
        async with self._lock:
            return await self._get_live(session_id)

    async def transactional_update(
        self,
        session_id: str,
        mutator: SessionMutator,
    ) -> Optional[Session]:
        """Apply a clarification turn atomically.

        Under the store lock: reject if the session is locked, otherwise
        apply the mutator, increment turn_count and set locked.

        Args:
            session_id: Session to update
            mutator: Returns the updated session (must not shrink enriched_context)

        Returns:
            The new state, or None if the session was already locked

        Raises:
            SessionNotFoundError: If the session is missing or expired
        """
        async with self._lock:
            current = await self._get_live(session_id)
            if current is None:
                raise SessionNotFoundError(session_id)
            if current.locked:
                logger.warning(f"Session {session_id} is locked, rejecting duplicate turn")
                return None

            updated = mutator(current.model_copy(deep=True))
            if not updated.enriched_context.startswith(current.enriched_context):
                raise ValueError("enriched_context is append-only")
            updated = updated.model_copy(update={
                "id": current.id,
                "turn_count": current.turn_count + 1,
                "locked": True,
                "created_at": current.created_at,
                "expires_at": current.expires_at,
            })
            await self._write(updated)
            return updated

    async def release_lock(
        self,
        session_id: str,
        mutator: Optional[SessionMutator] = None,
    ) -> Optional[Session]:
        """Unlock a session, optionally recording the outcome of the turn.

        Tolerates sessions deleted in the meantime.

        Returns:
            The unlocked session, or None if it no longer exists
        """
        async with self._lock:
            current = await self._read(session_id)
            if current is None:
                return None
            updated = mutator(current.model_copy(deep=True)) if mutator else current
            updated = updated.model_copy(update={
                "id": current.id,
                "turn_count": current.turn_count,
                "enriched_context": current.enriched_context,
                "locked": False,
            })
            await self._write(updated)
            return updated

    async def delete(self, session_id: str) -> None:
        """Remove a session (promotion to audit, or explicit cleanup)."""
        async with self._lock:
            await self._remove(session_id)

    async def _get_live(self, session_id: str) -> Optional[Session]:
        session = await self._read(session_id)
        if session is None:
            return None
        if session.is_expired():
            logger.info(f"Session {session_id} expired, deleting")
            await self._remove(session_id)
            return None
        return session


class InMemorySessionStore(SessionStore):
    """Process-local session store."""

    def __init__(self, ttl_seconds: int = 60 * 60) -> None:
        super().__init__(ttl_seconds)
        self._sessions: Dict[str, Session] = {}

    async def _read(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def _write(self, session: Session) -> None:
        self._sessions[session.id] = session.model_copy(deep=True)

    async def _remove(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._sessions)

    def __repr__(self) -> str:
        return f"InMemorySessionStore(sessions={len(self)})"


class FileSessionStore(SessionStore):
    """Session store keeping one JSON document per session."""

    DEFAULT_DIR = ".cache/strategy_audit/sessions"

    def __init__(self, directory: Optional[str] = None, ttl_seconds: int = 60 * 60) -> None:
        super().__init__(ttl_seconds)
        self.directory = Path(directory or self.DEFAULT_DIR)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Cannot create session directory {self.directory}: {e}") from e

    def _path(self, session_id: str) -> Path:
        return self.directory / f"{_safe_name(session_id)}.json"

    async def _read(self, session_id: str) -> Optional[Session]:
        return _read_json_model(self._path(session_id), Session)

    async def _write(self, session: Session) -> None:
        _atomic_write(self._path(session.id), session.model_dump_json(indent=2))

    async def _remove(self, session_id: str) -> None:
        try:
            self._path(session_id).unlink(missing_ok=True)
        except OSError as e:
            raise StoreError(f"Cannot delete session {session_id}: {e}") from e

    def __repr__(self) -> str:
        return f"FileSessionStore(directory={self.directory})"


# =============================================================================
# Audit Memory Store
# =============================================================================


class AuditMemoryStore(ABC):
    """Persists finished audits keyed by report id."""

    @abstractmethod
    async def save(self, record: AuditRecord) -> None:
        """Persist a finished audit.

        Raises:
            StoreError: If the backend is unreachable
        """

    @abstractmethod
    async def load(self, report_id: str) -> Optional[AuditRecord]:
        """Load an audit by id, or None if it does not exist."""

    @abstractmethod
    async def _all(self) -> list[AuditRecord]:
        ...

    async def previous_audit_age_days(
        self,
        business_context: str,
        now: Optional[datetime] = None,
    ) -> Optional[int]:
        """Age in days of the latest audit of the same business, if any.

        Businesses are matched on a fingerprint of their first 80 characters.
        """
        fingerprint = business_fingerprint(business_context)
        matches = [r for r in await self._all() if r.fingerprint == fingerprint]
        if not matches:
            return None
        latest = max(matches, key=lambda r: r.created_at)
        return ((now or datetime.now()) - latest.created_at).days


class InMemoryAuditStore(AuditMemoryStore):
    """Process-local audit store."""

    def __init__(self) -> None:
        self._records: Dict[str, AuditRecord] = {}

    async def save(self, record: AuditRecord) -> None:
        if record.report_id in self._records:
            raise StoreError(f"Audit {record.report_id} already exists")
        self._records[record.report_id] = record.model_copy(deep=True)

    async def load(self, report_id: str) -> Optional[AuditRecord]:
        record = self._records.get(report_id)
        return record.model_copy(deep=True) if record else None

    async def _all(self) -> list[AuditRecord]:
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def __repr__(self) -> str:
        return f"InMemoryAuditStore(records={len(self)})"


class FileAuditStore(AuditMemoryStore):
    """Audit store keeping one JSON document per report."""

    DEFAULT_DIR = ".cache/strategy_audit/reports"

    def __init__(self, directory: Optional[str] = None) -> None:
        self.directory = Path(directory or self.DEFAULT_DIR)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Cannot create report directory {self.directory}: {e}") from e

    def _path(self, report_id: str) -> Path:
        return self.directory / f"{_safe_name(report_id)}.json"

    async def save(self, record: AuditRecord) -> None:
        path = self._path(record.report_id)
        if path.exists():
            raise StoreError(f"Audit {record.report_id} already exists")
        _atomic_write(path, record.model_dump_json(indent=2))

    async def load(self, report_id: str) -> Optional[AuditRecord]:
        return _read_json_model(self._path(report_id), AuditRecord)

    async def _all(self) -> list[AuditRecord]:
        records = []
        for path in sorted(self.directory.glob("*.json")):
            record = _read_json_model(path, AuditRecord)
            if record is not None:
                records.append(record)
        return records

    def __repr__(self) -> str:
        return f"FileAuditStore(directory={self.directory})"


# =============================================================================
# Helpers
# =============================================================================


def _safe_name(identifier: str) -> str:
    return "".join(ch for ch in identifier if ch.isalnum() or ch in "-_") or "_"


def _atomic_write(path: Path, payload: str) -> None:
    tmp = path.with_suffix(".json.tmp")
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(payload)
        os.replace(tmp, path)
    except OSError as e:
        raise StoreError(f"Cannot write {path}: {e}") from e


def _read_json_model(path: Path, model):
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return model.model_validate(json.load(f))
    except OSError as e:
        raise StoreError(f"Cannot read {path}: {e}") from e
    except ValueError as e:
        logger.error(f"Corrupt store document {path}: {e}")
        return None


def build_stores(config: AuditConfig = default_config) -> Tuple[SessionStore, AuditMemoryStore]:
    """Create the configured session and audit stores."""
    if config.store_backend == "file":
        base = Path(config.store_dir)
        return (
            FileSessionStore(str(base / "sessions"), ttl_seconds=config.session_ttl_seconds),
            FileAuditStore(str(base / "reports")),
        )
    if config.store_backend == "memory":
        return InMemorySessionStore(ttl_seconds=config.session_ttl_seconds), InMemoryAuditStore()
    raise ValueError(f"Unknown store backend: {config.store_backend}")
