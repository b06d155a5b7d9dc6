from __future__ import annotations

import hashlib
import json
import os
import tempfile
import threading
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

from pydantic import ValidationError

from ..core import metrics
from ..core.config import SessionSettings
from ..core.exceptions import (
    PersistenceError,
    SessionClosedError,
    SessionLimitExceededError,
    SessionNotFoundError,
)
from ..core.logging import get_logger
from ..schemas.sessions import ConversationSession, Turn, TurnRole, utcnow

__all__ = ["SessionManager", "task_hash"]

logger = get_logger(name=__name__)

ACTIVE_DIR = "active"
COMPLETED_DIR = "completed"


def task_hash(agent_type: str, task: str) -> str:
    """Stable key for refinement counting of one (agent type, task) pair."""
    digest = hashlib.md5(f"{agent_type}|{task}".encode("utf-8"), usedforsecurity=False)
    return digest.hexdigest()


class SessionManager:
    """Owns conversation sessions, their budgets and their on-disk records.

    Every record lives in ``active/`` until it is completed, then moves to
    ``completed/``. All mutation happens under one lock; each mutation is
    followed by an atomic write. Only completion and ``save`` fsync the record
    unless ``fsync_every_write`` is set, so appends from concurrent runs do not
    stall the event loop on disk flushes. A failing write is logged and the
    in-memory state is kept.
    """

    def __init__(
        self,
        store_path: str | Path,
        *,
        max_total_calls: int = 25,
        max_refinement_iterations: int = 2,
        fsync_every_write: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._root = Path(store_path)
        self._max_total_calls = max_total_calls
        self._max_refinement_iterations = max_refinement_iterations
        self._fsync_every_write = fsync_every_write
        self._clock = clock
        self._lock = threading.RLock()
        self._sessions: dict[str, ConversationSession] = {}
        for directory in (self._active_dir, self._completed_dir):
            directory.mkdir(parents=True, exist_ok=True)
        self.reload()

    @classmethod
    def from_settings(cls, settings: SessionSettings) -> "SessionManager":
        return cls(
            settings.store_path,
            max_total_calls=settings.max_total_calls,
            max_refinement_iterations=settings.max_refinement_iterations,
            fsync_every_write=settings.fsync_every_write,
        )

    @property
    def _active_dir(self) -> Path:
        return self._root / ACTIVE_DIR

    @property
    def _completed_dir(self) -> Path:
        return self._root / COMPLETED_DIR

    def reload(self) -> int:
        """Load every persisted record into memory; returns the number loaded."""
        loaded: dict[str, ConversationSession] = {}
        for directory in (self._active_dir, self._completed_dir):
            for path in sorted(directory.glob("*.json")):
                try:
                    session = ConversationSession.model_validate_json(path.read_text(encoding="utf-8"))
                except (OSError, ValidationError, ValueError) as exc:
                    logger.warning("session_record_unreadable", path=str(path), error=str(exc))
                    continue
                loaded[session.id] = session
        with self._lock:
            self._sessions = loaded
        logger.info("sessions_reloaded", count=len(loaded), store=str(self._root))
        return len(loaded)

    def create_session(self, agent_id: str) -> ConversationSession:
        now = self._clock()
        session = ConversationSession(id=uuid.uuid4().hex, agent_id=agent_id, created_at=now, updated_at=now)
        with self._lock:
            self._sessions[session.id] = session
            self._persist_best_effort(session)
        logger.info("session_created", session_id=session.id, agent=agent_id)
        return session.model_copy(deep=True)

    def get_session(self, session_id: str) -> ConversationSession:
        with self._lock:
            return self._require(session_id).model_copy(deep=True)

    def list_sessions(self, *, include_completed: bool = True) -> list[ConversationSession]:
        with self._lock:
            sessions = [s for s in self._sessions.values() if include_completed or not s.completed]
            return [s.model_copy(deep=True) for s in sorted(sessions, key=lambda s: s.created_at)]

    def append_turn(self, session_id: str, role: TurnRole, content: str) -> Turn:
        with self._lock:
            session = self._require_open(session_id)
            timestamp = self._clock()
            last = session.last_timestamp
            if last is not None and timestamp <= last:
                timestamp = last + timedelta(microseconds=1)
            turn = Turn(role=role, content=content, timestamp=timestamp)
            session.messages.append(turn)
            session.updated_at = timestamp
            self._persist_best_effort(session)
            return turn

    def track_call(self, session_id: str) -> int:
        """Count one agent call; raises once the session already used its allowance."""
        with self._lock:
            session = self._require_open(session_id)
            if session.total_calls >= self._max_total_calls:
                metrics.increment_session_limit(kind="calls")
                logger.warning("session_call_limit_reached", session_id=session_id, limit=self._max_total_calls)
                raise SessionLimitExceededError("calls", session_id=session_id, limit=self._max_total_calls)
            session.total_calls += 1
            session.updated_at = self._clock()
            self._persist_best_effort(session)
            return session.total_calls

    def track_refinement(self, session_id: str, agent_type: str, task: str) -> int:
        """Count one refinement of ``task`` by ``agent_type``; raises past the ceiling."""
        key = task_hash(agent_type, task)
        with self._lock:
            session = self._require_open(session_id)
            count = session.refinement_counts.get(key, 0)
            if count >= self._max_refinement_iterations:
                metrics.increment_session_limit(kind="refinements")
                logger.warning(
                    "session_refinement_limit_reached",
                    session_id=session_id,
                    agent=agent_type,
                    limit=self._max_refinement_iterations,
                )
                raise SessionLimitExceededError(
                    "refinements", session_id=session_id, limit=self._max_refinement_iterations
                )
            session.refinement_counts[key] = count + 1
            session.updated_at = self._clock()
            self._persist_best_effort(session)
            return count + 1

    def refinement_count(self, session_id: str, agent_type: str, task: str) -> int:
        with self._lock:
            return self._require(session_id).refinement_counts.get(task_hash(agent_type, task), 0)

    def complete(self, session_id: str) -> ConversationSession:
        with self._lock:
            session = self._require(session_id)
            if session.completed:
                return session.model_copy(deep=True)
            session.completed = True
            session.updated_at = self._clock()
            self._persist_best_effort(session, durable=True)
            stale = self._active_dir / f"{session_id}.json"
            try:
                stale.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("session_active_cleanup_failed", session_id=session_id, error=str(exc))
        logger.info("session_completed", session_id=session_id, turns=len(session.messages))
        return session.model_copy(deep=True)

    def stats(self, session_id: str) -> dict[str, Any]:
        with self._lock:
            summary = self._require(session_id).summary()
        summary["max_total_calls"] = self._max_total_calls
        summary["max_refinement_iterations"] = self._max_refinement_iterations
        return summary

    def save(self, session_id: str) -> Path:
        """Write one session atomically; raises ``PersistenceError`` on failure."""
        with self._lock:
            return self._write(self._require(session_id), durable=True)

    def _require(self, session_id: str) -> ConversationSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _require_open(self, session_id: str) -> ConversationSession:
        session = self._require(session_id)
        if session.completed:
            raise SessionClosedError(session_id)
        return session

    def _persist_best_effort(self, session: ConversationSession, *, durable: bool = False) -> None:
        try:
            self._write(session, durable=durable or self._fsync_every_write)
        except PersistenceError as exc:
            metrics.increment_session_persist_failure()
            logger.error("session_persist_failed", session_id=session.id, path=exc.path, error=exc.reason)

    def _write(self, session: ConversationSession, *, durable: bool = False) -> Path:
        directory = self._completed_dir if session.completed else self._active_dir
        target = directory / f"{session.id}.json"
        payload = json.dumps(session.model_dump(mode="json"), indent=2, sort_keys=True)
        tmp_name: str | None = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=directory, prefix=f".{session.id}.", suffix=".tmp", delete=False
            ) as handle:
                tmp_name = handle.name
                handle.write(payload)
                if durable:
                    handle.flush()
                    os.fsync(handle.fileno())
            os.replace(tmp_name, target)
        except OSError as exc:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            raise PersistenceError(session.id, str(target), str(exc)) from exc
        return target
