"""Mapping between caller-visible session ids and backend session ids.

Callers pick (or are handed) a session id before the first turn, but the
backend only reveals its own id once a turn has run. The reconciler remembers
which backend id each caller id resolved to, which backend ids can be resumed,
and when each session was last active. The table survives worker restarts via a
small JSON file.
"""

from __future__ import annotations

import json
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from ..core.config import SessionSettings
from ..core.logging import get_logger, short_id

logger = get_logger(name=__name__)


@dataclass(slots=True)
class SessionRecord:
    caller_id: str | None
    last_activity: float
    callback_channel: str | None = None


@dataclass(slots=True, frozen=True)
class SessionResolution:
    backend_id: str | None
    resume: bool


class SessionReconciler:
    def __init__(
        self,
        settings: SessionSettings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._path = Path(settings.session_file)
        self._clock = clock
        self._lock = threading.Lock()
        self._mapping: dict[str, str] = {}
        self._sessions: dict[str, SessionRecord] = {}
        self._resumable: set[str] = set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def resolve(self, caller_id: str | None) -> SessionResolution:
        """Pick resume or new-session mode for the next turn of ``caller_id``."""
        if not caller_id:
            return SessionResolution(backend_id=None, resume=False)
        with self._lock:
            backend_id = self._mapping.get(caller_id)
            if backend_id is None and caller_id in self._sessions:
                backend_id = caller_id
            resume = backend_id is not None and backend_id in self._resumable
        return SessionResolution(backend_id=backend_id if resume else None, resume=resume)

    def record_turn(self, caller_id: str | None, backend_id: str, callback_channel: str | None = None) -> None:
        with self._lock:
            previous = self._mapping.get(caller_id) if caller_id else None
            if caller_id == backend_id:
                self._mapping.pop(caller_id, None)
            elif caller_id and previous != backend_id:
                self._mapping[caller_id] = backend_id
                logger.info(
                    "session_mapped",
                    caller_session=short_id(caller_id),
                    backend_session=short_id(backend_id),
                    replaced=short_id(previous),
                )
            record = self._sessions.get(backend_id)
            if record is None:
                record = SessionRecord(caller_id=caller_id, last_activity=self._clock())
                self._sessions[backend_id] = record
            record.last_activity = self._clock()
            if caller_id:
                record.caller_id = caller_id
            if callback_channel:
                record.callback_channel = callback_channel
            self._resumable.add(backend_id)
        self.persist()

    def forget(self, backend_id: str) -> None:
        with self._lock:
            self._drop(backend_id)
        logger.info("session_forgotten", backend_session=short_id(backend_id))
        self.persist()

    def sweep(self, now: float | None = None) -> int:
        moment = self._clock() if now is None else now
        cutoff = moment - self._settings.session_ttl_seconds
        with self._lock:
            stale = [backend_id for backend_id, record in self._sessions.items() if record.last_activity < cutoff]
            for backend_id in stale:
                self._drop(backend_id)
            remaining = len(self._sessions)
        if stale:
            logger.info("sessions_expired", expired=len(stale), remaining=remaining)
            self.persist()
        return len(stale)

    def active_sessions(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {
                    "sessionId": backend_id,
                    "callerSessionId": record.caller_id,
                    "lastActivity": record.last_activity,
                    "callbackChannel": record.callback_channel,
                }
                for backend_id, record in self._sessions.items()
            ]

    def persist(self) -> None:
        """Write the table atomically; failures are logged and swallowed."""
        with self._lock:
            payload = [
                {
                    "sessionId": backend_id,
                    "taskApiId": self._caller_for(backend_id, record),
                    "lastActivity": int(record.last_activity * 1000),
                    "callbackChannel": record.callback_channel,
                }
                for backend_id, record in self._sessions.items()
            ]
            tmp_path = self._path.with_name(f"{self._path.name}.tmp")
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with open(tmp_path, "w", encoding="utf-8") as handle:
                    json.dump(payload, handle, ensure_ascii=False, indent=2)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_path, self._path)
            except OSError as exc:
                logger.warning("session_persist_failed", path=str(self._path), error=str(exc))

    def load(self) -> int:
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return 0
        except (OSError, ValueError) as exc:
            logger.warning("session_load_failed", path=str(self._path), error=str(exc))
            return 0
        if not isinstance(raw, list):
            logger.warning("session_load_failed", path=str(self._path), error="expected a list of sessions")
            return 0

        with self._lock:
            for entry in raw:
                if not isinstance(entry, dict) or not entry.get("sessionId"):
                    continue
                backend_id = str(entry["sessionId"])
                caller_id = entry.get("taskApiId") or None
                last_activity = entry.get("lastActivity")
                self._sessions[backend_id] = SessionRecord(
                    caller_id=caller_id,
                    last_activity=(last_activity / 1000) if isinstance(last_activity, (int, float)) else self._clock(),
                    callback_channel=entry.get("callbackChannel") or None,
                )
                self._resumable.add(backend_id)
                if caller_id and caller_id != backend_id:
                    self._mapping[caller_id] = backend_id
            restored = len(self._sessions)
        logger.info("sessions_restored", count=restored, path=str(self._path))
        return restored

    def _caller_for(self, backend_id: str, record: SessionRecord) -> str | None:
        for caller_id, mapped in self._mapping.items():
            if mapped == backend_id:
                return caller_id
        return record.caller_id

    def _drop(self, backend_id: str) -> None:
        self._sessions.pop(backend_id, None)
        self._resumable.discard(backend_id)
        for caller_id in [caller for caller, mapped in self._mapping.items() if mapped == backend_id]:
            del self._mapping[caller_id]


__all__ = ["SessionRecord", "SessionReconciler", "SessionResolution"]
