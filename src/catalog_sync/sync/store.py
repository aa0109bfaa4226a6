"""Persistent key-value store for session state.

Keys are ``/``-separated paths mapped to JSON files under ``state_dir``::

    active                      id of the session to resume
    last                        id of the most recently finished session
    session/<id>                ExportSession snapshot
    archive/<id>                completed sessions
    retry/<id>                  per-item attempt counts for a session
    audit/<id>/<n>              batches of AuditLogEntry

Every write goes to a temp file that atomically replaces the target, so a
reader never sees a partial checkpoint.  Missing or undecodable entries
degrade to ``None`` with a warning instead of raising.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from .models import AuditLogEntry, ExportSession, SessionStatus

logger = logging.getLogger(__name__)


class SessionStore:
    """JSON-file key-value store.

    Args:
        state_dir: Root directory; created on first write.
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = state_dir

    # ------------------------------------------------------------------
    # Raw key-value access
    # ------------------------------------------------------------------

    def get(self, key: str) -> Any | None:
        """Return the decoded value for *key*, or ``None``.

        Corrupted entries are logged and treated as missing.
        """
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as fh:
                return json.load(fh)
        except (OSError, ValueError) as exc:
            logger.warning("Discarding unreadable state entry %s: %s", key, exc)
            return None

    def put(self, key: str, value: Any) -> None:
        """Persist *value* under *key* atomically."""
        target = self._path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(target.parent), suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(value, fh, indent=2, default=str)
            os.replace(tmp_path, target)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def delete(self, key: str) -> None:
        """Remove *key*.  No-op if absent."""
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass

    def keys(self, prefix: str) -> list[str]:
        """Return keys directly below *prefix*, sorted."""
        directory = self._state_dir / prefix
        if not directory.is_dir():
            return []
        return sorted(
            f"{prefix.rstrip('/')}/{p.stem}"
            for p in directory.glob("*.json")
        )

    def _path(self, key: str) -> Path:
        parts = [p for p in key.split("/") if p]
        if not parts or any(p in (".", "..") for p in parts):
            raise ValueError(f"Invalid state key: {key!r}")
        return self._state_dir.joinpath(*parts[:-1], f"{parts[-1]}.json")

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def load_session(self, session_id: str) -> ExportSession | None:
        raw = self.get(f"session/{session_id}") or self.get(
            f"archive/{session_id}"
        )
        if raw is None:
            return None
        try:
            return ExportSession.model_validate(raw)
        except PydanticValidationError as exc:
            logger.warning(
                "Discarding corrupted session %s: %s", session_id, exc
            )
            return None

    def save_session(self, session: ExportSession) -> None:
        self.put(
            f"session/{session.session_id}", session.model_dump(mode="json")
        )

    def active_session(self) -> ExportSession | None:
        """Return the session to resume, or ``None``.

        A dangling or corrupted pointer is cleared.
        """
        pointer = self.get("active")
        if not isinstance(pointer, dict) or "session_id" not in pointer:
            return None
        session = self.load_session(str(pointer["session_id"]))
        if session is None or session.status.is_terminal:
            self.delete("active")
            return None
        return session

    def set_active(self, session_id: str) -> None:
        self.put("active", {"session_id": session_id})

    def clear_active(self) -> None:
        self.delete("active")

    def last_session(self) -> ExportSession | None:
        pointer = self.get("last")
        if not isinstance(pointer, dict) or "session_id" not in pointer:
            return None
        return self.load_session(str(pointer["session_id"]))

    def finish_session(self, session: ExportSession) -> None:
        """Record a terminal session.

        Completed sessions move to ``archive/``; failed ones stay under
        ``session/`` for inspection.  Either way they stop being resumable.
        """
        if session.status == SessionStatus.COMPLETED:
            self.put(
                f"archive/{session.session_id}",
                session.model_dump(mode="json"),
            )
            self.delete(f"session/{session.session_id}")
            self.delete(f"retry/{session.session_id}")
        else:
            self.save_session(session)
        self.put("last", {"session_id": session.session_id})
        self.clear_active()

    # ------------------------------------------------------------------
    # Retry state
    # ------------------------------------------------------------------

    def load_retry_state(self, session_id: str) -> dict[str, Any]:
        raw = self.get(f"retry/{session_id}")
        if not isinstance(raw, dict):
            return {"retries_used": 0, "items": {}}
        raw.setdefault("retries_used", 0)
        raw.setdefault("items", {})
        return raw

    def save_retry_state(self, session_id: str, state: dict[str, Any]) -> None:
        self.put(f"retry/{session_id}", state)

    # ------------------------------------------------------------------
    # Audit batches
    # ------------------------------------------------------------------

    def append_audit(
        self, session_id: str, entries: list[AuditLogEntry]
    ) -> None:
        if not entries:
            return
        index = len(self.keys(f"audit/{session_id}"))
        self.put(
            f"audit/{session_id}/{index:06d}",
            [e.model_dump(mode="json") for e in entries],
        )

    def load_audit(self, session_id: str) -> list[AuditLogEntry]:
        """Return every persisted entry for *session_id* in order.

        Undecodable batches are skipped with a warning.
        """
        entries: list[AuditLogEntry] = []
        for key in self.keys(f"audit/{session_id}"):
            raw = self.get(key)
            if not isinstance(raw, list):
                continue
            try:
                batch = [AuditLogEntry.model_validate(e) for e in raw]
            except PydanticValidationError as exc:
                logger.warning("Skipping corrupted audit batch %s: %s", key, exc)
                continue
            entries.extend(batch)
        return entries
