"""Per-project continuity map from (project, model) to agent session ids.

The store is a single JSON document under the project root, rewritten in full
on every mutation.  There is no time-based expiry: entries leave the store only
when the agent repeatedly refuses to resume them, on capacity eviction (least
recently used first) or on explicit ``forget``/``clear``.
"""

from __future__ import annotations

import json
import logging
import math
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

STORE_DIRNAME = ".agent_bridge"
STORE_FILENAME = "agent-sessions.json"
DEFAULT_MAX_SESSIONS = 50
DEFAULT_MAX_RESUME_ATTEMPTS = 3
EVICTION_FRACTION = 0.1

_MS_PER_DAY = 24 * 60 * 60 * 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True)
class SessionEntry:
    """One cached agent session; timestamps are epoch milliseconds."""

    chatId: str  # noqa: N815
    createdAt: int  # noqa: N815
    lastUsedAt: int  # noqa: N815
    resumeAttempts: int = 0  # noqa: N815


@dataclass(slots=True)
class SessionStoreStats:
    """Snapshot of store contents for operators."""

    total: int
    active: int
    failed: int
    max_sessions: int
    max_resume_attempts: int
    oldest_age_days: float | None
    newest_age_days: float | None
    enabled: bool

    def to_lines(self) -> list[str]:
        lines = [
            f"enabled={self.enabled}",
            f"total={self.total} active={self.active} failed={self.failed}",
            f"max_sessions={self.max_sessions} max_resume_attempts={self.max_resume_attempts}",
        ]
        if self.oldest_age_days is not None and self.newest_age_days is not None:
            lines.append(
                f"oldest_age_days={self.oldest_age_days:.2f} "
                f"newest_age_days={self.newest_age_days:.2f}",
            )
        return lines


def store_path_for(project_root: Path) -> Path:
    return Path(project_root).resolve() / STORE_DIRNAME / STORE_FILENAME


class SessionStore:
    """File-backed, capacity-bounded session map for one project root."""

    def __init__(  # noqa: PLR0913
        self,
        path: Path,
        *,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        max_resume_attempts: int = DEFAULT_MAX_RESUME_ATTEMPTS,
        enabled: bool = True,
        persist: bool = True,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        if max_sessions <= 0:
            raise ValueError("max_sessions must be > 0.")
        if max_resume_attempts <= 0:
            raise ValueError("max_resume_attempts must be > 0.")
        self.path = path
        self.max_sessions = max_sessions
        self.max_resume_attempts = max_resume_attempts
        self.enabled = enabled
        self.persist = persist
        self._clock = clock
        self._entries: dict[str, SessionEntry] = self._load() if enabled else {}
        # A file written under a larger cap is trimmed on load.
        self._evict(protect="")

    @classmethod
    def for_project(cls, project_root: Path, **kwargs: Any) -> SessionStore:
        return cls(store_path_for(project_root), **kwargs)

    @staticmethod
    def context_key(project_root: Path | str, model: str | None) -> str:
        """Key identifying which cached session applies to an invocation."""

        return f"{Path(project_root).resolve()}:{model or 'default'}"

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def entry(self, key: str) -> SessionEntry | None:
        """Inspect an entry without touching its usage time."""

        return self._entries.get(key)

    def get(self, key: str) -> str | None:
        """Return the cached chat id and mark it used.

        An entry whose resume attempts already reached the threshold is
        deleted and ``None`` is returned.
        """

        if not self.enabled:
            return None
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.resumeAttempts >= self.max_resume_attempts:
            logger.info(
                "Dropping session for %s after %d failed resume attempts",
                key,
                entry.resumeAttempts,
            )
            del self._entries[key]
            self._save()
            return None
        entry.lastUsedAt = self._clock()
        self._save()
        return entry.chatId

    def put(self, key: str, chat_id: str, *, is_new: bool = False) -> None:
        """Record ``chat_id`` as the session for ``key``."""

        if not self.enabled or not chat_id:
            return
        now = self._clock()
        existing = self._entries.get(key)
        created_at = existing.createdAt if existing is not None and not is_new else now
        self._entries.pop(key, None)
        self._entries[key] = SessionEntry(
            chatId=chat_id,
            createdAt=created_at,
            lastUsedAt=now,
            resumeAttempts=0,
        )
        self._evict(protect=key)
        self._save()

    def mark_resume_failure(self, key: str, chat_id: str) -> bool:
        """Count a failed resume; returns whether the entry was dropped."""

        if not self.enabled:
            return False
        entry = self._entries.get(key)
        if entry is None or entry.chatId != chat_id:
            return False
        entry.resumeAttempts += 1
        dropped = entry.resumeAttempts >= self.max_resume_attempts
        if dropped:
            logger.info("Session %s for %s dropped after failed resumes", chat_id, key)
            del self._entries[key]
        else:
            logger.debug(
                "Resume failure %d/%d for %s",
                entry.resumeAttempts,
                self.max_resume_attempts,
                key,
            )
        self._save()
        return dropped

    def forget(self, key: str) -> bool:
        if not self.enabled or key not in self._entries:
            return False
        del self._entries[key]
        self._save()
        return True

    def clear(self) -> int:
        if not self.enabled:
            return 0
        removed = len(self._entries)
        self._entries.clear()
        self._save()
        return removed

    def cleanup_failed(self) -> int:
        """Remove every entry with at least one failed resume."""

        if not self.enabled:
            return 0
        failed = [key for key, entry in self._entries.items() if entry.resumeAttempts > 0]
        for key in failed:
            del self._entries[key]
        if failed:
            self._save()
        return len(failed)

    def stats(self) -> SessionStoreStats:
        entries = list(self._entries.values())
        failed = sum(1 for entry in entries if entry.resumeAttempts > 0)
        now = self._clock()
        oldest_age: float | None = None
        newest_age: float | None = None
        if entries:
            created = [entry.createdAt for entry in entries]
            oldest_age = (now - min(created)) / _MS_PER_DAY
            newest_age = (now - max(created)) / _MS_PER_DAY
        return SessionStoreStats(
            total=len(entries),
            active=len(entries) - failed,
            failed=failed,
            max_sessions=self.max_sessions,
            max_resume_attempts=self.max_resume_attempts,
            oldest_age_days=oldest_age,
            newest_age_days=newest_age,
            enabled=self.enabled,
        )

    def _evict(self, *, protect: str) -> None:
        excess = len(self._entries) - self.max_sessions
        if excess <= 0:
            return
        batch = max(excess, math.floor(self.max_sessions * EVICTION_FRACTION))
        candidates = sorted(
            (item for item in self._entries.items() if item[0] != protect),
            key=lambda item: item[1].lastUsedAt,
        )
        for key, _entry in candidates[:batch]:
            del self._entries[key]
        logger.info("Evicted %d least recently used sessions", min(batch, len(candidates)))

    def _load(self) -> dict[str, SessionEntry]:
        if not self.persist or not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text("utf-8"))
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as error:
            logger.warning("Ignoring unreadable session store %s: %s", self.path, error)
            return {}
        if not isinstance(payload, dict):
            logger.warning("Ignoring session store %s: expected a JSON object", self.path)
            return {}

        entries: dict[str, SessionEntry] = {}
        for key, raw in payload.items():
            entry = _entry_from_payload(raw)
            if entry is None:
                logger.warning("Skipping malformed session entry %r in %s", key, self.path)
                continue
            entries[key] = entry
        return entries

    def _save(self) -> None:
        if not self.persist:
            return
        payload = {key: asdict(entry) for key, entry in self._entries.items()}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True),
                "utf-8",
            )
        except OSError as error:
            logger.warning("Failed to persist session store %s: %s", self.path, error)


def _entry_from_payload(raw: object) -> SessionEntry | None:
    if not isinstance(raw, dict):
        return None
    chat_id = raw.get("chatId")
    if not isinstance(chat_id, str) or not chat_id:
        return None
    try:
        created_at = int(raw.get("createdAt", 0))
        last_used_at = int(raw.get("lastUsedAt", created_at))
        attempts = int(raw.get("resumeAttempts", 0))
    except (TypeError, ValueError, OverflowError):
        return None
    return SessionEntry(
        chatId=chat_id,
        createdAt=created_at,
        lastUsedAt=last_used_at,
        resumeAttempts=attempts,
    )
