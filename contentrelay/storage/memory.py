from __future__ import annotations

import asyncio
import copy
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from contentrelay.logging import get_logger
from contentrelay.storage.models import CacheEntry, ConversationSession, Message

Clock = Callable[[], float]


class MemoryCache:
    """In-process cache backend with lazy expiry on read.

    Exposes the same ``get``/``set`` coroutines as ``RedisCache`` so the
    result cache can use either. Entries are deep-copied in and out so a
    caller mutating a result never alters what later readers see.
    """

    def __init__(self, *, clock: Clock = time.monotonic) -> None:
        self._entries: Dict[str, CacheEntry] = {}
        self._clock = clock
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return None
            return copy.deepcopy(entry.payload)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(
                key=key,
                payload=copy.deepcopy(value),
                expires_at=self._clock() + ttl_seconds,
            )

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()


class ConversationMemory:
    """Time-bounded per-session message history.

    Sessions are keyed by ``(tenant_id, session_id)`` so two tenants reusing
    a session id never share history. Each session keeps at most
    ``max_messages`` messages (oldest dropped first) and is evicted once it
    has been idle for ``session_timeout_seconds``. Eviction happens in a
    background sweep task (see ``start``) and lazily when a stale session is
    read.
    """

    def __init__(
        self,
        *,
        max_messages: int = 50,
        session_timeout_seconds: float = 30 * 60,
        sweep_interval_seconds: float = 5 * 60,
        clock: Clock = time.monotonic,
    ) -> None:
        self.logger = get_logger(__name__)
        self.max_messages = max_messages
        self.session_timeout_seconds = session_timeout_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._sessions: Dict[Tuple[str, str], ConversationSession] = {}
        self._lock = threading.Lock()
        self._sweep_task: Optional[asyncio.Task] = None

    def _is_stale(self, session: ConversationSession, now: float) -> bool:
        return now - session.last_activity > self.session_timeout_seconds

    def _live_session(self, tenant_id: str, session_id: str) -> Optional[ConversationSession]:
        key = (tenant_id, session_id)
        session = self._sessions.get(key)
        if session is None:
            return None
        if self._is_stale(session, self._clock()):
            del self._sessions[key]
            return None
        return session

    def add_message(self, tenant_id: str, session_id: str, role: str, content: str) -> None:
        now = self._clock()
        with self._lock:
            session = self._live_session(tenant_id, session_id)
            if session is None:
                session = ConversationSession(
                    session_id=session_id,
                    tenant_id=tenant_id,
                    created_at=now,
                    last_activity=now,
                )
                self._sessions[(tenant_id, session_id)] = session
            session.messages.append(Message(role=role, content=content))
            overflow = len(session.messages) - self.max_messages
            if overflow > 0:
                del session.messages[:overflow]
            session.touch(now)

    def get_history(self, tenant_id: str, session_id: str) -> List[Message]:
        with self._lock:
            session = self._live_session(tenant_id, session_id)
            return list(session.messages) if session else []

    def get_recent(self, tenant_id: str, session_id: str, n: int = 8) -> List[Dict[str, str]]:
        """Last ``n`` messages in chat-API shape."""
        if n <= 0:
            return []
        history = self.get_history(tenant_id, session_id)
        return [msg.as_prompt() for msg in history[-n:]]

    def clear_session(self, tenant_id: str, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop((tenant_id, session_id), None) is not None

    def active_session_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def session_info(self, tenant_id: str, session_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            session = self._live_session(tenant_id, session_id)
            if session is None:
                return None
            now = self._clock()
            return {
                "session_id": session.session_id,
                "tenant_id": session.tenant_id,
                "message_count": len(session.messages),
                "idle_seconds": now - session.last_activity,
                "age_seconds": now - session.created_at,
            }

    def sweep_expired(self) -> int:
        """Evict idle sessions; returns how many were removed."""
        now = self._clock()
        with self._lock:
            stale = [key for key, s in self._sessions.items() if self._is_stale(s, now)]
            for key in stale:
                del self._sessions[key]
        if stale:
            self.logger.info(
                "conversation_sessions_swept",
                removed=len(stale),
                remaining=len(self._sessions),
            )
        return len(stale)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                self.sweep_expired()
            except Exception as exc:
                self.logger.error("conversation_sweep_failed", error=str(exc))

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
