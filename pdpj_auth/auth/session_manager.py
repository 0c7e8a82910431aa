"""
Session Manager
===============
Owns the bounded pool of authenticated browser sessions.

Responsibilities:
    1. Create sessions: run the acquisition chain with a fresh browser
       handle and register the result under an unguessable id.
    2. Enforce ``max_sessions``: the oldest session (by creation time) is
       evicted before a new one is admitted.
    3. Expire sessions idle longer than ``session_timeout_ms``, eagerly on
       access and periodically via ``start_cleanup_task()``.
    4. Serialize actions per session and cancel in-flight actions when the
       session is closed.

Each session's browser is released only here.  The session map is guarded
by one ``asyncio.Lock``; browsers are always closed outside of it.

Security:
    - Passwords are never stored on a session.
    - Session ids and tokens are never logged in full.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, TypeVar

from ..run_config import ServiceConfig
from ..utils import mask_username
from .base_auth import (
    AcquisitionResult,
    AutomationError,
    Credentials,
    ResourceError,
    SessionNotFound,
)
from .browser import BrowserHandle
from .strategy_chain import AcquisitionChain

logger = logging.getLogger(__name__)

T = TypeVar("T")


def new_session_id() -> str:
    """256 bits from ``secrets``, URL-safe."""
    return secrets.token_urlsafe(32)


def _short(session_id: str) -> str:
    return f"{session_id[:8]}..."


# ---------------------------------------------------------------------------
# Session record
# ---------------------------------------------------------------------------

@dataclass
class Session:
    """One authenticated browser + token.  Times are ``time.monotonic()``."""

    id: str
    handle: BrowserHandle = field(repr=False)
    username: str
    token: str = field(repr=False)
    created_at: float
    last_used_at: float
    strategy: Optional[str] = None
    created_wall: float = field(default_factory=time.time)
    closed: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    in_flight: Set[asyncio.Task] = field(default_factory=set, repr=False)

    @property
    def masked_username(self) -> str:
        return mask_username(self.username)

    def touch(self, now: float) -> None:
        # Never moves backwards, so last_used_at >= created_at holds
        self.last_used_at = max(self.last_used_at, now)

    def idle_seconds(self, now: float) -> float:
        return max(0.0, now - self.last_used_at)

    def describe(self, now: float) -> Dict[str, Any]:
        return {
            "sessionId": _short(self.id),
            "username": self.masked_username,
            "strategy": self.strategy,
            "createdAt": self.created_wall,
            "idleSeconds": round(self.idle_seconds(now), 1),
            "busy": bool(self.in_flight),
        }


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

HandleFactory = Callable[[ServiceConfig], BrowserHandle]


class SessionManager:
    """Create / get / execute / close authenticated sessions.

    Usage::

        manager = SessionManager(config)
        manager.start_cleanup_task()
        result = await manager.create_session("12345678900", "secret")
        data = await manager.execute_in_session(result["sessionId"], action)
        await manager.close_session(result["sessionId"])
        await manager.shutdown()
    """

    def __init__(
        self,
        config: ServiceConfig,
        chain: Optional[AcquisitionChain] = None,
        clock: Callable[[], float] = time.monotonic,
        handle_factory: HandleFactory = BrowserHandle,
    ):
        self.config = config
        self.chain = chain or AcquisitionChain(config)
        self._clock = clock
        self._handle_factory = handle_factory
        self._sessions: Dict[str, Session] = {}
        self._lock = asyncio.Lock()
        self._pending = 0
        self._epoch = 0
        self._shut_down = False
        self._cleanup_task: Optional[asyncio.Task] = None

    # ── Creation ──────────────────────────────────────────────────

    async def create_session(self, username: str, password: str) -> Dict[str, Any]:
        """Acquire a token and register a new session.

        Returns ``{success, sessionId, token, tokenType, message}``.  A failed
        acquisition returns ``success=False`` after releasing its browser;
        a browser launch failure raises ``ResourceError`` after the same
        cleanup.  A create still acquiring when ``close_all_sessions()`` runs
        is released and reported as failed; after ``shutdown()`` creates
        raise ``ResourceError``.
        """
        creds = Credentials(username=username, password=password)
        if not creds.is_complete:
            return self._failure(AcquisitionResult.failed("Username and password are required"))

        async with self._lock:
            if self._shut_down:
                raise ResourceError("session manager is shut down")
            epoch = self._epoch
            evicted = self._evict_oldest_locked(reserved=self._pending)
            self._pending += 1
        await self._release_all(evicted, "capacity")

        handle = self._handle_factory(self.config)
        logger.info(f"[SESSION] Creating session for {creds.masked_username}")
        try:
            result = await self.chain.acquire(creds, handle)
        except BaseException:
            async with self._lock:
                self._pending -= 1
            await handle.close()
            raise

        if not result.success:
            async with self._lock:
                self._pending -= 1
            await handle.close()
            logger.warning(f"[SESSION] Creation failed for {creds.masked_username}: {result.message}")
            return self._failure(result)

        now = self._clock()
        session = Session(
            id=new_session_id(),
            handle=handle,
            username=username,
            token=result.token,
            created_at=now,
            last_used_at=now,
            strategy=result.strategy,
        )
        async with self._lock:
            self._pending -= 1
            # close_all_sessions ran while we were acquiring
            discarded = epoch != self._epoch
            if discarded:
                evicted = []
            else:
                evicted = self._evict_oldest_locked(reserved=0)
                self._sessions[session.id] = session
            total = len(self._sessions)
        await self._release_all(evicted, "capacity")
        if discarded:
            await self._release(session, "discarded during shutdown")
            return self._failure(AcquisitionResult.failed(
                "Session manager closed all sessions while this one was being created"
            ))

        logger.info(
            f"[SESSION] Session {_short(session.id)} created via {result.strategy} "
            f"({total}/{self.config.max_sessions})"
        )
        return {
            "success": True,
            "sessionId": session.id,
            "token": session.token,
            "tokenType": result.token_type,
            "message": result.message or "Authenticated",
        }

    # ── Access ────────────────────────────────────────────────────

    async def get_session(self, session_id: str) -> Session:
        """Live session for *session_id*; refreshes its idle timer.

        Raises:
            SessionNotFound: unknown id, or idle past the timeout (the
                expired session is closed before this is raised).
        """
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound(session_id)
            now = self._clock()
            if session.idle_seconds(now) <= self.config.session_timeout_s:
                session.touch(now)
                return session
            del self._sessions[session_id]

        await self._release(session, "expired")
        raise SessionNotFound(session_id, expired=True)

    async def execute_in_session(
        self,
        session_id: str,
        action: Callable[[Session], Awaitable[T]],
        timeout_ms: Optional[int] = None,
    ) -> T:
        """Run ``action(session)`` with exclusive use of the session's browser.

        Calls for the same id are serialized.  The action is bounded by
        *timeout_ms* (default ``config.timeout_ms``) and is cancelled if the
        session gets closed meanwhile.
        """
        session = await self.get_session(session_id)
        bound_ms = timeout_ms or self.config.timeout_ms

        async with session.lock:
            if session.closed:
                raise SessionNotFound(session_id)
            task = asyncio.ensure_future(action(session))
            session.in_flight.add(task)
            try:
                return await asyncio.wait_for(task, timeout=bound_ms / 1000)
            except asyncio.TimeoutError as exc:
                raise AutomationError(
                    f"session action timed out after {bound_ms} ms"
                ) from exc
            except asyncio.CancelledError:
                if session.closed and task.cancelled():
                    raise SessionNotFound(session_id) from None
                raise
            finally:
                session.in_flight.discard(task)
                session.touch(self._clock())

    # ── Teardown ──────────────────────────────────────────────────

    async def close_session(self, session_id: str) -> bool:
        """Close and forget *session_id*.  Idempotent: False if already gone."""
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        await self._release(session, "closed")
        return True

    async def cleanup_expired_sessions(self) -> int:
        """Close every idle-expired session; return how many were closed."""
        async with self._lock:
            now = self._clock()
            expired = [
                s for s in self._sessions.values()
                if not s.in_flight and s.idle_seconds(now) > self.config.session_timeout_s
            ]
            for s in expired:
                del self._sessions[s.id]
        await self._release_all(expired, "expired")
        if expired:
            logger.info(f"[SESSION] Cleanup closed {len(expired)} expired session(s)")
        return len(expired)

    async def close_all_sessions(self) -> int:
        """Close every session, including ones still being created."""
        async with self._lock:
            self._epoch += 1
            sessions = list(self._sessions.values())
            self._sessions.clear()
        await self._release_all(sessions, "shutdown")
        return len(sessions)

    async def shutdown(self) -> None:
        """Stop the sweep, close everything and refuse further creates."""
        async with self._lock:
            self._shut_down = True
        await self.stop_cleanup_task()
        count = await self.close_all_sessions()
        logger.info(f"[SESSION] Shutdown complete ({count} session(s) closed)")

    # ── Periodic sweep ────────────────────────────────────────────

    def start_cleanup_task(self) -> asyncio.Task:
        """Sweep expired sessions every ``cleanup_interval_s`` seconds."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.ensure_future(self._cleanup_loop())
        return self._cleanup_task

    async def stop_cleanup_task(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval_s)
            try:
                await self.cleanup_expired_sessions()
            except Exception:
                logger.exception("[SESSION] Cleanup sweep failed")

    # ── Introspection ─────────────────────────────────────────────

    def stats(self) -> Dict[str, int]:
        now = self._clock()
        active = sum(
            1 for s in self._sessions.values()
            if s.idle_seconds(now) <= self.config.session_timeout_s
        )
        return {
            "totalSessions": len(self._sessions),
            "activeSessions": active,
            "maxSessions": self.config.max_sessions,
        }

    def list_sessions(self) -> List[Dict[str, Any]]:
        now = self._clock()
        return [s.describe(now) for s in self._sessions.values()]

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    async def __aenter__(self) -> "SessionManager":
        self.start_cleanup_task()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    # ── Internal ──────────────────────────────────────────────────

    def _evict_oldest_locked(self, reserved: int) -> List[Session]:
        """Pop oldest sessions until one more (plus *reserved*) fits.  Caller holds the lock."""
        evicted: List[Session] = []
        while self._sessions and len(self._sessions) + reserved >= self.config.max_sessions:
            oldest = min(self._sessions.values(), key=lambda s: s.created_at)
            del self._sessions[oldest.id]
            evicted.append(oldest)
        return evicted

    async def _release_all(self, sessions: List[Session], reason: str) -> None:
        for session in sessions:
            await self._release(session, reason)

    async def _release(self, session: Session, reason: str) -> None:
        """Cancel in-flight actions, then close the browser."""
        session.closed = True
        current = asyncio.current_task()
        for task in list(session.in_flight):
            if task is not current and not task.done():
                task.cancel()
        await session.handle.close()
        logger.info(f"[SESSION] Session {_short(session.id)} {reason} ({session.masked_username})")

    def _failure(self, result: AcquisitionResult) -> Dict[str, Any]:
        data = result.to_dict(include_diagnostics=self.config.expose_diagnostics)
        data["sessionId"] = None
        return data
