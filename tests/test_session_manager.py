"""
Tests for session_manager.py.

Covers:
  1. Capacity: never more than max_sessions, oldest evicted first
  2. Expiry on access and by sweep
  3. Idempotent close, shutdown
  4. Failed acquisition releases the browser
  5. execute_in_session: serialization, timeout, cancellation on close
"""

import asyncio

import pytest

from fakes import FakeChain, FakeHandle

from pdpj_auth.auth.base_auth import (
    AcquisitionResult,
    AutomationError,
    ResourceError,
    SessionNotFound,
)
from pdpj_auth.auth.session_manager import SessionManager
from pdpj_auth.run_config import ServiceConfig


class Clock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _manager(chain=None, clock=None, **config_overrides):
    config = ServiceConfig(**config_overrides)
    return SessionManager(
        config,
        chain=chain or FakeChain(),
        clock=clock or Clock(),
        handle_factory=FakeHandle,
    )


# ====================================================================
# 1. Capacity
# ====================================================================

class TestCapacity:

    def test_oldest_evicted_when_full(self):
        clock = Clock()
        manager = _manager(clock=clock, max_sessions=2)

        async def scenario():
            ids = []
            for _ in range(3):
                result = await manager.create_session("12345678900", "secret")
                ids.append(result["sessionId"])
                clock.advance(1)
            return ids

        first, second, third = asyncio.run(scenario())
        assert len(manager) == 2
        assert first not in manager
        assert second in manager and third in manager
        assert manager.chain.handles[0].closed is True
        assert manager.chain.handles[1].closed is False

    def test_exactly_one_eviction_per_overflow(self):
        clock = Clock()
        manager = _manager(clock=clock, max_sessions=3)

        async def scenario():
            for _ in range(3):
                await manager.create_session("12345678900", "secret")
                clock.advance(1)
            await manager.create_session("12345678900", "secret")

        asyncio.run(scenario())
        closed = [h for h in manager.chain.handles if h.closed]
        assert len(closed) == 1
        assert len(manager) == 3

    def test_concurrent_creates_never_exceed_limit(self):
        manager = _manager(chain=FakeChain(delay_s=0.01), max_sessions=2)

        async def scenario():
            results = await asyncio.gather(*[
                manager.create_session(f"user{i:08d}", "secret") for i in range(6)
            ])
            return results

        results = asyncio.run(scenario())
        assert all(r["success"] for r in results)
        assert len(manager) <= 2
        live = [h for h in manager.chain.handles if not h.closed]
        assert len(live) == len(manager)

    def test_session_ids_are_unguessable(self):
        manager = _manager()

        async def scenario():
            a = await manager.create_session("12345678900", "secret")
            b = await manager.create_session("12345678900", "secret")
            return a["sessionId"], b["sessionId"]

        a, b = asyncio.run(scenario())
        assert a != b
        assert len(a) >= 43          # 32 random bytes, base64url

    def test_result_shape(self):
        manager = _manager()
        result = asyncio.run(manager.create_session("12345678900", "secret"))
        assert set(result) == {"success", "sessionId", "token", "tokenType", "message"}
        assert result["tokenType"] == "Bearer"
        assert result["token"] == "token-1"


# ====================================================================
# 2. Expiry
# ====================================================================

class TestExpiry:

    def test_get_after_timeout_evicts(self):
        clock = Clock()
        manager = _manager(clock=clock, session_timeout_ms=60_000)

        async def scenario():
            sid = (await manager.create_session("12345678900", "secret"))["sessionId"]
            clock.advance(61)
            with pytest.raises(SessionNotFound) as first:
                await manager.get_session(sid)
            with pytest.raises(SessionNotFound) as second:
                await manager.get_session(sid)
            return first.value, second.value

        first, second = asyncio.run(scenario())
        assert first.expired is True
        assert second.expired is False
        assert len(manager) == 0
        assert manager.chain.handles[0].closed is True

    def test_access_refreshes_idle_timer(self):
        clock = Clock()
        manager = _manager(clock=clock, session_timeout_ms=60_000)

        async def scenario():
            sid = (await manager.create_session("12345678900", "secret"))["sessionId"]
            for _ in range(3):
                clock.advance(45)
                session = await manager.get_session(sid)
            return session

        session = asyncio.run(scenario())
        assert session.last_used_at == clock.now
        assert session.last_used_at >= session.created_at

    def test_cleanup_sweep_counts(self):
        clock = Clock()
        manager = _manager(clock=clock, session_timeout_ms=60_000)

        async def scenario():
            old = (await manager.create_session("12345678900", "secret"))["sessionId"]
            clock.advance(50)
            fresh = (await manager.create_session("12345678900", "secret"))["sessionId"]
            clock.advance(20)
            count = await manager.cleanup_expired_sessions()
            return old, fresh, count

        old, fresh, count = asyncio.run(scenario())
        assert count == 1
        assert old not in manager
        assert fresh in manager

    def test_stats(self):
        clock = Clock()
        manager = _manager(clock=clock, session_timeout_ms=60_000, max_sessions=4)

        async def scenario():
            await manager.create_session("12345678900", "secret")
            clock.advance(61)
            await manager.create_session("12345678900", "secret")

        asyncio.run(scenario())
        assert manager.stats() == {"totalSessions": 2, "activeSessions": 1, "maxSessions": 4}

    def test_periodic_cleanup_task(self):
        clock = Clock()
        manager = _manager(clock=clock, session_timeout_ms=1_000, cleanup_interval_s=0.01)

        async def scenario():
            await manager.create_session("12345678900", "secret")
            manager.start_cleanup_task()
            clock.advance(5)
            await asyncio.sleep(0.1)
            await manager.stop_cleanup_task()

        asyncio.run(scenario())
        assert len(manager) == 0


# ====================================================================
# 3. Close
# ====================================================================

class TestClose:

    def test_close_is_idempotent(self):
        manager = _manager()

        async def scenario():
            keep = (await manager.create_session("12345678900", "secret"))["sessionId"]
            sid = (await manager.create_session("12345678900", "secret"))["sessionId"]
            first = await manager.close_session(sid)
            count_after_first = len(manager)
            second = await manager.close_session(sid)
            return keep, first, second, count_after_first

        keep, first, second, count_after_first = asyncio.run(scenario())
        assert first is True
        assert second is False
        assert len(manager) == count_after_first == 1
        assert keep in manager

    def test_close_unknown_is_noop(self):
        assert asyncio.run(_manager().close_session("nope")) is False

    def test_shutdown_closes_everything(self):
        manager = _manager()

        async def scenario():
            async with manager:
                await manager.create_session("12345678900", "secret")
                await manager.create_session("12345678900", "secret")

        asyncio.run(scenario())
        assert len(manager) == 0
        assert all(h.closed for h in manager.chain.handles)

    def test_create_racing_close_all_is_discarded(self):
        manager = _manager(chain=FakeChain(delay_s=0.05))

        async def scenario():
            creating = asyncio.ensure_future(manager.create_session("12345678900", "secret"))
            await asyncio.sleep(0.01)
            await manager.close_all_sessions()
            return await creating

        result = asyncio.run(scenario())
        assert result["success"] is False
        assert result["sessionId"] is None
        assert len(manager) == 0
        assert manager.chain.handles[0].closed is True
        assert manager._pending == 0

    def test_creates_after_close_all_still_work(self):
        manager = _manager()

        async def scenario():
            await manager.close_all_sessions()
            return await manager.create_session("12345678900", "secret")

        assert asyncio.run(scenario())["success"] is True
        assert len(manager) == 1

    def test_create_after_shutdown_refused(self):
        manager = _manager()

        async def scenario():
            await manager.shutdown()
            await manager.create_session("12345678900", "secret")

        with pytest.raises(ResourceError):
            asyncio.run(scenario())
        assert manager.chain.calls == 0


# ====================================================================
# 4. Failed acquisition
# ====================================================================

class TestFailedCreation:

    def test_failure_releases_browser(self):
        chain = FakeChain([AcquisitionResult.failed(
            "All acquisition strategies exhausted: no token", attempts=[]
        )])
        manager = _manager(chain=chain)
        result = asyncio.run(manager.create_session("12345678900", "secret"))

        assert result["success"] is False
        assert result["sessionId"] is None
        assert "exhausted" in result["message"]
        assert chain.handles[0].closed is True
        assert len(manager) == 0

    def test_diagnostics_hidden_in_production(self):
        chain = FakeChain([AcquisitionResult.failed("nope", attempts=[{"x": 1}])])
        manager = _manager(chain=chain, environment="production")
        result = asyncio.run(manager.create_session("12345678900", "secret"))
        assert "diagnostics" not in result

    def test_launch_error_propagates_after_cleanup(self):
        chain = FakeChain([ResourceError("browser launch failed: no chromium")])
        manager = _manager(chain=chain)
        with pytest.raises(ResourceError):
            asyncio.run(manager.create_session("12345678900", "secret"))
        assert chain.handles[0].closed is True
        assert manager._pending == 0

    def test_missing_password(self):
        manager = _manager()
        result = asyncio.run(manager.create_session("12345678900", ""))
        assert result["success"] is False
        assert manager.chain.calls == 0


# ====================================================================
# 5. execute_in_session
# ====================================================================

class TestExecuteInSession:

    def test_runs_action_with_session(self):
        manager = _manager()

        async def scenario():
            sid = (await manager.create_session("12345678900", "secret"))["sessionId"]

            async def action(session):
                return session.token, session.masked_username

            return await manager.execute_in_session(sid, action)

        assert asyncio.run(scenario()) == ("token-1", "********900")

    def test_unknown_session(self):
        async def action(session):
            return None

        with pytest.raises(SessionNotFound):
            asyncio.run(_manager().execute_in_session("missing", action))

    def test_calls_are_serialized(self):
        manager = _manager()
        running = {"now": 0, "max": 0}

        async def action(session):
            running["now"] += 1
            running["max"] = max(running["max"], running["now"])
            await asyncio.sleep(0.01)
            running["now"] -= 1

        async def scenario():
            sid = (await manager.create_session("12345678900", "secret"))["sessionId"]
            await asyncio.gather(*[manager.execute_in_session(sid, action) for _ in range(4)])

        asyncio.run(scenario())
        assert running["max"] == 1

    def test_action_timeout(self):
        manager = _manager()

        async def slow(session):
            await asyncio.sleep(5)

        async def scenario():
            sid = (await manager.create_session("12345678900", "secret"))["sessionId"]
            await manager.execute_in_session(sid, slow, timeout_ms=20)

        with pytest.raises(AutomationError) as exc:
            asyncio.run(scenario())
        assert "timed out" in str(exc.value)

    def test_close_cancels_in_flight_action(self):
        manager = _manager()
        state = {"cancelled": False}

        async def hang(session):
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                state["cancelled"] = True
                raise

        async def scenario():
            sid = (await manager.create_session("12345678900", "secret"))["sessionId"]
            running = asyncio.ensure_future(manager.execute_in_session(sid, hang))
            await asyncio.sleep(0.01)
            closed = await manager.close_session(sid)
            with pytest.raises(SessionNotFound):
                await running
            return closed

        assert asyncio.run(scenario()) is True
        assert state["cancelled"] is True
        assert manager.chain.handles[0].closed is True
