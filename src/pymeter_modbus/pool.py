"""ConnectionPool: bounded, reusable TransportSessions keyed by DeviceAddress."""

import asyncio
import logging
import time
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable

from .errors import ErrorKind, ModbusError
from .session import TransportSession
from .types import DeviceAddress, PoolConfig, RegisterBank

logger = logging.getLogger(__name__)

SessionFactory = Callable[[DeviceAddress], TransportSession]

# consecutive failed health checks before an idle session is closed
HEALTH_CHECK_MAX_FAILURES = 3


@dataclass
class _IdleEntry:
    session: TransportSession
    idle_since: float


class ConnectionPool:
    """
    Hands out exclusive TransportSessions per DeviceAddress.

    Each session is in exactly one of: idle, checked out, closed. Checked-out
    sessions plus sessions still connecting never exceed `per_key_max` for a key.
    All bookkeeping happens under one asyncio.Condition; connects and closes
    happen outside it. A caller cancelled mid-acquire leaves no slot behind.
    """

    def __init__(
        self,
        config: PoolConfig | None = None,
        *,
        session_factory: SessionFactory = TransportSession,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or PoolConfig()
        self._session_factory = session_factory
        self._clock = clock
        self._cond = asyncio.Condition()
        self._idle: dict[DeviceAddress, deque[_IdleEntry]] = defaultdict(deque)
        self._in_use: dict[DeviceAddress, set[TransportSession]] = defaultdict(set)
        self._connecting: dict[DeviceAddress, int] = defaultdict(int)
        self._health_failures: dict[TransportSession, int] = {}
        self._closed = False
        self._tasks: list[asyncio.Task[None]] = []
        self._counters = {
            "created": 0,
            "reused": 0,
            "evicted": 0,
            "discarded": 0,
            "exhausted": 0,
            "health_checks": 0,
            "health_check_failed": 0,
        }

    @property
    def config(self) -> PoolConfig:
        return self._config

    @property
    def closed(self) -> bool:
        return self._closed

    def _busy(self, address: DeviceAddress) -> int:
        return len(self._in_use[address]) + self._connecting[address]

    def _expired(self, entry: _IdleEntry, now: float) -> bool:
        return now - entry.idle_since > self._config.idle_timeout

    def _take_idle(self, address: DeviceAddress, stale: list[TransportSession]) -> TransportSession | None:
        """Pop the most recently released usable session; expired/unhealthy ones go to `stale`."""
        idle = self._idle[address]
        now = self._clock()
        while idle:
            entry = idle.pop()
            if self._expired(entry, now) or not entry.session.is_healthy():
                stale.append(entry.session)
                self._health_failures.pop(entry.session, None)
                self._counters["evicted"] += 1
                continue
            return entry.session
        return None

    async def _close_sessions(self, sessions: list[TransportSession]) -> None:
        for session in sessions:
            await session.close()

    async def acquire(
        self,
        address: DeviceAddress,
        *,
        acquire_timeout: float | None = None,
        connect_timeout: float | None = None,
    ) -> TransportSession:
        """
        Return a connected session for `address`, checked out to the caller.

        Reuses a healthy idle session, else connects a new one while under the
        per-key ceiling, else waits for a release. Fails with POOL_EXHAUSTED when
        nothing frees up within `acquire_timeout`.
        """
        acquire_timeout = self._config.acquire_timeout if acquire_timeout is None else acquire_timeout
        connect_timeout = self._config.connect_timeout if connect_timeout is None else connect_timeout
        stale: list[TransportSession] = []

        try:
            async with self._cond:
                session = await self._reserve(address, acquire_timeout, stale)
        except BaseException:
            if stale:
                await asyncio.shield(self._close_sessions(stale))
            raise

        # the slot is held from here on; give it back if the caller goes away
        if stale:
            try:
                await asyncio.shield(self._close_sessions(stale))
            except BaseException:
                await asyncio.shield(self._unreserve(address, session))
                raise
        if session is not None:
            return session
        return await self._create(address, connect_timeout)

    async def _reserve(
        self,
        address: DeviceAddress,
        acquire_timeout: float,
        stale: list[TransportSession],
    ) -> TransportSession | None:
        """
        Check out an idle session, or reserve a connect slot and return None.

        Called with the condition held.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + acquire_timeout
        while True:
            if self._closed:
                raise ModbusError(ErrorKind.POOL_EXHAUSTED, "Connection pool is closed", address=address)
            session = self._take_idle(address, stale)
            if session is not None:
                self._in_use[address].add(session)
                self._counters["reused"] += 1
                logger.debug("Reusing idle session for %s", address)
                return session
            if self._busy(address) < self._config.per_key_max:
                self._connecting[address] += 1
                return None
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise self._exhausted(address, acquire_timeout)
            try:
                await asyncio.wait_for(self._cond.wait(), remaining)
            except asyncio.TimeoutError:
                raise self._exhausted(address, acquire_timeout) from None

    async def _unreserve(self, address: DeviceAddress, session: TransportSession | None) -> None:
        """Undo a reservation made by _reserve: a checked-out session goes back to idle."""
        async with self._cond:
            if session is None:
                self._connecting[address] -= 1
            else:
                self._in_use[address].discard(session)
                if not self._closed and session.is_healthy():
                    self._idle[address].append(_IdleEntry(session, self._clock()))
                    session = None
            self._cond.notify_all()
        if session is not None:
            await session.close()

    def _exhausted(self, address: DeviceAddress, acquire_timeout: float) -> ModbusError:
        self._counters["exhausted"] += 1
        logger.debug("No session for %s within %.3gs", address, acquire_timeout)
        return ModbusError(
            ErrorKind.POOL_EXHAUSTED,
            f"No session available within {acquire_timeout:.3g}s (per-key max {self._config.per_key_max})",
            address=address,
        )

    async def _create(self, address: DeviceAddress, connect_timeout: float) -> TransportSession:
        """Connect a new session in a slot already reserved in `_connecting`."""
        session: TransportSession | None = None
        reserved = True
        try:
            session = self._session_factory(address)
            await session.connect(connect_timeout)
            async with self._cond:
                self._connecting[address] -= 1
                reserved = False
                if self._closed:
                    self._cond.notify_all()
                else:
                    self._in_use[address].add(session)
                    self._counters["created"] += 1
                    logger.debug("Created session for %s", address)
                    return session
        except BaseException:
            if reserved:
                await asyncio.shield(self._unreserve(address, None))
            if session is not None:
                await asyncio.shield(session.close())
            raise

        await asyncio.shield(session.close())
        raise ModbusError(ErrorKind.POOL_EXHAUSTED, "Connection pool is closed", address=address)

    async def release(self, session: TransportSession) -> None:
        """Return a checked-out session; unhealthy sessions are closed instead of kept."""
        address = session.address
        async with self._cond:
            in_use = self._in_use.get(address)
            if not in_use or session not in in_use:
                if not self._closed:
                    logger.warning("Attempted to release session not managed by pool: %r", session)
                return
            in_use.discard(session)
            keep = not self._closed and session.is_healthy()
            if keep:
                self._idle[address].append(_IdleEntry(session, self._clock()))
            else:
                self._health_failures.pop(session, None)
                self._counters["discarded"] += 1
            self._cond.notify_all()
        if not keep:
            logger.debug("Discarding unhealthy session for %s", address)
            await session.close()

    async def discard(self, session: TransportSession) -> None:
        """Close a checked-out session and give its slot back."""
        address = session.address
        async with self._cond:
            in_use = self._in_use.get(address)
            if in_use and session in in_use:
                in_use.discard(session)
                self._health_failures.pop(session, None)
                self._counters["discarded"] += 1
                self._cond.notify_all()
            elif not self._closed:
                logger.warning("Attempted to discard session not managed by pool: %r", session)
        await session.close()

    @asynccontextmanager
    async def lease(
        self,
        address: DeviceAddress,
        *,
        acquire_timeout: float | None = None,
        connect_timeout: float | None = None,
    ) -> AsyncIterator[TransportSession]:
        """`async with pool.lease(addr) as session:` acquire, then release or discard."""
        session = await self.acquire(address, acquire_timeout=acquire_timeout, connect_timeout=connect_timeout)
        try:
            yield session
        finally:
            if session.is_healthy():
                await self.release(session)
            else:
                await self.discard(session)

    async def evict_idle(self) -> int:
        """Close idle sessions past idle_timeout or no longer healthy. Returns how many were closed."""
        stale: list[TransportSession] = []
        async with self._cond:
            now = self._clock()
            for address, idle in self._idle.items():
                keep = deque(e for e in idle if not self._expired(e, now) and e.session.is_healthy())
                stale.extend(e.session for e in idle if e not in keep)
                self._idle[address] = keep
            for session in stale:
                self._health_failures.pop(session, None)
            self._counters["evicted"] += len(stale)
        for session in stale:
            await session.close()
        if stale:
            logger.debug("Evicted %d idle session(s)", len(stale))
        return len(stale)

    async def health_check(self) -> int:
        """
        Read one holding register on every idle session.

        Idle sessions are checked out for the duration of the sweep. A session
        that fails a check and is no longer healthy, or fails
        HEALTH_CHECK_MAX_FAILURES checks in a row, is closed; the others go back
        to idle with their idle time unchanged. Returns how many were closed.
        """
        async with self._cond:
            if self._closed:
                return 0
            batch: list[tuple[DeviceAddress, _IdleEntry]] = []
            for address, idle in self._idle.items():
                for entry in idle:
                    batch.append((address, entry))
                    self._in_use[address].add(entry.session)
                idle.clear()
        if not batch:
            return 0

        try:
            passed = await asyncio.gather(*(self._check_session(entry.session) for _, entry in batch))
        except BaseException:
            await asyncio.shield(self._settle(batch, [False] * len(batch), count_failures=False))
            raise
        return await self._settle(batch, passed)

    async def _check_session(self, session: TransportSession) -> bool:
        try:
            await session.read_registers(
                RegisterBank.HOLDING,
                self._config.health_check_register,
                1,
                self._config.health_check_timeout,
            )
        except ModbusError as e:
            logger.warning("Health check failed for %s: %s", session.address, e)
            return False
        return True

    async def _settle(
        self,
        batch: list[tuple[DeviceAddress, _IdleEntry]],
        passed: list[bool],
        *,
        count_failures: bool = True,
    ) -> int:
        """Return checked sessions to idle, or close the ones that failed too often."""
        closing: list[TransportSession] = []
        async with self._cond:
            returned: dict[DeviceAddress, list[_IdleEntry]] = defaultdict(list)
            for (address, entry), ok in zip(batch, passed):
                session = entry.session
                self._in_use[address].discard(session)
                if count_failures:
                    self._counters["health_checks"] += 1
                if ok:
                    self._health_failures.pop(session, None)
                elif count_failures:
                    self._counters["health_check_failed"] += 1
                    self._health_failures[session] = self._health_failures.get(session, 0) + 1
                failures = self._health_failures.get(session, 0)
                if self._closed or not session.is_healthy() or failures >= HEALTH_CHECK_MAX_FAILURES:
                    self._health_failures.pop(session, None)
                    if not self._closed:
                        self._counters["discarded"] += 1
                    closing.append(session)
                else:
                    returned[address].append(entry)
            for address, entries in returned.items():
                merged = list(self._idle[address]) + entries
                self._idle[address] = deque(sorted(merged, key=lambda e: e.idle_since))
            self._cond.notify_all()
        for session in closing:
            await session.close()
        if closing:
            logger.info("Health check closed %d session(s)", len(closing))
        return len(closing)

    async def _run_periodically(self, interval: float, sweep: Callable[[], Any], name: str) -> None:
        while not self._closed:
            await asyncio.sleep(interval)
            try:
                await sweep()
            except Exception:
                logger.exception("%s sweep failed", name)

    def start(self) -> None:
        """Start the periodic idle-eviction and health-check tasks on the running loop."""
        if any(not task.done() for task in self._tasks):
            return
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._run_periodically(self._config.eviction_interval, self.evict_idle, "Idle eviction")),
            loop.create_task(
                self._run_periodically(self._config.health_check_interval, self.health_check, "Health check")
            ),
        ]

    async def close_all(self) -> None:
        """Close every session, idle and checked out, and refuse further acquires."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        async with self._cond:
            self._closed = True
            sessions = [e.session for idle in self._idle.values() for e in idle]
            sessions.extend(s for in_use in self._in_use.values() for s in in_use)
            self._idle.clear()
            self._in_use.clear()
            self._health_failures.clear()
            self._cond.notify_all()
        for session in sessions:
            await session.close()
        logger.info("Connection pool closed (%d session(s))", len(sessions))

    def stats(self) -> dict[str, Any]:
        return {
            "idle": sum(len(v) for v in self._idle.values()),
            "in_use": sum(len(v) for v in self._in_use.values()),
            "connecting": sum(self._connecting.values()),
            **self._counters,
        }

    def in_use_count(self, address: DeviceAddress) -> int:
        return len(self._in_use.get(address, ()))

    def idle_count(self, address: DeviceAddress) -> int:
        return len(self._idle.get(address, ()))

    async def __aenter__(self) -> "ConnectionPool":
        self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close_all()
