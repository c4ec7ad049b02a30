"""
A bounded pool of authenticated LDAP connections.

All pool state is only ever touched from the event loop thread, so there are
no locks: every state change happens between two ``await`` points.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from collections import deque
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from .exceptions import LDAPAsyncError, LDAPConnectionError
from .hooks import HookRegistry, client_hooks

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .config import LDAPConfig
    from .transport import Transport, TransportConnection


class PooledConnection:
    """
    One authenticated session owned by a :py:class:`ConnectionPool`.

    Attributes:
        id: a number identifying this connection in log messages
        handle: the transport connection
        busy: ``True`` while checked out
        last_used_at: :py:func:`time.monotonic` time of the last release
        checkout: incremented on every checkout, so that a stale second
            release can be told apart from the current holder's release

    """

    _ids = itertools.count(1)

    def __init__(self, handle: TransportConnection) -> None:
        self.id: int = next(self._ids)
        self.handle = handle
        self.busy: bool = False
        self.last_used_at: float = time.monotonic()
        self.checkout: int = 0

    def __repr__(self) -> str:
        return f"<PooledConnection id={self.id} busy={self.busy}>"


class ConnectionPool:
    """
    Hand out at most ``config.pool_size`` authenticated connections, queueing
    callers first-come first-served once they are all busy.

    Every successful :py:meth:`acquire` must be paired with exactly one
    :py:meth:`release`; use :py:meth:`connection` to get that for free.

    Args:
        transport: how to open new sessions
        config: our client configuration

    Keyword Args:
        hooks: the hook registry to run ``post_connect`` and ``pre_release``
            hooks from

    """

    def __init__(
        self,
        transport: Transport,
        config: LDAPConfig,
        hooks: HookRegistry | None = None,
    ) -> None:
        self.transport = transport
        self.config = config
        self.hooks: HookRegistry = hooks if hooks is not None else client_hooks()
        self.logger: Any = config.logger
        self.pool_size: int = config.max_connections
        self.idle_timeout: float = config.idle_seconds
        self.connections: list[PooledConnection] = []
        self.waiters: deque[asyncio.Future[PooledConnection | None]] = deque()
        self.draining: bool = False
        self._opening: int = 0
        self._drained: asyncio.Future[None] | None = None
        self._closing: asyncio.Task[None] | None = None
        self._reaper: asyncio.Task[None] | None = None
        self._discarding: set[asyncio.Task[None]] = set()

    def __repr__(self) -> str:
        return (
            f"<ConnectionPool size={self.size} busy={self.busy_count} "
            f"idle={self.idle_count} waiting={self.waiting}>"
        )

    # Introspection

    @property
    def size(self) -> int:
        return len(self.connections)

    @property
    def busy_count(self) -> int:
        return sum(1 for conn in self.connections if conn.busy)

    @property
    def idle_count(self) -> int:
        return sum(1 for conn in self.connections if not conn.busy)

    @property
    def waiting(self) -> int:
        return sum(1 for fut in self.waiters if not fut.done())

    # Checkout

    def _checkout(self, conn: PooledConnection) -> None:
        conn.busy = True
        conn.checkout += 1

    async def _authenticate(self, handle: TransportConnection) -> None:
        if self.config.start_tls:
            await handle.start_tls()
        await handle.bind(self.config.bind_dn, self.config.bind_password)
        await self.hooks.run("post_connect", handle)

    async def _discard_handle(self, handle: TransportConnection) -> None:
        try:
            await handle.unbind()
        except LDAPAsyncError as exc:
            self.logger.debug("pool.unbind.failed error=%s", exc)

    async def _open(self) -> PooledConnection:
        """
        Open, authenticate and check out a new connection in a slot we have
        already reserved by incrementing :py:attr:`_opening`.
        """
        handle: TransportConnection | None = None
        try:
            handle = await self.transport.connect(self.config)
            await self._authenticate(handle)
        except BaseException as exc:
            self._opening -= 1
            if handle is not None:
                await self._discard_handle(handle)
            # Someone may be queued behind the slot we just gave up
            self._wake_waiter(None)
            if isinstance(exc, LDAPAsyncError) and not isinstance(exc, LDAPConnectionError):
                raise LDAPConnectionError(
                    str(exc), result=exc.result, desc=exc.desc, info=exc.info
                ) from exc
            raise
        self._opening -= 1
        conn = PooledConnection(handle)
        self._checkout(conn)
        self.connections.append(conn)
        self.logger.debug("pool.acquire.new id=%s size=%d", conn.id, self.size)
        return conn

    async def _ready(self, conn: PooledConnection) -> bool:
        """
        Make sure the checked out ``conn`` still has a live, bound session,
        re-authenticating it if the server dropped it.  If that fails, drop
        ``conn`` from the pool and return ``False``; the caller keeps the slot
        it held.
        """
        if conn.handle.connected:
            return True
        self.logger.info("pool.reconnect id=%s", conn.id)
        try:
            await conn.handle.reconnect()
            await self._authenticate(conn.handle)
        except LDAPAsyncError as exc:
            self.logger.warning("pool.reconnect.failed id=%s error=%s", conn.id, exc)
            self._forget(conn, wake=False)
            return False
        except BaseException:
            # Cancelled halfway through: the session is in an unknown state
            # and nobody holds the checkout any more
            self.logger.info("pool.reconnect.cancelled id=%s", conn.id)
            self._forget(conn)
            raise
        return True

    def _forget(self, conn: PooledConnection, wake: bool = True) -> None:
        """
        Drop ``conn`` from the pool and unbind it in the background.

        Keyword Args:
            wake: give the freed slot to the oldest waiter

        """
        freed = conn in self.connections
        if freed:
            self.connections.remove(conn)
        conn.busy = False
        task = asyncio.get_running_loop().create_task(self._discard_handle(conn.handle))
        self._discarding.add(task)
        task.add_done_callback(self._discarding.discard)
        self._check_drained()
        if freed and wake:
            self._wake_waiter(None)

    def _wake_waiter(self, conn: PooledConnection | None) -> bool:
        """
        Hand ``conn`` to the oldest live waiter.  ``None`` tells the waiter a
        slot came free; the slot is reserved for it (by incrementing
        :py:attr:`_opening`) so that it opens the new connection itself,
        ahead of anyone who arrived later.

        Returns:
            ``True`` if a waiter took it.

        """
        while self.waiters:
            fut = self.waiters.popleft()
            if fut.done():
                continue
            if conn is not None:
                self._checkout(conn)
            else:
                self._opening += 1
            fut.set_result(conn)
            return True
        return False

    async def acquire(self) -> PooledConnection:
        """
        Check out a connection: an idle one if there is one, a new one if we
        are under :py:attr:`pool_size`, otherwise wait in line for one.

        Raises:
            LDAPConnectionError: we needed a new connection and could not
                connect or bind

        Returns:
            A busy, bound :py:class:`PooledConnection`.

        """
        loop = asyncio.get_running_loop()
        # Once woken we keep our place at the head of the line
        woken = False
        while True:
            conn = next((c for c in self.connections if not c.busy), None)
            if conn is not None:
                self._checkout(conn)
                self.logger.debug("pool.acquire.idle id=%s", conn.id)
                if await self._ready(conn):
                    return conn
                continue
            if self.size + self._opening < self.pool_size:
                self._opening += 1
                return await self._open()
            fut: asyncio.Future[PooledConnection | None] = loop.create_future()
            if woken:
                self.waiters.appendleft(fut)
            else:
                self.waiters.append(fut)
            self.logger.debug("pool.acquire.wait waiting=%d", self.waiting)
            try:
                conn = await fut
            except asyncio.CancelledError:
                if fut in self.waiters:
                    self.waiters.remove(fut)
                if fut.done() and not fut.cancelled():
                    if fut.result() is None:
                        # Pass on the slot that was reserved for us
                        self._opening -= 1
                        self._wake_waiter(None)
                    else:
                        self.release(fut.result())  # type: ignore[arg-type]
                raise
            woken = True
            if conn is None:
                return await self._open()
            if await self._ready(conn):
                return conn

    def release(self, conn: PooledConnection, checkout: int | None = None) -> None:
        """
        Return ``conn`` to the pool, or hand it straight to the oldest waiter.
        Releasing a connection that is not checked out (or, if ``checkout``
        is given, releasing an earlier checkout of it) is logged and ignored.

        Args:
            conn: the connection to release

        Keyword Args:
            checkout: the value of ``conn.checkout`` when it was acquired

        """
        if not conn.busy or (checkout is not None and checkout != conn.checkout):
            self.logger.warning("pool.release.duplicate id=%s", conn.id)
            return
        for func in self.hooks.get("pre_release"):
            func(conn)
        conn.last_used_at = time.monotonic()
        if conn not in self.connections:
            conn.busy = False
            return
        if self._wake_waiter(conn):
            self.logger.debug("pool.release.handoff id=%s", conn.id)
            return
        conn.busy = False
        self.logger.debug("pool.release.idle id=%s", conn.id)
        self._check_drained()
        self._start_reaper()

    def _check_drained(self) -> None:
        if self.draining and self.busy_count == 0 and self._drained is not None:
            if not self._drained.done():
                self._drained.set_result(None)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[PooledConnection]:
        """
        Check out a connection for the duration of an ``async with`` block.

        Example:
            >>> async with pool.connection() as conn:
            ...     await conn.handle.modify(dn, modlist)

        """
        conn = await self.acquire()
        checkout = conn.checkout
        try:
            yield conn
        finally:
            self.release(conn, checkout)

    # Idle eviction

    def _start_reaper(self) -> None:
        if self.idle_timeout <= 0 or not self.connections:
            return
        if self._reaper is None or self._reaper.done():
            self._reaper = asyncio.get_running_loop().create_task(self._reap())

    async def _reap(self) -> None:
        """
        Every ``idle_timeout / 2`` seconds, unbind the connections that have
        been idle for longer than ``idle_timeout``.  An idle connection is
        thus closed between ``idle_timeout`` and ``1.5 * idle_timeout``
        seconds after its last release.
        """
        while self.connections:
            await asyncio.sleep(self.idle_timeout / 2)
            now = time.monotonic()
            expired = [
                conn
                for conn in self.connections
                if not conn.busy and now - conn.last_used_at > self.idle_timeout
            ]
            for conn in expired:
                self.connections.remove(conn)
                self.logger.debug("pool.idle.close id=%s size=%d", conn.id, self.size)
                await self._discard_handle(conn.handle)

    # Shutdown

    async def close(self) -> None:
        """
        Wait for every busy connection to be released, then unbind them all.
        Concurrent callers share one shutdown.  The pool may be used again
        afterwards; it will open new connections.
        """
        if self._closing is None:
            self._closing = asyncio.get_running_loop().create_task(self._shutdown())
        await asyncio.shield(self._closing)

    async def _shutdown(self) -> None:
        self.draining = True
        try:
            if self.busy_count:
                self.logger.info("pool.close.draining busy=%d", self.busy_count)
                self._drained = asyncio.get_running_loop().create_future()
                await self._drained
            if self._reaper is not None:
                self._reaper.cancel()
                try:
                    await self._reaper
                except asyncio.CancelledError:
                    pass
                self._reaper = None
            if self._discarding:
                await asyncio.gather(*self._discarding)
            connections, self.connections = self.connections, []
            for conn in connections:
                await self._discard_handle(conn.handle)
            self.logger.debug("pool.close.done closed=%d", len(connections))
        finally:
            self.draining = False
            self._drained = None
            self._closing = None

    async def wait(self, max_attempts: int | None = None, interval: float = 2.0) -> None:
        """
        Wait until we can connect and bind, retrying every ``interval``
        seconds.  The first two failures are logged as warnings, later ones
        as errors.

        Keyword Args:
            max_attempts: give up after this many failed attempts; ``None``
                means keep trying forever
            interval: seconds to sleep between attempts

        Raises:
            LDAPConnectionError: ``max_attempts`` attempts all failed

        """
        attempts = 0
        while True:
            try:
                conn = await self.acquire()
            except LDAPConnectionError as exc:
                attempts += 1
                if max_attempts is not None and attempts >= max_attempts:
                    self.logger.error("pool.wait.gave_up attempts=%d error=%s", attempts, exc)
                    raise
                if attempts <= 2:
                    self.logger.warning("pool.wait.retry attempt=%d error=%s", attempts, exc)
                else:
                    self.logger.error("pool.wait.retry attempt=%d error=%s", attempts, exc)
                await asyncio.sleep(interval)
            else:
                self.release(conn)
                return
