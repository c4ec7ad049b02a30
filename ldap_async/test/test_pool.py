import asyncio
import unittest
from pathlib import Path

from ldap_async.config import LDAPConfig
from ldap_async.exceptions import LDAPConnectionError, LDAPProtocolError
from ldap_async.hooks import client_hooks
from ldap_async.memory import MemoryTransport, ObjectStore
from ldap_async.pool import ConnectionPool

FIXTURE = Path(__file__).parent / "planetexpress.json"
ADMIN = "cn=admin,dc=planetexpress,dc=com"


class PoolMixin:

    pool_options = {}

    async def asyncSetUp(self):
        store = ObjectStore()
        store.load_objects(FIXTURE)
        self.transport = MemoryTransport(store)
        self.hooks = client_hooks()
        self.config = LDAPConfig(
            url="ldap://memory",
            bind_dn=ADMIN,
            bind_password="GoodNewsEveryone",
            **self.pool_options,
        )
        self.pool = ConnectionPool(self.transport, self.config, hooks=self.hooks)

    async def asyncTearDown(self):
        await self.pool.close()


class TestConnectionPool_acquire(PoolMixin, unittest.IsolatedAsyncioTestCase):

    pool_options = {"pool_size": 3}

    async def test_opens_and_binds_a_connection(self):
        conn = await self.pool.acquire()
        self.assertTrue(conn.busy)
        self.assertEqual(conn.handle.bound_dn, ADMIN)
        self.assertEqual(self.pool.size, 1)
        self.pool.release(conn)
        self.assertEqual(self.pool.idle_count, 1)

    async def test_reuses_idle_connections(self):
        conn = await self.pool.acquire()
        self.pool.release(conn)
        again = await self.pool.acquire()
        self.assertIs(again, conn)
        self.assertEqual(len(self.transport.connections), 1)
        self.pool.release(again)

    async def test_never_more_than_pool_size_busy(self):
        peak = []

        async def worker():
            conn = await self.pool.acquire()
            peak.append(self.pool.busy_count)
            await asyncio.sleep(0.01)
            self.pool.release(conn)

        await asyncio.gather(*(worker() for _ in range(20)))
        self.assertLessEqual(max(peak), 3)
        self.assertEqual(self.pool.size, 3)
        self.assertEqual(self.pool.busy_count, 0)
        self.assertEqual(self.pool.waiting, 0)
        self.assertEqual(len(self.transport.connections), 3)

    async def test_start_tls_happens_before_bind(self):
        self.config.start_tls = True
        conn = await self.pool.acquire()
        self.assertTrue(conn.handle.tls_enabled)
        names = conn.handle.calls.names
        self.assertLess(names.index("start_tls_s"), names.index("simple_bind_s"))
        self.pool.release(conn)

    async def test_bind_failure_frees_the_slot(self):
        self.config.bind_password = "wrong"
        with self.assertRaises(LDAPConnectionError):
            await self.pool.acquire()
        self.assertEqual(self.pool.size, 0)
        self.assertFalse(self.transport.connections[0].connected)
        self.config.bind_password = "GoodNewsEveryone"
        conn = await self.pool.acquire()
        self.assertEqual(self.pool.size, 1)
        self.pool.release(conn)

    async def test_server_down_raises_LDAPConnectionError(self):
        self.transport.down = True
        with self.assertRaises(LDAPConnectionError):
            await self.pool.acquire()
        self.assertEqual(self.pool.size, 0)

    async def test_dropped_connection_is_reauthenticated(self):
        conn = await self.pool.acquire()
        self.pool.release(conn)
        self.transport.disconnect_all()
        again = await self.pool.acquire()
        self.assertIs(again, conn)
        self.assertTrue(again.handle.connected)
        self.assertEqual(again.handle.bound_dn, ADMIN)
        self.assertIn("reopen", again.handle.calls.names)
        self.assertEqual(len(again.handle.calls.filter_calls("simple_bind_s")), 2)
        self.pool.release(again)

    async def test_connection_that_cannot_reconnect_is_destroyed(self):
        conn = await self.pool.acquire()
        self.pool.release(conn)
        self.transport.disconnect_all()
        self.transport.down = True
        with self.assertRaises(LDAPConnectionError):
            await self.pool.acquire()
        self.assertEqual(self.pool.size, 0)
        self.transport.down = False
        again = await self.pool.acquire()
        self.assertIsNot(again, conn)
        self.pool.release(again)


class TestConnectionPool_waiters(PoolMixin, unittest.IsolatedAsyncioTestCase):

    pool_options = {"pool_size": 1}

    async def test_waiters_are_served_in_order(self):
        held = await self.pool.acquire()
        order = []

        async def waiter(name):
            conn = await self.pool.acquire()
            order.append(name)
            self.pool.release(conn)

        tasks = [asyncio.create_task(waiter(name)) for name in ("first", "second", "third")]
        await asyncio.sleep(0)
        self.assertEqual(self.pool.waiting, 3)
        self.pool.release(held)
        await asyncio.gather(*tasks)
        self.assertEqual(order, ["first", "second", "third"])
        self.assertEqual(self.pool.idle_count, 1)

    async def test_cancelled_waiter_leaves_the_queue(self):
        held = await self.pool.acquire()
        task = asyncio.create_task(self.pool.acquire())
        await asyncio.sleep(0)
        self.assertEqual(self.pool.waiting, 1)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(self.pool.waiting, 0)
        self.pool.release(held)
        self.assertEqual(self.pool.idle_count, 1)
        self.assertEqual(self.pool.busy_count, 0)

    async def test_failed_open_wakes_a_waiter(self):
        self.transport.latency = 0.01
        self.transport.down = True
        first = asyncio.create_task(self.pool.acquire())
        await asyncio.sleep(0)
        second = asyncio.create_task(self.pool.acquire())
        await asyncio.sleep(0)
        self.assertEqual(self.pool.waiting, 1)
        with self.assertRaises(LDAPConnectionError):
            await first
        with self.assertRaises(LDAPConnectionError):
            await second
        self.assertEqual(self.pool.waiting, 0)
        self.assertEqual(self.pool.size, 0)

    async def test_woken_waiter_keeps_its_turn(self):
        self.transport.latency = 0.01
        newcomers = []

        def refuse_once(handle):
            if not newcomers:
                newcomers.append(asyncio.create_task(self.pool.acquire()))
                raise LDAPProtocolError("refused")

        self.hooks.register_hook("post_connect", refuse_once)
        first = asyncio.create_task(self.pool.acquire())
        await asyncio.sleep(0)
        second = asyncio.create_task(self.pool.acquire())
        await asyncio.sleep(0)
        self.assertEqual(self.pool.waiting, 1)
        with self.assertRaises(LDAPConnectionError):
            await first
        conn = await second
        newcomer = newcomers[0]
        self.assertFalse(newcomer.done())
        self.assertEqual(self.pool.waiting, 1)
        self.pool.release(conn)
        self.assertIs(await newcomer, conn)
        self.pool.release(conn)

    async def test_failed_reconnect_keeps_the_waiters_turn(self):
        refuse = []

        def refuse_when_asked(handle):
            if refuse:
                refuse.pop()
                raise LDAPProtocolError("refused")

        self.hooks.register_hook("post_connect", refuse_when_asked)
        held = await self.pool.acquire()
        first = asyncio.create_task(self.pool.acquire())
        await asyncio.sleep(0)
        second = asyncio.create_task(self.pool.acquire())
        await asyncio.sleep(0)
        self.assertEqual(self.pool.waiting, 2)
        self.transport.disconnect_all()
        refuse.append(True)
        self.pool.release(held)
        conn = await first
        self.assertIsNot(conn, held)
        self.assertFalse(second.done())
        self.assertEqual(self.pool.waiting, 1)
        self.pool.release(conn)
        self.assertIs(await second, conn)
        self.pool.release(conn)

    async def test_cancelled_reconnect_frees_the_slot(self):
        conn = await self.pool.acquire()
        self.pool.release(conn)
        self.transport.latency = 0.1
        self.transport.disconnect_all()
        task = asyncio.create_task(self.pool.acquire())
        await asyncio.sleep(0.05)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(self.pool.busy_count, 0)
        self.assertEqual(self.pool.waiting, 0)
        await asyncio.wait_for(self.pool.close(), 1)
        self.assertFalse(conn.handle.connected)
        self.transport.latency = 0
        again = await self.pool.acquire()
        self.assertIsNot(again, conn)
        self.pool.release(again)

    async def test_cancelled_reconnect_hands_the_slot_to_a_waiter(self):
        conn = await self.pool.acquire()
        self.pool.release(conn)
        self.transport.latency = 0.1
        self.transport.disconnect_all()
        task = asyncio.create_task(self.pool.acquire())
        await asyncio.sleep(0)
        waiter = asyncio.create_task(self.pool.acquire())
        await asyncio.sleep(0.05)
        self.assertEqual(self.pool.waiting, 1)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        again = await asyncio.wait_for(waiter, 1)
        self.assertIsNot(again, conn)
        self.assertEqual(self.pool.size, 1)
        self.pool.release(again)


class TestConnectionPool_release(PoolMixin, unittest.IsolatedAsyncioTestCase):

    async def test_duplicate_release_is_ignored(self):
        conn = await self.pool.acquire()
        self.pool.release(conn)
        with self.assertLogs("ldap_async", level="WARNING") as cm:
            self.pool.release(conn)
        self.assertIn("pool.release.duplicate", cm.output[0])
        self.assertEqual(self.pool.idle_count, 1)

    async def test_stale_release_does_not_free_the_new_holder(self):
        conn = await self.pool.acquire()
        checkout = conn.checkout
        self.pool.release(conn, checkout)
        again = await self.pool.acquire()
        with self.assertLogs("ldap_async", level="WARNING"):
            self.pool.release(conn, checkout)
        self.assertTrue(again.busy)
        self.pool.release(again, again.checkout)
        self.assertFalse(again.busy)

    async def test_connection_context_manager_releases(self):
        with self.assertRaises(RuntimeError):
            async with self.pool.connection() as conn:
                self.assertTrue(conn.busy)
                raise RuntimeError
        self.assertFalse(conn.busy)
        self.assertEqual(self.pool.idle_count, 1)

    async def test_hooks_run(self):
        connected = []
        released = []
        self.hooks.register_hook("post_connect", connected.append)
        self.hooks.register_hook("pre_release", released.append)
        async with self.pool.connection() as conn:
            pass
        self.assertEqual(connected, [conn.handle])
        self.assertEqual(released, [conn])


class TestConnectionPool_idle_timeout(PoolMixin, unittest.IsolatedAsyncioTestCase):

    pool_options = {"idle_timeout": 0.2}

    async def test_idle_connections_are_closed(self):
        conns = [await self.pool.acquire(), await self.pool.acquire()]
        for conn in conns:
            self.pool.release(conn)
        await asyncio.sleep(0.1)
        self.assertEqual(self.pool.size, 2)
        # Closed no later than one and a half idle timeouts after release
        await asyncio.sleep(0.3)
        self.assertEqual(self.pool.size, 0)
        for conn in conns:
            self.assertFalse(conn.handle.connected)
        again = await self.pool.acquire()
        self.assertEqual(self.pool.size, 1)
        self.assertEqual(len(self.transport.connections), 3)
        self.pool.release(again)

    async def test_busy_connections_are_kept(self):
        busy = await self.pool.acquire()
        idle = await self.pool.acquire()
        self.pool.release(idle)
        await asyncio.sleep(0.4)
        self.assertEqual(self.pool.connections, [busy])
        self.pool.release(busy)


class TestConnectionPool_close(PoolMixin, unittest.IsolatedAsyncioTestCase):

    async def test_close_waits_for_busy_connections(self):
        conn = await self.pool.acquire()
        closing = asyncio.create_task(self.pool.close())
        await asyncio.sleep(0.01)
        self.assertFalse(closing.done())
        self.assertTrue(self.pool.draining)
        self.pool.release(conn)
        await closing
        self.assertEqual(self.pool.size, 0)
        self.assertFalse(self.pool.draining)
        self.assertFalse(conn.handle.connected)

    async def test_concurrent_closes_share_one_shutdown(self):
        conn = await self.pool.acquire()
        self.pool.release(conn)
        await asyncio.gather(self.pool.close(), self.pool.close())
        self.assertEqual(len(conn.handle.calls.filter_calls("unbind_s")), 1)

    async def test_pool_reopens_after_close(self):
        conn = await self.pool.acquire()
        self.pool.release(conn)
        await self.pool.close()
        again = await self.pool.acquire()
        self.assertIsNot(again, conn)
        self.assertEqual(self.pool.size, 1)
        self.pool.release(again)


class TestConnectionPool_wait(PoolMixin, unittest.IsolatedAsyncioTestCase):

    async def test_gives_up_after_max_attempts(self):
        self.transport.down = True
        with self.assertLogs("ldap_async", level="WARNING") as cm:
            with self.assertRaises(LDAPConnectionError):
                await self.pool.wait(max_attempts=3, interval=0.01)
        levels = [line.split(":", 1)[0] for line in cm.output]
        self.assertEqual(levels, ["WARNING", "WARNING", "ERROR"])
        self.assertIn("pool.wait.gave_up", cm.output[-1])

    async def test_returns_once_the_server_answers(self):
        self.transport.down = True

        async def recover():
            await asyncio.sleep(0.05)
            self.transport.down = False

        recovery = asyncio.create_task(recover())
        with self.assertLogs("ldap_async", level="WARNING"):
            await self.pool.wait(interval=0.02)
        await recovery
        self.assertEqual(self.pool.idle_count, 1)
