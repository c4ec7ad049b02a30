import asyncio
import unittest

import ldap

from ldap_async.exceptions import LDAPConnectionError, LDAPProtocolError, SchemaError
from ldap_async.stream import StreamState
from ldap_async.unittest import LDAPClientTestMixin

BASE = "dc=planetexpress,dc=com"
PEOPLE = f"ou=people,{BASE}"
FRY = f"cn=Philip J. Fry,{PEOPLE}"
ADMIN_OPTIONS = {
    "bind_dn": f"cn=admin,{BASE}",
    "bind_password": "GoodNewsEveryone",
}


class PlanetExpressMixin(LDAPClientTestMixin):

    ldap_fixtures = "planetexpress.json"
    client_options = ADMIN_OPTIONS

    def people(self, **kwargs):
        return self.client.stream(
            PEOPLE, scope="one", filter="(objectClass=person)", **kwargs
        )


class TestSearchStream_consumption(PlanetExpressMixin, unittest.IsolatedAsyncioTestCase):

    async def test_nothing_happens_before_first_record(self):
        people = self.people()
        self.assertEqual(people.state, StreamState.IDLE)
        self.assertEqual(self.transport.connections, [])
        await people.aclose()
        self.assertEqual(self.transport.connections, [])

    async def test_streams_every_record(self):
        async with self.people(page_size=2) as people:
            records = [person async for person in people]
        self.assertEqual(len(records), 7)
        self.assertEqual(people.pages, 4)
        self.assertEqual(self.page_count(), 4)
        self.assertSearchCount(1)
        self.assertPoolIdle()

    async def test_records_keep_server_order(self):
        expected = [
            dn
            for dn, _ in self.store.search(PEOPLE, ldap.SCOPE_ONELEVEL, "(objectClass=person)")
        ]
        records = await self.people(page_size=3).to_list()
        self.assertEqual([record.dn for record in records], expected)

    async def test_pool_is_idle_after_exhaustion_without_context_manager(self):
        people = self.people()
        count = 0
        async for _ in people:
            count += 1
        self.assertEqual(count, 7)
        self.assertEqual(people.state, StreamState.CLOSED)
        self.assertPoolIdle()

    async def test_closing_after_3_of_7_stops_paging(self):
        seen = []
        async with self.people(page_size=2) as people:
            async for person in people:
                seen.append(person)
                if len(seen) == 3:
                    break
        self.assertEqual(len(seen), 3)
        self.assertEqual(self.page_count(), 2)
        self.assertEqual(people.state, StreamState.CLOSED)
        self.assertPoolIdle()
        self.assertEqual([record async for record in people], [])

    async def test_aclose_is_idempotent(self):
        people = self.people(page_size=2)
        await people.__anext__()
        self.assertEqual(self.client.pool.busy_count, 1)
        await people.aclose()
        await people.destroy()
        self.assertPoolIdle()
        with self.assertRaises(StopAsyncIteration):
            await people.__anext__()

    async def test_error_after_aclose_is_not_reported(self):
        people = self.people(page_size=2)
        await people.__anext__()
        await people.__anext__()
        self.transport.latency = 0.05
        third = asyncio.create_task(people.__anext__())
        await asyncio.sleep(0.01)
        self.transport.down = True
        await people.aclose()
        with self.assertRaises(StopAsyncIteration):
            await third
        self.assertTrue(people.cancelled)
        self.assertEqual(people.state, StreamState.CLOSED)
        self.assertPoolIdle()
        self.transport.down = False

    async def test_sizelimit(self):
        records = await self.client.search(
            PEOPLE, scope="one", filter="objectClass=person", sizelimit=3
        )
        self.assertEqual(len(records), 3)

    async def test_attributes(self):
        fry = await self.client.get(FRY, attributes=["uid"])
        self.assertEqual(list(fry), ["uid"])

    async def test_default_scope_is_base(self):
        records = await self.client.search(PEOPLE)
        self.assertEqual([record.dn for record in records], [PEOPLE])

    async def test_records_know_their_client(self):
        fry = await self.client.get(FRY)
        self.assertIs(fry.client, self.client)

    async def test_get_returns_None_if_nothing_matches(self):
        self.assertIsNone(await self.client.get(FRY, filter="(uid=leela)"))
        self.assertPoolIdle()


class TestSearchStream_concurrency(PlanetExpressMixin, unittest.IsolatedAsyncioTestCase):

    client_options = {**ADMIN_OPTIONS, "pool_size": 5}

    async def test_12_gets_leave_5_idle_connections(self):
        self.transport.latency = 0.01
        results = await asyncio.gather(*(self.client.get(FRY) for _ in range(12)))
        self.assertEqual(len(results), 12)
        self.assertTrue(all(record.get("uid") == "fry" for record in results))
        self.assertEqual(self.client.pool.size, 5)
        self.assertEqual(self.client.pool.idle_count, 5)
        self.assertPoolIdle()

    async def test_concurrent_streams_are_bounded(self):
        self.transport.latency = 0.005
        peak = 0

        async def consume():
            nonlocal peak
            async with self.people(page_size=2) as people:
                async for _ in people:
                    peak = max(peak, self.client.pool.busy_count)

        await asyncio.gather(*(consume() for _ in range(15)))
        self.assertLessEqual(peak, 5)
        self.assertEqual(len(self.transport.connections), 5)
        self.assertPoolIdle()

    async def test_cancelling_the_consumer_releases_the_connection(self):
        self.transport.latency = 0.1
        task = asyncio.create_task(self.client.search(PEOPLE, scope="one"))
        # connect and bind take 0.2 seconds; this lands in the first page
        await asyncio.sleep(0.25)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(self.client.pool.size, 1)
        self.assertPoolIdle()

    async def test_cancelling_during_reconnect_releases_the_slot(self):
        await self.client.get(FRY)
        self.transport.latency = 0.1
        self.transport.disconnect_all()
        task = asyncio.create_task(self.client.get(FRY))
        # The idle connection is being reopened
        await asyncio.sleep(0.05)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(self.client.pool.size, 0)
        self.assertPoolIdle()
        await asyncio.wait_for(self.client.close(), 1)


class TestSearchStream_errors(PlanetExpressMixin, unittest.IsolatedAsyncioTestCase):

    async def test_missing_base_raises_LDAPProtocolError(self):
        with self.assertRaises(LDAPProtocolError) as cm:
            await self.client.get(f"cn=Nibbler,{PEOPLE}")
        self.assertIsInstance(cm.exception.__cause__, ldap.NO_SUCH_OBJECT)
        self.assertPoolIdle()

    async def test_errors_point_at_the_caller(self):
        with self.assertRaises(LDAPProtocolError) as cm:
            await self.client.search(f"cn=Nibbler,{PEOPLE}")
        self.assertIn("test_stream.py", cm.exception.call_site)
        self.assertIn("test_errors_point_at_the_caller", cm.exception.call_site)
        self.assertIn("NO_SUCH_OBJECT", cm.exception.client_stack)

    async def test_bad_filter_raises_before_searching(self):
        with self.assertRaises(LDAPProtocolError) as cm:
            self.client.stream(PEOPLE, filter="(&(uid=fry)")
        self.assertIsInstance(cm.exception.__cause__, ldap.FILTER_ERROR)
        self.assertEqual(self.transport.connections, [])

    async def test_lost_connection_mid_stream(self):
        seen = []
        with self.assertRaises(LDAPConnectionError):
            async with self.people(page_size=2) as people:
                async for person in people:
                    seen.append(person)
                    self.transport.disconnect_all()
        self.assertEqual(len(seen), 2)
        self.assertPoolIdle()
        # The next operation reconnects
        fry = await self.client.get(FRY)
        self.assertEqual(fry.get("uid"), "fry")

    async def test_bind_failure_raises_LDAPConnectionError(self):
        client = self.make_client(bind_password="wrong")
        try:
            with self.assertRaises(LDAPConnectionError):
                await client.get(FRY)
            self.assertEqual(client.pool.size, 0)
        finally:
            await client.close()


class TestSearchStream_schema(PlanetExpressMixin, unittest.IsolatedAsyncioTestCase):

    schema = {"cn", "objectClass", "uid", "sn", "givenName", "member"}

    async def test_undefined_attribute_raises_SchemaError(self):
        with self.assertRaises(SchemaError) as cm:
            await self.client.get(FRY, attributes=["favoriteColor"])
        self.assertIn("favoriteColor", str(cm.exception))
        self.assertPoolIdle()


class TestSearchStream_transform(PlanetExpressMixin, unittest.IsolatedAsyncioTestCase):

    async def test_transform_hook_replaces_records(self):
        async def nickname(record):
            return self.client.record(record.dn, {"cn": [b"Fry"]})

        self.client.hooks.register_hook("transform_record", nickname)
        fry = await self.client.get(FRY)
        self.assertEqual(fry.get("cn"), "Fry")

    async def test_transform_hook_returning_None_keeps_the_record(self):
        seen = []
        self.client.hooks.register_hook("transform_record", seen.append)
        fry = await self.client.get(FRY)
        self.assertEqual(fry.get("cn"), "Philip J. Fry")
        self.assertEqual(seen, [fry])

    async def test_config_transform(self):
        def shout(record):
            return self.client.record(record.dn, {"cn": [record.get("cn").upper().encode()]})

        client = self.make_client(transform=shout)
        try:
            fry = await client.get(FRY)
        finally:
            await client.close()
        self.assertEqual(fry.get("cn"), "PHILIP J. FRY")
