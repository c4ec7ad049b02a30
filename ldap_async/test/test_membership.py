import asyncio
import gc
import unittest

from ldap_async.exceptions import LDAPProtocolError, SchemaError
from ldap_async.membership import MemberStream
from ldap_async.unittest import LDAPClientTestMixin

BASE = "dc=planetexpress,dc=com"
GROUPS = f"ou=groups,{BASE}"
EVERYONE = f"cn=everyone,{GROUPS}"
DAY_SHIFT = f"cn=day_shift,{GROUPS}"
EVERYBODY = {"professor", "amy", "hermes", "zoidberg", "fry", "leela", "bender"}
STAFF = f"ou=staff,{BASE}"
BIG = f"cn=big,{GROUPS}"


class MembershipMixin(LDAPClientTestMixin):

    ldap_fixtures = "planetexpress.json"


class TestMemberStream(MembershipMixin, unittest.IsolatedAsyncioTestCase):

    async def test_nested_members_are_included(self):
        members = await self.client.get_members(EVERYONE)
        self.assertEqual(len(members), 7)
        self.assertEqual({member.get("uid") for member in members}, EVERYBODY)
        self.assertPoolIdle()

    async def test_groups_are_not_returned(self):
        members = await self.client.get_members(EVERYONE)
        self.assertFalse(any("member" in member for member in members))

    async def test_searches_are_batched_by_parent(self):
        await self.client.get_members(EVERYONE)
        # the group itself, its people, its groups, then ship_crew's people
        self.assertSearchCount(4)

    async def test_cycles_terminate(self):
        members = await self.client.get_members(DAY_SHIFT)
        self.assertEqual(
            sorted(member.get("uid") for member in members), ["amy", "bender", "fry"]
        )
        self.assertPoolIdle()

    async def test_attributes_are_widened_with_member(self):
        stream = self.client.get_member_stream(EVERYONE, attributes=["uid"])
        self.assertEqual(stream.attributes, ["uid", "member"])
        members = await stream.to_list()
        self.assertEqual({member.get("uid") for member in members}, EVERYBODY)
        self.assertTrue(all(list(member) == ["uid"] for member in members))

    async def test_stream_iteration(self):
        uids = set()
        async with self.client.get_member_stream(EVERYONE) as members:
            async for member in members:
                uids.add(member.get("uid"))
        self.assertEqual(uids, EVERYBODY)

    async def test_missing_group_raises(self):
        with self.assertRaises(LDAPProtocolError):
            await self.client.get_members(f"cn=robots,{GROUPS}")
        self.assertPoolIdle()

    async def test_closing_early_releases_connections(self):
        stream = MemberStream(self.client, EVERYONE, queue_size=2)
        first = await stream.__anext__()
        self.assertIsNotNone(first.get("uid"))
        await asyncio.sleep(0.01)
        # the producer is blocked on the full queue, holding a search open
        self.assertEqual(stream.queue.qsize(), 2)
        self.assertEqual(self.client.pool.busy_count, 1)
        await stream.aclose()
        self.assertPoolIdle()
        with self.assertRaises(StopAsyncIteration):
            await stream.__anext__()


class TestMemberStream_large(MembershipMixin, unittest.IsolatedAsyncioTestCase):

    @classmethod
    def load_store(cls, store):
        super().load_store(store)
        store.register_object((STAFF, {"objectClass": [b"organizationalUnit"], "ou": [b"staff"]}))
        clerks = [f"uid=clerk{n},{STAFF}" for n in range(150)]
        for n, dn in enumerate(clerks):
            store.register_object(
                (
                    dn,
                    {
                        "objectClass": [b"inetOrgPerson", b"person", b"top"],
                        "uid": [f"clerk{n}".encode()],
                        "cn": [f"Clerk {n}".encode()],
                        "sn": [b"Clerk"],
                    },
                )
            )
        store.register_object(
            (
                BIG,
                {
                    "objectClass": [b"groupOfNames", b"top"],
                    "cn": [b"big"],
                    "member": [dn.encode() for dn in clerks],
                },
            )
        )

    async def test_every_member_is_returned(self):
        members = await self.client.get_members(BIG, attributes=["uid"])
        self.assertEqual(len(members), 150)
        self.assertPoolIdle()

    async def test_breaking_out_releases_connections(self):
        async for member in self.client.get_member_stream(BIG):
            self.assertTrue(member.get("uid").startswith("clerk"))
            break
        gc.collect()
        await asyncio.sleep(0.05)
        self.assertPoolIdle()


class TestMemberStream_ranged(MembershipMixin, unittest.IsolatedAsyncioTestCase):

    max_value_range = 2

    async def test_ranged_groups_are_fully_expanded(self):
        members = await self.client.get_members(EVERYONE)
        self.assertEqual({member.get("uid") for member in members}, EVERYBODY)

    async def test_ranged_cycles_terminate(self):
        members = await self.client.get_members(DAY_SHIFT, attributes=["uid"])
        self.assertEqual(
            sorted(member.get("uid") for member in members), ["amy", "bender", "fry"]
        )


class TestMemberStream_errors(MembershipMixin, unittest.IsolatedAsyncioTestCase):

    schema = {"cn", "objectClass", "uid", "member"}

    async def test_failed_sub_search_ends_the_stream(self):
        with self.assertRaises(SchemaError):
            await self.client.get_members(EVERYONE, attributes=["favoriteColor"])
        self.assertPoolIdle()
