from __future__ import annotations

import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar, cast

from .client import LDAPClient
from .config import LDAPConfig
from .memory import MemoryConnection, MemoryTransport, ObjectStore

if TYPE_CHECKING:
    from .types import LDAPFixtureList


class LDAPClientTestMixin:
    """
    A mixin for use with :py:class:`unittest.IsolatedAsyncioTestCase`.  For
    each test it builds an :py:class:`ObjectStore`, a
    :py:class:`MemoryTransport` serving it, and an :py:class:`LDAPClient`
    talking to that transport, and closes the client again afterwards.

    :py:attr:`ldap_fixtures` names one or more JSON files containing LDAP
    records to load into the :py:class:`ObjectStore` via
    :py:meth:`ObjectStore.load_objects`.  Relative paths are resolved against
    the folder your test file lives in.  If we define our test class like so::

        class TestMyStuff(LDAPClientTestMixin, unittest.IsolatedAsyncioTestCase):

            ldap_fixtures = 'myfixture.json'
            client_options = {
                'bind_dn': 'cn=admin,dc=example,dc=com',
                'bind_password': 'secret',
                'pool_size': 2,
            }

    then every test gets ``self.client``, bound as ``cn=admin`` to a fresh
    copy of the objects in ``myfixture.json``, with a pool of at most two
    connections.

    Note:
        The directory is rebuilt for every test, so writes made by one test
        are never seen by the next.

    """

    #: The filenames of fixtures to load into our directory
    ldap_fixtures: LDAPFixtureList | None = None
    #: :py:class:`LDAPConfig` fields for the client we build
    client_options: ClassVar[dict[str, Any]] = {}
    #: Passed to :py:class:`ObjectStore` to simulate Active Directory ranging
    max_value_range: int | None = None
    #: Passed to :py:class:`ObjectStore` to reject unknown attribute types
    schema: set[str] | None = None

    def __init__(self, *args, **kwargs) -> None:
        #: The :py:class:`ObjectStore` built by :py:meth:`asyncSetUp`
        self.store: ObjectStore
        #: The :py:class:`MemoryTransport` built by :py:meth:`asyncSetUp`
        self.transport: MemoryTransport
        #: The :py:class:`LDAPClient` built by :py:meth:`asyncSetUp`
        self.client: LDAPClient
        super().__init__(*args, **kwargs)

    @classmethod
    def resolve_file(cls, filename: str) -> str:
        """
        Given ``filename``, if that filename is a non-absolute path, resolve
        that filename to an absolute path under the folder in which our
        subclass' file resides.  If ``filename`` is an absoute path, don't change
        it.

        Args:
            filename: the non-absolute file path to a fixture file

        Raises:
            FileNotFoundError: the fixture file did not exist

        Returns:
            The absolute path to the fixture file.

        """
        full_path = Path(filename)
        if not full_path.is_absolute():
            dirname = Path(cast("str", sys.modules[cls.__module__].__file__)).parent
            full_path = dirname / filename
        if not full_path.exists():
            msg = f"{full_path} does not exist"
            raise FileNotFoundError(msg)
        return str(full_path)

    @classmethod
    def load_store(cls, store: ObjectStore) -> None:
        """
        Populate ``store`` from the files named in :py:attr:`ldap_fixtures`.

        Note:
            If you want to populate your :py:class:`ObjectStore` in a
            different way, this is the classmethod you want to override.

        """
        if not cls.ldap_fixtures:
            return
        filenames = (
            [cls.ldap_fixtures] if isinstance(cls.ldap_fixtures, str) else cls.ldap_fixtures
        )
        for filename in filenames:
            store.load_objects(cls.resolve_file(filename))

    def make_config(self, **kwargs: Any) -> LDAPConfig:
        """
        Build the :py:class:`LDAPConfig` for a client from
        :py:attr:`client_options`, overridden by ``kwargs``.
        """
        options: dict[str, Any] = {"url": "ldap://memory", **self.client_options, **kwargs}
        return LDAPConfig(**options)

    def make_client(self, **kwargs: Any) -> LDAPClient:
        """
        Build another :py:class:`LDAPClient` on our :py:attr:`transport`.
        You must close it yourself.
        """
        return LDAPClient(self.make_config(**kwargs), transport=self.transport)

    async def asyncSetUp(self) -> None:  # noqa: N802
        self.store = ObjectStore(max_value_range=self.max_value_range, schema=self.schema)
        self.load_store(self.store)
        self.transport = MemoryTransport(self.store)
        self.client = self.make_client()
        await super().asyncSetUp()  # type: ignore[misc]

    async def asyncTearDown(self) -> None:  # noqa: N802
        await self.client.close()
        await super().asyncTearDown()  # type: ignore[misc]

    # Helpers

    def last_connection(self) -> MemoryConnection | None:
        """
        Return the :py:class:`MemoryConnection` for the last connection made
        during our test.
        """
        if self.transport.connections:
            return self.transport.connections[-1]
        return None

    def search_count(self) -> int:
        """
        Return how many searches (not pages) were sent during our test.
        """
        return len(self.transport.connection_calls().searches)

    def page_count(self) -> int:
        """
        Return how many page requests were sent during our test.
        """
        return len(self.transport.connection_calls("search_ext").calls)

    # Asserts

    def assertPoolIdle(self, client: LDAPClient | None = None) -> None:  # noqa: N802
        """
        Assert that no connection of ``client`` (our own client by default)
        is checked out and nobody is waiting for one.
        """
        pool = (client or self.client).pool
        self.assertEqual(pool.busy_count, 0, f"{pool!r} has busy connections")  # type: ignore[attr-defined]
        self.assertEqual(pool.waiting, 0, f"{pool!r} has waiters")  # type: ignore[attr-defined]

    def assertSearchCount(self, count: int) -> None:  # noqa: N802
        """
        Assert that exactly ``count`` searches were sent during our test.
        """
        self.assertEqual(self.search_count(), count)  # type: ignore[attr-defined]

    def assertConnectionMethodCalled(  # noqa: N802
        self,
        conn: MemoryConnection,
        api_name: str,
        arguments: dict[str, Any] | None = None,
    ) -> None:
        """
        Assert that a specific :py:class:`MemoryConnection` method was called,
        possibly specifying the specific arguments it should have been
        called with.

        Args:
            conn: the connection object to examine
            api_name: the name of the function to look for (e.g. ``simple_bind_s``)

        Keyword Args:
            arguments: if given, assert that the call exists AND was called this set
                of arguments.  See :py:class:`LDAPCallRecord` for how the ``arguments``
                dict should be constructed.

        """
        if not arguments:
            self.assertIn(api_name, conn.calls.names)  # type: ignore[attr-defined]
            return
        for call in conn.calls.filter_calls(api_name):
            if call.args == arguments:
                return
        msg = f'No call for "{api_name}" with args {arguments} found.'
        self.fail(msg)  # type: ignore[attr-defined]

    def assertConnectionMethodCalledAfter(  # noqa: N802
        self, conn: MemoryConnection, api_name: str, target_api_name: str
    ) -> None:
        """
        Assert that a specific :py:class:`MemoryConnection` method was called
        after another specific method.

        Args:
            conn: the connection object to examine
            api_name: the name of the function to look for (e.g. ``search_ext``)
            target_api_name: the name of the function which should appear before
                ``api_name`` in the call history

        """
        self.assertConnectionMethodCalled(conn, target_api_name)
        self.assertConnectionMethodCalled(conn, api_name)
        api_names = conn.calls.names
        self.assertTrue(api_names.index(api_name) > api_names.index(target_api_name))  # type: ignore[attr-defined]
