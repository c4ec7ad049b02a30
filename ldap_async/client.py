from __future__ import annotations

import traceback
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import ldap
import ldap.dn

from .coalesce import LookupCoalescer
from .config import LDAPConfig
from .exceptions import LDAPAsyncError, translate_ldap_error
from .filters import normalize_filter
from .hooks import HookRegistry, client_hooks
from .membership import MemberStream
from .pool import ConnectionPool
from .ranged import full_range
from .record import Record
from .stream import SearchRequest, SearchStream
from .transport import PythonLDAPTransport, Transport

if TYPE_CHECKING:
    from contextlib import AbstractAsyncContextManager

    from .pool import PooledConnection
    from .types import (
        AddModList,
        AttributeInput,
        AttributeValues,
        Controls,
        LDAPData,
        ModList,
        Scope,
    )


_OPERATIONS: dict[str, int] = {
    "add": ldap.MOD_ADD,  # type: ignore[attr-defined]
    "delete": ldap.MOD_DELETE,  # type: ignore[attr-defined]
    "replace": ldap.MOD_REPLACE,  # type: ignore[attr-defined]
}


def _encode(value: AttributeInput) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, bool):
        return b"TRUE" if value else b"FALSE"
    return str(value).encode("utf-8")


def encode_values(values: AttributeValues) -> list[bytes]:
    """
    Turn what a caller gave us for an attribute into the ``list[bytes]``
    ``python-ldap`` wants: ``bool`` becomes ``TRUE``/``FALSE``, numbers and
    text become UTF-8, ``bytes`` are left alone and ``None`` means no values.
    """
    if values is None:
        return []
    if isinstance(values, (list, tuple)):
        return [_encode(v) for v in values]
    return [_encode(values)]


@dataclass
class Change:
    """
    One modification for :py:meth:`LDAPClient.modify`.

    Example:
        >>> Change('replace', 'title', 'Delivery boy')
        >>> Change('add', 'mail', ['fry@planetexpress.com'])
        >>> Change('delete', 'description')

    """

    #: ``add``, ``delete`` or ``replace``
    operation: str
    #: The attribute to modify
    attribute: str
    #: The values to add, delete or replace with; ``None`` with ``delete``
    #: removes the whole attribute
    values: AttributeValues = None

    def to_mod(self) -> tuple[int, str, list[bytes] | None]:
        try:
            op = _OPERATIONS[self.operation.lower()]
        except KeyError as exc:
            msg = f"unknown modify operation: {self.operation!r}"
            raise ValueError(msg) from exc
        values = encode_values(self.values)
        if op == ldap.MOD_DELETE and not values:  # type: ignore[attr-defined]
            return op, self.attribute, None
        return op, self.attribute, values


class LDAPClient:
    """
    An asyncio LDAP client with a pool of authenticated connections.

    Example:
        >>> client = LDAPClient(LDAPConfig.from_env(pool_size=10))
        >>> fry = await client.get('cn=Philip J. Fry,ou=people,dc=planetexpress,dc=com')
        >>> async with client.stream(
        ...     'ou=people,dc=planetexpress,dc=com',
        ...     scope='sub',
        ...     filter='(objectClass=person)',
        ... ) as people:
        ...     async for person in people:
        ...         print(person.get('cn'))
        >>> await client.close()

    Args:
        config: our configuration; built with :py:meth:`LDAPConfig.from_env`
            from ``kwargs`` if not given

    Keyword Args:
        transport: how to talk to the server; defaults to
            :py:class:`ldap_async.transport.PythonLDAPTransport`
        kwargs: :py:class:`LDAPConfig` fields, used only if ``config`` is not
            given

    """

    def __init__(
        self,
        config: LDAPConfig | None = None,
        transport: Transport | None = None,
        **kwargs: Any,
    ) -> None:
        self.config: LDAPConfig = config if config is not None else LDAPConfig.from_env(**kwargs)
        self.transport: Transport = transport if transport is not None else PythonLDAPTransport()
        self.hooks: HookRegistry = client_hooks()
        if self.config.transform is not None:
            self.hooks.register_hook("transform_record", self.config.transform)
        self.pool = ConnectionPool(self.transport, self.config, hooks=self.hooks)
        self.coalescer = LookupCoalescer(
            self.open_stream,
            batch_limit=self.config.batch_limit,
            batch_delay=self.config.batch_delay,
            logger=self.logger,
        )

    def __repr__(self) -> str:
        return f"<LDAPClient uri={self.config.uri!r} pool={self.pool!r}>"

    @property
    def logger(self) -> Any:
        return self.config.logger

    async def __aenter__(self) -> LDAPClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def record(self, dn: str, data: LDAPData) -> Record:
        """
        Wrap a ``(dn, data)`` pair from the server in a :py:class:`Record`
        bound to this client.
        """
        return Record(
            dn,
            data,
            client=self,
            preserve_attribute_case=bool(self.config.preserve_attribute_case),
        )

    # Reads

    def open_stream(
        self, request: SearchRequest, call_site: traceback.StackSummary | None = None
    ) -> SearchStream:
        """
        Build a :py:class:`SearchStream` for an already prepared
        :py:class:`SearchRequest`.
        """
        return SearchStream(
            self.pool,
            request,
            self.record,
            hooks=self.hooks,
            call_site=call_site if call_site is not None else traceback.extract_stack()[:-1],
            logger=self.logger,
        )

    def stream(
        self,
        base: str,
        scope: Scope = "base",
        filter: str | None = None,  # noqa: A002
        attributes: list[str] | None = None,
        page_size: int | None = None,
        controls: Controls | None = None,
        sizelimit: int = 0,
    ) -> SearchStream:
        """
        Search lazily.  Nothing is sent to the server until you start
        iterating, and each page is only fetched once you have consumed the
        one before it.

        Args:
            base: the DN to search from

        Keyword Args:
            scope: ``base`` (the default), ``one`` or ``sub``
            filter: the search filter; surrounding parentheses are optional
            attributes: the attributes to fetch; ``None`` means all
            page_size: entries per page; defaults to ``config.page_size``
            controls: extra server controls to send
            sizelimit: stop after this many entries

        Raises:
            LDAPProtocolError: ``filter`` is not a valid filter

        Returns:
            A :py:class:`SearchStream`.

        """
        call_site = traceback.extract_stack()[:-1]
        try:
            filterstr = normalize_filter(filter)
        except ldap.LDAPError as exc:  # type: ignore[attr-defined]
            error = translate_ldap_error(exc)
            if isinstance(error, LDAPAsyncError):
                error.attach_call_site(call_site)
            raise error from exc
        request = SearchRequest(
            base=base,
            scope=scope,
            filter=filterstr,
            attributes=attributes,
            page_size=page_size or self.config.page_size,
            controls=controls,
            sizelimit=sizelimit,
        )
        return self.open_stream(request, call_site=call_site)

    async def search(self, base: str, **kwargs: Any) -> list[Record]:
        """
        Like :py:meth:`stream`, but return every matching record as a list.
        """
        return await self.stream(base, **kwargs).to_list()

    async def get(self, base: str, **kwargs: Any) -> Record | None:
        """
        Like :py:meth:`stream`, but return only the first matching record, or
        ``None``.  With the default ``base`` scope, this fetches the entry
        ``base`` itself.
        """
        async with self.stream(base, **kwargs) as results:
            async for record in results:
                return record
        return None

    async def load(self, dn: str, attributes: list[str] | None = None) -> Record | None:
        """
        Fetch the entry ``dn``, batching this lookup with any others made in
        the same turn of the event loop.  Prefer this over :py:meth:`get`
        when looking up many entries by DN at once.

        Returns:
            The :py:class:`Record`, or ``None`` if there is no such entry.

        """
        return await self.coalescer.load(dn, attributes)

    async def full_range(self, record: Record, attr: str) -> list[str]:
        """
        Return every value of the possibly ranged attribute ``attr`` of
        ``record``.
        """
        return await full_range(self, record, attr)

    def get_member_stream(
        self, group_dn: str, attributes: list[str] | None = None
    ) -> MemberStream:
        """
        Stream every non-group member of the group ``group_dn`` and of every
        group nested inside it, each once.
        """
        return MemberStream(self, group_dn, attributes=attributes)

    async def get_members(
        self, group_dn: str, attributes: list[str] | None = None
    ) -> list[Record]:
        return await self.get_member_stream(group_dn, attributes=attributes).to_list()

    # Writes

    async def _write(self, operation: str, *args: Any) -> None:
        call_site = traceback.extract_stack()[:-1]
        try:
            async with self.pool.connection() as conn:
                await getattr(conn.handle, operation)(*args)
        except LDAPAsyncError as exc:
            raise exc.attach_call_site(call_site)
        self.logger.debug("client.%s dn=%s", operation, args[0])

    async def modify(
        self, dn: str, changes: Change | Sequence[Change] | ModList
    ) -> None:
        """
        Modify the entry ``dn``.

        Args:
            dn: the entry to modify
            changes: a :py:class:`Change`, a list of them, or a
                ``python-ldap`` modlist

        """
        if isinstance(changes, Change):
            changes = [changes]
        modlist: ModList = [
            change.to_mod() if isinstance(change, Change) else change  # type: ignore[misc]
            for change in changes
        ]
        await self._write("modify", dn, modlist)

    async def add(self, dn: str, entry: Mapping[str, AttributeValues]) -> None:
        """
        Create the entry ``dn`` with the attributes in ``entry``.
        """
        modlist: AddModList = [
            (attr, values)
            for attr, values in ((a, encode_values(v)) for a, v in entry.items())
            if values
        ]
        await self._write("add", dn, modlist)

    async def delete(self, dn: str) -> None:
        await self._write("delete", dn)

    remove = delete

    async def rename(self, dn: str, new_dn: str) -> None:
        """
        Rename the entry ``dn``.  ``new_dn`` is either just a new RDN, or a
        full DN if the entry should move to a new parent too.
        """
        try:
            rdns = ldap.dn.str2dn(new_dn)
        except ldap.LDAPError as exc:  # type: ignore[attr-defined]
            raise translate_ldap_error(exc) from exc
        newrdn = ldap.dn.dn2str(rdns[:1])
        newsuperior = ldap.dn.dn2str(rdns[1:]) if len(rdns) > 1 else None
        await self._write("rename", dn, newrdn, newsuperior)

    modify_dn = rename

    async def set_attribute(self, dn: str, attribute: str, values: AttributeValues) -> None:
        """
        Replace all values of ``attribute`` with ``values``; ``None`` removes
        the attribute.
        """
        await self.modify(dn, Change("replace", attribute, values))

    async def set_attributes(self, dn: str, changes: Mapping[str, AttributeValues]) -> None:
        await self.modify(
            dn, [Change("replace", attribute, values) for attribute, values in changes.items()]
        )

    async def _current_values(self, dn: str, attribute: str) -> set[bytes]:
        current = await self.get(dn, attributes=[attribute])
        if current is None:
            return set()
        values = await current.full_range(attribute)
        return {v.encode("utf-8").lower() for v in values}

    async def push_attribute(self, dn: str, attribute: str, values: AttributeValues) -> None:
        """
        Add ``values`` to ``attribute``, skipping any it already has.
        """
        existing = await self._current_values(dn, attribute)
        new = [v for v in encode_values(values) if v.lower() not in existing]
        if new:
            await self.modify(dn, Change("add", attribute, new))

    async def pull_attribute(self, dn: str, attribute: str, values: AttributeValues) -> None:
        """
        Remove ``values`` from ``attribute``, skipping any it doesn't have.
        """
        existing = await self._current_values(dn, attribute)
        old = [v for v in encode_values(values) if v.lower() in existing]
        if old:
            await self.modify(dn, Change("delete", attribute, old))

    async def remove_attribute(self, dn: str, attribute: str) -> None:
        await self.modify(dn, Change("delete", attribute))

    async def add_member(self, member_dn: str | list[str], group_dn: str) -> None:
        """
        Add ``member_dn`` (one DN or a list of them) to the group
        ``group_dn``.  Existing members are ignored.
        """
        await self.push_attribute(group_dn, "member", member_dn)  # type: ignore[arg-type]

    async def remove_member(self, member_dn: str | list[str], group_dn: str) -> None:
        await self.pull_attribute(group_dn, "member", member_dn)  # type: ignore[arg-type]

    # Lifecycle

    def connection(self) -> AbstractAsyncContextManager[PooledConnection]:
        """
        Check out a pooled connection for an ``async with`` block, for
        anything this client doesn't wrap.
        """
        return self.pool.connection()

    async def wait(self) -> None:
        """
        Wait until the server accepts our connection and bind, retrying every
        ``config.wait_interval`` seconds.
        """
        await self.pool.wait(
            max_attempts=self.config.wait_max_attempts,
            interval=self.config.wait_interval,
        )

    async def close(self) -> None:
        """
        Wait for in-flight operations to give back their connections, then
        close them all.  The client may be used again afterwards.
        """
        await self.coalescer.close()
        await self.pool.close()
